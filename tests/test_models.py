"""Tests for domain types and the access spec model."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from rbac_reconciler.config import PrincipalType
from rbac_reconciler.models import (
    AccessSpec,
    Principal,
    RequiredRoleSet,
    RoleAssignment,
    Scope,
)

SUBSCRIPTION = "00000000-0000-0000-0000-000000000001"


class TestRequiredRoleSet:
    def test_duplicates_collapse(self) -> None:
        roles = RequiredRoleSet(["Contributor", "Reader", "Contributor"])
        assert list(roles) == ["Contributor", "Reader"]
        assert len(roles) == 2

    def test_case_variants_collapse_to_first_spelling(self) -> None:
        roles = RequiredRoleSet(["Contributor", "contributor"])
        assert list(roles) == ["Contributor"]

    def test_order_does_not_affect_equality(self) -> None:
        assert RequiredRoleSet(["Reader", "Contributor"]) == RequiredRoleSet(["Contributor", "Reader"])

    def test_membership_is_case_insensitive(self) -> None:
        roles = RequiredRoleSet(["Storage Blob Data Contributor"])
        assert "storage blob data contributor" in roles
        assert "Reader" not in roles

    def test_blank_names_dropped(self) -> None:
        assert list(RequiredRoleSet(["  ", "Reader "])) == ["Reader"]


class TestScope:
    def test_resource_id(self) -> None:
        assert Scope(SUBSCRIPTION).resource_id == f"/subscriptions/{SUBSCRIPTION}"

    def test_covers_exact_subscription(self) -> None:
        assert Scope(SUBSCRIPTION).covers(f"/subscriptions/{SUBSCRIPTION}")
        assert Scope(SUBSCRIPTION).covers(f"/Subscriptions/{SUBSCRIPTION.upper()}/")

    def test_covers_ancestors(self) -> None:
        scope = Scope(SUBSCRIPTION)
        assert scope.covers("/")
        assert scope.covers("/providers/Microsoft.Management/managementGroups/platform")

    def test_does_not_cover_narrower_scopes(self) -> None:
        scope = Scope(SUBSCRIPTION)
        assert not scope.covers(f"/subscriptions/{SUBSCRIPTION}/resourceGroups/web-rg")
        assert not scope.covers(
            f"/subscriptions/{SUBSCRIPTION}/resourceGroups/web-rg/providers/"
            "Microsoft.Storage/storageAccounts/site"
        )

    def test_does_not_cover_other_subscription(self) -> None:
        assert not Scope(SUBSCRIPTION).covers("/subscriptions/00000000-0000-0000-0000-000000000002")


class TestRoleAssignment:
    def test_exists_only_with_id(self) -> None:
        principal, scope = Principal("p"), Scope(SUBSCRIPTION)

        assert RoleAssignment(principal, scope, "Reader", "/id/1").exists
        assert not RoleAssignment(principal, scope, "Reader").exists

    def test_principal_str(self) -> None:
        principal = Principal("p-1", PrincipalType.FEDERATED_IDENTITY)
        assert str(principal) == "FederatedIdentity:p-1"


class TestAccessSpec:
    def test_valid_spec(self) -> None:
        spec = AccessSpec.model_validate(
            {
                "principalId": "AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE",
                "principalType": "FederatedIdentity",
                "subscriptionId": SUBSCRIPTION,
                "roles": ["Contributor", " CDN Profile Contributor "],
            }
        )

        assert spec.principal_id == "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
        assert spec.principal_type == PrincipalType.FEDERATED_IDENTITY
        assert spec.roles == ["Contributor", "CDN Profile Contributor"]

    def test_subscription_optional(self) -> None:
        spec = AccessSpec.model_validate({"principalId": "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"})
        assert spec.subscription_id is None
        assert spec.roles == []

    def test_invalid_principal_guid(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            AccessSpec.model_validate({"principalId": "not-a-guid"})
        assert "principalId" in str(exc_info.value)

    def test_blank_role_rejected(self) -> None:
        with pytest.raises(ValidationError):
            AccessSpec.model_validate(
                {"principalId": "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee", "roles": [" "]}
            )
