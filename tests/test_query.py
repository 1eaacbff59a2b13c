"""Tests for reading current role assignments."""

from __future__ import annotations

import pytest
from azure_mock import (
    MockAuthorizationClient,
    MockAuthorizationState,
    forbidden,
    network_error,
    throttled,
)
from conftest import PRINCIPAL_ID

from rbac_reconciler.errors import QueryError, QueryErrorKind
from rbac_reconciler.models import AuthContext, Principal, Scope
from rbac_reconciler.query import RoleAssignmentQuery
from rbac_reconciler.retry import RetryPolicy

OTHER_PRINCIPAL = "12345678-1234-1234-1234-123456789012"


@pytest.fixture
def query(auth_client: MockAuthorizationClient, fast_retry: RetryPolicy) -> RoleAssignmentQuery:
    return RoleAssignmentQuery(auth_client, retry_policy=fast_retry)


class TestCurrent:
    @pytest.mark.asyncio
    async def test_no_assignments_is_empty_set(
        self, query: RoleAssignmentQuery, auth_context: AuthContext, principal: Principal, scope: Scope
    ) -> None:
        assert await query.current(auth_context, principal, scope) == frozenset()

    @pytest.mark.asyncio
    async def test_returns_role_names(
        self,
        query: RoleAssignmentQuery,
        auth_state: MockAuthorizationState,
        auth_context: AuthContext,
        principal: Principal,
        scope: Scope,
    ) -> None:
        auth_state.add_assignment(PRINCIPAL_ID, "Contributor")
        auth_state.add_assignment(PRINCIPAL_ID, "Storage Blob Data Contributor")
        auth_state.add_assignment(OTHER_PRINCIPAL, "Owner")

        current = await query.current(auth_context, principal, scope)

        assert {a.role_name for a in current} == {"Contributor", "Storage Blob Data Contributor"}
        assert all(a.exists and a.principal == principal and a.scope == scope for a in current)

    @pytest.mark.asyncio
    async def test_narrower_scope_not_counted(
        self,
        query: RoleAssignmentQuery,
        auth_state: MockAuthorizationState,
        auth_context: AuthContext,
        principal: Principal,
        scope: Scope,
    ) -> None:
        auth_state.add_assignment(
            PRINCIPAL_ID, "Contributor", scope=f"{auth_state.scope}/resourceGroups/web-rg"
        )
        assert await query.current(auth_context, principal, scope) == frozenset()

    @pytest.mark.asyncio
    async def test_management_group_assignment_counts(
        self,
        query: RoleAssignmentQuery,
        auth_state: MockAuthorizationState,
        auth_context: AuthContext,
        principal: Principal,
        scope: Scope,
    ) -> None:
        auth_state.add_assignment(
            PRINCIPAL_ID,
            "Reader",
            scope="/providers/Microsoft.Management/managementGroups/platform",
        )
        current = await query.current(auth_context, principal, scope)
        assert {a.role_name for a in current} == {"Reader"}

    @pytest.mark.asyncio
    async def test_reads_every_assignment_of_large_principal(
        self,
        query: RoleAssignmentQuery,
        auth_state: MockAuthorizationState,
        auth_context: AuthContext,
        principal: Principal,
        scope: Scope,
    ) -> None:
        for i in range(4500):
            auth_state.add_assignment(
                PRINCIPAL_ID, "Reader", scope=f"{auth_state.scope}/resourceGroups/rg-{i}"
            )
        auth_state.add_assignment(PRINCIPAL_ID, "Contributor")

        current = await query.current(auth_context, principal, scope)

        assert {a.role_name for a in current} == {"Contributor"}

    @pytest.mark.asyncio
    async def test_reads_fresh_every_call(
        self,
        query: RoleAssignmentQuery,
        auth_state: MockAuthorizationState,
        auth_context: AuthContext,
        principal: Principal,
        scope: Scope,
    ) -> None:
        assert await query.current(auth_context, principal, scope) == frozenset()

        auth_state.add_assignment(PRINCIPAL_ID, "Reader")
        current = await query.current(auth_context, principal, scope)

        assert {a.role_name for a in current} == {"Reader"}
        assert auth_state.list_calls == 2

    @pytest.mark.asyncio
    async def test_scope_mismatch_rejected(
        self, query: RoleAssignmentQuery, auth_context: AuthContext, principal: Principal
    ) -> None:
        with pytest.raises(ValueError):
            await query.current(auth_context, principal, Scope("00000000-0000-0000-0000-000000000002"))

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(
        self,
        query: RoleAssignmentQuery,
        auth_state: MockAuthorizationState,
        auth_context: AuthContext,
        principal: Principal,
        scope: Scope,
    ) -> None:
        auth_state.add_assignment(PRINCIPAL_ID, "Reader")
        auth_state.fail_list(throttled, times=2)

        current = await query.current(auth_context, principal, scope)

        assert {a.role_name for a in current} == {"Reader"}
        assert auth_state.list_calls == 3

    @pytest.mark.asyncio
    async def test_unreachable_after_three_attempts(
        self,
        query: RoleAssignmentQuery,
        auth_state: MockAuthorizationState,
        auth_context: AuthContext,
        principal: Principal,
        scope: Scope,
    ) -> None:
        auth_state.fail_list(network_error, times=5)

        with pytest.raises(QueryError) as exc_info:
            await query.current(auth_context, principal, scope)

        assert exc_info.value.kind == QueryErrorKind.UNREACHABLE
        assert auth_state.list_calls == 3

    @pytest.mark.asyncio
    async def test_forbidden_read_is_unreachable(
        self,
        query: RoleAssignmentQuery,
        auth_state: MockAuthorizationState,
        auth_context: AuthContext,
        principal: Principal,
        scope: Scope,
    ) -> None:
        auth_state.fail_list(forbidden)

        with pytest.raises(QueryError) as exc_info:
            await query.current(auth_context, principal, scope)

        assert exc_info.value.kind == QueryErrorKind.UNREACHABLE
        assert "403" in exc_info.value.message


class TestRoleCatalog:
    @pytest.mark.asyncio
    async def test_keys_are_casefolded(self, query: RoleAssignmentQuery, scope: Scope) -> None:
        catalog = await query.role_catalog(scope)
        assert catalog["cdn profile contributor"] == "CDN Profile Contributor"
        assert catalog["reader"] == "Reader"
