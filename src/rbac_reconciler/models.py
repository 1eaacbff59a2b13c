"""Domain types and the pydantic model for access spec files.

Principal, Scope and RequiredRoleSet are built once from configuration and
stay read-only for the run. RoleAssignment instances are either facts read
from Azure (assignment_id set) or requests produced by the planner
(assignment_id None).
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

from .config import VALID_GUID_PATTERN, PrincipalType

# Role assignments are always created with this principalType; federated
# credentials authenticate as the service principal they are attached to.
ARM_PRINCIPAL_TYPE = "ServicePrincipal"


@dataclass(frozen=True)
class Principal:
    """Identity whose grants are reconciled."""

    principal_id: str
    principal_type: PrincipalType = PrincipalType.SERVICE_PRINCIPAL

    def __str__(self) -> str:
        return f"{self.principal_type.value}:{self.principal_id}"


@dataclass(frozen=True)
class Scope:
    """Subscription that bounds the reconciliation."""

    subscription_id: str

    @property
    def resource_id(self) -> str:
        return f"/subscriptions/{self.subscription_id}"

    def covers(self, assignment_scope: str) -> bool:
        """Whether an assignment made at assignment_scope applies here.

        Grants inherit downward, so the subscription itself and its
        ancestors (management groups, tenant root) count; resource groups
        and resources below it do not.
        """
        target = self.resource_id.lower()
        candidate = assignment_scope.rstrip("/").lower() or "/"
        if candidate == target or candidate == "/":
            return True
        return candidate.startswith("/providers/microsoft.management/managementgroups/")

    def __str__(self) -> str:
        return self.resource_id


@dataclass(frozen=True)
class RoleAssignment:
    """A role bound to a principal at a scope."""

    principal: Principal
    scope: Scope
    role_name: str
    assignment_id: str | None = None

    @property
    def exists(self) -> bool:
        return self.assignment_id is not None


class RequiredRoleSet:
    """Role names a principal must hold; set semantics, order kept for display.

    Duplicates (compared case-insensitively) collapse to the first spelling.
    """

    __slots__ = ("_roles",)

    def __init__(self, roles: Iterable[str]) -> None:
        seen: dict[str, str] = {}
        for role in roles:
            name = role.strip()
            if name and name.casefold() not in seen:
                seen[name.casefold()] = name
        self._roles: tuple[str, ...] = tuple(seen.values())

    def __iter__(self) -> Iterator[str]:
        return iter(self._roles)

    def __len__(self) -> int:
        return len(self._roles)

    def __contains__(self, role: object) -> bool:
        return isinstance(role, str) and role.casefold() in self.keys()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RequiredRoleSet):
            return NotImplemented
        return self.keys() == other.keys()

    def __hash__(self) -> int:
        return hash(self.keys())

    def __repr__(self) -> str:
        return f"RequiredRoleSet({list(self._roles)!r})"

    def keys(self) -> frozenset[str]:
        return frozenset(r.casefold() for r in self._roles)


@dataclass(frozen=True)
class AuthContext:
    """Authenticated session bound to the target subscription.

    Threaded explicitly through every component instead of relying on a
    process-wide "current subscription".
    """

    credential: object
    scope: Scope
    caller_id: str
    subscription_name: str | None = None
    tenant_id: str | None = None


# =============================================================================
# Access spec file
# =============================================================================


class AccessSpec(BaseModel):
    """Desired role grants declared in a YAML file."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    principal_id: Annotated[str, Field(min_length=1, alias="principalId")]
    principal_type: PrincipalType = Field(PrincipalType.SERVICE_PRINCIPAL, alias="principalType")
    subscription_id: str | None = Field(None, alias="subscriptionId")
    roles: list[str] = Field(default_factory=list)

    @field_validator("principal_id", "subscription_id")
    @classmethod
    def validate_guid(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not re.match(VALID_GUID_PATTERN, v.lower()):
            raise ValueError(f"must be a GUID: {v}")
        return v.lower()

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: list[str]) -> list[str]:
        cleaned = [r.strip() for r in v]
        if any(not r for r in cleaned):
            raise ValueError("role names cannot be blank")
        return cleaned
