"""Computes the grants needed to close the gap between current and required roles.

Pure functions only: no I/O, no failure modes.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass

from .models import Principal, RequiredRoleSet, RoleAssignment, Scope


@dataclass(frozen=True)
class ReconciliationPlan:
    """Role assignments to request; derived per run and never persisted."""

    principal: Principal
    scope: Scope
    entries: tuple[RoleAssignment, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def role_names(self) -> tuple[str, ...]:
        return tuple(e.role_name for e in self.entries)

    def __iter__(self) -> Iterator[RoleAssignment]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


def canonical_role_name(name: str, catalog: Mapping[str, str] | None = None) -> str:
    """Spell a role name the way the backend does.

    Args:
        name: Role name as configured.
        catalog: Casefolded name -> canonical name, from the role definitions
            visible at the scope. Unknown names are returned stripped.
    """
    name = name.strip()
    if catalog:
        return catalog.get(name.casefold(), name)
    return name


def role_names(assignments: Iterable[RoleAssignment]) -> frozenset[str]:
    """Casefolded role names held, for comparison."""
    return frozenset(a.role_name.casefold() for a in assignments)


def diff(
    current: Iterable[RoleAssignment],
    required: RequiredRoleSet,
    principal: Principal,
    scope: Scope,
    catalog: Mapping[str, str] | None = None,
) -> ReconciliationPlan:
    """Required roles not yet held, as assignment requests.

    The plan is exactly ``required - roleNames(current)``, compared after
    canonicalization so casing drift never produces a spurious entry.
    Entries keep the order of ``required``.
    """
    held = role_names(current)
    entries = []
    for role in required:
        canonical = canonical_role_name(role, catalog)
        if canonical.casefold() not in held:
            entries.append(RoleAssignment(principal=principal, scope=scope, role_name=canonical))
    return ReconciliationPlan(principal=principal, scope=scope, entries=tuple(entries))
