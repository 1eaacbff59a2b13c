"""Post-execution verification and the user-facing report.

The verdict comes from re-read state, not from the execution outcome: a
grant the API accepted may not be visible yet.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .executor import ExecutionOutcome, GrantStatus
from .models import Principal, RequiredRoleSet, RoleAssignment, Scope
from .planner import diff

NOT_YET_VISIBLE_REASON = (
    "granted but not yet visible - role assignments can take a few minutes to "
    "propagate, re-run to confirm"
)
REMOVED_DURING_RUN_REASON = "held when the run started but no longer present - removed out-of-band"


class RunStatus(str, Enum):
    SATISFIED = "Satisfied"
    PARTIALLY_GRANTED = "PartiallyGranted"
    FAILED = "Failed"


EXIT_CODES: dict[RunStatus, int] = {
    RunStatus.SATISFIED: 0,
    RunStatus.PARTIALLY_GRANTED: 1,
    RunStatus.FAILED: 2,
}


@dataclass(frozen=True)
class RoleLine:
    """One required role in the report."""

    role_name: str
    present: bool
    granted_this_run: bool = False
    reason: str | None = None

    def render(self) -> str:
        if self.present:
            suffix = " (granted this run)" if self.granted_this_run else ""
            return f"  [present] {self.role_name}{suffix}"
        return f"  [missing] {self.role_name}: {self.reason or 'unknown reason'}"


@dataclass(frozen=True)
class RunResult:
    """Final verdict of a reconciliation run."""

    status: RunStatus
    missing: tuple[RoleAssignment, ...]
    lines: tuple[RoleLine, ...]

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    @property
    def satisfied(self) -> bool:
        return self.status == RunStatus.SATISFIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "missing": [a.role_name for a in self.missing],
            "roles": [
                {
                    "role": line.role_name,
                    "present": line.present,
                    "grantedThisRun": line.granted_this_run,
                    "reason": line.reason,
                }
                for line in self.lines
            ],
        }


def _missing_reason(role_name: str, outcome: ExecutionOutcome) -> str:
    result = outcome.result_for(role_name)
    if result is None:
        return REMOVED_DURING_RUN_REASON
    if result.status == GrantStatus.FAILED and result.reason is not None:
        return result.reason
    return NOT_YET_VISIBLE_REASON


def render(
    outcome: ExecutionOutcome,
    post_current: Iterable[RoleAssignment],
    required: RequiredRoleSet,
    *,
    principal: Principal,
    scope: Scope,
    catalog: Mapping[str, str] | None = None,
) -> RunResult:
    """Decide the run verdict from re-read state.

    Satisfied iff nothing required is missing. Otherwise PartiallyGranted
    when at least one role was newly granted this run, else Failed.
    """
    post_current = frozenset(post_current)
    remaining = diff(post_current, required, principal, scope, catalog)
    missing_keys = {e.role_name.casefold() for e in remaining}

    lines = []
    for entry in diff((), required, principal, scope, catalog):
        name = entry.role_name
        if name.casefold() in missing_keys:
            lines.append(RoleLine(name, present=False, reason=_missing_reason(name, outcome)))
        else:
            result = outcome.result_for(name)
            granted = result is not None and result.status == GrantStatus.GRANTED
            lines.append(RoleLine(name, present=True, granted_this_run=granted))

    if remaining.is_empty:
        status = RunStatus.SATISFIED
    elif outcome.granted:
        status = RunStatus.PARTIALLY_GRANTED
    else:
        status = RunStatus.FAILED

    return RunResult(status=status, missing=remaining.entries, lines=tuple(lines))


def format_report(result: RunResult, principal: Principal, scope: Scope) -> str:
    """Human-readable report, one line per required role."""
    held = sum(1 for line in result.lines if line.present)
    out = [f"Role reconciliation for {principal} at {scope}"]
    out.extend(line.render() for line in result.lines)
    out.append(
        f"Result: {result.status.value} ({held} of {len(result.lines)} required roles held)"
    )
    return "\n".join(out)
