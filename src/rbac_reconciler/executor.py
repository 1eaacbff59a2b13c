"""Applies a reconciliation plan by creating role assignments.

Entries are independent: each is attempted regardless of how the others
fare, and every failure is recorded on its entry instead of being raised.
Requests run concurrently (bounded) and apply() returns only after all of
them have settled.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum

from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters

from .errors import GrantError, GrantErrorKind, classify_grant_error
from .models import ARM_PRINCIPAL_TYPE, AuthContext, RoleAssignment
from .planner import ReconciliationPlan
from .retry import RetryPolicy, call_with_retry
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4
ASSIGNMENT_DESCRIPTION = "Managed by azure-rbac-reconciler"


class GrantStatus(str, Enum):
    """Per-entry execution result."""

    GRANTED = "Granted"
    ALREADY_PRESENT = "AlreadyPresent"
    FAILED = "Failed"


@dataclass(frozen=True)
class GrantResult:
    """Outcome for one plan entry."""

    request: RoleAssignment
    status: GrantStatus
    attempts: int = 0
    error: GrantError | None = None
    assignment_id: str | None = None

    @property
    def role_name(self) -> str:
        return self.request.role_name

    @property
    def reason(self) -> str | None:
        """Remediation text for a failed entry."""
        if self.error is None:
            return None
        return self.error.reason


@dataclass(frozen=True)
class ExecutionOutcome:
    """All plan entries with their final status; none is ever pending."""

    results: tuple[GrantResult, ...] = ()

    def _with(self, status: GrantStatus) -> tuple[GrantResult, ...]:
        return tuple(r for r in self.results if r.status == status)

    @property
    def granted(self) -> tuple[GrantResult, ...]:
        return self._with(GrantStatus.GRANTED)

    @property
    def already_present(self) -> tuple[GrantResult, ...]:
        return self._with(GrantStatus.ALREADY_PRESENT)

    @property
    def failed(self) -> tuple[GrantResult, ...]:
        return self._with(GrantStatus.FAILED)

    def result_for(self, role_name: str) -> GrantResult | None:
        key = role_name.casefold()
        for result in self.results:
            if result.role_name.casefold() == key:
                return result
        return None


def assignment_name(request: RoleAssignment) -> str:
    """Deterministic role assignment name for a request.

    Same principal, role and scope always yield the same GUID, so two
    concurrent runs collide on a 409 instead of creating duplicates.
    """
    key = f"{request.principal.principal_id.lower()}:{request.role_name}:{request.scope.resource_id.lower()}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, key))


class GrantExecutor:
    """Creates role assignments for plan entries."""

    def __init__(
        self,
        client: AuthorizationManagementClient,
        *,
        retry_policy: RetryPolicy | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self._client = client
        self._retry = retry_policy or RetryPolicy()
        self._max_concurrency = max(1, max_concurrency)

    async def apply(self, ctx: AuthContext, plan: ReconciliationPlan) -> ExecutionOutcome:
        """Grant every entry in the plan.

        Never raises for per-entry failures; see GrantResult.status.
        """
        if plan.is_empty:
            return ExecutionOutcome()

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def guarded(entry: RoleAssignment) -> GrantResult:
            async with semaphore:
                return await self._grant(ctx, entry)

        results = await asyncio.gather(*(guarded(entry) for entry in plan))
        outcome = ExecutionOutcome(results=tuple(results))

        logger.info(
            "Grant execution finished",
            extra={
                "planned": len(plan),
                "granted": len(outcome.granted),
                "already_present": len(outcome.already_present),
                "failed": len(outcome.failed),
            },
        )
        return outcome

    async def _grant(self, ctx: AuthContext, request: RoleAssignment) -> GrantResult:
        attempts = 0

        try:
            definition_id = await self._role_definition_id(request)

            parameters = RoleAssignmentCreateParameters(
                role_definition_id=definition_id,
                principal_id=request.principal.principal_id,
                principal_type=ARM_PRINCIPAL_TYPE,
                description=ASSIGNMENT_DESCRIPTION,
            )
            name = assignment_name(request)

            def create() -> object:
                nonlocal attempts
                attempts += 1
                return self._client.role_assignments.create(
                    ctx.scope.resource_id, name, parameters
                )

            created = await call_with_retry(
                create,
                policy=self._retry,
                operation_name=f"Grant {request.role_name}",
            )
            result = GrantResult(
                request=request,
                status=GrantStatus.GRANTED,
                attempts=attempts,
                assignment_id=getattr(created, "id", None),
            )

        except Exception as e:
            error = classify_grant_error(e)
            if error.kind == GrantErrorKind.ALREADY_EXISTS:
                # Another actor granted it between query and apply
                result = GrantResult(request, GrantStatus.ALREADY_PRESENT, attempts)
            else:
                logger.error(
                    f"Grant of {request.role_name} failed",
                    extra={
                        "role": request.role_name,
                        "error_kind": error.kind.value,
                        "attempts": attempts,
                        "error": error.message,
                    },
                )
                result = GrantResult(request, GrantStatus.FAILED, attempts, error=error)

        log_security_audit_event(
            "role_grant",
            principal_id=request.principal.principal_id,
            target_scope=request.scope.resource_id,
            action=request.role_name,
            result=result.status.value,
        )
        return result

    async def _role_definition_id(self, request: RoleAssignment) -> str:
        """Resolve a role name to its definition ID at the scope.

        Raises:
            GrantError: ROLE_NOT_FOUND when no definition has that name.
        """
        role = request.role_name
        definitions = await call_with_retry(
            lambda: list(
                self._client.role_definitions.list(
                    request.scope.resource_id, filter=f"roleName eq '{role}'"
                )
            ),
            policy=self._retry,
            operation_name=f"Role definition lookup ({role})",
        )
        for definition in definitions:
            if definition.role_name and definition.role_name.casefold() == role.casefold():
                return definition.id
        raise GrantError(GrantErrorKind.ROLE_NOT_FOUND, f"Role '{role}' is not defined at {request.scope}")
