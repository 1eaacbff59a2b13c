"""Reconciliation run: authenticate, read, plan, grant, re-verify.

State machine:

    Start -> Authenticating -> Querying -> Planning
          -> Done                                   (empty plan, or dry run)
          -> Executing -> ReVerifying -> Done

AuthError and QueryError stop the run before any plan exists; a create
rejected because the principal does not exist stops it as a QueryError too.
Other grant failures never stop it; the verdict is taken from re-read state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from azure.core.credentials import TokenCredential
from azure.mgmt.authorization import AuthorizationManagementClient

from .config import Config
from .errors import AuthError, GrantErrorKind, QueryError, QueryErrorKind, ReconcileError
from .executor import ExecutionOutcome, GrantExecutor
from .models import AuthContext, Principal, RequiredRoleSet, RoleAssignment, Scope
from .planner import ReconciliationPlan, diff
from .query import RoleAssignmentQuery
from .report import RunResult, render
from .retry import SDK_CLIENT_OPTIONS
from .security import get_credential
from .session import AuthSession

logger = logging.getLogger(__name__)

# Setup-level failure (auth or query) before any plan existed
EXIT_SETUP_FAILURE = 3


class ReconcileStage(str, Enum):
    START = "Start"
    AUTHENTICATING = "Authenticating"
    QUERYING = "Querying"
    PLANNING = "Planning"
    EXECUTING = "Executing"
    REVERIFYING = "ReVerifying"
    DONE = "Done"


@dataclass
class ReconcileOutcome:
    """Everything a run produced, for reporting and exit status."""

    principal: Principal
    scope: Scope
    dry_run: bool = False
    stage: ReconcileStage = ReconcileStage.START
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    plan: ReconciliationPlan | None = None
    execution: ExecutionOutcome | None = None
    run_result: RunResult | None = None
    error: ReconcileError | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def exit_code(self) -> int:
        if self.error is not None or (self.run_result is None and not self.dry_run):
            return EXIT_SETUP_FAILURE
        if self.run_result is not None:
            return self.run_result.exit_code
        # Dry run with pending changes
        return 0 if self.plan is None or self.plan.is_empty else 1


class Reconciler:
    """Runs one reconciliation of a principal's role grants."""

    def __init__(
        self,
        config: Config,
        *,
        credential: TokenCredential | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Build the components for a run.

        Raises:
            SecretlessViolationError: If secret credentials are in the environment.
        """
        self._config = config
        self._sleep = sleep
        self._principal = Principal(config.principal_id, config.principal_type)
        self._scope = Scope(config.subscription_id)
        self._required = RequiredRoleSet(config.required_roles)

        self._credential = credential or get_credential(
            config.credential_kind, config.managed_identity_client_id
        )
        self._session = AuthSession(self._credential, self._scope, retry_policy=config.retry)

        client = AuthorizationManagementClient(
            credential=self._credential,
            subscription_id=config.subscription_id,
            **SDK_CLIENT_OPTIONS,
        )
        self._query = RoleAssignmentQuery(client, retry_policy=config.retry)
        self._executor = GrantExecutor(
            client,
            retry_policy=config.retry,
            max_concurrency=config.max_concurrent_grants,
        )

    @property
    def principal(self) -> Principal:
        return self._principal

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def required(self) -> RequiredRoleSet:
        return self._required

    async def reconcile(self) -> ReconcileOutcome:
        """Run the full sequence once and return its outcome."""
        outcome = ReconcileOutcome(
            principal=self._principal,
            scope=self._scope,
            dry_run=self._config.dry_run,
        )

        try:
            self._enter(outcome, ReconcileStage.AUTHENTICATING)
            ctx = await self._session.ensure()

            self._enter(outcome, ReconcileStage.QUERYING)
            current = await self._query.current(ctx, self._principal, self._scope)
            catalog = await self._query.role_catalog(self._scope)

            self._enter(outcome, ReconcileStage.PLANNING)
            plan = diff(current, self._required, self._principal, self._scope, catalog)
            outcome.plan = plan
            logger.info(
                "Reconciliation plan computed",
                extra={"missing_roles": list(plan.role_names), "plan_size": len(plan)},
            )

            if plan.is_empty:
                outcome.run_result = render(
                    ExecutionOutcome(),
                    current,
                    self._required,
                    principal=self._principal,
                    scope=self._scope,
                    catalog=catalog,
                )
            elif not self._config.dry_run:
                outcome.run_result = await self._execute(outcome, ctx, plan, current, catalog)

            self._enter(outcome, ReconcileStage.DONE)

        except (AuthError, QueryError) as e:
            outcome.error = e
            logger.error(
                f"Reconciliation halted during {outcome.stage.value}",
                extra={"error_kind": e.kind.value, "error": e.message},
            )

        outcome.end_time = datetime.now(UTC)
        self._log_result(outcome)
        return outcome

    async def _execute(
        self,
        outcome: ReconcileOutcome,
        ctx: AuthContext,
        plan: ReconciliationPlan,
        current: frozenset[RoleAssignment],
        catalog: dict[str, str],
    ) -> RunResult:
        self._enter(outcome, ReconcileStage.EXECUTING)
        execution = await self._executor.apply(ctx, plan)
        outcome.execution = execution

        # Listing assignments for an unknown principal just returns nothing;
        # only the create call reveals that the object ID does not exist.
        for result in execution.failed:
            if result.error is not None and result.error.kind == GrantErrorKind.PRINCIPAL_NOT_FOUND:
                raise QueryError(QueryErrorKind.PRINCIPAL_NOT_FOUND, result.error.message)

        if self._config.propagation_wait_seconds > 0 and execution.granted:
            logger.info(
                f"Waiting {self._config.propagation_wait_seconds}s for RBAC propagation..."
            )
            await self._sleep(self._config.propagation_wait_seconds)

        self._enter(outcome, ReconcileStage.REVERIFYING)
        try:
            post_current = await self._query.current(ctx, self._principal, self._scope)
        except QueryError as e:
            # Grants were already issued; judge against the pre-execution
            # state so nothing is reported present without having been seen.
            logger.error(
                "Re-verification query failed, reporting against initial state",
                extra={"error_kind": e.kind.value, "error": e.message},
            )
            post_current = current

        return render(
            execution,
            post_current,
            self._required,
            principal=self._principal,
            scope=self._scope,
            catalog=catalog,
        )

    def _enter(self, outcome: ReconcileOutcome, stage: ReconcileStage) -> None:
        logger.debug(
            "Stage transition",
            extra={"from_stage": outcome.stage.value, "to_stage": stage.value},
        )
        outcome.stage = stage

    def _log_result(self, outcome: ReconcileOutcome) -> None:
        """Log the run result with structured data."""
        extra: dict[str, Any] = {
            "principal_id": outcome.principal.principal_id,
            "scope": outcome.scope.resource_id,
            "stage": outcome.stage.value,
            "duration_seconds": outcome.duration_seconds,
            "dry_run": outcome.dry_run,
            "exit_code": outcome.exit_code,
        }
        if outcome.plan is not None:
            extra["plan_size"] = len(outcome.plan)
        if outcome.run_result is not None:
            extra["status"] = outcome.run_result.status.value
            extra["missing_roles"] = [a.role_name for a in outcome.run_result.missing]

        if outcome.error is not None:
            extra["error"] = str(outcome.error)
            logger.error("Reconciliation failed", extra=extra)
        elif outcome.run_result is not None and not outcome.run_result.satisfied:
            logger.warning("Reconciliation incomplete", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
