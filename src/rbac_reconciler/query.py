"""Reads a principal's current role assignments from the authorization API.

Results are fetched fresh on every call. Other actors may change role
assignments at any time, so nothing about assignments is cached.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core.exceptions import AzureError, HttpResponseError
from azure.mgmt.authorization import AuthorizationManagementClient

from .errors import QueryError, QueryErrorKind
from .models import AuthContext, Principal, RoleAssignment, Scope
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


def _guid_of(resource_id: str | None) -> str:
    """Trailing GUID of a roleDefinitions resource ID, lowercased."""
    if not resource_id:
        return ""
    return resource_id.rstrip("/").rsplit("/", 1)[-1].lower()


class RoleAssignmentQuery:
    """Lists role assignments for (principal, scope)."""

    def __init__(
        self,
        client: AuthorizationManagementClient,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._client = client
        self._retry = retry_policy or RetryPolicy()
        # Role definitions are static metadata; assignments are never cached
        self._definitions: dict[str, dict[str, str]] = {}

    async def current(
        self,
        ctx: AuthContext,
        principal: Principal,
        scope: Scope,
    ) -> frozenset[RoleAssignment]:
        """Fetch assignments that apply to the principal at the scope.

        Assignments at the subscription or above it count; narrower ones
        (resource groups, resources) do not. An empty set is a valid answer,
        and is also what an unknown principal yields.

        Raises:
            QueryError: UNREACHABLE once retries are exhausted or the API
                refuses the read.
        """
        if ctx.scope != scope:
            raise ValueError(f"Context is bound to {ctx.scope}, not {scope}")

        names_by_guid = await self._definitions_for(scope)
        raw = await self._read(
            lambda: list(
                self._client.role_assignments.list_for_scope(
                    scope.resource_id,
                    filter=f"principalId eq '{principal.principal_id}'",
                )
            ),
            operation_name="Role assignment list",
        )

        assignments: set[RoleAssignment] = set()
        skipped = 0
        for item in raw:
            if (item.principal_id or "").lower() != principal.principal_id.lower():
                continue
            if not scope.covers(item.scope or ""):
                skipped += 1
                continue
            guid = _guid_of(item.role_definition_id)
            assignments.add(
                RoleAssignment(
                    principal=principal,
                    scope=scope,
                    role_name=names_by_guid.get(guid, guid),
                    assignment_id=item.id,
                )
            )

        logger.info(
            "Current role assignments read",
            extra={
                "principal_id": principal.principal_id,
                "scope": scope.resource_id,
                "assignments": sorted(a.role_name for a in assignments),
                "narrower_scope_skipped": skipped,
            },
        )
        return frozenset(assignments)

    async def role_catalog(self, scope: Scope) -> dict[str, str]:
        """Canonical role names visible at the scope, keyed by casefolded name."""
        names = await self._definitions_for(scope)
        return {name.casefold(): name for name in names.values()}

    async def _definitions_for(self, scope: Scope) -> dict[str, str]:
        cached = self._definitions.get(scope.resource_id)
        if cached is not None:
            return cached

        definitions = await self._read(
            lambda: list(self._client.role_definitions.list(scope.resource_id)),
            operation_name="Role definition list",
        )
        names = {
            _guid_of(d.id): d.role_name for d in definitions if d.role_name and d.id
        }
        self._definitions[scope.resource_id] = names
        logger.debug("Role definitions loaded", extra={"count": len(names)})
        return names

    async def _read(self, operation: Any, *, operation_name: str) -> Any:
        try:
            return await call_with_retry(
                operation, policy=self._retry, operation_name=operation_name
            )
        except HttpResponseError as e:
            raise QueryError(
                QueryErrorKind.UNREACHABLE,
                f"{operation_name} failed (HTTP {e.status_code}): {e.message}",
            ) from e
        except (AzureError, TimeoutError) as e:
            raise QueryError(QueryErrorKind.UNREACHABLE, f"{operation_name} failed: {e}") from e
