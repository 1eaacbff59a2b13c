"""Typed error taxonomy for reconciliation.

AuthError and QueryError halt a run; GrantError never leaves the executor
and is folded into the per-entry execution outcome instead.
"""

from __future__ import annotations

from enum import Enum

from azure.core.exceptions import HttpResponseError

from .retry import is_transient

# ARM error codes seen on role assignment writes
ROLE_ASSIGNMENT_EXISTS_CODES = frozenset({"RoleAssignmentExists"})
AUTHORIZATION_FAILED_CODES = frozenset({"AuthorizationFailed", "LinkedAuthorizationFailed"})
PRINCIPAL_NOT_FOUND_CODES = frozenset({"PrincipalNotFound", "InvalidPrincipalId"})


class AuthErrorKind(str, Enum):
    UNAUTHENTICATED = "Unauthenticated"
    SCOPE_NOT_FOUND = "ScopeNotFound"


class QueryErrorKind(str, Enum):
    UNREACHABLE = "Unreachable"
    PRINCIPAL_NOT_FOUND = "PrincipalNotFound"


class GrantErrorKind(str, Enum):
    ALREADY_EXISTS = "AlreadyExists"
    INSUFFICIENT_CALLER_PRIVILEGE = "InsufficientCallerPrivilege"
    TRANSIENT = "Transient"
    ROLE_NOT_FOUND = "RoleNotFound"
    PRINCIPAL_NOT_FOUND = "PrincipalNotFound"
    REJECTED = "Rejected"


# Kinds whose API message is the only useful explanation for the operator
DETAILED_GRANT_ERROR_KINDS = frozenset(
    {GrantErrorKind.ROLE_NOT_FOUND, GrantErrorKind.PRINCIPAL_NOT_FOUND, GrantErrorKind.REJECTED}
)


REMEDIATION: dict[Enum, str] = {
    AuthErrorKind.UNAUTHENTICATED: (
        "no valid Azure session - sign in out-of-band (az login, managed identity "
        "or federated token) and re-run"
    ),
    AuthErrorKind.SCOPE_NOT_FOUND: (
        "subscription does not exist or is not visible to the caller - check the "
        "subscription ID and the caller's access"
    ),
    QueryErrorKind.UNREACHABLE: (
        "authorization API unreachable after retries - check network and Azure status"
    ),
    QueryErrorKind.PRINCIPAL_NOT_FOUND: (
        "principal not found in the tenant - check the object ID (not the application ID)"
    ),
    GrantErrorKind.INSUFFICIENT_CALLER_PRIVILEGE: (
        "insufficient privilege to grant - request Owner/User-Access-Administrator assistance"
    ),
    GrantErrorKind.TRANSIENT: "throttled or timed out after retries - re-run later",
    GrantErrorKind.ROLE_NOT_FOUND: "no role definition with this name exists at the scope",
    GrantErrorKind.PRINCIPAL_NOT_FOUND: (
        "principal not found in the tenant - check the object ID (not the application ID)"
    ),
    GrantErrorKind.REJECTED: "grant rejected by the authorization API",
}


class ReconcileError(Exception):
    """Base for typed reconciliation errors."""

    def __init__(self, kind: Enum, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def remediation(self) -> str:
        return REMEDIATION.get(self.kind, self.message)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class AuthError(ReconcileError):
    """Session is missing or the target subscription cannot be selected."""

    kind: AuthErrorKind


class QueryError(ReconcileError):
    """Current role assignments could not be read."""

    kind: QueryErrorKind


class GrantError(ReconcileError):
    """A single role assignment could not be created."""

    kind: GrantErrorKind

    @property
    def reason(self) -> str:
        """Remediation text, with the API's own code and message where they explain it."""
        if self.kind in DETAILED_GRANT_ERROR_KINDS:
            return f"{self.remediation} ({self.message})"
        return self.remediation


def error_code(error: HttpResponseError) -> str | None:
    """ARM error code of an SDK error, if the response carried one."""
    return getattr(error.error, "code", None) if error.error else None


def classify_grant_error(error: BaseException) -> GrantError:
    """Map an SDK exception raised by a create call onto GrantErrorKind.

    Only an explicit RoleAssignmentExists counts as already present; other
    conflicts (e.g. RoleAssignmentUpdateNotPermitted) are rejections.
    """
    if isinstance(error, GrantError):
        return error
    if is_transient(error):
        return GrantError(GrantErrorKind.TRANSIENT, str(error))
    if isinstance(error, HttpResponseError):
        code = error_code(error)
        detail = f"{code or error.status_code}: {error.message}"
        if code in ROLE_ASSIGNMENT_EXISTS_CODES:
            return GrantError(GrantErrorKind.ALREADY_EXISTS, detail)
        if code in PRINCIPAL_NOT_FOUND_CODES:
            return GrantError(GrantErrorKind.PRINCIPAL_NOT_FOUND, detail)
        if error.status_code == 403 or code in AUTHORIZATION_FAILED_CODES:
            return GrantError(GrantErrorKind.INSUFFICIENT_CALLER_PRIVILEGE, detail)
        return GrantError(GrantErrorKind.REJECTED, detail)
    return GrantError(GrantErrorKind.REJECTED, f"{type(error).__name__}: {error}")
