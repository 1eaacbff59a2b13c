"""Caller credentials and security audit logging.

The reconciler only authenticates non-interactively:
- an existing Azure CLI session (operator ran `az login` beforehand),
- a managed identity (system- or user-assigned),
- a federated workload identity token (CI pipelines).

Stored secrets are refused: if any secret-bearing variable is present in the
environment the run stops before a credential is built.
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import (
    AzureCliCredential,
    ManagedIdentityCredential,
    WorkloadIdentityCredential,
)

from .config import CredentialKind

logger = logging.getLogger(__name__)

# Environment variables that indicate stored credential material
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "SECURITY VIOLATION: {env_var} is set. This tool authenticates only through "
    "an existing CLI session, a managed identity or a federated workload identity. "
    "Remove stored credentials from the environment and use federated credentials "
    "for CI (https://learn.microsoft.com/azure/active-directory/workload-identities/)."
)


class SecretlessViolationError(Exception):
    """Raised when secret-based credentials are present in the environment."""

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to run when secret-bearing credential variables are set.

    Raises:
        SecretlessViolationError: If any forbidden variable is non-empty.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.debug("Secretless environment verified", extra={"security_event": "secretless_verified"})


def get_credential(
    kind: CredentialKind,
    client_id: str | None = None,
) -> TokenCredential:
    """Build the caller credential after verifying the environment.

    This is the only place credentials are constructed.

    Args:
        kind: Credential source.
        client_id: Client ID of a user-assigned managed identity; ignored
            for other kinds.

    Raises:
        SecretlessViolationError: If credential secrets are in the environment.
    """
    enforce_secretless_architecture()

    match kind:
        case CredentialKind.CLI:
            logger.info("Using Azure CLI session credential")
            return AzureCliCredential()

        case CredentialKind.MANAGED_IDENTITY:
            if client_id:
                logger.info(
                    "Using user-assigned managed identity",
                    extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
                )
                return ManagedIdentityCredential(client_id=client_id)
            logger.info("Using system-assigned managed identity")
            return ManagedIdentityCredential()

        case CredentialKind.WORKLOAD_IDENTITY:
            # Reads AZURE_TENANT_ID, AZURE_CLIENT_ID and AZURE_FEDERATED_TOKEN_FILE
            logger.info("Using federated workload identity credential")
            return WorkloadIdentityCredential()

        case _:
            raise ValueError(f"Unsupported credential kind: {kind}")


def log_security_audit_event(
    event_type: str,
    principal_id: str,
    target_scope: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of event (role_grant, auth, ...).
        principal_id: Principal the action concerns.
        target_scope: ARM scope being modified.
        action: Action performed, e.g. the role being granted.
        result: Outcome (Granted, AlreadyPresent, Failed).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "principal_id": principal_id,
            "target_scope": target_scope,
            "action": action,
            "result": result,
        },
    )
