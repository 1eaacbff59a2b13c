"""Configuration management with validation.

Inputs are validated at load time so a misconfigured run fails before any
Azure call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum

from .retry import RetryPolicy


class PrincipalType(str, Enum):
    """Kinds of identity whose role grants are reconciled."""

    SERVICE_PRINCIPAL = "ServicePrincipal"
    FEDERATED_IDENTITY = "FederatedIdentity"


class CredentialKind(str, Enum):
    """Non-interactive credential sources for the caller."""

    CLI = "cli"
    MANAGED_IDENTITY = "managed_identity"
    WORKLOAD_IDENTITY = "workload_identity"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


DEFAULT_REQUIRED_ROLES: tuple[str, ...] = ("Contributor",)

DEFAULT_MAX_CONCURRENT_GRANTS = 4
MAX_CONCURRENT_GRANTS_LIMIT = 16

DEFAULT_PROPAGATION_WAIT_SECONDS = 0
MAX_PROPAGATION_WAIT_SECONDS = 300

DEFAULT_RETRY_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_RETRY_BUDGET_SECONDS = 30.0

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max access spec
MAX_ROLE_NAME_LENGTH = 512

VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


def parse_role_list(value: str | None) -> tuple[str, ...]:
    """Split a comma-separated role list, dropping blanks.

    Commas are used because built-in role names contain spaces
    (e.g. "Storage Blob Data Contributor").
    """
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Config:
    """Reconciliation run configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    principal_id: str
    subscription_id: str
    principal_type: PrincipalType = PrincipalType.SERVICE_PRINCIPAL
    required_roles: tuple[str, ...] = DEFAULT_REQUIRED_ROLES

    credential_kind: CredentialKind = CredentialKind.CLI
    managed_identity_client_id: str | None = None

    max_concurrent_grants: int = DEFAULT_MAX_CONCURRENT_GRANTS
    propagation_wait_seconds: int = DEFAULT_PROPAGATION_WAIT_SECONDS
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    dry_run: bool = False

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.principal_id:
            errors.append("RBAC_PRINCIPAL_ID (--principal) is required")
        elif not re.match(VALID_GUID_PATTERN, self.principal_id.lower()):
            errors.append(f"Principal ID must be a valid GUID: {self.principal_id}")

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID (--scope) is required")
        elif not re.match(VALID_GUID_PATTERN, self.subscription_id.lower()):
            errors.append(f"Subscription ID must be a valid GUID: {self.subscription_id}")

        if not self.required_roles:
            errors.append("At least one required role must be given")
        for role in self.required_roles:
            if not role or not role.strip():
                errors.append("Role names cannot be blank")
            elif len(role) > MAX_ROLE_NAME_LENGTH:
                errors.append(f"Role name exceeds {MAX_ROLE_NAME_LENGTH} characters: {role[:40]}...")
            elif "'" in role:
                # Role names are interpolated into OData filters
                errors.append(f"Role name must not contain quotes: {role}")

        if not 1 <= self.max_concurrent_grants <= MAX_CONCURRENT_GRANTS_LIMIT:
            errors.append(
                f"MAX_CONCURRENT_GRANTS must be between 1 and {MAX_CONCURRENT_GRANTS_LIMIT}"
            )

        if not 0 <= self.propagation_wait_seconds <= MAX_PROPAGATION_WAIT_SECONDS:
            errors.append(
                f"RBAC_PROPAGATION_WAIT must be between 0 and {MAX_PROPAGATION_WAIT_SECONDS} seconds"
            )

        if self.retry.max_attempts < 1:
            errors.append("RETRY_MAX_ATTEMPTS must be at least 1")
        if self.retry.backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE cannot be negative")
        if self.retry.budget_seconds <= 0:
            errors.append("RETRY_BUDGET_SECONDS must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Keyword overrides that are not None replace the environment value,
        which lets command-line flags take precedence.

        Environment Variables:
            RBAC_PRINCIPAL_ID: Object ID of the principal to reconcile
            RBAC_PRINCIPAL_TYPE: ServicePrincipal or FederatedIdentity
            AZURE_SUBSCRIPTION_ID: Target subscription (the reconciliation scope)
            RBAC_REQUIRED_ROLES: Comma-separated role names (default: Contributor)
            AZURE_CREDENTIAL_KIND: cli, managed_identity or workload_identity
            MANAGED_IDENTITY_CLIENT_ID: Client ID for a user-assigned identity
            MAX_CONCURRENT_GRANTS: Parallel grant requests (default: 4)
            RBAC_PROPAGATION_WAIT: Seconds to wait before re-verifying (default: 0)
            RETRY_MAX_ATTEMPTS: Attempts per Azure call (default: 3)
            RETRY_BACKOFF_BASE: First backoff delay in seconds (default: 1)
            RETRY_BUDGET_SECONDS: Cumulative retry budget per call (default: 30)
            DRY_RUN: If "true", plan without granting (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_principal_type(value: str | None) -> PrincipalType:
            if not value:
                return PrincipalType.SERVICE_PRINCIPAL
            try:
                return PrincipalType(value)
            except ValueError as e:
                valid = [t.value for t in PrincipalType]
                raise ConfigurationError(f"RBAC_PRINCIPAL_TYPE must be one of {valid}: {value}") from e

        def get_credential_kind(value: str | None) -> CredentialKind:
            if not value:
                return CredentialKind.CLI
            try:
                return CredentialKind(value)
            except ValueError as e:
                valid = [k.value for k in CredentialKind]
                raise ConfigurationError(
                    f"AZURE_CREDENTIAL_KIND must be one of {valid}: {value}"
                ) from e

        values: dict[str, object] = {
            "principal_id": os.environ.get("RBAC_PRINCIPAL_ID", ""),
            "subscription_id": os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            "principal_type": get_principal_type(os.environ.get("RBAC_PRINCIPAL_TYPE")),
            "required_roles": parse_role_list(os.environ.get("RBAC_REQUIRED_ROLES"))
            or DEFAULT_REQUIRED_ROLES,
            "credential_kind": get_credential_kind(os.environ.get("AZURE_CREDENTIAL_KIND")),
            "managed_identity_client_id": os.environ.get("MANAGED_IDENTITY_CLIENT_ID"),
            "max_concurrent_grants": get_int("MAX_CONCURRENT_GRANTS", DEFAULT_MAX_CONCURRENT_GRANTS),
            "propagation_wait_seconds": get_int(
                "RBAC_PROPAGATION_WAIT", DEFAULT_PROPAGATION_WAIT_SECONDS
            ),
            "retry": RetryPolicy(
                max_attempts=get_int("RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
                backoff_base_seconds=get_float(
                    "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
                ),
                budget_seconds=get_float("RETRY_BUDGET_SECONDS", DEFAULT_RETRY_BUDGET_SECONDS),
            ),
            "dry_run": get_bool("DRY_RUN", False),
        }

        for key, value in overrides.items():
            if key not in values:
                raise ConfigurationError(f"Unknown configuration field: {key}")
            if value is None or value == ():
                continue
            if key == "principal_type" and isinstance(value, str):
                value = get_principal_type(value)
            elif key == "credential_kind" and isinstance(value, str):
                value = get_credential_kind(value)
            values[key] = value

        return cls(**values)  # type: ignore[arg-type]
