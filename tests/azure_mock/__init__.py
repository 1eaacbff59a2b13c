"""Azure API Mock for Integration Testing.

In-memory stand-ins for the authorization and subscription APIs so the full
reconciliation flow can run without Azure connectivity.

Key Features:
- Built-in role definitions and an in-memory role assignment store
- Per-role error injection (forbidden, throttled, network, conflict races)
- Simulated replication lag for freshly created assignments
- Non-interactive credential simulation with JWT-shaped tokens

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        ctx.state.fail_grant("Reader", forbidden)
        outcome = await Reconciler(config).reconcile()
        assert ctx.state.grant_attempts("Reader") == 1
"""

from .authorization import (
    BUILTIN_ROLES,
    MockAuthorizationClient,
    MockAuthorizationState,
    MockSubscriptionClient,
    forbidden,
    http_error,
    network_error,
    throttled,
)
from .context import DEFAULT_SUBSCRIPTION_ID, MockAzureContext
from .credential import MockCredential, create_mock_credential, make_jwt
from .transport import ThrottlingTransport

__all__ = [
    "BUILTIN_ROLES",
    "DEFAULT_SUBSCRIPTION_ID",
    "MockAuthorizationClient",
    "MockAuthorizationState",
    "MockAzureContext",
    "MockCredential",
    "MockSubscriptionClient",
    "ThrottlingTransport",
    "create_mock_credential",
    "forbidden",
    "http_error",
    "make_jwt",
    "network_error",
    "throttled",
]
