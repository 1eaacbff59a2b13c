"""Authenticated session check and subscription selection.

The session is validated by acquiring an ARM token from the configured
credential. Nothing here prompts: a missing or expired session is reported
as AuthError and signing in is left to the operator.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.mgmt.resource import SubscriptionClient

from .errors import AuthError, AuthErrorKind
from .models import AuthContext, Scope
from .retry import SDK_CLIENT_OPTIONS, RetryPolicy, call_with_retry, is_transient

logger = logging.getLogger(__name__)

MANAGEMENT_TOKEN_SCOPE = "https://management.azure.com/.default"

# Subscriptions in these states reject writes
INACCESSIBLE_SUBSCRIPTION_STATES = frozenset({"Disabled", "Deleted"})


def decode_token_claims(token: str) -> dict[str, Any]:
    """Read the (unverified) claims of a JWT access token.

    Used only to name the caller in logs and reports. Returns an empty dict
    for tokens that are not JWTs.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (ValueError, UnicodeDecodeError):
        return {}
    return claims if isinstance(claims, dict) else {}


class AuthSession:
    """Validates the caller's session and binds it to one subscription."""

    def __init__(
        self,
        credential: TokenCredential,
        scope: Scope,
        *,
        subscription_client: SubscriptionClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._credential = credential
        self._scope = scope
        self._subscriptions = subscription_client or SubscriptionClient(
            credential=credential, **SDK_CLIENT_OPTIONS
        )
        self._retry = retry_policy or RetryPolicy()

    async def ensure(self) -> AuthContext:
        """Verify the session and select the target subscription.

        Returns:
            AuthContext carrying the caller identity and selected scope.

        Raises:
            AuthError: UNAUTHENTICATED when no valid token can be obtained,
                SCOPE_NOT_FOUND when the subscription is missing or inaccessible.
        """
        claims = await self._check_session()
        caller_id = claims.get("oid") or claims.get("appid") or claims.get("azp") or "unknown"
        subscription = await self._select_subscription()

        context = AuthContext(
            credential=self._credential,
            scope=self._scope,
            caller_id=caller_id,
            subscription_name=getattr(subscription, "display_name", None),
            tenant_id=claims.get("tid") or getattr(subscription, "tenant_id", None),
        )
        logger.info(
            "Authenticated session bound to subscription",
            extra={
                "caller_id": context.caller_id,
                "subscription_id": self._scope.subscription_id,
                "subscription_name": context.subscription_name,
            },
        )
        return context

    async def _check_session(self) -> dict[str, Any]:
        try:
            token = await call_with_retry(
                lambda: self._credential.get_token(MANAGEMENT_TOKEN_SCOPE),
                policy=self._retry,
                operation_name="Token acquisition",
            )
        except ClientAuthenticationError as e:
            raise AuthError(AuthErrorKind.UNAUTHENTICATED, f"No valid session: {e.message}") from e
        except AzureError as e:
            raise AuthError(
                AuthErrorKind.UNAUTHENTICATED, f"Session could not be validated: {e}"
            ) from e
        except TimeoutError as e:
            raise AuthError(AuthErrorKind.UNAUTHENTICATED, "Token request timed out") from e

        if token.expires_on <= int(time.time()):
            raise AuthError(AuthErrorKind.UNAUTHENTICATED, "Session token has expired")

        return decode_token_claims(token.token)

    async def _select_subscription(self) -> Any:
        subscription_id = self._scope.subscription_id
        try:
            subscription = await call_with_retry(
                lambda: self._subscriptions.subscriptions.get(subscription_id),
                policy=self._retry,
                operation_name="Subscription lookup",
            )
        except ClientAuthenticationError as e:
            raise AuthError(AuthErrorKind.UNAUTHENTICATED, f"No valid session: {e.message}") from e
        except ResourceNotFoundError as e:
            raise AuthError(
                AuthErrorKind.SCOPE_NOT_FOUND, f"Subscription {subscription_id} not found"
            ) from e
        except HttpResponseError as e:
            if is_transient(e):
                reason = "could not be reached"
            else:
                reason = f"is not accessible (HTTP {e.status_code})"
            raise AuthError(
                AuthErrorKind.SCOPE_NOT_FOUND, f"Subscription {subscription_id} {reason}"
            ) from e
        except (AzureError, TimeoutError) as e:
            raise AuthError(
                AuthErrorKind.SCOPE_NOT_FOUND,
                f"Subscription {subscription_id} could not be reached: {e}",
            ) from e

        state = getattr(subscription, "state", None)
        state_value = getattr(state, "value", state)
        if state_value in INACCESSIBLE_SUBSCRIPTION_STATES:
            raise AuthError(
                AuthErrorKind.SCOPE_NOT_FOUND,
                f"Subscription {subscription_id} is {state_value}",
            )
        return subscription
