"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import (  # noqa: E402
    DEFAULT_SUBSCRIPTION_ID,
    MockAuthorizationClient,
    MockAuthorizationState,
    create_mock_credential,
)

from rbac_reconciler.models import AuthContext, Principal, Scope  # noqa: E402
from rbac_reconciler.retry import RetryPolicy  # noqa: E402

PRINCIPAL_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"


@pytest.fixture
def principal() -> Principal:
    return Principal(PRINCIPAL_ID)


@pytest.fixture
def scope() -> Scope:
    return Scope(DEFAULT_SUBSCRIPTION_ID)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Three attempts without real backoff delays."""
    return RetryPolicy(max_attempts=3, backoff_base_seconds=0.0, budget_seconds=30.0)


@pytest.fixture
def auth_state() -> MockAuthorizationState:
    return MockAuthorizationState(subscription_id=DEFAULT_SUBSCRIPTION_ID)


@pytest.fixture
def auth_client(auth_state: MockAuthorizationState) -> MockAuthorizationClient:
    return MockAuthorizationClient(auth_state)


@pytest.fixture
def auth_context(scope: Scope) -> AuthContext:
    return AuthContext(credential=create_mock_credential(), scope=scope, caller_id="caller")
