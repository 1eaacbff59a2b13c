"""Bounded retry with exponential backoff for Azure SDK calls.

SDK clients are synchronous; calls are pushed to the default executor so the
event loop can drive several grant requests at once.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from azure.core.exceptions import (
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP statuses worth retrying: timeout, throttling, server-side faults
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

JITTER_RATIO = 0.2

# Keyword arguments for every Azure SDK client; call_with_retry is the only
# retry layer, so the pipeline retry policy is disabled.
SDK_CLIENT_OPTIONS: dict[str, Any] = {"retry_total": 0}


@dataclass(frozen=True)
class RetryPolicy:
    """Retry bounds for a single call chain.

    Attributes:
        max_attempts: Total attempts including the first one.
        backoff_base_seconds: Delay before the second attempt; doubles after.
        budget_seconds: Cumulative wall-clock limit for the whole chain.
    """

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    budget_seconds: float = 30.0

    def backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt, jitter included."""
        base = self.backoff_base_seconds * (2 ** (attempt - 1))
        return base + random.uniform(0, base * JITTER_RATIO)


def is_transient(error: BaseException) -> bool:
    """Whether an error is a throttling/network/timeout condition."""
    if isinstance(error, (ServiceRequestError, ServiceResponseError, TimeoutError)):
        return True
    if isinstance(error, HttpResponseError):
        return error.status_code in TRANSIENT_STATUS_CODES
    return False


async def call_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    operation_name: str,
    retryable: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run a blocking call in the executor, retrying transient failures.

    Args:
        operation: Zero-argument callable performing one SDK request.
        policy: Attempt and time bounds.
        operation_name: Human-readable name for logging.
        retryable: Predicate selecting errors that may be retried.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        The operation's return value.

    Raises:
        Exception: The last error once attempts or budget are exhausted, or
            the first non-retryable error unchanged.
    """
    loop = asyncio.get_running_loop()
    started = time.monotonic()
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await loop.run_in_executor(None, operation)
        except Exception as e:
            if not retryable(e):
                raise
            last_error = e

            if attempt >= policy.max_attempts:
                break

            wait_time = policy.backoff(attempt)
            elapsed = time.monotonic() - started
            if elapsed + wait_time > policy.budget_seconds:
                logger.warning(
                    f"{operation_name}: retry budget exhausted",
                    extra={
                        "attempt": attempt,
                        "elapsed_seconds": round(elapsed, 2),
                        "budget_seconds": policy.budget_seconds,
                    },
                )
                break

            logger.warning(
                f"{operation_name} failed, retrying",
                extra={
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "wait_seconds": round(wait_time, 2),
                    "error": str(e),
                },
            )
            await sleep(wait_time)

    # Loop runs at least once, so a retryable error was recorded
    assert last_error is not None, "Retry loop completed without setting last_error"
    raise last_error
