"""Tests for bounded retry with backoff."""

from __future__ import annotations

import pytest
from azure_mock import forbidden, network_error, throttled

from rbac_reconciler.retry import RetryPolicy, call_with_retry, is_transient


class _Flaky:
    """Callable failing with the given errors, then returning "ok"."""

    def __init__(self, *errors: Exception) -> None:
        self._errors = list(errors)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return "ok"


class _SleepRecorder:
    def __init__(self) -> None:
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


class TestIsTransient:
    def test_network_errors_are_transient(self) -> None:
        assert is_transient(network_error())
        assert is_transient(TimeoutError())

    def test_throttling_is_transient(self) -> None:
        assert is_transient(throttled())

    def test_forbidden_is_not_transient(self) -> None:
        assert not is_transient(forbidden())

    def test_plain_exception_is_not_transient(self) -> None:
        assert not is_transient(ValueError("bad"))


class TestRetryPolicy:
    def test_backoff_doubles_with_bounded_jitter(self) -> None:
        policy = RetryPolicy(backoff_base_seconds=1.0)
        for attempt, base in ((1, 1.0), (2, 2.0), (3, 4.0)):
            wait = policy.backoff(attempt)
            assert base <= wait <= base * 1.2


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        op = _Flaky()
        result = await call_with_retry(op, policy=RetryPolicy(), operation_name="op")
        assert result == "ok"
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_transient_then_success(self) -> None:
        op = _Flaky(throttled(), network_error())
        sleep = _SleepRecorder()

        result = await call_with_retry(
            op, policy=RetryPolicy(backoff_base_seconds=1.0), operation_name="op", sleep=sleep
        )

        assert result == "ok"
        assert op.calls == 3
        assert len(sleep.waits) == 2
        assert 1.0 <= sleep.waits[0] <= 1.2
        assert 2.0 <= sleep.waits[1] <= 2.4

    @pytest.mark.asyncio
    async def test_attempts_bounded(self) -> None:
        op = _Flaky(*(throttled() for _ in range(5)))
        sleep = _SleepRecorder()

        with pytest.raises(Exception) as exc_info:
            await call_with_retry(op, policy=RetryPolicy(), operation_name="op", sleep=sleep)

        assert is_transient(exc_info.value)
        assert op.calls == 3
        assert len(sleep.waits) == 2

    @pytest.mark.asyncio
    async def test_non_transient_attempted_once(self) -> None:
        op = _Flaky(forbidden())
        sleep = _SleepRecorder()

        with pytest.raises(Exception) as exc_info:
            await call_with_retry(op, policy=RetryPolicy(), operation_name="op", sleep=sleep)

        assert getattr(exc_info.value, "status_code", None) == 403
        assert op.calls == 1
        assert sleep.waits == []

    @pytest.mark.asyncio
    async def test_budget_stops_retries(self) -> None:
        """A wait that would overrun the cumulative budget is not taken."""
        op = _Flaky(throttled(), throttled())
        sleep = _SleepRecorder()
        policy = RetryPolicy(max_attempts=3, backoff_base_seconds=5.0, budget_seconds=2.0)

        with pytest.raises(Exception):
            await call_with_retry(op, policy=policy, operation_name="op", sleep=sleep)

        assert op.calls == 1
        assert sleep.waits == []

    @pytest.mark.asyncio
    async def test_custom_retryable_predicate(self) -> None:
        op = _Flaky(ValueError("flaky"))
        result = await call_with_retry(
            op,
            policy=RetryPolicy(backoff_base_seconds=0.0),
            operation_name="op",
            retryable=lambda e: isinstance(e, ValueError),
        )
        assert result == "ok"
        assert op.calls == 2
