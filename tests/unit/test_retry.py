"""Tests for plansync.utils.retry."""

from unittest.mock import AsyncMock

import pytest

from plansync.config.settings import SyncOptions
from plansync.exceptions import (
    AuthFailedError,
    DuplicateResourceError,
    RateLimitedError,
    UnknownTrackerError,
)
from plansync.utils.retry import RetryPolicy, call_with_retry


@pytest.fixture
def sleep():
    return AsyncMock()


class TestRetryPolicy:
    def test_from_options(self):
        policy = RetryPolicy.from_options(SyncOptions(max_attempts=5, base_delay=0.5))

        assert policy.max_attempts == 5
        assert policy.base_delay == 0.5
        assert policy.unknown_error_attempts == 2

    def test_attempts_per_error_kind(self):
        policy = RetryPolicy(max_attempts=4, unknown_error_attempts=2)

        assert policy.attempts_for(RateLimitedError("slow down")) == 4
        assert policy.attempts_for(UnknownTrackerError("boom")) == 2
        assert policy.attempts_for(AuthFailedError("nope")) == 1
        assert policy.attempts_for(DuplicateResourceError("dup")) == 1

    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, backoff_factor=2.0, max_delay=5.0)

        assert [policy.delay_for(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_retry_after_hint_is_honored_and_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)

        assert policy.delay_for(1, RateLimitedError("wait", retry_after=7)) == 7
        assert policy.delay_for(1, RateLimitedError("wait", retry_after=120)) == 30.0


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, sleep):
        func = AsyncMock(return_value="ok")

        assert await call_with_retry(func, RetryPolicy(), "op", sleep=sleep) == "ok"
        func.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limited_then_success(self, sleep):
        func = AsyncMock(side_effect=[RateLimitedError("slow"), "ok"])
        attempts = []

        result = await call_with_retry(
            func, RetryPolicy(base_delay=0.25), "op", on_attempt=attempts.append, sleep=sleep
        )

        assert result == "ok"
        assert attempts == [1, 2]
        sleep.assert_awaited_once_with(0.25)

    @pytest.mark.asyncio
    async def test_rate_limited_exhausted(self, sleep):
        func = AsyncMock(side_effect=RateLimitedError("slow"))

        with pytest.raises(RateLimitedError):
            await call_with_retry(func, RetryPolicy(max_attempts=3), "op", sleep=sleep)

        assert func.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_unknown_error_retried_once(self, sleep):
        func = AsyncMock(side_effect=UnknownTrackerError("boom"))

        with pytest.raises(UnknownTrackerError):
            await call_with_retry(func, RetryPolicy(), "op", sleep=sleep)

        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_auth_failure_not_retried(self, sleep):
        func = AsyncMock(side_effect=AuthFailedError("bad token"))

        with pytest.raises(AuthFailedError):
            await call_with_retry(func, RetryPolicy(), "op", sleep=sleep)

        func.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_non_tracker_errors_propagate(self, sleep):
        func = AsyncMock(side_effect=ValueError("bug"))

        with pytest.raises(ValueError):
            await call_with_retry(func, RetryPolicy(), "op", sleep=sleep)

        func.assert_awaited_once()
