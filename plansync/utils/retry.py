"""Retry utilities for handling transient tracker failures.

Provides a bounded retry policy with exponential backoff for async tracker
calls. Which errors are retried, and how often, depends on the tracker
error taxonomy:

    - RateLimitedError: up to ``max_attempts`` attempts, honoring the
      tracker's Retry-After hint when it gives one
    - UnknownTrackerError: up to ``unknown_error_attempts`` attempts
    - anything else (AuthFailedError, DuplicateResourceError, ...): no retry

Key Exports:
    RetryPolicy: Attempt limits and backoff parameters.
    call_with_retry: Run an async callable under a policy.

Example:
    >>> policy = RetryPolicy(max_attempts=3, base_delay=1.0, backoff_factor=2.0)
    >>> ref = await call_with_retry(
    ...     lambda: tracker.create(kind, payload),
    ...     policy,
    ...     operation="create_issue",
    ... )

Backoff Formula:
    delay = min(base_delay * backoff_factor ** (attempt - 1), max_delay)
    For base_delay=1.0, backoff_factor=2.0: 1s, 2s, 4s, ...
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import structlog

from plansync.exceptions import RateLimitedError, TrackerError, UnknownTrackerError

if TYPE_CHECKING:
    from plansync.config.settings import SyncOptions

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_attempts: Attempts allowed for rate-limited calls
        unknown_error_attempts: Attempts allowed for unclassified errors
        backoff_factor: Multiplier applied to the delay after each attempt
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
    """

    max_attempts: int = 3
    unknown_error_attempts: int = 2
    backoff_factor: float = 2.0
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_options(cls, options: "SyncOptions") -> "RetryPolicy":
        return cls(
            max_attempts=options.max_attempts,
            unknown_error_attempts=options.unknown_error_attempts,
            backoff_factor=options.backoff_factor,
            base_delay=options.base_delay,
            max_delay=options.max_delay,
        )

    def attempts_for(self, error: BaseException) -> int:
        """Total attempts allowed when ``error`` is the latest failure."""
        if isinstance(error, RateLimitedError):
            return self.max_attempts
        if isinstance(error, UnknownTrackerError):
            return self.unknown_error_attempts
        return 1

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            return min(max(error.retry_after, 0.0), self.max_delay)
        return min(self.base_delay * self.backoff_factor ** (attempt - 1), self.max_delay)


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation: str,
    on_attempt: Callable[[int], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``func`` until it succeeds or the policy gives up.

    Args:
        func: Zero-argument async callable performing one remote call
        policy: Retry limits and backoff
        operation: Name used in log events
        on_attempt: Called with the attempt number before each attempt
        sleep: Awaitable used for backoff delays

    Returns:
        Whatever ``func`` returns on its first successful attempt

    Raises:
        TrackerError: The last error, once attempts are exhausted or the
            error is not retryable. Non-tracker exceptions propagate
            immediately.

    Note:
        Each retry is logged at WARNING level and exhaustion at ERROR level.
    """
    attempt = 0
    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return await func()
        except TrackerError as e:
            allowed = policy.attempts_for(e)
            if attempt >= allowed:
                if allowed > 1:
                    log.error(
                        "retry_exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=str(e),
                    )
                raise

            delay = policy.delay_for(attempt, e)
            log.warning(
                "retry_attempt",
                operation=operation,
                attempt=attempt,
                max_attempts=allowed,
                delay=delay,
                error=str(e),
            )
            await sleep(delay)
