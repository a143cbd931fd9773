"""Bounded exponential-backoff-with-jitter retries for async operations.

Cancellation is never retried: a cancelled task or an expired `wait_for`
deadline surfaces as `asyncio.CancelledError` at the next await (the attempt
itself, the pre-attempt checkpoint, or the backoff sleep) and propagates
straight out of the loop.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from payroute.common.errors import (
    CircuitOpenError,
    InvalidRequestError,
    NotSupportedError,
    ProviderDeclinedError,
    RetryExhaustedError,
)
from payroute.common.logging import logger

T = TypeVar("T")

JITTER_RATIO = 0.15


def default_retryable(exc: BaseException) -> bool:
    """Any error is retryable except cancellation."""

    return not isinstance(exc, asyncio.CancelledError)


def provider_retryable(exc: BaseException) -> bool:
    """Retry transient provider failures only.

    Declines, validation failures, missing capabilities and an open circuit
    will not change on a second attempt.
    """

    if not default_retryable(exc):
        return False
    return not isinstance(exc, (ProviderDeclinedError, InvalidRequestError, NotSupportedError, CircuitOpenError))


@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 0.1
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: bool = True
    retryable: Callable[[BaseException], bool] = default_retryable

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt + 1` (attempt is 0-indexed)."""

        delay = min(self.initial_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter:
            delay *= random.uniform(1 - JITTER_RATIO, 1 + JITTER_RATIO)
        return delay


@dataclass
class RetryResult:
    attempts: int = 0
    last_error: BaseException | None = None
    delays: list[float] = field(default_factory=list)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    result: RetryResult | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    label: str = "operation",
) -> T:
    """Run `fn` up to `policy.max_retries + 1` times.

    Non-retryable errors are re-raised untouched after the first failure.
    Exhaustion raises `RetryExhaustedError` chained from the last error.
    """

    policy = policy or RetryPolicy()
    result = result if result is not None else RetryResult()
    last_error: BaseException | None = None

    for attempt in range(policy.max_retries + 1):
        # Deliver any pending cancellation before starting another attempt.
        await asyncio.sleep(0)
        result.attempts = attempt + 1
        try:
            return await fn()
        except Exception as exc:
            last_error = exc
            result.last_error = exc
            if not policy.retryable(exc):
                logger.info("retry_aborted label=%s attempt=%s non_retryable=%s", label, attempt + 1, exc)
                raise
            if attempt == policy.max_retries:
                break
            delay = policy.delay_for(attempt)
            result.delays.append(delay)
            logger.warning(
                "retrying label=%s attempt=%s/%s backoff_s=%.3f error=%s",
                label,
                attempt + 1,
                policy.max_retries + 1,
                delay,
                exc,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await asyncio.sleep(delay)

    logger.error("retries_exhausted label=%s attempts=%s error=%s", label, result.attempts, last_error)
    raise RetryExhaustedError(result.attempts, last_error) from last_error
