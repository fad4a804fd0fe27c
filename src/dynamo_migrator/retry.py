"""
Bounded exponential-backoff retry for async operations.

The default schedule matches what the batch writer needs under DynamoDB
throttling: 7 retries (8 attempts in total), starting at one second and
doubling each time. The operation is told which attempt it is on so it can
log retries differently from the first call.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry schedule.

    Attributes:
        retries: Retries after the first attempt
        factor: Multiplier applied to the delay after each failure
        min_delay: Delay in seconds before the first retry
        max_delay: Upper bound for any single delay (None: unbounded)
    """

    retries: int = 7
    factor: float = 2.0
    min_delay: float = 1.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.min_delay < 0:
            raise ValueError("min_delay must be >= 0")
        if self.max_delay is not None and self.max_delay < self.min_delay:
            raise ValueError("max_delay must be >= min_delay")

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        delay = self.min_delay * self.factor ** (attempt - 1)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


DEFAULT_RETRY_POLICY = RetryPolicy()


async def async_retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call `operation` until it succeeds or the policy runs out of attempts.

    Args:
        operation: Async callable taking the attempt number (starting at 1)
        policy: Retry schedule
        sleep: Awaitable sleep used between attempts

    Returns:
        Whatever the first successful attempt returned

    Raises:
        The exception from the last attempt, unchanged, once all attempts
        have failed
    """
    attempt = 1
    while True:
        try:
            return await operation(attempt)
        except Exception as e:
            if attempt >= policy.max_attempts:
                raise
            delay = policy.delay_after(attempt)
            logger.debug(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt,
                policy.max_attempts,
                e,
                delay,
            )
            await sleep(delay)
            attempt += 1
