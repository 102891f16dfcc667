"""Bounded retry with exponential backoff for counter store calls.

Every attempt is capped by a timeout, and the number of attempts is capped
by the policy, so a store call can never block a request indefinitely.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import redis

from careerguard.app.core.config import Settings
from careerguard.app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Retries after the first attempt (default: 1)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation
        attempt_timeout: Per-attempt timeout in seconds (None = no timeout)
        retryable_exceptions: Tuple of exception types that trigger a retry

    Example:
        >>> policy = RetryPolicy(max_retries=2, base_delay=0.1)
        >>> policy.calculate_delay(attempt=1)
        0.2
    """

    max_retries: int = 1
    base_delay: float = 0.05
    max_delay: float = 0.5
    exponential_base: float = 2.0
    attempt_timeout: Optional[float] = 0.5
    retryable_exceptions: Tuple[Type[BaseException], ...] = (
        redis.ConnectionError,
        redis.TimeoutError,
        asyncio.TimeoutError,
    )

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryPolicy":
        return cls(
            max_retries=config.store_max_retries,
            base_delay=config.store_retry_base_delay,
            max_delay=config.store_retry_max_delay,
            attempt_timeout=config.store_timeout_seconds,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Uses exponential backoff: delay = min(base_delay * (exponential_base ^ attempt), max_delay)
        """
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)

    def is_retryable(self, exception: BaseException) -> bool:
        return isinstance(exception, self.retryable_exceptions)


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation: str = "store call",
) -> T:
    """Await ``func()`` under the policy's timeout and retry budget.

    Args:
        func: Zero-argument coroutine factory; called once per attempt
        policy: Retry configuration
        operation: Name used in log messages

    Returns:
        The result of the first successful attempt

    Raises:
        The last exception once the budget is exhausted, or any
        non-retryable exception immediately.
    """
    attempt = 0
    while True:
        try:
            if policy.attempt_timeout is not None:
                return await asyncio.wait_for(func(), timeout=policy.attempt_timeout)
            return await func()
        except Exception as e:
            if not policy.is_retryable(e):
                raise
            if attempt >= policy.max_retries:
                logger.warning(
                    f"Retry budget ({policy.max_retries}) exhausted for {operation}: "
                    f"{type(e).__name__}: {e}"
                )
                raise
            delay = policy.calculate_delay(attempt)
            logger.debug(
                f"Retrying {operation} after {type(e).__name__} "
                f"(attempt {attempt + 1}/{policy.max_retries}, delay {delay:.3f}s)"
            )
            attempt += 1
            await asyncio.sleep(delay)
