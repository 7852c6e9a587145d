"""
Retry logic with exponential backoff.
"""

import asyncio
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        backoff_factor: float = 2.0,
        jitter: bool = True
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is zero based)."""
        delay = min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    error_types: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Await ``operation()`` until it succeeds or the retry budget is spent.

    Only exceptions in ``error_types`` are retried; anything else propagates
    immediately. The last retryable exception is re-raised once the budget
    is exhausted.

    Args:
        operation: Zero-argument coroutine function
        config: Retry budget and backoff
        error_types: Exception types that trigger a retry
        on_retry: Called with (attempt, error) before each retry

    Returns:
        Whatever ``operation`` returns
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await operation()
        except error_types as e:
            if attempt == config.max_retries:
                raise

            if on_retry is not None:
                on_retry(attempt, e)

            delay = config.delay_for(attempt)
            logger.debug(
                "Retrying operation",
                attempt=attempt + 1,
                max_attempts=config.max_retries + 1,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            if delay > 0:
                await asyncio.sleep(delay)

    # range() always runs at least once and either returns or raises
    raise RuntimeError("unreachable")
