"""
Retry with backoff for opening external resources.

Only startup paths retry. Request paths fail fast and let the caller (or the
payment provider's redelivery) decide.
"""

import asyncio
import functools
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from shared.logging import get_logger


class RetryConfig:
    """Exponential backoff settings."""

    def __init__(self, max_attempts: int = 3, base_delay: float = 0.5,
                 max_delay: float = 5.0, jitter: float = 0.1):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(-delay * self.jitter, delay * self.jitter)
        return max(0.0, delay)


class RetryError(Exception):
    """Every attempt failed; ``last_exception`` holds the final cause."""

    def __init__(self, operation: str, last_exception: BaseException, attempts: int):
        super().__init__(f"{operation} failed after {attempts} attempts: {last_exception}")
        self.operation = operation
        self.last_exception = last_exception
        self.attempts = attempts


def retry_on_exception(exceptions: Tuple[Type[BaseException], ...],
                       config: Optional[RetryConfig] = None,
                       sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> Callable:
    """Retry an async callable on the given exceptions, then raise RetryError."""
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        logger = get_logger(f"retry.{func.__name__}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(1, config.max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == config.max_attempts:
                        logger.error("Retries exhausted", attempts=attempt, error=str(e))
                        raise RetryError(func.__name__, e, attempt) from e

                    delay = config.delay_for(attempt)
                    logger.warning("Attempt failed, backing off", attempt=attempt, delay=round(delay, 3), error=str(e))
                    await sleep(delay)

        return wrapper

    return decorator
