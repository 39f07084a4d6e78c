"""
Retry wrapper for single provider calls.

Every exception is retried the same way: attempt N failing waits
N * base_delay seconds before attempt N+1. No jitter, no error-class
filtering. When the budget is spent the last error is wrapped in
ExhaustedRetries.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ExhaustedRetries
from .settings import RETRY_MAX_ATTEMPTS, RETRY_BASE_DELAY_S

logger = logging.getLogger(__name__)

T = TypeVar("T")


def linear_delay(attempt: int, base_delay: float) -> float:
    """Delay after the given 1-based failed attempt."""
    return attempt * base_delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = RETRY_MAX_ATTEMPTS,
    base_delay: float = RETRY_BASE_DELAY_S,
    label: Optional[str] = None,
) -> T:
    """
    Await ``operation()`` up to ``max_attempts`` times.

    Args:
        operation: zero-argument callable returning an awaitable
        max_attempts: total number of calls allowed (at least 1)
        base_delay: seconds multiplied by the attempt number between calls
        label: short name used in log lines

    Returns:
        Whatever the first successful call returns.

    Raises:
        ExhaustedRetries: carrying the last underlying error.
    """
    attempts = max(1, max_attempts)
    name = label or getattr(operation, "__name__", "operation")
    last_error: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if attempt < attempts:
                delay = linear_delay(attempt, base_delay)
                logger.warning(
                    f"{name}: attempt {attempt}/{attempts} failed: {e}. Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"{name}: all {attempts} attempts failed. Last error: {e}")

    raise ExhaustedRetries(last_error, attempts) from last_error
