"""
Retry utilities with exponential backoff for courier API calls.
"""
import asyncio
import functools
import random
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Type
from courier_intel.utils.logger import log


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[Exception] = None, delay: float = 0.0):
        self.attempts += 1
        self.total_delay_seconds += delay
        if error:
            error_str = f"{type(error).__name__}: {str(error)}"
            self.last_error = error_str
            self.errors.append(error_str)

    def to_dict(self) -> dict:
        return {
            "attempts": self.attempts,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }


# Network errors worth another attempt
DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Delay before the next attempt: base_delay * exponential_base ^ (attempt - 1),
    capped at max_delay, plus up to 25% jitter.
    """
    delay = min(base_delay * (exponential_base ** (attempt - 1)), max_delay)
    if jitter:
        delay += delay * random.uniform(0, 0.25)
    return delay


def retry_async(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
    sleep: Callable = asyncio.sleep,
):
    """
    Async decorator for retrying operations with exponential backoff.

    The attempt history (RetryStats) is logged when the call recovers after
    a retry and when it gives up.

    Usage:
        @retry_async(max_attempts=3)
        async def get_voucher_status(...):
            ...
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            stats = RetryStats()
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt >= max_attempts:
                        stats.record_attempt(error=e)
                        log.error(f"{func.__name__} gave up after {attempt} attempts | {stats.to_dict()}")
                        raise
                    delay = calculate_backoff(attempt, base_delay=base_delay, max_delay=max_delay)
                    stats.record_attempt(error=e, delay=delay)
                    log.warning(
                        f"{func.__name__} attempt {attempt} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    await sleep(delay)
                    continue

                stats.record_attempt()
                stats.success = True
                if attempt > 1:
                    log.info(f"{func.__name__} recovered on attempt {attempt} | {stats.to_dict()}")
                return result

        return wrapper

    return decorator
