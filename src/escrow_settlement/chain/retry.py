"""Retry helpers with exponential backoff for external calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 0.25
MAX_ATTEMPTS_CAP = 6
MAX_JITTER_SECONDS = 0.08


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


def backoff_delay(attempt: int, base_delay: float, *, jitter: float = MAX_JITTER_SECONDS) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    return base_delay * (2**attempt) + random.uniform(0.0, jitter)


def with_retry(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    retry_on: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for adding retry logic with exponential backoff to coroutines.

    Only wrap idempotent calls: a retried call may have reached the remote
    side before it failed.

    Args:
        max_attempts: Total attempts (capped at 6).
        base_delay: Base delay in seconds (doubles with each retry).
        retry_on: Tuple of exception types to retry on.

    Returns:
        Decorated coroutine function with retry logic.
    """
    attempts = max(1, min(MAX_ATTEMPTS_CAP, max_attempts))

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt == attempts - 1:
                        break

                    delay = backoff_delay(attempt, base_delay)
                    logger.warning(
                        "Attempt %d/%d of %s failed: %s. Retrying in %.2f seconds...",
                        attempt + 1,
                        attempts,
                        func.__name__,
                        str(e),
                        delay,
                    )
                    await asyncio.sleep(delay)

            raise RetryError(
                f"All {attempts} attempts failed for {func.__name__}",
                last_exception=last_exception,
            )

        return wrapper

    return decorator
