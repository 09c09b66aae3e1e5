"""Retry utilities for handling transient failures.

Provides a decorator for retrying async operations with exponential
backoff. Used by the Notion client to ride out rate limiting.

Key Exports:
    async_retry: Decorator for adding retry logic to async functions.

Example:
    >>> from code_diffusion.utils.retry import async_retry
    >>>
    >>> @async_retry(max_attempts=3, base_delay=1.0, exceptions=(RateLimitedError,))
    ... async def update_page(page_id: str) -> dict:
    ...     return await client.patch(f"/pages/{page_id}")

Backoff Formula:
    delay = base_delay * backoff_factor ** (attempt_number - 1)
    For base_delay=1.0 and backoff_factor=2.0: 1s, 2s, 4s, ...

    An exception carrying a ``retry_after`` hint (seconds) stretches the
    delay to at least that long. ``max_delay`` caps the result.
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any

import structlog

log = structlog.get_logger(__name__)


def backoff_delay(
    attempt: int,
    base_delay: float,
    backoff_factor: float,
    error: BaseException | None = None,
    max_delay: float | None = None,
) -> float:
    """Delay in seconds after failed attempt number ``attempt`` (1-based)."""
    delay = base_delay * backoff_factor ** (attempt - 1)
    hint = getattr(error, "retry_after", None)
    if isinstance(hint, int | float) and hint > delay:
        delay = float(hint)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    base_delay: float = 1.0,
    max_delay: float | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of calls before giving up.
        backoff_factor: Multiplier applied to the delay after each failure.
        exceptions: Exception types that trigger a retry. Anything else
            propagates immediately.
        base_delay: Delay in seconds before the second attempt.
        max_delay: Upper bound for any single delay.

    Raises:
        The last caught exception once ``max_attempts`` calls have failed.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        log.error("retry_exhausted", function=func.__name__, attempts=attempt, error=str(e))
                        raise
                    delay = backoff_delay(attempt, base_delay, backoff_factor, e, max_delay)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
