"""
Bounded retry with exponential backoff.

Used for optimistic-concurrency races: a caller that loses a
compare-and-swap tries again after a short, growing pause. Only the
exception types named in `retry_on` are retried; anything else (a genuine
validation failure) propagates immediately.
"""
from __future__ import annotations
from typing import Any, Callable
import asyncio


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number `attempt` (0-based)."""
    return min(base * (2 ** attempt), maximum)


async def retry_with_backoff(
    func: Callable[..., Any],
    *args: Any,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    max_retries: int = 3,
    backoff_base: float = 0.01,
    backoff_max: float = 0.5,
    **kwargs: Any,
) -> Any:
    """Call `func` (sync or async) up to `max_retries + 1` times.

    Raises the last retryable error once every attempt has failed.
    """
    last_error: BaseException | None = None
    for attempt in range(max_retries + 1):
        try:
            if asyncio.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            return func(*args, **kwargs)
        except retry_on as e:
            last_error = e
            if attempt < max_retries:
                await asyncio.sleep(backoff_delay(attempt, backoff_base, backoff_max))

    assert last_error is not None
    raise last_error
