# PUBLIC_INTERFACE
"""
Retry/backoff helpers for provider API calls.
"""
from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from src.core.errors import RateLimited, UpstreamUnavailable
from src.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)

TRANSIENT_ERRORS = (RateLimited, UpstreamUnavailable)


def backoff_delay(attempt: int, base_delay: float = 0.5, max_delay: float = 8.0, jitter: bool = True) -> float:
    """Delay before retry number ``attempt`` (1-based): exponential, capped, with up to 25% jitter."""
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    if jitter:
        delay += delay * random.uniform(0, 0.25)
    return delay


# PUBLIC_INTERFACE
async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    retry_on: Iterable[type[BaseException]] = TRANSIENT_ERRORS,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """Await fn with exponential backoff on ``retry_on`` errors; the last error is re-raised.

    A server-provided ``retry_after`` (RateLimited) wins over the computed delay when larger,
    still capped at ``max_delay``.
    """
    sleeper = sleep or asyncio.sleep
    retryable = tuple(retry_on)
    attempt = 1
    while True:
        try:
            return await fn()
        except retryable as e:
            if attempt >= attempts:
                logger.warning("giving up after %s attempts: %s", attempt, e)
                raise
            delay = backoff_delay(attempt, base_delay=base_delay, max_delay=max_delay)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = min(max(delay, float(retry_after)), max_delay)
            logger.info("transient upstream failure, retrying", extra={"attempt": attempt, "delay_s": round(delay, 3), "error": str(e)})
            await sleeper(delay)
            attempt += 1
