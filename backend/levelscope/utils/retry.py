"""
Levelscope: Provider Retry

Backoff for candle provider calls. A provider names the errors it considers
transient (HTTP 429/5xx, dropped connections); everything else propagates on
the first failure. The aggregator never retries.
"""

from __future__ import annotations

import asyncio
import functools
import random
from typing import Any, Callable, Optional, Type

import httpx
import structlog

log = structlog.get_logger(__name__)

RETRY_ON: tuple[Type[Exception], ...] = (ConnectionError, TimeoutError, httpx.TransportError)


def with_retry(
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    retry_on: tuple[Type[Exception], ...] = RETRY_ON,
    on_retry: Optional[Callable[[int, Exception, float], Any]] = None,
) -> Callable:
    """Retry an async call on ``retry_on`` errors, doubling a jittered delay.

    ``on_retry(attempt, exc, delay)`` runs before each sleep.
    """

    def decorator(func: Callable) -> Callable:

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if attempt >= attempts:
                        log.error("retry.exhausted", func=func.__qualname__, attempts=attempts, error=str(exc))
                        raise
                    delay = _compute_delay(attempt, base_delay, max_delay)
                    log.warning(
                        "retry.attempt",
                        func=func.__qualname__,
                        attempt=attempt,
                        delay=round(delay, 2),
                        error_type=type(exc).__name__,
                    )
                    if on_retry:
                        on_retry(attempt, exc, delay)
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator


def _compute_delay(attempt: int, base_delay: float, max_delay: float, jitter: bool = True) -> float:
    """base × 2^(attempt − 1), scaled by 0.5 – 1.5 when jittered, capped at ``max_delay``."""
    delay = base_delay * 2 ** (attempt - 1)
    if jitter:
        delay *= random.uniform(0.5, 1.5)
    return min(delay, max_delay)
