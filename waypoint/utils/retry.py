from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Literal, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

Strategy = Literal["exponential", "linear", "fixed"]


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    jitter: float = 0.1,
    strategy: Strategy = "exponential",
    max_delay: float = 30.0,
    multiplier: float = 2.0,
) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based).

    ``jitter`` is a fraction of the computed delay added at random.
    """
    attempt = max(1, attempt)
    if strategy == "fixed":
        delay = base
    elif strategy == "linear":
        delay = base * attempt
    else:
        delay = base * multiplier ** (attempt - 1)
    delay = min(delay, max_delay)
    return delay + random.uniform(0, delay * jitter)


async def schedule_retry(attempt: int, **backoff) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, **backoff)
    await asyncio.sleep(delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    retry_on: Tuple[Type[BaseException], ...],
    give_up_on: Tuple[Type[BaseException], ...] = (),
    base: float = 0.5,
    max_delay: float = 10.0,
    description: Optional[str] = None,
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` are used up.

    Exceptions in ``retry_on`` are retried unless they are also instances of
    ``give_up_on``; the last one is re-raised.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as exc:
            if isinstance(exc, give_up_on) or attempt >= max(1, attempts):
                raise
            logger.warning(
                f"{description or 'operation'} failed (attempt {attempt}/{attempts}): {exc}"
            )
            await schedule_retry(attempt, base=base, max_delay=max_delay)
