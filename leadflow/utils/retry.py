from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter for the given retry attempt."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> float:
    """Sleep for the computed backoff before retrying an action.

    ``sleep`` is injectable so tests can run retries without waiting.
    Returns the delay that was slept.
    """
    delay = compute_backoff(attempt, base=base, jitter=jitter)
    await sleep(delay)
    return delay
