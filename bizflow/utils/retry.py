from __future__ import annotations

import asyncio
import random


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` counts completed attempts, so the first retry waits
    ``base ** 1``. A ``base`` of zero disables waiting entirely.
    """
    if base <= 0:
        return 0.0
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter)
    if delay > 0:
        await asyncio.sleep(delay)
