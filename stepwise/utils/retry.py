from __future__ import annotations

import asyncio
import random

from ..contracts import RetryPolicy


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Compute capped exponential backoff with jitter for ``attempt`` (1-based)."""
    delay = policy.initial_interval * policy.backoff_coefficient ** max(attempt - 1, 0)
    delay = min(delay, policy.maximum_interval)
    if policy.jitter:
        delay += random.uniform(0, policy.jitter)
    return delay


async def schedule_retry(attempt: int, policy: RetryPolicy) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, policy)
    if delay > 0:
        await asyncio.sleep(delay)
