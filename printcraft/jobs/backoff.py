"""Retry delay computation."""

import random
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float,
    cap: float,
    jitter: float = 0.25,
    rng: Optional[random.Random] = None
) -> float:
    """
    Exponential backoff with jitter: base * 2 ** (attempt - 1), capped.

    attempt is the number of the attempt that just failed (1-based). The
    jitter is added on top of the exponential delay, never subtracted, so
    the first retry always waits at least `base`. The result never exceeds
    `cap`.
    """
    if attempt <= 0:
        return 0.0

    rng = rng or random
    delay = min(cap, base * (2 ** (attempt - 1)))
    delay += rng.uniform(0, delay * jitter)
    return min(cap, delay)
