from __future__ import annotations

import random
from typing import Optional


def compute_backoff(
    attempt: int, base: float = 1.5, jitter: float = 0.5, cap: Optional[float] = None
) -> float:
    """Compute exponential backoff with jitter, optionally capped."""
    delay = base ** attempt + random.uniform(0, jitter)
    if cap is not None:
        delay = min(delay, cap)
    return delay


def sweep_delay(interval: float, failures: int, factor: float) -> float:
    """Seconds until the next poller sweep after ``failures`` failed sweeps in a row.

    Never less than ``interval`` and never more than ``interval * factor``.
    """
    if failures <= 0:
        return interval
    return max(interval, compute_backoff(failures, cap=interval * factor))
