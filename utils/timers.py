"""
Timing Utilities — Shared Scheduling Helpers

THIS MODULE DEFINES NO COMMANDS.

Provides reusable utilities for:
- Monotonic and wall-clock timestamps
- Timed execution windows (deliberation deadlines)
- Randomized delays
- Retry backoff
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def _now() -> float:
    """Return a monotonic timestamp in seconds."""
    return time.monotonic()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TimedWindow:
    """A fixed-duration window; measures time spent inside it."""

    duration: float
    started_at: float = field(default_factory=_now)

    def elapsed(self, *, now: Optional[float] = None) -> float:
        current = _now() if now is None else now
        return max(0.0, current - self.started_at)


def randomized_delay_value(min_seconds: float, max_seconds: float) -> float:
    """Return a randomized delay duration without sleeping."""
    if min_seconds < 0 or max_seconds < 0:
        raise ValueError("Delay bounds must be non-negative")
    if max_seconds < min_seconds:
        raise ValueError("max_seconds must be >= min_seconds")
    return random.uniform(min_seconds, max_seconds)


async def randomized_delay(min_seconds: float, max_seconds: float) -> float:
    """Sleep for a random duration between min_seconds and max_seconds.

    Returns the duration slept.
    """
    duration = randomized_delay_value(min_seconds, max_seconds)
    await asyncio.sleep(duration)
    return duration


def backoff_delay(base_seconds: float, attempt: int) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... for attempt 1, 2, 3, ..."""
    if base_seconds <= 0:
        return 0.0
    return base_seconds * (2 ** max(0, attempt - 1))
