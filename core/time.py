# PATH: core/time.py
"""
Time utilities for LIQBOT.

Wall-clock helpers for persisted timestamps, monotonic helpers for leases
and intervals.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Optional


def now_utc() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Get current UTC datetime as ISO string."""
    return now_utc().isoformat()


def now_ms() -> int:
    """Get current Unix timestamp in milliseconds."""
    return int(time.time() * 1000)


def monotonic() -> float:
    """Monotonic seconds, never goes backwards."""
    return time.monotonic()


class IntervalTimer:
    """
    Fixed-interval gate driven by a monotonic clock.

    `due()` is true when the interval has elapsed since the last `mark()`.
    A timer that was never marked is due immediately unless `start_marked`.
    """

    def __init__(
        self,
        interval_seconds: float,
        clock: Callable[[], float] = monotonic,
        start_marked: bool = False,
    ):
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._last: Optional[float] = clock() if start_marked else None

    def due(self) -> bool:
        if self.interval_seconds <= 0:
            return False
        if self._last is None:
            return True
        return self._clock() - self._last >= self.interval_seconds

    def mark(self) -> None:
        self._last = self._clock()

    def seconds_since(self) -> Optional[float]:
        if self._last is None:
            return None
        return self._clock() - self._last
