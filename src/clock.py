"""
Block clocks for the AEC protocol.

Every state-changing call samples the clock exactly once and works with that
integer timestamp for its whole duration. ``SystemClock`` follows wall time;
``ManualClock`` is advanced explicitly by simulations and tests.
"""

import threading
import time
from typing import Protocol


class Clock(Protocol):
    """Source of monotonic block timestamps (whole seconds)."""

    def now(self) -> int:
        """Current block timestamp."""
        ...


class SystemClock:
    """Wall-clock timestamps, never moving backwards."""

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            self._last = max(self._last, int(time.time()))
            return self._last


class ManualClock:
    """
    Clock driven by the caller.

    Usage:
        clock = ManualClock(start=1_700_000_000)
        clock.advance(3600)
    """

    def __init__(self, start: int = 1_700_000_000):
        if start < 0:
            raise ValueError("start must be non-negative")
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        """Move time forward and return the new timestamp."""
        if seconds < 0:
            raise ValueError("Cannot move the clock backwards")
        self._now += seconds
        return self._now

    def set(self, timestamp: int) -> None:
        if timestamp < self._now:
            raise ValueError("Cannot move the clock backwards")
        self._now = timestamp
