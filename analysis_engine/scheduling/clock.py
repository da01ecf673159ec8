"""Injectable clocks.

Every component reads time through a Clock so tests can advance time
deterministically instead of sleeping.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Seconds since the epoch."""
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError(f"Cannot move a clock backwards ({seconds}s)")
        self._now += seconds
        return self._now

    def set(self, timestamp: float) -> None:
        if timestamp < self._now:
            raise ValueError("Cannot move a clock backwards")
        self._now = float(timestamp)


def utc_datetime(timestamp: float) -> datetime:
    """A clock reading as an aware UTC datetime; buckets are keyed off this."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)
