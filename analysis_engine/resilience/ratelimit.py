"""Sliding-window admission control in front of external calls.

Two independent windows bound request volume: an hourly one that catches
short bursts and a daily one that bounds total spend. Each window is a
counter keyed by its time bucket, so a new period simply starts a new key
and old keys expire on their own.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from analysis_engine.config.settings import RateLimitConfig
from analysis_engine.scheduling.clock import Clock, SystemClock, utc_datetime
from analysis_engine.utils.logging import get_logger

if TYPE_CHECKING:
    from analysis_engine.storage.store import KeyValueStore

logger = get_logger("resilience.ratelimit")


class Window(Enum):
    """Rate-limit windows, checked in declaration order."""

    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return 3600 if self is Window.HOUR else 86400

    @property
    def bucket_format(self) -> str:
        return "%Y-%m-%d-%H" if self is Window.HOUR else "%Y-%m-%d"


@dataclass(frozen=True)
class RateDecision:
    """Outcome of an admission check."""

    allowed: bool
    retry_after_seconds: float = 0.0
    window: Optional[Window] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "retry_after_seconds": self.retry_after_seconds,
            "window": self.window.value if self.window else None,
        }


@dataclass(frozen=True)
class WindowStatus:
    """Operator view of one window."""

    limit: int
    used: int
    reset_in: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def to_dict(self) -> dict:
        return {
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "reset_in": self.reset_in,
        }


class RateLimiter:
    """
    Hour/day rate limiter over a shared key-value store.

    Callers that are denied must reschedule the work for
    retry_after_seconds later; a denial is backpressure, not an error.
    """

    KEY_PREFIX = "ratelimit"

    def __init__(
        self,
        store: KeyValueStore,
        config: RateLimitConfig,
        clock: Optional[Clock] = None,
    ) -> None:
        """
        Initialize the limiter.

        Args:
            store: Store holding the bucket counters
            config: Hourly and daily caps
            clock: Time source (defaults to wall clock)
        """
        self.store = store
        self.config = config
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()

    def limit_for(self, window: Window) -> int:
        return self.config.per_hour if window is Window.HOUR else self.config.per_day

    def bucket_key(self, window: Window, now: Optional[float] = None) -> str:
        now = self.clock.now() if now is None else now
        stamp = utc_datetime(now).strftime(window.bucket_format)
        return f"{self.KEY_PREFIX}:{window.value}:{stamp}"

    def reset_in(self, window: Window, now: Optional[float] = None) -> float:
        """Seconds until the current bucket of a window rolls over (UTC)."""
        now = self.clock.now() if now is None else now
        return window.seconds - (now % window.seconds)

    def used(self, window: Window) -> int:
        return int(self.store.load(self.bucket_key(window), 0))

    def check_and_consume(self) -> RateDecision:
        """
        Admit one external call if both windows have room.

        The hour window is checked first so the tighter, more actionable
        limit is the one reported. Both counters are only incremented when
        both windows pass.

        Returns:
            RateDecision with allowed=True, or the blocking window and the
            seconds until its bucket rolls over
        """
        with self._lock:
            now = self.clock.now()

            for window in Window:
                limit = self.limit_for(window)
                if limit <= 0:
                    continue
                used = int(self.store.load(self.bucket_key(window, now), 0))
                if used >= limit:
                    retry_after = self.reset_in(window, now)
                    logger.warning(
                        "rate_limit_exceeded",
                        window=window.value,
                        used=used,
                        limit=limit,
                        retry_after_seconds=round(retry_after, 1),
                    )
                    return RateDecision(
                        allowed=False,
                        retry_after_seconds=retry_after,
                        window=window,
                    )

            for window in Window:
                self.store.increment(
                    self.bucket_key(window, now),
                    ttl=self.reset_in(window, now),
                )

        return RateDecision(allowed=True)

    def get_status(self) -> dict[str, WindowStatus]:
        """Read-only snapshot of both windows; consumes no quota."""
        return {
            "hourly": WindowStatus(
                limit=self.limit_for(Window.HOUR),
                used=self.used(Window.HOUR),
                reset_in=self.reset_in(Window.HOUR),
            ),
            "daily": WindowStatus(
                limit=self.limit_for(Window.DAY),
                used=self.used(Window.DAY),
                reset_in=self.reset_in(Window.DAY),
            ),
        }

    def reset(self, window: Window) -> bool:
        """Clear the current bucket of a window."""
        removed = self.store.delete(self.bucket_key(window))
        logger.info("rate_limit_reset", window=window.value, removed=removed)
        return removed
