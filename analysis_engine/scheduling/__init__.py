"""Time and wake-up abstractions supplied by the host."""

from analysis_engine.scheduling.clock import Clock, ManualClock, SystemClock, utc_datetime
from analysis_engine.scheduling.scheduler import (
    AsyncioScheduler,
    HookHandler,
    ManualScheduler,
    ScheduledEntry,
    Scheduler,
    UnknownHookError,
)

__all__ = [
    "Clock",
    "SystemClock",
    "ManualClock",
    "utc_datetime",
    "Scheduler",
    "HookHandler",
    "ScheduledEntry",
    "ManualScheduler",
    "AsyncioScheduler",
    "UnknownHookError",
]
