"""Host task scheduler abstraction.

The engine only expresses intent ("invoke this hook again in N seconds",
"invoke this hook every N seconds"); the scheduler decides how. Delivery is
at-least-once with best-effort timing, so hook handlers must be safe to run
late, twice, or not at all.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from analysis_engine.scheduling.clock import Clock
from analysis_engine.utils.logging import get_logger, set_hook

logger = get_logger("scheduling.scheduler")

HookHandler = Callable[[], Awaitable[Any]]


class Scheduler(Protocol):
    def register(self, hook: str, handler: HookHandler) -> None:
        ...

    def schedule_once(self, hook: str, delay: float) -> None:
        ...

    def schedule_recurring(self, hook: str, interval: float) -> None:
        ...

    def unschedule(self, hook: str) -> None:
        ...

    def is_scheduled(self, hook: str) -> bool:
        ...


class UnknownHookError(KeyError):
    """Raised when scheduling a hook nobody registered."""


@dataclass
class ScheduledEntry:
    """A pending invocation of a hook."""

    hook: str
    due: float
    interval: Optional[float] = None

    @property
    def recurring(self) -> bool:
        return self.interval is not None


class ManualScheduler:
    """
    Deterministic scheduler driven by a ManualClock.

    Nothing runs until the owner calls run_due(), advance() or drain(),
    which makes delayed, dropped and overlapping invocations reproducible.
    A hook has at most one one-shot entry (the earliest wins) and at most
    one recurring entry.
    """

    def __init__(self, clock: Clock) -> None:
        self.clock = clock
        self._handlers: dict[str, HookHandler] = {}
        self._once: dict[str, ScheduledEntry] = {}
        self._recurring: dict[str, ScheduledEntry] = {}
        self.invocations: list[tuple[str, float]] = []

    def register(self, hook: str, handler: HookHandler) -> None:
        self._handlers[hook] = handler

    def schedule_once(self, hook: str, delay: float) -> None:
        self._require(hook)
        due = self.clock.now() + max(0.0, delay)
        existing = self._once.get(hook)
        if existing is None or due < existing.due:
            self._once[hook] = ScheduledEntry(hook=hook, due=due)

    def schedule_recurring(self, hook: str, interval: float) -> None:
        self._require(hook)
        if hook in self._recurring:
            return
        self._recurring[hook] = ScheduledEntry(
            hook=hook,
            due=self.clock.now() + interval,
            interval=interval,
        )

    def unschedule(self, hook: str) -> None:
        self._once.pop(hook, None)
        self._recurring.pop(hook, None)

    def is_scheduled(self, hook: str) -> bool:
        return hook in self._once or hook in self._recurring

    def next_due(self, hook: str) -> Optional[float]:
        """Earliest pending due time for a hook, if any."""
        dues = [
            entry.due
            for entry in (self._once.get(hook), self._recurring.get(hook))
            if entry is not None
        ]
        return min(dues) if dues else None

    def drop(self, hook: str) -> None:
        """Lose the pending one-shot invocation, as a flaky host would."""
        self._once.pop(hook, None)

    async def run_due(self) -> int:
        """
        Run every entry whose due time has passed.

        Returns:
            Number of handler invocations
        """
        now = self.clock.now()
        due = sorted(
            [e for e in self._once.values() if e.due <= now]
            + [e for e in self._recurring.values() if e.due <= now],
            key=lambda e: e.due,
        )

        runs = 0
        for entry in due:
            table = self._recurring if entry.recurring else self._once
            if table.get(entry.hook) is not entry:
                # Unscheduled or replaced by an earlier handler in this pass
                continue
            if entry.recurring:
                entry.due = now + entry.interval
            else:
                # Removed before running so the handler can re-arm itself
                self._once.pop(entry.hook, None)
            await self._invoke(entry.hook)
            runs += 1

        return runs

    async def advance(self, seconds: float) -> int:
        """Move the clock forward, firing entries in due order along the way."""
        target = self.clock.now() + seconds
        runs = 0

        while True:
            pending = [
                e.due for e in list(self._once.values()) + list(self._recurring.values())
                if e.due <= target
            ]
            if not pending:
                break
            self.clock.set(max(self.clock.now(), min(pending)))
            runs += await self.run_due()

        self.clock.set(target)
        return runs

    async def drain(self, max_runs: int = 10_000) -> int:
        """
        Run one-shot entries until none remain, jumping the clock as needed.

        Recurring entries only fire if they fall due on the way.

        Raises:
            RuntimeError: If the hooks keep re-arming past max_runs
        """
        runs = 0
        while self._once:
            if runs >= max_runs:
                raise RuntimeError(f"Scheduler did not settle after {max_runs} runs")
            earliest = min(entry.due for entry in self._once.values())
            self.clock.set(max(self.clock.now(), earliest))
            runs += await self.run_due()
        return runs

    async def _invoke(self, hook: str) -> None:
        self.invocations.append((hook, self.clock.now()))
        set_hook(hook)
        try:
            await self._handlers[hook]()
        finally:
            set_hook("")

    def _require(self, hook: str) -> None:
        if hook not in self._handlers:
            raise UnknownHookError(hook)


class AsyncioScheduler:
    """
    Scheduler backed by the running asyncio event loop.

    Used when the engine hosts itself (the CLI worker). Handler failures
    are logged and never stop the loop.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._handlers: dict[str, HookHandler] = {}
        self._once: dict[str, tuple[float, asyncio.TimerHandle]] = {}
        self._recurring: dict[str, tuple[float, asyncio.TimerHandle]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def register(self, hook: str, handler: HookHandler) -> None:
        self._handlers[hook] = handler

    def schedule_once(self, hook: str, delay: float) -> None:
        if hook not in self._handlers:
            raise UnknownHookError(hook)

        delay = max(0.0, delay)
        due = self.loop.time() + delay
        existing = self._once.get(hook)
        if existing is not None:
            if existing[0] <= due:
                return
            existing[1].cancel()

        handle = self.loop.call_later(delay, self._fire_once, hook)
        self._once[hook] = (due, handle)

    def schedule_recurring(self, hook: str, interval: float) -> None:
        if hook not in self._handlers:
            raise UnknownHookError(hook)
        if hook in self._recurring:
            return
        self._arm_recurring(hook, interval)

    def unschedule(self, hook: str) -> None:
        for table in (self._once, self._recurring):
            entry = table.pop(hook, None)
            if entry is not None:
                entry[1].cancel()

    def is_scheduled(self, hook: str) -> bool:
        return hook in self._once or hook in self._recurring

    async def wait_idle(self) -> None:
        """Wait for handler tasks that are currently running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        for hook in list(self._once) + list(self._recurring):
            self.unschedule(hook)

    def _arm_recurring(self, hook: str, interval: float) -> None:
        handle = self.loop.call_later(interval, self._fire_recurring, hook, interval)
        self._recurring[hook] = (self.loop.time() + interval, handle)

    def _fire_once(self, hook: str) -> None:
        self._once.pop(hook, None)
        self._spawn(hook)

    def _fire_recurring(self, hook: str, interval: float) -> None:
        self._arm_recurring(hook, interval)
        self._spawn(hook)

    def _spawn(self, hook: str) -> None:
        task = self.loop.create_task(self._run(hook))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, hook: str) -> None:
        set_hook(hook)
        try:
            await self._handlers[hook]()
        except Exception as e:
            logger.error("hook_failed", hook=hook, error=str(e), exc_info=True)
        finally:
            set_hook("")
