from __future__ import annotations

import asyncio

import pytest

from analysis_engine.scheduling import AsyncioScheduler, ManualClock, UnknownHookError, utc_datetime
from analysis_engine.utils.logging import current_correlation_id


def _recorder(scheduler, hook, calls, action=None):
    async def handler():
        calls.append((hook, scheduler.clock.now()))
        if action is not None:
            action()

    scheduler.register(hook, handler)


def test_manual_clock_never_moves_backwards():
    clock = ManualClock(start=100)

    assert clock.advance(5) == 105
    with pytest.raises(ValueError):
        clock.advance(-1)
    with pytest.raises(ValueError):
        clock.set(50)


def test_utc_datetime_is_timezone_aware():
    moment = utc_datetime(ManualClock().now())

    assert moment.utcoffset().total_seconds() == 0
    assert moment.strftime("%Y-%m-%d %H:%M") == "2023-11-14 22:13"


def test_schedule_once_keeps_earliest(scheduler, clock):
    calls = []
    _recorder(scheduler, "work", calls)

    scheduler.schedule_once("work", 30)
    scheduler.schedule_once("work", 10)
    scheduler.schedule_once("work", 20)

    assert scheduler.next_due("work") == clock.now() + 10
    asyncio.run(scheduler.drain())
    assert len(calls) == 1


def test_unknown_hook_rejected(scheduler):
    with pytest.raises(UnknownHookError):
        scheduler.schedule_once("nobody", 0)


def test_advance_fires_recurring_hooks(scheduler, clock):
    calls = []
    _recorder(scheduler, "probe", calls)
    start = clock.now()

    scheduler.schedule_recurring("probe", 60)
    runs = asyncio.run(scheduler.advance(200))

    assert runs == 3
    assert [t - start for _, t in calls] == [60, 120, 180]
    assert clock.now() == start + 200


def test_handler_can_rearm_itself(scheduler):
    calls = []

    def rearm():
        if len(calls) < 3:
            scheduler.schedule_once("work", 1)

    _recorder(scheduler, "work", calls, rearm)
    scheduler.schedule_once("work", 0)

    assert asyncio.run(scheduler.drain()) == 3


def test_unscheduled_entry_does_not_run(scheduler):
    calls = []
    _recorder(scheduler, "first", calls, lambda: scheduler.unschedule("second"))
    _recorder(scheduler, "second", calls)

    scheduler.schedule_once("first", 0)
    scheduler.schedule_once("second", 0)
    asyncio.run(scheduler.run_due())

    assert [hook for hook, _ in calls] == ["first"]


def test_dropped_invocation_is_lost(scheduler):
    calls = []
    _recorder(scheduler, "work", calls)
    scheduler.schedule_once("work", 0)

    scheduler.drop("work")

    assert not scheduler.is_scheduled("work")
    assert asyncio.run(scheduler.drain()) == 0


def test_drain_refuses_to_loop_forever(scheduler):
    calls = []
    _recorder(scheduler, "work", calls, lambda: scheduler.schedule_once("work", 1))
    scheduler.schedule_once("work", 0)

    with pytest.raises(RuntimeError):
        asyncio.run(scheduler.drain(max_runs=5))


def test_each_hook_firing_gets_its_own_correlation_id(scheduler):
    seen = []

    async def handler():
        seen.append(current_correlation_id())

    scheduler.register("work", handler)
    scheduler.schedule_once("work", 0)
    asyncio.run(scheduler.drain())
    scheduler.schedule_once("work", 0)
    asyncio.run(scheduler.drain())

    assert len(seen) == 2
    assert all(seen)
    assert seen[0] != seen[1]


def test_asyncio_scheduler_runs_hooks():
    async def scenario():
        scheduler = AsyncioScheduler()
        done = asyncio.Event()
        calls = []

        async def work():
            calls.append("work")
            done.set()

        async def broken():
            raise RuntimeError("handler bug")

        scheduler.register("work", work)
        scheduler.register("broken", broken)
        scheduler.schedule_once("broken", 0)
        scheduler.schedule_once("work", 0.01)
        await asyncio.wait_for(done.wait(), timeout=2)
        await scheduler.wait_idle()
        scheduler.close()
        return calls, scheduler.is_scheduled("work")

    calls, still_scheduled = asyncio.run(scenario())

    assert calls == ["work"]
    assert not still_scheduled


def test_asyncio_scheduler_unschedule_cancels_timer():
    async def scenario():
        scheduler = AsyncioScheduler()
        calls = []

        async def work():
            calls.append("work")

        scheduler.register("work", work)
        scheduler.schedule_recurring("work", 0.01)
        scheduler.unschedule("work")
        await asyncio.sleep(0.05)
        return calls

    assert asyncio.run(scenario()) == []
