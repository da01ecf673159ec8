from __future__ import annotations

import pytest

from analysis_engine.config.settings import RateLimitConfig
from analysis_engine.resilience import RateLimiter, Window

# ManualClock starts 800s into a UTC hour and 80000s into a UTC day
HOUR_LEFT = 2800
DAY_LEFT = 6400


def _limiter(store, clock, per_hour=3, per_day=1000) -> RateLimiter:
    return RateLimiter(store, RateLimitConfig(per_hour=per_hour, per_day=per_day), clock)


def test_hour_limit_denies_fourth_call(store, clock):
    limiter = _limiter(store, clock)

    decisions = [limiter.check_and_consume() for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    denied = decisions[-1]
    assert denied.window is Window.HOUR
    assert denied.retry_after_seconds == HOUR_LEFT


def test_day_limit_applies_when_hour_window_disabled(store, clock):
    limiter = _limiter(store, clock, per_hour=0, per_day=2)

    assert limiter.check_and_consume().allowed
    assert limiter.check_and_consume().allowed
    denied = limiter.check_and_consume()

    assert not denied.allowed
    assert denied.window is Window.DAY
    assert denied.retry_after_seconds == DAY_LEFT


def test_hour_limit_reported_before_day_limit(store, clock):
    limiter = _limiter(store, clock, per_hour=1, per_day=1)
    limiter.check_and_consume()

    assert limiter.check_and_consume().window is Window.HOUR


def test_denied_call_consumes_nothing(store, clock):
    limiter = _limiter(store, clock, per_hour=1)
    limiter.check_and_consume()

    for _ in range(3):
        assert not limiter.check_and_consume().allowed

    status = limiter.get_status()
    assert status["hourly"].used == 1
    assert status["daily"].used == 1


def test_status_is_read_only(store, clock):
    limiter = _limiter(store, clock)
    limiter.check_and_consume()

    first = limiter.get_status()
    second = limiter.get_status()

    assert first == second
    assert first["hourly"].to_dict() == {
        "limit": 3,
        "used": 1,
        "remaining": 2,
        "reset_in": HOUR_LEFT,
    }
    assert first["daily"].remaining == 999


def test_remaining_never_negative(store, clock):
    limiter = _limiter(store, clock, per_hour=5)
    for _ in range(5):
        limiter.check_and_consume()

    # An admin lowers the cap below what was already used
    limiter.config.per_hour = 2

    assert limiter.get_status()["hourly"].remaining == 0


def test_new_hour_starts_fresh_bucket_but_keeps_day_count(store, clock):
    limiter = _limiter(store, clock, per_hour=2)
    limiter.check_and_consume()
    limiter.check_and_consume()
    assert not limiter.check_and_consume().allowed

    clock.advance(HOUR_LEFT)

    assert limiter.check_and_consume().allowed
    status = limiter.get_status()
    assert status["hourly"].used == 1
    assert status["hourly"].reset_in == 3600
    assert status["daily"].used == 3


def test_old_buckets_expire(store, clock):
    limiter = _limiter(store, clock)
    limiter.check_and_consume()
    assert len(store.keys("ratelimit:")) == 2

    clock.advance(DAY_LEFT)

    assert store.keys("ratelimit:") == []


def test_bucket_keys_use_utc_periods(store, clock):
    limiter = _limiter(store, clock)

    assert limiter.bucket_key(Window.HOUR) == "ratelimit:hour:2023-11-14-22"
    assert limiter.bucket_key(Window.DAY) == "ratelimit:day:2023-11-14"


@pytest.mark.parametrize("window", [Window.HOUR, Window.DAY])
def test_reset_clears_current_bucket(store, clock, window):
    limiter = _limiter(store, clock, per_hour=1, per_day=1)
    limiter.check_and_consume()

    assert limiter.reset(window) is True
    assert limiter.used(window) == 0
    assert limiter.reset(window) is False
