from __future__ import annotations

import asyncio

import pytest

from analysis_engine.config.settings import CircuitBreakerConfig
from analysis_engine.resilience import (
    CircuitBreaker,
    CircuitState,
    DownstreamError,
    MessageCatalog,
    ResultSource,
    StoreError,
)
from analysis_engine.resilience.errors import CIRCUIT_OPEN_CODE


class Faulty:
    """Primary that always raises and counts its calls."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or DownstreamError("shop api returned 500")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        raise self.error


@pytest.fixture()
def breaker(store, clock) -> CircuitBreaker:
    return CircuitBreaker(store, CircuitBreakerConfig(failure_threshold=2), clock)


def _run(breaker, operation, primary, fallback=None, **kwargs):
    return asyncio.run(breaker.execute(operation, primary, fallback, **kwargs))


def test_threshold_failures_open_circuit_and_route_to_fallback(breaker):
    faulty = Faulty()

    first = _run(breaker, "x", faulty)
    second = _run(breaker, "x", faulty)

    assert not first.success and not second.success
    assert breaker.state_of("x") is CircuitState.OPEN

    third = _run(breaker, "x", faulty, fallback=lambda: "cached answer")

    assert faulty.calls == 2
    assert third.success
    assert third.data == "cached answer"
    assert third.source == ResultSource.CIRCUIT_FALLBACK


def test_open_circuit_without_fallback_returns_protection_error(breaker):
    faulty = Faulty()
    _run(breaker, "x", faulty)
    _run(breaker, "x", faulty)

    result = _run(breaker, "x", faulty)

    assert faulty.calls == 2
    assert not result.success
    assert result.circuit_open
    assert result.error.code == CIRCUIT_OPEN_CODE
    assert result.source == ResultSource.NONE


def test_failure_is_categorized_for_operators(breaker, clock):
    result = _run(breaker, "orders.load", Faulty())

    assert result.error.code == "DOWNSTREAM_ERROR"
    assert result.error.message == "Shop system error"
    assert result.error.operation == "orders.load"
    assert result.error.timestamp == clock.now()
    assert not result.circuit_open


def test_success_resets_failure_count(breaker):
    _run(breaker, "x", Faulty())
    assert breaker.record("x").failure_count == 1

    result = _run(breaker, "x", lambda: 42)

    assert result.success
    assert result.data == 42
    assert result.source == ResultSource.PRIMARY
    assert breaker.record("x").failure_count == 0
    assert breaker.state_of("x") is CircuitState.CLOSED


def test_half_open_success_closes_circuit(breaker, clock):
    faulty = Faulty()
    _run(breaker, "x", faulty)
    _run(breaker, "x", faulty)
    assert breaker.is_open("x")
    assert breaker.retry_in("x") == 60

    clock.advance(60)
    assert not breaker.is_open("x")

    async def healthy():
        assert breaker.state_of("x") is CircuitState.HALF_OPEN
        return "ok"

    result = _run(breaker, "x", healthy)

    assert result.success
    assert breaker.state_of("x") is CircuitState.CLOSED


def test_half_open_failure_reopens_circuit(breaker, clock):
    faulty = Faulty()
    _run(breaker, "x", faulty)
    _run(breaker, "x", faulty)
    clock.advance(61)

    result = _run(breaker, "x", faulty)

    assert faulty.calls == 3
    assert not result.success
    assert breaker.state_of("x") is CircuitState.OPEN
    assert breaker.retry_in("x") == 60


def test_half_open_probes_are_limited(store, clock):
    breaker = CircuitBreaker(
        store,
        CircuitBreakerConfig(failure_threshold=1, half_open_max_calls=1),
        clock,
    )
    _run(breaker, "x", Faulty())
    clock.advance(60)

    outcomes = []

    async def slow_probe():
        # A second call arriving while the first probe is still running
        outcomes.append(await breaker.execute("x", lambda: "second"))
        return "first"

    result = _run(breaker, "x", slow_probe)

    assert result.data == "first"
    assert outcomes[0].circuit_open
    assert breaker.state_of("x") is CircuitState.CLOSED


def test_spent_half_open_window_is_renewed_after_recovery_timeout(breaker, store, clock):
    store.save("circuit:x", {
        "operation": "x",
        "state": "half_open",
        "failure_count": 2,
        "last_failure_time": clock.now(),
        "half_open_calls": 3,
        "changed_at": clock.now(),
    })
    calls = []

    def primary():
        calls.append(clock.now())
        return "ok"

    assert breaker.is_blocked("x")
    assert not breaker.is_open("x")
    assert breaker.retry_in("x") == 60
    assert _run(breaker, "x", primary).circuit_open
    assert calls == []

    clock.advance(60)
    assert not breaker.is_blocked("x")

    result = _run(breaker, "x", primary)

    assert result.success
    assert len(calls) == 1
    assert breaker.state_of("x") is CircuitState.CLOSED


def test_half_open_record_without_change_time_uses_last_failure(breaker, store, clock):
    store.save("circuit:x", {
        "operation": "x",
        "state": "half_open",
        "last_failure_time": clock.now() - 120,
        "half_open_calls": 3,
    })

    assert not breaker.is_blocked("x")
    assert _run(breaker, "x", lambda: "ok").success


def test_operations_are_isolated(breaker):
    faulty = Faulty()
    _run(breaker, "a", faulty)
    _run(breaker, "a", faulty)

    result = _run(breaker, "b", lambda: "fine")

    assert breaker.is_open("a")
    assert not breaker.is_open("b")
    assert result.success


def test_generic_fallback_used_after_primary_failure(breaker):
    result = _run(breaker, "x", Faulty(), fallback=lambda: ["default"])

    assert result.success
    assert result.data == ["default"]
    assert result.source == ResultSource.FALLBACK
    assert result.error.code == "DOWNSTREAM_ERROR"


def test_failing_fallback_returns_primary_error(breaker):
    def broken_fallback():
        raise RuntimeError("fallback exploded")

    result = _run(breaker, "x", Faulty(), fallback=broken_fallback)

    assert not result.success
    assert result.data is None
    assert result.error.code == "DOWNSTREAM_ERROR"


def test_storage_failure_serves_cached_result(breaker):
    _run(breaker, "products.list", lambda: [1, 2, 3], cache_result=True)

    result = _run(breaker, "products.list", Faulty(StoreError("database went away")))

    assert result.success
    assert result.data == [1, 2, 3]
    assert result.source == ResultSource.CACHE_FALLBACK
    assert result.error.code == "DATABASE_CONNECTION_FAILED"


def test_storage_failure_without_cache_is_an_error(breaker):
    result = _run(breaker, "products.list", Faulty(StoreError("database went away")))

    assert not result.success
    assert result.source == ResultSource.NONE


def test_timeout_serves_partial_result(breaker):
    breaker.remember_partial("report", {"rows": 10})

    result = _run(breaker, "report", Faulty(TimeoutError("took too long")))

    assert result.success
    assert result.data == {"rows": 10}
    assert result.source == ResultSource.PARTIAL_CACHE


def test_memory_exhaustion_degrades_to_empty_result(breaker):
    result = _run(breaker, "report", Faulty(MemoryError()))

    assert not result.success
    assert result.data == {}
    assert result.source == ResultSource.DEGRADED
    assert result.error.code == "MEMORY_LIMIT_EXCEEDED"


def test_sync_and_async_primaries(breaker):
    async def async_primary():
        return "async"

    assert _run(breaker, "x", lambda: "sync").data == "sync"
    assert _run(breaker, "x", async_primary).data == "async"


def test_disabled_breaker_never_opens(store, clock):
    breaker = CircuitBreaker(
        store,
        CircuitBreakerConfig(enabled=False, failure_threshold=1),
        clock,
    )
    faulty = Faulty()

    for _ in range(3):
        result = _run(breaker, "x", faulty)
        assert not result.circuit_open

    assert faulty.calls == 3
    assert breaker.stats() == {}


def test_idle_circuit_expires_back_to_closed(store, clock):
    breaker = CircuitBreaker(
        store,
        CircuitBreakerConfig(failure_threshold=1, state_ttl=600),
        clock,
    )
    _run(breaker, "x", Faulty())
    assert breaker.state_of("x") is CircuitState.OPEN

    clock.advance(601)

    assert breaker.state_of("x") is CircuitState.CLOSED
    assert breaker.record("x").failure_count == 0


def test_stats_and_reset(breaker):
    _run(breaker, "a", Faulty())
    _run(breaker, "b", lambda: None)

    stats = breaker.stats()

    assert set(stats) == {"a", "b"}
    assert stats["a"]["failure_count"] == 1
    assert stats["b"]["state"] == "closed"

    assert breaker.reset("a") is True
    assert breaker.reset("a") is False
    assert set(breaker.stats()) == {"b"}


def test_message_overrides_localize_errors(store, clock):
    catalog = MessageCatalog({"DOWNSTREAM_ERROR": {"message": "Shopfehler"}})
    breaker = CircuitBreaker(store, CircuitBreakerConfig(), clock, catalog=catalog)

    result = _run(breaker, "x", Faulty())

    assert result.error.message == "Shopfehler"
    assert result.error.details.startswith("The shop system reported an error")
