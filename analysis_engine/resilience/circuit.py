"""Per-operation circuit breaker with fallback.

    CLOSED --(failure_threshold failures)--> OPEN
    OPEN --(recovery_timeout elapsed, next call)--> HALF_OPEN
    HALF_OPEN --(success)--> CLOSED
    HALF_OPEN --(failure)--> OPEN
    HALF_OPEN --(probes spent, recovery_timeout elapsed)--> new probe window

Circuit records live in the shared store with a TTL, so an operation that
stays quiet long enough is treated as closed again.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from analysis_engine.config.settings import CircuitBreakerConfig
from analysis_engine.resilience.errors import (
    CIRCUIT_OPEN_CODE,
    ErrorCategory,
    ErrorInfo,
    MessageCatalog,
    categorize_error,
    circuit_open_error,
    describe_error,
)
from analysis_engine.scheduling.clock import Clock, SystemClock
from analysis_engine.utils.logging import get_logger

if TYPE_CHECKING:
    from analysis_engine.storage.store import KeyValueStore

logger = get_logger("resilience.circuit")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class ResultSource:
    """Where the data in an ExecutionResult came from."""

    PRIMARY = "primary"
    FALLBACK = "fallback"
    CIRCUIT_FALLBACK = "circuit_breaker_fallback"
    CACHE_FALLBACK = "cache_fallback"
    PARTIAL_CACHE = "partial_cache"
    DEGRADED = "degraded"
    NONE = "none"


@dataclass
class CircuitRecord:
    """Persisted state of one operation's circuit."""

    operation: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0.0
    half_open_calls: int = 0
    changed_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "half_open_calls": self.half_open_calls,
            "changed_at": self.changed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CircuitRecord:
        return cls(
            operation=data["operation"],
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            failure_count=data.get("failure_count", 0),
            last_failure_time=data.get("last_failure_time", 0.0),
            half_open_calls=data.get("half_open_calls", 0),
            changed_at=data.get("changed_at", data.get("last_failure_time", 0.0)),
        )


@dataclass
class ExecutionResult:
    """Outcome of CircuitBreaker.execute; never raises to the caller."""

    success: bool
    data: Any = None
    source: str = ResultSource.PRIMARY
    error: Optional[ErrorInfo] = None

    @property
    def circuit_open(self) -> bool:
        return self.error is not None and self.error.code == CIRCUIT_OPEN_CODE

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "data": self.data,
            "source": self.source,
            "error": self.error.to_dict() if self.error else None,
        }


async def _call(fn: Callable[[], Any]) -> Any:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


class CircuitBreaker:
    """
    Failure isolation for calls to downstream dependencies.

    Once an operation trips, further calls cost almost nothing: they go
    straight to the fallback (or a structured error) until a recovery probe
    succeeds.
    """

    KEY_PREFIX = "circuit"
    FALLBACK_PREFIX = "fallback"
    PARTIAL_PREFIX = "partial"

    def __init__(
        self,
        store: KeyValueStore,
        config: CircuitBreakerConfig,
        clock: Optional[Clock] = None,
        cache: Optional[KeyValueStore] = None,
        catalog: Optional[MessageCatalog] = None,
    ) -> None:
        """
        Initialize the breaker.

        Args:
            store: Store for circuit records
            config: Thresholds and timeouts
            clock: Time source (defaults to wall clock)
            cache: Store for fallback results (defaults to store)
            catalog: Operator message catalog
        """
        self.store = store
        self.config = config
        self.clock = clock or SystemClock()
        self.cache = cache if cache is not None else store
        self.catalog = catalog or MessageCatalog()

    def _key(self, operation: str) -> str:
        return f"{self.KEY_PREFIX}:{operation}"

    def record(self, operation: str) -> CircuitRecord:
        """Current record for an operation (closed if none is stored)."""
        data = self.store.load(self._key(operation))
        if not data:
            return CircuitRecord(operation=operation)
        return CircuitRecord.from_dict(data)

    def _save(self, record: CircuitRecord) -> None:
        self.store.save(self._key(record.operation), record.to_dict(), ttl=self.config.state_ttl)

    def state_of(self, operation: str) -> CircuitState:
        return self.record(operation).state

    def is_open(self, operation: str) -> bool:
        """True while an open circuit is still inside its recovery timeout."""
        record = self.record(operation)
        return record.state is CircuitState.OPEN and not self._recovery_elapsed(record)

    def is_blocked(self, operation: str) -> bool:
        """
        True when a call made now would be refused without running.

        Covers an open circuit inside its recovery timeout and a half-open
        circuit whose probe budget is spent and not yet due for renewal.
        """
        record = self.record(operation)
        if record.state is CircuitState.OPEN:
            return not self._recovery_elapsed(record)
        if record.state is CircuitState.HALF_OPEN:
            return self._probes_exhausted(record) and not self._probe_window_elapsed(record)
        return False

    def retry_in(self, operation: str) -> float:
        """Seconds until a blocked circuit will admit a probe."""
        record = self.record(operation)
        if record.state is CircuitState.OPEN:
            due = record.last_failure_time + self.config.recovery_timeout
        elif record.state is CircuitState.HALF_OPEN and self._probes_exhausted(record):
            due = record.changed_at + self.config.recovery_timeout
        else:
            return 0.0
        return max(0.0, due - self.clock.now())

    def _recovery_elapsed(self, record: CircuitRecord) -> bool:
        return self.clock.now() - record.last_failure_time >= self.config.recovery_timeout

    def _probes_exhausted(self, record: CircuitRecord) -> bool:
        return record.half_open_calls >= self.config.half_open_max_calls

    def _probe_window_elapsed(self, record: CircuitRecord) -> bool:
        return self.clock.now() - record.changed_at >= self.config.recovery_timeout

    async def execute(
        self,
        operation: str,
        primary: Callable[[], Any],
        fallback: Optional[Callable[[], Any]] = None,
        *,
        cache_result: bool = False,
    ) -> ExecutionResult:
        """
        Run primary behind the operation's circuit.

        Args:
            operation: Circuit name, e.g. "analyze.products"
            primary: Sync or async callable producing the result
            fallback: Optional sync or async callable used when primary is
                blocked or fails
            cache_result: Store a successful primary result as the cache
                fallback for storage/cache failures

        Returns:
            ExecutionResult; faults are reported in it, never raised
        """
        if self.config.enabled and not self._admit(operation):
            return await self._handle_open(operation, fallback)

        try:
            data = await _call(primary)
        except Exception as e:
            category = categorize_error(e)
            if self.config.enabled:
                self.record_failure(operation, category)
            logger.error(
                "operation_failed",
                operation=operation,
                category=category.value,
                error=str(e),
            )
            return await self._attempt_fallback(e, category, operation, fallback)

        if self.config.enabled:
            self.record_success(operation)
        if cache_result:
            self.remember(operation, data)

        return ExecutionResult(success=True, data=data, source=ResultSource.PRIMARY)

    def _admit(self, operation: str) -> bool:
        """Decide whether primary may run, moving OPEN -> HALF_OPEN when due."""
        record = self.record(operation)

        if record.state is CircuitState.OPEN:
            if not self._recovery_elapsed(record):
                return False
            record.state = CircuitState.HALF_OPEN
            record.half_open_calls = 0
            record.changed_at = self.clock.now()
            logger.info("circuit_half_open", operation=operation)

        if record.state is CircuitState.HALF_OPEN:
            if self._probes_exhausted(record):
                # Probes that never reported back (e.g. a crashed worker)
                if not self._probe_window_elapsed(record):
                    return False
                record.half_open_calls = 0
                record.changed_at = self.clock.now()
                logger.info("circuit_probe_window_renewed", operation=operation)
            record.half_open_calls += 1
            self._save(record)

        return True

    def record_success(self, operation: str) -> None:
        record = self.record(operation)
        if record.state is not CircuitState.CLOSED:
            record.changed_at = self.clock.now()
            logger.info("circuit_closed", operation=operation)
        record.failure_count = 0
        record.state = CircuitState.CLOSED
        record.half_open_calls = 0
        self._save(record)

    def record_failure(
        self,
        operation: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
    ) -> CircuitRecord:
        record = self.record(operation)
        record.failure_count += 1
        record.last_failure_time = self.clock.now()

        was_open = record.state is CircuitState.OPEN
        if (
            record.state is CircuitState.HALF_OPEN
            or record.failure_count >= self.config.failure_threshold
        ):
            record.state = CircuitState.OPEN
            record.half_open_calls = 0
            if not was_open:
                record.changed_at = record.last_failure_time

        self._save(record)

        if record.state is CircuitState.OPEN and not was_open:
            logger.warning(
                "circuit_opened",
                operation=operation,
                failures=record.failure_count,
                category=category.value,
            )
        return record

    async def _handle_open(
        self,
        operation: str,
        fallback: Optional[Callable[[], Any]],
    ) -> ExecutionResult:
        error = circuit_open_error(operation, self.clock.now(), self.catalog)

        if fallback is not None:
            try:
                data = await _call(fallback)
            except Exception as e:
                logger.warning("circuit_fallback_failed", operation=operation, error=str(e))
            else:
                return ExecutionResult(
                    success=True,
                    data=data,
                    source=ResultSource.CIRCUIT_FALLBACK,
                    error=error,
                )

        logger.debug("circuit_rejected", operation=operation)
        return ExecutionResult(success=False, source=ResultSource.NONE, error=error)

    async def _attempt_fallback(
        self,
        error: Exception,
        category: ErrorCategory,
        operation: str,
        fallback: Optional[Callable[[], Any]],
    ) -> ExecutionResult:
        info = describe_error(error, operation, self.clock.now(), self.catalog, category)

        if fallback is not None:
            try:
                data = await _call(fallback)
            except Exception as e:
                logger.error("fallback_failed", operation=operation, error=str(e))
                return ExecutionResult(success=False, source=ResultSource.NONE, error=info)
            return ExecutionResult(
                success=True,
                data=data,
                source=ResultSource.FALLBACK,
                error=info,
            )

        if category in (ErrorCategory.STORAGE, ErrorCategory.CACHE):
            cached = self.cache.load(f"{self.FALLBACK_PREFIX}:{operation}")
            if cached is not None:
                return ExecutionResult(
                    success=True,
                    data=cached,
                    source=ResultSource.CACHE_FALLBACK,
                    error=info,
                )

        elif category is ErrorCategory.TIMEOUT:
            partial = self.cache.load(f"{self.PARTIAL_PREFIX}:{operation}")
            if partial is not None:
                return ExecutionResult(
                    success=True,
                    data=partial,
                    source=ResultSource.PARTIAL_CACHE,
                    error=info,
                )

        elif category is ErrorCategory.RESOURCE_EXHAUSTION:
            return ExecutionResult(
                success=False,
                data={},
                source=ResultSource.DEGRADED,
                error=info,
            )

        return ExecutionResult(success=False, source=ResultSource.NONE, error=info)

    def remember(self, operation: str, data: Any) -> None:
        """Seed the cache fallback for an operation."""
        self.cache.save(
            f"{self.FALLBACK_PREFIX}:{operation}",
            data,
            ttl=self.config.fallback_cache_ttl,
        )

    def remember_partial(self, operation: str, data: Any) -> None:
        """Seed the partial result served when an operation times out."""
        self.cache.save(
            f"{self.PARTIAL_PREFIX}:{operation}",
            data,
            ttl=self.config.fallback_cache_ttl,
        )

    def stats(self) -> dict[str, dict]:
        """All tracked circuits, keyed by operation."""
        stats = {}
        for key in self.store.keys(f"{self.KEY_PREFIX}:"):
            data = self.store.load(key)
            if data:
                record = CircuitRecord.from_dict(data)
                stats[record.operation] = record.to_dict()
        return stats

    def reset(self, operation: str) -> bool:
        removed = self.store.delete(self._key(operation))
        logger.info("circuit_reset", operation=operation, removed=removed)
        return removed
