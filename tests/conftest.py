from __future__ import annotations

import inspect
from typing import Any, Callable, Iterable, Optional

import pytest

from analysis_engine.config.settings import EngineConfig, StorageConfig
from analysis_engine.engine import AnalysisOutcome, JobManager, Suggestion
from analysis_engine.resilience import DownstreamError
from analysis_engine.scheduling import ManualClock, ManualScheduler
from analysis_engine.storage import MemoryStore


class FakeAnalyzer:
    """Scripted analyzer: fails, raises or takes time for chosen ids."""

    def __init__(
        self,
        entity_ids: Iterable[Any] = (),
        fail_ids: Iterable[Any] = (),
        raise_ids: Iterable[Any] = (),
        clock: Optional[ManualClock] = None,
        cost_seconds: float = 0.0,
        suggestions: Optional[list[Suggestion]] = None,
    ) -> None:
        self.entity_ids = list(entity_ids)
        self.fail_ids = set(fail_ids)
        self.raise_ids = set(raise_ids)
        self.clock = clock
        self.cost_seconds = cost_seconds
        self.suggestions = suggestions or []
        self.analyzed: list[Any] = []
        self.during: Optional[Callable[[Any], Any]] = None

    async def get_entities(self, limit: int) -> list[Any]:
        return self.entity_ids[:limit]

    async def analyze_entity(self, entity_id: Any) -> AnalysisOutcome:
        self.analyzed.append(entity_id)

        if self.during is not None:
            result = self.during(entity_id)
            if inspect.isawaitable(result):
                await result

        if self.clock is not None and self.cost_seconds:
            self.clock.advance(self.cost_seconds)

        if entity_id in self.raise_ids:
            raise DownstreamError(f"shop lookup failed for {entity_id}")
        if entity_id in self.fail_ids:
            return AnalysisOutcome(success=False, error=f"unusable data for {entity_id}")
        return AnalysisOutcome(
            success=True,
            suggestions=list(self.suggestions),
            analysis_id=f"analysis-{entity_id}",
        )


class RecordingExecutor:
    def __init__(self, failing_types: Iterable[str] = ()) -> None:
        self.failing_types = set(failing_types)
        self.executed: list[str] = []

    async def execute(self, action) -> bool:
        self.executed.append(action.id)
        return action.action_type not in self.failing_types


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def store(clock: ManualClock) -> MemoryStore:
    return MemoryStore(clock)


@pytest.fixture()
def scheduler(clock: ManualClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture()
def config() -> EngineConfig:
    config = EngineConfig(storage=StorageConfig(backend="memory"))
    config.batch.max_items = 2
    return config


@pytest.fixture()
def make_manager(config, store, scheduler, clock):
    def _make(analyzers: dict, **kwargs) -> JobManager:
        return JobManager(
            config=config,
            store=kwargs.pop("store", store),
            scheduler=scheduler,
            analyzers=analyzers,
            clock=clock,
            **kwargs,
        )

    return _make
