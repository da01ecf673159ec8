from __future__ import annotations

import asyncio

import pytest

from analysis_engine.config.settings import ActionsConfig, FeaturesConfig
from analysis_engine.engine import (
    ActionPlanner,
    ActionStatus,
    AnalysisOutcome,
    ConfigFeatureGate,
    StoreActionRepository,
    Suggestion,
)
from tests.conftest import RecordingExecutor


@pytest.fixture()
def repository(store) -> StoreActionRepository:
    return StoreActionRepository(store)


def _outcome(*suggestions: Suggestion) -> AnalysisOutcome:
    return AnalysisOutcome(success=True, suggestions=list(suggestions), analysis_id="an_1")


def test_actions_created_from_suggestions(repository, clock):
    planner = ActionPlanner(repository, ActionsConfig(), clock)

    created = planner.create_from_outcome("products", 42, _outcome(
        Suggestion(type="create_discount", priority=150, data={"percent": 10}, reasoning="slow seller"),
        Suggestion(type="", priority=90),
    ))

    assert created == 1
    [action] = repository.all()
    assert action.action_type == "create_discount"
    assert action.entity_id == 42
    assert action.priority == 100
    assert action.data == {"percent": 10, "reasoning": "slow seller"}
    assert action.analysis_id == "an_1"
    assert action.status == ActionStatus.PENDING


def test_pending_sorted_by_priority_then_age(repository, clock):
    planner = ActionPlanner(repository, ActionsConfig(), clock)
    planner.create_from_outcome("products", 1, _outcome(Suggestion(type="a", priority=50)))
    clock.advance(1)
    planner.create_from_outcome("products", 2, _outcome(Suggestion(type="b", priority=90)))
    clock.advance(1)
    planner.create_from_outcome("products", 3, _outcome(Suggestion(type="c", priority=50)))

    assert [a.action_type for a in repository.pending(10)] == ["b", "a", "c"]
    assert len(repository.pending(2)) == 2


def test_execute_pending_respects_threshold_and_cap(repository, clock):
    config = ActionsConfig(max_per_run=2, priority_threshold=70)
    planner = ActionPlanner(repository, config, clock)
    for priority in (95, 90, 85, 20):
        planner.create_from_outcome("products", priority, _outcome(
            Suggestion(type="create_discount", priority=priority),
        ))
    executor = RecordingExecutor()

    executed = asyncio.run(planner.execute_pending(executor))

    assert executed == 2
    statuses = sorted((a.priority, a.status) for a in repository.all())
    assert statuses == [
        (20, ActionStatus.PENDING),
        (85, ActionStatus.PENDING),
        (90, ActionStatus.EXECUTED),
        (95, ActionStatus.EXECUTED),
    ]


def test_failing_action_does_not_stop_others(repository, clock):
    planner = ActionPlanner(repository, ActionsConfig(), clock)
    planner.create_from_outcome("products", 1, _outcome(
        Suggestion(type="send_email", priority=90),
        Suggestion(type="create_discount", priority=80),
    ))

    class Exploding(RecordingExecutor):
        async def execute(self, action):
            if action.action_type == "send_email":
                raise RuntimeError("smtp down")
            return await super().execute(action)

    executed = asyncio.run(planner.execute_pending(Exploding()))

    assert executed == 1
    by_type = {a.action_type: a.status for a in repository.all()}
    assert by_type == {"send_email": ActionStatus.FAILED, "create_discount": ActionStatus.EXECUTED}


def test_gate_usage_is_counted_per_utc_day(store, clock):
    gate = ConfigFeatureGate(FeaturesConfig(analyses_per_day=2), store, clock)

    assert gate.has_remaining_usage()
    gate.increment_usage()
    gate.increment_usage()
    assert not gate.has_remaining_usage()

    # ManualClock starts 6400s before UTC midnight
    clock.advance(6400)

    assert gate.usage_today() == 0
    assert gate.has_remaining_usage()


def test_gate_features(store, clock):
    gate = ConfigFeatureGate(FeaturesConfig(disabled=["customers_analysis"]), store, clock)

    assert gate.is_feature_enabled("products_analysis")
    assert not gate.is_feature_enabled("customers_analysis")

    gate.config.module_enabled = False
    assert not gate.is_module_enabled()
    assert not gate.is_feature_enabled("products_analysis")
