"""Derived actions: created from analysis suggestions, executed on completion."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from analysis_engine.config.settings import ActionsConfig
from analysis_engine.engine.contracts import (
    ActionExecutor,
    ActionRepository,
    AnalysisOutcome,
    EntityId,
)
from analysis_engine.scheduling.clock import Clock, SystemClock
from analysis_engine.utils.logging import get_logger

if TYPE_CHECKING:
    from analysis_engine.storage.store import KeyValueStore

logger = get_logger("engine.actions")


class ActionStatus:
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass
class DerivedAction:
    """A work item proposed by an analysis."""

    id: str
    action_type: str
    entity_class: str
    entity_id: EntityId
    priority: int = 50
    data: dict[str, Any] = field(default_factory=dict)
    analysis_id: Optional[str] = None
    status: str = ActionStatus.PENDING
    created_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action_type": self.action_type,
            "entity_class": self.entity_class,
            "entity_id": self.entity_id,
            "priority": self.priority,
            "data": self.data,
            "analysis_id": self.analysis_id,
            "status": self.status,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DerivedAction:
        return cls(
            id=data["id"],
            action_type=data["action_type"],
            entity_class=data["entity_class"],
            entity_id=data["entity_id"],
            priority=data.get("priority", 50),
            data=data.get("data", {}),
            analysis_id=data.get("analysis_id"),
            status=data.get("status", ActionStatus.PENDING),
            created_at=data.get("created_at", 0.0),
        )


class StoreActionRepository:
    """Derived actions kept in the engine's key-value store."""

    KEY_PREFIX = "actions"

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def _key(self, action_id: str) -> str:
        return f"{self.KEY_PREFIX}:{action_id}"

    def save(self, action: DerivedAction) -> str:
        self.store.save(self._key(action.id), action.to_dict())
        return action.id

    def get(self, action_id: str) -> Optional[DerivedAction]:
        data = self.store.load(self._key(action_id))
        return DerivedAction.from_dict(data) if data else None

    def all(self) -> list[DerivedAction]:
        actions = []
        for key in self.store.keys(f"{self.KEY_PREFIX}:"):
            data = self.store.load(key)
            if data:
                actions.append(DerivedAction.from_dict(data))
        return actions

    def pending(self, limit: int) -> list[DerivedAction]:
        """Pending actions, highest priority first, oldest first on ties."""
        pending = [a for a in self.all() if a.status == ActionStatus.PENDING]
        pending.sort(key=lambda a: (-a.priority, a.created_at))
        return pending[:limit]

    def mark(self, action_id: str, status: str) -> None:
        action = self.get(action_id)
        if action is None:
            return
        action.status = status
        self.save(action)


class ActionPlanner:
    """Turns suggestions into pending actions and runs them on completion."""

    def __init__(
        self,
        repository: ActionRepository,
        config: ActionsConfig,
        clock: Optional[Clock] = None,
    ) -> None:
        self.repository = repository
        self.config = config
        self.clock = clock or SystemClock()

    def is_enabled(self, action_type: str) -> bool:
        enabled = self.config.enabled_types
        return enabled is None or action_type in enabled

    def create_from_outcome(
        self,
        entity_class: str,
        entity_id: EntityId,
        outcome: AnalysisOutcome,
    ) -> int:
        """
        Persist one pending action per enabled suggestion.

        Returns:
            Number of actions created
        """
        created = 0
        for suggestion in outcome.suggestions:
            if not suggestion.type or not self.is_enabled(suggestion.type):
                continue

            data = dict(suggestion.data)
            if suggestion.reasoning:
                data["reasoning"] = suggestion.reasoning

            action = DerivedAction(
                id=f"act_{uuid.uuid4().hex[:12]}",
                action_type=suggestion.type,
                entity_class=entity_class,
                entity_id=entity_id,
                priority=min(100, max(0, suggestion.priority)),
                data=data,
                analysis_id=outcome.analysis_id,
                created_at=self.clock.now(),
            )
            self.repository.save(action)
            created += 1

            if action.priority >= self.config.priority_threshold:
                logger.info(
                    "high_priority_action_created",
                    action_id=action.id,
                    action_type=action.action_type,
                    priority=action.priority,
                )

        return created

    async def execute_pending(self, executor: ActionExecutor) -> int:
        """
        Auto-execute pending actions at or above the priority threshold.

        A failing action is marked failed and logged; it never stops the
        remaining actions.

        Returns:
            Number of actions executed successfully
        """
        executed = 0
        for action in self.repository.pending(self.config.max_per_run):
            if action.priority < self.config.priority_threshold:
                continue

            try:
                ok = await executor.execute(action)
            except Exception as e:
                logger.error(
                    "action_execution_failed",
                    action_id=action.id,
                    action_type=action.action_type,
                    error=str(e),
                )
                ok = False

            self.repository.mark(
                action.id,
                ActionStatus.EXECUTED if ok else ActionStatus.FAILED,
            )
            if ok:
                executed += 1

        logger.info("actions_auto_executed", executed=executed)
        return executed
