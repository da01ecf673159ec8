"""Collaborators the embedding application supplies to the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol, Sequence

if TYPE_CHECKING:
    from analysis_engine.engine.actions import DerivedAction

EntityId = Any

AUTO_ACTIONS_FEATURE = "auto_actions"


def feature_for(entity_class: str) -> str:
    """Feature-gate name controlling analysis of one entity class."""
    return f"{entity_class}_analysis"


@dataclass
class Suggestion:
    """A derived work item proposed by one analysis."""

    type: str
    priority: int = 50
    data: dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> Suggestion:
        return cls(
            type=str(data.get("type", "")),
            priority=int(data.get("priority", 50)),
            data=dict(data.get("data") or {}),
            reasoning=str(data.get("reasoning", "")),
        )


@dataclass
class AnalysisOutcome:
    """
    Result of analyzing one entity.

    A returned outcome with success=False is an analyzer-level failure and
    is counted like a raised fault; neither stops the batch.
    """

    success: bool
    suggestions: list[Suggestion] = field(default_factory=list)
    error: Optional[str] = None
    analysis_id: Optional[str] = None

    @classmethod
    def coerce(cls, value: Any) -> AnalysisOutcome:
        """Accept an AnalysisOutcome or the equivalent mapping."""
        if isinstance(value, AnalysisOutcome):
            return value
        if isinstance(value, dict):
            return cls(
                success=bool(value.get("success", False)),
                suggestions=[
                    s if isinstance(s, Suggestion) else Suggestion.from_dict(s)
                    for s in value.get("suggestions") or []
                ],
                error=value.get("error"),
                analysis_id=value.get("analysis_id"),
            )
        raise TypeError(f"Analyzer returned {type(value).__name__}, expected AnalysisOutcome")


class Analyzer(Protocol):
    """One analyzer per entity class (products, customers, ...)."""

    async def get_entities(self, limit: int) -> Sequence[EntityId]:
        ...

    async def analyze_entity(self, entity_id: EntityId) -> AnalysisOutcome:
        ...


class FeatureGate(Protocol):
    """Subscription/feature checks owned by the embedding system."""

    def is_module_enabled(self) -> bool:
        ...

    def is_feature_enabled(self, feature: str) -> bool:
        ...

    def has_remaining_usage(self) -> bool:
        ...

    def increment_usage(self) -> int:
        ...


class ActionRepository(Protocol):
    """Persistence for derived actions."""

    def save(self, action: DerivedAction) -> str:
        ...

    def pending(self, limit: int) -> list[DerivedAction]:
        ...

    def mark(self, action_id: str, status: str) -> None:
        ...


class ActionExecutor(Protocol):
    """Carries out a derived action; returns whether it succeeded."""

    async def execute(self, action: DerivedAction) -> bool:
        ...
