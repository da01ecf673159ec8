"""Durable batch job engine."""

from analysis_engine.engine.actions import (
    ActionPlanner,
    ActionStatus,
    DerivedAction,
    StoreActionRepository,
)
from analysis_engine.engine.contracts import (
    ActionExecutor,
    ActionRepository,
    AnalysisOutcome,
    Analyzer,
    FeatureGate,
    Suggestion,
    feature_for,
)
from analysis_engine.engine.gate import ConfigFeatureGate
from analysis_engine.engine.manager import (
    BatchReport,
    JobManager,
    ProbeOutcome,
    ProgressSnapshot,
    StopReason,
    build_job_manager,
)
from analysis_engine.engine.repository import JobRepository, RunSummary
from analysis_engine.engine.states import (
    TRANSITIONS,
    CurrentItem,
    EntityCounters,
    ErrorRecord,
    JobState,
    JobStatus,
    TransitionError,
)

__all__ = [
    # Manager
    "JobManager",
    "build_job_manager",
    "BatchReport",
    "ProbeOutcome",
    "ProgressSnapshot",
    "StopReason",
    # States
    "JobStatus",
    "JobState",
    "TRANSITIONS",
    "TransitionError",
    "EntityCounters",
    "CurrentItem",
    "ErrorRecord",
    # Persistence
    "JobRepository",
    "RunSummary",
    # Collaborators
    "Analyzer",
    "AnalysisOutcome",
    "Suggestion",
    "FeatureGate",
    "ConfigFeatureGate",
    "feature_for",
    # Actions
    "ActionRepository",
    "ActionExecutor",
    "ActionPlanner",
    "ActionStatus",
    "DerivedAction",
    "StoreActionRepository",
]
