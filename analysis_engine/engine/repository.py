"""Single-key repository for the job record and its run history."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from analysis_engine.engine.states import JobState
from analysis_engine.scheduling.clock import Clock, SystemClock
from analysis_engine.utils.logging import get_logger

if TYPE_CHECKING:
    from analysis_engine.storage.store import KeyValueStore

logger = get_logger("engine.repository")

Mutation = Callable[[JobState], bool]


@dataclass
class RunSummary:
    """Record kept for every completed job."""

    job_id: str
    kind: str
    success: bool
    counters: dict[str, dict] = field(default_factory=dict)
    actions_created: int = 0
    actions_executed: int = 0
    started_at: float = 0.0
    completed_at: float = 0.0

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.completed_at - self.started_at)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "success": self.success,
            "counters": self.counters,
            "actions_created": self.actions_created,
            "actions_executed": self.actions_executed,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RunSummary:
        return cls(
            job_id=data["job_id"],
            kind=data.get("kind", "all"),
            success=data.get("success", True),
            counters=data.get("counters", {}),
            actions_created=data.get("actions_created", 0),
            actions_executed=data.get("actions_executed", 0),
            started_at=data.get("started_at", 0.0),
            completed_at=data.get("completed_at", 0.0),
        )


class JobRepository:
    """
    Owner of the persisted JobState.

    Every write is a read-current/mutate/write-back cycle keyed by job id:
    a writer holding a stale view of a job that has since been replaced or
    cleared finds a different id (or nothing) and writes nothing. Each
    write refreshes updated_at and bumps the record's version.
    """

    STATE_KEY = "analysis:job_state"
    RUNS_KEY = "analysis:runs"
    MAX_RUNS = 20

    def __init__(self, store: KeyValueStore, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self._lock = threading.RLock()

    def load(self) -> Optional[JobState]:
        """The current job record, or None when the engine is idle."""
        data = self.store.load(self.STATE_KEY)
        if not data:
            return None
        return JobState.from_dict(data)

    def save_new(self, state: JobState) -> JobState:
        """Persist a freshly started job, replacing whatever was stored."""
        with self._lock:
            now = self.clock.now()
            state.started_at = state.started_at or now
            state.updated_at = now
            state.version = 1
            self.store.save(self.STATE_KEY, state.to_dict())
        logger.debug("job_state_created", job_id=state.id)
        return state

    def update(self, job_id: str, mutate: Mutation) -> Optional[JobState]:
        """
        Apply a mutation to the current record of job_id.

        Args:
            job_id: Job the caller believes it is acting on
            mutate: Changes the state in place and returns True, or returns
                False (before changing anything) to leave the record as is

        Returns:
            The state after the call, or None if job_id is no longer the
            current job
        """
        with self._lock:
            state = self.load()
            if state is None or state.id != job_id:
                logger.debug("job_state_superseded", job_id=job_id)
                return None

            if not mutate(state):
                return state

            state.updated_at = self.clock.now()
            state.version += 1
            self.store.save(self.STATE_KEY, state.to_dict())
            return state

    def clear(self, job_id: Optional[str] = None) -> bool:
        """Delete the record; with job_id, only if it is still that job."""
        with self._lock:
            if job_id is not None:
                state = self.load()
                if state is None or state.id != job_id:
                    return False
            return self.store.delete(self.STATE_KEY)

    def record_run(self, summary: RunSummary) -> None:
        """Append to the bounded run history, newest last."""
        with self._lock:
            runs = self.store.load(self.RUNS_KEY, [])
            runs.append(summary.to_dict())
            self.store.save(self.RUNS_KEY, runs[-self.MAX_RUNS:])

    def runs(self) -> list[RunSummary]:
        return [RunSummary.from_dict(r) for r in self.store.load(self.RUNS_KEY, [])]
