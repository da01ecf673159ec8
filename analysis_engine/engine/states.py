"""Job status FSM and the persisted job record."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from analysis_engine.engine.contracts import EntityId


class JobStatus(Enum):
    """Lifecycle states of the single analysis job."""

    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state awaiting acknowledgement."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def is_active(self) -> bool:
        """Check if a job in this state still owns the engine."""
        return self in (JobStatus.RUNNING, JobStatus.CANCELLING)


# Valid state transitions
TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.IDLE: {JobStatus.RUNNING},
    JobStatus.RUNNING: {
        JobStatus.CANCELLING,
        JobStatus.CANCELLED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.IDLE,  # Stale reset
    },
    JobStatus.CANCELLING: {
        JobStatus.CANCELLED,
        JobStatus.FAILED,
        JobStatus.IDLE,  # Stale reset
    },
    # Terminal states only leave through acknowledgement
    JobStatus.COMPLETED: {JobStatus.IDLE},
    JobStatus.FAILED: {JobStatus.IDLE},
    JobStatus.CANCELLED: {JobStatus.IDLE},
}


class TransitionError(Exception):
    """Invalid state transition."""

    def __init__(self, from_state: JobStatus, to_state: JobStatus) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition: {from_state.value} -> {to_state.value}"
        )


@dataclass
class EntityCounters:
    """Progress counters for one entity class."""

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    def record(self, success: bool) -> None:
        self.processed += 1
        if success:
            self.succeeded += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> EntityCounters:
        return cls(
            total=data.get("total", 0),
            processed=data.get("processed", 0),
            succeeded=data.get("succeeded", 0),
            failed=data.get("failed", 0),
        )


@dataclass
class CurrentItem:
    """The unit of work claimed by an invocation and not yet recorded."""

    entity_class: str
    entity_id: EntityId
    started_at: float

    def describe(self) -> str:
        return f"{self.entity_class} #{self.entity_id}"

    def to_dict(self) -> dict:
        return {
            "entity_class": self.entity_class,
            "entity_id": self.entity_id,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CurrentItem:
        return cls(
            entity_class=data["entity_class"],
            entity_id=data["entity_id"],
            started_at=data.get("started_at", 0.0),
        )


@dataclass
class ErrorRecord:
    """One entry of the bounded recent-errors ring."""

    entity_class: str
    entity_id: EntityId
    message: str

    def to_dict(self) -> dict:
        return {
            "entity_class": self.entity_class,
            "entity_id": self.entity_id,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ErrorRecord:
        return cls(
            entity_class=data["entity_class"],
            entity_id=data["entity_id"],
            message=data.get("message", ""),
        )


@dataclass
class JobState:
    """
    The single persisted job record.

    Queue order is the processing order: classes are drained one after the
    other in the order the job was started with, ids FIFO within a class.
    """

    id: str
    status: JobStatus = JobStatus.IDLE
    kind: str = "all"
    queues: dict[str, list[EntityId]] = field(default_factory=dict)
    counters: dict[str, EntityCounters] = field(default_factory=dict)
    current_item: Optional[CurrentItem] = None
    errors: list[ErrorRecord] = field(default_factory=list)
    actions_created: int = 0
    actions_executed: int = 0
    started_at: float = 0.0
    updated_at: float = 0.0
    completed_at: Optional[float] = None
    throttled_until: Optional[float] = None
    failure_reason: Optional[str] = None
    version: int = 0

    def can_transition_to(self, new_status: JobStatus) -> bool:
        """Check if transition to new_status is valid."""
        return new_status in TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: JobStatus) -> None:
        """
        Transition to a new status.

        Raises:
            TransitionError: If the transition table does not allow it
        """
        if not self.can_transition_to(new_status):
            raise TransitionError(self.status, new_status)
        self.status = new_status

    def next_entity_class(self) -> Optional[str]:
        """First entity class that still has queued ids."""
        for entity_class, queue in self.queues.items():
            if queue:
                return entity_class
        return None

    def has_pending(self) -> bool:
        return self.next_entity_class() is not None

    def requeue_current(self) -> Optional[CurrentItem]:
        """Put an orphaned current item back at the head of its queue."""
        item = self.current_item
        if item is None:
            return None
        self.queues.setdefault(item.entity_class, []).insert(0, item.entity_id)
        self.current_item = None
        return item

    def record_error(self, entity_class: str, entity_id: EntityId, message: str, keep: int) -> None:
        self.errors.append(ErrorRecord(entity_class, entity_id, message))
        if len(self.errors) > keep:
            del self.errors[: len(self.errors) - keep]

    @property
    def total(self) -> int:
        return sum(c.total for c in self.counters.values())

    @property
    def processed(self) -> int:
        return sum(c.processed for c in self.counters.values())

    @property
    def succeeded(self) -> int:
        return sum(c.succeeded for c in self.counters.values())

    @property
    def failed(self) -> int:
        return sum(c.failed for c in self.counters.values())

    def liveness_reference(self) -> float:
        """Instant staleness is measured from; a throttle pushes it forward."""
        if self.throttled_until is not None:
            return max(self.updated_at, self.throttled_until)
        return self.updated_at

    def is_stale(self, now: float, threshold: float) -> bool:
        """Check if an active job has gone quiet for longer than threshold."""
        if not self.status.is_active():
            return False
        return now - self.liveness_reference() > threshold

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "status": self.status.value,
            "kind": self.kind,
            "queues": {name: list(ids) for name, ids in self.queues.items()},
            "counters": {name: c.to_dict() for name, c in self.counters.items()},
            "current_item": self.current_item.to_dict() if self.current_item else None,
            "errors": [e.to_dict() for e in self.errors],
            "actions_created": self.actions_created,
            "actions_executed": self.actions_executed,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "throttled_until": self.throttled_until,
            "failure_reason": self.failure_reason,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobState:
        """Create from dictionary."""
        current = data.get("current_item")
        return cls(
            id=data["id"],
            status=JobStatus(data.get("status", JobStatus.IDLE.value)),
            kind=data.get("kind", "all"),
            queues={name: list(ids) for name, ids in (data.get("queues") or {}).items()},
            counters={
                name: EntityCounters.from_dict(c)
                for name, c in (data.get("counters") or {}).items()
            },
            current_item=CurrentItem.from_dict(current) if current else None,
            errors=[ErrorRecord.from_dict(e) for e in data.get("errors") or []],
            actions_created=data.get("actions_created", 0),
            actions_executed=data.get("actions_executed", 0),
            started_at=data.get("started_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
            completed_at=data.get("completed_at"),
            throttled_until=data.get("throttled_until"),
            failure_reason=data.get("failure_reason"),
            version=data.get("version", 0),
        )
