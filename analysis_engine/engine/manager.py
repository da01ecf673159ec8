"""Job State Machine: resumable, time-boxed batch analysis.

A job is started once, then driven by repeated invocations of
process_next_batch from the host scheduler. Each invocation processes a
bounded number of units within a wall-clock budget, checkpoints after every
unit and re-arms itself. A recurring liveness probe resumes jobs whose
wake-up was lost.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from analysis_engine.config.settings import EngineConfig
from analysis_engine.engine.actions import ActionPlanner, StoreActionRepository
from analysis_engine.engine.contracts import (
    AUTO_ACTIONS_FEATURE,
    ActionExecutor,
    AnalysisOutcome,
    Analyzer,
    FeatureGate,
    feature_for,
)
from analysis_engine.engine.gate import ConfigFeatureGate
from analysis_engine.engine.repository import JobRepository, RunSummary
from analysis_engine.engine.states import CurrentItem, EntityCounters, JobState, JobStatus
from analysis_engine.resilience import CircuitBreaker, MessageCatalog, RateLimiter, StoreError
from analysis_engine.scheduling import Clock, Scheduler, SystemClock
from analysis_engine.storage import KeyValueStore, build_store
from analysis_engine.utils.logging import get_logger, log_batch_timing, set_job_context
from analysis_engine.utils.result import Err, JobError, JobErrorCode, Ok, Result

logger = get_logger("engine.manager")


class ProbeOutcome(Enum):
    """What a liveness probe found and did."""

    IDLE = "idle"
    HEALTHY = "healthy"
    THROTTLED = "throttled"
    RESUMED = "resumed"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"


class StopReason:
    """Why a process_next_batch invocation returned."""

    NOT_RUNNING = "not_running"
    UNIT_IN_FLIGHT = "unit_in_flight"
    THROTTLED = "throttled"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    ITEM_CAP = "item_cap"
    TIME_BUDGET = "time_budget"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    FAILED = "failed"


@dataclass
class BatchReport:
    """Summary of one process_next_batch invocation."""

    stop_reason: str
    units: int = 0
    job_id: Optional[str] = None


@dataclass
class ProgressSnapshot:
    """Operator view of the current job."""

    status: JobStatus
    job_id: Optional[str] = None
    kind: Optional[str] = None
    counters: dict[str, dict] = field(default_factory=dict)
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    percentage: int = 0
    current_item: Optional[str] = None
    errors: list[dict] = field(default_factory=list)
    actions_created: int = 0
    actions_executed: int = 0
    started_at: Optional[float] = None
    updated_at: Optional[float] = None
    completed_at: Optional[float] = None
    throttled_for: float = 0.0
    failure_reason: Optional[str] = None
    is_stale: bool = False

    @property
    def is_running(self) -> bool:
        return self.status is JobStatus.RUNNING

    @property
    def is_cancelling(self) -> bool:
        return self.status is JobStatus.CANCELLING

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @classmethod
    def idle(cls) -> ProgressSnapshot:
        return cls(status=JobStatus.IDLE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "job_id": self.job_id,
            "kind": self.kind,
            "counters": self.counters,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "percentage": self.percentage,
            "current_item": self.current_item,
            "errors": self.errors,
            "actions_created": self.actions_created,
            "actions_executed": self.actions_executed,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "throttled_for": self.throttled_for,
            "failure_reason": self.failure_reason,
            "is_running": self.is_running,
            "is_cancelling": self.is_cancelling,
            "is_terminal": self.is_terminal,
            "is_stale": self.is_stale,
        }


class JobManager:
    """
    Orchestrates the single analysis job.

    Every persisted change goes through JobRepository.update, keyed by job
    id, so a late or duplicated scheduler invocation acting on a job that
    has moved on is a no-op. A unit of work is claimed (popped from its
    queue into current_item) in one write and recorded in a second; an
    invocation that finds a unit already claimed leaves it alone.
    """

    PROCESS_HOOK = "analysis.process_batch"
    LIVENESS_HOOK = "analysis.liveness"

    def __init__(
        self,
        config: EngineConfig,
        store: KeyValueStore,
        scheduler: Scheduler,
        analyzers: Mapping[str, Analyzer],
        clock: Optional[Clock] = None,
        gate: Optional[FeatureGate] = None,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        planner: Optional[ActionPlanner] = None,
        executor: Optional[ActionExecutor] = None,
    ) -> None:
        """
        Initialize the job manager and register its scheduler hooks.

        Args:
            config: Engine configuration
            store: Durable store for the job record and counters
            scheduler: Host scheduler invoking the hooks
            analyzers: Analyzer per entity class, in processing order
            clock: Time source (defaults to wall clock)
            gate: Feature gate (defaults to the configured one)
            rate_limiter: Admission control for analyzer calls
            circuit_breaker: Fault isolation for analyzer calls
            planner: Derived-action planner
            executor: Executes derived actions when auto-execution is on
        """
        self.config = config
        self.clock = clock or SystemClock()
        self.store = store
        self.scheduler = scheduler
        self.analyzers: dict[str, Analyzer] = dict(analyzers)

        self.repository = JobRepository(store, self.clock)
        self.gate = gate or ConfigFeatureGate(config.features, store, self.clock)
        self.rate_limiter = rate_limiter or RateLimiter(store, config.rate_limit, self.clock)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            store,
            config.circuit_breaker,
            self.clock,
            catalog=MessageCatalog(config.messages),
        )
        self.planner = planner or ActionPlanner(
            StoreActionRepository(store),
            config.actions,
            self.clock,
        )
        self.executor = executor

        scheduler.register(self.PROCESS_HOOK, self.process_next_batch)
        scheduler.register(self.LIVENESS_HOOK, self.check_liveness)

    @staticmethod
    def analysis_operation(entity_class: str) -> str:
        """Circuit name guarding analysis of one entity class."""
        return f"analyze.{entity_class}"

    # ------------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------------

    async def start_job(
        self,
        kind: str = "all",
        options: Optional[Mapping[str, Any]] = None,
    ) -> Result[str, JobError]:
        """
        Enqueue a new job; nothing is analyzed synchronously.

        Args:
            kind: "all" or one registered entity class
            options: Optional "limit" for every class or "<class>_limit"
                for one class; clamped to the configured maximum

        Returns:
            Result with the new job id, or the reason the job was rejected
        """
        options = dict(options or {})

        if kind != "all" and kind not in self.analyzers:
            return Err(JobError(
                code=JobErrorCode.INVALID_KIND,
                message=f"Unknown job kind: {kind}",
                details={"kind": kind, "valid": ["all", *self.analyzers]},
            ))

        try:
            current = self.repository.load()
            if current is not None:
                rejection = self._clear_previous(current)
                if rejection is not None:
                    return Err(rejection)

            if not self.gate.is_module_enabled():
                return Err(JobError(
                    code=JobErrorCode.MODULE_DISABLED,
                    message="The analysis module is disabled",
                ))
            if not self.gate.has_remaining_usage():
                return Err(JobError(
                    code=JobErrorCode.LIMIT_EXCEEDED,
                    message="Daily analysis limit reached",
                ))

            queues: dict[str, list] = {}
            eligible: list[str] = []
            for entity_class, analyzer in self.analyzers.items():
                if kind not in ("all", entity_class):
                    continue

                class_config = self.config.analysis.for_class(entity_class)
                if not class_config.include or not self.gate.is_feature_enabled(
                    feature_for(entity_class)
                ):
                    logger.info("entity_class_skipped", entity_class=entity_class)
                    continue

                eligible.append(entity_class)
                listing = await self._list_entities(
                    entity_class,
                    analyzer,
                    self._limit_for(entity_class, options),
                )
                if listing.is_err():
                    return listing
                queues[entity_class] = listing.unwrap()

            if not any(queues.values()):
                reason = "empty_result" if eligible else "features_disabled"
                logger.info("no_work_found", kind=kind, reason=reason)
                return Err(JobError(
                    code=JobErrorCode.NO_WORK_FOUND,
                    message="No entities to analyze",
                    details={"kind": kind, "reason": reason},
                ))

            # Another start may have won while the analyzers were listing
            current = self.repository.load()
            if current is not None and current.status.is_active():
                return Err(self._already_running(current))

            state = JobState(
                id=f"job_{uuid.uuid4().hex[:16]}",
                kind=kind,
                queues=queues,
                counters={
                    entity_class: EntityCounters(total=len(ids))
                    for entity_class, ids in queues.items()
                },
                started_at=self.clock.now(),
            )
            state.transition_to(JobStatus.RUNNING)
            self.repository.save_new(state)

        except StoreError as e:
            logger.error("job_start_storage_failure", error=str(e))
            return Err(JobError(
                code=JobErrorCode.STORAGE_FAILURE,
                message="Could not persist the job state",
                details={"error": str(e)},
            ))

        set_job_context(state.id)
        self.scheduler.schedule_once(self.PROCESS_HOOK, 0)
        self.scheduler.schedule_recurring(
            self.LIVENESS_HOOK,
            self.config.batch.liveness_interval_seconds,
        )

        logger.info(
            "job_started",
            kind=kind,
            totals={entity_class: len(ids) for entity_class, ids in queues.items()},
        )
        return Ok(state.id)

    def _clear_previous(self, current: JobState) -> Optional[JobError]:
        """Make room for a new job, or explain why there is none."""
        now = self.clock.now()
        threshold = self.config.batch.stale_threshold_seconds

        if current.status.is_active():
            if not current.is_stale(now, threshold):
                return self._already_running(current)
            logger.warning(
                "stale_job_reset",
                stale_job_id=current.id,
                status=current.status.value,
                quiet_seconds=round(now - current.liveness_reference(), 1),
            )
        else:
            logger.info(
                "previous_job_cleared",
                previous_job_id=current.id,
                status=current.status.value,
            )

        current.transition_to(JobStatus.IDLE)
        self.repository.clear(current.id)
        self.scheduler.unschedule(self.PROCESS_HOOK)
        return None

    def _already_running(self, current: JobState) -> JobError:
        return JobError(
            code=JobErrorCode.JOB_ALREADY_RUNNING,
            message="An analysis job is already running",
            details={"job_id": current.id, "status": current.status.value},
        )

    def _limit_for(self, entity_class: str, options: Mapping[str, Any]) -> int:
        class_config = self.config.analysis.for_class(entity_class)
        requested = options.get(f"{entity_class}_limit", options.get("limit"))
        limit = class_config.limit if requested is None else int(requested)
        return max(0, min(limit, class_config.max_limit))

    async def _list_entities(
        self,
        entity_class: str,
        analyzer: Analyzer,
        limit: int,
    ) -> Result[list, JobError]:
        if limit <= 0:
            return Ok([])

        result = await self.circuit_breaker.execute(
            f"entities.{entity_class}",
            lambda: analyzer.get_entities(limit),
            cache_result=True,
        )
        if not result.success:
            return Err(JobError(
                code=JobErrorCode.ENTITY_LISTING_FAILED,
                message=f"Could not list {entity_class}",
                details={
                    "entity_class": entity_class,
                    "error": result.error.code if result.error else None,
                },
            ))

        ids: list = []
        for entity_id in result.data or []:
            if entity_id not in ids:
                ids.append(entity_id)
        return Ok(ids[:limit])

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_next_batch(self) -> BatchReport:
        """
        Process one time-boxed batch of the running job.

        Safe to invoke late, twice or concurrently with another invocation.
        Storage failures mark the job failed and are never raised to the
        scheduler.

        Returns:
            BatchReport describing why the invocation stopped
        """
        started = self.clock.now()

        try:
            state = self.repository.load()
        except StoreError as e:
            logger.error("job_state_unreadable", error=str(e))
            return BatchReport(StopReason.FAILED)

        if state is None or state.status is not JobStatus.RUNNING:
            return BatchReport(StopReason.NOT_RUNNING, job_id=state.id if state else None)

        job_id = state.id
        set_job_context(job_id)

        try:
            report = await self._run_batch(state, started)
        except StoreError as e:
            self._fail(job_id, e)
            report = BatchReport(StopReason.FAILED, job_id=job_id)

        log_batch_timing(job_id, report.units, self.clock.now() - started, report.stop_reason)
        return report

    async def _run_batch(self, state: JobState, started: float) -> BatchReport:
        job_id = state.id
        batch = self.config.batch
        now = self.clock.now()

        if state.current_item is not None:
            logger.debug("unit_in_flight", current_item=state.current_item.describe())
            return BatchReport(StopReason.UNIT_IN_FLIGHT, job_id=job_id)

        if state.throttled_until is not None and now < state.throttled_until:
            self.scheduler.schedule_once(self.PROCESS_HOOK, state.throttled_until - now)
            return BatchReport(StopReason.THROTTLED, job_id=job_id)

        def stamp(s: JobState) -> bool:
            if s.status is not JobStatus.RUNNING:
                return False
            s.throttled_until = None
            return True

        state = self.repository.update(job_id, stamp)
        units = 0

        while state is not None and state.status is JobStatus.RUNNING:
            entity_class = state.next_entity_class()
            if entity_class is None:
                return await self._complete(job_id, units)

            if units >= batch.max_items:
                return self._follow_up(job_id, units, StopReason.ITEM_CAP)
            if units > 0 and self.clock.now() - started >= batch.time_budget_seconds:
                return self._follow_up(job_id, units, StopReason.TIME_BUDGET)

            operation = self.analysis_operation(entity_class)
            if self.circuit_breaker.is_blocked(operation):
                self._throttle(job_id, self._circuit_delay(operation), StopReason.CIRCUIT_OPEN)
                return BatchReport(StopReason.CIRCUIT_OPEN, units, job_id)

            decision = self.rate_limiter.check_and_consume()
            if not decision.allowed:
                self._throttle(
                    job_id,
                    decision.retry_after_seconds + self.config.rate_limit.reschedule_buffer_seconds,
                    StopReason.RATE_LIMITED,
                )
                return BatchReport(StopReason.RATE_LIMITED, units, job_id)

            state, item = self._claim(job_id, entity_class)
            if item is None:
                break

            outcome = await self._analyze(item)
            state = self._record(job_id, item, outcome)

            if outcome is not None:
                units += 1

            if state is not None and state.status is JobStatus.CANCELLED:
                self._unschedule_all()
                logger.info("job_cancelled", in_flight=item.describe())
                return BatchReport(StopReason.CANCELLED, units, job_id)

            if outcome is None:
                # Circuit refused the call after the claim; the id is back in its queue
                self._throttle(job_id, self._circuit_delay(operation), StopReason.CIRCUIT_OPEN)
                return BatchReport(StopReason.CIRCUIT_OPEN, units, job_id)

        if state is None:
            return BatchReport(StopReason.SUPERSEDED, units, job_id)
        if state.status is JobStatus.RUNNING:
            return BatchReport(StopReason.UNIT_IN_FLIGHT, units, job_id)
        return BatchReport(StopReason.NOT_RUNNING, units, job_id)

    def _claim(
        self,
        job_id: str,
        entity_class: str,
    ) -> tuple[Optional[JobState], Optional[CurrentItem]]:
        """Pop the next id of entity_class into current_item."""
        claimed: list[CurrentItem] = []

        def claim(s: JobState) -> bool:
            if s.status is not JobStatus.RUNNING or s.current_item is not None:
                return False
            queue = s.queues.get(entity_class)
            if not queue:
                return False
            s.current_item = CurrentItem(entity_class, queue.pop(0), self.clock.now())
            claimed.append(s.current_item)
            return True

        state = self.repository.update(job_id, claim)
        return state, (claimed[0] if claimed else None)

    async def _analyze(self, item: CurrentItem) -> Optional[AnalysisOutcome]:
        """
        Run one unit of work through the circuit breaker.

        Returns:
            The outcome to record, or None if the circuit refused the call
        """
        analyzer = self.analyzers.get(item.entity_class)
        if analyzer is None:
            return AnalysisOutcome(
                success=False,
                error=f"No analyzer registered for {item.entity_class}",
            )

        result = await self.circuit_breaker.execute(
            self.analysis_operation(item.entity_class),
            lambda: analyzer.analyze_entity(item.entity_id),
        )

        if result.circuit_open:
            return None
        if not result.success:
            return AnalysisOutcome(
                success=False,
                error=result.error.message if result.error else "Analysis failed",
            )

        try:
            return AnalysisOutcome.coerce(result.data)
        except Exception as e:
            return AnalysisOutcome(success=False, error=f"Malformed analyzer result: {e}")

    def _record(
        self,
        job_id: str,
        item: CurrentItem,
        outcome: Optional[AnalysisOutcome],
    ) -> Optional[JobState]:
        """Record a unit's outcome, clear current_item and honor cancellation."""
        created = 0
        if outcome is not None and outcome.success:
            try:
                created = self.planner.create_from_outcome(item.entity_class, item.entity_id, outcome)
            except StoreError:
                raise
            except Exception as e:
                outcome = AnalysisOutcome(
                    success=False,
                    error=f"Could not create actions: {e}",
                    analysis_id=outcome.analysis_id,
                )

        def record(s: JobState) -> bool:
            # The liveness probe may have requeued this unit as orphaned
            if s.current_item is None or s.current_item != item:
                return False

            if outcome is None:
                s.requeue_current()
            else:
                s.current_item = None
                s.counters[item.entity_class].record(outcome.success)
                s.actions_created += created
                if not outcome.success:
                    s.record_error(
                        item.entity_class,
                        item.entity_id,
                        outcome.error or "Analysis failed",
                        self.config.batch.error_sample_size,
                    )

            if s.status is JobStatus.CANCELLING:
                s.transition_to(JobStatus.CANCELLED)
                s.completed_at = self.clock.now()
            return True

        state = self.repository.update(job_id, record)

        if outcome is not None:
            if outcome.success:
                logger.info(
                    "unit_succeeded",
                    entity_class=item.entity_class,
                    entity_id=item.entity_id,
                    actions_created=created,
                )
            else:
                logger.warning(
                    "unit_failed",
                    entity_class=item.entity_class,
                    entity_id=item.entity_id,
                    error=outcome.error,
                )
        return state

    async def _complete(self, job_id: str, units: int) -> BatchReport:
        finished: list[JobState] = []

        def finish(s: JobState) -> bool:
            if s.status is not JobStatus.RUNNING or s.has_pending() or s.current_item is not None:
                return False
            s.transition_to(JobStatus.COMPLETED)
            s.completed_at = self.clock.now()
            finished.append(s)
            return True

        state = self.repository.update(job_id, finish)
        if not finished:
            return BatchReport(
                StopReason.SUPERSEDED if state is None else StopReason.NOT_RUNNING,
                units,
                job_id,
            )

        self._unschedule_all()
        self.gate.increment_usage()

        executed = 0
        if (
            self.executor is not None
            and self.config.actions.auto_execute
            and self.gate.is_feature_enabled(AUTO_ACTIONS_FEATURE)
        ):
            executed = await self.planner.execute_pending(self.executor)
            if executed:

                def set_executed(s: JobState) -> bool:
                    s.actions_executed = executed
                    return True

                state = self.repository.update(job_id, set_executed) or state

        self.repository.record_run(RunSummary(
            job_id=job_id,
            kind=state.kind,
            success=True,
            counters={name: c.to_dict() for name, c in state.counters.items()},
            actions_created=state.actions_created,
            actions_executed=executed,
            started_at=state.started_at,
            completed_at=state.completed_at or self.clock.now(),
        ))

        logger.info(
            "job_completed",
            processed=state.processed,
            succeeded=state.succeeded,
            failed=state.failed,
            actions_created=state.actions_created,
            actions_executed=executed,
        )
        return BatchReport(StopReason.COMPLETED, units, job_id)

    def _follow_up(self, job_id: str, units: int, reason: str) -> BatchReport:
        self.scheduler.schedule_once(self.PROCESS_HOOK, self.config.batch.follow_up_delay_seconds)
        return BatchReport(reason, units, job_id)

    def _circuit_delay(self, operation: str) -> float:
        # A half-open circuit refusing extra probes has no retry time of its own
        return self.circuit_breaker.retry_in(operation) or self.config.circuit_breaker.recovery_timeout

    def _throttle(self, job_id: str, delay: float, reason: str) -> None:
        """Keep the queue intact and come back after delay seconds."""
        delay = max(0.0, delay)
        until = self.clock.now() + delay

        def throttle(s: JobState) -> bool:
            if s.status is not JobStatus.RUNNING:
                return False
            s.throttled_until = until
            return True

        self.repository.update(job_id, throttle)
        self.scheduler.schedule_once(self.PROCESS_HOOK, delay)
        logger.info("job_throttled", reason=reason, delay_seconds=round(delay, 1))

    def _fail(self, job_id: str, error: StoreError) -> None:
        """Best-effort transition to failed after a storage fault."""
        logger.error("job_storage_failure", error=str(error))

        def fail(s: JobState) -> bool:
            if not s.status.is_active():
                return False
            s.transition_to(JobStatus.FAILED)
            s.current_item = None
            s.failure_reason = str(error)
            s.completed_at = self.clock.now()
            return True

        try:
            state = self.repository.update(job_id, fail)
        except StoreError as e:
            logger.error("job_failure_not_persisted", error=str(e))
            return

        if state is not None and state.status is JobStatus.FAILED:
            self._unschedule_all()
            logger.error("job_failed", reason=state.failure_reason)

    def _unschedule_all(self) -> None:
        self.scheduler.unschedule(self.PROCESS_HOOK)
        self.scheduler.unschedule(self.LIVENESS_HOOK)

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    def cancel_job(self) -> Result[JobStatus, JobError]:
        """
        Cancel the running job.

        With no unit in flight the job is cancelled immediately; otherwise
        it moves to cancelling and the in-flight unit's outcome finishes the
        cancellation.

        Returns:
            Result with the resulting status (cancelled or cancelling)
        """
        try:
            state = self.repository.load()
            if state is None or state.status is not JobStatus.RUNNING:
                return Err(self._no_job_running(state))

            def cancel(s: JobState) -> bool:
                if s.status is not JobStatus.RUNNING:
                    return False
                if s.current_item is None:
                    s.transition_to(JobStatus.CANCELLED)
                    s.completed_at = self.clock.now()
                else:
                    s.transition_to(JobStatus.CANCELLING)
                return True

            updated = self.repository.update(state.id, cancel)
        except StoreError as e:
            logger.error("job_cancel_storage_failure", error=str(e))
            return Err(JobError(
                code=JobErrorCode.STORAGE_FAILURE,
                message="Could not persist the job state",
                details={"error": str(e)},
            ))

        if updated is None or updated.status not in (JobStatus.CANCELLING, JobStatus.CANCELLED):
            return Err(self._no_job_running(updated))

        set_job_context(updated.id)
        if updated.status is JobStatus.CANCELLED:
            self._unschedule_all()
            logger.info("job_cancelled", in_flight=None)
        else:
            logger.info("job_cancel_requested", in_flight=updated.current_item.describe())
        return Ok(updated.status)

    def _no_job_running(self, state: Optional[JobState]) -> JobError:
        status = state.status if state is not None else JobStatus.IDLE
        return JobError(
            code=JobErrorCode.NO_JOB_RUNNING,
            message="No analysis job is running",
            details={"status": status.value},
        )

    def get_progress(self) -> ProgressSnapshot:
        """Read-only snapshot of the current job."""
        state = self.repository.load()
        if state is None:
            return ProgressSnapshot.idle()

        now = self.clock.now()
        total = state.total
        processed = state.processed

        return ProgressSnapshot(
            status=state.status,
            job_id=state.id,
            kind=state.kind,
            counters={name: c.to_dict() for name, c in state.counters.items()},
            total=total,
            processed=processed,
            succeeded=state.succeeded,
            failed=state.failed,
            percentage=round(processed / total * 100) if total else 0,
            current_item=state.current_item.describe() if state.current_item else None,
            errors=[e.to_dict() for e in state.errors],
            actions_created=state.actions_created,
            actions_executed=state.actions_executed,
            started_at=state.started_at,
            updated_at=state.updated_at,
            completed_at=state.completed_at,
            throttled_for=(
                max(0.0, state.throttled_until - now) if state.throttled_until else 0.0
            ),
            failure_reason=state.failure_reason,
            is_stale=state.is_stale(now, self.config.batch.stale_threshold_seconds),
        )

    async def check_liveness(self) -> ProbeOutcome:
        """
        Recurring probe that keeps a job moving without operator help.

        Returns:
            ProbeOutcome describing what was found and done
        """
        try:
            state = self.repository.load()
        except StoreError as e:
            logger.error("liveness_probe_failed", error=str(e))
            return ProbeOutcome.UNAVAILABLE

        if state is None or not state.status.is_active():
            self.scheduler.unschedule(self.LIVENESS_HOOK)
            return ProbeOutcome.IDLE

        set_job_context(state.id)
        now = self.clock.now()

        if (
            state.status is JobStatus.RUNNING
            and state.throttled_until is not None
            and now < state.throttled_until
        ):
            self.scheduler.schedule_once(self.PROCESS_HOOK, state.throttled_until - now)
            return ProbeOutcome.THROTTLED

        if not state.is_stale(now, self.config.batch.stale_threshold_seconds):
            return ProbeOutcome.HEALTHY

        quiet_seconds = round(now - state.liveness_reference(), 1)
        try:
            if state.status is JobStatus.CANCELLING:
                return self._finish_stale_cancellation(state.id, quiet_seconds)
            return self._resume_stale(state.id, quiet_seconds)
        except StoreError as e:
            logger.error("liveness_probe_failed", error=str(e))
            return ProbeOutcome.UNAVAILABLE

    def _resume_stale(self, job_id: str, quiet_seconds: float) -> ProbeOutcome:
        requeued: list[CurrentItem] = []

        def resume(s: JobState) -> bool:
            if s.status is not JobStatus.RUNNING:
                return False
            item = s.requeue_current()
            if item is not None:
                requeued.append(item)
            s.throttled_until = None
            return True

        state = self.repository.update(job_id, resume)
        if state is None or state.status is not JobStatus.RUNNING:
            return ProbeOutcome.IDLE

        self.scheduler.schedule_once(self.PROCESS_HOOK, 0)
        logger.warning(
            "job_stale_resumed",
            quiet_seconds=quiet_seconds,
            requeued=requeued[0].describe() if requeued else None,
        )
        return ProbeOutcome.RESUMED

    def _finish_stale_cancellation(self, job_id: str, quiet_seconds: float) -> ProbeOutcome:
        def finish(s: JobState) -> bool:
            if s.status is not JobStatus.CANCELLING:
                return False
            s.requeue_current()
            s.transition_to(JobStatus.CANCELLED)
            s.completed_at = self.clock.now()
            return True

        state = self.repository.update(job_id, finish)
        if state is None or state.status is not JobStatus.CANCELLED:
            return ProbeOutcome.IDLE

        self._unschedule_all()
        logger.warning("job_stale_cancelled", quiet_seconds=quiet_seconds)
        return ProbeOutcome.CANCELLED

    def acknowledge(self) -> bool:
        """Clear a terminal record so the engine is idle again."""
        state = self.repository.load()
        if state is None or not state.status.is_terminal():
            return False

        final_status = state.status
        state.transition_to(JobStatus.IDLE)
        self.repository.clear(state.id)
        self._unschedule_all()
        logger.info("job_acknowledged", job_id=state.id, status=final_status.value)
        return True

    def reset(self) -> bool:
        """Delete the job record whatever its state and stop all hooks."""
        removed = self.repository.clear()
        self._unschedule_all()
        logger.warning("job_reset", removed=removed)
        return removed

    def is_active(self) -> bool:
        state = self.repository.load()
        return state is not None and state.status.is_active()

    def history(self) -> list[RunSummary]:
        return self.repository.runs()


def build_job_manager(
    config: EngineConfig,
    analyzers: Mapping[str, Analyzer],
    scheduler: Scheduler,
    clock: Optional[Clock] = None,
    store: Optional[KeyValueStore] = None,
    executor: Optional[ActionExecutor] = None,
    gate: Optional[FeatureGate] = None,
) -> JobManager:
    """
    Wire a JobManager from configuration.

    Args:
        config: Engine configuration
        analyzers: Analyzer per entity class
        scheduler: Host scheduler
        clock: Time source (defaults to wall clock)
        store: Store to use instead of the configured backend
        executor: Derived-action executor
        gate: Feature gate to use instead of the configured one

    Returns:
        Configured JobManager
    """
    clock = clock or SystemClock()
    if store is None:
        store = build_store(config.storage.backend, config.storage.state_dir, clock)

    return JobManager(
        config=config,
        store=store,
        scheduler=scheduler,
        analyzers=analyzers,
        clock=clock,
        gate=gate,
        executor=executor,
    )
