"""Engine facade: submission, status, claiming, outcomes, and operator actions."""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from task_engine.config import Settings
from task_engine.engine.errors import (
    ConflictError,
    DuplicateIdempotencyKey,
    IdempotencyKeyInFlight,
    RetryExhausted,
    ValidationError,
)
from task_engine.engine.idempotency import IdempotencyCache, IdempotencyState, fingerprint
from task_engine.engine.models import (
    OWNED_STATUSES,
    UNSUCCESSFUL_STATUSES,
    FailureClass,
    FollowUpKind,
    OperationResult,
    OperationStatus,
    OperationStatusView,
    OutcomeKind,
    QueueStats,
    TaskCreate,
    TaskEventView,
    TaskOutcome,
    TaskSpec,
    TaskStatus,
    TaskStatusEntry,
    TaskView,
)
from task_engine.engine.resolver import DependencyResolver
from task_engine.engine.retry import RetryPolicy
from task_engine.engine.scheduler import Scheduler
from task_engine.engine.store import TaskStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MaintenanceReport:
    """Counters of one maintenance pass."""

    promoted: int = 0
    unblocked: int = 0
    dependency_failed: int = 0
    recovered: int = 0
    purged: int = 0


class TaskEngine:
    """External interface of the task engine."""

    def __init__(  # noqa: PLR0913
        self,
        store: TaskStore,
        *,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings.retry, rng=rng)
        self.resolver = DependencyResolver(store)
        self.scheduler = Scheduler(
            store,
            claim_retry_limit=self.settings.worker.claim_retry_limit,
            claim_retry_backoff_seconds=self.settings.worker.claim_retry_backoff_seconds,
            promote_batch_size=self.settings.worker.promote_batch_size,
            rng=rng,
            sleep=sleep,
        )
        self.idempotency = IdempotencyCache(
            store,
            retention=timedelta(hours=self.settings.idempotency.retention_hours),
            reservation_ttl=timedelta(seconds=self.settings.idempotency.reservation_ttl_seconds),
        )
        self._sleep = sleep
        self._monotonic = monotonic

    @classmethod
    def open(cls, settings: Settings, **kwargs: object) -> TaskEngine:
        """Build a store for ``settings.db_path``, migrate it, and wrap it in an engine."""

        store = TaskStore(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
        store.init_schema()
        return cls(store, settings=settings, **kwargs)  # type: ignore[arg-type]

    def close(self) -> None:
        self.store.close()

    # -- submission -------------------------------------------------------------

    def submit_batch(
        self,
        tasks: Sequence[TaskSpec],
        idempotency_key: str | None = None,
    ) -> OperationResult:
        """Validate and persist a batch; replay the cached result for a known key."""

        specs = list(tasks)
        if idempotency_key is None:
            return self._create_batch(specs, idempotency_key=None)
        if not idempotency_key.strip():
            raise ValidationError("Idempotency key must be a non-empty string.")

        # Fingerprinting needs JSON-ready specs; reject bad ones before reserving.
        self.resolver.validate_specs(specs)
        request_fingerprint = fingerprint(specs)
        try:
            token = self._reserve_key(idempotency_key, request_fingerprint)
        except DuplicateIdempotencyKey as duplicate:
            return self._replay(duplicate)

        try:
            result = self._create_batch(specs, idempotency_key=idempotency_key)
        except BaseException:
            self.idempotency.release(idempotency_key, token)
            raise
        self.idempotency.complete(idempotency_key, token, result, self.store.clock())
        return result

    def _reserve_key(self, key: str, request_fingerprint: str) -> str:
        deadline = self._monotonic() + self.settings.idempotency.wait_timeout_seconds
        while True:
            now = self.store.clock()
            record = self.idempotency.lookup(key, now)
            if record is None:
                token = self.idempotency.reserve(key, request_fingerprint, now)
                if token is not None:
                    return token
                continue
            if record.request_fingerprint != request_fingerprint:
                raise ValidationError(
                    f"Idempotency key {key!r} was already used for a different request.",
                )
            if record.state == IdempotencyState.COMPLETED:
                raise DuplicateIdempotencyKey(key, record.operation_id)
            if self._monotonic() >= deadline:
                raise IdempotencyKeyInFlight(
                    f"Submission with idempotency key {key!r} is still in flight.",
                )
            self._sleep(self.settings.idempotency.poll_interval_seconds)

    def _replay(self, duplicate: DuplicateIdempotencyKey) -> OperationResult:
        if duplicate.operation_id is None:
            raise ConflictError(f"Idempotency key {duplicate.key!r} has no operation recorded.")
        logger.info(
            "Replaying operation %s for idempotency key %s",
            duplicate.operation_id,
            duplicate.key,
        )
        return OperationResult(
            operation_id=duplicate.operation_id,
            tasks=_status_entries(self.store.list_operation_tasks(duplicate.operation_id)),
            replayed=True,
        )

    def _create_batch(
        self,
        specs: list[TaskSpec],
        *,
        idempotency_key: str | None,
    ) -> OperationResult:
        plan = self.resolver.plan_batch(
            specs,
            now=self.store.clock(),
            default_max_attempts=self.settings.retry.default_max_attempts,
            idempotency_key=idempotency_key,
        )
        self.store.create_operation(
            operation_id=plan.operation_id,
            idempotency_key=idempotency_key,
            tasks=plan.tasks,
        )
        # External dependencies may have finished between planning and insert.
        for task_id in plan.blocked_task_ids:
            self.resolver.reevaluate_task(task_id)
        logger.info("Accepted operation %s with %d task(s)", plan.operation_id, len(plan.tasks))
        return OperationResult(
            operation_id=plan.operation_id,
            tasks=_status_entries(self.store.list_operation_tasks(plan.operation_id)),
        )

    # -- status -----------------------------------------------------------------

    def get_operation_status(self, operation_id: str) -> OperationStatusView:
        operation = self.store.get_operation(operation_id)
        tasks = self.store.list_operation_tasks(operation_id)
        cancelled = operation.cancelled_at is not None
        return OperationStatusView(
            operation_id=operation_id,
            status=_aggregate_status(tasks, cancelled=cancelled),
            cancelled=cancelled,
            tasks=_status_entries(tasks),
        )

    def get_task_status(self, task_id: str) -> TaskView:
        return self.store.get(task_id)

    def get_task_events(self, task_id: str) -> list[TaskEventView]:
        self.store.get(task_id)
        return self.store.list_events(task_id)

    def list_tasks(self, status: TaskStatus, limit: int = 50) -> list[TaskView]:
        return self.store.list_by_status(status, limit=limit)

    def list_dead_letter(self, limit: int = 50) -> list[TaskView]:
        return self.store.list_by_status(TaskStatus.DEAD, limit=limit)

    def queue_stats(self) -> QueueStats:
        operations, cancelled = self.store.count_operations()
        return QueueStats(
            by_status=self.store.count_by_status(),
            operations=operations,
            cancelled_operations=cancelled,
        )

    # -- worker protocol --------------------------------------------------------

    def claim_next(self, worker_id: str) -> TaskView | None:
        return self.scheduler.claim_next(worker_id)

    def start_task(self, task_id: str, worker_id: str) -> TaskView:
        """Move a claimed task to ``running``; the caller must hold the claim."""

        if not self.store.compare_and_set_status(
            task_id,
            TaskStatus.CLAIMED,
            TaskStatus.RUNNING,
            worker_id=worker_id,
            event_type="started",
            details={"worker_id": worker_id},
        ):
            raise ConflictError(f"Worker {worker_id} does not hold a claim on task {task_id}")
        return self.store.get(task_id)

    def touch_heartbeat(self, task_id: str, worker_id: str) -> bool:
        return self.store.touch_heartbeat(task_id=task_id, worker_id=worker_id)

    def report_outcome(self, task_id: str, worker_id: str, outcome: TaskOutcome) -> TaskView:
        """Record the result of one execution and drive retries, follow-ups, and dependents."""

        task = self.store.get(task_id)
        if task.status not in OWNED_STATUSES or task.worker_id != worker_id:
            raise ConflictError(f"Worker {worker_id} no longer owns task {task_id}")
        if not self._apply_outcome(task, worker_id=worker_id, outcome=outcome):
            raise ConflictError(f"Worker {worker_id} lost task {task_id} before reporting")
        return self.store.get(task_id)

    def recover_stale_claims(self, stale_after: timedelta | None = None) -> int:
        return self.scheduler.recover_stale_claims(
            stale_after=stale_after
            or timedelta(seconds=self.settings.worker.stale_claim_after_seconds),
            report=self._report_stale,
        )

    def _report_stale(self, task: TaskView, threshold: datetime) -> bool:
        if task.worker_id is None:
            return False
        return self._apply_outcome(
            task,
            worker_id=task.worker_id,
            outcome=TaskOutcome.transient_failure(
                f"Claim held by {task.worker_id} stopped heartbeating",
                failure_class=FailureClass.STALE_CLAIM,
            ),
            heartbeat_before=threshold,
        )

    def _apply_outcome(
        self,
        task: TaskView,
        *,
        worker_id: str,
        outcome: TaskOutcome,
        heartbeat_before: datetime | None = None,
    ) -> bool:
        if outcome.kind == OutcomeKind.SUCCEEDED:
            won = self.store.finish_with_follow_up(
                task_id=task.task_id,
                worker_id=worker_id,
                expected=OWNED_STATUSES,
                new=TaskStatus.SUCCEEDED,
                follow_up=self._follow_up(task, FollowUpKind.SUCCESS),
                heartbeat_before=heartbeat_before,
                event_type="succeeded",
                result=outcome.result,
                failure_class=None,
                error_summary=None,
            )
        elif outcome.kind == OutcomeKind.TRANSIENT_FAILURE:
            won = self._retry_or_bury(
                task,
                worker_id=worker_id,
                outcome=outcome,
                heartbeat_before=heartbeat_before,
            )
        else:
            failure_class = outcome.failure_class or FailureClass.HANDLER_PERMANENT
            won = self.store.finish_with_follow_up(
                task_id=task.task_id,
                worker_id=worker_id,
                expected=OWNED_STATUSES,
                new=TaskStatus.FAILED,
                follow_up=self._follow_up(task, FollowUpKind.FAILURE),
                heartbeat_before=heartbeat_before,
                event_type="failed",
                details={"failure_class": failure_class.value},
                failure_class=failure_class,
                error_summary=outcome.error,
            )
            if won:
                logger.warning("Task %s failed permanently: %s", task.task_id, outcome.error)

        if won and outcome.kind != OutcomeKind.TRANSIENT_FAILURE:
            self.resolver.reevaluate_dependents(task.task_id)
        return won

    def _retry_or_bury(
        self,
        task: TaskView,
        *,
        worker_id: str,
        outcome: TaskOutcome,
        heartbeat_before: datetime | None,
    ) -> bool:
        failure_class = outcome.failure_class or FailureClass.HANDLER_TRANSIENT
        policy = self.retry_policy.for_task(
            strategy=task.retry_strategy,
            base_delay_seconds=task.retry_base_delay_seconds,
        )
        decision = policy.decide(
            attempt_count=task.attempt_count,
            max_attempts=task.max_attempts,
            now=self.store.clock(),
        )
        if decision.retry:
            logger.info(
                "Task %s attempt %d/%d failed (%s), retrying in %.2fs",
                task.task_id,
                task.attempt_count,
                task.max_attempts,
                failure_class.value,
                decision.delay_seconds,
            )
            return self.store.compare_and_set_status(
                task.task_id,
                OWNED_STATUSES,
                TaskStatus.PENDING,
                worker_id=worker_id,
                heartbeat_before=heartbeat_before,
                event_type="retry_scheduled",
                details={
                    "attempt": task.attempt_count,
                    "delay_seconds": round(decision.delay_seconds, 3),
                    "failure_class": failure_class.value,
                },
                scheduled_at=decision.scheduled_at,
                failure_class=failure_class,
                error_summary=outcome.error,
                claimed_at=None,
                heartbeat_at=None,
            )

        exhausted = RetryExhausted(task.task_id, task.attempt_count)
        won = self.store.finish_with_follow_up(
            task_id=task.task_id,
            worker_id=worker_id,
            expected=OWNED_STATUSES,
            new=TaskStatus.DEAD,
            follow_up=self._follow_up(task, FollowUpKind.FAILURE),
            heartbeat_before=heartbeat_before,
            event_type="dead",
            details={"last_failure_class": failure_class.value, "attempts": task.attempt_count},
            failure_class=FailureClass.RETRY_EXHAUSTED,
            error_summary=f"{exhausted}; last error: {outcome.error}",
        )
        if won:
            logger.warning("%s", exhausted)
            self.resolver.reevaluate_dependents(task.task_id)
        return won

    def _follow_up(self, parent: TaskView, kind: FollowUpKind) -> TaskCreate | None:
        template = parent.follow_up_template(kind)
        if template is None or parent.spawned_follow_up_id(kind) is not None:
            return None
        return TaskCreate(
            task_id=str(uuid.uuid4()),
            operation_id=parent.operation_id,
            task_type=template.task_type,
            payload=dict(template.payload),
            status=TaskStatus.READY,
            max_attempts=template.max_attempts or self.settings.retry.default_max_attempts,
            scheduled_at=self.store.clock(),
            position=parent.position,
            parent_task_id=parent.task_id,
        )

    # -- operator actions -------------------------------------------------------

    def cancel_operation(self, operation_id: str) -> OperationStatusView:
        """Stop dispatching the operation's remaining tasks; running ones finish."""

        self.store.get_operation(operation_id)
        if self.store.mark_operation_cancelled(operation_id):
            logger.info("Cancelled operation %s", operation_id)
        return self.get_operation_status(operation_id)

    def retry_dead_task(self, task_id: str) -> TaskView:
        """Requeue a ``dead`` or ``failed`` task with a fresh attempt budget."""

        task = self.store.get(task_id)
        if task.status not in UNSUCCESSFUL_STATUSES:
            raise ConflictError(
                f"Only dead or failed tasks can be retried; task {task_id} is {task.status.value}",
            )
        statuses = self.store.statuses(task.depends_on)
        broken = [dep for dep, status in statuses.items() if status in UNSUCCESSFUL_STATUSES]
        if broken:
            raise ConflictError(
                f"Task {task_id} depends on unsuccessful task(s): {', '.join(sorted(broken))}",
            )
        ready = all(status == TaskStatus.SUCCEEDED for status in statuses.values())
        target = TaskStatus.READY if ready else TaskStatus.BLOCKED
        if not self.store.compare_and_set_status(
            task_id,
            task.status,
            target,
            event_type="manual_retry",
            details={"previous_status": task.status.value},
            attempt_count=0,
            scheduled_at=self.store.clock(),
            failure_class=None,
            error_summary=None,
            finished_at=None,
            claimed_at=None,
            heartbeat_at=None,
        ):
            raise ConflictError(f"Task {task_id} changed while requeueing")
        logger.info("Requeued task %s as %s", task_id, target.value)
        return self.store.get(task_id)

    def maintenance(self, now: datetime | None = None) -> MaintenanceReport:
        """Promote due tasks, re-check blocked ones, recover stale claims, purge keys."""

        now = now or self.store.clock()
        report = MaintenanceReport(promoted=self.scheduler.promote_due(now))
        for transition in self.resolver.sweep_blocked():
            if transition.status == TaskStatus.FAILED:
                report.dependency_failed += 1
            else:
                report.unblocked += 1
        report.recovered = self.recover_stale_claims()
        report.purged = self.idempotency.purge_expired(now)
        return report


def _status_entries(tasks: Sequence[TaskView]) -> list[TaskStatusEntry]:
    return [
        TaskStatusEntry(
            task_id=task.task_id,
            ref=task.ref,
            task_type=task.task_type,
            status=task.status,
            attempt_count=task.attempt_count,
            result=task.result,
            error=task.error_summary,
        )
        for task in tasks
    ]


def _aggregate_status(tasks: Sequence[TaskView], *, cancelled: bool) -> OperationStatus:
    if tasks and all(task.status == TaskStatus.SUCCEEDED for task in tasks):
        return OperationStatus.COMPLETE
    if tasks and all(task.status.is_terminal for task in tasks):
        return OperationStatus.FAILED
    if cancelled:
        return OperationStatus.CANCELLED
    return OperationStatus.PARTIAL
