"""Queue workers that claim tasks, run handlers under a timeout, and report outcomes."""

from __future__ import annotations

import logging
import signal
import threading
import time
import uuid
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from task_engine.engine.circuit import CircuitBreakers
from task_engine.engine.errors import ConflictError, UnknownTaskType
from task_engine.engine.failure_classifier import classify_handler_exception, describe_exception
from task_engine.engine.handlers import HandlerRegistry
from task_engine.engine.models import (
    FailureClass,
    OutcomeKind,
    TaskOutcome,
    TaskStatus,
    TaskView,
)
from task_engine.engine.service import TaskEngine
from task_engine.storage.common import dump_json

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    conflicts: int = 0
    errors: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.timeouts += other.timeouts
        self.conflicts += other.conflicts
        self.errors += other.errors
        self.idle_polls += other.idle_polls


class Worker:
    """Consumes ready tasks and executes them via registered handlers."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        engine: TaskEngine,
        registry: HandlerRegistry,
        worker_id: str,
        poll_interval_seconds: float = 1.0,
        heartbeat_interval_seconds: float = 5.0,
        default_timeout_seconds: float = 300.0,
        stale_claim_after_seconds: int = 600,
        circuit_breakers: CircuitBreakers | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.default_timeout_seconds = default_timeout_seconds
        self.stale_claim_after_seconds = stale_claim_after_seconds
        self.circuit_breakers = circuit_breakers
        self._stop_event = stop_event or threading.Event()
        self._stop_signal_name: str | None = None
        self._current_task_id: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        task = self._claim_task()
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_task_id = task.task_id
        try:
            try:
                task = self.engine.start_task(task.task_id, self.worker_id)
            except ConflictError:
                logger.warning(
                    "Worker %s lost claim on %s before start",
                    self.worker_id,
                    task.task_id,
                )
                summary.conflicts = 1
                return summary

            outcome = self._execute_guarded(task)
            if outcome.failure_class == FailureClass.TIMEOUT:
                summary.timeouts = 1
            try:
                finished = self.engine.report_outcome(task.task_id, self.worker_id, outcome)
            except ConflictError:
                logger.warning(
                    "Worker %s no longer owns %s; outcome discarded",
                    self.worker_id,
                    task.task_id,
                )
                summary.conflicts = 1
                return summary

            if finished.status == TaskStatus.SUCCEEDED:
                summary.succeeded = 1
            elif finished.status == TaskStatus.PENDING:
                summary.retried = 1
            else:
                summary.failed = 1
            return summary
        finally:
            self._current_task_id = None

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle, max_tasks reached, or stop requested.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = keep polling until stopped).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self.stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                try:
                    summary = self.run_once()
                except Exception:
                    logger.exception("Worker %s failed while processing a task", self.worker_id)
                    aggregate.errors += 1
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _claim_task(self) -> TaskView | None:
        self._recover_stale_claims()
        if self.stop_requested:
            return None
        return self.engine.claim_next(self.worker_id)

    def _recover_stale_claims(self) -> None:
        if self.stale_claim_after_seconds <= 0:
            return
        self.engine.recover_stale_claims(timedelta(seconds=self.stale_claim_after_seconds))

    def _execute_guarded(self, task: TaskView) -> TaskOutcome:
        """Run ``task`` unless the breaker of its type is open; feed the result back."""

        breakers = self.circuit_breakers
        if breakers is None:
            return self._execute(task)
        if not breakers.allow(task.task_type):
            logger.warning(
                "Worker %s skipped %s: circuit for %s is open",
                self.worker_id,
                task.task_id,
                task.task_type,
            )
            return TaskOutcome.transient_failure(
                f"Circuit breaker is open for task type {task.task_type}",
                failure_class=FailureClass.CIRCUIT_OPEN,
            )
        outcome = self._execute(task)
        if outcome.failure_class != FailureClass.UNKNOWN_TASK_TYPE:
            breakers.record(task.task_type, success=outcome.kind == OutcomeKind.SUCCEEDED)
        return outcome

    def _execute(self, task: TaskView) -> TaskOutcome:
        try:
            handler = self.registry.get(task.task_type)
        except UnknownTaskType as error:
            return TaskOutcome.permanent_failure(
                str(error),
                failure_class=FailureClass.UNKNOWN_TASK_TYPE,
            )

        timeout = task.timeout_seconds or self.default_timeout_seconds
        deadline = time.monotonic() + timeout
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.worker_id}-task")
        future = executor.submit(handler.execute, dict(task.payload))
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    logger.warning("Task %s exceeded timeout of %ss", task.task_id, timeout)
                    return TaskOutcome.transient_failure(
                        f"Task exceeded timeout of {timeout}s",
                        failure_class=FailureClass.TIMEOUT,
                    )
                done, _ = wait_futures(
                    [future],
                    timeout=min(remaining, self.heartbeat_interval_seconds),
                )
                if done:
                    break
                self.engine.touch_heartbeat(task.task_id, self.worker_id)
        finally:
            # A timed-out handler thread cannot be killed; it is abandoned.
            executor.shutdown(wait=False, cancel_futures=True)

        error = future.exception()
        if error is not None:
            return _outcome_from_exception(task, error)
        return _outcome_from_result(future.result())

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_event.wait(max(0.0, seconds))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_signal_name = signal_name
        self._stop_event.set()
        logger.info(
            "Worker %s received %s, stopping after current task",
            self.worker_id,
            signal_name,
        )
        if self._current_task_id is None:
            return
        self.engine.store.add_event(
            task_id=self._current_task_id,
            event_type="shutdown_requested",
            status_from=TaskStatus.RUNNING,
            status_to=TaskStatus.RUNNING,
            details={"signal": signal_name, "worker_id": self.worker_id},
        )


def default_worker_id() -> str:
    """Per-process worker id so claims of separate processes never share an owner."""

    return f"worker-{uuid.uuid4().hex[:8]}"


class WorkerPool:
    """Runs several workers on threads with a shared stop event."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        engine: TaskEngine,
        registry: HandlerRegistry,
        size: int,
        worker_id_prefix: str = "worker",
        **worker_options: Any,
    ) -> None:
        if size < 1:
            raise ValueError("Worker pool size must be >= 1.")
        self.stop_event = threading.Event()
        self.workers = [
            Worker(
                engine=engine,
                registry=registry,
                worker_id=f"{worker_id_prefix}-{index + 1}",
                stop_event=self.stop_event,
                **worker_options,
            )
            for index in range(size)
        ]

    def stop(self) -> None:
        self.stop_event.set()

    def run(
        self,
        *,
        max_tasks_per_worker: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run every worker until each one exits; returns the combined summary."""

        summaries: list[WorkerRunSummary] = [WorkerRunSummary() for _ in self.workers]

        def _run(index: int) -> None:
            summaries[index] = self.workers[index].run_loop(
                max_tasks=max_tasks_per_worker,
                max_idle_polls=max_idle_polls,
            )

        threads = [
            threading.Thread(target=_run, args=(index,), name=worker.worker_id, daemon=True)
            for index, worker in enumerate(self.workers)
        ]
        # Worker threads cannot install signal handlers; the pool does it for them.
        with self.workers[0]._signal_handlers():  # noqa: SLF001
            for thread in threads:
                thread.start()
            for thread in threads:
                while thread.is_alive():
                    thread.join(timeout=0.5)

        aggregate = WorkerRunSummary()
        for summary in summaries:
            aggregate.add(summary)
        return aggregate


def _outcome_from_exception(task: TaskView, error: BaseException) -> TaskOutcome:
    classification = classify_handler_exception(error)
    message = describe_exception(error)
    logger.info(
        "Task %s handler raised %s (%s)",
        task.task_id,
        type(error).__name__,
        classification.reason_code,
    )
    if classification.retryable:
        return TaskOutcome.transient_failure(message, failure_class=classification.failure_class)
    return TaskOutcome.permanent_failure(message, failure_class=classification.failure_class)


def _outcome_from_result(value: object) -> TaskOutcome:
    if isinstance(value, TaskOutcome):
        return value
    try:
        dump_json(value)
    except (TypeError, ValueError) as error:
        return TaskOutcome.permanent_failure(f"Handler result is not JSON-serializable: {error}")
    return TaskOutcome.succeeded(value)
