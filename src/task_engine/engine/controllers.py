"""Controllers for task engine CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from task_engine.config import Settings
from task_engine.engine.circuit import CircuitBreakers
from task_engine.engine.errors import ValidationError
from task_engine.engine.handlers import load_registry
from task_engine.engine.models import FollowUpTemplate, TaskSpec, TaskStatus, TaskView
from task_engine.engine.service import TaskEngine
from task_engine.engine.worker import Worker, WorkerPool, WorkerRunSummary, default_worker_id
from task_engine.storage.common import dump_json, from_iso


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for batch submission."""

    db_path: Path | None
    batch_file: Path
    idempotency_key: str | None
    output_format: str = "text"


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    workers: int | None
    handlers: str | None
    max_idle_polls: int | None = 1
    worker_id: str | None = None


@dataclass(slots=True)
class OperationCommand:
    """CLI input addressing one operation."""

    db_path: Path | None
    operation_id: str


@dataclass(slots=True)
class TaskCommand:
    """CLI input addressing one task."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for listing tasks by status."""

    db_path: Path | None
    status: str
    limit: int


@dataclass(slots=True)
class StatsCommand:
    """CLI input for queue stats."""

    db_path: Path | None


class TaskEngineCliController:
    """Coordinates submission, worker, and inspection CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        raw = _read_batch_file(command.batch_file)
        specs, file_key = parse_batch(raw)
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            result = engine.submit_batch(specs, idempotency_key=command.idempotency_key or file_key)

        if command.output_format == "json":
            return [json.dumps({**result.to_dict(), "replayed": result.replayed}, indent=2)]
        lines = [
            f"Operation {'replayed' if result.replayed else 'accepted'}: "
            f"operation_id={result.operation_id} tasks={len(result.tasks)}",
        ]
        for entry in result.tasks:
            lines.append(
                f"  {entry.task_id} ref={entry.ref or '-'} type={entry.task_type} "
                f"status={entry.status.value}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        registry = load_registry(command.handlers)
        size = command.workers or settings.worker.workers
        worker_id = command.worker_id or default_worker_id()
        worker_options = {
            "poll_interval_seconds": settings.worker.poll_interval_seconds,
            "heartbeat_interval_seconds": settings.worker.heartbeat_interval_seconds,
            "default_timeout_seconds": settings.worker.default_timeout_seconds,
            "stale_claim_after_seconds": settings.worker.stale_claim_after_seconds,
            "circuit_breakers": CircuitBreakers.from_settings(settings.worker),
        }
        with _engine(settings) as engine:
            summary: WorkerRunSummary
            if command.once:
                worker = Worker(
                    engine=engine,
                    registry=registry,
                    worker_id=worker_id,
                    **worker_options,
                )
                summary = worker.run_once()
            elif size == 1:
                worker = Worker(
                    engine=engine,
                    registry=registry,
                    worker_id=worker_id,
                    **worker_options,
                )
                summary = worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            else:
                pool = WorkerPool(
                    engine=engine,
                    registry=registry,
                    size=size,
                    worker_id_prefix=worker_id,
                    **worker_options,
                )
                summary = pool.run(
                    max_tasks_per_worker=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"timeouts={summary.timeouts} conflicts={summary.conflicts} "
            f"errors={summary.errors} idle_polls={summary.idle_polls}",
        ]

    def operation_status(self, command: OperationCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            view = engine.get_operation_status(command.operation_id)

        lines = [
            f"Operation: {view.operation_id}",
            f"Status: {view.status.value}",
            f"Cancelled: {'yes' if view.cancelled else 'no'}",
            f"Tasks: {len(view.tasks)}",
        ]
        for entry in view.tasks:
            outcome = (
                f"error={entry.error}"
                if entry.error
                else f"result={dump_json(entry.result) if entry.result is not None else '-'}"
            )
            lines.append(
                f"  {entry.task_id} ref={entry.ref or '-'} type={entry.task_type} "
                f"status={entry.status.value} attempts={entry.attempt_count} {outcome}",
            )
        return lines

    def inspect_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            task = engine.get_task_status(command.task_id)
            events = engine.get_task_events(command.task_id)

        base_delay: object = task.retry_base_delay_seconds
        if base_delay is None:
            base_delay = "default"
        lines = [
            f"Task: {task.task_id}",
            f"Operation: {task.operation_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Attempt: {task.attempt_count}/{task.max_attempts}",
            f"Depends on: {', '.join(task.depends_on) or '-'}",
            f"Parent: {task.parent_task_id or '-'}",
            f"Success follow-up: {task.spawned_success_id or '-'}",
            f"Failure follow-up: {task.spawned_failure_id or '-'}",
            f"Retry: {task.retry_strategy or 'default'} base_delay={base_delay}",
            f"Worker: {task.worker_id or '-'}",
            f"Scheduled at: {task.scheduled_at.isoformat()}",
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Error: {task.error_summary or '-'}",
            f"Result: {dump_json(task.result) if task.result is not None else '-'}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status.strip().lower())
        with _engine(settings) as engine:
            tasks = engine.list_tasks(status, limit=command.limit)
        return _task_lines(f"Tasks ({status.value})", tasks)

    def dead_letter(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            tasks = engine.list_dead_letter(limit=command.limit)
        lines = _task_lines("Dead tasks", tasks)
        for task in tasks:
            lines.append(f"    {task.task_id}: {task.error_summary or '-'}")
        return lines

    def cancel_operation(self, command: OperationCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            view = engine.cancel_operation(command.operation_id)
        return [f"Operation cancelled: {view.operation_id} status={view.status.value}"]

    def retry_task(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            task = engine.retry_dead_task(command.task_id)
        return [f"Task re-queued: {task.task_id} status={task.status.value}"]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            report = engine.maintenance()
            stats = engine.queue_stats()

        lines = [
            f"Operations: {stats.operations} (cancelled={stats.cancelled_operations})",
            f"Tasks: {stats.total}",
        ]
        for status in TaskStatus:
            lines.append(f"  {status.value}: {stats.by_status.get(status, 0)}")
        lines.append(
            "Maintenance: "
            f"promoted={report.promoted} unblocked={report.unblocked} "
            f"dependency_failed={report.dependency_failed} recovered={report.recovered} "
            f"purged_keys={report.purged}",
        )
        return lines


def parse_batch(data: Any) -> tuple[list[TaskSpec], str | None]:
    """Turn the JSON batch document into task specs plus an optional idempotency key.

    Accepts either ``{"tasks": [...], "idempotency_key": "..."}`` or a bare list.
    """

    if isinstance(data, list):
        items, key = data, None
    elif isinstance(data, dict):
        items, key = data.get("tasks"), data.get("idempotency_key")
    else:
        raise ValidationError("Batch must be a JSON object with 'tasks' or a JSON list.")
    if not isinstance(items, list):
        raise ValidationError("Batch 'tasks' must be a list.")
    if key is not None and not isinstance(key, str):
        raise ValidationError("Batch 'idempotency_key' must be a string.")
    return [_parse_task(item, index=index) for index, item in enumerate(items)], key


def _parse_task(item: Any, *, index: int) -> TaskSpec:
    if not isinstance(item, dict):
        raise ValidationError(f"Task #{index} must be a JSON object.")
    depends_on = item.get("depends_on") or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    if not isinstance(depends_on, list):
        raise ValidationError(f"Task #{index}: depends_on must be a list.")
    scheduled_at = item.get("scheduled_at")
    try:
        parsed_schedule = from_iso(scheduled_at) if scheduled_at else None
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Task #{index}: invalid scheduled_at {scheduled_at!r}") from error
    return TaskSpec(
        task_type=item.get("type", ""),
        payload=item.get("payload", {}),
        ref=item.get("ref", item.get("id")),
        depends_on=tuple(depends_on),
        on_success=_parse_template(item.get("on_success"), where=f"Task #{index} on_success"),
        on_failure=_parse_template(item.get("on_failure"), where=f"Task #{index} on_failure"),
        max_attempts=item.get("max_attempts"),
        timeout_seconds=item.get("timeout_seconds"),
        scheduled_at=parsed_schedule,
        retry_strategy=item.get("retry_strategy"),
        retry_base_delay_seconds=item.get("retry_base_delay_seconds"),
    )


def _parse_template(value: Any, *, where: str) -> FollowUpTemplate | None:
    if value is None:
        return None
    if not isinstance(value, dict) or "type" not in value:
        raise ValidationError(f"{where} must be an object with a 'type'.")
    return FollowUpTemplate.from_dict(value)


def _read_batch_file(path: Path) -> Any:
    try:
        return json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValidationError(f"Batch file {path} is not valid JSON: {error}") from error


def _task_lines(title: str, tasks: list[TaskView]) -> list[str]:
    lines = [f"{title}: {len(tasks)}"]
    for task in tasks:
        lines.append(
            f"  {task.task_id} type={task.task_type} status={task.status.value} "
            f"attempt={task.attempt_count}/{task.max_attempts} "
            f"scheduled_at={task.scheduled_at.isoformat()}",
        )
    return lines


@contextmanager
def _engine(settings: Settings) -> Iterator[TaskEngine]:
    engine = TaskEngine.open(settings)
    try:
        yield engine
    finally:
        engine.close()
