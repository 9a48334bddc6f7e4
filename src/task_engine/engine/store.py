"""Durable task store backed by SQLModel + SQLite.

Every status transition goes through a compare-and-set ``UPDATE ... WHERE
status = :observed`` and is checked by row count; a ``False`` result means
another actor changed the task first. The audit event for a transition is
written in the same transaction as the transition itself.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from task_engine.engine.errors import NotFoundError
from task_engine.engine.models import (
    FailureClass,
    FollowUpKind,
    FollowUpTemplate,
    OperationView,
    TaskCreate,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from task_engine.storage.alembic_runner import upgrade_head
from task_engine.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_engine.storage.sqlmodel_models import (
    OperationRow,
    TaskDependencyRow,
    TaskEventRow,
    TaskRow,
)

StatusSet = TaskStatus | Iterable[TaskStatus]


class TaskStore:
    """Single source of truth for tasks, operations, edges, and events."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- creation ---------------------------------------------------------------

    def create_operation(
        self,
        *,
        operation_id: str,
        idempotency_key: str | None,
        tasks: Sequence[TaskCreate],
    ) -> OperationView:
        """Persist a batch header, its tasks, and their edges atomically."""

        now = self.clock()
        with Session(self.engine) as session:
            operation = OperationRow(
                operation_id=operation_id,
                idempotency_key=idempotency_key,
                task_count=len(tasks),
                created_at=to_db_datetime(now),
            )
            session.add(operation)
            session.flush()
            for task in tasks:
                session.add(_to_task_row(task, now=now))
            session.flush()
            for task in tasks:
                for upstream_id in task.depends_on:
                    session.add(
                        TaskDependencyRow(task_id=task.task_id, depends_on_task_id=upstream_id),
                    )
                self._add_event(
                    session=session,
                    task_id=task.task_id,
                    event_type="created",
                    status_from=None,
                    status_to=task.status,
                    details={
                        "operation_id": operation_id,
                        "task_type": task.task_type,
                        "depends_on": list(task.depends_on),
                    },
                )
            session.commit()
            session.refresh(operation)
            return _to_operation_view(operation)

    def create(self, task: TaskCreate) -> str:
        """Insert one task into an existing operation."""

        now = self.clock()
        with Session(self.engine) as session:
            self._insert_into_operation(session=session, task=task, now=now)
            session.commit()
        return task.task_id

    def _insert_into_operation(self, *, session: Session, task: TaskCreate, now: datetime) -> None:
        result = session.execute(
            sa_update(OperationRow)
            .where(col(OperationRow.operation_id) == task.operation_id)
            .values(task_count=col(OperationRow.task_count) + 1),
        )
        if result.rowcount != 1:
            raise NotFoundError(f"Operation not found: {task.operation_id}")
        session.add(_to_task_row(task, now=now))
        session.flush()
        for upstream_id in task.depends_on:
            session.add(TaskDependencyRow(task_id=task.task_id, depends_on_task_id=upstream_id))
        self._add_event(
            session=session,
            task_id=task.task_id,
            event_type="created",
            status_from=None,
            status_to=task.status,
            details={
                "operation_id": task.operation_id,
                "task_type": task.task_type,
                "parent_task_id": task.parent_task_id,
            },
        )

    # -- reads ------------------------------------------------------------------

    def get(self, task_id: str) -> TaskView:
        task = self.find(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def find(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if row is None:
                return None
            edges = self._edges_for(session=session, task_ids=[task_id])
        return _to_task_view(row, depends_on=edges.get(task_id, ()))

    def statuses(self, task_ids: Iterable[str]) -> dict[str, TaskStatus]:
        """Current status of each existing id; missing ids are omitted."""

        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow.task_id, TaskRow.status).where(col(TaskRow.task_id).in_(ids)),
            ).all()
        return {task_id: TaskStatus(status) for task_id, status in rows}

    def list_by_status(self, status: TaskStatus, limit: int = 50) -> list[TaskView]:
        """Tasks in one status, earliest ``scheduled_at`` first, then creation order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(TaskRow.status == status.value)
                .order_by(*_dispatch_order())
                .limit(limit),
            ).all()
            return self._to_views(session=session, rows=rows)

    def list_due(self, *, status: TaskStatus, now: datetime, limit: int) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    TaskRow.status == status.value,
                    col(TaskRow.scheduled_at) <= to_db_datetime(now),
                )
                .order_by(*_dispatch_order())
                .limit(limit),
            ).all()
            return self._to_views(session=session, rows=rows)

    def list_claim_candidates(self, *, now: datetime, limit: int) -> list[TaskView]:
        """Ready, due tasks with attempts left whose operation is not cancelled."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .join(OperationRow, col(OperationRow.operation_id) == col(TaskRow.operation_id))
                .where(
                    TaskRow.status == TaskStatus.READY.value,
                    col(TaskRow.scheduled_at) <= to_db_datetime(now),
                    col(TaskRow.attempt_count) < col(TaskRow.max_attempts),
                    col(OperationRow.cancelled_at).is_(None),
                )
                .order_by(*_dispatch_order())
                .limit(limit),
            ).all()
            return self._to_views(session=session, rows=rows)

    def list_stale_claims(self, *, older_than: datetime, limit: int = 50) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    col(TaskRow.status).in_([status.value for status in _OWNED]),
                    col(TaskRow.heartbeat_at) < to_db_datetime(older_than),
                )
                .order_by(col(TaskRow.heartbeat_at).asc())
                .limit(limit),
            ).all()
            return self._to_views(session=session, rows=rows)

    def list_dependents(self, task_id: str) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskDependencyRow.task_id)
                .where(TaskDependencyRow.depends_on_task_id == task_id)
                .order_by(col(TaskDependencyRow.id).asc()),
            ).all()
        return list(rows)

    def get_operation(self, operation_id: str) -> OperationView:
        with Session(self.engine) as session:
            row = session.exec(
                select(OperationRow).where(OperationRow.operation_id == operation_id),
            ).one_or_none()
        if row is None:
            raise NotFoundError(f"Operation not found: {operation_id}")
        return _to_operation_view(row)

    def list_operation_tasks(self, operation_id: str) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(TaskRow.operation_id == operation_id)
                .order_by(col(TaskRow.created_at).asc(), col(TaskRow.position).asc()),
            ).all()
            return self._to_views(session=session, rows=rows)

    def count_by_status(self) -> dict[TaskStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow.status, func.count()).group_by(TaskRow.status),
            ).all()
        counts = dict.fromkeys(TaskStatus, 0)
        for status, count in rows:
            counts[TaskStatus(status)] = int(count)
        return counts

    def count_operations(self) -> tuple[int, int]:
        """Return ``(total, cancelled)`` operation counts."""

        with Session(self.engine) as session:
            total = session.exec(select(func.count()).select_from(OperationRow)).one()
            cancelled = session.exec(
                select(func.count())
                .select_from(OperationRow)
                .where(col(OperationRow.cancelled_at).is_not(None)),
            ).one()
        return int(total), int(cancelled)

    def list_events(self, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.id).asc()),
            ).all()
        return [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                event_type=row.event_type,
                status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
                status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=_parse_details(row.details_json),
            )
            for row in rows
        ]

    # -- transitions ------------------------------------------------------------

    def compare_and_set_status(  # noqa: PLR0913
        self,
        task_id: str,
        expected: StatusSet,
        new: TaskStatus,
        *,
        worker_id: str | None = None,
        heartbeat_before: datetime | None = None,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
        **values: Any,
    ) -> bool:
        """Move ``task_id`` to ``new`` only if it is currently in ``expected``.

        When ``worker_id`` is given the task must also be owned by that worker.
        When ``heartbeat_before`` is given the task must not have heartbeated
        since then. Extra keyword values are written to the row in the same
        update.
        """

        with Session(self.engine) as session:
            observed = self._cas(
                session=session,
                task_id=task_id,
                expected=expected,
                new=new,
                worker_id=worker_id,
                heartbeat_before=heartbeat_before,
                values=values,
            )
            if observed is None:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type or new.value,
                status_from=observed,
                status_to=new,
                details=details or {},
            )
            session.commit()
            return True

    def claim(self, *, task_id: str, worker_id: str) -> TaskView | None:
        """CAS ``ready -> claimed`` for one task, consuming one attempt."""

        now = self.clock()
        with Session(self.engine) as session:
            result = session.execute(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == TaskStatus.READY.value,
                    col(TaskRow.attempt_count) < col(TaskRow.max_attempts),
                )
                .values(
                    status=TaskStatus.CLAIMED.value,
                    attempt_count=col(TaskRow.attempt_count) + 1,
                    worker_id=worker_id,
                    claimed_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="claimed",
                status_from=TaskStatus.READY,
                status_to=TaskStatus.CLAIMED,
                details={"worker_id": worker_id, "attempt": row.attempt_count},
            )
            session.commit()
            session.refresh(row)
            edges = self._edges_for(session=session, task_ids=[task_id])
        return _to_task_view(row, depends_on=edges.get(task_id, ()))

    def finish_with_follow_up(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str | None,
        expected: StatusSet,
        new: TaskStatus,
        follow_up: TaskCreate | None,
        heartbeat_before: datetime | None = None,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
        **values: Any,
    ) -> bool:
        """Terminal transition plus optional follow-up insert in one transaction.

        The follow-up exists only if the transition won. A ``succeeded``
        transition spawns from ``on_success`` and any other from
        ``on_failure``; each kind is spawned at most once per parent, so a dead
        task that is retried and then succeeds still gets its success follow-up.
        """

        now = self.clock()
        kind = FollowUpKind.SUCCESS if new == TaskStatus.SUCCEEDED else FollowUpKind.FAILURE
        with Session(self.engine) as session:
            observed = self._cas(
                session=session,
                task_id=task_id,
                expected=expected,
                new=new,
                worker_id=worker_id,
                heartbeat_before=heartbeat_before,
                values={"finished_at": now, **values},
            )
            if observed is None:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type or new.value,
                status_from=observed,
                status_to=new,
                details=details or {},
            )
            if follow_up is not None:
                column = _SPAWNED_COLUMNS[kind]
                marked = session.execute(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == task_id,
                        col(getattr(TaskRow, column)).is_(None),
                    )
                    .values({column: follow_up.task_id}),
                )
                if marked.rowcount == 1:
                    self._insert_into_operation(session=session, task=follow_up, now=now)
                    self._add_event(
                        session=session,
                        task_id=task_id,
                        event_type="follow_up_spawned",
                        status_from=new,
                        status_to=new,
                        details={
                            "follow_up_task_id": follow_up.task_id,
                            "task_type": follow_up.task_type,
                            "kind": kind.value,
                        },
                    )
            session.commit()
            return True

    def touch_heartbeat(self, *, task_id: str, worker_id: str) -> bool:
        """Refresh the heartbeat of a task owned by ``worker_id``."""

        now = self.clock()
        with Session(self.engine) as session:
            result = session.execute(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.worker_id) == worker_id,
                    col(TaskRow.status).in_([status.value for status in _OWNED]),
                )
                .values(heartbeat_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            session.commit()
            return result.rowcount == 1

    def mark_operation_cancelled(self, operation_id: str) -> bool:
        now = self.clock()
        with Session(self.engine) as session:
            result = session.execute(
                sa_update(OperationRow)
                .where(
                    col(OperationRow.operation_id) == operation_id,
                    col(OperationRow.cancelled_at).is_(None),
                )
                .values(cancelled_at=to_db_datetime(now)),
            )
            session.commit()
            return result.rowcount == 1

    def add_event(
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    # -- internals --------------------------------------------------------------

    def _cas(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        expected: StatusSet,
        new: TaskStatus,
        worker_id: str | None,
        values: dict[str, Any],
        heartbeat_before: datetime | None = None,
    ) -> TaskStatus | None:
        allowed = _status_set(expected)
        current = session.exec(
            select(TaskRow.status).where(TaskRow.task_id == task_id),
        ).one_or_none()
        if current is None:
            raise NotFoundError(f"Task not found: {task_id}")
        observed = TaskStatus(current)
        if observed not in allowed:
            return None

        conditions = [col(TaskRow.task_id) == task_id, col(TaskRow.status) == observed.value]
        if worker_id is not None:
            conditions.append(col(TaskRow.worker_id) == worker_id)
        if heartbeat_before is not None:
            conditions.append(
                or_(
                    col(TaskRow.heartbeat_at).is_(None),
                    col(TaskRow.heartbeat_at) < to_db_datetime(heartbeat_before),
                ),
            )
        result = session.execute(
            sa_update(TaskRow)
            .where(*conditions)
            .values(
                status=new.value,
                updated_at=to_db_datetime(self.clock()),
                **_db_values(values),
            ),
        )
        if result.rowcount != 1:
            return None
        return observed

    def _edges_for(self, *, session: Session, task_ids: list[str]) -> dict[str, tuple[str, ...]]:
        if not task_ids:
            return {}
        rows = session.exec(
            select(TaskDependencyRow)
            .where(col(TaskDependencyRow.task_id).in_(task_ids))
            .order_by(col(TaskDependencyRow.id).asc()),
        ).all()
        edges: dict[str, list[str]] = {}
        for row in rows:
            edges.setdefault(row.task_id, []).append(row.depends_on_task_id)
        return {task_id: tuple(upstream) for task_id, upstream in edges.items()}

    def _to_views(self, *, session: Session, rows: Sequence[TaskRow]) -> list[TaskView]:
        edges = self._edges_for(session=session, task_ids=[row.task_id for row in rows])
        return [_to_task_view(row, depends_on=edges.get(row.task_id, ())) for row in rows]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(self.clock()),
            ),
        )


_OWNED = (TaskStatus.CLAIMED, TaskStatus.RUNNING)

_SPAWNED_COLUMNS = {
    FollowUpKind.SUCCESS: "spawned_success_id",
    FollowUpKind.FAILURE: "spawned_failure_id",
}

_JSON_COLUMNS = {
    "result": "result_json",
    "payload": "payload_json",
}


def _status_set(expected: StatusSet) -> frozenset[TaskStatus]:
    if isinstance(expected, TaskStatus):
        return frozenset({expected})
    return frozenset(expected)


def _dispatch_order() -> tuple[Any, ...]:
    return (
        col(TaskRow.scheduled_at).asc(),
        col(TaskRow.created_at).asc(),
        col(TaskRow.position).asc(),
    )


def _db_values(values: dict[str, Any]) -> dict[str, Any]:
    converted: dict[str, Any] = {}
    for key, value in values.items():
        if key in _JSON_COLUMNS:
            converted[_JSON_COLUMNS[key]] = dump_json(value) if value is not None else None
        elif isinstance(value, datetime):
            converted[key] = to_db_datetime(value)
        elif isinstance(value, Enum):
            converted[key] = value.value
        else:
            converted[key] = value
    return converted


def _parse_details(raw: str | None) -> dict[str, Any]:
    parsed = load_json(raw)
    return parsed if isinstance(parsed, dict) else {}


def _template_json(template: FollowUpTemplate | None) -> str | None:
    return dump_json(template.to_dict()) if template is not None else None


def _template_from_json(raw: str | None) -> FollowUpTemplate | None:
    data = load_json(raw)
    return FollowUpTemplate.from_dict(data) if isinstance(data, dict) else None


def _to_task_row(task: TaskCreate, *, now: datetime) -> TaskRow:
    return TaskRow(
        task_id=task.task_id,
        operation_id=task.operation_id,
        ref=task.ref,
        position=task.position,
        task_type=task.task_type,
        payload_json=dump_json(task.payload),
        status=task.status.value,
        on_success_json=_template_json(task.on_success),
        on_failure_json=_template_json(task.on_failure),
        attempt_count=0,
        max_attempts=task.max_attempts,
        timeout_seconds=task.timeout_seconds,
        idempotency_key=task.idempotency_key,
        parent_task_id=task.parent_task_id,
        failure_class=task.failure_class.value if task.failure_class is not None else None,
        error_summary=task.error_summary,
        retry_strategy=task.retry_strategy,
        retry_base_delay_seconds=task.retry_base_delay_seconds,
        created_at=to_db_datetime(now),
        updated_at=to_db_datetime(now),
        scheduled_at=to_db_datetime(task.scheduled_at),
        finished_at=to_db_datetime(now) if task.status.is_terminal else None,
    )


def _to_task_view(row: TaskRow, *, depends_on: tuple[str, ...]) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        operation_id=row.operation_id,
        ref=row.ref,
        position=row.position,
        task_type=row.task_type,
        payload=load_json(row.payload_json) or {},
        status=TaskStatus(row.status),
        depends_on=depends_on,
        on_success=_template_from_json(row.on_success_json),
        on_failure=_template_from_json(row.on_failure_json),
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        timeout_seconds=row.timeout_seconds,
        idempotency_key=row.idempotency_key,
        parent_task_id=row.parent_task_id,
        spawned_success_id=row.spawned_success_id,
        spawned_failure_id=row.spawned_failure_id,
        retry_strategy=row.retry_strategy,
        retry_base_delay_seconds=row.retry_base_delay_seconds,
        worker_id=row.worker_id,
        result=load_json(row.result_json),
        error_summary=row.error_summary,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        scheduled_at=to_utc_aware_datetime(row.scheduled_at),
        claimed_at=optional_utc(row.claimed_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
    )


def _to_operation_view(row: OperationRow) -> OperationView:
    return OperationView(
        operation_id=row.operation_id,
        idempotency_key=row.idempotency_key,
        task_count=row.task_count,
        created_at=to_utc_aware_datetime(row.created_at),
        cancelled_at=optional_utc(row.cancelled_at),
    )
