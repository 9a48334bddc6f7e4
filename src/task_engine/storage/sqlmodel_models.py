"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class OperationRow(SQLModel, table=True):
    __tablename__ = "operations"  # type: ignore[bad-override]

    operation_id: str = Field(primary_key=True)
    idempotency_key: str | None = Field(default=None, index=True)
    task_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    cancelled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_dispatch", "status", "scheduled_at", "created_at", "position"),
        Index("idx_tasks_operation", "operation_id", "position"),
    )

    task_id: str = Field(primary_key=True)
    operation_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("operations.operation_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    ref: str | None = None
    position: int = Field(default=0)
    task_type: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    on_success_json: str | None = Field(default=None, sa_column=Column(Text))
    on_failure_json: str | None = Field(default=None, sa_column=Column(Text))
    attempt_count: int = Field(default=0)
    max_attempts: int = Field(default=3)
    timeout_seconds: float | None = None
    idempotency_key: str | None = None
    parent_task_id: str | None = Field(default=None, index=True)
    spawned_success_id: str | None = None
    spawned_failure_id: str | None = None
    retry_strategy: str | None = None
    retry_base_delay_seconds: float | None = None
    worker_id: str | None = Field(default=None, index=True)
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    scheduled_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskDependencyRow(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "depends_on_task_id", name="uq_task_dependencies_edge"),
        Index("idx_task_dependencies_upstream", "depends_on_task_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    depends_on_task_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class IdempotencyRecordRow(SQLModel, table=True):
    __tablename__ = "idempotency_records"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    state: str = Field(index=True)
    reservation_token: str
    request_fingerprint: str
    operation_id: str | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
