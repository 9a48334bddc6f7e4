"""Domain models for the task engine queue and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    CLAIMED = "claimed"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD = "dead"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.DEAD})
OWNED_STATUSES = frozenset({TaskStatus.CLAIMED, TaskStatus.RUNNING})
UNSUCCESSFUL_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.DEAD})


class OperationStatus(str, Enum):
    """Aggregate status of a submitted batch."""

    PARTIAL = "partial"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy and audit."""

    TIMEOUT = "timeout"
    HANDLER_TRANSIENT = "handler_transient"
    HANDLER_PERMANENT = "handler_permanent"
    UNKNOWN_TASK_TYPE = "unknown_task_type"
    DEPENDENCY_FAILED = "dependency_failed"
    STALE_CLAIM = "stale_claim"
    CIRCUIT_OPEN = "circuit_open"
    RETRY_EXHAUSTED = "retry_exhausted"


class FollowUpKind(str, Enum):
    """Which template of the parent spawned a follow-up."""

    SUCCESS = "success"
    FAILURE = "failure"


class OutcomeKind(str, Enum):
    """What a worker reports after executing a handler."""

    SUCCEEDED = "succeeded"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(slots=True, frozen=True)
class FollowUpTemplate:
    """Stored recipe for a task spawned after a parent reaches a terminal state."""

    task_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    max_attempts: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.task_type, "payload": self.payload}
        if self.max_attempts is not None:
            data["max_attempts"] = self.max_attempts
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FollowUpTemplate:
        return cls(
            task_type=str(data["type"]),
            payload=dict(data.get("payload") or {}),
            max_attempts=data.get("max_attempts"),
        )


@dataclass(slots=True)
class TaskSpec:
    """One task inside a submission.

    ``ref`` is the client-side name other specs of the same batch use in
    ``depends_on``; entries of ``depends_on`` that are not batch refs must be
    ids of tasks that already exist.
    """

    task_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    ref: str | None = None
    depends_on: tuple[str, ...] = ()
    on_success: FollowUpTemplate | None = None
    on_failure: FollowUpTemplate | None = None
    max_attempts: int | None = None
    timeout_seconds: float | None = None
    scheduled_at: datetime | None = None
    retry_strategy: str | None = None
    retry_base_delay_seconds: float | None = None


@dataclass(slots=True)
class TaskCreate:
    """Fully resolved task row ready to persist."""

    task_id: str
    operation_id: str
    task_type: str
    payload: dict[str, Any]
    status: TaskStatus
    max_attempts: int
    scheduled_at: datetime
    position: int = 0
    ref: str | None = None
    depends_on: tuple[str, ...] = ()
    on_success: FollowUpTemplate | None = None
    on_failure: FollowUpTemplate | None = None
    timeout_seconds: float | None = None
    idempotency_key: str | None = None
    parent_task_id: str | None = None
    failure_class: FailureClass | None = None
    error_summary: str | None = None
    retry_strategy: str | None = None
    retry_base_delay_seconds: float | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task snapshot for workers, CLI, and callers."""

    task_id: str
    operation_id: str
    ref: str | None
    position: int
    task_type: str
    payload: dict[str, Any]
    status: TaskStatus
    depends_on: tuple[str, ...]
    on_success: FollowUpTemplate | None
    on_failure: FollowUpTemplate | None
    attempt_count: int
    max_attempts: int
    timeout_seconds: float | None
    idempotency_key: str | None
    parent_task_id: str | None
    spawned_success_id: str | None
    spawned_failure_id: str | None
    retry_strategy: str | None
    retry_base_delay_seconds: float | None
    worker_id: str | None
    result: Any
    error_summary: str | None
    failure_class: FailureClass | None
    created_at: datetime
    updated_at: datetime
    scheduled_at: datetime
    claimed_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None

    def follow_up_template(self, kind: FollowUpKind) -> FollowUpTemplate | None:
        return self.on_success if kind == FollowUpKind.SUCCESS else self.on_failure

    def spawned_follow_up_id(self, kind: FollowUpKind) -> str | None:
        if kind == FollowUpKind.SUCCESS:
            return self.spawned_success_id
        return self.spawned_failure_id


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for the audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OperationView:
    """Stored batch header."""

    operation_id: str
    idempotency_key: str | None
    task_count: int
    created_at: datetime
    cancelled_at: datetime | None


@dataclass(slots=True)
class TaskStatusEntry:
    """Per-task line of an operation status report."""

    task_id: str
    ref: str | None
    task_type: str
    status: TaskStatus
    attempt_count: int
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "ref": self.ref,
            "task_type": self.task_type,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskStatusEntry:
        return cls(
            task_id=data["task_id"],
            ref=data.get("ref"),
            task_type=data["task_type"],
            status=TaskStatus(data["status"]),
            attempt_count=int(data.get("attempt_count", 0)),
            result=data.get("result"),
            error=data.get("error"),
        )


@dataclass(slots=True)
class OperationResult:
    """Answer to a batch submission."""

    operation_id: str
    tasks: list[TaskStatusEntry]
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "tasks": [entry.to_dict() for entry in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, replayed: bool = False) -> OperationResult:
        return cls(
            operation_id=data["operation_id"],
            tasks=[TaskStatusEntry.from_dict(item) for item in data.get("tasks", [])],
            replayed=replayed,
        )


@dataclass(slots=True)
class OperationStatusView:
    """Aggregate status of an operation with its member tasks."""

    operation_id: str
    status: OperationStatus
    cancelled: bool
    tasks: list[TaskStatusEntry]


@dataclass(slots=True)
class TaskOutcome:
    """Result of one handler execution as reported by a worker."""

    kind: OutcomeKind
    result: Any = None
    error: str | None = None
    failure_class: FailureClass | None = None

    @classmethod
    def succeeded(cls, result: Any = None) -> TaskOutcome:
        return cls(kind=OutcomeKind.SUCCEEDED, result=result)

    @classmethod
    def transient_failure(
        cls,
        error: str,
        *,
        failure_class: FailureClass = FailureClass.HANDLER_TRANSIENT,
    ) -> TaskOutcome:
        return cls(kind=OutcomeKind.TRANSIENT_FAILURE, error=error, failure_class=failure_class)

    @classmethod
    def permanent_failure(
        cls,
        error: str,
        *,
        failure_class: FailureClass = FailureClass.HANDLER_PERMANENT,
    ) -> TaskOutcome:
        return cls(kind=OutcomeKind.PERMANENT_FAILURE, error=error, failure_class=failure_class)


@dataclass(slots=True)
class QueueStats:
    """Task counts per status plus operation totals."""

    by_status: dict[TaskStatus, int]
    operations: int
    cancelled_operations: int

    @property
    def total(self) -> int:
        return sum(self.by_status.values())
