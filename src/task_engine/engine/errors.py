"""Error taxonomy of the task engine."""

from __future__ import annotations

from collections.abc import Sequence


class TaskEngineError(Exception):
    """Base class for errors raised by the engine."""


class ValidationError(TaskEngineError):
    """Malformed submission, rejected before anything is persisted."""


class DependencyCycleError(ValidationError):
    """Batch dependency graph is not acyclic."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class NotFoundError(TaskEngineError):
    """Requested task or operation does not exist."""


class ConflictError(TaskEngineError):
    """Caller no longer owns the claim or lost a state race."""


class DuplicateIdempotencyKey(TaskEngineError):
    """Key is already recorded; resolved transparently to the cached result."""

    def __init__(self, key: str, operation_id: str | None) -> None:
        self.key = key
        self.operation_id = operation_id
        super().__init__(f"Idempotency key already recorded: {key}")


class IdempotencyKeyInFlight(ConflictError):
    """A concurrent submission holds the key and did not finish in time."""


class HandlerFailure(TaskEngineError):
    """Failure reported by a task handler."""


class TransientFailure(HandlerFailure):
    """Retryable handler failure."""


class PermanentFailure(HandlerFailure):
    """Non-retryable handler failure."""


class UnknownTaskType(PermanentFailure):
    """No handler is registered for the task type."""

    def __init__(self, task_type: str) -> None:
        self.task_type = task_type
        super().__init__(f"No handler registered for task type: {task_type}")


class RetryExhausted(TaskEngineError):
    """Task used up its attempt budget and was moved to dead."""

    def __init__(self, task_id: str, attempts: int) -> None:
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(f"Task {task_id} exhausted {attempts} attempts")
