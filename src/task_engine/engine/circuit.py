"""Per-task-type circuit breakers used by workers to stop hammering a failing handler."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from task_engine.config import WorkerSettings

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class CircuitBreaker:
    """Closed until ``failure_threshold`` consecutive failures, then open.

    An open breaker rejects work until ``reset_seconds`` have passed, then lets
    trial executions through (half-open). ``success_threshold`` successes in a
    row close it again; any failure while half-open reopens it.
    """

    failure_threshold: int = 5
    success_threshold: int = 3
    reset_seconds: float = 60.0
    monotonic: Callable[[], float] = time.monotonic
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    successes: int = 0
    opened_at: float | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def allow(self) -> bool:
        with self._lock:
            if self.state != CircuitState.OPEN:
                return True
            if self.opened_at is not None and (
                self.monotonic() - self.opened_at >= self.reset_seconds
            ):
                self.state = CircuitState.HALF_OPEN
                self.successes = 0
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.successes += 1
                if self.successes >= self.success_threshold:
                    self._close()
            else:
                self.failures = 0

    def record_failure(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self._open()
                return
            self.failures += 1
            if self.state == CircuitState.CLOSED and self.failures >= self.failure_threshold:
                self._open()

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self.monotonic()
        self.successes = 0

    def _close(self) -> None:
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.opened_at = None


class CircuitBreakers:
    """Lazily created breaker per task type, shared by all workers of a pool."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        success_threshold: int = 3,
        reset_seconds: float = 60.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_seconds = reset_seconds
        self._monotonic = monotonic
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> CircuitBreakers | None:
        """Registry for ``settings``; ``None`` when breakers are disabled."""

        if settings.circuit_failure_threshold <= 0:
            return None
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            success_threshold=settings.circuit_success_threshold,
            reset_seconds=settings.circuit_reset_seconds,
        )

    def get(self, task_type: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(task_type)
            if breaker is None:
                breaker = CircuitBreaker(
                    failure_threshold=self.failure_threshold,
                    success_threshold=self.success_threshold,
                    reset_seconds=self.reset_seconds,
                    monotonic=self._monotonic,
                )
                self._breakers[task_type] = breaker
            return breaker

    def allow(self, task_type: str) -> bool:
        return self.get(task_type).allow()

    def record(self, task_type: str, *, success: bool) -> None:
        breaker = self.get(task_type)
        previous = breaker.state
        if success:
            breaker.record_success()
        else:
            breaker.record_failure()
        if breaker.state != previous:
            logger.warning(
                "Circuit for task type %s moved %s -> %s",
                task_type,
                previous.value,
                breaker.state.value,
            )

    def states(self) -> dict[str, CircuitState]:
        with self._lock:
            return {task_type: breaker.state for task_type, breaker in self._breakers.items()}
