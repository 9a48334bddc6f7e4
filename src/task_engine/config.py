"""Runtime configuration for the task engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_RETRY_STRATEGIES = frozenset({"exponential", "linear", "fixed", "none"})


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool and dispatch settings."""

    workers: int = 1
    poll_interval_seconds: float = 1.0
    heartbeat_interval_seconds: float = 5.0
    default_timeout_seconds: float = 300.0
    stale_claim_after_seconds: int = 600
    claim_retry_limit: int = 5
    claim_retry_backoff_seconds: float = 0.05
    promote_batch_size: int = 100
    circuit_failure_threshold: int = 5
    circuit_success_threshold: int = 3
    circuit_reset_seconds: float = 60.0


@dataclass(slots=True)
class RetrySettings:
    """Retry policy settings."""

    strategy: str = "exponential"
    default_max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    jitter_ratio: float = 0.2


@dataclass(slots=True)
class IdempotencySettings:
    """Idempotency cache settings."""

    retention_hours: int = 24
    reservation_ttl_seconds: int = 300
    wait_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 0.05


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".task_engine.db")
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    idempotency: IdempotencySettings = field(default_factory=IdempotencySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_ENGINE_DB_PATH", ".task_engine.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASK_ENGINE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                workers=int(os.getenv("TASK_ENGINE_WORKERS", "1")),
                poll_interval_seconds=float(
                    os.getenv("TASK_ENGINE_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("TASK_ENGINE_HEARTBEAT_INTERVAL_SECONDS", "5.0"),
                ),
                default_timeout_seconds=float(
                    os.getenv("TASK_ENGINE_TASK_TIMEOUT_SECONDS", "300"),
                ),
                stale_claim_after_seconds=int(
                    os.getenv("TASK_ENGINE_STALE_CLAIM_AFTER_SECONDS", "600"),
                ),
                claim_retry_limit=int(os.getenv("TASK_ENGINE_CLAIM_RETRY_LIMIT", "5")),
                claim_retry_backoff_seconds=float(
                    os.getenv("TASK_ENGINE_CLAIM_RETRY_BACKOFF_SECONDS", "0.05"),
                ),
                promote_batch_size=int(os.getenv("TASK_ENGINE_PROMOTE_BATCH_SIZE", "100")),
                circuit_failure_threshold=int(
                    os.getenv("TASK_ENGINE_CIRCUIT_FAILURE_THRESHOLD", "5"),
                ),
                circuit_success_threshold=int(
                    os.getenv("TASK_ENGINE_CIRCUIT_SUCCESS_THRESHOLD", "3"),
                ),
                circuit_reset_seconds=float(
                    os.getenv("TASK_ENGINE_CIRCUIT_RESET_SECONDS", "60"),
                ),
            ),
            retry=RetrySettings(
                strategy=os.getenv("TASK_ENGINE_RETRY_STRATEGY", "exponential").strip().lower(),
                default_max_attempts=int(os.getenv("TASK_ENGINE_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(
                    os.getenv("TASK_ENGINE_RETRY_BASE_DELAY_SECONDS", "1.0"),
                ),
                max_delay_seconds=float(
                    os.getenv("TASK_ENGINE_RETRY_MAX_DELAY_SECONDS", "300"),
                ),
                jitter_ratio=float(os.getenv("TASK_ENGINE_RETRY_JITTER_RATIO", "0.2")),
            ),
            idempotency=IdempotencySettings(
                retention_hours=int(os.getenv("TASK_ENGINE_IDEMPOTENCY_RETENTION_HOURS", "24")),
                reservation_ttl_seconds=int(
                    os.getenv("TASK_ENGINE_IDEMPOTENCY_RESERVATION_TTL_SECONDS", "300"),
                ),
                wait_timeout_seconds=float(
                    os.getenv("TASK_ENGINE_IDEMPOTENCY_WAIT_TIMEOUT_SECONDS", "10"),
                ),
                poll_interval_seconds=float(
                    os.getenv("TASK_ENGINE_IDEMPOTENCY_POLL_INTERVAL_SECONDS", "0.05"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASK_ENGINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.worker.workers <= 0:
            raise ValueError("TASK_ENGINE_WORKERS must be a positive integer.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("TASK_ENGINE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.heartbeat_interval_seconds <= 0:
            raise ValueError("TASK_ENGINE_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.worker.default_timeout_seconds <= 0:
            raise ValueError("TASK_ENGINE_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.worker.stale_claim_after_seconds <= 0:
            raise ValueError("TASK_ENGINE_STALE_CLAIM_AFTER_SECONDS must be > 0.")
        if self.worker.claim_retry_limit < 1:
            raise ValueError("TASK_ENGINE_CLAIM_RETRY_LIMIT must be >= 1.")
        if self.worker.circuit_failure_threshold < 0:
            raise ValueError("TASK_ENGINE_CIRCUIT_FAILURE_THRESHOLD must be >= 0 (0 disables).")
        if self.worker.circuit_success_threshold < 1:
            raise ValueError("TASK_ENGINE_CIRCUIT_SUCCESS_THRESHOLD must be >= 1.")
        if self.worker.circuit_reset_seconds <= 0:
            raise ValueError("TASK_ENGINE_CIRCUIT_RESET_SECONDS must be > 0.")
        if self.retry.strategy not in _RETRY_STRATEGIES:
            raise ValueError(
                "TASK_ENGINE_RETRY_STRATEGY must be one of "
                f"{sorted(_RETRY_STRATEGIES)}, got {self.retry.strategy!r}.",
            )
        if self.retry.default_max_attempts < 1:
            raise ValueError("TASK_ENGINE_MAX_ATTEMPTS must be >= 1.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("TASK_ENGINE_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError(
                "TASK_ENGINE_RETRY_MAX_DELAY_SECONDS must be >= "
                "TASK_ENGINE_RETRY_BASE_DELAY_SECONDS.",
            )
        if not 0 <= self.retry.jitter_ratio < 1:
            raise ValueError("TASK_ENGINE_RETRY_JITTER_RATIO must be in [0, 1).")
        if self.idempotency.retention_hours <= 0:
            raise ValueError("TASK_ENGINE_IDEMPOTENCY_RETENTION_HOURS must be > 0.")
        if self.idempotency.reservation_ttl_seconds <= 0:
            raise ValueError("TASK_ENGINE_IDEMPOTENCY_RESERVATION_TTL_SECONDS must be > 0.")
        if self.idempotency.wait_timeout_seconds < 0:
            raise ValueError("TASK_ENGINE_IDEMPOTENCY_WAIT_TIMEOUT_SECONDS must be >= 0.")
