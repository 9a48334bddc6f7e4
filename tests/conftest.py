"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from task_engine.config import (
    IdempotencySettings,
    RetrySettings,
    Settings,
    WorkerSettings,
)
from task_engine.engine.service import TaskEngine
from task_engine.engine.store import TaskStore


class FakeClock:
    """Manually advanced UTC clock shared by store and engine."""

    def __init__(self, start: datetime) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            return self._now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=UTC))


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "engine.db",
        worker=WorkerSettings(
            poll_interval_seconds=0.0,
            heartbeat_interval_seconds=0.01,
            default_timeout_seconds=5.0,
            claim_retry_backoff_seconds=0.0,
        ),
        retry=RetrySettings(base_delay_seconds=1.0, max_delay_seconds=60.0, jitter_ratio=0.0),
        idempotency=IdempotencySettings(wait_timeout_seconds=5.0, poll_interval_seconds=0.01),
    )


@pytest.fixture()
def store(settings: Settings, clock: FakeClock) -> Iterator[TaskStore]:
    task_store = TaskStore(settings.db_path, clock=clock)
    task_store.init_schema()
    yield task_store
    task_store.close()


@pytest.fixture()
def engine(store: TaskStore, settings: Settings) -> TaskEngine:
    return TaskEngine(store, settings=settings)
