from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import allure
import pytest

from task_engine.config import IdempotencySettings, Settings
from task_engine.engine.errors import DependencyCycleError, IdempotencyKeyInFlight, ValidationError
from task_engine.engine.idempotency import IdempotencyState, fingerprint
from task_engine.engine.models import OperationResult, TaskSpec, TaskStatus
from task_engine.engine.service import TaskEngine
from task_engine.engine.store import TaskStore

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Idempotency Cache"),
]

BATCH = [
    TaskSpec(task_type="charge", payload={"amount": 10}, ref="charge"),
    TaskSpec(task_type="receipt", payload={}, ref="receipt", depends_on=("charge",)),
]


def test_same_key_returns_same_operation(engine: TaskEngine) -> None:
    first = engine.submit_batch(BATCH, idempotency_key="order-42")
    second = engine.submit_batch(BATCH, idempotency_key="order-42")

    assert first.replayed is False
    assert second.replayed is True
    assert second.operation_id == first.operation_id
    assert [entry.task_id for entry in second.tasks] == [entry.task_id for entry in first.tasks]
    assert engine.queue_stats().operations == 1
    assert engine.queue_stats().total == 2


def test_replay_reports_current_task_statuses(engine: TaskEngine) -> None:
    first = engine.submit_batch(BATCH, idempotency_key="order-42")
    charge_id = first.tasks[0].task_id
    assert engine.claim_next("w") is not None

    replay = engine.submit_batch(BATCH, idempotency_key="order-42")

    statuses = {entry.task_id: entry.status for entry in replay.tasks}
    assert statuses[charge_id] == TaskStatus.CLAIMED


def test_key_reused_for_different_request_is_rejected(engine: TaskEngine) -> None:
    engine.submit_batch(BATCH, idempotency_key="order-42")

    with pytest.raises(ValidationError, match="different request"):
        engine.submit_batch([TaskSpec(task_type="refund")], idempotency_key="order-42")


def test_blank_key_is_rejected(engine: TaskEngine) -> None:
    with pytest.raises(ValidationError, match="non-empty"):
        engine.submit_batch(BATCH, idempotency_key="  ")


def test_concurrent_submissions_create_one_operation(
    store: TaskStore,
    settings: Settings,
) -> None:
    barrier = threading.Barrier(6)
    results: list[OperationResult] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _submit() -> None:
        engine = TaskEngine(store, settings=settings)
        barrier.wait()
        try:
            result = engine.submit_batch(BATCH, idempotency_key="payday")
        except Exception as error:  # noqa: BLE001
            with lock:
                errors.append(error)
            return
        with lock:
            results.append(result)

    threads = [threading.Thread(target=_submit) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(results) == 6
    assert len({result.operation_id for result in results}) == 1
    assert sum(1 for result in results if not result.replayed) == 1
    assert store.count_operations() == (1, 0)
    assert sum(store.count_by_status().values()) == 2


def test_failed_creation_releases_key(engine: TaskEngine) -> None:
    cyclic = [TaskSpec(task_type="a", ref="a", depends_on=("a",))]
    with pytest.raises(DependencyCycleError):
        engine.submit_batch(cyclic, idempotency_key="retry-me")

    assert engine.idempotency.lookup("retry-me", engine.store.clock()) is None
    result = engine.submit_batch(BATCH, idempotency_key="retry-me")
    assert result.replayed is False


def test_non_json_payload_with_key_is_rejected_before_reserving(engine: TaskEngine) -> None:
    bad = [TaskSpec(task_type="charge", payload={"when": datetime(2026, 1, 1, tzinfo=UTC)})]

    with pytest.raises(ValidationError, match="JSON-serializable"):
        engine.submit_batch(bad, idempotency_key="order-7")

    assert engine.idempotency.lookup("order-7", engine.store.clock()) is None
    assert engine.queue_stats().operations == 0
    result = engine.submit_batch(BATCH, idempotency_key="order-7")
    assert result.replayed is False


def test_retry_overrides_are_part_of_the_fingerprint() -> None:
    plain = [TaskSpec(task_type="charge")]
    fixed = [TaskSpec(task_type="charge", retry_strategy="fixed")]
    slower = [TaskSpec(task_type="charge", retry_base_delay_seconds=5.0)]

    assert len({fingerprint(plain), fingerprint(fixed), fingerprint(slower)}) == 3


def test_in_flight_reservation_times_out(engine: TaskEngine) -> None:
    now = engine.store.clock()
    token = engine.idempotency.reserve("busy", fingerprint(BATCH), now)
    assert token is not None
    impatient = TaskEngine(
        engine.store,
        settings=replace(
            engine.settings,
            idempotency=IdempotencySettings(wait_timeout_seconds=0.0),
        ),
    )

    with pytest.raises(IdempotencyKeyInFlight):
        impatient.submit_batch(BATCH, idempotency_key="busy")

    assert engine.idempotency.release("busy", token) is True
    assert impatient.submit_batch(BATCH, idempotency_key="busy").replayed is False


def test_reserve_is_exclusive_until_released(engine: TaskEngine) -> None:
    cache = engine.idempotency
    now = engine.store.clock()

    token = cache.reserve("k", "fp", now)
    assert token is not None
    assert cache.reserve("k", "fp", now) is None
    record = cache.lookup("k", now)
    assert record is not None
    assert record.state == IdempotencyState.RESERVED
    assert cache.release("k", "wrong-token") is False
    assert cache.release("k", token) is True
    assert cache.reserve("k", "fp", now) is not None


def test_expired_key_starts_a_new_operation(engine: TaskEngine, clock: FakeClock) -> None:
    first = engine.submit_batch(BATCH, idempotency_key="daily")

    clock.advance(25 * 3600)
    second = engine.submit_batch(BATCH, idempotency_key="daily")

    assert second.replayed is False
    assert second.operation_id != first.operation_id


def test_purge_removes_only_expired_records(engine: TaskEngine, clock: FakeClock) -> None:
    engine.submit_batch(BATCH, idempotency_key="old")
    clock.advance(23 * 3600)
    engine.submit_batch([TaskSpec(task_type="noop")], idempotency_key="new")
    clock.advance(2 * 3600)

    assert engine.idempotency.purge_expired(clock()) == 1
    assert engine.idempotency.lookup("old", clock()) is None
    assert engine.idempotency.lookup("new", clock()) is not None
