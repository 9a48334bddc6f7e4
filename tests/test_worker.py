from __future__ import annotations

import threading
from collections import Counter
from typing import TYPE_CHECKING, Any

import allure
import pytest

from task_engine.engine.circuit import CircuitBreakers, CircuitState
from task_engine.engine.errors import PermanentFailure, TransientFailure
from task_engine.engine.handlers import HandlerRegistry, builtin_registry
from task_engine.engine.models import (
    FailureClass,
    FollowUpTemplate,
    TaskOutcome,
    TaskSpec,
    TaskStatus,
)
from task_engine.engine.service import TaskEngine
from task_engine.engine.worker import Worker, WorkerPool, default_worker_id

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Worker Pool"),
]


def _worker(engine: TaskEngine, registry: HandlerRegistry, worker_id: str = "w1") -> Worker:
    return Worker(
        engine=engine,
        registry=registry,
        worker_id=worker_id,
        poll_interval_seconds=0.0,
        heartbeat_interval_seconds=0.01,
        default_timeout_seconds=5.0,
        stale_claim_after_seconds=600,
    )


def test_run_once_executes_handler_and_stores_result(engine: TaskEngine) -> None:
    result = engine.submit_batch([TaskSpec(task_type="echo", payload={"msg": "hi"})])
    worker = _worker(engine, builtin_registry())

    summary = worker.run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    task = engine.get_task_status(result.tasks[0].task_id)
    assert task.status == TaskStatus.SUCCEEDED
    assert task.result == {"msg": "hi"}
    assert task.worker_id == "w1"


def test_run_once_on_empty_queue_counts_idle_poll(engine: TaskEngine) -> None:
    summary = _worker(engine, builtin_registry()).run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1


def test_unknown_task_type_fails_permanently(engine: TaskEngine) -> None:
    result = engine.submit_batch([TaskSpec(task_type="transcode", max_attempts=3)])

    summary = _worker(engine, builtin_registry()).run_once()

    assert summary.failed == 1
    task = engine.get_task_status(result.tasks[0].task_id)
    assert task.status == TaskStatus.FAILED
    assert task.failure_class == FailureClass.UNKNOWN_TASK_TYPE
    assert task.attempt_count == 1
    assert "transcode" in (task.error_summary or "")


def test_transient_handler_failures_end_dead_with_single_follow_up(
    engine: TaskEngine,
    clock: FakeClock,
) -> None:
    calls: Counter[str] = Counter()
    registry = HandlerRegistry()

    def _flaky(payload: dict[str, Any]) -> None:
        calls[payload["order"]] += 1
        raise TransientFailure("payment gateway unavailable")

    registry.register("charge", _flaky)
    registry.register("alert", lambda payload: {"alerted": payload["order"]})
    result = engine.submit_batch(
        [
            TaskSpec(
                task_type="charge",
                payload={"order": "A-1"},
                max_attempts=3,
                on_failure=FollowUpTemplate(task_type="alert", payload={"order": "A-1"}),
            ),
        ],
    )
    task_id = result.tasks[0].task_id
    worker = _worker(engine, registry)

    statuses = []
    for _ in range(3):
        summary = worker.run_once()
        assert summary.processed == 1
        task = engine.get_task_status(task_id)
        statuses.append((task.attempt_count, task.status))
        clock.advance(60)

    assert statuses == [
        (1, TaskStatus.PENDING),
        (2, TaskStatus.PENDING),
        (3, TaskStatus.DEAD),
    ]
    assert calls["A-1"] == 3

    drained = worker.run_loop(max_idle_polls=1)
    assert drained.succeeded == 1
    dead = engine.get_task_status(task_id)
    follow_ups = [
        entry
        for entry in engine.get_operation_status(result.operation_id).tasks
        if entry.task_type == "alert"
    ]
    assert len(follow_ups) == 1
    assert follow_ups[0].task_id == dead.spawned_failure_id
    assert follow_ups[0].status == TaskStatus.SUCCEEDED
    assert follow_ups[0].result == {"alerted": "A-1"}


def test_handler_timeout_is_transient(engine: TaskEngine) -> None:
    release = threading.Event()
    registry = HandlerRegistry()
    registry.register("slow", lambda _: release.wait(5))
    result = engine.submit_batch([TaskSpec(task_type="slow", timeout_seconds=0.1)])

    try:
        summary = _worker(engine, registry).run_once()
    finally:
        release.set()

    assert summary.timeouts == 1
    assert summary.retried == 1
    task = engine.get_task_status(result.tasks[0].task_id)
    assert task.status == TaskStatus.PENDING
    assert task.failure_class == FailureClass.TIMEOUT


@pytest.mark.parametrize(
    ("error", "failure_class"),
    [
        (PermanentFailure("invalid payload: no amount"), FailureClass.HANDLER_PERMANENT),
        (ValueError("amount must be positive"), FailureClass.HANDLER_PERMANENT),
    ],
)
def test_permanent_handler_errors_fail_without_retry(
    engine: TaskEngine,
    error: Exception,
    failure_class: FailureClass,
) -> None:
    registry = HandlerRegistry()

    def _broken(_: dict[str, Any]) -> None:
        raise error

    registry.register("charge", _broken)
    result = engine.submit_batch([TaskSpec(task_type="charge", max_attempts=5)])

    _worker(engine, registry).run_once()

    task = engine.get_task_status(result.tasks[0].task_id)
    assert task.status == TaskStatus.FAILED
    assert task.failure_class == failure_class
    assert task.attempt_count == 1
    assert type(error).__name__ in (task.error_summary or "")


def test_handler_may_return_explicit_outcome(engine: TaskEngine) -> None:
    registry = HandlerRegistry()
    registry.register("check", lambda _: TaskOutcome.permanent_failure("quota exhausted"))
    result = engine.submit_batch([TaskSpec(task_type="check")])

    _worker(engine, registry).run_once()

    task = engine.get_task_status(result.tasks[0].task_id)
    assert task.status == TaskStatus.FAILED
    assert task.error_summary == "quota exhausted"


def test_non_json_result_fails_task(engine: TaskEngine) -> None:
    registry = HandlerRegistry()
    registry.register("weird", lambda _: object())
    result = engine.submit_batch([TaskSpec(task_type="weird")])

    _worker(engine, registry).run_once()

    task = engine.get_task_status(result.tasks[0].task_id)
    assert task.status == TaskStatus.FAILED
    assert "JSON" in (task.error_summary or "")


def test_run_loop_processes_dependency_chain(engine: TaskEngine) -> None:
    order: list[str] = []
    registry = HandlerRegistry()
    registry.register("step", lambda payload: order.append(payload["name"]))
    engine.submit_batch(
        [
            TaskSpec(task_type="step", payload={"name": "publish"}, ref="c", depends_on=("b",)),
            TaskSpec(task_type="step", payload={"name": "build"}, ref="b", depends_on=("a",)),
            TaskSpec(task_type="step", payload={"name": "fetch"}, ref="a"),
        ],
    )

    summary = _worker(engine, registry).run_loop(max_idle_polls=1)

    assert summary.processed == 3
    assert summary.succeeded == 3
    assert order == ["fetch", "build", "publish"]


def test_run_loop_respects_max_tasks_and_stop(engine: TaskEngine) -> None:
    engine.submit_batch([TaskSpec(task_type="noop") for _ in range(3)])
    worker = _worker(engine, builtin_registry())

    assert worker.run_loop(max_tasks=2).processed == 2

    worker.stop()
    assert worker.stop_requested is True
    assert worker.run_loop().processed == 0
    assert engine.queue_stats().by_status[TaskStatus.READY] == 1


def test_pool_executes_each_task_exactly_once(engine: TaskEngine) -> None:
    seen: Counter[int] = Counter()
    lock = threading.Lock()
    registry = HandlerRegistry()

    def _record(payload: dict[str, Any]) -> int:
        with lock:
            seen[payload["n"]] += 1
        return payload["n"]

    registry.register("job", _record)
    engine.submit_batch([TaskSpec(task_type="job", payload={"n": n}) for n in range(20)])
    pool = WorkerPool(
        engine=engine,
        registry=registry,
        size=4,
        worker_id_prefix="pool",
        poll_interval_seconds=0.0,
        heartbeat_interval_seconds=0.01,
        default_timeout_seconds=5.0,
        stale_claim_after_seconds=600,
    )

    summary = pool.run(max_idle_polls=3)

    assert summary.succeeded == 20
    assert seen == Counter({n: 1 for n in range(20)})
    assert engine.queue_stats().by_status[TaskStatus.SUCCEEDED] == 20
    workers = {task.worker_id for task in engine.list_tasks(TaskStatus.SUCCEEDED, limit=50)}
    assert workers <= {f"pool-{index}" for index in range(1, 5)}


def test_pool_rejects_empty_size(engine: TaskEngine) -> None:
    with pytest.raises(ValueError, match="size"):
        WorkerPool(engine=engine, registry=builtin_registry(), size=0)


def test_open_circuit_skips_handler_for_its_task_type(
    engine: TaskEngine,
    clock: FakeClock,
) -> None:
    calls: Counter[str] = Counter()
    healthy = threading.Event()
    registry = HandlerRegistry()

    def _gateway(payload: dict[str, Any]) -> str:
        calls[payload["order"]] += 1
        if not healthy.is_set():
            raise TransientFailure("payment gateway unavailable")
        return "charged"

    registry.register("charge", _gateway)
    registry.register("echo", lambda payload: payload)
    monotonic_now = [0.0]
    breakers = CircuitBreakers(
        failure_threshold=2,
        success_threshold=1,
        reset_seconds=30.0,
        monotonic=lambda: monotonic_now[0],
    )
    result = engine.submit_batch(
        [
            TaskSpec(task_type="charge", payload={"order": order}, max_attempts=5)
            for order in ("A", "B", "C")
        ]
        + [TaskSpec(task_type="echo", payload={"n": 1})],
    )
    ids = [entry.task_id for entry in result.tasks]
    worker = Worker(
        engine=engine,
        registry=registry,
        worker_id="w1",
        poll_interval_seconds=0.0,
        heartbeat_interval_seconds=0.01,
        default_timeout_seconds=5.0,
        circuit_breakers=breakers,
    )

    assert worker.run_once().retried == 1
    assert worker.run_once().retried == 1
    assert breakers.states()["charge"] == CircuitState.OPEN

    assert worker.run_once().retried == 1
    skipped = engine.get_task_status(ids[2])
    assert skipped.status == TaskStatus.PENDING
    assert skipped.failure_class == FailureClass.CIRCUIT_OPEN
    assert "Circuit breaker is open" in (skipped.error_summary or "")
    assert calls == Counter({"A": 1, "B": 1})

    assert worker.run_once().succeeded == 1
    assert engine.get_task_status(ids[3]).status == TaskStatus.SUCCEEDED

    healthy.set()
    monotonic_now[0] = 30.0
    clock.advance(60)
    assert worker.run_once().succeeded == 1
    assert breakers.states()["charge"] == CircuitState.CLOSED


def test_default_worker_ids_are_unique_per_call() -> None:
    first, second = default_worker_id(), default_worker_id()

    assert first != second
    assert first.startswith("worker-")
    assert len(first) == len("worker-") + 8
