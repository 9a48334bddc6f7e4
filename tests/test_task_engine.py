from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import allure
import pytest

from task_engine.engine.errors import ConflictError, NotFoundError
from task_engine.engine.models import (
    FailureClass,
    FollowUpTemplate,
    OperationStatus,
    TaskOutcome,
    TaskSpec,
    TaskStatus,
    TaskView,
)
from task_engine.engine.service import TaskEngine

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Task Lifecycle"),
]


def _claim_and_start(engine: TaskEngine, worker_id: str = "w") -> TaskView:
    task = engine.claim_next(worker_id)
    assert task is not None
    return engine.start_task(task.task_id, worker_id)


def test_success_records_result_and_event_trail(engine: TaskEngine) -> None:
    result = engine.submit_batch([TaskSpec(task_type="echo", payload={"x": 1})])
    task = _claim_and_start(engine)

    finished = engine.report_outcome(task.task_id, "w", TaskOutcome.succeeded({"x": 1}))

    assert finished.status == TaskStatus.SUCCEEDED
    assert finished.result == {"x": 1}
    assert finished.finished_at is not None
    assert [event.event_type for event in engine.get_task_events(task.task_id)] == [
        "created",
        "claimed",
        "started",
        "succeeded",
    ]
    status = engine.get_operation_status(result.operation_id)
    assert status.status == OperationStatus.COMPLETE
    assert status.tasks[0].result == {"x": 1}


def test_transient_failures_retry_until_dead_and_spawn_failure_follow_up_once(
    engine: TaskEngine,
    clock: FakeClock,
) -> None:
    result = engine.submit_batch(
        [
            TaskSpec(
                task_type="charge",
                max_attempts=3,
                on_failure=FollowUpTemplate(task_type="alert", payload={"who": "ops"}),
            ),
        ],
    )
    task_id = result.tasks[0].task_id
    observed: list[tuple[int, TaskStatus]] = []

    for delay in (2, 4, None):
        task = _claim_and_start(engine)
        assert task.task_id == task_id
        finished = engine.report_outcome(
            task_id,
            "w",
            TaskOutcome.transient_failure("gateway timeout"),
        )
        observed.append((finished.attempt_count, finished.status))
        if delay is not None:
            assert finished.scheduled_at == clock() + timedelta(seconds=delay)
            assert engine.claim_next("w") is None
            clock.advance(delay)

    assert observed == [
        (1, TaskStatus.PENDING),
        (2, TaskStatus.PENDING),
        (3, TaskStatus.DEAD),
    ]
    dead = engine.get_task_status(task_id)
    assert dead.failure_class == FailureClass.RETRY_EXHAUSTED
    assert "gateway timeout" in (dead.error_summary or "")
    assert dead.spawned_failure_id is not None

    follow_up = engine.get_task_status(dead.spawned_failure_id)
    assert follow_up.task_type == "alert"
    assert follow_up.payload == {"who": "ops"}
    assert follow_up.parent_task_id == task_id
    assert follow_up.operation_id == result.operation_id
    assert follow_up.status == TaskStatus.READY
    operation_tasks = engine.get_operation_status(result.operation_id).tasks
    assert [entry.task_type for entry in operation_tasks] == ["charge", "alert"]


def test_permanent_failure_skips_retries(engine: TaskEngine) -> None:
    engine.submit_batch([TaskSpec(task_type="charge", max_attempts=5)])
    task = _claim_and_start(engine)

    finished = engine.report_outcome(
        task.task_id,
        "w",
        TaskOutcome.permanent_failure("card declined"),
    )

    assert finished.status == TaskStatus.FAILED
    assert finished.attempt_count == 1
    assert finished.failure_class == FailureClass.HANDLER_PERMANENT
    assert finished.error_summary == "card declined"


def test_success_follow_up_runs_in_same_operation(engine: TaskEngine) -> None:
    result = engine.submit_batch(
        [
            TaskSpec(
                task_type="resize",
                on_success=FollowUpTemplate(task_type="notify", max_attempts=1),
                on_failure=FollowUpTemplate(task_type="alert"),
            ),
        ],
    )
    parent = _claim_and_start(engine)
    engine.report_outcome(parent.task_id, "w", TaskOutcome.succeeded())
    assert engine.get_operation_status(result.operation_id).status == OperationStatus.PARTIAL

    child = _claim_and_start(engine)
    assert child.task_type == "notify"
    assert child.parent_task_id == parent.task_id
    assert child.max_attempts == 1
    engine.report_outcome(child.task_id, "w", TaskOutcome.succeeded())

    status = engine.get_operation_status(result.operation_id)
    assert status.status == OperationStatus.COMPLETE
    assert len(status.tasks) == 2


def test_report_from_non_owner_is_rejected(engine: TaskEngine) -> None:
    engine.submit_batch([TaskSpec(task_type="a")])
    task = _claim_and_start(engine, "owner")

    with pytest.raises(ConflictError):
        engine.report_outcome(task.task_id, "intruder", TaskOutcome.succeeded())
    with pytest.raises(ConflictError):
        engine.start_task(task.task_id, "intruder")

    assert engine.get_task_status(task.task_id).status == TaskStatus.RUNNING


def test_late_report_after_stale_recovery_is_discarded(
    engine: TaskEngine,
    clock: FakeClock,
) -> None:
    engine.submit_batch([TaskSpec(task_type="a")])
    task = _claim_and_start(engine, "slow")
    clock.advance(700)
    assert engine.recover_stale_claims() == 1

    with pytest.raises(ConflictError):
        engine.report_outcome(task.task_id, "slow", TaskOutcome.succeeded())
    assert engine.get_task_status(task.task_id).status == TaskStatus.PENDING


def test_operation_status_aggregates(engine: TaskEngine) -> None:
    result = engine.submit_batch([TaskSpec(task_type="a"), TaskSpec(task_type="b")])
    assert engine.get_operation_status(result.operation_id).status == OperationStatus.PARTIAL

    first = _claim_and_start(engine)
    engine.report_outcome(first.task_id, "w", TaskOutcome.succeeded())
    second = _claim_and_start(engine)
    engine.report_outcome(second.task_id, "w", TaskOutcome.permanent_failure("nope"))

    status = engine.get_operation_status(result.operation_id)
    assert status.status == OperationStatus.FAILED
    failed_entry = next(entry for entry in status.tasks if entry.task_id == second.task_id)
    assert failed_entry.error == "nope"


def test_cancelled_operation_reports_cancelled(engine: TaskEngine) -> None:
    result = engine.submit_batch([TaskSpec(task_type="a"), TaskSpec(task_type="b")])
    running = _claim_and_start(engine)

    status = engine.cancel_operation(result.operation_id)
    assert status.status == OperationStatus.CANCELLED
    assert status.cancelled is True

    # Tasks already dispatched still finish.
    finished = engine.report_outcome(running.task_id, "w", TaskOutcome.succeeded())
    assert finished.status == TaskStatus.SUCCEEDED
    assert engine.claim_next("w") is None


def test_unknown_ids_raise_not_found(engine: TaskEngine) -> None:
    with pytest.raises(NotFoundError):
        engine.get_task_status("missing")
    with pytest.raises(NotFoundError):
        engine.get_task_events("missing")
    with pytest.raises(NotFoundError):
        engine.get_operation_status("missing")
    with pytest.raises(NotFoundError):
        engine.cancel_operation("missing")


def test_retry_dead_task_resets_budget(engine: TaskEngine) -> None:
    engine.submit_batch([TaskSpec(task_type="a", max_attempts=1)])
    task = _claim_and_start(engine)
    engine.report_outcome(task.task_id, "w", TaskOutcome.transient_failure("flaky"))
    assert engine.get_task_status(task.task_id).status == TaskStatus.DEAD

    requeued = engine.retry_dead_task(task.task_id)

    assert requeued.status == TaskStatus.READY
    assert requeued.attempt_count == 0
    assert requeued.failure_class is None
    assert requeued.error_summary is None
    again = _claim_and_start(engine)
    assert again.task_id == task.task_id
    assert again.attempt_count == 1


def test_retry_dead_task_rejects_live_tasks_and_failed_dependencies(engine: TaskEngine) -> None:
    result = engine.submit_batch(
        [
            TaskSpec(task_type="a", ref="a"),
            TaskSpec(task_type="b", ref="b", depends_on=("a",)),
        ],
    )
    upstream_id, dependent_id = (entry.task_id for entry in result.tasks)
    with pytest.raises(ConflictError, match="Only dead or failed"):
        engine.retry_dead_task(upstream_id)

    upstream = _claim_and_start(engine)
    engine.report_outcome(upstream.task_id, "w", TaskOutcome.permanent_failure("bad"))
    assert engine.get_task_status(dependent_id).status == TaskStatus.FAILED

    with pytest.raises(ConflictError, match="unsuccessful"):
        engine.retry_dead_task(dependent_id)

    engine.retry_dead_task(upstream_id)
    upstream = _claim_and_start(engine)
    engine.report_outcome(upstream.task_id, "w", TaskOutcome.succeeded())
    assert engine.retry_dead_task(dependent_id).status == TaskStatus.READY


def test_queue_stats_and_maintenance(engine: TaskEngine, clock: FakeClock) -> None:
    engine.submit_batch([TaskSpec(task_type="a"), TaskSpec(task_type="b")], idempotency_key="k")
    task = _claim_and_start(engine)
    engine.report_outcome(task.task_id, "w", TaskOutcome.transient_failure("later"))

    stats = engine.queue_stats()
    assert stats.total == 2
    assert stats.operations == 1
    assert stats.by_status[TaskStatus.PENDING] == 1
    assert stats.by_status[TaskStatus.READY] == 1

    clock.advance(25 * 3600)
    report = engine.maintenance()

    assert report.promoted == 1
    assert report.purged == 1
    assert engine.queue_stats().by_status[TaskStatus.READY] == 2


def test_retried_dead_task_that_succeeds_spawns_success_follow_up(engine: TaskEngine) -> None:
    result = engine.submit_batch(
        [
            TaskSpec(
                task_type="echo",
                max_attempts=1,
                on_success=FollowUpTemplate(task_type="ok"),
                on_failure=FollowUpTemplate(task_type="bad"),
            ),
        ],
    )
    task = _claim_and_start(engine)
    engine.report_outcome(task.task_id, "w", TaskOutcome.transient_failure("flaky"))
    dead = engine.get_task_status(task.task_id)
    assert dead.status == TaskStatus.DEAD
    assert dead.spawned_failure_id is not None

    engine.retry_dead_task(task.task_id)
    again = engine.claim_next("w")
    while again is not None and again.task_id != task.task_id:
        engine.start_task(again.task_id, "w")
        engine.report_outcome(again.task_id, "w", TaskOutcome.succeeded())
        again = engine.claim_next("w")
    assert again is not None
    engine.start_task(task.task_id, "w")
    finished = engine.report_outcome(task.task_id, "w", TaskOutcome.succeeded())

    assert finished.status == TaskStatus.SUCCEEDED
    assert finished.spawned_success_id is not None
    assert finished.spawned_failure_id == dead.spawned_failure_id
    assert engine.get_task_status(finished.spawned_success_id).task_type == "ok"
    entries = engine.get_operation_status(result.operation_id).tasks
    assert sorted(entry.task_type for entry in entries) == ["bad", "echo", "ok"]


def test_task_retry_strategy_overrides_engine_default(
    engine: TaskEngine,
    clock: FakeClock,
) -> None:
    result = engine.submit_batch(
        [
            TaskSpec(
                task_type="charge",
                max_attempts=3,
                retry_strategy="fixed",
                retry_base_delay_seconds=10.0,
            ),
            TaskSpec(task_type="ship", max_attempts=3, retry_strategy="none"),
        ],
    )
    charge_id, ship_id = (entry.task_id for entry in result.tasks)
    stored = engine.get_task_status(charge_id)
    assert stored.retry_strategy == "fixed"
    assert stored.retry_base_delay_seconds == 10.0

    for expected_task_id in (charge_id, ship_id):
        task = _claim_and_start(engine)
        assert task.task_id == expected_task_id
        engine.report_outcome(task.task_id, "w", TaskOutcome.transient_failure("later"))

    charge = engine.get_task_status(charge_id)
    assert charge.status == TaskStatus.PENDING
    assert charge.scheduled_at == clock() + timedelta(seconds=10)
    ship = engine.get_task_status(ship_id)
    assert ship.status == TaskStatus.DEAD
    assert ship.attempt_count == 1
