"""Batch graph validation, initial readiness, and dependent re-evaluation."""

from __future__ import annotations

import logging
import uuid
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from task_engine.engine.errors import DependencyCycleError, NotFoundError, ValidationError
from task_engine.engine.models import (
    UNSUCCESSFUL_STATUSES,
    FailureClass,
    FollowUpTemplate,
    TaskCreate,
    TaskSpec,
    TaskStatus,
)
from task_engine.engine.retry import RetryStrategy
from task_engine.engine.store import TaskStore
from task_engine.storage.common import dump_json, to_utc_aware_datetime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchPlan:
    """Validated batch ready to persist, in dependency order."""

    operation_id: str
    tasks: list[TaskCreate] = field(default_factory=list)

    @property
    def blocked_task_ids(self) -> list[str]:
        return [task.task_id for task in self.tasks if task.status == TaskStatus.BLOCKED]


@dataclass(slots=True)
class Transition:
    """One status change made while re-evaluating dependents."""

    task_id: str
    status: TaskStatus


class DependencyResolver:
    """Decides when blocked tasks may run, and fails them when a dependency did not succeed."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def validate_specs(self, specs: Sequence[TaskSpec]) -> None:
        """Check each spec on its own; graph checks happen in :meth:`plan_batch`."""

        if not specs:
            raise ValidationError("A batch must contain at least one task.")
        for index, spec in enumerate(specs):
            _validate_spec(spec, index=index)

    def plan_batch(  # noqa: C901, PLR0912
        self,
        specs: Sequence[TaskSpec],
        *,
        now: datetime,
        default_max_attempts: int,
        idempotency_key: str | None = None,
        operation_id: str | None = None,
    ) -> BatchPlan:
        """Validate a submission and compute each task's initial status.

        Nothing is persisted here; a cycle or unknown reference raises before
        the store is touched.
        """

        self.validate_specs(specs)

        labels: list[str] = []
        ref_index: dict[str, int] = {}
        for index, spec in enumerate(specs):
            label = spec.ref if spec.ref is not None else f"#{index}"
            if spec.ref is not None:
                if spec.ref in ref_index:
                    raise ValidationError(f"Duplicate task ref in batch: {spec.ref!r}")
                ref_index[spec.ref] = index
            labels.append(label)

        internal: list[list[int]] = [[] for _ in specs]
        external: list[list[str]] = [[] for _ in specs]
        external_ids: set[str] = set()
        for index, spec in enumerate(specs):
            for entry in dict.fromkeys(spec.depends_on):
                if entry in ref_index:
                    internal[index].append(ref_index[entry])
                else:
                    external[index].append(entry)
                    external_ids.add(entry)

        order = _topological_order(internal, labels)

        external_statuses = self.store.statuses(external_ids)
        missing = sorted(external_ids - external_statuses.keys())
        if missing:
            raise ValidationError(f"Unknown dependency reference(s): {', '.join(missing)}")

        operation_id = operation_id or str(uuid.uuid4())
        task_ids = [str(uuid.uuid4()) for _ in specs]
        planned: dict[int, TaskCreate] = {}
        for index in order:
            spec = specs[index]
            scheduled_at = to_utc_aware_datetime(spec.scheduled_at) if spec.scheduled_at else now
            status, failure_class, error_summary = _initial_status(
                upstream_statuses=[external_statuses[dep] for dep in external[index]],
                internal_failed=[
                    task_ids[dep]
                    for dep in internal[index]
                    if planned[dep].status == TaskStatus.FAILED
                ],
                external_failed=[
                    dep
                    for dep in external[index]
                    if external_statuses[dep] in UNSUCCESSFUL_STATUSES
                ],
                has_internal=bool(internal[index]),
                due=scheduled_at <= now,
            )
            planned[index] = TaskCreate(
                task_id=task_ids[index],
                operation_id=operation_id,
                task_type=spec.task_type,
                payload=dict(spec.payload),
                status=status,
                max_attempts=spec.max_attempts or default_max_attempts,
                scheduled_at=scheduled_at,
                position=index,
                ref=spec.ref,
                depends_on=tuple(
                    [task_ids[dep] for dep in internal[index]] + external[index],
                ),
                on_success=spec.on_success,
                on_failure=spec.on_failure,
                timeout_seconds=spec.timeout_seconds,
                idempotency_key=idempotency_key,
                failure_class=failure_class,
                error_summary=error_summary,
                retry_strategy=spec.retry_strategy,
                retry_base_delay_seconds=spec.retry_base_delay_seconds,
            )

        return BatchPlan(
            operation_id=operation_id,
            tasks=[planned[index] for index in range(len(specs))],
        )

    def reevaluate_task(self, task_id: str) -> TaskStatus | None:
        """Re-check one blocked task against its dependencies.

        Returns the new status if this call moved the task, ``None`` otherwise.
        Safe to call repeatedly.
        """

        try:
            task = self.store.get(task_id)
        except NotFoundError:
            return None
        if task.status != TaskStatus.BLOCKED:
            return None

        statuses = self.store.statuses(task.depends_on)
        failed = [
            dep for dep in task.depends_on if statuses.get(dep) in UNSUCCESSFUL_STATUSES
        ]
        now = self.store.clock()
        if failed:
            upstream = failed[0]
            moved = self.store.compare_and_set_status(
                task_id,
                TaskStatus.BLOCKED,
                TaskStatus.FAILED,
                event_type="dependency_failed",
                details={
                    "dependency_task_id": upstream,
                    "dependency_status": statuses[upstream].value,
                },
                failure_class=FailureClass.DEPENDENCY_FAILED,
                error_summary=f"Dependency {upstream} ended {statuses[upstream].value}",
                finished_at=now,
            )
            return TaskStatus.FAILED if moved else None

        if len(statuses) == len(task.depends_on) and all(
            status == TaskStatus.SUCCEEDED for status in statuses.values()
        ):
            target = TaskStatus.READY if task.scheduled_at <= now else TaskStatus.PENDING
            moved = self.store.compare_and_set_status(
                task_id,
                TaskStatus.BLOCKED,
                target,
                event_type="dependencies_met",
            )
            return target if moved else None
        return None

    def reevaluate_dependents(self, task_id: str) -> list[Transition]:
        """Propagate a terminal transition of ``task_id`` to its blocked dependents.

        Dependents failed because of ``task_id`` are themselves propagated, so a
        failure cascades through the whole downstream graph.
        """

        transitions: list[Transition] = []
        queue: deque[str] = deque([task_id])
        seen: set[str] = set()
        while queue:
            upstream = queue.popleft()
            if upstream in seen:
                continue
            seen.add(upstream)
            for dependent in self.store.list_dependents(upstream):
                status = self.reevaluate_task(dependent)
                if status is None:
                    continue
                transitions.append(Transition(task_id=dependent, status=status))
                if status == TaskStatus.FAILED:
                    logger.info(
                        "Task %s failed: dependency %s did not succeed",
                        dependent,
                        upstream,
                    )
                    queue.append(dependent)
        return transitions

    def sweep_blocked(self, limit: int = 100) -> list[Transition]:
        """Re-evaluate every blocked task; recovers from a missed propagation."""

        transitions: list[Transition] = []
        for task in self.store.list_by_status(TaskStatus.BLOCKED, limit=limit):
            status = self.reevaluate_task(task.task_id)
            if status is None:
                continue
            transitions.append(Transition(task_id=task.task_id, status=status))
            if status == TaskStatus.FAILED:
                transitions.extend(self.reevaluate_dependents(task.task_id))
        return transitions


def _initial_status(  # noqa: PLR0913
    *,
    upstream_statuses: list[TaskStatus],
    internal_failed: list[str],
    external_failed: list[str],
    has_internal: bool,
    due: bool,
) -> tuple[TaskStatus, FailureClass | None, str | None]:
    failed = internal_failed + external_failed
    if failed:
        return (
            TaskStatus.FAILED,
            FailureClass.DEPENDENCY_FAILED,
            f"Dependency {failed[0]} did not succeed",
        )
    if has_internal or any(status != TaskStatus.SUCCEEDED for status in upstream_statuses):
        return TaskStatus.BLOCKED, None, None
    return (TaskStatus.READY if due else TaskStatus.PENDING), None, None


def _topological_order(internal: list[list[int]], labels: list[str]) -> list[int]:
    """Kahn's algorithm over in-batch edges; raises on any cycle."""

    indegree = [len(deps) for deps in internal]
    downstream: list[list[int]] = [[] for _ in internal]
    for index, deps in enumerate(internal):
        for dep in deps:
            downstream[dep].append(index)

    queue = deque(index for index, degree in enumerate(indegree) if degree == 0)
    order: list[int] = []
    while queue:
        index = queue.popleft()
        order.append(index)
        for child in downstream[index]:
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)

    if len(order) != len(internal):
        remaining = {index for index, degree in enumerate(indegree) if degree > 0}
        raise DependencyCycleError([labels[index] for index in _find_cycle(internal, remaining)])
    return order


def _find_cycle(internal: list[list[int]], remaining: set[int]) -> list[int]:
    # Every node left after Kahn has an unresolved upstream inside ``remaining``,
    # so walking upstream edges must revisit a node.
    start = min(remaining)
    path: list[int] = []
    position: dict[int, int] = {}
    node = start
    while node not in position:
        position[node] = len(path)
        path.append(node)
        node = next(dep for dep in internal[node] if dep in remaining)
    cycle = path[position[node] :]
    cycle.reverse()
    return [*cycle, cycle[0]]


def _validate_spec(spec: TaskSpec, *, index: int) -> None:  # noqa: C901
    where = f"task {spec.ref or f'#{index}'}"
    if not isinstance(spec.task_type, str) or not spec.task_type.strip():
        raise ValidationError(f"{where}: type must be a non-empty string.")
    if not isinstance(spec.payload, dict):
        raise ValidationError(f"{where}: payload must be a JSON object.")
    _validate_json(spec.payload, where=f"{where} payload")
    if spec.ref is not None and (not isinstance(spec.ref, str) or not spec.ref.strip()):
        raise ValidationError(f"{where}: ref must be a non-empty string.")
    if spec.max_attempts is not None and spec.max_attempts < 1:
        raise ValidationError(f"{where}: max_attempts must be >= 1.")
    if spec.timeout_seconds is not None and spec.timeout_seconds <= 0:
        raise ValidationError(f"{where}: timeout_seconds must be > 0.")
    if spec.retry_strategy is not None and spec.retry_strategy not in _RETRY_STRATEGIES:
        raise ValidationError(
            f"{where}: retry_strategy must be one of {sorted(_RETRY_STRATEGIES)}.",
        )
    if spec.retry_base_delay_seconds is not None and spec.retry_base_delay_seconds < 0:
        raise ValidationError(f"{where}: retry_base_delay_seconds must be >= 0.")
    for entry in spec.depends_on:
        if not isinstance(entry, str) or not entry:
            raise ValidationError(f"{where}: depends_on entries must be non-empty strings.")
    _validate_template(spec.on_success, where=f"{where} on_success")
    _validate_template(spec.on_failure, where=f"{where} on_failure")


def _validate_template(template: FollowUpTemplate | None, *, where: str) -> None:
    if template is None:
        return
    if not isinstance(template.task_type, str) or not template.task_type.strip():
        raise ValidationError(f"{where}: type must be a non-empty string.")
    if not isinstance(template.payload, dict):
        raise ValidationError(f"{where}: payload must be a JSON object.")
    _validate_json(template.payload, where=f"{where} payload")
    if template.max_attempts is not None and template.max_attempts < 1:
        raise ValidationError(f"{where}: max_attempts must be >= 1.")


def _validate_json(value: object, *, where: str) -> None:
    try:
        dump_json(value)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"{where}: must be JSON-serializable ({error}).") from error


_RETRY_STRATEGIES = frozenset(strategy.value for strategy in RetryStrategy)
