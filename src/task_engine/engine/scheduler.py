"""Dispatch: promote due tasks, claim ready ones, recover abandoned claims."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from task_engine.engine.models import TaskStatus, TaskView
from task_engine.engine.store import TaskStore

logger = logging.getLogger(__name__)


class Scheduler:
    """Moves tasks from ``pending`` to ``ready`` and hands ``ready`` tasks to workers."""

    def __init__(  # noqa: PLR0913
        self,
        store: TaskStore,
        *,
        claim_retry_limit: int = 5,
        claim_retry_backoff_seconds: float = 0.05,
        promote_batch_size: int = 100,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.claim_retry_limit = claim_retry_limit
        self.claim_retry_backoff_seconds = claim_retry_backoff_seconds
        self.promote_batch_size = promote_batch_size
        self._random = rng or random.Random()  # noqa: S311
        self._sleep = sleep

    def promote_due(self, now: datetime | None = None, limit: int | None = None) -> int:
        """Move ``pending`` tasks whose ``scheduled_at`` has passed to ``ready``."""

        now = now or self.store.clock()
        promoted = 0
        for task in self.store.list_due(
            status=TaskStatus.PENDING,
            now=now,
            limit=limit or self.promote_batch_size,
        ):
            if self.store.compare_and_set_status(
                task.task_id,
                TaskStatus.PENDING,
                TaskStatus.READY,
                event_type="promoted",
            ):
                promoted += 1
        return promoted

    def claim_next(self, worker_id: str) -> TaskView | None:
        """Claim the earliest due ready task for ``worker_id``.

        A task lost to a concurrent worker is skipped and the next candidate
        is tried after a short jittered pause, up to ``claim_retry_limit``
        rounds.
        """

        self.promote_due()
        lost: set[str] = set()
        for round_no in range(self.claim_retry_limit):
            candidates = self.store.list_claim_candidates(
                now=self.store.clock(),
                limit=len(lost) + 1,
            )
            candidate = next((task for task in candidates if task.task_id not in lost), None)
            if candidate is None:
                return None
            claimed = self.store.claim(task_id=candidate.task_id, worker_id=worker_id)
            if claimed is not None:
                return claimed
            lost.add(candidate.task_id)
            logger.debug(
                "Worker %s lost claim race for task %s (round %d)",
                worker_id,
                candidate.task_id,
                round_no + 1,
            )
            self._backoff(round_no)
        return None

    def recover_stale_claims(
        self,
        *,
        stale_after: timedelta,
        report: Callable[[TaskView, datetime], bool],
        limit: int = 50,
    ) -> int:
        """Hand claims whose heartbeat is older than ``stale_after`` to ``report``.

        ``report`` records the abandoned attempt as a transient failure of its
        current owner and returns whether it won the transition. It receives
        the staleness threshold so the transition loses if the owner heartbeats
        after the listing.
        """

        threshold = self.store.clock() - stale_after
        recovered = 0
        for task in self.store.list_stale_claims(older_than=threshold, limit=limit):
            logger.warning(
                "Recovering stale claim on task %s held by %s since %s",
                task.task_id,
                task.worker_id,
                task.heartbeat_at,
            )
            if report(task, threshold):
                recovered += 1
        return recovered

    def _backoff(self, round_no: int) -> None:
        if self.claim_retry_backoff_seconds <= 0:
            return
        ceiling = self.claim_retry_backoff_seconds * (2**round_no)
        self._sleep(self._random.uniform(ceiling / 2, ceiling))
