"""Idempotency cache: one key, one operation, for the retention window."""

from __future__ import annotations

import hashlib
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from task_engine.engine.models import OperationResult, TaskSpec
from task_engine.engine.store import TaskStore
from task_engine.storage.common import dump_json, load_json, to_db_datetime, to_utc_aware_datetime
from task_engine.storage.sqlmodel_models import IdempotencyRecordRow


class IdempotencyState(str, Enum):
    RESERVED = "reserved"
    COMPLETED = "completed"


@dataclass(slots=True)
class IdempotencyRecord:
    """Stored idempotency entry."""

    key: str
    state: IdempotencyState
    reservation_token: str
    request_fingerprint: str
    operation_id: str | None
    result: OperationResult | None
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class IdempotencyCache:
    """Two-phase reserve/complete protocol over the ``idempotency_records`` table.

    ``reserve`` inserts the key; the primary key constraint makes exactly one
    concurrent caller win. The winner creates the batch and calls ``complete``
    or, on any failure, ``release``. Reservations left by a crashed process
    expire after ``reservation_ttl``.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        retention: timedelta = timedelta(hours=24),
        reservation_ttl: timedelta = timedelta(minutes=5),
    ) -> None:
        self.store = store
        self.retention = retention
        self.reservation_ttl = reservation_ttl

    def lookup(self, key: str, now: datetime) -> IdempotencyRecord | None:
        """Return the live record for ``key``; expired records read as absent."""

        with Session(self.store.engine) as session:
            row = session.exec(
                select(IdempotencyRecordRow).where(IdempotencyRecordRow.key == key),
            ).one_or_none()
        if row is None:
            return None
        record = _to_record(row)
        if record.is_expired(now):
            return None
        return record

    def reserve(self, key: str, fingerprint: str, now: datetime) -> str | None:
        """Claim ``key`` for a new submission; ``None`` means someone else holds it."""

        token = str(uuid.uuid4())
        with Session(self.store.engine) as session:
            session.execute(
                sa_delete(IdempotencyRecordRow).where(
                    col(IdempotencyRecordRow.key) == key,
                    col(IdempotencyRecordRow.expires_at) <= to_db_datetime(now),
                ),
            )
            session.add(
                IdempotencyRecordRow(
                    key=key,
                    state=IdempotencyState.RESERVED.value,
                    reservation_token=token,
                    request_fingerprint=fingerprint,
                    created_at=to_db_datetime(now),
                    expires_at=to_db_datetime(now + self.reservation_ttl),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
        return token

    def complete(self, key: str, token: str, result: OperationResult, now: datetime) -> bool:
        with Session(self.store.engine) as session:
            outcome = session.execute(
                sa_update(IdempotencyRecordRow)
                .where(
                    col(IdempotencyRecordRow.key) == key,
                    col(IdempotencyRecordRow.reservation_token) == token,
                    col(IdempotencyRecordRow.state) == IdempotencyState.RESERVED.value,
                )
                .values(
                    state=IdempotencyState.COMPLETED.value,
                    operation_id=result.operation_id,
                    result_json=dump_json(result.to_dict()),
                    expires_at=to_db_datetime(now + self.retention),
                ),
            )
            session.commit()
            return outcome.rowcount == 1

    def release(self, key: str, token: str) -> bool:
        with Session(self.store.engine) as session:
            outcome = session.execute(
                sa_delete(IdempotencyRecordRow).where(
                    col(IdempotencyRecordRow.key) == key,
                    col(IdempotencyRecordRow.reservation_token) == token,
                    col(IdempotencyRecordRow.state) == IdempotencyState.RESERVED.value,
                ),
            )
            session.commit()
            return outcome.rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        with Session(self.store.engine) as session:
            outcome = session.execute(
                sa_delete(IdempotencyRecordRow).where(
                    col(IdempotencyRecordRow.expires_at) <= to_db_datetime(now),
                ),
            )
            session.commit()
            return int(outcome.rowcount or 0)


def fingerprint(specs: Sequence[TaskSpec]) -> str:
    """Stable hash of a submission, used to reject a key reused for a different request."""

    canonical = [
        {
            "type": spec.task_type,
            "payload": spec.payload,
            "ref": spec.ref,
            "depends_on": list(spec.depends_on),
            "on_success": spec.on_success.to_dict() if spec.on_success else None,
            "on_failure": spec.on_failure.to_dict() if spec.on_failure else None,
            "max_attempts": spec.max_attempts,
            "timeout_seconds": spec.timeout_seconds,
            "scheduled_at": spec.scheduled_at.isoformat() if spec.scheduled_at else None,
            "retry_strategy": spec.retry_strategy,
            "retry_base_delay_seconds": spec.retry_base_delay_seconds,
        }
        for spec in specs
    ]
    return hashlib.sha256(dump_json(canonical).encode("utf-8")).hexdigest()


def _to_record(row: IdempotencyRecordRow) -> IdempotencyRecord:
    data = load_json(row.result_json)
    return IdempotencyRecord(
        key=row.key,
        state=IdempotencyState(row.state),
        reservation_token=row.reservation_token,
        request_fingerprint=row.request_fingerprint,
        operation_id=row.operation_id,
        result=OperationResult.from_dict(data) if isinstance(data, dict) else None,
        created_at=to_utc_aware_datetime(row.created_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
    )
