"""At-most-once execution keyed by a caller supplied token.

Breakout-room creation honours a client ``X-Idempotency-Key`` so a retried POST returns the
first room. Emergency notification uses the alert id as key so an alert is announced once,
whichever path (critical signal, manual escalation, emergency request) gets there first.

A key moves ``processing -> completed | failed``. Replays of a completed key return the stored
result; an in-flight key refuses to run again, and so does a failed one unless the
operation opts into ``retry_failed``.
"""
from __future__ import annotations
import hashlib
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from sqlalchemy import String, Integer, DateTime, Text, UniqueConstraint, select, delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column
from prometheus_client import Counter
from sanctuary_engine.clock import utcnow
from sanctuary_engine.infrastructure import db
from sanctuary_engine.infrastructure.db import Base

IDEMPOTENT_CALLS = Counter('idempotent_calls_total', 'Keyed operations by outcome',
                           ['operation_type', 'outcome'])

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("operation_type", "idempotency_key", name="ux_idempotency_op_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation_type: Mapped[str] = mapped_column(String(64), index=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), index=True)
    request_hash: Mapped[str] = mapped_column(String(64))
    result_data: Mapped[str | None] = mapped_column(Text, default=None)
    status: Mapped[str] = mapped_column(String(16), default=COMPLETED)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class IdempotencyError(Exception):
    """The key exists but cannot be replayed (failed or still running)."""


class IdempotencyConflictError(IdempotencyError):
    """The key was first used with different parameters."""


def _fingerprint(params: dict[str, Any]) -> str:
    canonical = json.dumps(params, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def derive_key(operation_type: str, params: dict[str, Any]) -> str:
    return _fingerprint({"op": operation_type, "params": params})[:32]


class IdempotentOperation:
    """One named operation whose executions are deduplicated by key.

    ``execute`` claims the key in its own short transaction, runs the work outside any
    database session and then stores the JSON round-tripped result, so a first call and a
    replay return identical values.
    """

    def __init__(self, operation_type: str, ttl_hours: int = 24,
                 session_factory: Optional[Callable[[], Any]] = None,
                 clock: Callable[[], datetime] = utcnow, retry_failed: bool = False):
        self.operation_type = operation_type
        self.ttl = timedelta(hours=ttl_hours)
        self._session_factory = session_factory
        self._clock = clock
        # When set, a failed key may be claimed again; only a completed one is final.
        self.retry_failed = retry_failed

    def _open(self):
        return (self._session_factory or db.get_session_factory())()

    def _count(self, outcome: str) -> None:
        IDEMPOTENT_CALLS.labels(operation_type=self.operation_type, outcome=outcome).inc()

    def _replay(self, record: IdempotencyRecord, key: str, request_hash: str) -> Any:
        if record.request_hash != request_hash:
            self._count("conflict")
            raise IdempotencyConflictError(f"key {key} was first used with different parameters")
        self._count("replayed")
        if record.status == COMPLETED:
            return json.loads(record.result_data) if record.result_data else None
        if record.status == FAILED:
            raise IdempotencyError(f"earlier attempt under key {key} failed")
        raise IdempotencyError(f"attempt under key {key} is still in progress")

    def _claim(self, key: str, request_hash: str) -> tuple[bool, Any]:
        """Insert a ``processing`` row for ``key``; ``(False, result)`` when it is a replay."""
        s = self._open()
        try:
            now = self._clock()
            existing = s.scalars(select(IdempotencyRecord).where(
                IdempotencyRecord.operation_type == self.operation_type,
                IdempotencyRecord.idempotency_key == key,
            )).first()
            if existing is not None:
                if (existing.expires_at >= now and existing.status == FAILED and self.retry_failed
                        and existing.request_hash == request_hash):
                    return self._reclaim(s, existing, key, now), None
                if existing.expires_at >= now:
                    return False, self._replay(existing, key, request_hash)
                s.delete(existing)
                s.flush()
            s.add(IdempotencyRecord(operation_type=self.operation_type, idempotency_key=key,
                                    request_hash=request_hash, status=PROCESSING,
                                    created_at=now, expires_at=now + self.ttl))
            try:
                s.commit()
            except IntegrityError:
                # Lost the insert race to a concurrent caller.
                s.rollback()
                raise IdempotencyError(f"attempt under key {key} is still in progress")
            return True, None
        finally:
            s.close()

    def _reclaim(self, s, record: IdempotencyRecord, key: str, now: datetime) -> bool:
        # Conditional flip so only one of several concurrent retries wins the failed key.
        claimed = s.execute(update(IdempotencyRecord)
                            .where(IdempotencyRecord.id == record.id, IdempotencyRecord.status == FAILED)
                            .values(status=PROCESSING, created_at=now, expires_at=now + self.ttl)).rowcount
        s.commit()
        if not claimed:
            raise IdempotencyError(f"attempt under key {key} is still in progress")
        self._count("reclaimed")
        return True

    def _finish(self, key: str, status: str, result_data: Optional[str] = None) -> None:
        s = self._open()
        try:
            record = s.scalars(select(IdempotencyRecord).where(
                IdempotencyRecord.operation_type == self.operation_type,
                IdempotencyRecord.idempotency_key == key,
            )).one()
            record.status = status
            record.result_data = result_data
            s.commit()
        finally:
            s.close()

    def execute(self, idempotency_key: Optional[str], operation_func: Callable[..., Any], **params) -> Any:
        key = idempotency_key or derive_key(self.operation_type, params)
        request_hash = _fingerprint(params)
        fresh, replayed = self._claim(key, request_hash)
        if not fresh:
            return replayed
        self._count("executed")
        try:
            result = operation_func(**params)
        except Exception:
            self._finish(key, FAILED)
            raise
        encoded = json.dumps(result, default=str)
        self._finish(key, COMPLETED, encoded)
        return json.loads(encoded)


def cleanup_expired_idempotency_records(batch_size: int = 1000, session_factory=None) -> dict[str, int]:
    """Delete expired keys in batches; returns ``{"deleted": n}``."""
    s = (session_factory or db.get_session_factory())()
    deleted = 0
    try:
        cutoff = utcnow()
        while True:
            ids = s.scalars(select(IdempotencyRecord.id)
                            .where(IdempotencyRecord.expires_at < cutoff)
                            .limit(batch_size)).all()
            if not ids:
                break
            s.execute(delete(IdempotencyRecord).where(IdempotencyRecord.id.in_(ids)))
            s.commit()
            deleted += len(ids)
            if len(ids) < batch_size:
                break
    finally:
        s.close()
    return {"deleted": deleted}
