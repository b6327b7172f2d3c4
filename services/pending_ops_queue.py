"""Durable, ordered queue of local mutations waiting to reach the remote."""
from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlmodel import select

from datetime_utils import ensure_utc, utc_now
from models.pending_op import EntityType, OperationKind, OperationStatus, PendingOp
from services.retry_policy import RetryPolicy
from storage.db import get_session


VALID_ENTITIES = {entity.value for entity in EntityType}
VALID_KINDS = {kind.value for kind in OperationKind}
MAX_ERROR_LENGTH = 1000
INTERRUPTED_ERROR = "interrupted: connection lost"

EntityKey = Tuple[str, str]

_CREATE = OperationKind.CREATE.value
_UPDATE = OperationKind.UPDATE.value
_DELETE = OperationKind.DELETE.value

_QUEUED = OperationStatus.QUEUED.value
_IN_FLIGHT = OperationStatus.IN_FLIGHT.value
_FAILED = OperationStatus.FAILED.value

logger = logging.getLogger("veloce.sync.queue")


@dataclass
class PendingOperation:
    id: int
    uid: str
    seq: int
    entity_type: str
    entity_id: str
    kind: str
    payload: dict
    status: str
    attempts: int
    last_error: Optional[str]
    created_at: datetime
    next_try_at: datetime

    @property
    def entity_key(self) -> EntityKey:
        return (self.entity_type, self.entity_id)


def _load_payload(raw: Optional[str]) -> dict:
    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _dump_payload(data: Optional[dict]) -> str:
    return json.dumps(data or {}, ensure_ascii=False, sort_keys=True, default=str)


def _to_operation(row: PendingOp) -> PendingOperation:
    return PendingOperation(
        id=row.id,
        uid=row.uid,
        seq=row.seq,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        kind=row.kind,
        payload=_load_payload(row.payload),
        status=row.status,
        attempts=row.attempts,
        last_error=row.last_error,
        created_at=ensure_utc(row.created_at),
        next_try_at=ensure_utc(row.next_try_at),
    )


def _never_attempted(row: PendingOp) -> bool:
    return row.attempts == 0 and not row.last_error


def _normalise(value, valid: set, label: str) -> str:
    raw = getattr(value, "value", value)
    if raw not in valid:
        raise ValueError(f"Unsupported {label}: {value}")
    return raw


class PendingOpsQueue:
    """SQLModel-backed pending operation queue.

    Every mutation (enqueue, state transitions, purges) goes through a single
    re-entrant lock, so sequence numbers stay monotonic and an enqueue from a
    UI thread never races the completion callback of a running drain.
    """

    def __init__(
        self,
        *,
        session_factory=get_session,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._session_factory = session_factory
        self.policy = policy or RetryPolicy.from_settings()
        self._lock = threading.RLock()
        self._last_seq: Optional[int] = None
        self._listeners: List[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Change notifications
    def add_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                logger.exception("Queue listener %r failed", callback)

    # ------------------------------------------------------------------
    # Enqueue
    def _next_seq(self, session) -> int:
        if self._last_seq is None:
            current = session.exec(select(func.max(PendingOp.seq))).one()
            self._last_seq = int(current or 0)
        self._last_seq += 1
        return self._last_seq

    def enqueue(
        self,
        entity_type: str,
        entity_id: str,
        kind: str,
        data: Optional[dict] = None,
    ) -> Optional[PendingOperation]:
        """Record a mutation, collapsing it into a queued change of the same entity.

        Returns the operation that now carries the change, or ``None`` when a
        delete cancelled a create that never left the device.
        """

        entity_type = _normalise(entity_type, VALID_ENTITIES, "entity type")
        kind = _normalise(kind, VALID_KINDS, "operation kind")
        entity_id = str(entity_id or "").strip()
        if not entity_id:
            raise ValueError("entity_id is required")

        with self._lock:
            with self._session_factory() as session:
                stmt = (
                    select(PendingOp)
                    .where(PendingOp.entity_type == entity_type)
                    .where(PendingOp.entity_id == entity_id)
                    .order_by(PendingOp.seq.desc())
                    .limit(1)
                )
                tail = session.exec(stmt).first()
                if tail is not None and tail.status != _QUEUED:
                    # In-flight and failed operations are never rewritten.
                    tail = None

                now = utc_now()
                record = self._collapse(session, tail, kind, data, now)
                if record is None:
                    logger.info("Queued create for %s:%s cancelled by delete", entity_type, entity_id)
                elif record is tail:
                    logger.debug("Collapsed %s on %s:%s into %s", kind, entity_type, entity_id, tail.uid)
                else:
                    record = PendingOp(
                        uid=uuid.uuid4().hex,
                        seq=self._next_seq(session),
                        entity_type=entity_type,
                        entity_id=entity_id,
                        kind=kind,
                        payload=_dump_payload(data),
                        created_at=now,
                        updated_at=now,
                        next_try_at=now,
                    )
                    session.add(record)
                    logger.debug("Queued %s %s:%s as seq %s", kind, entity_type, entity_id, record.seq)
                session.commit()
                result = None
                if record is not None:
                    session.refresh(record)
                    result = _to_operation(record)
        self._notify()
        return result

    def _collapse(self, session, tail: Optional[PendingOp], kind: str, data: Optional[dict], now: datetime):
        """Fold a new change into the queued ``tail``.

        Returns ``tail`` when collapsed, ``None`` when the pair cancels out and
        ``False`` when the change has to be appended as a new operation.
        """

        if tail is None:
            return False

        if kind == _UPDATE and tail.kind in (_CREATE, _UPDATE):
            merged = _load_payload(tail.payload)
            merged.update(data or {})
            tail.payload = _dump_payload(merged)
        elif kind == _DELETE and tail.kind == _CREATE and _never_attempted(tail):
            session.delete(tail)
            return None
        elif kind == _DELETE:
            tail.kind = _DELETE
            tail.payload = _dump_payload(data)
        elif kind == _CREATE and tail.kind == _CREATE:
            tail.payload = _dump_payload(data)
        else:
            return False

        tail.attempts = 0
        tail.next_try_at = now
        tail.updated_at = now
        session.add(tail)
        return tail

    # ------------------------------------------------------------------
    # Drain support
    def _open_rows(self, session) -> List[PendingOp]:
        stmt = (
            select(PendingOp)
            .where(PendingOp.status.in_([_QUEUED, _IN_FLIGHT, _FAILED]))
            .order_by(PendingOp.seq.asc())
        )
        return list(session.exec(stmt))

    def drainable(
        self,
        *,
        now: Optional[datetime] = None,
        exclude: Iterable[int] = (),
        blocked: Iterable[EntityKey] = (),
    ) -> List[PendingOperation]:
        """Queued operations that may be sent now, in sequence order.

        An entity is blocked from the first operation that cannot be sent
        (failed, in flight, backing off or listed in ``exclude``); later
        operations on that entity wait, other entities are unaffected.
        """

        moment = now or utc_now()
        excluded = set(exclude)
        blocked_keys: Set[EntityKey] = set(blocked)
        result: List[PendingOperation] = []
        with self._session_factory() as session:
            for row in self._open_rows(session):
                key = (row.entity_type, row.entity_id)
                if key in blocked_keys:
                    continue
                eligible = (
                    row.status == _QUEUED
                    and ensure_utc(row.next_try_at) <= moment
                    and row.id not in excluded
                )
                if not eligible:
                    blocked_keys.add(key)
                    continue
                result.append(_to_operation(row))
        return result

    def mark_in_flight(self, op_id: int) -> Optional[PendingOperation]:
        with self._lock:
            with self._session_factory() as session:
                record = session.get(PendingOp, op_id)
                if record is None or record.status != _QUEUED:
                    return None
                record.status = _IN_FLIGHT
                record.updated_at = utc_now()
                session.add(record)
                session.commit()
                session.refresh(record)
                result = _to_operation(record)
        self._notify()
        return result

    def mark_succeeded(self, op_id: int) -> bool:
        with self._lock:
            with self._session_factory() as session:
                record = session.get(PendingOp, op_id)
                if record is None:
                    return False
                session.delete(record)
                session.commit()
        self._notify()
        return True

    def mark_failed(self, op_id: int, reason: str, *, permanent: bool = False) -> Optional[PendingOperation]:
        """Apply a failure to an operation.

        Permanent failures go straight to the failed bucket. Transient ones
        consume one attempt and back off; the attempt that exhausts the retry
        budget moves the operation to the failed bucket as well.
        """

        with self._lock:
            with self._session_factory() as session:
                record = session.get(PendingOp, op_id)
                if record is None:
                    return None
                now = utc_now()
                reason = (reason or "unknown error")[:MAX_ERROR_LENGTH]
                if permanent:
                    record.status = _FAILED
                    record.last_error = reason
                else:
                    record.attempts += 1
                    record.last_error = reason
                    if self.policy.is_exhausted(record.attempts):
                        record.status = _FAILED
                        record.last_error = f"retry limit reached: {reason}"[:MAX_ERROR_LENGTH]
                    else:
                        record.status = _QUEUED
                        record.next_try_at = self.policy.next_retry_at(record.attempts, now)
                record.updated_at = now
                session.add(record)
                session.commit()
                session.refresh(record)
                result = _to_operation(record)
        if result.status == _FAILED:
            logger.warning(
                "Operation %s (%s %s:%s) moved to failed: %s",
                result.uid, result.kind, result.entity_type, result.entity_id, result.last_error,
            )
        self._notify()
        return result

    def release(self, op_id: int, reason: str = INTERRUPTED_ERROR) -> Optional[PendingOperation]:
        """Return an in-flight operation to the queue without consuming an attempt."""

        with self._lock:
            with self._session_factory() as session:
                record = session.get(PendingOp, op_id)
                if record is None or record.status != _IN_FLIGHT:
                    return None
                record.status = _QUEUED
                record.last_error = reason[:MAX_ERROR_LENGTH]
                record.updated_at = utc_now()
                session.add(record)
                session.commit()
                session.refresh(record)
                result = _to_operation(record)
        self._notify()
        return result

    def recover_in_flight(self) -> int:
        """Requeue operations a previous process left in flight."""

        return self._bulk_transition(_IN_FLIGHT, reset_attempts=False, reason=INTERRUPTED_ERROR)

    def retry_failed(self) -> int:
        """Move the whole failed bucket back to the queue with a fresh retry budget."""

        return self._bulk_transition(_FAILED, reset_attempts=True, reason=None)

    def _bulk_transition(self, status: str, *, reset_attempts: bool, reason: Optional[str]) -> int:
        with self._lock:
            with self._session_factory() as session:
                rows = list(session.exec(select(PendingOp).where(PendingOp.status == status)))
                now = utc_now()
                for row in rows:
                    row.status = _QUEUED
                    row.updated_at = now
                    if reset_attempts:
                        row.attempts = 0
                        row.next_try_at = now
                    if reason is not None:
                        row.last_error = reason
                    session.add(row)
                session.commit()
        if rows:
            logger.info("Requeued %d %s operations", len(rows), status)
            self._notify()
        return len(rows)

    # ------------------------------------------------------------------
    # Manual intervention
    def discard(self, op_id: int) -> bool:
        with self._lock:
            with self._session_factory() as session:
                record = session.get(PendingOp, op_id)
                if record is None or record.status == _IN_FLIGHT:
                    return False
                session.delete(record)
                session.commit()
        logger.info("Discarded operation %s", op_id)
        self._notify()
        return True

    def discard_failed(self) -> int:
        return self._delete_where(PendingOp.status == _FAILED)

    def clear(self) -> int:
        return self._delete_where(PendingOp.status != _IN_FLIGHT)

    def _delete_where(self, condition) -> int:
        with self._lock:
            with self._session_factory() as session:
                rows = list(session.exec(select(PendingOp).where(condition)))
                for row in rows:
                    session.delete(row)
                session.commit()
        if rows:
            logger.info("Removed %d operations from the queue", len(rows))
            self._notify()
        return len(rows)

    # ------------------------------------------------------------------
    # Read side
    def get(self, op_id: int) -> Optional[PendingOperation]:
        with self._session_factory() as session:
            record = session.get(PendingOp, op_id)
            return _to_operation(record) if record else None

    def list_all(self) -> List[PendingOperation]:
        with self._session_factory() as session:
            return [_to_operation(row) for row in self._open_rows(session)]

    def list_failed(self) -> List[PendingOperation]:
        return [op for op in self.list_all() if op.status == _FAILED]

    def _count(self, *statuses: str) -> int:
        with self._session_factory() as session:
            stmt = select(func.count()).select_from(PendingOp)
            if statuses:
                stmt = stmt.where(PendingOp.status.in_(statuses))
            return int(session.exec(stmt).one())

    def count(self) -> int:
        return self._count()

    def pending_count(self) -> int:
        return self._count(_QUEUED, _IN_FLIGHT)

    def failed_count(self) -> int:
        return self._count(_FAILED)

    def next_retry_at(self, after: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest backoff deadline still in the future."""

        moment = after or utc_now()
        upcoming = [
            op.next_try_at
            for op in self.list_all()
            if op.status == _QUEUED and op.next_try_at > moment
        ]
        return min(upcoming) if upcoming else None


__all__ = ["PendingOpsQueue", "PendingOperation", "INTERRUPTED_ERROR"]
