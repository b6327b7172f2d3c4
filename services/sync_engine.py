from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Dict, List, Optional, Set

from core.settings import SYNC, SYNC_LOG_PATH, SyncSettings
from datetime_utils import utc_now
from models.pending_op import OperationKind, OperationStatus
from models.sync_state import (
    ConnectionState,
    Error,
    Idle,
    Offline,
    Success,
    SyncState,
    Syncing,
)
from services.connectivity import ConnectivityMonitor
from services.pending_ops_queue import PendingOperation, PendingOpsQueue
from services.remote_store import PermanentSyncError, RemoteStore, SyncError, TransientSyncError
from services.sync_meta_storage import SyncMetaStorage


SyncListener = Callable[[SyncState], None]
RemoteChangesHandler = Callable[[Dict[str, List[Dict[str, Any]]]], Any]

# Share of the progress bar the push phase takes during a full sync.
FULL_SYNC_PUSH_SPAN = 0.8


def _ensure_logger() -> logging.Logger:
    logger = logging.getLogger("veloce.sync")
    if not logger.handlers:
        SYNC_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(SYNC_LOG_PATH, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


@dataclass
class DrainResult:
    synced: int = 0
    retrying: int = 0
    failed: int = 0
    interrupted: bool = False


class SyncEngine:
    """Drains the pending queue against the remote store.

    One engine exists per process; it is built by the composition root and
    handed to whatever needs it. At most one drain runs at a time: calls
    made while syncing wait for the running drain instead of starting a
    second one.
    """

    def __init__(
        self,
        queue: PendingOpsQueue,
        remote: RemoteStore,
        monitor: ConnectivityMonitor,
        *,
        meta: Optional[SyncMetaStorage] = None,
        settings: Optional[SyncSettings] = None,
        on_remote_changes: Optional[RemoteChangesHandler] = None,
    ) -> None:
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.meta = meta or SyncMetaStorage()
        self.settings = settings or SYNC
        self.on_remote_changes = on_remote_changes
        self.logger = _ensure_logger()

        self._state: SyncState = Idle() if monitor.is_online else Offline()
        self._listeners: List[SyncListener] = []
        self._last_successful_sync: Optional[datetime] = self.meta.get_last_successful_sync()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._clear_handle: Optional[asyncio.TimerHandle] = None
        self._unsubscribe_monitor: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Read side
    @property
    def sync_state(self) -> SyncState:
        return self._state

    @property
    def connection_state(self) -> ConnectionState:
        return self.monitor.state

    @property
    def is_online(self) -> bool:
        return self.monitor.is_online

    @property
    def offline_duration_text(self) -> str:
        return self.monitor.offline_duration_text

    @property
    def pending_count(self) -> int:
        return self.queue.pending_count()

    @property
    def failed_operations_count(self) -> int:
        return self.queue.failed_count()

    @property
    def last_successful_sync(self) -> Optional[datetime]:
        return self._last_successful_sync

    @property
    def is_syncing(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set_state(self, state: SyncState) -> None:
        if state == self._state:
            return
        if isinstance(state, Syncing) and not self.monitor.is_online:
            state = Offline()
        self._state = state
        self.logger.debug("Sync state -> %r", state)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                self.logger.exception("Sync listener %r failed", listener)

    # ------------------------------------------------------------------
    # Lifecycle
    def start(self) -> None:
        """Bind to the running loop, recover interrupted work and follow connectivity."""

        self._loop = asyncio.get_running_loop()
        recovered = self.queue.recover_in_flight()
        if recovered:
            self.logger.info("Recovered %d operations interrupted by a previous run", recovered)
        if self._unsubscribe_monitor is None:
            self._unsubscribe_monitor = self.monitor.subscribe(self._on_connection_change)
        if self.monitor.is_online:
            self._trigger()
        else:
            self._set_state(Offline())

    async def close(self) -> None:
        if self._unsubscribe_monitor is not None:
            self._unsubscribe_monitor()
            self._unsubscribe_monitor = None
        for handle in (self._debounce_handle, self._retry_handle, self._clear_handle):
            if handle is not None:
                handle.cancel()
        self._debounce_handle = self._retry_handle = self._clear_handle = None
        pending = list(self._tasks)
        if self._drain_task is not None:
            pending.append(self._drain_task)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._drain_task = None

    # ------------------------------------------------------------------
    # Recording local mutations
    def enqueue(
        self,
        entity_type: str,
        entity_id: str,
        kind: str,
        data: Optional[dict] = None,
    ) -> Optional[PendingOperation]:
        operation = self.queue.enqueue(entity_type, entity_id, kind, data)
        self._schedule_debounced_sync()
        return operation

    def queue_create(self, entity_type: str, entity_id: str, data: dict) -> Optional[PendingOperation]:
        return self.enqueue(entity_type, entity_id, OperationKind.CREATE.value, data)

    def queue_update(self, entity_type: str, entity_id: str, changes: dict) -> Optional[PendingOperation]:
        return self.enqueue(entity_type, entity_id, OperationKind.UPDATE.value, changes)

    def queue_delete(self, entity_type: str, entity_id: str) -> Optional[PendingOperation]:
        return self.enqueue(entity_type, entity_id, OperationKind.DELETE.value)

    # ------------------------------------------------------------------
    # Scheduling
    def _schedule_debounced_sync(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or not self.settings.enabled:
            return
        loop.call_soon_threadsafe(self._arm_debounce)

    def _arm_debounce(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = self._loop.call_later(self.settings.debounce_sec, self._trigger)

    def _arm_retry_timer(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        if self._loop is None:
            return
        now = utc_now()
        next_at = self.queue.next_retry_at(after=now)
        if next_at is None:
            return
        delay = max(0.0, (next_at - now).total_seconds())
        self.logger.debug("Next retry in %.1fs", delay)
        self._retry_handle = self._loop.call_later(delay, self._trigger)

    def _arm_clear_timer(self) -> None:
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        if self._loop is None:
            return
        self._clear_handle = self._loop.call_later(self.settings.success_display_sec, self._clear_success)

    def _clear_success(self) -> None:
        self._clear_handle = None
        if isinstance(self._state, Success):
            self._set_state(Idle())

    def _trigger(self) -> None:
        task = asyncio.ensure_future(self.process_pending_queue())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_connection_change(self, state: ConnectionState) -> None:
        if state == ConnectionState.ONLINE:
            self.logger.info("Back online, re-evaluating queue")
            self._set_state(Idle())
            if self._loop is not None:
                self._trigger()
            return
        self._set_state(Offline())
        task = self._drain_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            self.logger.info("Connection lost, cancelling running drain")
            task.cancel()

    # ------------------------------------------------------------------
    # Public sync operations
    async def process_pending_queue(self) -> SyncState:
        """Send every eligible queued operation; the manual "sync now" path."""

        return await self._run_exclusive(full=False)

    async def perform_full_sync(self) -> SyncState:
        """Push the queue, then pull remote changes since the last pull."""

        return await self._run_exclusive(full=True)

    async def retry_failed(self) -> SyncState:
        """Give every failed operation a fresh retry budget and drain."""

        requeued = self.queue.retry_failed()
        self.logger.info("Retrying %d failed operations", requeued)
        return await self.process_pending_queue()

    def discard_failed(self) -> int:
        removed = self.queue.discard_failed()
        if removed and isinstance(self._state, Error) and not self.is_syncing:
            self._set_state(self._settled_state())
        return removed

    def discard(self, op_id: int) -> bool:
        removed = self.queue.discard(op_id)
        if removed and isinstance(self._state, Error) and not self.is_syncing:
            self._set_state(self._settled_state())
        return removed

    def clear_pending(self, *, reset_meta: bool = False) -> int:
        """Drop every queued and failed operation; in-flight work is left alone.

        With ``reset_meta`` the stored sync timestamps are forgotten too, so
        the next full sync pulls everything again.
        """

        removed = self.queue.clear()
        if reset_meta:
            self.meta.clear_all()
            self._last_successful_sync = None
        self.logger.info("Cleared %d pending operations (reset_meta=%s)", removed, reset_meta)
        if not self.is_syncing and isinstance(self._state, Error):
            self._set_state(self._settled_state())
        return removed

    async def _run_exclusive(self, *, full: bool) -> SyncState:
        if not self.settings.enabled:
            return self._state
        task = self._drain_task
        if task is not None and not task.done():
            self.logger.debug("Sync already running; joining it")
        else:
            if not self.monitor.is_online:
                self._set_state(Offline())
                return self._state
            task = asyncio.ensure_future(self._sync(full=full))
            self._drain_task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return self._state
            raise

    # ------------------------------------------------------------------
    # Drain
    def _settled_state(self) -> SyncState:
        if not self.monitor.is_online:
            return Offline()
        failed = self.queue.failed_count()
        if failed:
            return Error(f"{_plural(failed, 'operation')} failed")
        return Idle()

    async def _sync(self, *, full: bool) -> SyncState:
        if not full and not self.queue.drainable():
            settled = self._settled_state()
            # A pending success banner clears itself on its own timer.
            if not (isinstance(self._state, Success) and isinstance(settled, Idle)):
                self._set_state(settled)
            self._arm_retry_timer()
            return self._state

        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        if isinstance(self._state, Success):
            self._set_state(Idle())
        self._set_state(Syncing(0.0))
        try:
            result = await self._drain(span=FULL_SYNC_PUSH_SPAN if full else 1.0)
            if full and not result.interrupted:
                await self._pull()
        except asyncio.CancelledError:
            self._set_state(Offline() if not self.monitor.is_online else self._settled_state())
            raise
        except SyncError as exc:
            self.logger.warning("Full sync failed: %s", exc)
            if isinstance(exc, TransientSyncError) and exc.network:
                self.monitor.report_network_failure(exc)
            self._set_state(Offline() if not self.monitor.is_online else Error(str(exc)))
            self._arm_retry_timer()
            return self._state

        self._finish(result)
        self._arm_retry_timer()
        return self._state

    def _finish(self, result: DrainResult) -> None:
        self.logger.info(
            "Drain finished: synced=%d retrying=%d failed=%d interrupted=%s",
            result.synced, result.retrying, result.failed, result.interrupted,
        )
        if result.interrupted or not self.monitor.is_online:
            self._set_state(Offline())
            return

        failed_total = self.queue.failed_count()
        if failed_total:
            self._set_state(Error(f"{_plural(failed_total, 'operation')} failed"))
            return
        if result.retrying:
            self._set_state(Error(f"{_plural(result.retrying, 'operation')} will be retried"))
            return

        if self.queue.pending_count() == 0:
            self._last_successful_sync = self.meta.set_last_successful_sync()
        self._set_state(Success(result.synced))
        self._arm_clear_timer()

    async def _drain(self, *, span: float = 1.0) -> DrainResult:
        """Send eligible operations one at a time in sequence order.

        The progress denominator is every operation seen during this drain,
        so work enqueued mid-drain joins it and work that vanished before its
        turn leaves it; the reported value never moves backwards.
        """

        result = DrainResult()
        attempted: Set[int] = set()
        skipped: Set[int] = set()
        seen: Set[int] = set()
        completed = 0
        progress = 0.0

        while True:
            if not self.monitor.is_online:
                result.interrupted = True
                break
            candidates = self.queue.drainable(exclude=attempted | skipped)
            if not candidates:
                break
            # Operations that left the queue before their turn drop out of the total.
            seen = attempted | {op.id for op in candidates}
            head = candidates[0]
            attempted.add(head.id)
            operation = self.queue.mark_in_flight(head.id)
            if operation is None:
                # Collapsed away or discarded between listing and claiming.
                attempted.discard(head.id)
                skipped.add(head.id)
                continue

            await self._send_one(operation, result)

            completed += 1
            progress = max(progress, completed / max(len(seen), completed))
            self._set_state(Syncing(round(progress * span, 4)))

        if completed and not result.interrupted:
            self._set_state(Syncing(round(span, 4)))
        return result

    async def _send_one(self, operation: PendingOperation, result: DrainResult) -> None:
        try:
            await self.remote.send(operation)
        except asyncio.CancelledError:
            self.queue.release(operation.id)
            raise
        except PermanentSyncError as exc:
            self.queue.mark_failed(operation.id, str(exc), permanent=True)
            result.failed += 1
        except TransientSyncError as exc:
            if exc.network:
                self.queue.release(operation.id, str(exc))
                self.monitor.report_network_failure(exc)
                return
            self._record_transient(operation, str(exc), result)
        except Exception as exc:
            self.logger.exception("Sending %s %s:%s crashed", operation.kind, operation.entity_type, operation.entity_id)
            self._record_transient(operation, f"{type(exc).__name__}: {exc}", result)
        else:
            self.queue.mark_succeeded(operation.id)
            result.synced += 1

    def _record_transient(self, operation: PendingOperation, reason: str, result: DrainResult) -> None:
        updated = self.queue.mark_failed(operation.id, reason)
        if updated is not None and updated.status == OperationStatus.FAILED.value:
            result.failed += 1
        else:
            result.retrying += 1

    async def _pull(self) -> None:
        since = self.meta.get_last_pull()
        started = utc_now()
        changes = await self.remote.fetch_changes(since)
        total = sum(len(rows) for rows in changes.values())
        self.logger.info("Pulled %d remote changes since %s", total, since)
        self._set_state(Syncing(0.9))
        if self.on_remote_changes is not None and changes:
            outcome = self.on_remote_changes(changes)
            if inspect.isawaitable(outcome):
                await outcome
        self.meta.set_last_pull(started)
        self._set_state(Syncing(1.0))


__all__ = ["DrainResult", "SyncEngine", "SyncListener", "FULL_SYNC_PUSH_SPAN"]
