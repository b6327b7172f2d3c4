"""Read-only status snapshot for presentation code.

Nothing here mutates the queue or the engine; the projection only listens
and recomputes, so consumers can poll or subscribe freely.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from models.sync_state import ConnectionState, SyncState, display_text
from services.connectivity import ConnectivityMonitor
from services.pending_ops_queue import PendingOpsQueue
from services.sync_engine import SyncEngine


logger = logging.getLogger("veloce.sync.status")

StatusListener = Callable[["SyncStatus"], None]


@dataclass(frozen=True)
class SyncStatus:
    connection_state: ConnectionState
    offline_duration_text: str
    sync_state: SyncState
    pending_count: int
    failed_operations_count: int
    last_successful_sync: Optional[datetime]

    @property
    def is_online(self) -> bool:
        return self.connection_state == ConnectionState.ONLINE

    @property
    def status_text(self) -> str:
        return display_text(self.sync_state)

    @property
    def needs_sync(self) -> bool:
        return self.pending_count > 0 or self.last_successful_sync is None

    def as_dict(self) -> dict:
        return {
            "connectionState": self.connection_state.value,
            "isOnline": self.is_online,
            "offlineDurationText": self.offline_duration_text,
            "syncState": type(self.sync_state).__name__.lower(),
            "statusText": self.status_text,
            "pendingCount": self.pending_count,
            "failedOperationsCount": self.failed_operations_count,
            "lastSuccessfulSync": self.last_successful_sync.isoformat() if self.last_successful_sync else None,
            "needsSync": self.needs_sync,
        }


def project_status(queue: PendingOpsQueue, engine: SyncEngine, monitor: ConnectivityMonitor) -> SyncStatus:
    return SyncStatus(
        connection_state=monitor.state,
        offline_duration_text=monitor.offline_duration_text,
        sync_state=engine.sync_state,
        pending_count=queue.pending_count(),
        failed_operations_count=queue.failed_count(),
        last_successful_sync=engine.last_successful_sync,
    )


class StatusProjection:
    """Keeps the latest :class:`SyncStatus` and republishes it on every change."""

    def __init__(self, engine: SyncEngine) -> None:
        self.engine = engine
        self.queue = engine.queue
        self.monitor = engine.monitor
        self._listeners: List[StatusListener] = []
        self._current = project_status(self.queue, engine, self.monitor)
        self._unsubscribers = [
            self.queue.add_listener(self.refresh),
            engine.subscribe(lambda _state: self.refresh()),
            self.monitor.subscribe(lambda _state: self.refresh()),
        ]

    @property
    def current(self) -> SyncStatus:
        return self._current

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def refresh(self) -> SyncStatus:
        snapshot = project_status(self.queue, self.engine, self.monitor)
        if snapshot != self._current:
            self._current = snapshot
            for listener in list(self._listeners):
                try:
                    listener(snapshot)
                except Exception:
                    logger.exception("Status listener %r failed", listener)
        return snapshot

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._listeners.clear()


__all__ = ["StatusProjection", "SyncStatus", "project_status"]
