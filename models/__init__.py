"""ORM models and state types exposed by the sync engine."""
from .pending_op import EntityType, OperationKind, OperationStatus, PendingOp
from .sync_state import (
    ConnectionState,
    Error,
    Idle,
    Offline,
    Success,
    SyncState,
    Syncing,
)

__all__ = [
    "ConnectionState",
    "EntityType",
    "Error",
    "Idle",
    "Offline",
    "OperationKind",
    "OperationStatus",
    "PendingOp",
    "Success",
    "SyncState",
    "Syncing",
]
