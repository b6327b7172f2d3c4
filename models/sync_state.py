"""Connection and synchronization states published to listeners.

``SyncState`` is a tagged union of small frozen dataclasses so consumers can
branch on it with ``match`` and get every variant spelled out::

    match state:
        case Syncing(progress=p): ...
        case Success(synced_count=n): ...
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class ConnectionState(str, Enum):
    OFFLINE = "offline"
    CONNECTING = "connecting"
    ONLINE = "online"


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Syncing:
    progress: float = 0.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.progress <= 1.0:
            raise ValueError(f"progress out of range: {self.progress}")


@dataclass(frozen=True)
class Success:
    synced_count: int = 0


@dataclass(frozen=True)
class Error:
    message: str


@dataclass(frozen=True)
class Offline:
    pass


SyncState = Union[Idle, Syncing, Success, Error, Offline]


def display_text(state: SyncState) -> str:
    if isinstance(state, Idle):
        return "Ready to sync"
    if isinstance(state, Syncing):
        return f"Syncing... {int(state.progress * 100)}%"
    if isinstance(state, Success):
        return f"Synced {state.synced_count} items" if state.synced_count > 0 else "All synced"
    if isinstance(state, Error):
        return state.message
    if isinstance(state, Offline):
        return "Offline mode"
    raise TypeError(f"Unknown sync state: {state!r}")


__all__ = [
    "ConnectionState",
    "Error",
    "Idle",
    "Offline",
    "Success",
    "SyncState",
    "Syncing",
    "display_text",
]
