"""SQLModel table for pending synchronization operations."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class EntityType(str, Enum):
    TASK = "task"
    GOAL = "goal"
    ACHIEVEMENT = "achievement"
    USER = "user"
    STREAK = "streak"
    FRIENDSHIP = "friendship"
    CIRCLE = "circle"
    CHALLENGE = "challenge"
    PACT = "pact"


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


class PendingOp(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    uid: str = Field(index=True, unique=True)
    seq: int = Field(index=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    kind: str
    payload: str = "{}"
    status: str = Field(default=OperationStatus.QUEUED.value, index=True)
    attempts: int = Field(default=0)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    next_try_at: datetime = Field(default_factory=utc_now, index=True)


__all__ = ["EntityType", "OperationKind", "OperationStatus", "PendingOp"]
