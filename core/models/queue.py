"""Queue item models."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class Direction(str, Enum):
    """Which side is the source of the change."""
    LOCAL_TO_REMOTE = "local_to_remote"
    REMOTE_TO_LOCAL = "remote_to_local"

    @property
    def opposite(self) -> "Direction":
        if self is Direction.LOCAL_TO_REMOTE:
            return Direction.REMOTE_TO_LOCAL
        return Direction.LOCAL_TO_REMOTE


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)


def _coerce_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class EnqueueRequest(BaseModel):
    """A job descriptor submitted by a producer.

    ``local_id`` / ``remote_id`` accept ints or strings; both are stored as
    strings because the two systems use different key types.
    """
    tenant_id: str = Field(default="default")
    module: str = Field(..., min_length=1)
    entity_type: str = Field(..., min_length=1)
    direction: Direction = Field(default=Direction.LOCAL_TO_REMOTE)
    action: Action = Field(default=Action.UPDATE)
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    payload: Optional[dict[str, Any]] = None
    priority: int = Field(default=5, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    delay_seconds: float = Field(default=0, ge=0, description="Debounce before the job becomes eligible")

    @field_validator("local_id", "remote_id", mode="before")
    @classmethod
    def _ids_to_str(cls, value: Any) -> Optional[str]:
        return _coerce_id(value)

    @property
    def entity_key(self) -> Optional[str]:
        """Identity used for deduplication."""
        return entity_key(self.local_id, self.remote_id)


def entity_key(local_id: Optional[str], remote_id: Optional[str]) -> Optional[str]:
    if local_id:
        return f"local:{local_id}"
    if remote_id:
        return f"remote:{remote_id}"
    return None


class QueueItem(BaseModel):
    """A persisted unit of pending synchronization work."""
    id: int
    tenant_id: str
    correlation_id: Optional[str] = None
    module: str
    direction: Direction
    entity_type: str
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    action: Action
    payload: Optional[dict[str, Any]] = None
    priority: int = 5
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    error_message: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    resync: bool = False
    claim_token: Optional[str] = None

    @field_validator("local_id", "remote_id", mode="before")
    @classmethod
    def _ids_to_str(cls, value: Any) -> Optional[str]:
        return _coerce_id(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in (QueueStatus.COMPLETED, QueueStatus.FAILED)
