"""Core data models shared by the repositories and the sync engine."""

from core.models.queue import (
    ACTIVE_STATUSES,
    Action,
    Direction,
    EnqueueRequest,
    QueueItem,
    QueueStatus,
    entity_key,
)
from core.models.mapping import EntityMapping, compute_sync_hash

__all__ = [
    "ACTIVE_STATUSES",
    "Action",
    "Direction",
    "EnqueueRequest",
    "QueueItem",
    "QueueStatus",
    "entity_key",
    "EntityMapping",
    "compute_sync_hash",
]
