"""SQLite persistence for the sync queue, entity map and schedule."""

from storage.db import connect, init_db, transaction
from storage.entity_map import EntityMapRepository
from storage.queue_repository import QueueRepository
from storage.schedule import ScheduleRepository

__all__ = [
    "connect",
    "init_db",
    "transaction",
    "EntityMapRepository",
    "QueueRepository",
    "ScheduleRepository",
]
