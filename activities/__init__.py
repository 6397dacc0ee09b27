"""Activity definitions module."""

from activities.sync import DEFAULT_SCHEDULE, RunSyncInput, SyncActivities

__all__ = [
    "DEFAULT_SCHEDULE",
    "RunSyncInput",
    "SyncActivities",
]
