"""Conflict detection and resolution.

A conflict exists when both sides changed an entity after its last
successful sync. Timestamps from the two systems are compared as-is in
UTC; clocks are expected to be NTP-synchronized.
"""

from datetime import datetime, timezone
from typing import Optional

from core.config import CONFLICT_POLICIES
from core.models.queue import Direction


REMOTE_WINS = "remote_wins"
LOCAL_WINS = "local_wins"
NEWEST_WINS = "newest_wins"


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def has_unsynced_change(modified_at: Optional[datetime], last_synced_at: Optional[datetime]) -> bool:
    """True when a side was modified after the last sync."""
    modified_at, last_synced_at = _utc(modified_at), _utc(last_synced_at)
    if modified_at is None or last_synced_at is None:
        return False
    return modified_at > last_synced_at


def detect_conflict(
    last_synced_at: Optional[datetime],
    local_modified_at: Optional[datetime],
    remote_modified_at: Optional[datetime],
) -> bool:
    """Both sides have changes the other has not seen."""
    return (
        has_unsynced_change(local_modified_at, last_synced_at)
        and has_unsynced_change(remote_modified_at, last_synced_at)
    )


def resolve_conflict(
    policy: str,
    direction: Direction,
    local_modified_at: Optional[datetime],
    remote_modified_at: Optional[datetime],
) -> Direction:
    """Direction in which the winning side overwrites the other.

    Args:
        policy: remote_wins, local_wins or newest_wins
        direction: The job's declared direction (breaks ties)
        local_modified_at: Local last-modified time
        remote_modified_at: Remote last-modified time

    Raises:
        ValueError: Unknown policy
    """
    if policy not in CONFLICT_POLICIES:
        raise ValueError(f"Unknown conflict policy: {policy}")

    if policy == REMOTE_WINS:
        return Direction.REMOTE_TO_LOCAL
    if policy == LOCAL_WINS:
        return Direction.LOCAL_TO_REMOTE

    local_ts, remote_ts = _utc(local_modified_at), _utc(remote_modified_at)
    if local_ts is None or remote_ts is None or local_ts == remote_ts:
        return direction
    return Direction.LOCAL_TO_REMOTE if local_ts > remote_ts else Direction.REMOTE_TO_LOCAL
