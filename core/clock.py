"""UTC clock helpers shared by the repositories.

All persisted timestamps are naive UTC datetimes serialized with
microsecond precision so that lexical order in SQLite equals time order.
"""

from datetime import datetime, timezone
from typing import Callable, Optional


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def from_db(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp."""
    if not value:
        return None
    return datetime.fromisoformat(value)
