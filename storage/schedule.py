"""Persisted "next run due" state for the periodic trigger.

Overlapping triggers (several workers, several hosts) race on a single row;
the conditional UPDATE lets exactly one of them win each interval.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Union

from core.clock import Clock, from_db, to_db, utcnow
from core.observability.logging import get_logger
from storage.db import connect, transaction


logger = get_logger(__name__)


class ScheduleRepository:
    """Repository for the sync_schedule table."""

    def __init__(self, db_path: Union[str, Path], clock: Clock = utcnow):
        self.db_path = Path(db_path)
        self.clock = clock

    def try_claim_run(self, name: str, interval_seconds: float, owner: str) -> bool:
        """Claim the run slot ``name`` if it is due.

        On success ``next_run_at`` moves to ``now + interval_seconds`` and
        True is returned. Returns False when another caller already claimed
        the current interval.
        """
        now = self.clock()
        next_run = to_db(now + timedelta(seconds=interval_seconds))

        conn = connect(self.db_path)
        try:
            with transaction(conn) as cursor:
                cursor.execute("""
                    INSERT OR IGNORE INTO sync_schedule (name, next_run_at)
                    VALUES (?, ?)
                """, (name, to_db(now)))
                cursor.execute("""
                    UPDATE sync_schedule
                    SET next_run_at = ?, last_owner = ?, last_claimed_at = ?
                    WHERE name = ? AND next_run_at <= ?
                """, (next_run, owner, to_db(now), name, to_db(now)))
                claimed = cursor.rowcount == 1
        finally:
            conn.close()

        if claimed:
            logger.debug("Claimed scheduled run", extra_fields={"schedule": name, "owner": owner})
        return claimed

    def get_next_run(self, name: str) -> Optional[datetime]:
        conn = connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT next_run_at FROM sync_schedule WHERE name = ?", (name,)
            ).fetchone()
            return from_db(row["next_run_at"]) if row else None
        finally:
            conn.close()

    def reset(self, name: str) -> None:
        """Make ``name`` due immediately."""
        conn = connect(self.db_path)
        try:
            conn.execute(
                "UPDATE sync_schedule SET next_run_at = ? WHERE name = ?",
                (to_db(self.clock()), name),
            )
        finally:
            conn.close()
