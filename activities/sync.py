"""Queue processing activity.

The periodic trigger: each invocation claims the persisted run slot and,
if it won, drains the queue once. Overlapping workers or schedules are
harmless because only one caller per interval wins the slot.
"""

import os
import socket
import sqlite3
from dataclasses import dataclass
from typing import Optional

from temporalio import activity

from core.observability.logging import (
    log_activity_complete,
    log_activity_error,
    log_activity_start,
)
from sync_engine.context import SyncContext


DEFAULT_SCHEDULE = "process_queue"


@dataclass
class RunSyncInput:
    """Input for run_scheduled_sync.

    Attributes:
        schedule_name: Run slot to claim
        owner: Identifies the claimer in sync_schedule (defaults to host:pid)
        module: Restrict the run to one module
        force: Skip the run-slot claim (manual "sync now")
    """
    schedule_name: str = DEFAULT_SCHEDULE
    owner: Optional[str] = None
    module: Optional[str] = None
    force: bool = False


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SyncActivities:
    """Activities bound to a SyncContext built once per worker process."""

    def __init__(self, context: SyncContext):
        self.context = context

    @activity.defn(name="run_scheduled_sync")
    async def run_scheduled_sync(self, input: RunSyncInput) -> dict:
        """Drain the queue if this caller owns the current interval.

        Returns:
            {"ran": bool, "summary": RunSummary as dict or None}
        """
        owner = input.owner or _default_owner()
        log_activity_start("run_scheduled_sync", schedule=input.schedule_name, owner=owner)

        if not input.force:
            try:
                claimed = self.context.schedule.try_claim_run(
                    input.schedule_name,
                    self.context.settings.sync.run_interval_seconds,
                    owner,
                )
            except sqlite3.Error as e:
                log_activity_error("run_scheduled_sync", str(e), schedule=input.schedule_name)
                raise
            if not claimed:
                log_activity_complete("run_scheduled_sync", ran=False)
                return {"ran": False, "summary": None}

        summary = await self.context.process_queue(module=input.module)
        log_activity_complete(
            "run_scheduled_sync",
            duration_ms=summary.elapsed_seconds * 1000,
            ran=True,
            stopped_reason=summary.stopped_reason,
        )
        return {"ran": True, "summary": summary.to_dict()}
