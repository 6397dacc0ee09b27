"""Periodic queue-draining workflow.

Runs the sync activity, sleeps for the run interval and repeats; after a
fixed number of iterations it continues-as-new to keep history bounded.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from activities.sync import DEFAULT_SCHEDULE, RunSyncInput


TASK_QUEUE_SYNC = "erp-sync"


@dataclass
class SyncLoopInput:
    """Input for SyncQueueWorkflow.

    Attributes:
        interval_seconds: Pause between runs
        activity_timeout_seconds: Upper bound for one run (the engine's
            own time budget should be well below this)
        iterations_per_run: Iterations before continue-as-new
        schedule_name: Run slot shared by all triggers
        module: Optional module restriction
    """
    interval_seconds: int = 60
    activity_timeout_seconds: int = 120
    iterations_per_run: int = 100
    schedule_name: str = DEFAULT_SCHEDULE
    module: Optional[str] = None


@workflow.defn
class SyncQueueWorkflow:
    """Long-running trigger for ``process_queue()``."""

    @workflow.run
    async def run(self, input: SyncLoopInput) -> None:
        for _ in range(input.iterations_per_run):
            try:
                result = await workflow.execute_activity(
                    "run_scheduled_sync",
                    RunSyncInput(
                        schedule_name=input.schedule_name,
                        owner=workflow.info().workflow_id,
                        module=input.module,
                    ),
                    start_to_close_timeout=timedelta(seconds=input.activity_timeout_seconds),
                    # The next iteration is the retry.
                    retry_policy=RetryPolicy(maximum_attempts=1),
                    result_type=dict,
                )
            except ActivityError as e:
                workflow.logger.warning(f"Sync run failed: {e.cause or e}")
            else:
                if result.get("ran"):
                    workflow.logger.info(f"Sync run finished: {result.get('summary')}")

            await asyncio.sleep(input.interval_seconds)

        workflow.continue_as_new(input)
