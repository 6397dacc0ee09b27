"""Worker for the ERP sync core.

Hosts SyncQueueWorkflow and the queue-draining activity on the
``erp-sync`` task queue. The sync context is built once at start-up and
shared by every activity invocation.

Module handlers come from a factory given as ``package.module:callable``;
the callable takes no arguments and returns an iterable of ModuleHandler.

Run with --start to also launch the periodic workflow (idempotent: an
already running workflow with the same id is left alone).
"""

import argparse
import asyncio
import importlib
import sys
from pathlib import Path
from typing import Iterable, Optional

from temporalio.client import WorkflowHandle
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporal_client import get_temporal_client
from activities.sync import SyncActivities
from core.config import load_settings
from core.observability.logging import configure_logging, get_logger
from sync_engine.context import build_context
from sync_engine.handlers import ModuleHandler
from workflows.sync_workflow import TASK_QUEUE_SYNC, SyncLoopInput, SyncQueueWorkflow


logger = get_logger(__name__)

WORKFLOW_ID = "erp-sync-queue"


def load_handlers(factory_path: Optional[str]) -> Iterable[ModuleHandler]:
    """Resolve a ``package.module:callable`` handler factory."""
    if not factory_path:
        return ()
    module_name, _, attr = factory_path.partition(":")
    if not attr:
        raise ValueError(f"Handler factory must look like 'package.module:callable', got {factory_path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return list(factory())


async def start_sync_workflow(client, input: SyncLoopInput) -> Optional[WorkflowHandle]:
    try:
        handle = await client.start_workflow(
            SyncQueueWorkflow.run,
            input,
            id=WORKFLOW_ID,
            task_queue=TASK_QUEUE_SYNC,
        )
    except WorkflowAlreadyStartedError:
        logger.info(f"Workflow {WORKFLOW_ID} already running")
        return None
    logger.info(f"Started workflow {WORKFLOW_ID}")
    return handle


async def run_worker(handlers: Optional[str] = None, start: bool = False):
    """Start the worker and block until interrupted.

    Args:
        handlers: Handler factory path (``package.module:callable``)
        start: Also start the periodic workflow
    """
    settings = load_settings(Path(__file__).resolve().parents[1] / ".env")
    context = build_context(settings, handlers=load_handlers(handlers))

    try:
        client = await get_temporal_client()
        logger.info(f"Connected to Temporal: {client.namespace}")

        activities = SyncActivities(context)
        worker = Worker(
            client,
            task_queue=TASK_QUEUE_SYNC,
            workflows=[SyncQueueWorkflow],
            activities=[activities.run_scheduled_sync],
        )

        if start:
            await start_sync_workflow(
                client,
                SyncLoopInput(
                    interval_seconds=settings.sync.run_interval_seconds,
                    activity_timeout_seconds=int(settings.sync.time_limit_seconds) + 60,
                ),
            )

        logger.info(f"Worker running on queue '{TASK_QUEUE_SYNC}' (Ctrl+C to stop)")
        await worker.run()

    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise
    finally:
        await context.close()
        logger.info("Sync context closed")


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="ERP Sync Temporal Worker")
    parser.add_argument(
        "--handlers",
        default=None,
        help="Handler factory as 'package.module:callable'",
    )
    parser.add_argument(
        "--start", "-s",
        action="store_true",
        help="Start the periodic sync workflow if it is not running",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "human"],
        default="human",
        help="Log output format (default: human)",
    )

    args = parser.parse_args()
    configure_logging(json_format=args.log_format == "json", force=True)
    asyncio.run(run_worker(handlers=args.handlers, start=args.start))


if __name__ == "__main__":
    main()
