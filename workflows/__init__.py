"""Workflow definitions module."""

from workflows.sync_workflow import TASK_QUEUE_SYNC, SyncLoopInput, SyncQueueWorkflow

__all__ = [
    "TASK_QUEUE_SYNC",
    "SyncLoopInput",
    "SyncQueueWorkflow",
]
