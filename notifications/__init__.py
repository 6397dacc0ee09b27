"""Failure notifications for the sync core."""

from notifications.channels import (
    CompositeChannel,
    FailureEvent,
    LogChannel,
    NotificationChannel,
    WebhookChannel,
)
from notifications.notifier import FailureNotifier

__all__ = [
    "CompositeChannel",
    "FailureEvent",
    "FailureNotifier",
    "LogChannel",
    "NotificationChannel",
    "WebhookChannel",
]
