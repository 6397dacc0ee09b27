"""Delivery channels for failure notifications.

A channel only knows how to deliver a ``FailureEvent``. Errors raised by
``send()`` are handled by the notifier, never by the sync engine.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

import aiohttp
from pydantic import BaseModel, Field

from core.observability.logging import get_logger


logger = get_logger(__name__)


class FailureEvent(BaseModel):
    """Something an operator should look at.

    Attributes:
        kind: "job_failed" (one job exhausted its attempts),
            "failure_rate" (a module's failure ratio crossed the threshold) or
            "circuit_open" (processing paused for a module, or for every
            module when ``module`` is None)
        failure_rate: Failed / total over the window (failure_rate only)
        sample_size: Outcomes in the window (failure_rate only)
    """
    kind: str
    tenant_id: str = Field(default="default")
    module: Optional[str] = None
    job_id: Optional[int] = None
    entity_type: Optional[str] = None
    correlation_id: Optional[str] = None
    message: str
    failure_rate: Optional[float] = None
    sample_size: Optional[int] = None
    occurred_at: datetime


class NotificationChannel(ABC):
    """Where failure events go."""

    @abstractmethod
    async def send(self, event: FailureEvent) -> None:
        pass

    async def close(self) -> None:
        pass


class LogChannel(NotificationChannel):
    """Writes events to the log at WARNING level."""

    async def send(self, event: FailureEvent) -> None:
        logger.warning(
            f"Sync failure notification: {event.message}",
            extra_fields=event.model_dump(mode="json"),
        )


class WebhookChannel(NotificationChannel):
    """POSTs events as JSON to a webhook URL."""

    def __init__(self, url: str, timeout_seconds: float = 10.0, http: Optional[aiohttp.ClientSession] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._http = http
        self._owns_http = http is None

    async def send(self, event: FailureEvent) -> None:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with self._http.post(self.url, json=event.model_dump(mode="json"), timeout=timeout) as response:
            response.raise_for_status()

    async def close(self) -> None:
        if self._http is not None and self._owns_http and not self._http.closed:
            await self._http.close()
        self._http = None


class CompositeChannel(NotificationChannel):
    """Fans an event out to several channels.

    One channel failing does not stop delivery to the others; the first
    error is re-raised after all channels were tried.
    """

    def __init__(self, channels: Iterable[NotificationChannel]):
        self.channels: List[NotificationChannel] = list(channels)

    async def send(self, event: FailureEvent) -> None:
        first_error: Optional[Exception] = None
        for channel in self.channels:
            try:
                await channel.send(event)
            except Exception as e:
                logger.warning(
                    "Notification channel failed",
                    extra_fields={"channel": type(channel).__name__, "error": str(e)},
                )
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    async def close(self) -> None:
        for channel in self.channels:
            await channel.close()
