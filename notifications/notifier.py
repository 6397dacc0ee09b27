"""Failure Notifier.

Emits a ``FailureEvent`` when:
- a single job reaches the terminal 'failed' state
- a module's failure ratio over a sliding window reaches the threshold
  (once enough samples exist, at most once per cooldown per module)
- a circuit breaker pauses processing

Delivery is bounded by a timeout and its errors are logged, never raised:
a broken mail server or webhook must not stall queue processing.
"""

import asyncio
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional, Tuple

from core.clock import Clock, utcnow
from core.config import NotifierSettings
from core.models.queue import QueueItem
from core.observability.logging import get_logger
from notifications.channels import FailureEvent, LogChannel, NotificationChannel


logger = get_logger(__name__)


class FailureNotifier:
    """Observes job outcomes and notifies a channel.

    Usage:
        notifier = FailureNotifier(NotifierSettings(), WebhookChannel(url))
        await notifier.job_failed(item)
        await notifier.record_outcome("crm", success=False)
    """

    def __init__(
        self,
        settings: Optional[NotifierSettings] = None,
        channel: Optional[NotificationChannel] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or NotifierSettings()
        self.channel = channel or LogChannel()
        self.clock = clock
        self._outcomes: Dict[str, Deque[Tuple[datetime, bool]]] = defaultdict(deque)
        self._last_alert: Dict[str, datetime] = {}

    async def job_failed(self, item: QueueItem) -> bool:
        """Notify about one permanently failed job.

        Returns:
            True if the channel accepted the event
        """
        event = FailureEvent(
            kind="job_failed",
            tenant_id=item.tenant_id,
            module=item.module,
            job_id=item.id,
            entity_type=item.entity_type,
            correlation_id=item.correlation_id,
            message=(
                f"Job {item.id} ({item.module}/{item.entity_type}, {item.action.value}) "
                f"failed after {item.attempts} attempt(s): {item.error_message}"
            ),
            occurred_at=self.clock(),
        )
        return await self._deliver(event)

    async def record_outcome(
        self,
        module: str,
        success: bool,
        tenant_id: str = "default",
    ) -> Optional[FailureEvent]:
        """Add one outcome to the module's window; alert if the rate is too high.

        Returns:
            The emitted event, or None
        """
        now = self.clock()
        window = self._outcomes[module]
        window.append((now, success))
        self._prune(window, now)

        total = len(window)
        if total < self.settings.min_samples:
            return None

        failures = sum(1 for _, ok in window if not ok)
        rate = failures / total
        if rate < self.settings.rate_threshold:
            return None

        last = self._last_alert.get(module)
        if last is not None and now - last < timedelta(seconds=self.settings.cooldown_seconds):
            return None
        self._last_alert[module] = now

        event = FailureEvent(
            kind="failure_rate",
            tenant_id=tenant_id,
            module=module,
            message=(
                f"{failures} of the last {total} jobs for module {module!r} failed "
                f"({rate:.0%})"
            ),
            failure_rate=rate,
            sample_size=total,
            occurred_at=now,
        )
        await self._deliver(event)
        return event

    async def circuit_opened(
        self,
        module: Optional[str],
        consecutive_failures: int,
        tenant_id: str = "default",
    ) -> bool:
        """Notify that processing was paused (``module`` None: all modules)."""
        scope = f"module {module!r}" if module else "the remote"
        event = FailureEvent(
            kind="circuit_open",
            tenant_id=tenant_id,
            module=module,
            message=(
                f"Sync paused for {scope} after {consecutive_failures} "
                f"consecutive failing batch(es)"
            ),
            occurred_at=self.clock(),
        )
        return await self._deliver(event)

    def failure_rate(self, module: str) -> Optional[float]:
        """Current failure ratio for ``module``, None without samples."""
        window = self._outcomes.get(module)
        if not window:
            return None
        self._prune(window, self.clock())
        if not window:
            return None
        return sum(1 for _, ok in window if not ok) / len(window)

    def _prune(self, window: Deque[Tuple[datetime, bool]], now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.settings.window_seconds)
        while window and window[0][0] < cutoff:
            window.popleft()

    async def _deliver(self, event: FailureEvent) -> bool:
        try:
            await asyncio.wait_for(
                self.channel.send(event),
                timeout=self.settings.delivery_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Failure notification timed out",
                extra_fields={"kind": event.kind, "module": event.module},
            )
            return False
        except Exception as e:
            logger.warning(
                "Failure notification could not be delivered",
                extra_fields={"kind": event.kind, "module": event.module, "error": str(e)},
            )
            return False
        return True

    async def close(self) -> None:
        await self.channel.close()
