"""Process-wide wiring of the sync core.

``build_context()`` is called once at process start (worker, CLI, test)
and the resulting ``SyncContext`` is passed explicitly to whatever needs
it. Nothing in the core looks components up globally.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from connectors.erp_base import Credentials, Transport, create_transport
from connectors.odoo.client import RemoteClient
from connectors.retry import RetryingTransport
from core.clock import Clock, utcnow
from core.config import AppSettings, load_settings
from core.errors import DuplicateKeyError, ValidationError
from core.models.queue import EnqueueRequest
from core.observability.logging import get_logger
from core.observability.metrics import SyncMetrics
from notifications.channels import CompositeChannel, LogChannel, NotificationChannel, WebhookChannel
from notifications.notifier import FailureNotifier
from storage.db import init_db
from storage.entity_map import EntityMapRepository
from storage.queue_repository import QueueRepository
from storage.schedule import ScheduleRepository
from sync_engine.circuit_breaker import CircuitBreaker, ModuleCircuitBreaker, build_breakers
from sync_engine.engine import SyncEngine
from sync_engine.handlers import HandlerRegistry, ModuleHandler


logger = get_logger(__name__)

ENQUEUE_ATTEMPTS = 3


@dataclass
class SyncContext:
    """Every long-lived component of the sync core."""
    settings: AppSettings
    queue: QueueRepository
    mappings: EntityMapRepository
    schedule: ScheduleRepository
    registry: HandlerRegistry
    transport: Transport
    client: RemoteClient
    notifier: FailureNotifier
    metrics: SyncMetrics
    engine: SyncEngine
    breaker: Optional[CircuitBreaker] = None
    module_breaker: Optional[ModuleCircuitBreaker] = None

    def enqueue(self, request: Optional[EnqueueRequest] = None, **fields) -> int:
        """Producer entry point.

        Accepts an ``EnqueueRequest`` or its fields as keyword arguments.
        The context's tenant is applied when none is given. A lost insert
        race (DuplicateKeyError) is retried; the second attempt coalesces
        into the row that won.
        """
        if request is None:
            fields.setdefault("tenant_id", self.settings.sync.tenant_id)
            fields.setdefault("max_attempts", self.settings.sync.max_attempts)
            try:
                request = EnqueueRequest(**fields)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid enqueue request: {e}") from e

        attempt = 1
        while True:
            try:
                return self.queue.enqueue(request)
            except DuplicateKeyError:
                if attempt >= ENQUEUE_ATTEMPTS:
                    raise
                logger.debug("Enqueue lost a race, retrying", extra_fields={"attempt": attempt})
                attempt += 1

    async def process_queue(self, module: Optional[str] = None):
        return await self.engine.process_queue(module=module)

    async def close(self) -> None:
        await self.client.close()
        await self.notifier.close()


def _default_channel(settings: AppSettings) -> NotificationChannel:
    if settings.notifier.webhook_url:
        return CompositeChannel([
            LogChannel(),
            WebhookChannel(
                settings.notifier.webhook_url,
                timeout_seconds=settings.notifier.delivery_timeout_seconds,
            ),
        ])
    return LogChannel()


def build_context(
    settings: Optional[AppSettings] = None,
    handlers: Iterable[ModuleHandler] = (),
    transport: Optional[Transport] = None,
    channel: Optional[NotificationChannel] = None,
    clock: Clock = utcnow,
) -> SyncContext:
    """Construct the sync core.

    Args:
        settings: Defaults to ``load_settings()``
        handlers: Module handlers to register
        transport: Protocol transport; defaults to the configured protocol.
            It is always wrapped in ``RetryingTransport``.
        channel: Notification channel; defaults to log (+ webhook if set)
        clock: Time source for the repositories and notifier
    """
    settings = settings or load_settings()
    init_db(settings.sync.db_path)

    metrics = SyncMetrics()
    queue = QueueRepository(settings.sync.db_path, backoff=settings.backoff, clock=clock)
    mappings = EntityMapRepository(settings.sync.db_path, tenant_id=settings.sync.tenant_id, clock=clock)
    schedule = ScheduleRepository(settings.sync.db_path, clock=clock)
    registry = HandlerRegistry(handlers)

    credentials = Credentials.from_settings(settings.connection)
    resilient = RetryingTransport(
        transport or create_transport(settings.connection),
        credentials=credentials,
        retry=settings.retry,
        timeout_seconds=settings.connection.timeout_seconds,
        metrics=metrics,
    )
    client = RemoteClient(resilient, credentials)
    notifier = FailureNotifier(settings.notifier, channel or _default_channel(settings), clock=clock)
    breaker, module_breaker = build_breakers(settings.breaker, clock=clock)

    engine = SyncEngine(
        queue=queue,
        mappings=mappings,
        registry=registry,
        client=client,
        settings=settings.sync,
        notifier=notifier,
        metrics=metrics,
        breaker=breaker,
        module_breaker=module_breaker,
    )

    logger.info(
        "Sync context ready",
        extra_fields={
            "tenant_id": settings.sync.tenant_id,
            "db_path": str(settings.sync.db_path),
            "protocol": settings.connection.protocol,
            "modules": registry.modules(),
        },
    )
    return SyncContext(
        settings=settings,
        queue=queue,
        mappings=mappings,
        schedule=schedule,
        registry=registry,
        transport=resilient,
        client=client,
        notifier=notifier,
        metrics=metrics,
        engine=engine,
        breaker=breaker,
        module_breaker=module_breaker,
    )
