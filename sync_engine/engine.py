"""Sync Engine.

Drains the sync queue in bounded batches. For each claimed job:

1. Resolve the module handler (missing handler -> permanent failure)
2. Resolve the existing entity mapping
3. Skip if the payload hash equals the last synced hash
4. Detect conflicting changes on both sides and apply the conflict policy
5. Push (translate + remote write) or pull (remote read + local apply)
6. Upsert the mapping with the fresh hash and mark the job completed

Failures are classified through ``core.errors.is_retryable`` and turned
into queue state transitions; ``process_queue()`` never raises.
No repository transaction is held while a remote call is in flight.

Batch outcomes feed two circuit breakers: the remote breaker counts jobs
that could not reach the remote and pauses the whole run, the module
breakers count permanent failures and keep a broken module's jobs pending.
"""

import sqlite3
import time
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from connectors.odoo.client import RemoteClient
from core.config import SyncSettings
from core.errors import MappingWriteError, UnknownModuleError, ValidationError, is_retryable
from core.models.mapping import EntityMapping, compute_sync_hash
from core.models.queue import Action, Direction, QueueItem, QueueStatus
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import SyncMetrics
from notifications.notifier import FailureNotifier
from storage.entity_map import EntityMapRepository
from storage.queue_repository import QueueRepository
from sync_engine.circuit_breaker import CircuitBreaker, ModuleCircuitBreaker
from sync_engine.conflict import (
    LOCAL_WINS,
    REMOTE_WINS,
    detect_conflict,
    has_unsynced_change,
    resolve_conflict,
)
from sync_engine.handlers import HandlerRegistry, ModuleHandler, RemoteCall


logger = get_logger(__name__)

# Per-job result as seen by the circuit breakers
SUCCEEDED = "succeeded"
FAILED = "failed"
UNREACHABLE = "unreachable"


# =============================================================================
# Results
# =============================================================================

@dataclass
class SyncOutcome:
    """Result of one successfully processed job.

    Attributes:
        status: "synced", "skipped" (unchanged hash or nothing to do) or "dry_run"
        direction: Direction actually applied (may differ after a conflict)
        local_id: Local id after processing
        remote_id: Remote id after processing
        sync_hash: Hash stored in the mapping
        message: Short description for logs
    """
    status: str
    direction: Direction
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    sync_hash: Optional[str] = None
    message: str = ""


@dataclass
class RunSummary:
    """Counters for one ``process_queue()`` invocation."""
    run_id: str
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0
    batches: int = 0
    elapsed_seconds: float = 0.0
    stopped_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _remote_int(remote_id: Optional[str]) -> int:
    try:
        return int(remote_id)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid remote id: {remote_id!r}") from None


# =============================================================================
# Engine
# =============================================================================

class SyncEngine:
    """Queue processor.

    Usage:
        engine = SyncEngine(queue, mappings, registry, client, settings.sync)
        summary = await engine.process_queue()
    """

    def __init__(
        self,
        queue: QueueRepository,
        mappings: EntityMapRepository,
        registry: HandlerRegistry,
        client: RemoteClient,
        settings: SyncSettings,
        notifier: Optional[FailureNotifier] = None,
        metrics: Optional[SyncMetrics] = None,
        monotonic: Callable[[], float] = time.monotonic,
        breaker: Optional[CircuitBreaker] = None,
        module_breaker: Optional[ModuleCircuitBreaker] = None,
    ):
        self.queue = queue
        self.mappings = mappings
        self.registry = registry
        self.client = client
        self.settings = settings
        self.notifier = notifier
        self.metrics = metrics or SyncMetrics()
        self._monotonic = monotonic
        self.breaker = breaker
        self.module_breaker = module_breaker
        self._last_recovery: Optional[float] = None

    # =========================================================================
    # Queue draining
    # =========================================================================

    async def process_queue(self, module: Optional[str] = None) -> RunSummary:
        """Drain due jobs until the queue is empty or the budget is spent.

        Args:
            module: Restrict the run to one module's jobs

        Returns:
            RunSummary; never raises
        """
        summary = RunSummary(run_id=uuid.uuid4().hex)
        started = self._monotonic()

        with with_correlation(run_id=summary.run_id, tenant_id=self.settings.tenant_id, module=module):
            try:
                await self._drain(summary, started, module)
            except Exception:
                summary.stopped_reason = "error"
                logger.exception("Queue processing aborted")

            summary.elapsed_seconds = round(self._monotonic() - started, 3)
            self.metrics.record_run(summary.batches, summary.stopped_reason)
            try:
                self.metrics.update_queue_depth(self.queue.get_stats(self.settings.tenant_id))
            except sqlite3.Error:
                logger.exception("Could not refresh queue depth")

            logger.info("Queue run finished", extra_fields=summary.to_dict())
        return summary

    async def _drain(self, summary: RunSummary, started: float, module: Optional[str]) -> None:
        if not self._circuit_allows(summary, module):
            return
        await self._maybe_recover_stale(summary)

        while True:
            if summary.batches >= self.settings.max_batches:
                summary.stopped_reason = "max_batches"
                return
            if self._monotonic() - started >= self.settings.time_limit_seconds:
                summary.stopped_reason = "time_limit"
                return
            if summary.batches and not self._circuit_allows(summary, module):
                return

            items = self.queue.claim_batch(
                self.settings.batch_size,
                tenant_id=self.settings.tenant_id,
                module=module,
                exclude_modules=self.module_breaker.open_modules() if self.module_breaker else (),
            )
            if not items:
                summary.stopped_reason = "drained"
                return

            summary.batches += 1
            summary.claimed += len(items)
            results: List[Tuple[str, str]] = []
            for item in items:
                result = await self._process_item(item, summary)
                if result is not None:
                    results.append((item.module, result))
            await self._record_batch(results)

    def _circuit_allows(self, summary: RunSummary, module: Optional[str]) -> bool:
        if self.breaker is not None and not self.breaker.is_available():
            summary.stopped_reason = "circuit_open"
            logger.info("Queue processing paused, remote circuit breaker open")
            return False
        if module is not None and self.module_breaker is not None and not self.module_breaker.is_available(module):
            summary.stopped_reason = "circuit_open"
            logger.info("Queue processing paused, module circuit breaker open")
            return False
        return True

    async def _record_batch(self, results: List[Tuple[str, str]]) -> None:
        """Feed one batch's job results to the circuit breakers."""
        if self.breaker is not None:
            succeeded = sum(1 for _, r in results if r == SUCCEEDED)
            unreachable = sum(1 for _, r in results if r == UNREACHABLE)
            if self.breaker.record_batch(succeeded, unreachable):
                await self._notify_circuit_open(None, self.breaker.consecutive_failures)

        if self.module_breaker is not None:
            # Unreachable jobs say nothing about the module itself.
            per_module: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
            for module, result in results:
                if result == SUCCEEDED:
                    per_module[module][0] += 1
                elif result == FAILED:
                    per_module[module][1] += 1
            for module, (succeeded, failed) in per_module.items():
                if self.module_breaker.record_batch(module, succeeded, failed):
                    await self._notify_circuit_open(module, self.module_breaker.consecutive_failures(module))

    async def _maybe_recover_stale(self, summary: RunSummary) -> None:
        now = self._monotonic()
        if (
            self._last_recovery is not None
            and now - self._last_recovery < self.settings.recovery_interval_seconds
        ):
            return
        self._last_recovery = now

        recovered = self.queue.recover_stale(timedelta(seconds=self.settings.stale_timeout_seconds))
        summary.recovered = len(recovered)
        for item in recovered:
            if item.status is QueueStatus.FAILED:
                await self._notify_failed(item)

    async def _process_item(self, item: QueueItem, summary: RunSummary) -> Optional[str]:
        """Process one claimed job; return its breaker result, None if not recorded."""
        with with_correlation(
            correlation_id=item.correlation_id,
            module=item.module,
            job_id=item.id,
            entity_type=item.entity_type,
            direction=item.direction.value,
        ):
            started = time.perf_counter()
            try:
                if self.settings.dry_run:
                    outcome = self._dry_run(item)
                else:
                    outcome = await self.translate_and_send(item)
            except Exception as exc:
                return await self._handle_failure(item, exc, summary)
            finally:
                self.metrics.record_remote_call(item.module, (time.perf_counter() - started) * 1000)

            try:
                updated = self.queue.mark_completed(item.id, claim_token=item.claim_token)
            except sqlite3.Error:
                # Left in 'processing'; stale recovery will pick it up.
                logger.exception("Could not mark job completed")
                return None
            if updated is None:
                return None

            if outcome.status == "skipped":
                summary.skipped += 1
                self.metrics.record_job_outcome(item.module, "skipped")
            else:
                summary.completed += 1
                self.metrics.record_job_outcome(item.module, "completed")
            await self._record_outcome(item, success=True)

            logger.info(
                "Job completed",
                extra_fields={
                    "status": outcome.status,
                    "applied_direction": outcome.direction.value,
                    "local_id": outcome.local_id,
                    "remote_id": outcome.remote_id,
                },
            )
            return SUCCEEDED

    async def _handle_failure(self, item: QueueItem, exc: Exception, summary: RunSummary) -> Optional[str]:
        retryable = is_retryable(exc)
        message = str(exc) or type(exc).__name__
        remote_id = getattr(exc, "remote_id", None)

        if not retryable and not isinstance(exc, (ValidationError, UnknownModuleError)):
            logger.exception("Unexpected error while processing job")

        try:
            updated = self.queue.mark_failed(
                item.id, message, retryable=retryable, remote_id=remote_id, claim_token=item.claim_token,
            )
        except (sqlite3.Error, ValueError):
            logger.exception("Could not record job failure")
            return None
        if updated is None:
            return None

        if updated.status is QueueStatus.FAILED:
            summary.failed += 1
            self.metrics.record_job_outcome(item.module, "failed")
            await self._notify_failed(updated)
        else:
            summary.retried += 1
            self.metrics.record_job_outcome(item.module, "retried")
        await self._record_outcome(item, success=False)
        return UNREACHABLE if retryable else FAILED

    def _dry_run(self, item: QueueItem) -> SyncOutcome:
        logger.info(
            "[dry run] Would process job",
            extra_fields={"action": item.action.value, "local_id": item.local_id, "remote_id": item.remote_id},
        )
        return SyncOutcome(
            status="dry_run",
            direction=item.direction,
            local_id=item.local_id,
            remote_id=item.remote_id,
            message="dry run",
        )

    async def _notify_failed(self, item: QueueItem) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.job_failed(item)
        except Exception:
            logger.exception("Failure notifier raised")

    async def _record_outcome(self, item: QueueItem, success: bool) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.record_outcome(item.module, success, tenant_id=item.tenant_id)
        except Exception:
            logger.exception("Failure notifier raised")

    async def _notify_circuit_open(self, module: Optional[str], consecutive_failures: int) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.circuit_opened(module, consecutive_failures, tenant_id=self.settings.tenant_id)
        except Exception:
            logger.exception("Failure notifier raised")

    # =========================================================================
    # One job
    # =========================================================================

    async def translate_and_send(self, job: QueueItem) -> SyncOutcome:
        """Process one claimed job end to end.

        Raises:
            UnknownModuleError: No handler registered for ``job.module``
            ValidationError: Payload or remote rejection (permanent)
            TransientNetworkError: Remote unreachable after transport retries
            MappingWriteError: Remote write done, mapping not saved
        """
        handler = self.registry.get(job.module)
        if handler is None:
            raise UnknownModuleError(job.module)

        mapping = self._find_mapping(job)

        # An unchanged push is settled before conflict detection looks at
        # the remote side.
        call = None
        if job.direction is Direction.LOCAL_TO_REMOTE and job.action is not Action.DELETE:
            call = handler.build_remote_call(job, mapping)
            skipped = self._unchanged_push(job, mapping, call)
            if skipped is not None:
                return skipped

        direction = await self._resolve_direction(job, handler, mapping)

        if direction is Direction.LOCAL_TO_REMOTE:
            return await self._push(job, handler, mapping, call)
        return await self._pull(job, handler, mapping)

    @staticmethod
    def _unchanged_push(
        job: QueueItem,
        mapping: Optional[EntityMapping],
        call: RemoteCall,
    ) -> Optional[SyncOutcome]:
        new_hash = compute_sync_hash(call.values)
        if mapping is None or mapping.sync_hash != new_hash:
            return None
        return SyncOutcome(
            "skipped", Direction.LOCAL_TO_REMOTE, job.local_id or mapping.local_id, mapping.remote_id, new_hash,
            message="unchanged since last sync",
        )

    def _find_mapping(self, job: QueueItem) -> Optional[EntityMapping]:
        if job.local_id:
            mapping = self.mappings.get(job.module, job.entity_type, job.local_id)
            if mapping is not None:
                return mapping
        if job.remote_id:
            return self.mappings.get_by_remote(job.module, job.entity_type, job.remote_id)
        return None

    async def _resolve_direction(
        self,
        job: QueueItem,
        handler: ModuleHandler,
        mapping: Optional[EntityMapping],
    ) -> Direction:
        """Direction to execute, after conflict resolution."""
        if job.action is not Action.UPDATE or mapping is None or mapping.last_synced_at is None:
            return job.direction

        policy = self.settings.conflict_policy
        # The job's own direction wins anyway; no need to look at the other side.
        if policy == LOCAL_WINS and job.direction is Direction.LOCAL_TO_REMOTE:
            return job.direction
        if policy == REMOTE_WINS and job.direction is Direction.REMOTE_TO_LOCAL:
            return job.direction

        local_ts = handler.local_modified_at(job, job.local_id or mapping.local_id)
        # Without an unsynced local change there is nothing to conflict with.
        if not has_unsynced_change(local_ts, mapping.last_synced_at):
            return job.direction

        records = await self.client.read(
            handler.remote_model(job.entity_type),
            [_remote_int(mapping.remote_id)],
            [handler.remote_timestamp_field],
        )
        remote_ts = handler.remote_modified_at(records[0]) if records else None

        if not detect_conflict(mapping.last_synced_at, local_ts, remote_ts):
            return job.direction

        winner = resolve_conflict(policy, job.direction, local_ts, remote_ts)
        logger.warning(
            "Conflicting changes on both sides",
            extra_fields={
                "policy": policy,
                "local_modified_at": local_ts,
                "remote_modified_at": remote_ts,
                "last_synced_at": mapping.last_synced_at,
                "winner": winner.value,
            },
        )
        return winner

    async def _push(
        self,
        job: QueueItem,
        handler: ModuleHandler,
        mapping: Optional[EntityMapping],
        call: Optional[RemoteCall] = None,
    ) -> SyncOutcome:
        local_id = job.local_id or (mapping.local_id if mapping else None)
        remote_id = (mapping.remote_id if mapping else None) or job.remote_id
        model = handler.remote_model(job.entity_type)

        if job.action is Action.DELETE:
            if remote_id:
                await self.client.unlink(model, [_remote_int(remote_id)])
                if local_id:
                    self.mappings.delete(job.module, job.entity_type, local_id)
                else:
                    self.mappings.delete_by_remote(job.module, job.entity_type, remote_id)
                return SyncOutcome("synced", Direction.LOCAL_TO_REMOTE, local_id, remote_id, message="remote deleted")
            return SyncOutcome("skipped", Direction.LOCAL_TO_REMOTE, local_id, None, message="nothing to delete")

        if not local_id:
            raise ValidationError("Push job has no local id")

        call = call or handler.build_remote_call(job, mapping)
        skipped = self._unchanged_push(job, mapping, call)
        if skipped is not None:
            return skipped
        new_hash = compute_sync_hash(call.values)

        if remote_id:
            await self.client.write(call.model, [_remote_int(remote_id)], call.values)
            message = "remote updated"
        else:
            existing = []
            if call.dedup_domain:
                existing = await self.client.search(call.model, call.dedup_domain, limit=1)
            if existing:
                remote_id = str(existing[0])
                await self.client.write(call.model, [existing[0]], call.values)
                message = "matched existing remote record"
            else:
                remote_id = str(await self.client.create(call.model, call.values))
                message = "remote created"

        self._save_mapping(job, local_id, remote_id, call.model, new_hash)
        return SyncOutcome("synced", Direction.LOCAL_TO_REMOTE, local_id, remote_id, new_hash, message)

    async def _pull(
        self,
        job: QueueItem,
        handler: ModuleHandler,
        mapping: Optional[EntityMapping],
    ) -> SyncOutcome:
        local_id = job.local_id or (mapping.local_id if mapping else None)
        remote_id = job.remote_id or (mapping.remote_id if mapping else None)
        model = handler.remote_model(job.entity_type)

        if job.action is Action.DELETE:
            if local_id:
                handler.delete_local(job, local_id)
                self.mappings.delete(job.module, job.entity_type, local_id)
                return SyncOutcome("synced", Direction.REMOTE_TO_LOCAL, local_id, remote_id, message="local deleted")
            return SyncOutcome("skipped", Direction.REMOTE_TO_LOCAL, None, remote_id, message="nothing to delete")

        if not remote_id:
            raise ValidationError("Pull job has no remote id")

        records = await self.client.read(model, [_remote_int(remote_id)])
        if not records:
            raise ValidationError("Remote record not found during pull.")
        record = records[0]
        # Hashed in push shape so a round trip does not echo back.
        new_hash = compute_sync_hash(handler.remote_values(job.entity_type, record))

        if mapping is not None and mapping.sync_hash == new_hash:
            return SyncOutcome(
                "skipped", Direction.REMOTE_TO_LOCAL, mapping.local_id, remote_id, new_hash,
                message="unchanged since last sync",
            )

        local_id = handler.apply_remote(job, record, mapping)
        self._save_mapping(job, local_id, remote_id, model, new_hash)
        return SyncOutcome("synced", Direction.REMOTE_TO_LOCAL, local_id, remote_id, new_hash, "local updated")

    def _save_mapping(self, job: QueueItem, local_id: str, remote_id: str, model: str, sync_hash: str) -> None:
        try:
            self.mappings.upsert(job.module, job.entity_type, local_id, remote_id, model, sync_hash)
        except sqlite3.Error as e:
            raise MappingWriteError(
                f"Mapping save failed after remote write: {e}",
                remote_id=remote_id,
            ) from e
