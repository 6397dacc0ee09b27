"""Sync Queue Repository.

Durable work queue for synchronization jobs:
- Enqueue with deduplication (one active job per entity and direction)
- Atomic batch claiming safe across processes
- Completion, failure with exponential backoff, terminal failure
- Crash recovery for jobs stuck in 'processing'

All state transitions are single SQL statements or short IMMEDIATE
transactions, so concurrent workers coordinate only through the table.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from core.clock import Clock, from_db, to_db, utcnow
from core.config import BackoffPolicy
from core.errors import DuplicateKeyError
from core.models.queue import (
    ACTIVE_STATUSES,
    Action,
    EnqueueRequest,
    QueueItem,
    QueueStatus,
)
from core.observability.logging import get_logger
from storage.db import connect, transaction


logger = get_logger(__name__)

MAX_ERROR_LENGTH = 65535


def _merge_action(existing: str, incoming: Action) -> str:
    """Action for a coalesced job.

    A create that has not reached the remote side yet stays a create when
    an update arrives; a delete always wins.
    """
    if incoming is Action.DELETE:
        return Action.DELETE.value
    if existing == Action.CREATE.value and incoming is Action.UPDATE:
        return Action.CREATE.value
    return incoming.value


def _row_to_item(row: sqlite3.Row) -> QueueItem:
    """Convert a database row to QueueItem."""
    return QueueItem(
        id=row["id"],
        tenant_id=row["tenant_id"],
        correlation_id=row["correlation_id"],
        module=row["module"],
        direction=row["direction"],
        entity_type=row["entity_type"],
        local_id=row["local_id"],
        remote_id=row["remote_id"],
        action=row["action"],
        payload=json.loads(row["payload"]) if row["payload"] else None,
        priority=row["priority"],
        status=row["status"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_at=from_db(row["scheduled_at"]),
        claimed_at=from_db(row["claimed_at"]),
        processed_at=from_db(row["processed_at"]),
        created_at=from_db(row["created_at"]),
        resync=bool(row["resync"]),
        claim_token=row["claim_token"],
    )


class QueueRepository:
    """Repository for the sync_queue table.

    Usage:
        repo = QueueRepository(db_path)
        job_id = repo.enqueue(EnqueueRequest(module="crm", entity_type="contact", local_id=42))
        for item in repo.claim_batch(50, tenant_id="default"):
            ...
            repo.mark_completed(item.id, claim_token=item.claim_token)
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        backoff: Optional[BackoffPolicy] = None,
        clock: Clock = utcnow,
    ):
        self.db_path = Path(db_path)
        self.backoff = backoff or BackoffPolicy()
        self.clock = clock

    # =========================================================================
    # Producer side
    # =========================================================================

    def enqueue(self, request: EnqueueRequest) -> int:
        """Enqueue a job, coalescing into an active job for the same entity.

        If a pending or processing job already exists for the same tenant,
        module, entity type, direction and local (or remote) id, that job is
        updated in place and its id returned.

        Raises:
            DuplicateKeyError: Another writer inserted the same active job
                between our lookup and insert; enqueue again.
        """
        now = self.clock()
        scheduled_at = now + timedelta(seconds=request.delay_seconds)
        payload = json.dumps(request.payload) if request.payload is not None else None
        key = request.entity_key

        conn = connect(self.db_path)
        try:
            with transaction(conn) as cursor:
                existing = None
                if key is not None:
                    cursor.execute("""
                        SELECT * FROM sync_queue
                        WHERE tenant_id = ? AND module = ? AND entity_type = ?
                          AND direction = ? AND entity_key = ?
                          AND status IN (?, ?)
                        LIMIT 1
                    """, (
                        request.tenant_id,
                        request.module,
                        request.entity_type,
                        request.direction.value,
                        key,
                        *ACTIVE_STATUSES,
                    ))
                    existing = cursor.fetchone()

                if existing is not None:
                    return self._coalesce(cursor, existing, request, payload, scheduled_at)

                try:
                    cursor.execute("""
                        INSERT INTO sync_queue
                        (tenant_id, correlation_id, module, direction, entity_type,
                         local_id, remote_id, entity_key, action, payload, priority,
                         status, attempts, max_attempts, scheduled_at, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?)
                    """, (
                        request.tenant_id,
                        request.correlation_id,
                        request.module,
                        request.direction.value,
                        request.entity_type,
                        request.local_id,
                        request.remote_id,
                        key,
                        request.action.value,
                        payload,
                        request.priority,
                        request.max_attempts,
                        to_db(scheduled_at),
                        to_db(now),
                    ))
                except sqlite3.IntegrityError as e:
                    raise DuplicateKeyError(
                        f"Active job already exists for {request.module}/{request.entity_type} {key}",
                        details={"entity_key": key},
                    ) from e
                job_id = cursor.lastrowid
        finally:
            conn.close()

        logger.debug(
            "Enqueued sync job",
            extra_fields={
                "job_id": job_id,
                "module": request.module,
                "entity_type": request.entity_type,
                "direction": request.direction.value,
                "action": request.action.value,
            },
        )
        return job_id

    def _coalesce(
        self,
        cursor: sqlite3.Cursor,
        existing: sqlite3.Row,
        request: EnqueueRequest,
        payload: Optional[str],
        scheduled_at: datetime,
    ) -> int:
        job_id = existing["id"]
        action = _merge_action(existing["action"], request.action)
        # A job that is already being processed gets flagged so that
        # mark_completed() hands it back to the queue with the new payload.
        resync = 1 if existing["status"] == QueueStatus.PROCESSING.value else existing["resync"]
        new_scheduled = max(from_db(existing["scheduled_at"]), scheduled_at)

        cursor.execute("""
            UPDATE sync_queue
            SET action = ?, payload = ?, priority = ?, resync = ?, scheduled_at = ?,
                local_id = COALESCE(local_id, ?), remote_id = COALESCE(remote_id, ?)
            WHERE id = ?
        """, (
            action,
            payload,
            request.priority,
            resync,
            to_db(new_scheduled),
            request.local_id,
            request.remote_id,
            job_id,
        ))
        logger.debug(
            "Coalesced sync job",
            extra_fields={"job_id": job_id, "status": existing["status"], "action": action},
        )
        return job_id

    # =========================================================================
    # Worker side
    # =========================================================================

    def claim_batch(
        self,
        limit: int,
        tenant_id: Optional[str] = None,
        module: Optional[str] = None,
        exclude_modules: Iterable[str] = (),
    ) -> List[QueueItem]:
        """Atomically claim up to ``limit`` due jobs.

        Selection and the pending -> processing transition happen in one
        UPDATE stamped with a per-call claim token, so concurrent callers
        never receive the same job. Order: priority, then FIFO. Jobs of
        ``exclude_modules`` stay pending.
        """
        if limit <= 0:
            return []

        token = uuid.uuid4().hex
        now = to_db(self.clock())

        filters = ""
        params: List[Any] = [now]
        if tenant_id is not None:
            filters += " AND tenant_id = ?"
            params.append(tenant_id)
        if module is not None:
            filters += " AND module = ?"
            params.append(module)
        excluded = list(exclude_modules)
        if excluded:
            filters += f" AND module NOT IN ({', '.join('?' * len(excluded))})"
            params.extend(excluded)
        params.append(limit)

        conn = connect(self.db_path)
        try:
            with transaction(conn) as cursor:
                cursor.execute(f"""
                    UPDATE sync_queue
                    SET status = 'processing', claim_token = ?, claimed_at = ?
                    WHERE status = 'pending' AND id IN (
                        SELECT id FROM sync_queue
                        WHERE status = 'pending' AND scheduled_at <= ?{filters}
                        ORDER BY priority ASC, created_at ASC, id ASC
                        LIMIT ?
                    )
                """, [token, now, *params])
                cursor.execute("""
                    SELECT * FROM sync_queue WHERE claim_token = ?
                    ORDER BY priority ASC, created_at ASC, id ASC
                """, (token,))
                rows = cursor.fetchall()
        finally:
            conn.close()

        return [_row_to_item(row) for row in rows]

    def mark_completed(self, job_id: int, claim_token: Optional[str] = None) -> Optional[QueueItem]:
        """Mark a job completed.

        A job flagged for resync (coalesced while processing) goes back to
        'pending' instead, so the newer change is synced too.

        Args:
            job_id: Queue item id
            claim_token: Token from ``claim_batch()``. When given, the
                transition only happens if the caller still holds the claim.

        Returns:
            The updated job, or None if the claim was lost (the job was
            recovered as stale and possibly claimed by another worker)
        """
        now = to_db(self.clock())
        conn = connect(self.db_path)
        try:
            with transaction(conn) as cursor:
                row = self._fetch(cursor, job_id)
                if not self._holds_claim(row, claim_token):
                    return None
                if row["resync"]:
                    cursor.execute("""
                        UPDATE sync_queue
                        SET status = 'pending', resync = 0, claim_token = NULL,
                            claimed_at = NULL, scheduled_at = ?, error_message = NULL
                        WHERE id = ?
                    """, (now, job_id))
                else:
                    cursor.execute("""
                        UPDATE sync_queue
                        SET status = 'completed', processed_at = ?, claim_token = NULL,
                            error_message = NULL
                        WHERE id = ?
                    """, (now, job_id))
                row = self._fetch(cursor, job_id)
        finally:
            conn.close()
        return _row_to_item(row)

    def mark_failed(
        self,
        job_id: int,
        error: str,
        retryable: bool = True,
        remote_id: Optional[str] = None,
        claim_token: Optional[str] = None,
    ) -> Optional[QueueItem]:
        """Record a failed attempt.

        Increments ``attempts``. Retryable failures with budget left go back
        to 'pending' with ``scheduled_at = now + backoff(attempts)``; fatal
        failures and exhausted jobs become 'failed' (terminal) and keep
        their last ``scheduled_at``. A job flagged for resync never becomes
        terminal: the newer change it carries goes back to 'pending' with a
        fresh attempt budget.

        Args:
            job_id: Queue item id
            error: Error description (truncated to 65535 chars)
            retryable: False for validation/configuration errors
            remote_id: Remote id created before the failure, persisted so a
                retry updates instead of creating a duplicate
            claim_token: Token from ``claim_batch()``; see ``mark_completed()``

        Returns:
            The updated job, or None if the claim was lost
        """
        now = self.clock()
        error_trimmed = (error or "")[:MAX_ERROR_LENGTH]

        conn = connect(self.db_path)
        try:
            with transaction(conn) as cursor:
                row = self._fetch(cursor, job_id)
                if not self._holds_claim(row, claim_token):
                    return None
                attempts = row["attempts"] + 1
                should_retry = retryable and attempts < row["max_attempts"]
                new_remote_id = row["remote_id"] or (str(remote_id) if remote_id else None)

                if should_retry:
                    scheduled = now + timedelta(seconds=self.backoff.delay_for(attempts))
                    cursor.execute("""
                        UPDATE sync_queue
                        SET status = 'pending', attempts = ?, error_message = ?,
                            scheduled_at = ?, claim_token = NULL, claimed_at = NULL,
                            resync = 0, remote_id = ?
                        WHERE id = ?
                    """, (attempts, error_trimmed, to_db(scheduled), new_remote_id, job_id))
                elif row["resync"]:
                    cursor.execute("""
                        UPDATE sync_queue
                        SET status = 'pending', attempts = 0, error_message = ?,
                            scheduled_at = ?, claim_token = NULL, claimed_at = NULL,
                            resync = 0, remote_id = ?
                        WHERE id = ?
                    """, (error_trimmed, to_db(now), new_remote_id, job_id))
                else:
                    cursor.execute("""
                        UPDATE sync_queue
                        SET status = 'failed', attempts = ?, error_message = ?,
                            processed_at = ?, claim_token = NULL, resync = 0, remote_id = ?
                        WHERE id = ?
                    """, (attempts, error_trimmed, to_db(now), new_remote_id, job_id))
                row = self._fetch(cursor, job_id)
        finally:
            conn.close()

        item = _row_to_item(row)
        if item.status is QueueStatus.FAILED:
            logger.error(
                "Sync job permanently failed",
                extra_fields={
                    "job_id": job_id,
                    "module": item.module,
                    "entity_type": item.entity_type,
                    "attempts": item.attempts,
                    "retryable": retryable,
                    "error": error_trimmed,
                },
            )
        else:
            logger.warning(
                "Sync job failed, will retry",
                extra_fields={
                    "job_id": job_id,
                    "attempt": item.attempts,
                    "retry_at": to_db(item.scheduled_at),
                    "error": error_trimmed,
                },
            )
        return item

    def recover_stale(self, older_than: timedelta) -> List[QueueItem]:
        """Reset jobs stuck in 'processing' after a worker crash.

        A job qualifies when it has no ``processed_at`` and was claimed more
        than ``older_than`` ago. Its attempts are incremented by one; if that
        exhausts the budget it becomes 'failed', otherwise 'pending' and
        immediately eligible. A job flagged for resync goes back to
        'pending' with a fresh budget instead of failing.

        Returns:
            The recovered jobs after the transition
        """
        now = self.clock()
        cutoff = to_db(now - older_than)
        token = uuid.uuid4().hex

        conn = connect(self.db_path)
        try:
            with transaction(conn) as cursor:
                exhausted = "attempts + 1 >= max_attempts AND resync = 0"
                cursor.execute(f"""
                    UPDATE sync_queue
                    SET attempts = CASE WHEN attempts + 1 >= max_attempts AND resync = 1
                                        THEN 0 ELSE attempts + 1 END,
                        status = CASE WHEN {exhausted}
                                      THEN 'failed' ELSE 'pending' END,
                        processed_at = CASE WHEN {exhausted}
                                            THEN ? ELSE NULL END,
                        error_message = CASE WHEN {exhausted}
                                             THEN 'Stale processing job; attempts exhausted.'
                                             ELSE 'Recovered from stale processing state.' END,
                        scheduled_at = CASE WHEN {exhausted}
                                            THEN scheduled_at ELSE ? END,
                        claimed_at = NULL, resync = 0, claim_token = ?
                    WHERE status = 'processing'
                      AND processed_at IS NULL
                      AND claimed_at IS NOT NULL
                      AND claimed_at < ?
                """, (to_db(now), to_db(now), token, cutoff))
                cursor.execute("SELECT * FROM sync_queue WHERE claim_token = ?", (token,))
                rows = cursor.fetchall()
                cursor.execute(
                    "UPDATE sync_queue SET claim_token = NULL WHERE claim_token = ?", (token,)
                )
        finally:
            conn.close()

        items = [_row_to_item(row) for row in rows]
        if items:
            logger.warning(
                "Recovered stale processing jobs",
                extra_fields={"count": len(items), "job_ids": [i.id for i in items]},
            )
        return items

    # =========================================================================
    # Operator helpers
    # =========================================================================

    def get(self, job_id: int) -> Optional[QueueItem]:
        """Get a job by id."""
        conn = connect(self.db_path)
        try:
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (job_id,)).fetchone()
            return _row_to_item(row) if row else None
        finally:
            conn.close()

    def get_pending(
        self,
        module: str,
        entity_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> List[QueueItem]:
        """Pending jobs for a module in claim order."""
        query = "SELECT * FROM sync_queue WHERE status = 'pending' AND module = ?"
        params: List[Any] = [module]
        if entity_type:
            query += " AND entity_type = ?"
            params.append(entity_type)
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY priority ASC, created_at ASC, id ASC"

        conn = connect(self.db_path)
        try:
            return [_row_to_item(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def get_stats(self, tenant_id: Optional[str] = None) -> Dict[str, int]:
        """Job counts by status."""
        query = "SELECT status, COUNT(*) AS count FROM sync_queue"
        params: List[Any] = []
        if tenant_id:
            query += " WHERE tenant_id = ?"
            params.append(tenant_id)
        query += " GROUP BY status"

        stats = {status.value: 0 for status in QueueStatus}
        stats["total"] = 0
        conn = connect(self.db_path)
        try:
            for row in conn.execute(query, params).fetchall():
                stats[row["status"]] = row["count"]
                stats["total"] += row["count"]
        finally:
            conn.close()
        return stats

    def cancel(self, job_id: int) -> bool:
        """Delete a job if it is still pending."""
        conn = connect(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM sync_queue WHERE id = ? AND status = 'pending'", (job_id,)
            )
            return cursor.rowcount > 0
        finally:
            conn.close()

    def retry_failed(self, tenant_id: Optional[str] = None) -> int:
        """Reset failed jobs to pending with a fresh attempt budget.

        A failed job whose entity already has another active job stays
        failed, and of several failed jobs for one entity only the newest
        is reset; either way the entity keeps at most one active job.
        """
        query = """
            UPDATE sync_queue
            SET status = 'pending', attempts = 0, error_message = NULL,
                scheduled_at = ?, processed_at = NULL
            WHERE status = 'failed'
              AND (entity_key IS NULL OR (
                  NOT EXISTS (
                      SELECT 1 FROM sync_queue AS active
                      WHERE active.tenant_id = sync_queue.tenant_id
                        AND active.module = sync_queue.module
                        AND active.entity_type = sync_queue.entity_type
                        AND active.direction = sync_queue.direction
                        AND active.entity_key = sync_queue.entity_key
                        AND active.status IN ('pending', 'processing')
                  )
                  AND id = (
                      SELECT MAX(newest.id) FROM sync_queue AS newest
                      WHERE newest.tenant_id = sync_queue.tenant_id
                        AND newest.module = sync_queue.module
                        AND newest.entity_type = sync_queue.entity_type
                        AND newest.direction = sync_queue.direction
                        AND newest.entity_key = sync_queue.entity_key
                        AND newest.status = 'failed'
                  )
              ))
        """
        params: List[Any] = [to_db(self.clock())]
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)

        conn = connect(self.db_path)
        try:
            with transaction(conn) as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        finally:
            conn.close()

    def cleanup(self, days_old: int = 7) -> int:
        """Delete completed and failed jobs older than ``days_old`` days."""
        cutoff = to_db(self.clock() - timedelta(days=days_old))
        conn = connect(self.db_path)
        try:
            cursor = conn.execute("""
                DELETE FROM sync_queue
                WHERE status IN ('completed', 'failed') AND created_at < ?
            """, (cutoff,))
            return cursor.rowcount
        finally:
            conn.close()

    @staticmethod
    def _fetch(cursor: sqlite3.Cursor, job_id: int) -> sqlite3.Row:
        cursor.execute("SELECT * FROM sync_queue WHERE id = ?", (job_id,))
        row = cursor.fetchone()
        if row is None:
            raise ValueError(f"Queue item {job_id} not found")
        return row

    @staticmethod
    def _holds_claim(row: sqlite3.Row, claim_token: Optional[str]) -> bool:
        if claim_token is None:
            return True
        if row["status"] == QueueStatus.PROCESSING.value and row["claim_token"] == claim_token:
            return True
        logger.warning(
            "Claim lost, job not updated",
            extra_fields={"job_id": row["id"], "status": row["status"]},
        )
        return False
