"""Entity Map Repository.

Persistent identity correspondence between local and remote entities:
- Lookup in either direction, single or batch
- Upsert that keeps the mapping one-to-one per (module, entity type)
- Sync hash short-circuit for unchanged payloads
- Poll bookkeeping for pull-based modules

Every query is scoped to the repository's tenant.
"""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from core.clock import Clock, from_db, to_db, utcnow
from core.models.mapping import EntityMapping
from core.observability.logging import get_logger
from storage.db import connect, transaction


logger = get_logger(__name__)

# SQLite's default host parameter limit is 999; stay well below it.
BATCH_CHUNK_SIZE = 500


def _row_to_mapping(row: sqlite3.Row) -> EntityMapping:
    return EntityMapping(
        tenant_id=row["tenant_id"],
        module=row["module"],
        entity_type=row["entity_type"],
        local_id=row["local_id"],
        remote_id=row["remote_id"],
        remote_model=row["remote_model"],
        sync_hash=row["sync_hash"],
        last_synced_at=from_db(row["last_synced_at"]),
        last_polled_at=from_db(row["last_polled_at"]),
    )


def _chunks(values: List[str], size: int = BATCH_CHUNK_SIZE) -> Iterable[List[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class EntityMapRepository:
    """Repository for the entity_map table.

    Usage:
        mappings = EntityMapRepository(db_path, tenant_id="site-a")
        mappings.upsert("crm", "contact", local_id=42, remote_id=1337,
                        remote_model="res.partner", sync_hash=h)
        mappings.lookup_remote("crm", "contact", 42)  # -> "1337"
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        tenant_id: str = "default",
        clock: Clock = utcnow,
    ):
        self.db_path = Path(db_path)
        self.tenant_id = tenant_id
        self.clock = clock

    # =========================================================================
    # Lookups
    # =========================================================================

    def get(self, module: str, entity_type: str, local_id) -> Optional[EntityMapping]:
        """Full mapping row for a local entity."""
        conn = connect(self.db_path)
        try:
            row = conn.execute("""
                SELECT * FROM entity_map
                WHERE tenant_id = ? AND module = ? AND entity_type = ? AND local_id = ?
            """, (self.tenant_id, module, entity_type, str(local_id))).fetchone()
            return _row_to_mapping(row) if row else None
        finally:
            conn.close()

    def get_by_remote(self, module: str, entity_type: str, remote_id) -> Optional[EntityMapping]:
        """Full mapping row for a remote entity."""
        conn = connect(self.db_path)
        try:
            row = conn.execute("""
                SELECT * FROM entity_map
                WHERE tenant_id = ? AND module = ? AND entity_type = ? AND remote_id = ?
            """, (self.tenant_id, module, entity_type, str(remote_id))).fetchone()
            return _row_to_mapping(row) if row else None
        finally:
            conn.close()

    def lookup_remote(self, module: str, entity_type: str, local_id) -> Optional[str]:
        """Remote id mapped to ``local_id``, or None."""
        mapping = self.get(module, entity_type, local_id)
        return mapping.remote_id if mapping else None

    def lookup_local(self, module: str, entity_type: str, remote_id) -> Optional[str]:
        """Local id mapped to ``remote_id``, or None."""
        mapping = self.get_by_remote(module, entity_type, remote_id)
        return mapping.local_id if mapping else None

    def lookup_remote_batch(self, module: str, entity_type: str, local_ids: Iterable) -> Dict[str, str]:
        """Map of local_id -> remote_id for the ids that have a mapping."""
        return self._batch(module, entity_type, "local_id", "remote_id", local_ids)

    def lookup_local_batch(self, module: str, entity_type: str, remote_ids: Iterable) -> Dict[str, str]:
        """Map of remote_id -> local_id for the ids that have a mapping."""
        return self._batch(module, entity_type, "remote_id", "local_id", remote_ids)

    def _batch(self, module, entity_type, key_col, value_col, ids) -> Dict[str, str]:
        keys = sorted({str(i) for i in ids})
        result: Dict[str, str] = {}
        if not keys:
            return result

        conn = connect(self.db_path)
        try:
            for chunk in _chunks(keys):
                placeholders = ",".join("?" * len(chunk))
                rows = conn.execute(f"""
                    SELECT {key_col}, {value_col} FROM entity_map
                    WHERE tenant_id = ? AND module = ? AND entity_type = ?
                      AND {key_col} IN ({placeholders})
                """, (self.tenant_id, module, entity_type, *chunk)).fetchall()
                for row in rows:
                    result[row[key_col]] = row[value_col]
        finally:
            conn.close()
        return result

    def list_mappings(self, module: str, entity_type: str) -> List[EntityMapping]:
        conn = connect(self.db_path)
        try:
            rows = conn.execute("""
                SELECT * FROM entity_map
                WHERE tenant_id = ? AND module = ? AND entity_type = ?
                ORDER BY id
            """, (self.tenant_id, module, entity_type)).fetchall()
            return [_row_to_mapping(row) for row in rows]
        finally:
            conn.close()

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert(
        self,
        module: str,
        entity_type: str,
        local_id,
        remote_id,
        remote_model: str = "",
        sync_hash: str = "",
        synced_at: Optional[datetime] = None,
    ) -> bool:
        """Record that ``local_id`` and ``remote_id`` are the same entity.

        Any existing mapping that uses either id on its side (for the same
        tenant, module and entity type) is replaced, so the mapping stays
        one-to-one. ``last_synced_at`` is always refreshed.

        Returns:
            True if the mapping is new or its sync hash changed
        """
        local_id = str(local_id)
        remote_id = str(remote_id)
        now = to_db(self.clock())
        synced = to_db(synced_at) if synced_at else now

        conn = connect(self.db_path)
        try:
            with transaction(conn) as cursor:
                cursor.execute("""
                    SELECT * FROM entity_map
                    WHERE tenant_id = ? AND module = ? AND entity_type = ?
                      AND (local_id = ? OR remote_id = ?)
                """, (self.tenant_id, module, entity_type, local_id, remote_id))
                existing = cursor.fetchall()

                exact = [
                    row for row in existing
                    if row["local_id"] == local_id and row["remote_id"] == remote_id
                ]
                if exact and len(existing) == 1:
                    row = exact[0]
                    cursor.execute("""
                        UPDATE entity_map
                        SET remote_model = ?, sync_hash = ?, last_synced_at = ?, updated_at = ?
                        WHERE id = ?
                    """, (remote_model or row["remote_model"], sync_hash, synced, now, row["id"]))
                    return row["sync_hash"] != sync_hash

                if existing:
                    logger.info(
                        "Replacing conflicting entity mappings",
                        extra_fields={
                            "module": module,
                            "entity_type": entity_type,
                            "local_id": local_id,
                            "remote_id": remote_id,
                            "replaced": [(r["local_id"], r["remote_id"]) for r in existing],
                        },
                    )
                    cursor.execute(
                        f"DELETE FROM entity_map WHERE id IN ({','.join('?' * len(existing))})",
                        [row["id"] for row in existing],
                    )

                cursor.execute("""
                    INSERT INTO entity_map
                    (tenant_id, module, entity_type, local_id, remote_id, remote_model,
                     sync_hash, last_synced_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    self.tenant_id, module, entity_type, local_id, remote_id,
                    remote_model, sync_hash, synced, now, now,
                ))
                return True
        finally:
            conn.close()

    def is_unchanged(self, module: str, entity_type: str, local_id, sync_hash: str) -> bool:
        """True when the stored hash for ``local_id`` equals ``sync_hash``."""
        if not sync_hash:
            return False
        mapping = self.get(module, entity_type, local_id)
        return mapping is not None and mapping.sync_hash == sync_hash

    def delete(self, module: str, entity_type: str, local_id) -> bool:
        """Remove the mapping for a local entity."""
        conn = connect(self.db_path)
        try:
            cursor = conn.execute("""
                DELETE FROM entity_map
                WHERE tenant_id = ? AND module = ? AND entity_type = ? AND local_id = ?
            """, (self.tenant_id, module, entity_type, str(local_id)))
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete_by_remote(self, module: str, entity_type: str, remote_id) -> bool:
        conn = connect(self.db_path)
        try:
            cursor = conn.execute("""
                DELETE FROM entity_map
                WHERE tenant_id = ? AND module = ? AND entity_type = ? AND remote_id = ?
            """, (self.tenant_id, module, entity_type, str(remote_id)))
            return cursor.rowcount > 0
        finally:
            conn.close()

    # =========================================================================
    # Poll bookkeeping
    # =========================================================================

    def mark_polled(
        self,
        module: str,
        entity_type: str,
        local_ids: Iterable,
        polled_at: Optional[datetime] = None,
    ) -> int:
        """Stamp ``last_polled_at`` on the mappings seen by a poll."""
        ids = sorted({str(i) for i in local_ids})
        if not ids:
            return 0
        stamp = to_db(polled_at or self.clock())

        updated = 0
        conn = connect(self.db_path)
        try:
            with transaction(conn) as cursor:
                for chunk in _chunks(ids):
                    placeholders = ",".join("?" * len(chunk))
                    cursor.execute(f"""
                        UPDATE entity_map SET last_polled_at = ?
                        WHERE tenant_id = ? AND module = ? AND entity_type = ?
                          AND local_id IN ({placeholders})
                    """, (stamp, self.tenant_id, module, entity_type, *chunk))
                    updated += cursor.rowcount
        finally:
            conn.close()
        return updated

    def get_stale_poll_mappings(
        self,
        module: str,
        entity_type: str,
        before: datetime,
    ) -> List[EntityMapping]:
        """Mappings not seen by a poll since ``before``.

        Pull-based modules treat these as deleted on the remote side.
        """
        conn = connect(self.db_path)
        try:
            rows = conn.execute("""
                SELECT * FROM entity_map
                WHERE tenant_id = ? AND module = ? AND entity_type = ?
                  AND (last_polled_at IS NULL OR last_polled_at < ?)
                ORDER BY id
            """, (self.tenant_id, module, entity_type, to_db(before))).fetchall()
            return [_row_to_mapping(row) for row in rows]
        finally:
            conn.close()
