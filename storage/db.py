"""SQLite schema and connection helpers.

Three tables, all tenant-scoped:
- sync_queue: pending synchronization work with claim/backoff state
- entity_map: identity correspondence between local and remote keys
- sync_schedule: persisted "next run due" slot for the periodic trigger

Every repository method opens its own short-lived connection so that no
transaction is ever held across a remote call.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union


BUSY_TIMEOUT_SECONDS = 30.0


def connect(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open a connection in autocommit mode with row access by name.

    Transactions are opened explicitly with ``transaction()``.
    """
    conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = True) -> Iterator[sqlite3.Cursor]:
    """Run a block inside a single transaction.

    ``BEGIN IMMEDIATE`` takes the write lock up front so that a
    read-then-write sequence cannot interleave with another writer.
    """
    cursor = conn.cursor()
    cursor.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield cursor
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


def init_db(db_path: Union[str, Path]) -> None:
    """Create the sync tables and indexes if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = connect(db_path)
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sync_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL DEFAULT 'default',
                correlation_id TEXT,
                module TEXT NOT NULL,
                direction TEXT NOT NULL
                    CHECK(direction IN ('local_to_remote', 'remote_to_local')),
                entity_type TEXT NOT NULL,
                local_id TEXT,
                remote_id TEXT,
                entity_key TEXT,
                action TEXT NOT NULL CHECK(action IN ('create', 'update', 'delete')),
                payload TEXT,
                priority INTEGER NOT NULL DEFAULT 5,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK(status IN ('pending', 'processing', 'completed', 'failed')),
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                error_message TEXT,
                scheduled_at TEXT NOT NULL,
                claim_token TEXT,
                claimed_at TEXT,
                processed_at TEXT,
                resync INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_queue_claim
            ON sync_queue(status, priority, scheduled_at)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_queue_dedup
            ON sync_queue(tenant_id, module, entity_type, direction, status, local_id, remote_id)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_queue_claim_token
            ON sync_queue(claim_token)
        """)
        # At most one pending/processing job per entity and direction.
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_queue_active_entity
            ON sync_queue(tenant_id, module, entity_type, direction, entity_key)
            WHERE status IN ('pending', 'processing') AND entity_key IS NOT NULL
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS entity_map (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL DEFAULT 'default',
                module TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                local_id TEXT NOT NULL,
                remote_id TEXT NOT NULL,
                remote_model TEXT NOT NULL DEFAULT '',
                sync_hash TEXT NOT NULL DEFAULT '',
                last_synced_at TEXT,
                last_polled_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(tenant_id, module, entity_type, local_id, remote_id)
            )
        """)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_entity_map_local
            ON entity_map(tenant_id, module, entity_type, local_id)
        """)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_entity_map_remote
            ON entity_map(tenant_id, module, entity_type, remote_id)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sync_schedule (
                name TEXT PRIMARY KEY,
                next_run_at TEXT NOT NULL,
                last_owner TEXT,
                last_claimed_at TEXT
            )
        """)
    finally:
        conn.close()
