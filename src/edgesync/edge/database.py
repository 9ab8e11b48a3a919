"""Local SQLite database shared by every edge component.

One connection in autocommit mode guarded by a re-entrant lock. Components
that need several statements to land together use ``transaction()``.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA = """
    -- Key-value sync checkpoints
    CREATE TABLE IF NOT EXISTS sync_checkpoints (
        key TEXT PRIMARY KEY,
        value TEXT
    );

    -- Append-only record of local mutations
    CREATE TABLE IF NOT EXISTS change_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity TEXT NOT NULL,
        record_id TEXT NOT NULL,
        operation TEXT NOT NULL,
        before_data TEXT,
        after_data TEXT,
        actor TEXT,
        synced INTEGER NOT NULL DEFAULT 0,
        synced_at REAL,
        created_at REAL NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_change_log_unsynced ON change_log(synced, id);

    -- Outbound work items
    CREATE TABLE IF NOT EXISTS sync_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        change_id INTEGER,
        operation TEXT NOT NULL,
        entity TEXT NOT NULL,
        record_id TEXT NOT NULL,
        payload TEXT,
        priority INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        last_error TEXT,
        scheduled_at REAL NOT NULL,
        last_attempt_at REAL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_sync_queue_ready
        ON sync_queue(status, priority, scheduled_at);
    CREATE INDEX IF NOT EXISTS idx_sync_queue_change ON sync_queue(change_id);

    -- Items that exhausted their retries
    CREATE TABLE IF NOT EXISTS dead_letters (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        queue_id INTEGER,
        change_id INTEGER,
        operation TEXT NOT NULL,
        entity TEXT NOT NULL,
        record_id TEXT NOT NULL,
        payload TEXT,
        priority INTEGER NOT NULL,
        attempts INTEGER NOT NULL,
        max_attempts INTEGER NOT NULL,
        error TEXT,
        queued_at REAL NOT NULL,
        dead_at REAL NOT NULL
    );

    -- Connectivity probes
    CREATE TABLE IF NOT EXISTS heartbeat_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        outcome TEXT NOT NULL,
        latency_ms REAL,
        response TEXT,
        error TEXT,
        metrics TEXT,
        created_at REAL NOT NULL
    );

    -- Local mirror of synchronized records
    CREATE TABLE IF NOT EXISTS local_records (
        entity TEXT NOT NULL,
        record_id TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        data TEXT,
        deleted_at REAL,
        updated_at REAL NOT NULL,
        PRIMARY KEY (entity, record_id)
    );
"""


class EdgeDatabase:
    """SQLite connection shared by the edge components.

    Uses WAL mode and a single re-entrant lock for thread-safe access.
    """

    def __init__(self, db_path: Path) -> None:
        """Open (and create if needed) the local database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self.lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA)

    @property
    def path(self) -> Path:
        """Get the database file path."""
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        with self.lock:
            self._conn.close()

    def execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        """Execute one statement under the lock."""
        with self.lock:
            return self._conn.execute(sql, params)

    def fetchone(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        """Execute a query and return its first row."""
        with self.lock:
            return self._conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        """Execute a query and return all rows."""
        with self.lock:
            return self._conn.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several statements atomically.

        Nested use joins the outer transaction.
        """
        with self.lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
