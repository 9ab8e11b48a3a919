"""Outbound change log.

Append-only record of every local mutation. An entry's content never
changes after it is written; only its ``synced`` marker is flipped once the
central node accepted it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from edgesync.core.types import Operation

if TYPE_CHECKING:
    from collections.abc import Iterable

    from edgesync.edge.database import EdgeDatabase

logger = logging.getLogger(__name__)


def _loads(value: str | None) -> dict[str, Any] | None:
    return json.loads(value) if value else None


@dataclass(frozen=True)
class ChangeEntry:
    """One logged mutation."""

    id: int
    entity: str
    record_id: str
    operation: Operation
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    actor: str | None
    synced: bool
    synced_at: float | None
    created_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ChangeEntry:
        """Create ChangeEntry from database row."""
        return cls(
            id=row["id"],
            entity=row["entity"],
            record_id=row["record_id"],
            operation=Operation(row["operation"]),
            before=_loads(row["before_data"]),
            after=_loads(row["after_data"]),
            actor=row["actor"],
            synced=bool(row["synced"]),
            synced_at=row["synced_at"],
            created_at=row["created_at"],
        )

    def to_push_item(self) -> dict[str, Any]:
        """Wire form used in a batch push."""
        return {
            "operation": self.operation.value,
            "id": self.record_id,
            "data": self.after,
        }


class OutboundChangeLog:
    """Append-only log of local mutations awaiting push."""

    def __init__(self, db: EdgeDatabase) -> None:
        self._db = db

    def append(
        self,
        operation: Operation | str,
        entity: str,
        record_id: str,
        after: dict[str, Any] | None = None,
        before: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> ChangeEntry:
        """Record a local mutation.

        Returns:
            The stored entry.
        """
        operation = Operation(operation)
        now = time.time()
        cursor = self._db.execute(
            """
            INSERT INTO change_log (
                entity, record_id, operation, before_data, after_data, actor, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entity,
                record_id,
                operation.value,
                json.dumps(before) if before is not None else None,
                json.dumps(after) if after is not None else None,
                actor,
                now,
            ),
        )
        entry_id = cursor.lastrowid
        logger.debug("Logged %s %s/%s as change %s", operation.value, entity, record_id, entry_id)
        return ChangeEntry(
            id=entry_id,
            entity=entity,
            record_id=record_id,
            operation=operation,
            before=before,
            after=after,
            actor=actor,
            synced=False,
            synced_at=None,
            created_at=now,
        )

    def get(self, entry_id: int) -> ChangeEntry | None:
        """Get an entry by id."""
        row = self._db.fetchone("SELECT * FROM change_log WHERE id = ?", (entry_id,))
        return ChangeEntry.from_row(row) if row else None

    def unsynced(self, limit: int | None = None) -> list[ChangeEntry]:
        """Unsynced entries in append order."""
        sql = "SELECT * FROM change_log WHERE synced = 0 ORDER BY id"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        return [ChangeEntry.from_row(row) for row in self._db.fetchall(sql, params)]

    def count_unsynced(self) -> int:
        row = self._db.fetchone("SELECT COUNT(*) AS n FROM change_log WHERE synced = 0")
        return row["n"] if row else 0

    def mark_synced(self, entry_ids: Iterable[int]) -> int:
        """Flip the synced marker of entries.

        Returns:
            Number of entries newly marked.
        """
        ids = list(entry_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" * len(ids))
        cursor = self._db.execute(
            f"UPDATE change_log SET synced = 1, synced_at = ? "
            f"WHERE synced = 0 AND id IN ({placeholders})",
            [time.time(), *ids],
        )
        return cursor.rowcount

    def list(self, limit: int = 100, offset: int = 0) -> list[ChangeEntry]:
        """Most recent entries first."""
        rows = self._db.fetchall(
            "SELECT * FROM change_log ORDER BY id DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [ChangeEntry.from_row(row) for row in rows]

    def pushable(self, limit: int, now: float | None = None) -> list[ChangeEntry]:
        """Unsynced entries whose queue item is due and not claimed by a worker.

        Entries whose item was dead-lettered are left out until requeued.
        """
        now = time.time() if now is None else now
        rows = self._db.fetchall(
            """
            SELECT c.* FROM change_log c
            WHERE c.synced = 0 AND EXISTS (
                SELECT 1 FROM sync_queue q
                WHERE q.change_id = c.id AND q.status != 'in_flight' AND q.scheduled_at <= ?
            )
            ORDER BY c.id
            LIMIT ?
            """,
            (now, limit),
        )
        return [ChangeEntry.from_row(row) for row in rows]
