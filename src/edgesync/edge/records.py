"""Local record storage.

``RecordStore`` is the seam where an application plugs its own domain
tables. ``LocalRecordStore`` is the default, a generic mirror keyed by
(entity, record_id) in the shared edge database.
"""

from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from edgesync.edge.database import EdgeDatabase


@dataclass
class LocalRecord:
    """A synchronized record as stored on the edge.

    Attributes:
        entity: Entity type.
        record_id: Record identifier.
        version: Last known version (0 for never-synced local records).
        data: Record fields.
        deleted_at: Soft deletion time (epoch seconds) or None.
        updated_at: Last local write time (epoch seconds).
    """

    entity: str
    record_id: str
    version: int
    data: dict[str, Any]
    deleted_at: float | None
    updated_at: float

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LocalRecord:
        """Create LocalRecord from database row."""
        return cls(
            entity=row["entity"],
            record_id=row["record_id"],
            version=row["version"],
            data=json.loads(row["data"]) if row["data"] else {},
            deleted_at=row["deleted_at"],
            updated_at=row["updated_at"],
        )


class RecordStore(Protocol):
    """Storage for domain records on the edge."""

    def get(self, entity: str, record_id: str) -> LocalRecord | None: ...

    def upsert(
        self,
        entity: str,
        record_id: str,
        data: dict[str, Any],
        version: int | None = None,
    ) -> LocalRecord: ...

    def mark_deleted(
        self,
        entity: str,
        record_id: str,
        version: int | None = None,
    ) -> LocalRecord | None: ...


class LocalRecordStore:
    """Generic record mirror in the ``local_records`` table."""

    def __init__(self, db: EdgeDatabase) -> None:
        self._db = db

    def get(self, entity: str, record_id: str) -> LocalRecord | None:
        """Get a record (including soft-deleted ones)."""
        row = self._db.fetchone(
            "SELECT * FROM local_records WHERE entity = ? AND record_id = ?",
            (entity, record_id),
        )
        return LocalRecord.from_row(row) if row else None

    def list(self, entity: str, include_deleted: bool = False) -> list[LocalRecord]:
        """List records of an entity type ordered by identifier."""
        sql = "SELECT * FROM local_records WHERE entity = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        rows = self._db.fetchall(sql + " ORDER BY record_id", (entity,))
        return [LocalRecord.from_row(row) for row in rows]

    def count(self, entity: str | None = None) -> int:
        """Count live records, optionally of one entity type."""
        if entity:
            row = self._db.fetchone(
                "SELECT COUNT(*) AS n FROM local_records WHERE entity = ? AND deleted_at IS NULL",
                (entity,),
            )
        else:
            row = self._db.fetchone(
                "SELECT COUNT(*) AS n FROM local_records WHERE deleted_at IS NULL"
            )
        return row["n"] if row else 0

    def upsert(
        self,
        entity: str,
        record_id: str,
        data: dict[str, Any],
        version: int | None = None,
    ) -> LocalRecord:
        """Write a record, reviving it if soft-deleted.

        Args:
            entity: Entity type.
            record_id: Record identifier.
            data: Record fields.
            version: Version to store; None bumps the current local version.
        """
        now = time.time()
        with self._db.transaction():
            current = self.get(entity, record_id)
            if version is None:
                version = (current.version if current else 0) + 1
            self._db.execute(
                """
                INSERT OR REPLACE INTO local_records (
                    entity, record_id, version, data, deleted_at, updated_at
                ) VALUES (?, ?, ?, ?, NULL, ?)
                """,
                (entity, record_id, version, json.dumps(data), now),
            )
        return LocalRecord(entity, record_id, version, data, None, now)

    def mark_deleted(
        self,
        entity: str,
        record_id: str,
        version: int | None = None,
    ) -> LocalRecord | None:
        """Soft-delete a record.

        Returns:
            The deleted record, or None if it was never stored.
        """
        now = time.time()
        with self._db.transaction():
            current = self.get(entity, record_id)
            if current is None:
                return None
            if version is None:
                version = current.version + 1
            self._db.execute(
                """
                UPDATE local_records SET version = ?, deleted_at = ?, updated_at = ?
                WHERE entity = ? AND record_id = ?
                """,
                (version, current.deleted_at or now, now, entity, record_id),
            )
        return LocalRecord(entity, record_id, version, current.data, current.deleted_at or now, now)
