"""Append-only log of heartbeat probes."""

from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from edgesync.core.types import HeartbeatOutcome

if TYPE_CHECKING:
    from edgesync.edge.database import EdgeDatabase


@dataclass(frozen=True)
class HeartbeatRecord:
    """Result of one connectivity probe."""

    id: int
    outcome: HeartbeatOutcome
    latency_ms: float | None
    response: dict[str, Any] | None
    error: str | None
    metrics: dict[str, Any] | None
    created_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> HeartbeatRecord:
        """Create HeartbeatRecord from database row."""
        return cls(
            id=row["id"],
            outcome=HeartbeatOutcome(row["outcome"]),
            latency_ms=row["latency_ms"],
            response=json.loads(row["response"]) if row["response"] else None,
            error=row["error"],
            metrics=json.loads(row["metrics"]) if row["metrics"] else None,
            created_at=row["created_at"],
        )


class HeartbeatLog:
    """Heartbeat records in the shared edge database."""

    def __init__(self, db: EdgeDatabase) -> None:
        self._db = db

    def append(
        self,
        outcome: HeartbeatOutcome,
        latency_ms: float | None = None,
        response: dict[str, Any] | None = None,
        error: str | None = None,
        metrics: dict[str, Any] | None = None,
    ) -> HeartbeatRecord:
        now = time.time()
        cursor = self._db.execute(
            """
            INSERT INTO heartbeat_log (outcome, latency_ms, response, error, metrics, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                outcome.value,
                latency_ms,
                json.dumps(response) if response is not None else None,
                error,
                json.dumps(metrics) if metrics is not None else None,
                now,
            ),
        )
        return HeartbeatRecord(
            id=cursor.lastrowid,
            outcome=outcome,
            latency_ms=latency_ms,
            response=response,
            error=error,
            metrics=metrics,
            created_at=now,
        )

    def recent(self, limit: int = 20) -> list[HeartbeatRecord]:
        """Most recent records first."""
        rows = self._db.fetchall(
            "SELECT * FROM heartbeat_log ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [HeartbeatRecord.from_row(row) for row in rows]

    def last(self) -> HeartbeatRecord | None:
        records = self.recent(1)
        return records[0] if records else None

    def purge(self, older_than_days: int = 30) -> int:
        """Delete records older than the retention period."""
        cutoff = time.time() - older_than_days * 86400
        cursor = self._db.execute("DELETE FROM heartbeat_log WHERE created_at < ?", (cutoff,))
        return cursor.rowcount
