"""Dead-letter store for queue items that exhausted their retries.

Letters are never retried automatically; an operator inspects them and
either requeues or discards them.
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
    from edgesync.edge.database import EdgeDatabase
    from edgesync.edge.queue import QueueItem, SyncQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeadLetter:
    """A verbatim copy of a dead queue item plus the final error."""

    id: int
    queue_id: int | None
    change_id: int | None
    operation: Operation
    entity: str
    record_id: str
    payload: dict[str, Any] | None
    priority: int
    attempts: int
    max_attempts: int
    error: str | None
    queued_at: float
    dead_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DeadLetter:
        """Create DeadLetter from database row."""
        return cls(
            id=row["id"],
            queue_id=row["queue_id"],
            change_id=row["change_id"],
            operation=Operation(row["operation"]),
            entity=row["entity"],
            record_id=row["record_id"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            error=row["error"],
            queued_at=row["queued_at"],
            dead_at=row["dead_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queueId": self.queue_id,
            "changeId": self.change_id,
            "operation": self.operation.value,
            "entity": self.entity,
            "recordId": self.record_id,
            "payload": self.payload,
            "priority": self.priority,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "error": self.error,
            "queuedAt": self.queued_at,
            "deadAt": self.dead_at,
        }


class DeadLetterStore:
    """Dead letters in the shared edge database."""

    def __init__(self, db: EdgeDatabase) -> None:
        self._db = db

    def add(self, item: QueueItem, error: str | None) -> DeadLetter:
        """Store a copy of a queue item.

        Joins the caller's transaction when there is one.
        """
        now = time.time()
        cursor = self._db.execute(
            """
            INSERT INTO dead_letters (
                queue_id, change_id, operation, entity, record_id, payload,
                priority, attempts, max_attempts, error, queued_at, dead_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.change_id,
                item.operation.value,
                item.entity,
                item.record_id,
                json.dumps(item.payload) if item.payload is not None else None,
                item.priority,
                item.attempts,
                item.max_attempts,
                error,
                item.created_at,
                now,
            ),
        )
        return DeadLetter(
            id=cursor.lastrowid,
            queue_id=item.id,
            change_id=item.change_id,
            operation=item.operation,
            entity=item.entity,
            record_id=item.record_id,
            payload=item.payload,
            priority=item.priority,
            attempts=item.attempts,
            max_attempts=item.max_attempts,
            error=error,
            queued_at=item.created_at,
            dead_at=now,
        )

    def get(self, letter_id: int) -> DeadLetter | None:
        row = self._db.fetchone("SELECT * FROM dead_letters WHERE id = ?", (letter_id,))
        return DeadLetter.from_row(row) if row else None

    def list(self, limit: int = 100) -> list[DeadLetter]:
        """Most recent letters first."""
        rows = self._db.fetchall(
            "SELECT * FROM dead_letters ORDER BY dead_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [DeadLetter.from_row(row) for row in rows]

    def count(self) -> int:
        row = self._db.fetchone("SELECT COUNT(*) AS n FROM dead_letters")
        return row["n"] if row else 0

    def requeue(self, letter_id: int, queue: SyncQueue) -> QueueItem | None:
        """Put a letter back on the queue with a fresh retry budget.

        Returns:
            The new queue item, or None if the letter does not exist.
        """
        with self._db.transaction():
            letter = self.get(letter_id)
            if letter is None:
                return None
            item = queue.enqueue(
                letter.operation,
                letter.entity,
                letter.record_id,
                letter.payload,
                change_id=letter.change_id,
            )
            self._db.execute("DELETE FROM dead_letters WHERE id = ?", (letter_id,))
        logger.info(
            "Requeued dead letter %d (%s %s/%s) as item %d",
            letter_id,
            letter.operation.value,
            letter.entity,
            letter.record_id,
            item.id,
        )
        return item

    def discard(self, letter_id: int) -> bool:
        """Delete a letter without retrying it."""
        cursor = self._db.execute("DELETE FROM dead_letters WHERE id = ?", (letter_id,))
        if cursor.rowcount:
            logger.info("Discarded dead letter %d", letter_id)
        return cursor.rowcount > 0

    def purge(self, older_than_days: int = 30) -> int:
        """Delete letters older than the retention period.

        Returns:
            Number of letters deleted.
        """
        cutoff = time.time() - older_than_days * 86400
        cursor = self._db.execute("DELETE FROM dead_letters WHERE dead_at < ?", (cutoff,))
        return cursor.rowcount
