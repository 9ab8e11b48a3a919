"""Persistent outbound sync queue.

This module provides:
- QueueItem: A unit of outbound work (one record mutation)
- SyncQueue: Priority queue in SQLite with retry scheduling and dead-lettering

Items drain by priority (lower first), then by due time. A failed item is
rescheduled with exponential backoff until its attempt budget is spent,
then moved to the dead-letter store in the same transaction that removes it
from the queue. Claims flip status with a conditional UPDATE so an item is
never handed to two workers at once.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from edgesync.core.config import SyncPolicy
from edgesync.core.types import Operation, QueueStatus
from edgesync.edge.retry import compute_backoff

if TYPE_CHECKING:
    from edgesync.edge.changelog import OutboundChangeLog
    from edgesync.edge.database import EdgeDatabase
    from edgesync.edge.deadletter import DeadLetter, DeadLetterStore

logger = logging.getLogger(__name__)

# Statuses a claim may pick up once due
READY_STATUSES = (QueueStatus.PENDING.value, QueueStatus.FAILED.value)


@dataclass(frozen=True)
class QueueItem:
    """A queued outbound mutation."""

    id: int
    change_id: int | None
    operation: Operation
    entity: str
    record_id: str
    payload: dict[str, Any] | None
    priority: int
    status: QueueStatus
    attempts: int
    max_attempts: int
    last_error: str | None
    scheduled_at: float
    last_attempt_at: float | None
    created_at: float
    updated_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> QueueItem:
        """Create QueueItem from database row."""
        return cls(
            id=row["id"],
            change_id=row["change_id"],
            operation=Operation(row["operation"]),
            entity=row["entity"],
            record_id=row["record_id"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
            priority=row["priority"],
            status=QueueStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            last_error=row["last_error"],
            scheduled_at=row["scheduled_at"],
            last_attempt_at=row["last_attempt_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "changeId": self.change_id,
            "operation": self.operation.value,
            "entity": self.entity,
            "recordId": self.record_id,
            "priority": self.priority,
            "status": self.status.value,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "lastError": self.last_error,
            "scheduledAt": self.scheduled_at,
        }


class SyncQueue:
    """Priority queue of outbound mutations persisted in SQLite."""

    def __init__(
        self,
        db: EdgeDatabase,
        dead_letters: DeadLetterStore,
        policy: SyncPolicy | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            db: Shared edge database.
            dead_letters: Where exhausted items go.
            policy: Priority table and retry budget.
        """
        self._db = db
        self._dead_letters = dead_letters
        self._policy = policy or SyncPolicy()

    @property
    def policy(self) -> SyncPolicy:
        return self._policy

    def get(self, item_id: int) -> QueueItem | None:
        row = self._db.fetchone("SELECT * FROM sync_queue WHERE id = ?", (item_id,))
        return QueueItem.from_row(row) if row else None

    def enqueue(
        self,
        operation: Operation | str,
        entity: str,
        record_id: str,
        payload: dict[str, Any] | None = None,
        change_id: int | None = None,
    ) -> QueueItem:
        """Add an item, due immediately.

        Returns:
            The stored item.
        """
        operation = Operation(operation)
        priority = self._policy.priority_for(entity)
        now = time.time()
        cursor = self._db.execute(
            """
            INSERT INTO sync_queue (
                change_id, operation, entity, record_id, payload, priority, status,
                attempts, max_attempts, scheduled_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
            """,
            (
                change_id,
                operation.value,
                entity,
                record_id,
                json.dumps(payload) if payload is not None else None,
                priority,
                QueueStatus.PENDING.value,
                self._policy.max_attempts,
                now,
                now,
                now,
            ),
        )
        logger.debug(
            "Queued %s %s/%s (priority %d)", operation.value, entity, record_id, priority
        )
        return QueueItem(
            id=cursor.lastrowid,
            change_id=change_id,
            operation=operation,
            entity=entity,
            record_id=record_id,
            payload=payload,
            priority=priority,
            status=QueueStatus.PENDING,
            attempts=0,
            max_attempts=self._policy.max_attempts,
            last_error=None,
            scheduled_at=now,
            last_attempt_at=None,
            created_at=now,
            updated_at=now,
        )

    def claim_ready(self, limit: int = 10, now: float | None = None) -> list[QueueItem]:
        """Claim due items for processing.

        Each returned item has been flipped to in-flight; items already
        claimed elsewhere are skipped.

        Args:
            limit: Maximum number of items to claim.
            now: Current time (epoch seconds), for tests.

        Returns:
            Claimed items in drain order.
        """
        now = time.time() if now is None else now
        claimed: list[QueueItem] = []
        with self._db.transaction():
            rows = self._db.fetchall(
                """
                SELECT id FROM sync_queue
                WHERE status IN (?, ?) AND scheduled_at <= ?
                ORDER BY priority, scheduled_at, id
                LIMIT ?
                """,
                (*READY_STATUSES, now, limit),
            )
            for row in rows:
                cursor = self._db.execute(
                    """
                    UPDATE sync_queue
                    SET status = ?, last_attempt_at = ?, updated_at = ?
                    WHERE id = ? AND status IN (?, ?)
                    """,
                    (QueueStatus.IN_FLIGHT.value, now, now, row["id"], *READY_STATUSES),
                )
                if cursor.rowcount == 1:
                    item = self.get(row["id"])
                    if item:
                        claimed.append(item)
        return claimed

    def item_for_change(self, change_id: int) -> QueueItem | None:
        """Queue item mirroring a change-log entry, if still queued."""
        row = self._db.fetchone(
            "SELECT * FROM sync_queue WHERE change_id = ? ORDER BY id DESC LIMIT 1",
            (change_id,),
        )
        return QueueItem.from_row(row) if row else None

    def complete(self, item_id: int) -> bool:
        """Remove a successfully pushed item."""
        cursor = self._db.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
        return cursor.rowcount > 0

    def complete_for_changes(self, change_ids: list[int]) -> int:
        """Remove items mirroring change-log entries that were pushed in a batch.

        In-flight items are left alone; their worker completes them.
        """
        if not change_ids:
            return 0
        placeholders = ",".join("?" * len(change_ids))
        cursor = self._db.execute(
            f"DELETE FROM sync_queue WHERE status != ? AND change_id IN ({placeholders})",
            [QueueStatus.IN_FLIGHT.value, *change_ids],
        )
        return cursor.rowcount

    def release(self, item_id: int) -> None:
        """Return an in-flight item to pending without spending an attempt."""
        self._db.execute(
            "UPDATE sync_queue SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (QueueStatus.PENDING.value, time.time(), item_id, QueueStatus.IN_FLIGHT.value),
        )

    def fail(self, item_id: int, error: str, now: float | None = None) -> DeadLetter | None:
        """Record a failed attempt.

        The item is rescheduled with backoff, or dead-lettered once its
        attempts reach the ceiling.

        Returns:
            The dead letter if the item was moved out of the queue, else None.
        """
        now = time.time() if now is None else now
        with self._db.transaction():
            item = self.get(item_id)
            if item is None:
                return None

            attempts = item.attempts + 1
            if attempts >= item.max_attempts:
                exhausted = replace(item, attempts=attempts, last_error=error)
                letter = self._dead_letters.add(exhausted, error)
                self._db.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
                logger.error(
                    "Item %d (%s %s/%s) dead-lettered after %d attempts: %s",
                    item_id,
                    item.operation.value,
                    item.entity,
                    item.record_id,
                    attempts,
                    error,
                )
                return letter

            delay = compute_backoff(
                attempts,
                initial_backoff=self._policy.initial_backoff,
                multiplier=self._policy.backoff_multiplier,
                max_backoff=self._policy.max_backoff,
            )
            self._db.execute(
                """
                UPDATE sync_queue
                SET status = ?, attempts = ?, last_error = ?, scheduled_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (QueueStatus.FAILED.value, attempts, error, now + delay, now, item_id),
            )
        logger.warning(
            "Item %d attempt %d/%d failed, retrying in %.0fs: %s",
            item_id,
            attempts,
            item.max_attempts,
            delay,
            error,
        )
        return None

    def recover_in_flight(self) -> int:
        """Return items left in flight by a crash to pending.

        Returns:
            Number of recovered items.
        """
        cursor = self._db.execute(
            "UPDATE sync_queue SET status = ?, updated_at = ? WHERE status = ?",
            (QueueStatus.PENDING.value, time.time(), QueueStatus.IN_FLIGHT.value),
        )
        if cursor.rowcount:
            logger.info("Recovered %d in-flight queue items", cursor.rowcount)
        return cursor.rowcount

    def rebuild_from_change_log(self, changelog: OutboundChangeLog) -> int:
        """Queue unsynced change-log entries that have no queue item.

        Entries held as dead letters stay out until explicitly requeued.

        Returns:
            Number of items added.
        """
        added = 0
        with self._db.transaction():
            for entry in changelog.unsynced():
                row = self._db.fetchone(
                    """
                    SELECT 1 WHERE EXISTS (SELECT 1 FROM sync_queue WHERE change_id = ?)
                    OR EXISTS (SELECT 1 FROM dead_letters WHERE change_id = ?)
                    """,
                    (entry.id, entry.id),
                )
                if row is not None:
                    continue
                self.enqueue(
                    entry.operation,
                    entry.entity,
                    entry.record_id,
                    entry.after,
                    change_id=entry.id,
                )
                added += 1
        if added:
            logger.info("Rebuilt %d queue items from the change log", added)
        return added

    def size(self) -> int:
        """Number of items still in the queue (any status)."""
        row = self._db.fetchone("SELECT COUNT(*) AS n FROM sync_queue")
        return row["n"] if row else 0

    def stats(self) -> dict[str, int]:
        """Item counts by status."""
        counts = {status: 0 for status in (*READY_STATUSES, QueueStatus.IN_FLIGHT.value)}
        for row in self._db.fetchall(
            "SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status"
        ):
            counts[row["status"]] = row["n"]
        counts["total"] = sum(counts.values())
        return counts

    def list_items(self, limit: int = 100) -> list[QueueItem]:
        """Items in drain order."""
        rows = self._db.fetchall(
            "SELECT * FROM sync_queue ORDER BY priority, scheduled_at, id LIMIT ?",
            (limit,),
        )
        return [QueueItem.from_row(row) for row in rows]

    def clear(self) -> int:
        """Drop every item. Returns the number removed."""
        cursor = self._db.execute("DELETE FROM sync_queue")
        return cursor.rowcount
