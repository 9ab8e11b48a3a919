"""Apply pulled records to local storage.

Delta changes are version-gated: a change is written only when its version
is strictly newer than the local copy. Full snapshots are written as-is.
A change that cannot be applied is logged and skipped so it never blocks
the rest of its batch.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from edgesync.core.config import DEFAULT_ENTITIES
from edgesync.core.errors import ApplyError

if TYPE_CHECKING:
    from edgesync.edge.records import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Counters for one apply pass."""

    applied: int = 0
    skipped: int = 0
    failed: int = 0
    ignored: int = 0

    def merge(self, other: ApplyResult) -> None:
        self.applied += other.applied
        self.skipped += other.skipped
        self.failed += other.failed
        self.ignored += other.ignored


class ChangeApplier:
    """Writes pulled records into a RecordStore."""

    def __init__(self, records: RecordStore, entities: Iterable[str] = DEFAULT_ENTITIES) -> None:
        self._records = records
        self._entities = set(entities)

    def apply_snapshot(self, snapshot: dict[str, list[dict[str, Any]]]) -> ApplyResult:
        """Apply a full-sync snapshot unconditionally.

        Local records absent from the snapshot are left alone.
        """
        return self._apply_all(snapshot, force=True)

    def apply_changes(self, changes: dict[str, list[dict[str, Any]]]) -> ApplyResult:
        """Apply delta changes, skipping those not newer than the local copy."""
        return self._apply_all(changes, force=False)

    def _apply_all(self, batches: dict[str, list[dict[str, Any]]], force: bool) -> ApplyResult:
        result = ApplyResult()
        for entity, items in batches.items():
            if entity not in self._entities:
                logger.debug("Ignoring %d change(s) for unknown entity type %s", len(items), entity)
                result.ignored += len(items)
                continue
            for change in items:
                try:
                    if self.apply_change(entity, change, force=force):
                        result.applied += 1
                    else:
                        result.skipped += 1
                except ApplyError as e:
                    logger.warning("%s", e)
                    result.failed += 1
        if result.applied or result.failed:
            logger.info(
                "Applied %d, skipped %d, failed %d pulled record(s)",
                result.applied,
                result.skipped,
                result.failed,
            )
        return result

    def apply_change(self, entity: str, change: dict[str, Any], force: bool = False) -> bool:
        """Apply one pulled record.

        Args:
            entity: Entity type.
            change: Wire record with id, version, data and optional operation/deletedAt.
            force: Write regardless of the local version.

        Returns:
            True if the record was written, False if it was not newer.

        Raises:
            ApplyError: If the change is malformed or the store rejects it.
        """
        if not isinstance(change, dict):
            raise ApplyError(entity, "?", "change is not an object")

        record_id = change.get("id")
        if record_id in (None, ""):
            raise ApplyError(entity, "?", "missing record id")
        record_id = str(record_id)

        version = change.get("version")
        if not isinstance(version, int) or isinstance(version, bool):
            raise ApplyError(entity, record_id, f"invalid version: {version!r}")

        deleting = change.get("operation") == "delete" or bool(change.get("deletedAt"))
        data = change.get("data")
        if not deleting and not isinstance(data, dict):
            raise ApplyError(entity, record_id, "data is not an object")

        try:
            if not force:
                current = self._records.get(entity, record_id)
                if current is not None and version <= current.version:
                    return False

            if deleting:
                return self._records.mark_deleted(entity, record_id, version) is not None
            self._records.upsert(entity, record_id, data, version)
            return True
        except ApplyError:
            raise
        except Exception as e:
            raise ApplyError(entity, record_id, str(e)) from e
