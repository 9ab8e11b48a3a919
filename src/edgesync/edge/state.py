"""Sync checkpoints of an edge node.

Key-value state persisted in the ``sync_checkpoints`` table: identity,
last full and delta sync timestamps, sync version, offline marker and
maintenance flag.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from edgesync.core.signing import format_timestamp

if TYPE_CHECKING:
    from edgesync.edge.database import EdgeDatabase

logger = logging.getLogger(__name__)

INSTANCE_ID = "instance_id"
GEO_ID = "geo_id"
LAST_FULL_SYNC = "last_full_sync"
LAST_DELTA_SYNC = "last_delta_sync"
SYNC_VERSION = "sync_version"
OFFLINE_SINCE = "offline_since"
MAINTENANCE_MODE = "maintenance_mode"


class LocalSyncState:
    """Checkpoint store backed by the shared edge database."""

    def __init__(self, db: EdgeDatabase) -> None:
        self._db = db

    # === Raw access ===

    def get(self, key: str) -> str | None:
        """Get a checkpoint value."""
        row = self._db.fetchone("SELECT value FROM sync_checkpoints WHERE key = ?", (key,))
        return row["value"] if row else None

    def set(self, key: str, value: str | None) -> None:
        """Set a checkpoint value; None deletes it."""
        if value is None:
            self._db.execute("DELETE FROM sync_checkpoints WHERE key = ?", (key,))
            return
        self._db.execute(
            "INSERT OR REPLACE INTO sync_checkpoints (key, value) VALUES (?, ?)",
            (key, value),
        )

    # === Identity ===

    @property
    def instance_id(self) -> str | None:
        return self.get(INSTANCE_ID)

    @property
    def geo_id(self) -> str | None:
        return self.get(GEO_ID)

    def set_identity(self, instance_id: str, geo_id: str) -> None:
        """Store the identity assigned at registration."""
        with self._db.transaction():
            self.set(INSTANCE_ID, instance_id)
            self.set(GEO_ID, geo_id)

    # === Sync checkpoints ===

    @property
    def last_full_sync(self) -> str | None:
        return self.get(LAST_FULL_SYNC)

    @property
    def last_delta_sync(self) -> str | None:
        return self.get(LAST_DELTA_SYNC)

    @property
    def sync_version(self) -> int:
        value = self.get(SYNC_VERSION)
        return int(value) if value else 0

    def record_cycle_success(self, sync_timestamp: str, full: bool) -> int:
        """Advance checkpoints after a successful cycle.

        Args:
            sync_timestamp: Server time the pulled data is current as of.
            full: Whether the cycle pulled a full snapshot.

        Returns:
            The new sync version.
        """
        with self._db.transaction():
            version = self.sync_version + 1
            self.set(LAST_DELTA_SYNC, sync_timestamp)
            if full:
                self.set(LAST_FULL_SYNC, sync_timestamp)
            self.set(SYNC_VERSION, str(version))
        return version

    def reset_sync(self) -> None:
        """Forget sync progress so the next cycle is a full sync."""
        with self._db.transaction():
            self.set(LAST_FULL_SYNC, None)
            self.set(LAST_DELTA_SYNC, None)

    # === Connectivity ===

    @property
    def offline_since(self) -> datetime | None:
        value = self.get(OFFLINE_SINCE)
        return datetime.fromisoformat(value) if value else None

    @property
    def is_offline(self) -> bool:
        return self.get(OFFLINE_SINCE) is not None

    def mark_offline(self) -> bool:
        """Stamp offline_since unless already offline.

        Returns:
            True if this call transitioned the node to offline.
        """
        with self._db.transaction():
            if self.is_offline:
                return False
            self.set(OFFLINE_SINCE, format_timestamp(datetime.now(UTC)))
        return True

    def mark_online(self) -> bool:
        """Clear offline_since.

        Returns:
            True if this call transitioned the node to online.
        """
        with self._db.transaction():
            if not self.is_offline:
                return False
            self.set(OFFLINE_SINCE, None)
        return True

    # === Maintenance ===

    @property
    def maintenance_mode(self) -> bool:
        return self.get(MAINTENANCE_MODE) == "1"

    def set_maintenance_mode(self, enabled: bool) -> None:
        self.set(MAINTENANCE_MODE, "1" if enabled else None)
        logger.info("Maintenance mode %s", "enabled" if enabled else "disabled")

    def snapshot(self) -> dict[str, Any]:
        """All checkpoints as a dict, for status reporting."""
        offline = self.offline_since
        return {
            "instanceId": self.instance_id,
            "geoId": self.geo_id,
            "lastFullSync": self.last_full_sync,
            "lastDeltaSync": self.last_delta_sync,
            "syncVersion": self.sync_version,
            "offlineSince": format_timestamp(offline) if offline else None,
            "maintenanceMode": self.maintenance_mode,
        }
