"""Pydantic schemas for API request/response models.

Wire names are camelCase; Python attributes stay snake_case through aliases.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from edgesync.core.signing import format_timestamp
from edgesync.server.models import EdgeInstance, SyncRecord


class WireModel(BaseModel):
    """Base model accepting both alias and field names."""

    model_config = ConfigDict(populate_by_name=True)


# === Registration schemas ===


class RegisterRequest(WireModel):
    """Request body for edge registration.

    Fields are optional here so the token is checked before field validation.
    """

    server_id: str | None = Field(default=None, alias="serverId")
    geo_id: str | None = Field(default=None, alias="geoId")
    server_name: str | None = Field(default=None, alias="serverName")
    public_key: str | None = Field(default=None, alias="publicKey")


class SyncConfigResponse(WireModel):
    """Timing hints handed to a newly registered edge."""

    heartbeat_interval: int = Field(alias="heartbeatInterval")
    sync_interval: int = Field(alias="syncInterval")
    batch_size: int = Field(alias="batchSize")


class RegisterResponse(WireModel):
    """Response for edge registration. The secret is only ever shown here."""

    success: bool = True
    instance_id: str = Field(alias="instanceId")
    shared_secret: str = Field(alias="sharedSecret")
    sync_config: SyncConfigResponse = Field(alias="syncConfig")


# === Heartbeat schemas ===


class HeartbeatRequest(WireModel):
    """Request body for a heartbeat."""

    metrics: dict[str, Any] | None = None
    queue_size: int = Field(default=0, alias="queueSize")
    timestamp: str | None = None


class CommandResponse(WireModel):
    """A remote command delivered with a heartbeat."""

    id: int
    command: str
    payload: dict[str, Any] | None = None
    created_at: str = Field(alias="createdAt")


class HeartbeatResponse(WireModel):
    """Response for a heartbeat."""

    success: bool = True
    needs_full_sync: bool = Field(alias="needsFullSync")
    commands: list[CommandResponse]
    server_time: str = Field(alias="serverTime")


# === Sync schemas ===


class FullSyncRequest(WireModel):
    """Request body for a full sync."""

    entities: list[str] | None = None


class PushRequest(WireModel):
    """Request body for a batch push.

    Items are left untyped so each one is validated on its own.
    """

    entity: str
    changes: list[Any]
    geo_id: str | None = Field(default=None, alias="geoId")


class PushError(WireModel):
    """A rejected push item."""

    index: int
    id: str | None = None
    error: str


class PushResults(WireModel):
    """Per-item outcome counts of a batch push."""

    accepted: int
    rejected: int
    errors: list[PushError]


class PushResponse(WireModel):
    """Response for a batch push."""

    success: bool = True
    results: PushResults


class ItemRequest(WireModel):
    """Request body for a single-item push."""

    operation: str
    entity: str
    data: dict[str, Any] | None = None
    id: str | None = None


class ItemResponse(WireModel):
    """Response for a single-item push."""

    success: bool = True
    id: str
    version: int | None = None
    synced_at: str = Field(alias="syncedAt")


class StatusResponse(WireModel):
    """Sync status of the calling instance."""

    success: bool = True
    instance_id: str = Field(alias="instanceId")
    geo_id: str = Field(alias="geoId")
    status: str
    last_heartbeat: str | None = Field(default=None, alias="lastHeartbeat")
    last_full_sync: str | None = Field(default=None, alias="lastFullSync")
    last_delta_sync: str | None = Field(default=None, alias="lastDeltaSync")
    sync_queue_size: int = Field(alias="syncQueueSize")
    needs_full_sync: bool = Field(alias="needsFullSync")


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


# === Converters ===


def _iso(value: Any) -> str | None:
    return format_timestamp(value) if value else None


def record_to_dict(record: SyncRecord) -> dict[str, Any]:
    """Convert a SyncRecord to its full-sync wire form."""
    return {
        "id": record.record_id,
        "version": record.version,
        "data": record.data,
        "updatedAt": _iso(record.updated_at),
        "deletedAt": _iso(record.deleted_at),
    }


def change_to_dict(record: SyncRecord) -> dict[str, Any]:
    """Convert a SyncRecord to its delta-sync wire form."""
    change = record_to_dict(record)
    change["operation"] = "delete" if record.deleted_at else "update"
    return change


def instance_to_status(instance: EdgeInstance) -> StatusResponse:
    """Convert an EdgeInstance to a status response."""
    return StatusResponse(
        instance_id=instance.server_id,
        geo_id=instance.geo_id,
        status=instance.status,
        last_heartbeat=_iso(instance.last_heartbeat),
        last_full_sync=_iso(instance.last_full_sync),
        last_delta_sync=_iso(instance.last_delta_sync),
        sync_queue_size=instance.sync_queue_size,
        needs_full_sync=instance.needs_full_sync,
    )
