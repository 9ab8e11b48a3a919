"""Sync API routes used by edge nodes.

All routes except registration require a signed request (see
``deps.authenticate_edge``).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status

from edgesync.core.config import DEFAULT_ENTITIES, CentralSettings
from edgesync.core.errors import ValidationError
from edgesync.core.signing import format_timestamp, parse_timestamp
from edgesync.server.api.deps import (
    authenticate_edge,
    get_db,
    get_rate_limiter,
    get_registry,
    get_settings,
)
from edgesync.server.database import Database
from edgesync.server.models import EdgeInstance
from edgesync.server.ratelimit import RateLimiter
from edgesync.server.registry import DuplicateInstanceError, InstanceRegistry
from edgesync.server.schemas import (
    CommandResponse,
    FullSyncRequest,
    HeartbeatRequest,
    HeartbeatResponse,
    ItemRequest,
    ItemResponse,
    PushError,
    PushRequest,
    PushResponse,
    PushResults,
    RegisterRequest,
    RegisterResponse,
    StatusResponse,
    SyncConfigResponse,
    change_to_dict,
    instance_to_status,
    record_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
SYNC_TIMESTAMP_HEADER = "X-Sync-Timestamp"


def _split_entities(value: str | None) -> list[str]:
    if not value:
        return list(DEFAULT_ENTITIES)
    return [e.strip() for e in value.split(",") if e.strip()]


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
)
def register(
    body: RegisterRequest,
    request: Request,
    x_registration_token: str | None = Header(default=None),
    registry: InstanceRegistry = Depends(get_registry),
    settings: CentralSettings = Depends(get_settings),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RegisterResponse:
    """Register a new edge instance with a one-time registration token."""
    client = request.client.host if request.client else "unknown"
    if not limiter.hit(client):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="too many registration attempts",
        )

    try:
        registration = registry.register(
            x_registration_token,
            server_id=body.server_id,
            geo_id=body.geo_id,
            name=body.server_name,
            public_key=body.public_key,
        )
    except DuplicateInstanceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return RegisterResponse(
        instance_id=registration.instance.server_id,
        shared_secret=registration.shared_secret,
        sync_config=SyncConfigResponse(
            heartbeat_interval=settings.heartbeat_interval,
            sync_interval=settings.sync_interval,
            batch_size=settings.batch_size,
        ),
    )


@router.post("/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    body: HeartbeatRequest,
    instance: EdgeInstance = Depends(authenticate_edge),
    registry: InstanceRegistry = Depends(get_registry),
) -> HeartbeatResponse:
    """Record liveness and deliver pending commands."""
    updated, commands = registry.record_heartbeat(instance, body.metrics, body.queue_size)
    return HeartbeatResponse(
        needs_full_sync=updated.needs_full_sync,
        commands=[
            CommandResponse(
                id=cmd.id,
                command=cmd.command,
                payload=cmd.payload,
                created_at=format_timestamp(cmd.created_at),
            )
            for cmd in commands
        ],
        server_time=format_timestamp(),
    )


@router.post("/full")
def full_sync(
    response: Response,
    body: FullSyncRequest | None = None,
    instance: EdgeInstance = Depends(authenticate_edge),
    db: Database = Depends(get_db),
) -> dict[str, list[dict[str, Any]]]:
    """Return a snapshot of every requested entity type visible to the instance.

    Unknown entity types map to an empty list. The snapshot time goes in the
    X-Sync-Timestamp header so the edge can continue with delta syncs.
    """
    sync_timestamp = format_timestamp()
    entities = body.entities if body and body.entities is not None else list(DEFAULT_ENTITIES)

    snapshot = {
        entity: [record_to_dict(r) for r in db.list_records(entity, instance.geo_id)]
        for entity in entities
    }
    db.mark_full_sync_done(instance.id)

    logger.info(
        "Full sync for %s: %d records across %d entity types",
        instance.server_id,
        sum(len(records) for records in snapshot.values()),
        len(snapshot),
    )
    response.headers[SYNC_TIMESTAMP_HEADER] = sync_timestamp
    return snapshot


@router.get("/changes")
def get_changes(
    since: str | None = Query(
        default=None,
        description="ISO 8601 timestamp. Get changes after this time.",
    ),
    entities: str | None = Query(
        default=None,
        description="Comma-separated entity types (default: all).",
    ),
    instance: EdgeInstance = Depends(authenticate_edge),
    db: Database = Depends(get_db),
    settings: CentralSettings = Depends(get_settings),
) -> dict[str, Any]:
    """Get records changed since a timestamp, soft deletions included.

    Clients should store ``syncTimestamp`` from the response and send it as
    ``since`` on their next call. When a type hits the page limit,
    ``hasMore`` is true and ``syncTimestamp`` is the last updatedAt every
    type was fully delivered up to.
    """
    sync_timestamp = format_timestamp()
    if since:
        try:
            since_dt = parse_timestamp(since)
        except ValueError as e:
            raise ValidationError(f"invalid since timestamp: {since}") from e
    else:
        since_dt = EPOCH

    changes: dict[str, list[dict[str, Any]]] = {}
    resume_at: datetime | None = None
    for entity in _split_entities(entities):
        records, truncated = db.get_changes_page(
            entity, since_dt, instance.geo_id, limit=settings.changes_limit
        )
        changes[entity] = [change_to_dict(r) for r in records]
        if truncated:
            last = records[-1].updated_at
            if resume_at is None or last < resume_at:
                resume_at = last

    total = sum(len(items) for items in changes.values())
    db.mark_delta_sync_done(instance.id)
    if total:
        logger.info("Delta sync for %s: %d changes since %s", instance.server_id, total, since)

    return {
        "success": True,
        "changes": changes,
        "totalChanges": total,
        "hasMore": resume_at is not None,
        "syncTimestamp": format_timestamp(resume_at) if resume_at else sync_timestamp,
    }


@router.post("/push", response_model=PushResponse)
def push_changes(
    body: PushRequest,
    instance: EdgeInstance = Depends(authenticate_edge),
    db: Database = Depends(get_db),
) -> PushResponse:
    """Apply a batch of edge changes; each item succeeds or fails on its own."""
    if body.geo_id and body.geo_id != instance.geo_id:
        raise ValidationError("geoId does not match instance scope")

    accepted = 0
    errors: list[PushError] = []
    for index, change in enumerate(body.changes):
        try:
            db.apply_edge_change(body.entity, change, instance)
            accepted += 1
        except ValidationError as e:
            change_id = change.get("id") if isinstance(change, dict) else None
            errors.append(
                PushError(
                    index=index,
                    id=str(change_id) if change_id is not None else None,
                    error=str(e),
                )
            )

    if errors:
        logger.warning(
            "Push from %s (%s): %d accepted, %d rejected",
            instance.server_id,
            body.entity,
            accepted,
            len(errors),
        )
    else:
        logger.info("Push from %s (%s): %d accepted", instance.server_id, body.entity, accepted)

    return PushResponse(
        results=PushResults(accepted=accepted, rejected=len(errors), errors=errors)
    )


@router.post("/item", response_model=ItemResponse)
def push_item(
    body: ItemRequest,
    instance: EdgeInstance = Depends(authenticate_edge),
    db: Database = Depends(get_db),
) -> ItemResponse:
    """Apply a single edge change."""
    change = {"operation": body.operation, "id": body.id, "data": body.data}
    record = db.apply_edge_change(body.entity, change, instance)

    if record is not None:
        record_id, version = record.record_id, record.version
    else:
        # Delete of a record the central node never had
        record_id = str(body.id or (body.data or {}).get("id"))
        version = None

    return ItemResponse(id=record_id, version=version, synced_at=format_timestamp())


@router.get("/status", response_model=StatusResponse)
def sync_status(
    instance: EdgeInstance = Depends(authenticate_edge),
) -> StatusResponse:
    """Get the sync status of the calling instance."""
    return instance_to_status(instance)
