"""FastAPI dependencies for API routes."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import Request
from starlette.concurrency import run_in_threadpool

from edgesync.core.config import CentralSettings
from edgesync.core.errors import AuthenticationError, ValidationError
from edgesync.core.signing import (
    HEADER_GEO_ID,
    HEADER_SERVER_ID,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    check_freshness,
    verify_signature,
)
from edgesync.core.types import InstanceStatus
from edgesync.server.database import Database
from edgesync.server.models import EdgeInstance
from edgesync.server.ratelimit import RateLimiter
from edgesync.server.registry import InstanceRegistry

logger = logging.getLogger(__name__)


def get_db(request: Request) -> Database:
    """Get database from app state."""
    db: Database = request.app.state.db
    return db


def get_settings(request: Request) -> CentralSettings:
    """Get central settings from app state."""
    settings: CentralSettings = request.app.state.settings
    return settings


def get_registry(request: Request) -> InstanceRegistry:
    """Get an instance registry bound to the app database."""
    return InstanceRegistry(get_db(request))


def get_rate_limiter(request: Request) -> RateLimiter:
    """Get the registration rate limiter from app state."""
    limiter: RateLimiter = request.app.state.rate_limiter
    return limiter


def signed_url(request: Request) -> str:
    """Path plus raw query string, as covered by the signature."""
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


async def read_json_body(request: Request) -> Any:
    """Parse the request body as JSON, or None when empty."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ValidationError("invalid JSON body") from e


async def authenticate_edge(request: Request) -> EdgeInstance:
    """Authenticate a signed edge request and return its instance.

    Checks, in order: required headers, timestamp freshness, signature with
    the instance's shared secret, and that the instance is active in the
    claimed scope.

    Raises:
        AuthenticationError: On the first failed check.
    """
    headers = request.headers
    server_id = headers.get(HEADER_SERVER_ID)
    geo_id = headers.get(HEADER_GEO_ID)
    timestamp = headers.get(HEADER_TIMESTAMP)
    signature = headers.get(HEADER_SIGNATURE)

    stage = "headers"
    try:
        if not (server_id and geo_id and timestamp and signature):
            raise AuthenticationError("missing authentication headers")

        stage = "timestamp"
        check_freshness(timestamp, window=get_settings(request).timestamp_window)

        stage = "signature"
        body = await read_json_body(request)
        registry = get_registry(request)
        secret = await run_in_threadpool(registry.lookup_secret, server_id)
        verify_signature(secret, signature, request.method, signed_url(request), timestamp, body)

        stage = "instance"
        instance = await run_in_threadpool(registry.get, server_id)
        if (
            instance is None
            or instance.status != InstanceStatus.ACTIVE.value
            or instance.geo_id != geo_id
        ):
            raise AuthenticationError("unknown or inactive server")
    except AuthenticationError as e:
        logger.warning(
            "Rejected %s %s from %s at %s check: %s",
            request.method,
            request.url.path,
            server_id or "<anonymous>",
            stage,
            e,
        )
        raise

    request.state.edge_instance = instance
    return instance
