"""HTTP client for the central node's sync API.

This module provides:
- HMACAuth: httpx auth flow that signs every request with the shared secret
- CentralClient: typed wrappers for register, heartbeat, full/delta pull and push
"""

from __future__ import annotations

import json
import logging
from collections.abc import Generator
from typing import Any

import httpx

from edgesync.core.config import EdgeConfig
from edgesync.core.errors import APIError, AuthenticationError, TransientNetworkError
from edgesync.core.signing import (
    HEADER_GEO_ID,
    HEADER_REGISTRATION_TOKEN,
    HEADER_SERVER_ID,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    format_timestamp,
    sign_request,
)
from edgesync.core.types import Operation

logger = logging.getLogger(__name__)

SYNC_TIMESTAMP_HEADER = "X-Sync-Timestamp"


class HMACAuth(httpx.Auth):
    """Sign requests with the edge's server id, scope and shared secret."""

    requires_request_body = True

    def __init__(self, server_id: str, geo_id: str, secret: str) -> None:
        self._server_id = server_id
        self._geo_id = geo_id
        self._secret = secret

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        timestamp = format_timestamp()
        body = json.loads(request.content) if request.content else None
        query = request.url.query.decode("ascii")
        url = f"{request.url.path}?{query}" if query else request.url.path

        request.headers[HEADER_SERVER_ID] = self._server_id
        request.headers[HEADER_GEO_ID] = self._geo_id
        request.headers[HEADER_TIMESTAMP] = timestamp
        request.headers[HEADER_SIGNATURE] = sign_request(
            self._secret, request.method, url, timestamp, body
        )
        yield request


class CentralClient:
    """HTTP client for the central sync API."""

    def __init__(self, config: EdgeConfig, transport: httpx.BaseTransport | None = None) -> None:
        """Initialize the client.

        Args:
            config: Edge configuration (URL, identity, secret, timeouts).
            transport: Optional httpx transport, for tests.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.central_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> CentralClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _auth(self) -> HMACAuth:
        if not self._config.shared_secret:
            raise AuthenticationError("edge node is not registered (no shared secret)")
        return HMACAuth(self._config.server_id, self._config.geo_id, self._config.shared_secret)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict):
            return str(body.get("error") or body.get("detail") or response.reason_phrase)
        return response.reason_phrase

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError(self._error_message(response))
        if response.status_code >= 400:
            raise APIError(self._error_message(response), response.status_code)
        return response

    def _request(self, method: str, path: str, signed: bool = True, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to TransientNetworkError."""
        if signed:
            kwargs["auth"] = self._auth()
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"timeout contacting central: {e}", timed_out=True) from e
        except httpx.RequestError as e:
            raise TransientNetworkError(f"cannot reach central: {e}") from e
        return self._handle_response(response)

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the central node is reachable and healthy."""
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Registration ===

    def register(
        self,
        registration_token: str,
        public_key: str | None = None,
    ) -> dict[str, Any]:
        """Register this edge node (unsigned, one-time token).

        Returns:
            Response with instanceId, sharedSecret and syncConfig.
        """
        response = self._request(
            "POST",
            "/sync/register",
            signed=False,
            headers={HEADER_REGISTRATION_TOKEN: registration_token},
            json={
                "serverId": self._config.server_id,
                "geoId": self._config.geo_id,
                "serverName": self._config.server_name,
                "publicKey": public_key,
            },
        )
        return response.json()

    def set_shared_secret(self, secret: str) -> None:
        """Use a new shared secret for subsequent requests."""
        self._config.shared_secret = secret

    # === Sync operations ===

    def heartbeat(self, metrics: dict[str, Any] | None, queue_size: int) -> dict[str, Any]:
        """Send a heartbeat.

        Returns:
            Response with needsFullSync, commands and serverTime.
        """
        response = self._request(
            "POST",
            "/sync/heartbeat",
            json={
                "metrics": metrics,
                "queueSize": queue_size,
                "timestamp": format_timestamp(),
            },
            timeout=self._config.heartbeat_timeout,
        )
        return response.json()

    def full_sync(self, entities: list[str]) -> tuple[dict[str, list[dict[str, Any]]], str | None]:
        """Pull a full snapshot of the given entity types.

        Returns:
            Tuple of (records by entity type, server snapshot timestamp).
        """
        response = self._request("POST", "/sync/full", json={"entities": entities})
        return response.json(), response.headers.get(SYNC_TIMESTAMP_HEADER)

    def get_changes(self, since: str | None, entities: list[str]) -> dict[str, Any]:
        """Pull records changed since a timestamp.

        Returns:
            Response with changes by entity type and syncTimestamp.
        """
        params = {"entities": ",".join(entities)}
        if since:
            params["since"] = since
        response = self._request("GET", "/sync/changes", params=params)
        return response.json()

    def push(self, entity: str, changes: list[dict[str, Any]]) -> dict[str, Any]:
        """Push a batch of changes of one entity type.

        Returns:
            Response whose ``results`` hold accepted, rejected and per-item errors.
        """
        response = self._request(
            "POST",
            "/sync/push",
            json={"entity": entity, "changes": changes, "geoId": self._config.geo_id},
        )
        return response.json()

    def push_item(
        self,
        operation: Operation | str,
        entity: str,
        record_id: str,
        data: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Push a single change.

        Returns:
            Response with id, version and syncedAt.
        """
        response = self._request(
            "POST",
            "/sync/item",
            json={
                "operation": Operation(operation).value,
                "entity": entity,
                "id": record_id,
                "data": data,
            },
        )
        return response.json()

    def status(self) -> dict[str, Any]:
        """Get this instance's status as seen by the central node."""
        response = self._request("GET", "/sync/status")
        return response.json()
