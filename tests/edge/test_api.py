"""Tests for the edge HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest

from edgesync.core.config import EdgeConfig
from edgesync.core.errors import APIError, AuthenticationError, TransientNetworkError
from edgesync.core.signing import verify_signature
from edgesync.edge.api import CentralClient

from .conftest import CENTRAL_URL


def verify(request: httpx.Request, secret: str) -> None:
    """Check a captured request the way the central node does."""
    body = json.loads(request.content) if request.content else None
    query = request.url.query.decode("ascii")
    url = f"{request.url.path}?{query}" if query else request.url.path
    verify_signature(
        secret,
        request.headers["X-Signature"],
        request.method,
        url,
        request.headers["X-Timestamp"],
        body,
    )


class TestSigning:
    """Tests for request signing."""

    def test_signed_headers(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """Signed calls carry identity, timestamp and a valid signature."""
        httpx_mock.add_response(
            url=f"{CENTRAL_URL}/sync/heartbeat",
            json={"success": True, "needsFullSync": False, "commands": [], "serverTime": "x"},
        )

        with CentralClient(edge_config) as client:
            client.heartbeat({"cpu": 1}, queue_size=3)

        request = httpx_mock.get_request()
        assert request.headers["X-Server-ID"] == "edge-a"
        assert request.headers["X-Geo-ID"] == "geo-a"
        verify(request, edge_config.shared_secret)
        assert json.loads(request.content)["queueSize"] == 3

    def test_query_covered(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """The query string is part of the signed URL."""
        httpx_mock.add_response(method="GET", json={"changes": {}, "syncTimestamp": "t"})

        with CentralClient(edge_config) as client:
            client.get_changes("2025-01-15T10:00:00+00:00", ["users", "guards"])

        request = httpx_mock.get_request()
        assert request.url.params["since"] == "2025-01-15T10:00:00+00:00"
        assert request.url.params["entities"] == "users,guards"
        verify(request, edge_config.shared_secret)

    def test_unregistered_client_refuses(self, edge_config: EdgeConfig) -> None:
        """Without a secret no signed request is sent."""
        edge_config.shared_secret = ""
        with CentralClient(edge_config) as client:
            with pytest.raises(AuthenticationError, match="not registered"):
                client.status()


class TestErrors:
    """Tests for error mapping."""

    def test_401_is_authentication_error(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """401 carries the central node's message."""
        httpx_mock.add_response(
            status_code=401, json={"success": False, "error": "timestamp too old"}
        )
        with CentralClient(edge_config) as client:
            with pytest.raises(AuthenticationError, match="timestamp too old"):
                client.status()

    def test_5xx_is_api_error(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """Other error statuses raise APIError with the status code."""
        httpx_mock.add_response(status_code=503, text="unavailable")
        with CentralClient(edge_config) as client:
            with pytest.raises(APIError) as exc_info:
                client.status()
        assert exc_info.value.status_code == 503

    def test_timeout(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """Timeouts become transient errors flagged as timed out."""
        httpx_mock.add_exception(httpx.ReadTimeout("too slow"))
        with CentralClient(edge_config) as client:
            with pytest.raises(TransientNetworkError) as exc_info:
                client.status()
        assert exc_info.value.timed_out is True

    def test_connection_refused(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """Connection failures become transient errors."""
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        with CentralClient(edge_config) as client:
            with pytest.raises(TransientNetworkError) as exc_info:
                client.status()
        assert exc_info.value.timed_out is False


class TestOperations:
    """Tests for the typed wrappers."""

    def test_health_check(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """Health check is unsigned and boolean."""
        httpx_mock.add_response(url=f"{CENTRAL_URL}/health", json={"status": "ok"})
        with CentralClient(edge_config) as client:
            assert client.health_check() is True
        assert "X-Signature" not in httpx_mock.get_request().headers

    def test_register_is_unsigned(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """Registration sends the token instead of a signature."""
        edge_config.shared_secret = ""
        httpx_mock.add_response(
            url=f"{CENTRAL_URL}/sync/register",
            status_code=201,
            json={"success": True, "instanceId": "edge-a", "sharedSecret": "f" * 64},
        )

        with CentralClient(edge_config) as client:
            response = client.register("REG-token")

        request = httpx_mock.get_request()
        assert request.headers["X-Registration-Token"] == "REG-token"
        assert "X-Signature" not in request.headers
        assert json.loads(request.content)["serverId"] == "edge-a"
        assert response["sharedSecret"] == "f" * 64

    def test_full_sync_returns_timestamp(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """The snapshot time comes from the X-Sync-Timestamp header."""
        httpx_mock.add_response(
            url=f"{CENTRAL_URL}/sync/full",
            json={"users": [], "guards": []},
            headers={"X-Sync-Timestamp": "2025-01-15T10:00:00+00:00"},
        )

        with CentralClient(edge_config) as client:
            snapshot, timestamp = client.full_sync(["users", "guards"])

        assert snapshot == {"users": [], "guards": []}
        assert timestamp == "2025-01-15T10:00:00+00:00"
        assert json.loads(httpx_mock.get_request().content) == {"entities": ["users", "guards"]}

    def test_push_includes_scope(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """Batch pushes carry the entity type and geoId."""
        httpx_mock.add_response(
            url=f"{CENTRAL_URL}/sync/push",
            json={"success": True, "results": {"accepted": 1, "rejected": 0, "errors": []}},
        )

        with CentralClient(edge_config) as client:
            result = client.push("guards", [{"operation": "create", "id": "g1", "data": {}}])

        body = json.loads(httpx_mock.get_request().content)
        assert body["entity"] == "guards"
        assert body["geoId"] == "geo-a"
        assert result["results"]["accepted"] == 1

    def test_push_item(self, httpx_mock, edge_config: EdgeConfig) -> None:  # type: ignore[no-untyped-def]
        """Single-item pushes send operation, entity, id and data."""
        httpx_mock.add_response(
            url=f"{CENTRAL_URL}/sync/item",
            json={"success": True, "id": "u1", "version": 1, "syncedAt": "t"},
        )

        with CentralClient(edge_config) as client:
            client.push_item("delete", "users", "u1", None)

        assert json.loads(httpx_mock.get_request().content) == {
            "operation": "delete",
            "entity": "users",
            "id": "u1",
            "data": None,
        }
