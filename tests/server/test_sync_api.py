"""Tests for the sync API used by edge nodes."""

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from edgesync.core.config import CentralSettings
from edgesync.core.signing import format_timestamp, sign_request
from edgesync.edge.api import HMACAuth
from edgesync.server.app import create_app
from edgesync.server.database import Database
from edgesync.server.ratelimit import RateLimiter
from edgesync.server.registry import InstanceRegistry


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def client(db: Database) -> TestClient:
    """Create a test client with the app."""
    return TestClient(create_app(db))


@pytest.fixture
def secret(db: Database) -> str:
    """Register edge-a in geo-a and return its shared secret."""
    registry = InstanceRegistry(db)
    token = registry.create_registration_token()
    return registry.register(token, "edge-a", "geo-a").shared_secret


@pytest.fixture
def auth(secret: str) -> HMACAuth:
    """Signing auth for edge-a."""
    return HMACAuth("edge-a", "geo-a", secret)


def signed_headers(
    secret: str,
    method: str,
    url: str,
    body: Any = None,
    timestamp: str | None = None,
    server_id: str = "edge-a",
    geo_id: str = "geo-a",
) -> dict[str, str]:
    """Build authentication headers by hand."""
    timestamp = timestamp or format_timestamp()
    return {
        "X-Server-ID": server_id,
        "X-Geo-ID": geo_id,
        "X-Timestamp": timestamp,
        "X-Signature": sign_request(secret, method, url, timestamp, body),
    }


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_check(self, client: TestClient) -> None:
        """Health endpoint should return OK without authentication."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestRegister:
    """Tests for POST /sync/register."""

    def test_register_returns_secret(self, client: TestClient, db: Database) -> None:
        """A valid token yields an instance id, a secret and timing hints."""
        token = InstanceRegistry(db).create_registration_token()

        response = client.post(
            "/sync/register",
            headers={"X-Registration-Token": token},
            json={"serverId": "srv-1", "geoId": "geo-a", "serverName": "Site 1"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["instanceId"] == "srv-1"
        assert len(data["sharedSecret"]) == 64
        assert data["syncConfig"]["heartbeatInterval"] == 300

    def test_invalid_token(self, client: TestClient) -> None:
        """An unknown token is rejected with 401."""
        response = client.post(
            "/sync/register",
            headers={"X-Registration-Token": "REG-nope"},
            json={"serverId": "srv-1", "geoId": "geo-a"},
        )
        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "invalid registration token"}

    def test_missing_geo_id(self, client: TestClient, db: Database) -> None:
        """Missing identifiers are a 400 once the token is valid."""
        token = InstanceRegistry(db).create_registration_token()
        response = client.post(
            "/sync/register",
            headers={"X-Registration-Token": token},
            json={"serverId": "srv-1"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "serverId and geoId are required"

    def test_duplicate_server(self, client: TestClient, db: Database, secret: str) -> None:
        """Registering an existing server id conflicts."""
        token = InstanceRegistry(db).create_registration_token()
        response = client.post(
            "/sync/register",
            headers={"X-Registration-Token": token},
            json={"serverId": "edge-a", "geoId": "geo-a"},
        )
        assert response.status_code == 409

    def test_rate_limited(self, db: Database) -> None:
        """Too many attempts from one client get 429."""
        client = TestClient(create_app(db, rate_limiter=RateLimiter(limit=2, window=60)))
        statuses = [
            client.post(
                "/sync/register",
                headers={"X-Registration-Token": "REG-nope"},
                json={"serverId": "srv-1", "geoId": "geo-a"},
            ).status_code
            for _ in range(3)
        ]
        assert statuses == [401, 401, 429]


class TestAuthentication:
    """Tests for signed request verification."""

    def test_signed_request_accepted(self, client: TestClient, auth: HMACAuth) -> None:
        """A correctly signed request passes."""
        response = client.get("/sync/status", auth=auth)
        assert response.status_code == 200
        assert response.json()["instanceId"] == "edge-a"

    def test_missing_headers(self, client: TestClient) -> None:
        """Unsigned requests are rejected."""
        response = client.get("/sync/status")
        assert response.status_code == 401
        assert response.json()["error"] == "missing authentication headers"

    def test_old_timestamp(self, client: TestClient, secret: str) -> None:
        """A 10-minute-old timestamp is rejected before the signature is checked."""
        old = format_timestamp(datetime.now(UTC) - timedelta(minutes=10))
        headers = signed_headers(secret, "GET", "/sync/status", timestamp=old)

        response = client.get("/sync/status", headers=headers)

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "timestamp too old"}

    def test_future_timestamp(self, client: TestClient, secret: str) -> None:
        """A timestamp far in the future is rejected."""
        future = format_timestamp(datetime.now(UTC) + timedelta(minutes=10))
        headers = signed_headers(secret, "GET", "/sync/status", timestamp=future)

        response = client.get("/sync/status", headers=headers)

        assert response.json()["error"] == "timestamp too far in future"

    def test_substituted_signature(self, client: TestClient, secret: str) -> None:
        """Any other signature value is rejected."""
        headers = signed_headers(secret, "GET", "/sync/status")
        headers["X-Signature"] = "0" * 64

        response = client.get("/sync/status", headers=headers)

        assert response.status_code == 401
        assert response.json()["error"] == "invalid signature"

    def test_non_ascii_signature(self, client: TestClient, secret: str) -> None:
        """A signature header with non-ASCII bytes is a 401, not a server error."""
        headers: dict[str, Any] = signed_headers(secret, "POST", "/sync/heartbeat", {})
        headers["X-Signature"] = b"\xe9" * 64

        response = client.post("/sync/heartbeat", headers=headers, json={})

        assert response.status_code == 401
        assert response.json()["error"] == "invalid signature"

    def test_body_tampering(self, client: TestClient, secret: str) -> None:
        """The signature covers the body."""
        headers = signed_headers(secret, "POST", "/sync/heartbeat", {"queueSize": 1})
        response = client.post("/sync/heartbeat", headers=headers, json={"queueSize": 99})
        assert response.json()["error"] == "invalid signature"

    def test_query_is_signed(self, client: TestClient, secret: str) -> None:
        """Changing the query string breaks the signature."""
        headers = signed_headers(secret, "GET", "/sync/changes?entities=users")
        response = client.get("/sync/changes?entities=guards", headers=headers)
        assert response.json()["error"] == "invalid signature"

    def test_unknown_server(self, client: TestClient, secret: str) -> None:
        """An unknown server id fails as an invalid signature."""
        headers = signed_headers(secret, "GET", "/sync/status", server_id="ghost")
        response = client.get("/sync/status", headers=headers)
        assert response.json()["error"] == "invalid signature"

    def test_revoked_instance(self, client: TestClient, db: Database, auth: HMACAuth) -> None:
        """Revoked instances are refused even with a valid signature."""
        InstanceRegistry(db).revoke("edge-a")
        response = client.get("/sync/status", auth=auth)
        assert response.status_code == 401
        assert response.json()["error"] == "unknown or inactive server"

    def test_wrong_scope(self, client: TestClient, secret: str) -> None:
        """The geo header must match the registered scope."""
        response = client.get("/sync/status", auth=HMACAuth("edge-a", "geo-b", secret))
        assert response.json()["error"] == "unknown or inactive server"


class TestHeartbeat:
    """Tests for POST /sync/heartbeat."""

    def test_new_instance_needs_full_sync(self, client: TestClient, auth: HMACAuth) -> None:
        """A freshly registered instance is told to fully sync."""
        response = client.post(
            "/sync/heartbeat",
            auth=auth,
            json={"metrics": {"cpu": 3}, "queueSize": 2, "timestamp": format_timestamp()},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["needsFullSync"] is True
        assert data["commands"] == []
        assert "serverTime" in data

    def test_heartbeat_recorded(self, client: TestClient, db: Database, auth: HMACAuth) -> None:
        """Queue size and metrics are stored."""
        client.post("/sync/heartbeat", auth=auth, json={"metrics": {"cpu": 3}, "queueSize": 7})
        instance = db.get_instance("edge-a")
        assert instance is not None
        assert instance.sync_queue_size == 7
        assert instance.last_heartbeat is not None

    def test_delivers_commands(self, client: TestClient, db: Database, auth: HMACAuth) -> None:
        """Queued commands ride on the next heartbeat only."""
        InstanceRegistry(db).send_command("edge-a", "maintenance_on")

        first = client.post("/sync/heartbeat", auth=auth, json={"queueSize": 0}).json()
        second = client.post("/sync/heartbeat", auth=auth, json={"queueSize": 0}).json()

        assert [c["command"] for c in first["commands"]] == ["maintenance_on"]
        assert second["commands"] == []


class TestFullSync:
    """Tests for POST /sync/full."""

    def test_returns_requested_entities(
        self, client: TestClient, db: Database, auth: HMACAuth
    ) -> None:
        """The snapshot has one key per requested entity type."""
        db.upsert_record("users", "u1", {"id": "u1", "name": "Ann"}, geo_id="geo-a")
        db.upsert_record("guards", "g1", {"id": "g1"}, geo_id="geo-a")
        db.upsert_record("guards", "g2", {"id": "g2"}, geo_id="geo-b")

        response = client.post("/sync/full", auth=auth, json={"entities": ["users", "guards"]})

        assert response.status_code == 200
        data = response.json()
        assert set(data) == {"users", "guards"}
        assert [r["id"] for r in data["users"]] == ["u1"]
        assert [r["id"] for r in data["guards"]] == ["g1"]
        assert data["users"][0]["version"] == 1
        assert "X-Sync-Timestamp" in response.headers

    def test_unknown_entity_is_empty(self, client: TestClient, auth: HMACAuth) -> None:
        """Unknown entity types map to an empty list."""
        response = client.post("/sync/full", auth=auth, json={"entities": ["widgets"]})
        assert response.json() == {"widgets": []}

    def test_clears_needs_full_sync(
        self, client: TestClient, db: Database, auth: HMACAuth
    ) -> None:
        """Serving a full sync clears the flag."""
        client.post("/sync/full", auth=auth, json={"entities": ["users"]})
        heartbeat = client.post("/sync/heartbeat", auth=auth, json={"queueSize": 0}).json()
        assert heartbeat["needsFullSync"] is False


class TestChanges:
    """Tests for GET /sync/changes."""

    def test_changes_since(self, client: TestClient, db: Database, auth: HMACAuth) -> None:
        """Only records changed after `since` are returned, deletions included."""
        db.upsert_record("users", "u-old", {}, geo_id="geo-a")
        since = format_timestamp()
        db.upsert_record("users", "u-new", {}, geo_id="geo-a")
        db.soft_delete_record("users", "u-old")

        response = client.get(
            "/sync/changes", params={"since": since, "entities": "users"}, auth=auth
        )

        assert response.status_code == 200
        data = response.json()
        assert data["totalChanges"] == 2
        changes = {c["id"]: c for c in data["changes"]["users"]}
        assert changes["u-new"]["operation"] == "update"
        assert changes["u-old"]["operation"] == "delete"
        assert changes["u-old"]["deletedAt"] is not None
        assert "syncTimestamp" in data

    def test_without_since_returns_everything(
        self, client: TestClient, db: Database, auth: HMACAuth
    ) -> None:
        """Omitting `since` means from the beginning."""
        db.upsert_record("groups", "grp1", {}, geo_id="geo-a")
        data = client.get("/sync/changes", params={"entities": "groups"}, auth=auth).json()
        assert [c["id"] for c in data["changes"]["groups"]] == ["grp1"]

    def test_page_limit_resumes(self, db: Database, auth: HMACAuth) -> None:
        """A capped delta is resumable from its syncTimestamp without gaps."""
        client = TestClient(create_app(db, settings=CentralSettings(changes_limit=2)))
        for n in range(3):
            db.upsert_record("users", f"u{n}", {}, geo_id="geo-a")

        first = client.get("/sync/changes", params={"entities": "users"}, auth=auth).json()

        assert [c["id"] for c in first["changes"]["users"]] == ["u0", "u1"]
        assert first["hasMore"] is True
        assert first["syncTimestamp"] == first["changes"]["users"][-1]["updatedAt"]

        second = client.get(
            "/sync/changes",
            params={"entities": "users", "since": first["syncTimestamp"]},
            auth=auth,
        ).json()

        assert [c["id"] for c in second["changes"]["users"]] == ["u2"]
        assert second["hasMore"] is False

    def test_invalid_since(self, client: TestClient, auth: HMACAuth) -> None:
        """An unparseable `since` is a 400."""
        response = client.get("/sync/changes", params={"since": "last week"}, auth=auth)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid since timestamp: last week"


class TestPush:
    """Tests for POST /sync/push."""

    def test_push_one_create(self, client: TestClient, db: Database, auth: HMACAuth) -> None:
        """A single valid create is accepted."""
        response = client.post(
            "/sync/push",
            auth=auth,
            json={
                "entity": "guards",
                "geoId": "geo-a",
                "changes": [{"operation": "create", "id": "g1", "data": {"name": "Ann"}}],
            },
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "results": {"accepted": 1, "rejected": 0, "errors": []},
        }
        record = db.get_record("guards", "g1")
        assert record is not None
        assert record.geo_id == "geo-a"

    def test_items_fail_independently(self, client: TestClient, auth: HMACAuth) -> None:
        """A bad item is reported without blocking the others."""
        response = client.post(
            "/sync/push",
            auth=auth,
            json={
                "entity": "users",
                "changes": [
                    {"operation": "create", "id": "u1", "data": {}},
                    {"operation": "create", "data": {"name": "no id"}},
                    {"operation": "update", "id": "u1", "data": {"name": "x"}},
                ],
            },
        )

        data = response.json()["results"]
        assert data["accepted"] == 2
        assert data["rejected"] == 1
        assert data["errors"] == [{"index": 1, "id": None, "error": "missing record id"}]

    def test_geo_mismatch(self, client: TestClient, auth: HMACAuth) -> None:
        """A batch claiming another scope is refused as a whole."""
        response = client.post(
            "/sync/push",
            auth=auth,
            json={"entity": "users", "geoId": "geo-b", "changes": []},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "geoId does not match instance scope"

    def test_missing_entity(self, client: TestClient, auth: HMACAuth) -> None:
        """Schema violations are reported as 400."""
        response = client.post("/sync/push", auth=auth, json={"changes": []})
        assert response.status_code == 400
        assert response.json()["success"] is False


class TestItem:
    """Tests for POST /sync/item."""

    def test_create_then_delete(self, client: TestClient, db: Database, auth: HMACAuth) -> None:
        """Single items bump the version on every write."""
        created = client.post(
            "/sync/item",
            auth=auth,
            json={"operation": "create", "entity": "users", "id": "u1", "data": {"n": 1}},
        ).json()
        deleted = client.post(
            "/sync/item",
            auth=auth,
            json={"operation": "delete", "entity": "users", "id": "u1"},
        ).json()

        assert created["id"] == "u1"
        assert created["version"] == 1
        assert deleted["version"] == 2
        record = db.get_record("users", "u1")
        assert record is not None and record.deleted_at is not None

    def test_delete_of_unknown_record(self, client: TestClient, auth: HMACAuth) -> None:
        """Deleting something the central node never had is not an error."""
        response = client.post(
            "/sync/item",
            auth=auth,
            json={"operation": "delete", "entity": "users", "id": "ghost"},
        )
        assert response.status_code == 200
        assert response.json()["version"] is None

    def test_invalid_item(self, client: TestClient, auth: HMACAuth) -> None:
        """Validation failures are a 400 with the reason."""
        response = client.post(
            "/sync/item",
            auth=auth,
            json={"operation": "create", "entity": "widgets", "id": "w1", "data": {}},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "unknown entity: widgets"


class TestStatus:
    """Tests for GET /sync/status."""

    def test_status(self, client: TestClient, auth: HMACAuth) -> None:
        """Status reflects the instance's sync markers."""
        data = client.get("/sync/status", auth=auth).json()
        assert data["instanceId"] == "edge-a"
        assert data["geoId"] == "geo-a"
        assert data["status"] == "active"
        assert data["needsFullSync"] is True
        assert data["lastFullSync"] is None
