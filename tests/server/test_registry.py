"""Tests for the edge instance registry."""

import threading
from collections.abc import Generator
from pathlib import Path

import pytest

from edgesync.core.errors import AuthenticationError, ValidationError
from edgesync.core.types import InstanceStatus
from edgesync.server.database import Database
from edgesync.server.registry import (
    DuplicateInstanceError,
    InstanceRegistry,
    UnknownInstanceError,
)


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def registry(db: Database) -> InstanceRegistry:
    """Create a registry over the test database."""
    return InstanceRegistry(db)


class TestRegister:
    """Tests for InstanceRegistry.register."""

    def test_register_returns_secret(self, registry: InstanceRegistry) -> None:
        """Registration creates an active instance and a 64-hex-char secret."""
        token = registry.create_registration_token()

        registration = registry.register(token, "srv-1", "geo-a", name="Site 1")

        assert len(registration.shared_secret) == 64
        assert registration.instance.status == InstanceStatus.ACTIVE.value
        assert registration.instance.needs_full_sync is True
        assert registry.lookup_secret("srv-1") == registration.shared_secret

    def test_token_is_single_use(self, registry: InstanceRegistry) -> None:
        """A token cannot register a second instance."""
        token = registry.create_registration_token()
        registry.register(token, "srv-1", "geo-a")

        with pytest.raises(AuthenticationError, match="invalid registration token"):
            registry.register(token, "srv-2", "geo-a")

    def test_racing_registrations_share_one_token(
        self, db: Database, registry: InstanceRegistry, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Two registrations that both pass the token check create one instance."""
        token = registry.create_registration_token()
        both_checked = threading.Barrier(2)
        validate = db.validate_registration_token

        def validate_together(raw: str) -> object:
            result = validate(raw)
            both_checked.wait(5)
            return result

        monkeypatch.setattr(db, "validate_registration_token", validate_together)
        outcomes: list[str] = []

        def attempt(server_id: str) -> None:
            try:
                registry.register(token, server_id, "geo-a")
                outcomes.append("registered")
            except AuthenticationError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=attempt, args=(f"srv-{n}",)) for n in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert sorted(outcomes) == ["registered", "rejected"]
        assert len(registry.list()) == 1

    def test_missing_token(self, registry: InstanceRegistry) -> None:
        """No token means no registration."""
        with pytest.raises(AuthenticationError):
            registry.register(None, "srv-1", "geo-a")

    def test_expired_token(self, registry: InstanceRegistry) -> None:
        """An expired token is rejected."""
        token = registry.create_registration_token(ttl_hours=-1)
        with pytest.raises(AuthenticationError):
            registry.register(token, "srv-1", "geo-a")

    def test_missing_ids(self, registry: InstanceRegistry) -> None:
        """serverId and geoId are required."""
        token = registry.create_registration_token()
        with pytest.raises(ValidationError, match="serverId and geoId are required"):
            registry.register(token, "srv-1", None)

    def test_duplicate_server_id(self, registry: InstanceRegistry) -> None:
        """A server id can only be registered once."""
        registry.register(registry.create_registration_token(), "srv-1", "geo-a")
        with pytest.raises(DuplicateInstanceError):
            registry.register(registry.create_registration_token(), "srv-1", "geo-b")

    def test_failed_registration_keeps_token(self, registry: InstanceRegistry) -> None:
        """A token is only consumed by a successful registration."""
        registry.register(registry.create_registration_token(), "srv-1", "geo-a")
        token = registry.create_registration_token()

        with pytest.raises(DuplicateInstanceError):
            registry.register(token, "srv-1", "geo-a")
        registry.register(token, "srv-2", "geo-a")


class TestOperatorActions:
    """Tests for revoke, activate, rotate and commands."""

    @pytest.fixture
    def registered(self, registry: InstanceRegistry) -> str:
        registry.register(registry.create_registration_token(), "srv-1", "geo-a")
        return "srv-1"

    def test_revoke_and_activate(self, registry: InstanceRegistry, registered: str) -> None:
        """Status follows operator actions."""
        registry.revoke(registered)
        instance = registry.get(registered)
        assert instance is not None and instance.status == "revoked"

        registry.activate(registered)
        instance = registry.get(registered)
        assert instance is not None and instance.status == "active"

    def test_deactivate(self, registry: InstanceRegistry, registered: str) -> None:
        """Deactivation marks the instance inactive."""
        registry.deactivate(registered)
        assert [i.server_id for i in registry.list(InstanceStatus.INACTIVE)] == [registered]

    def test_unknown_instance(self, registry: InstanceRegistry) -> None:
        """Actions on unknown servers raise UnknownInstanceError."""
        with pytest.raises(UnknownInstanceError):
            registry.revoke("nope")
        with pytest.raises(UnknownInstanceError):
            registry.rotate_secret("nope")

    def test_rotate_secret(self, registry: InstanceRegistry, registered: str) -> None:
        """Rotation replaces the stored secret."""
        old = registry.lookup_secret(registered)
        new = registry.rotate_secret(registered)
        assert new != old
        assert registry.lookup_secret(registered) == new

    def test_send_full_sync_sets_flag(
        self, registry: InstanceRegistry, db: Database, registered: str
    ) -> None:
        """A full_sync command also sets needs_full_sync."""
        instance = registry.get(registered)
        assert instance is not None
        db.mark_full_sync_done(instance.id)

        registry.send_command(registered, "full_sync")

        refreshed = registry.get(registered)
        assert refreshed is not None and refreshed.needs_full_sync is True

    def test_unknown_command(self, registry: InstanceRegistry, registered: str) -> None:
        """Commands edges do not understand are refused."""
        with pytest.raises(ValidationError, match="unknown command"):
            registry.send_command(registered, "reboot")

    def test_heartbeat_delivers_commands(
        self, registry: InstanceRegistry, registered: str
    ) -> None:
        """Heartbeats return queued commands once."""
        registry.send_command(registered, "sync_now")
        instance = registry.get(registered)
        assert instance is not None

        updated, commands = registry.record_heartbeat(instance, {"cpu": 1}, queue_size=3)

        assert [c.command for c in commands] == ["sync_now"]
        assert updated.sync_queue_size == 3
        _, again = registry.record_heartbeat(instance, None, queue_size=0)
        assert again == []
