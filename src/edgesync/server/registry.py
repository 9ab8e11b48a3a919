"""Registry of edge instances known to the central node.

Wraps the database with the lifecycle rules of an instance: registration
with a one-time token, secret lookup for request verification, heartbeat
bookkeeping, and operator actions (revoke, activate, rotate, command).
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from edgesync.core.errors import AuthenticationError, EdgeSyncError, ValidationError
from edgesync.core.types import InstanceStatus

if TYPE_CHECKING:
    from edgesync.server.database import Database
    from edgesync.server.models import EdgeInstance, RemoteCommand

logger = logging.getLogger(__name__)

KNOWN_COMMANDS = frozenset({"full_sync", "sync_now", "maintenance_on", "maintenance_off"})


class DuplicateInstanceError(EdgeSyncError):
    """Raised when a server identifier is already registered."""


class UnknownInstanceError(EdgeSyncError):
    """Raised when an operator action targets an unknown server identifier."""


@dataclass
class Registration:
    """Result of a successful registration."""

    instance: EdgeInstance
    shared_secret: str


def generate_secret() -> str:
    """Generate a new 256-bit shared secret."""
    return secrets.token_hex(32)


class InstanceRegistry:
    """Lifecycle operations on edge instances."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def register(
        self,
        registration_token: str | None,
        server_id: str | None,
        geo_id: str | None,
        name: str | None = None,
        public_key: str | None = None,
    ) -> Registration:
        """Register a new edge instance.

        The token is checked before anything is written. It is consumed in
        the same transaction that creates the instance, so one token yields
        at most one instance.

        Raises:
            AuthenticationError: If the token is missing, unknown, used or expired.
            ValidationError: If server_id or geo_id is missing.
            DuplicateInstanceError: If server_id is already registered.
        """
        if not registration_token or self._db.validate_registration_token(
            registration_token
        ) is None:
            logger.warning("Registration rejected for %s: invalid token", server_id)
            raise AuthenticationError("invalid registration token")

        if not server_id or not geo_id:
            raise ValidationError("serverId and geoId are required")

        if self._db.get_instance(server_id) is not None:
            raise DuplicateInstanceError(f"server already registered: {server_id}")

        secret = generate_secret()
        try:
            instance = self._db.register_with_token(
                registration_token,
                server_id=server_id,
                geo_id=geo_id,
                name=name or server_id,
                shared_secret=secret,
                public_key=public_key,
            )
        except IntegrityError as e:
            raise DuplicateInstanceError(f"server already registered: {server_id}") from e

        if instance is None:
            # Another registration consumed the token after the check above
            logger.warning("Registration rejected for %s: token already used", server_id)
            raise AuthenticationError("invalid registration token")

        logger.info("Registered edge instance %s (geo %s)", server_id, geo_id)
        return Registration(instance=instance, shared_secret=secret)

    def create_registration_token(self, ttl_hours: int = 24) -> str:
        """Issue a one-time registration token for an operator."""
        raw_token, token = self._db.create_registration_token(timedelta(hours=ttl_hours))
        logger.info("Issued registration token (expires %s)", token.expires_at.isoformat())
        return raw_token

    def lookup_secret(self, server_id: str) -> str | None:
        """Get the shared secret of a registered instance, if any."""
        instance = self._db.get_instance(server_id)
        return instance.shared_secret if instance else None

    def get(self, server_id: str) -> EdgeInstance | None:
        """Get an instance by server identifier."""
        return self._db.get_instance(server_id)

    def list(self, status: InstanceStatus | None = None) -> list[EdgeInstance]:
        """List instances, optionally filtered by status."""
        return self._db.list_instances(status)

    def record_heartbeat(
        self,
        instance: EdgeInstance,
        metrics: dict[str, Any] | None,
        queue_size: int,
        command_limit: int = 10,
    ) -> tuple[EdgeInstance, list[RemoteCommand]]:
        """Store a heartbeat and collect the commands it delivers.

        Returns:
            Tuple of (refreshed instance, delivered commands).
        """
        updated = self._db.record_heartbeat(instance.id, metrics, queue_size)
        commands = self._db.take_pending_commands(instance.id, limit=command_limit)
        if commands:
            logger.info(
                "Delivering %d command(s) to %s", len(commands), instance.server_id
            )
        return updated or instance, commands

    def _set_status(self, server_id: str, status: InstanceStatus) -> None:
        if not self._db.set_instance_status(server_id, status):
            raise UnknownInstanceError(f"unknown server: {server_id}")
        logger.info("Instance %s is now %s", server_id, status.value)

    def revoke(self, server_id: str) -> None:
        """Revoke an instance; its requests are rejected from now on."""
        self._set_status(server_id, InstanceStatus.REVOKED)

    def deactivate(self, server_id: str) -> None:
        """Temporarily disable an instance."""
        self._set_status(server_id, InstanceStatus.INACTIVE)

    def activate(self, server_id: str) -> None:
        """Re-enable an inactive or revoked instance."""
        self._set_status(server_id, InstanceStatus.ACTIVE)

    def rotate_secret(self, server_id: str) -> str:
        """Replace an instance's shared secret.

        Returns:
            The new secret, shown once to the operator.
        """
        secret = generate_secret()
        if not self._db.set_shared_secret(server_id, secret):
            raise UnknownInstanceError(f"unknown server: {server_id}")
        logger.info("Rotated shared secret of %s", server_id)
        return secret

    def send_command(
        self,
        server_id: str,
        command: str,
        payload: dict[str, Any] | None = None,
    ) -> RemoteCommand:
        """Queue a command for an instance's next heartbeat.

        Raises:
            UnknownInstanceError: If the instance does not exist.
            ValidationError: If the command is not understood by edge nodes.
        """
        if command not in KNOWN_COMMANDS:
            raise ValidationError(f"unknown command: {command}")
        instance = self._db.get_instance(server_id)
        if instance is None:
            raise UnknownInstanceError(f"unknown server: {server_id}")
        cmd = self._db.create_command(instance.id, command, payload)
        if command == "full_sync":
            self._db.set_needs_full_sync(server_id, True)
        logger.info("Queued command %s for %s", command, server_id)
        return cmd
