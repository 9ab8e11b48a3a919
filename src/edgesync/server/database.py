"""Central database using SQLAlchemy with SQLite.

This module provides:
- Edge instance persistence (registry rows, heartbeats, sync markers)
- One-time registration tokens
- Remote commands delivered through heartbeats
- The generic synchronizable record store (full reads, delta reads, edge writes)
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from edgesync.core.config import ENTITY_SCOPES
from edgesync.core.errors import ValidationError
from edgesync.core.types import CommandStatus, InstanceStatus, Operation
from edgesync.server.models import (
    Base,
    EdgeInstance,
    RegistrationToken,
    RemoteCommand,
    SyncRecord,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine


def hash_token(token: str) -> str:
    """Hash a token using SHA-256.

    Args:
        token: Raw token string.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    return hashlib.sha256(token.encode()).hexdigest()


def _as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes read back from SQLite as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


class Database:
    """SQLAlchemy database for central sync metadata and records.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # check_same_thread=False: sessions are opened from FastAPI worker threads
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")

        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        """Get the database file path."""
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    # === Instance operations ===

    def create_instance(
        self,
        server_id: str,
        geo_id: str,
        name: str,
        shared_secret: str,
        public_key: str | None = None,
    ) -> EdgeInstance:
        """Create an active edge instance that still needs a full sync.

        Raises:
            IntegrityError: If server_id already exists.
        """
        with self._session() as session:
            instance = EdgeInstance(
                server_id=server_id,
                geo_id=geo_id,
                name=name,
                shared_secret=shared_secret,
                public_key=public_key,
                status=InstanceStatus.ACTIVE.value,
                needs_full_sync=True,
            )
            session.add(instance)
            session.commit()
            session.refresh(instance)
            session.expunge(instance)
            return instance

    def get_instance(self, server_id: str) -> EdgeInstance | None:
        """Get an instance by server identifier (any status)."""
        with self._session() as session:
            stmt = select(EdgeInstance).where(EdgeInstance.server_id == server_id)
            instance = session.execute(stmt).scalar_one_or_none()
            if instance:
                session.expunge(instance)
            return instance

    def list_instances(self, status: InstanceStatus | None = None) -> list[EdgeInstance]:
        """List instances, optionally filtered by status."""
        with self._session() as session:
            stmt = select(EdgeInstance).order_by(EdgeInstance.server_id)
            if status is not None:
                stmt = stmt.where(EdgeInstance.status == status.value)
            instances = list(session.execute(stmt).scalars().all())
            for instance in instances:
                session.expunge(instance)
            return instances

    def set_instance_status(self, server_id: str, status: InstanceStatus) -> bool:
        """Change an instance's lifecycle status.

        Returns:
            True if the instance exists.
        """
        with self._session() as session:
            stmt = select(EdgeInstance).where(EdgeInstance.server_id == server_id)
            instance = session.execute(stmt).scalar_one_or_none()
            if instance is None:
                return False
            instance.status = status.value
            session.commit()
            return True

    def set_shared_secret(self, server_id: str, shared_secret: str) -> bool:
        """Replace an instance's shared secret.

        Returns:
            True if the instance exists.
        """
        with self._session() as session:
            stmt = select(EdgeInstance).where(EdgeInstance.server_id == server_id)
            instance = session.execute(stmt).scalar_one_or_none()
            if instance is None:
                return False
            instance.shared_secret = shared_secret
            instance.secret_rotated_at = datetime.now(UTC)
            session.commit()
            return True

    def set_needs_full_sync(self, server_id: str, needed: bool = True) -> bool:
        """Set or clear the needs_full_sync flag of an instance."""
        with self._session() as session:
            stmt = select(EdgeInstance).where(EdgeInstance.server_id == server_id)
            instance = session.execute(stmt).scalar_one_or_none()
            if instance is None:
                return False
            instance.needs_full_sync = needed
            session.commit()
            return True

    def record_heartbeat(
        self,
        instance_id: int,
        metrics: dict[str, Any] | None,
        queue_size: int,
    ) -> EdgeInstance | None:
        """Store the liveness data carried by a heartbeat.

        Returns:
            The updated instance, or None if it no longer exists.
        """
        with self._session() as session:
            instance = session.get(EdgeInstance, instance_id)
            if instance is None:
                return None
            instance.last_heartbeat = datetime.now(UTC)
            instance.metrics = metrics
            instance.sync_queue_size = queue_size
            session.commit()
            session.refresh(instance)
            session.expunge(instance)
            return instance

    def mark_full_sync_done(self, instance_id: int) -> None:
        """Clear needs_full_sync and stamp last_full_sync."""
        with self._session() as session:
            instance = session.get(EdgeInstance, instance_id)
            if instance:
                instance.needs_full_sync = False
                instance.last_full_sync = datetime.now(UTC)
                session.commit()

    def mark_delta_sync_done(self, instance_id: int) -> None:
        """Stamp last_delta_sync."""
        with self._session() as session:
            instance = session.get(EdgeInstance, instance_id)
            if instance:
                instance.last_delta_sync = datetime.now(UTC)
                session.commit()

    def flag_stale_instances(self, silent_for: timedelta) -> list[str]:
        """Require a full resync from active instances silent for too long.

        An instance that never sent a heartbeat is measured from its
        registration time.

        Args:
            silent_for: Maximum tolerated time since the last heartbeat.

        Returns:
            Server identifiers that were newly flagged.
        """
        cutoff = datetime.now(UTC) - silent_for
        flagged: list[str] = []
        with self._session() as session:
            stmt = select(EdgeInstance).where(
                EdgeInstance.status == InstanceStatus.ACTIVE.value,
                EdgeInstance.needs_full_sync == False,  # noqa: E712
            )
            for instance in session.execute(stmt).scalars().all():
                last_seen = instance.last_heartbeat or instance.registered_at
                if _as_utc(last_seen) < cutoff:
                    instance.needs_full_sync = True
                    flagged.append(instance.server_id)
            session.commit()
        return flagged

    # === Registration token operations ===

    def create_registration_token(
        self,
        expires_in: timedelta = timedelta(hours=24),
    ) -> tuple[str, RegistrationToken]:
        """Create a new one-time registration token.

        Args:
            expires_in: Token lifetime.

        Returns:
            Tuple of (raw_token, RegistrationToken object).
        """
        raw_token = "REG-" + secrets.token_urlsafe(16)
        now = datetime.now(UTC)

        with self._session() as session:
            token = RegistrationToken(
                token_hash=hash_token(raw_token),
                created_at=now,
                expires_at=now + expires_in,
            )
            session.add(token)
            session.commit()
            session.refresh(token)
            session.expunge(token)
            return raw_token, token

    def validate_registration_token(self, raw_token: str) -> RegistrationToken | None:
        """Validate a registration token.

        Returns:
            The token if unused and not expired, None otherwise.
        """
        with self._session() as session:
            stmt = select(RegistrationToken).where(
                RegistrationToken.token_hash == hash_token(raw_token),
                RegistrationToken.used_by_instance_id.is_(None),
            )
            token = session.execute(stmt).scalar_one_or_none()
            if token is None:
                return None
            if _as_utc(token.expires_at) < datetime.now(UTC):
                return None
            session.expunge(token)
            return token

    def register_with_token(
        self,
        raw_token: str,
        server_id: str,
        geo_id: str,
        name: str,
        shared_secret: str,
        public_key: str | None = None,
    ) -> EdgeInstance | None:
        """Consume a registration token and create its instance in one transaction.

        The token is claimed with a conditional update first, so concurrent
        registrations with the same token cannot both succeed.

        Returns:
            The new instance, or None if the token is unknown, used or expired.

        Raises:
            IntegrityError: If server_id already exists (the token stays unused).
        """
        now = datetime.now(UTC)
        with self._session() as session:
            claimed = session.execute(
                update(RegistrationToken)
                .where(
                    RegistrationToken.token_hash == hash_token(raw_token),
                    RegistrationToken.used_by_instance_id.is_(None),
                    RegistrationToken.used_at.is_(None),
                    RegistrationToken.expires_at > now,
                )
                .values(used_at=now)
            )
            if claimed.rowcount != 1:
                session.rollback()
                return None

            instance = EdgeInstance(
                server_id=server_id,
                geo_id=geo_id,
                name=name,
                shared_secret=shared_secret,
                public_key=public_key,
                status=InstanceStatus.ACTIVE.value,
                needs_full_sync=True,
            )
            session.add(instance)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                raise

            session.execute(
                update(RegistrationToken)
                .where(RegistrationToken.token_hash == hash_token(raw_token))
                .values(used_by_instance_id=instance.id)
            )
            session.commit()
            session.refresh(instance)
            session.expunge(instance)
            return instance

    # === Remote command operations ===

    def create_command(
        self,
        instance_id: int,
        command: str,
        payload: dict[str, Any] | None = None,
    ) -> RemoteCommand:
        """Queue a command for delivery on the instance's next heartbeat."""
        with self._session() as session:
            cmd = RemoteCommand(instance_id=instance_id, command=command, payload=payload)
            session.add(cmd)
            session.commit()
            session.refresh(cmd)
            session.expunge(cmd)
            return cmd

    def take_pending_commands(self, instance_id: int, limit: int = 10) -> list[RemoteCommand]:
        """Fetch pending commands and mark them delivered.

        Returns:
            Commands in creation order.
        """
        with self._session() as session:
            stmt = (
                select(RemoteCommand)
                .where(
                    RemoteCommand.instance_id == instance_id,
                    RemoteCommand.status == CommandStatus.PENDING.value,
                )
                .order_by(RemoteCommand.created_at.asc(), RemoteCommand.id.asc())
                .limit(limit)
            )
            commands = list(session.execute(stmt).scalars().all())
            now = datetime.now(UTC)
            for cmd in commands:
                cmd.status = CommandStatus.DELIVERED.value
                cmd.delivered_at = now
            session.commit()
            for cmd in commands:
                session.refresh(cmd)
                session.expunge(cmd)
            return commands

    def purge_delivered_commands(self, older_than_days: int = 30) -> int:
        """Delete delivered commands older than the retention period.

        Returns:
            Number of commands deleted.
        """
        cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
        with self._session() as session:
            stmt = select(RemoteCommand).where(
                RemoteCommand.status == CommandStatus.DELIVERED.value,
                RemoteCommand.delivered_at < cutoff,
            )
            commands = list(session.execute(stmt).scalars().all())
            for cmd in commands:
                session.delete(cmd)
            session.commit()
            return len(commands)

    # === Record operations ===

    def get_record(self, entity: str, record_id: str) -> SyncRecord | None:
        """Get a record by entity type and identifier (including soft-deleted)."""
        with self._session() as session:
            stmt = select(SyncRecord).where(
                SyncRecord.entity == entity,
                SyncRecord.record_id == record_id,
            )
            record = session.execute(stmt).scalar_one_or_none()
            if record:
                session.expunge(record)
            return record

    def list_records(self, entity: str, geo_id: str | None) -> list[SyncRecord]:
        """List the live records of an entity type visible to a scope.

        Soft-deleted records are excluded. Entity types that are not
        scope-partitioned ignore geo_id.

        Returns:
            Records ordered by identifier; empty for unknown entity types.
        """
        if entity not in ENTITY_SCOPES:
            return []
        with self._session() as session:
            stmt = select(SyncRecord).where(
                SyncRecord.entity == entity,
                SyncRecord.deleted_at.is_(None),
            )
            if ENTITY_SCOPES[entity] and geo_id:
                stmt = stmt.where(SyncRecord.geo_id == geo_id)
            stmt = stmt.order_by(SyncRecord.record_id)
            records = list(session.execute(stmt).scalars().all())
            for record in records:
                session.expunge(record)
            return records

    def get_records_changed_since(
        self,
        entity: str,
        since: datetime,
        geo_id: str | None,
        limit: int = 1000,
    ) -> list[SyncRecord]:
        """Get records of an entity type modified after a timestamp.

        Soft-deleted records are included so deletions propagate.

        Returns:
            Records ordered by updated_at ascending; empty for unknown types.
        """
        if entity not in ENTITY_SCOPES:
            return []
        with self._session() as session:
            stmt = select(SyncRecord).where(
                SyncRecord.entity == entity,
                SyncRecord.updated_at > _as_utc(since),
            )
            if ENTITY_SCOPES[entity] and geo_id:
                stmt = stmt.where(SyncRecord.geo_id == geo_id)
            stmt = stmt.order_by(SyncRecord.updated_at.asc(), SyncRecord.id.asc()).limit(limit)
            records = list(session.execute(stmt).scalars().all())
            for record in records:
                session.expunge(record)
            return records

    def get_changes_page(
        self,
        entity: str,
        since: datetime,
        geo_id: str | None,
        limit: int = 1000,
    ) -> tuple[list[SyncRecord], bool]:
        """Get one resumable page of changes after a timestamp.

        A page never splits records sharing an updated_at, so a client can
        resume strictly after the last updatedAt it received. When more than
        ``limit`` records share the first timestamp they all come back.

        Returns:
            (records ordered by updated_at, whether more changes remain)
        """
        records = self.get_records_changed_since(entity, since, geo_id, limit=limit + 1)
        if len(records) <= limit:
            return records, False

        boundary = records[limit].updated_at
        page = [r for r in records[:limit] if r.updated_at != boundary]
        if not page:
            page = self._records_updated_at(entity, boundary, geo_id)
        return page, True

    def _records_updated_at(
        self, entity: str, moment: datetime, geo_id: str | None
    ) -> list[SyncRecord]:
        with self._session() as session:
            stmt = select(SyncRecord).where(
                SyncRecord.entity == entity,
                SyncRecord.updated_at == moment,
            )
            if ENTITY_SCOPES[entity] and geo_id:
                stmt = stmt.where(SyncRecord.geo_id == geo_id)
            records = list(session.execute(stmt.order_by(SyncRecord.id.asc())).scalars().all())
            for record in records:
                session.expunge(record)
            return records

    def upsert_record(
        self,
        entity: str,
        record_id: str,
        data: dict[str, Any],
        geo_id: str | None = None,
        synced_from: str | None = None,
    ) -> SyncRecord:
        """Write a record, bumping its version.

        A soft-deleted record is revived by a write.

        Raises:
            IntegrityError: If a concurrent insert won the race twice.
        """
        for attempt in range(2):
            try:
                return self._upsert_once(entity, record_id, data, geo_id, synced_from)
            except IntegrityError:
                # Lost an insert race on (entity, record_id); the row exists now
                if attempt == 1:
                    raise
        raise RuntimeError("Unexpected upsert loop exit")

    def _upsert_once(
        self,
        entity: str,
        record_id: str,
        data: dict[str, Any],
        geo_id: str | None,
        synced_from: str | None,
    ) -> SyncRecord:
        now = datetime.now(UTC)
        with self._session() as session:
            stmt = select(SyncRecord).where(
                SyncRecord.entity == entity,
                SyncRecord.record_id == record_id,
            )
            record = session.execute(stmt).scalar_one_or_none()
            if record is None:
                incoming = data.get("version")
                version = incoming if isinstance(incoming, int) and incoming > 0 else 1
                record = SyncRecord(
                    entity=entity,
                    record_id=record_id,
                    geo_id=geo_id,
                    version=version,
                    data=data,
                    created_at=now,
                    updated_at=now,
                    synced_from=synced_from,
                )
                session.add(record)
            else:
                record.data = data
                record.version += 1
                record.updated_at = now
                record.deleted_at = None
                record.synced_from = synced_from
                if geo_id is not None:
                    record.geo_id = geo_id
            session.commit()
            session.refresh(record)
            session.expunge(record)
            return record

    def soft_delete_record(
        self,
        entity: str,
        record_id: str,
        synced_from: str | None = None,
    ) -> SyncRecord | None:
        """Soft-delete a record, bumping its version.

        Returns:
            The record, or None if it does not exist. Deleting an already
            deleted record leaves it unchanged.
        """
        now = datetime.now(UTC)
        with self._session() as session:
            stmt = select(SyncRecord).where(
                SyncRecord.entity == entity,
                SyncRecord.record_id == record_id,
            )
            record = session.execute(stmt).scalar_one_or_none()
            if record is None:
                return None
            if record.deleted_at is None:
                record.deleted_at = now
                record.updated_at = now
                record.version += 1
                record.synced_from = synced_from
                session.commit()
                session.refresh(record)
            session.expunge(record)
            return record

    def apply_edge_change(
        self,
        entity: str,
        change: dict[str, Any],
        instance: EdgeInstance,
    ) -> SyncRecord | None:
        """Apply one pushed change from an edge instance.

        Pushes are accepted unconditionally within the instance's scope; the
        version counter still advances on every write.

        Args:
            entity: Entity type of the change.
            change: Dict with operation, id and data.
            instance: The authenticated submitting instance.

        Returns:
            The written record, or None for a delete of an absent record.

        Raises:
            ValidationError: If the change is malformed or out of scope.
        """
        if not isinstance(change, dict):
            raise ValidationError("change must be an object")
        if entity not in ENTITY_SCOPES:
            raise ValidationError(f"unknown entity: {entity}")

        try:
            operation = Operation(change.get("operation"))
        except ValueError as e:
            raise ValidationError(f"unknown operation: {change.get('operation')}") from e

        data = change.get("data")
        if operation != Operation.DELETE and not isinstance(data, dict):
            raise ValidationError("data must be an object")

        record_id = change.get("id")
        if record_id in (None, "") and isinstance(data, dict):
            record_id = data.get("id")
        if record_id in (None, ""):
            raise ValidationError("missing record id")
        record_id = str(record_id)

        scoped = ENTITY_SCOPES[entity]
        if scoped and isinstance(data, dict):
            claimed = data.get("geo_id")
            if claimed and claimed != instance.geo_id:
                raise ValidationError("record outside instance scope")

        existing = self.get_record(entity, record_id)
        if scoped and existing and existing.geo_id not in (None, instance.geo_id):
            raise ValidationError("record outside instance scope")

        if operation == Operation.DELETE:
            return self.soft_delete_record(entity, record_id, synced_from=instance.server_id)

        return self.upsert_record(
            entity,
            record_id,
            data,
            geo_id=instance.geo_id if scoped else None,
            synced_from=instance.server_id,
        )
