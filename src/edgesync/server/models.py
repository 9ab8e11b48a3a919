"""SQLAlchemy models for the edgesync central node.

This module defines the database schema using SQLAlchemy ORM.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from edgesync.core.types import CommandStatus, InstanceStatus


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class EdgeInstance(Base):
    """Represents a registered edge node."""

    __tablename__ = "edge_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    geo_id: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    public_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), default=InstanceStatus.ACTIVE.value, nullable=False
    )
    shared_secret: Mapped[str] = mapped_column(String(128), nullable=False)
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    secret_rotated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_heartbeat: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    metrics: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    sync_queue_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    needs_full_sync: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_full_sync: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_delta_sync: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    commands: Mapped[list[RemoteCommand]] = relationship(
        "RemoteCommand", back_populates="instance", cascade="all, delete-orphan"
    )

    # Indexes
    __table_args__ = (
        Index("idx_instances_status", "status"),
        Index("idx_instances_geo", "geo_id"),
    )


class RegistrationToken(Base):
    """Represents a one-time token allowing an edge node to register."""

    __tablename__ = "registration_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_by_instance_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("edge_instances.id"), nullable=True
    )
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    used_by_instance: Mapped[EdgeInstance | None] = relationship("EdgeInstance")

    # Indexes
    __table_args__ = (Index("idx_registration_tokens_hash", "token_hash"),)


class RemoteCommand(Base):
    """Represents a command queued for an edge node, delivered by heartbeat."""

    __tablename__ = "remote_commands"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("edge_instances.id", ondelete="CASCADE"), nullable=False
    )
    command: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), default=CommandStatus.PENDING.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    instance: Mapped[EdgeInstance] = relationship("EdgeInstance", back_populates="commands")

    # Indexes
    __table_args__ = (Index("idx_commands_instance_status", "instance_id", "status"),)


class SyncRecord(Base):
    """A synchronizable domain record, stored generically by entity type.

    ``version`` increases on every write and ``deleted_at`` marks soft
    deletion; these are the only conflict-resolution signals.
    """

    __tablename__ = "sync_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[str] = mapped_column(String(100), nullable=False)
    geo_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    synced_from: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Indexes
    __table_args__ = (
        UniqueConstraint("entity", "record_id", name="uq_records_entity_record"),
        Index("idx_records_entity_updated", "entity", "updated_at"),
        Index("idx_records_geo", "geo_id"),
    )
