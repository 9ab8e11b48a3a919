"""Shared types for edgesync.

This module defines enums used by both the central and the edge roles.
"""

from __future__ import annotations

from enum import Enum


class Operation(str, Enum):
    """Kind of mutation carried by a change, queue item or push."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class InstanceStatus(str, Enum):
    """Lifecycle status of an edge instance on the central node."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    REVOKED = "revoked"


class QueueStatus(str, Enum):
    """Status of an outbound queue item."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class HeartbeatOutcome(str, Enum):
    """Outcome of a single heartbeat probe."""

    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class CommandStatus(str, Enum):
    """Delivery status of a remote command."""

    PENDING = "pending"
    DELIVERED = "delivered"


class SyncStage(str, Enum):
    """Stages of an edge sync cycle."""

    IDLE = "idle"
    PULLING = "pulling"
    APPLYING = "applying-pulled"
    PUSHING = "pushing"
    DRAINING = "draining-queue"


class SyncSignal(str, Enum):
    """Signals emitted by the orchestrator to its listeners."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
