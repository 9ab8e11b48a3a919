"""Shared configuration classes for edgesync.

This module defines configuration used by both the central and edge roles:
- CentralSettings: central node settings (database, auth window, scheduler)
- SyncPolicy: queue priorities and retry budget on the edge
- EdgeConfig: connection and timing settings for an edge node

Each class can be built from ``EDGESYNC_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

# Entity types known to the sync engine, mapped to whether they are
# partitioned by scope tag (geo_id).
ENTITY_SCOPES: dict[str, bool] = {
    "users": True,
    "guards": True,
    "groups": True,
    "assignments": False,
}

DEFAULT_ENTITIES: tuple[str, ...] = tuple(ENTITY_SCOPES)

# Lower value drains first
DEFAULT_PRIORITIES: dict[str, int] = {
    "users": 1,
    "guards": 2,
    "assignments": 3,
    "groups": 4,
    "notifications": 5,
    "logs": 10,
}
DEFAULT_PRIORITY = 5


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


@dataclass
class CentralSettings:
    """Settings for the central node.

    Attributes:
        db_path: SQLite database path.
        log_path: Log file path.
        timestamp_window: Maximum allowed clock skew of signed requests (seconds).
        registration_token_ttl_hours: Default lifetime of registration tokens.
        offline_limit_days: Silence after which an instance must fully resync.
        command_retention_days: Age after which delivered commands are purged.
        heartbeat_interval: Heartbeat interval advertised to new edges (seconds).
        sync_interval: Sync interval advertised to new edges (seconds).
        batch_size: Push batch size advertised to new edges.
        changes_limit: Maximum records per entity type in a delta response.
        register_rate_limit: Registration attempts allowed per client per window.
        register_rate_window: Rate limit window (seconds).
    """

    db_path: Path = Path("edgesync-central.db")
    log_path: Path = Path("edgesync-central.log")
    timestamp_window: float = 300.0
    registration_token_ttl_hours: int = 24
    offline_limit_days: int = 7
    command_retention_days: int = 30
    heartbeat_interval: int = 300
    sync_interval: int = 300
    batch_size: int = 100
    changes_limit: int = 1000
    register_rate_limit: int = 10
    register_rate_window: float = 60.0

    @classmethod
    def from_env(cls) -> CentralSettings:
        """Build settings from environment variables with defaults."""
        return cls(
            db_path=Path(os.environ.get("EDGESYNC_DB_PATH", "edgesync-central.db")),
            log_path=Path(os.environ.get("EDGESYNC_LOG_PATH", "edgesync-central.log")),
            timestamp_window=_env_float("EDGESYNC_TIMESTAMP_WINDOW", 300.0),
            registration_token_ttl_hours=_env_int("EDGESYNC_TOKEN_TTL_HOURS", 24),
            offline_limit_days=_env_int("EDGESYNC_OFFLINE_LIMIT_DAYS", 7),
            command_retention_days=_env_int("EDGESYNC_COMMAND_RETENTION_DAYS", 30),
            heartbeat_interval=_env_int("EDGESYNC_HEARTBEAT_INTERVAL", 300),
            sync_interval=_env_int("EDGESYNC_SYNC_INTERVAL", 300),
            batch_size=_env_int("EDGESYNC_BATCH_SIZE", 100),
            changes_limit=_env_int("EDGESYNC_CHANGES_LIMIT", 1000),
            register_rate_limit=_env_int("EDGESYNC_REGISTER_RATE_LIMIT", 10),
            register_rate_window=_env_float("EDGESYNC_REGISTER_RATE_WINDOW", 60.0),
        )


@dataclass
class SyncPolicy:
    """Queue priority table and retry budget for an edge node.

    Attributes:
        priorities: Per-entity priority (lower drains first).
        default_priority: Priority for entity types missing from the table.
        max_attempts: Failed attempts before an item is dead-lettered.
        initial_backoff: Delay after the first failure (seconds).
        backoff_multiplier: Growth factor per further failure.
        max_backoff: Upper bound on the delay (seconds).
    """

    priorities: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PRIORITIES))
    default_priority: int = DEFAULT_PRIORITY
    max_attempts: int = 5
    initial_backoff: float = 60.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 3600.0

    def priority_for(self, entity: str) -> int:
        """Get the queue priority for an entity type."""
        return self.priorities.get(entity, self.default_priority)


@dataclass
class EdgeConfig:
    """Configuration for an edge node.

    Attributes:
        central_url: Base URL of the central node (e.g., "https://central.example.com").
        server_id: Unique identifier of this edge node.
        geo_id: Scope tag of this edge node.
        shared_secret: Secret returned once at registration.
        db_path: Path to the local SQLite database.
        server_name: Display name sent at registration.
        timeout: Request timeout in seconds.
        heartbeat_interval: Seconds between connectivity probes.
        heartbeat_timeout: Timeout of a single heartbeat request.
        sync_interval: Seconds between automatic sync cycles.
        batch_size: Maximum change-log entries pushed per cycle.
        queue_concurrency: Worker threads draining the queue.
        entities: Entity types pulled from the central node.
        verify_ssl: Whether to verify TLS certificates.
        policy: Queue priority and retry policy.
    """

    central_url: str
    server_id: str
    geo_id: str
    shared_secret: str = ""
    db_path: Path = Path("edgesync-edge.db")
    server_name: str = ""
    timeout: float = 10.0
    heartbeat_interval: float = 300.0
    heartbeat_timeout: float = 30.0
    sync_interval: float = 300.0
    batch_size: int = 50
    queue_concurrency: int = 2
    entities: list[str] = field(default_factory=lambda: list(DEFAULT_ENTITIES))
    verify_ssl: bool = True
    policy: SyncPolicy = field(default_factory=SyncPolicy)

    def __post_init__(self) -> None:
        """Normalize central URL."""
        self.central_url = self.central_url.rstrip("/")
        self.db_path = Path(self.db_path)
        if not self.server_name:
            self.server_name = self.server_id

    @property
    def is_secure(self) -> bool:
        """Check if the central node is reached over HTTPS."""
        return self.central_url.startswith("https://")

    @classmethod
    def from_env(cls) -> EdgeConfig:
        """Build an edge configuration from environment variables."""
        entities = os.environ.get("EDGESYNC_ENTITIES")
        return cls(
            central_url=os.environ.get("EDGESYNC_CENTRAL_URL", "http://localhost:8000"),
            server_id=os.environ.get("EDGESYNC_SERVER_ID", ""),
            geo_id=os.environ.get("EDGESYNC_GEO_ID", ""),
            shared_secret=os.environ.get("EDGESYNC_SHARED_SECRET", ""),
            db_path=Path(os.environ.get("EDGESYNC_EDGE_DB_PATH", "edgesync-edge.db")),
            timeout=_env_float("EDGESYNC_TIMEOUT", 10.0),
            heartbeat_interval=_env_float("EDGESYNC_HEARTBEAT_INTERVAL", 300.0),
            heartbeat_timeout=_env_float("EDGESYNC_HEARTBEAT_TIMEOUT", 30.0),
            sync_interval=_env_float("EDGESYNC_SYNC_INTERVAL", 300.0),
            batch_size=_env_int("EDGESYNC_BATCH_SIZE", 50),
            queue_concurrency=_env_int("EDGESYNC_QUEUE_CONCURRENCY", 2),
            entities=entities.split(",") if entities else list(DEFAULT_ENTITIES),
        )
