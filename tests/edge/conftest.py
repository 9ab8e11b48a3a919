"""Shared fixtures for edge node tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from edgesync.core.config import EdgeConfig, SyncPolicy
from edgesync.edge.changelog import OutboundChangeLog
from edgesync.edge.database import EdgeDatabase
from edgesync.edge.deadletter import DeadLetterStore
from edgesync.edge.queue import SyncQueue
from edgesync.edge.records import LocalRecordStore
from edgesync.edge.state import LocalSyncState

CENTRAL_URL = "http://central.test"


@pytest.fixture
def edge_db(tmp_path: Path) -> Generator[EdgeDatabase, None, None]:
    """Create a local edge database."""
    db = EdgeDatabase(tmp_path / "edge.db")
    yield db
    db.close()


@pytest.fixture
def state(edge_db: EdgeDatabase) -> LocalSyncState:
    return LocalSyncState(edge_db)


@pytest.fixture
def records(edge_db: EdgeDatabase) -> LocalRecordStore:
    return LocalRecordStore(edge_db)


@pytest.fixture
def changelog(edge_db: EdgeDatabase) -> OutboundChangeLog:
    return OutboundChangeLog(edge_db)


@pytest.fixture
def dead_letters(edge_db: EdgeDatabase) -> DeadLetterStore:
    return DeadLetterStore(edge_db)


@pytest.fixture
def policy() -> SyncPolicy:
    """Retry policy with a small budget."""
    return SyncPolicy(max_attempts=3, initial_backoff=10.0, backoff_multiplier=2.0, max_backoff=25.0)


@pytest.fixture
def queue(edge_db: EdgeDatabase, dead_letters: DeadLetterStore, policy: SyncPolicy) -> SyncQueue:
    return SyncQueue(edge_db, dead_letters, policy)


@pytest.fixture
def edge_config(tmp_path: Path) -> EdgeConfig:
    """Configuration of a registered edge node."""
    return EdgeConfig(
        central_url=CENTRAL_URL,
        server_id="edge-a",
        geo_id="geo-a",
        shared_secret="s" * 64,
        db_path=tmp_path / "node.db",
        entities=["users", "guards"],
    )
