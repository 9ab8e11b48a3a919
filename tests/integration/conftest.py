"""Pytest fixtures for integration tests.

This module provides fixtures for end-to-end testing with a real central
node served by uvicorn and edge nodes talking to it over HTTP.
"""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Generator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
import uvicorn
from httpx import Client

from edgesync.core.config import CentralSettings, EdgeConfig
from edgesync.edge.node import EdgeNode
from edgesync.server.app import create_app
from edgesync.server.database import Database
from edgesync.server.registry import InstanceRegistry


@dataclass
class CentralServer:
    """Container for test central node resources."""

    db: Database
    registry: InstanceRegistry
    url: str

    def create_token(self) -> str:
        """Issue a registration token."""
        return self.registry.create_registration_token(ttl_hours=1)


class UvicornTestServer:
    """Uvicorn server running in a background thread for testing."""

    def __init__(self, app: Any, host: str = "127.0.0.1", port: int = 0) -> None:
        self.app = app
        self.host = host
        self.port = port
        self.server: uvicorn.Server | None = None
        self.thread: threading.Thread | None = None

    def start(self) -> int:
        """Start the server and return the port."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((self.host, 0))
            self.port = s.getsockname()[1]

        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self.server = uvicorn.Server(config)

        self.thread = threading.Thread(target=self.server.run, daemon=True)
        self.thread.start()

        self._wait_for_ready()
        return self.port

    def _wait_for_ready(self, timeout: float = 5.0) -> None:
        """Wait for the server to be ready to accept connections."""
        start = time.time()
        while time.time() - start < timeout:
            try:
                with Client() as client:
                    response = client.get(f"http://{self.host}:{self.port}/health")
                    if response.status_code == 200:
                        return
            except Exception:
                pass
            time.sleep(0.1)
        raise RuntimeError("Server failed to start in time")

    def stop(self) -> None:
        """Stop the server and wait for its thread."""
        if self.server:
            self.server.should_exit = True
        if self.thread:
            self.thread.join(timeout=5)


@pytest.fixture
def central(tmp_path: Path) -> Generator[CentralServer, None, None]:
    """Start a central node on a free local port."""
    db_path = tmp_path / "central" / "central.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database(db_path)

    server = UvicornTestServer(create_app(db, CentralSettings(db_path=db_path)))
    port = server.start()

    yield CentralServer(db=db, registry=InstanceRegistry(db), url=f"http://127.0.0.1:{port}")

    server.stop()
    db.close()


@pytest.fixture
def edge_factory(tmp_path: Path, central: CentralServer) -> Generator[Any, None, None]:
    """Factory fixture creating registered edge nodes."""
    nodes: list[EdgeNode] = []

    def _create(server_id: str, geo_id: str = "geo-a") -> EdgeNode:
        config = EdgeConfig(
            central_url=central.url,
            server_id=server_id,
            geo_id=geo_id,
            db_path=tmp_path / "edges" / server_id / "edge.db",
            batch_size=20,
        )
        config.db_path.parent.mkdir(parents=True, exist_ok=True)
        node = EdgeNode(config)
        node.register(central.create_token())
        nodes.append(node)
        return node

    yield _create

    for node in nodes:
        node.close()


@pytest.fixture
def edge_a(edge_factory: Any) -> EdgeNode:
    """First edge node, in geo-a."""
    return edge_factory("edge-a")


@pytest.fixture
def edge_b(edge_factory: Any) -> EdgeNode:
    """Second edge node, in geo-a."""
    return edge_factory("edge-b")
