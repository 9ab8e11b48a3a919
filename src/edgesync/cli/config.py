"""Configuration utilities for the edgesync CLI.

The edge node's identity and shared secret live in ``~/.edgesync/config.json``.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from edgesync.core.config import DEFAULT_ENTITIES, EdgeConfig


def get_config_dir() -> Path:
    """Get the configuration directory for edgesync.

    Returns:
        Path to ~/.edgesync.
    """
    return Path.home() / ".edgesync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file.

    The file holds the shared secret, so it is readable by its owner only.
    """
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))
    os.chmod(config_file, 0o600)


def edge_config_from_file() -> EdgeConfig | None:
    """Build an EdgeConfig from the saved configuration.

    Returns:
        The configuration, or None if this machine was never configured.
    """
    config = load_config()
    if not config.get("central_url") or not config.get("server_id"):
        return None
    return EdgeConfig(
        central_url=config["central_url"],
        server_id=config["server_id"],
        geo_id=config.get("geo_id", ""),
        shared_secret=config.get("shared_secret", ""),
        db_path=Path(config.get("db_path") or get_config_dir() / "edge.db"),
        server_name=config.get("server_name", ""),
        entities=config.get("entities") or list(DEFAULT_ENTITIES),
    )
