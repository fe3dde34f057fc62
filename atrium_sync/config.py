"""Configuration loading for atrium-sync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    base_url: str = "http://127.0.0.1:3000/api/v1"
    timeout_seconds: float = 10.0


@dataclass
class MessagesConfig:
    """Configuration for message synchronization."""

    page_size: int = 50
    poll_interval_seconds: float = 3.0
    send_poll_delay_seconds: float = 0.1  # Poll shortly after a send
    max_stored_messages: int = 1000
    max_gap_pages: int = 4  # Extra pages fetched when a poll finds a gap


@dataclass
class HeartbeatConfig:
    """Configuration for the presence heartbeat."""

    interval_seconds: float = 30.0
    timeout_seconds: float = 5.0
    max_failures: int = 3
    retry_delays_seconds: list[float] = field(
        default_factory=lambda: [1.0, 2.0, 5.0, 10.0, 30.0]
    )
    max_backoff_seconds: float = 30.0


@dataclass
class StorageConfig:
    db_path: str = "~/.atrium/client.db"


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    messages: MessagesConfig = field(default_factory=MessagesConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with ATRIUM_ prefix."""
    return os.environ.get(f"ATRIUM_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if base_url := _get_env("SERVER_URL"):
        config.server.base_url = base_url
    if timeout := _get_env("SERVER_TIMEOUT"):
        config.server.timeout_seconds = float(timeout)

    # Message sync overrides
    if page_size := _get_env("PAGE_SIZE"):
        config.messages.page_size = int(page_size)
    if poll_interval := _get_env("POLL_INTERVAL"):
        config.messages.poll_interval_seconds = float(poll_interval)
    if max_stored := _get_env("MAX_STORED_MESSAGES"):
        config.messages.max_stored_messages = int(max_stored)

    # Heartbeat overrides
    if interval := _get_env("HEARTBEAT_INTERVAL"):
        config.heartbeat.interval_seconds = float(interval)
    if max_failures := _get_env("HEARTBEAT_MAX_FAILURES"):
        config.heartbeat.max_failures = int(max_failures)

    # Storage overrides
    if db_path := _get_env("DB_PATH"):
        config.storage.db_path = db_path

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    base_url=server_data.get("base_url", config.server.base_url),
                    timeout_seconds=server_data.get(
                        "timeout_seconds", config.server.timeout_seconds
                    ),
                )

            # Parse messages config
            if "messages" in data:
                msg_data = data["messages"]
                config.messages = MessagesConfig(
                    page_size=msg_data.get("page_size", config.messages.page_size),
                    poll_interval_seconds=msg_data.get(
                        "poll_interval_seconds", config.messages.poll_interval_seconds
                    ),
                    send_poll_delay_seconds=msg_data.get(
                        "send_poll_delay_seconds",
                        config.messages.send_poll_delay_seconds,
                    ),
                    max_stored_messages=msg_data.get(
                        "max_stored_messages", config.messages.max_stored_messages
                    ),
                    max_gap_pages=msg_data.get(
                        "max_gap_pages", config.messages.max_gap_pages
                    ),
                )

            # Parse heartbeat config
            if "heartbeat" in data:
                hb_data = data["heartbeat"]
                config.heartbeat = HeartbeatConfig(
                    interval_seconds=hb_data.get(
                        "interval_seconds", config.heartbeat.interval_seconds
                    ),
                    timeout_seconds=hb_data.get(
                        "timeout_seconds", config.heartbeat.timeout_seconds
                    ),
                    max_failures=hb_data.get(
                        "max_failures", config.heartbeat.max_failures
                    ),
                    retry_delays_seconds=hb_data.get(
                        "retry_delays_seconds", config.heartbeat.retry_delays_seconds
                    ),
                    max_backoff_seconds=hb_data.get(
                        "max_backoff_seconds", config.heartbeat.max_backoff_seconds
                    ),
                )

            # Parse storage config
            if "storage" in data:
                config.storage = StorageConfig(
                    db_path=data["storage"].get("db_path", config.storage.db_path)
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return config
