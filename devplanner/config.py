# DevPlanner: configuration
# Values come from config.yaml (optional), then environment variables, then CLI args.

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .constants import DEFAULT_PORT, DEFAULT_WS_PORT
from .errors import ConfigError

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _port_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        port = int(raw)
    except ValueError:
        port = -1
    if not 0 < port < 65536:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default
    return port


@dataclass
class Config:
    """Runtime configuration for the DevPlanner server."""

    workspace: str = ""
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    ws_port: int = DEFAULT_WS_PORT
    log_level: str = "INFO"
    watch: bool = True

    # WebSocket heartbeat
    heartbeat_enabled: bool = False
    heartbeat_interval_secs: float = 30.0
    ping_timeout_secs: float = 5.0

    # Watcher
    debounce_ms: int = 100
    move_window_ms: int = 500

    # History
    history_max_events: int = 50          # in memory, per project
    history_persist_max_events: int = 500
    history_archive_max_events: int = 1000
    history_debounce_secs: float = 5.0
    history_write_threshold: int = 10

    def apply_env(self) -> "Config":
        """Override fields from environment variables."""
        workspace = os.environ.get("DEVPLANNER_WORKSPACE")
        if workspace:
            self.workspace = workspace
        self.port = _port_from_env("PORT", self.port)
        self.ws_port = _port_from_env("WS_PORT", self.ws_port)
        if "WEBSOCKET_HEARTBEAT_ENABLED" in os.environ:
            self.heartbeat_enabled = os.environ["WEBSOCKET_HEARTBEAT_ENABLED"] == "true"
        level = os.environ.get("DEVPLANNER_LOG_LEVEL")
        if level:
            self.log_level = level.upper()
        return self

    def validate(self) -> None:
        if not self.workspace:
            raise ConfigError("Workspace path is required (set DEVPLANNER_WORKSPACE or --workspace)")
        if not Path(self.workspace).is_dir():
            raise ConfigError(f"Workspace directory does not exist: {self.workspace}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"Invalid log level: {self.log_level}")
        if self.debounce_ms < 0 or self.move_window_ms < 0:
            raise ConfigError("Watcher timings must not be negative")
        if self.history_max_events < 1 or self.history_persist_max_events < 1:
            raise ConfigError("History limits must be positive")

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace).expanduser().resolve()

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from a YAML file (unknown keys ignored), then the environment."""
        cfg = cls()
        if path:
            cfg_path = Path(path)
            if not cfg_path.exists():
                raise ConfigError(f"Config file not found: {path}")
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid config file {path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"Config file must contain a mapping: {path}")
            cfg = cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
        return cfg.apply_env()
