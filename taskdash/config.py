# Task dashboard: configuration
# Override via taskdash.yaml, TASKDASH_* environment variables, or CLI args.

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError

CONFIG_PATH = Path("taskdash.yaml")

ENV_PREFIX = "TASKDASH_"


@dataclass
class Config:
    """Runtime configuration for the dashboard server."""

    # Storage
    db_path: str = "~/.local/share/taskdash/taskdash.db"

    # HTTP
    host: str = "127.0.0.1"
    port: int = 3050
    app_url: str = "http://localhost:3050"

    # File-backed project (None = webhook-only)
    tasks_file: Optional[str] = None
    tasks_file_slug: str = "local"
    tasks_file_name: str = "Claude Code Tasks"
    debounce_ms: int = 200

    # Realtime channel
    heartbeat_interval: float = 30.0   # keep-alive and expected ping period
    heartbeat_timeout: float = 90.0    # drop a viewer silent for this long
    subscriber_queue_size: int = 100

    log_level: str = "INFO"

    def resolve_paths(self):
        """Expand ~ in path settings."""
        self.db_path = str(Path(self.db_path).expanduser())
        if self.tasks_file:
            self.tasks_file = str(Path(self.tasks_file).expanduser())

    def apply_env(self, environ=None):
        """Override fields from TASKDASH_<FIELD> environment variables."""
        environ = os.environ if environ is None else environ
        for f in fields(self):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            setattr(self, f.name, self._coerce(f.name, raw))

    def _coerce(self, name: str, raw: str):
        current = getattr(type(self), name, None)
        try:
            if isinstance(current, int):
                return int(raw)
            if isinstance(current, float):
                return float(raw)
        except ValueError:
            raise ConfigError(f"{ENV_PREFIX}{name.upper()} must be a number, got: '{raw}'")
        return raw

    def validate(self):
        if self.heartbeat_timeout <= self.heartbeat_interval:
            raise ConfigError(
                "heartbeat_timeout must be greater than heartbeat_interval "
                f"({self.heartbeat_timeout} <= {self.heartbeat_interval})"
            )
        if self.subscriber_queue_size < 1:
            raise ConfigError("subscriber_queue_size must be >= 1")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError(f"Unknown log_level: {self.log_level}")

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "Config":
        """Load config from YAML file, then environment, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {cfg_path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
            known = {f.name for f in fields(cls)}
            cfg = cls(**{k: v for k, v in data.items() if k in known})
        elif path:
            raise ConfigError(f"Config file not found: {cfg_path}")
        else:
            cfg = cls()
        cfg.apply_env(environ)
        cfg.resolve_paths()
        cfg.validate()
        return cfg
