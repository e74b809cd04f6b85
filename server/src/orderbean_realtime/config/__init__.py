"""Configuration loader for OrderBean realtime.

Loads settings from a YAML file with built-in defaults. Supports environment
variable overrides using the ORDERBEAN_ prefix with double-underscore
nesting (e.g., ORDERBEAN_STREAM__POLL_INTERVAL=0.5).
"""

from __future__ import annotations

import os
import pathlib
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Config sub-models
# ---------------------------------------------------------------------------

class ServerConfig(BaseModel):
    name: str = "OrderBean Realtime"
    data_dir: str = "./data"
    host: str = "0.0.0.0"
    port: int = 8000


class LogConfig(BaseModel):
    """Event log backend. Redis is required once more than one host serves streams."""

    backend: Literal["sqlite", "redis"] = "sqlite"
    sqlite_path: str = ""
    redis_url: str = "redis://localhost:6379/0"
    max_len: int = Field(default=100, ge=0)


class StreamConfig(BaseModel):
    poll_interval: float = Field(default=2.0, gt=0)
    keepalive_interval: float = Field(default=30.0, ge=0)
    block_ms: int = Field(default=0, ge=0)
    batch_size: int = Field(default=10, gt=0)
    max_duration_seconds: float = Field(default=0, ge=0)
    retry_ms: int = Field(default=3000, ge=0)


class ClientConfig(BaseModel):
    initial_retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    backoff_factor: float = 2.0


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)

    @property
    def sqlite_path(self) -> pathlib.Path:
        """Database file shared by the order tables and the SQLite event log."""
        if self.log.sqlite_path:
            return pathlib.Path(self.log.sqlite_path)
        return pathlib.Path(self.server.data_dir) / "orderbean.db"


# ---------------------------------------------------------------------------
# Deep merge helper
# ---------------------------------------------------------------------------

def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into *base*, returning a new dict."""
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "ORDERBEAN_"


def _collect_env_overrides() -> dict[str, Any]:
    """Collect ORDERBEAN_* env vars and build a nested dict.

    Double-underscore separates nesting levels.
    Example: ORDERBEAN_STREAM__POLL_INTERVAL=0.5
    becomes  {"stream": {"poll_interval": "0.5"}}
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        parts = key[len(_ENV_PREFIX) :].lower().split("__")
        current = overrides
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        # Attempt numeric coercion
        final_value: Any = value
        try:
            final_value = int(value)
        except ValueError:
            try:
                final_value = float(value)
            except ValueError:
                if value.lower() in ("true", "false"):
                    final_value = value.lower() == "true"
        current[parts[-1]] = final_value
    return overrides


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_BUILTIN_DEFAULTS_PATH = pathlib.Path(__file__).resolve().parents[3] / "config" / "realtime_defaults.yaml"


def load_settings(
    config_path: pathlib.Path | None = None,
) -> Settings:
    """Load settings with layered precedence: defaults < file < env vars.

    Parameters
    ----------
    config_path:
        Path to a YAML config file. If ``None`` or the file does not exist,
        built-in defaults are used.
    """
    # Layer 1: built-in defaults (always loaded from the model defaults)
    base: dict[str, Any] = {}

    # Layer 2: YAML config file
    path = config_path if config_path is not None else _BUILTIN_DEFAULTS_PATH
    if path.exists():
        with open(path) as fh:
            file_data = yaml.safe_load(fh)
        if isinstance(file_data, dict):
            base = _deep_merge(base, file_data)

    # Layer 3: environment variable overrides
    env_overrides = _collect_env_overrides()
    if env_overrides:
        base = _deep_merge(base, env_overrides)

    return Settings(**base)
