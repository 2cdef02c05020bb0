"""Server and client configuration, read from ``CALSTREAM_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from calstream.core.sqlite import SQLiteConfig
from calstream.core.types import RetentionPolicy


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw.lower() == "none":
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw.lower() == "none":
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an int, got {raw!r}") from exc


@dataclass
class StreamConfig:
    """Stream server configuration."""

    poll_interval: float = 1.0
    heartbeat_interval: float = 10.0
    max_duration: float = 300.0
    batch_limit: int = 10
    trim_probability: float = 0.01
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    host: str = "127.0.0.1"
    port: int = 8000
    sqlite: SQLiteConfig = field(default_factory=SQLiteConfig)

    @classmethod
    def from_env(cls) -> StreamConfig:
        """Create config from environment variables."""
        defaults = cls()
        return cls(
            poll_interval=_env_float("CALSTREAM_POLL_INTERVAL", defaults.poll_interval),
            heartbeat_interval=_env_float("CALSTREAM_HEARTBEAT_INTERVAL", defaults.heartbeat_interval),
            max_duration=_env_float("CALSTREAM_MAX_DURATION", defaults.max_duration),
            batch_limit=_env_int("CALSTREAM_BATCH_LIMIT", defaults.batch_limit),
            trim_probability=_env_float("CALSTREAM_TRIM_PROBABILITY", defaults.trim_probability),
            retention=RetentionPolicy(
                max_records=_env_int("CALSTREAM_RETENTION_MAX_RECORDS", defaults.retention.max_records),
                max_age=_env_float("CALSTREAM_RETENTION_MAX_AGE", defaults.retention.max_age),
            ),
            host=os.environ.get("CALSTREAM_HOST", defaults.host),
            port=_env_int("CALSTREAM_PORT", defaults.port),
            sqlite=SQLiteConfig.from_env(),
        )


@dataclass
class ClientConfig:
    """Reconnection controller configuration."""

    backoff_base: float = 1.0
    backoff_max: float = 30.0
    max_attempts: int | None = None

    @classmethod
    def from_env(cls) -> ClientConfig:
        defaults = cls()
        return cls(
            backoff_base=_env_float("CALSTREAM_BACKOFF_BASE", defaults.backoff_base),
            backoff_max=_env_float("CALSTREAM_BACKOFF_MAX", defaults.backoff_max),
            max_attempts=_env_int("CALSTREAM_MAX_RECONNECT_ATTEMPTS", defaults.max_attempts),
        )
