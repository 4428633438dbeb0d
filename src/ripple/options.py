"""Configuration options for a ripple server process.

Provides RippleOptions for configuring persistence, the fan-out bus and the
limits enforced by the message pipeline. Supports environment variable
overrides for containerized deployments and optional YAML config files.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class RippleConfigError(Exception):
    """Raised when RippleOptions configuration is invalid."""

    pass


def _default_node_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class RippleOptions:
    """Configuration options for a ripple server.

    Environment Variables:
        RIPPLE_DB: SQLite database path (":memory:" for an ephemeral database)
        RIPPLE_REDIS_URL: Redis URL; enables the distributed fan-out bus
        RIPPLE_ADMIN_TOKEN: Token required by admin endpoints
        RIPPLE_LOG_LEVEL: Logging level name
        RIPPLE_PRESENCE_GRACE: Seconds to wait before announcing a user offline
        RIPPLE_NODE_ID: Identity of this process in event envelopes

    Examples:
        # Everything from the environment
        options = RippleOptions.from_env()

        # Two processes sharing a database and a broker
        options = RippleOptions(db_path="ripple.db", redis_url="redis://localhost:6379/0")

        # From a YAML file
        options = RippleOptions.from_file("ripple.yaml")
    """

    db_path: str = ":memory:"
    """SQLite database path."""

    redis_url: str | None = None
    """Redis URL. When unset the in-process bus is used."""

    admin_token: str | None = None
    """Token for admin endpoints. When unset admin endpoints are disabled."""

    subscriber_buffer: int = 256
    """Events buffered per subscriber before the oldest is dropped."""

    publish_retries: int = 3
    """Publish attempts before an event is dropped."""

    publish_retry_delay: float = 0.05
    """Initial backoff between publish attempts, doubled each retry."""

    presence_grace_seconds: float = 0.0
    """Delay before an offline transition is announced."""

    max_content_length: int = 4000
    max_attachments: int = 10
    history_page_limit: int = 100
    membership_cache_ttl: float = 30.0

    log_level: str = "INFO"

    node_id: str = ""
    """Process identity stamped on every event. Defaults to host-pid."""

    def __post_init__(self) -> None:
        """Validate options and fill in derived defaults."""
        if not self.node_id:
            self.node_id = _default_node_id()
        self.log_level = str(self.log_level).upper()
        self._validate()

    def _validate(self) -> None:
        if not self.db_path:
            raise RippleConfigError("db_path must not be empty")
        if self.subscriber_buffer < 1:
            raise RippleConfigError("subscriber_buffer must be at least 1")
        if self.publish_retries < 1:
            raise RippleConfigError("publish_retries must be at least 1")
        if self.publish_retry_delay < 0:
            raise RippleConfigError("publish_retry_delay must not be negative")
        if self.presence_grace_seconds < 0:
            raise RippleConfigError("presence_grace_seconds must not be negative")
        if self.max_content_length < 1:
            raise RippleConfigError("max_content_length must be at least 1")
        if self.max_attachments < 0:
            raise RippleConfigError("max_attachments must not be negative")
        if self.history_page_limit < 1:
            raise RippleConfigError("history_page_limit must be at least 1")
        if self.membership_cache_ttl < 0:
            raise RippleConfigError("membership_cache_ttl must not be negative")
        if self.log_level not in LOG_LEVELS:
            raise RippleConfigError(
                f"Unknown log level {self.log_level!r}. Choose one of: {', '.join(LOG_LEVELS)}"
            )
        if self.redis_url is not None and not self.redis_url.startswith(
            ("redis://", "rediss://", "unix://")
        ):
            raise RippleConfigError(f"Unsupported redis_url scheme: {self.redis_url}")

    @classmethod
    def from_env(cls, **overrides: Any) -> "RippleOptions":
        """Build options from RIPPLE_* environment variables.

        Explicit keyword overrides take priority over the environment.
        """
        values: dict[str, Any] = {}

        env_db = os.environ.get("RIPPLE_DB")
        if env_db:
            values["db_path"] = env_db

        env_redis = os.environ.get("RIPPLE_REDIS_URL")
        if env_redis:
            values["redis_url"] = env_redis

        env_admin = os.environ.get("RIPPLE_ADMIN_TOKEN")
        if env_admin:
            values["admin_token"] = env_admin

        env_level = os.environ.get("RIPPLE_LOG_LEVEL")
        if env_level:
            values["log_level"] = env_level

        env_grace = os.environ.get("RIPPLE_PRESENCE_GRACE")
        if env_grace:
            try:
                values["presence_grace_seconds"] = float(env_grace)
            except ValueError as e:
                raise RippleConfigError(
                    f"RIPPLE_PRESENCE_GRACE must be a number, got {env_grace!r}"
                ) from e

        env_node = os.environ.get("RIPPLE_NODE_ID")
        if env_node:
            values["node_id"] = env_node

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path, **overrides: Any) -> "RippleOptions":
        """Load options from a YAML file.

        Unknown keys are rejected so typos do not silently fall back to defaults.
        """
        path = Path(path)
        if not path.exists():
            raise RippleConfigError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise RippleConfigError(f"Config file {path} must contain a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise RippleConfigError(f"Unknown config keys in {path}: {', '.join(unknown)}")

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Write options to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(include_secrets=True), f, default_flow_style=False)

    def is_distributed(self) -> bool:
        """True if events travel through Redis."""
        return self.redis_url is not None

    def to_dict(self, include_secrets: bool = False) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        data = asdict(self)
        if not include_secrets:
            data["admin_token"] = None
            data["has_admin_token"] = self.admin_token is not None
        return data


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for a ripple process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
