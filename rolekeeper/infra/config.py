"""Centralized configuration for timed roles and storage."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from ..util import build_db_url

log = logging.getLogger(__name__)

DEFAULT_SQLITE_PATH = Path("data/rolekeeper.db")


def _int_env(var: str, default: int, *, positive: bool = False) -> int:
    """Return int value from environment variable or default."""
    value = os.getenv(var)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        log.warning("Invalid integer for %s: %s; using %s", var, value, default)
        return default
    if positive and parsed <= 0:
        log.warning("%s must be positive, got %s; using %s", var, parsed, default)
        return default
    return parsed


def _bool_env(var: str, default: bool) -> bool:
    """Return boolean value from environment variable or default."""
    value = os.getenv(var)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclass(frozen=True)
class RoleChoice:
    """A role members can claim from the selection panel."""

    key: str
    role_id: int
    name: str


def parse_role_choices(raw: str | None) -> tuple[RoleChoice, ...]:
    """Parse ``role_id:Name`` entries separated by commas.

    Choice keys are the 1-based positions of the entries so the panel buttons
    read ``select_role_1``, ``select_role_2`` and so on.
    """
    if not raw:
        return ()
    choices: list[RoleChoice] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        role_id, sep, name = entry.partition(":")
        try:
            rid = int(role_id.strip())
        except ValueError:
            log.warning("Ignoring TIMED_ROLES entry with bad role id: %s", entry)
            continue
        name = name.strip() if sep else ""
        choices.append(RoleChoice(key=str(len(choices) + 1), role_id=rid, name=name or str(rid)))
    return tuple(choices)


@dataclass(frozen=True)
class TimedRoleConfig:
    """Channels, roles and timings for the role lifecycle."""

    guild_id: int = 0
    role_channel_id: int = 0
    notification_channel_id: int = 0
    stats_channel_id: int = 0
    role_duration: timedelta = timedelta(days=7)
    renewal_window: timedelta = timedelta(minutes=10)
    scan_interval: timedelta = timedelta(hours=1)
    roles: tuple[RoleChoice, ...] = ()

    @classmethod
    def from_env(cls) -> "TimedRoleConfig":
        """Create config from environment variables."""
        return cls(
            guild_id=_int_env("GUILD_ID", 0),
            role_channel_id=_int_env("ROLE_CHANNEL_ID", 0),
            notification_channel_id=_int_env("NOTIFICATION_CHANNEL_ID", 0),
            stats_channel_id=_int_env("STATS_CHANNEL_ID", 0),
            role_duration=timedelta(minutes=_int_env("ROLE_DURATION_MINUTES", 10080, positive=True)),
            renewal_window=timedelta(minutes=_int_env("RENEWAL_WINDOW_MINUTES", 10, positive=True)),
            scan_interval=timedelta(seconds=_int_env("SCAN_INTERVAL_SECONDS", 3600, positive=True)),
            roles=parse_role_choices(os.getenv("TIMED_ROLES")),
        )

    def role_for(self, key: str) -> RoleChoice | None:
        return next((choice for choice in self.roles if choice.key == key), None)

    def problems(self) -> list[str]:
        """Return human-readable reasons the config cannot run as-is."""
        issues = []
        for name in ("guild_id", "role_channel_id", "notification_channel_id", "stats_channel_id"):
            if not getattr(self, name):
                issues.append(f"{name.upper()} is not set")
        if not self.roles:
            issues.append("TIMED_ROLES has no valid entries")
        return issues


def _sync_driver(url: str) -> str:
    """Swap an async driver for the synchronous one SQLAlchemy sessions need."""
    if url.startswith("postgresql+asyncpg://"):
        return "postgresql+psycopg://" + url[len("postgresql+asyncpg://"):]
    if url.startswith(("postgres://", "postgresql://")):
        return "postgresql+psycopg://" + url.split("://", 1)[1]
    return url


@dataclass(frozen=True)
class StorageConfig:
    """Where grants are persisted."""

    database_url: str = f"sqlite+pysqlite:///{DEFAULT_SQLITE_PATH}"
    auto_create_schema: bool = True

    @classmethod
    def from_env(cls) -> "StorageConfig":
        url = os.getenv("ROLEKEEPER_DB_URL") or build_db_url()
        return cls(
            database_url=_sync_driver(url) if url else f"sqlite+pysqlite:///{DEFAULT_SQLITE_PATH}",
            auto_create_schema=_bool_env("AUTO_CREATE_SCHEMA", True),
        )


@dataclass
class BotConfig:
    """Container for all configuration.

    Instantiated once and handed to the cog, so tests can pass their own.
    """

    timed_roles: TimedRoleConfig = field(default_factory=TimedRoleConfig.from_env)
    storage: StorageConfig = field(default_factory=StorageConfig.from_env)

    @classmethod
    def from_env(cls) -> "BotConfig":
        return cls(
            timed_roles=TimedRoleConfig.from_env(),
            storage=StorageConfig.from_env(),
        )


_default_config: BotConfig | None = None


def get_config() -> BotConfig:
    """Return the global configuration instance, loading it on first access."""
    global _default_config
    if _default_config is None:
        _default_config = BotConfig.from_env()
    return _default_config


def set_config(config: BotConfig) -> None:
    """Set the global configuration instance."""
    global _default_config
    _default_config = config


def reset_config() -> None:
    """Reset the global configuration to reload from environment."""
    global _default_config
    _default_config = None
