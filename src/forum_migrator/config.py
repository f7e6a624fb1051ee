"""
Environment-driven configuration for the migration stages.

Every stage reads its credentials from the environment only. A `.env` file in
the working directory is loaded by the CLI before any of these are built.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

from .exceptions import ConfigError

DEFAULT_DATA_DIR: Final[str] = "migration-data"
DEFAULT_ARCHIVE_CATEGORY: Final[str] = "Stories of Old"
DEFAULT_TABLE_PREFIX: Final[str] = "GDN_"
DEFAULT_MYSQL_PORT: Final[int] = 3306

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})


def _require(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        msg = f"Environment variable {name} is required but not set"
        raise ConfigError(msg)
    return value


def _flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _TRUTHY


@dataclass(frozen=True)
class SourceConfig:
    """Connection settings for the legacy MySQL database."""

    host: str
    user: str
    password: str
    database: str
    port: int = DEFAULT_MYSQL_PORT
    use_ssl: bool = False
    table_prefix: str = DEFAULT_TABLE_PREFIX

    @classmethod
    def from_env(cls) -> SourceConfig:
        port_value = os.environ.get("VANILLA_DB_PORT") or str(DEFAULT_MYSQL_PORT)
        try:
            port = int(port_value)
        except ValueError as e:
            msg = f"VANILLA_DB_PORT must be an integer, got {port_value!r}"
            raise ConfigError(msg) from e

        return cls(
            host=_require("VANILLA_DB_HOST"),
            user=_require("VANILLA_DB_USER"),
            password=os.environ.get("VANILLA_DB_PASSWORD", ""),
            database=_require("VANILLA_DB_NAME"),
            port=port,
            use_ssl=_flag("VANILLA_DB_SSL"),
            table_prefix=os.environ.get("VANILLA_DB_PREFIX", DEFAULT_TABLE_PREFIX),
        )


@dataclass(frozen=True)
class TargetConfig:
    """Service-role credentials for the target platform."""

    url: str
    service_key: str = field(repr=False)

    @classmethod
    def from_env(cls) -> TargetConfig:
        url = _require("SUPABASE_URL").rstrip("/")
        if not url.startswith(("http://", "https://")):
            msg = f"SUPABASE_URL must be an http(s) URL, got {url!r}"
            raise ConfigError(msg)
        return cls(url=url, service_key=_require("SUPABASE_SERVICE_KEY"))


@dataclass(frozen=True)
class MigrationSettings:
    """Settings shared by all stages."""

    data_dir: Path
    archive_category_name: str = DEFAULT_ARCHIVE_CATEGORY
    keep_emails: frozenset[str] = frozenset()

    @property
    def mappings_path(self) -> Path:
        return self.data_dir / "id-mappings.json"

    @classmethod
    def from_env(cls, data_dir: str | None = None) -> MigrationSettings:
        keep = os.environ.get("MIGRATION_KEEP_EMAILS", "")
        return cls(
            data_dir=Path(data_dir or os.environ.get("MIGRATION_DATA_DIR") or DEFAULT_DATA_DIR).resolve(),
            archive_category_name=os.environ.get("MIGRATION_ARCHIVE_CATEGORY") or DEFAULT_ARCHIVE_CATEGORY,
            keep_emails=frozenset(e.strip().lower() for e in keep.split(",") if e.strip()),
        )
