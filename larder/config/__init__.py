"""
Configuration management for Larder.

This module loads the database and snapshot settings from TOML files.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Path to the config directory
CONFIG_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = CONFIG_DIR / "larder.toml"

DEFAULT_SNAPSHOT_FILENAME = "waistline_export.json"


@dataclass(frozen=True)
class DatabaseSettings:
    """Where the database lives and how long operations may take."""

    path: Path = Path("larder.sqlite3")
    operation_timeout: float | None = 30.0


@dataclass(frozen=True)
class SnapshotSettings:
    """Location and formatting of the export/import file."""

    directory: Path = Path(".")
    filename: str = DEFAULT_SNAPSHOT_FILENAME
    indent: int | None = None

    @property
    def path(self) -> Path:
        return self.directory / self.filename


@dataclass(frozen=True)
class LarderConfig:
    """Loaded configuration."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    snapshot: SnapshotSettings = field(default_factory=SnapshotSettings)

    def with_database_path(self, path: Path) -> LarderConfig:
        return replace(self, database=replace(self.database, path=path))


def _resolve(base: Path | None, value: object, default: Path) -> Path:
    if value is None:
        return default
    path = Path(str(value)).expanduser()
    if base is not None and not path.is_absolute():
        path = base / path
    return path


def _parse_timeout(value: Any) -> float | None:
    """A timeout of 0 (or a negative value) disables it."""
    if value is None:
        return None
    timeout = float(value)
    return timeout if timeout > 0 else None


def _parse_indent(value: Any) -> int | None:
    if value is None:
        return None
    indent = int(value)
    return indent if indent > 0 else None


def load_config(config_path: Path | None = None) -> LarderConfig:
    """
    Load configuration from a TOML file.

    Args:
        config_path: Path to a config file. If None, uses the packaged default.

    Returns:
        Loaded LarderConfig instance.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        base = None
    else:
        base = config_path.parent

    logger.debug("Loading config from %s", config_path)

    with config_path.open("rb") as f:
        data = tomllib.load(f)

    db_data = data.get("database", {})
    snap_data = data.get("snapshot", {})

    defaults = LarderConfig()

    database = DatabaseSettings(
        path=_resolve(base, db_data.get("path"), defaults.database.path),
        operation_timeout=_parse_timeout(
            db_data.get("operation_timeout", defaults.database.operation_timeout)
        ),
    )
    snapshot = SnapshotSettings(
        directory=_resolve(base, snap_data.get("directory"), defaults.snapshot.directory),
        filename=str(snap_data.get("filename", DEFAULT_SNAPSHOT_FILENAME)),
        indent=_parse_indent(snap_data.get("indent")),
    )

    return LarderConfig(database=database, snapshot=snapshot)


# Global singleton instance (lazy loaded)
_config: LarderConfig | None = None


def get_config() -> LarderConfig:
    """
    Get the global configuration (lazy loaded singleton).

    Returns:
        The LarderConfig instance.
    """
    global _config

    if _config is None:
        _config = load_config()

    return _config


def reload_config(config_path: Path | None = None) -> LarderConfig:
    """
    Force reload of the configuration.

    Returns:
        The newly loaded LarderConfig instance.
    """
    global _config
    _config = load_config(config_path)
    return _config
