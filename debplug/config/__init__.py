"""
debplug Configuration - TOML-based settings.

This module provides:
- The Settings record every engine component is built from
- Loading and validating the [debplug] table of a TOML file
- Generating a commented default config file

Example usage:
    from debplug.config import load_settings

    settings = load_settings()           # DEBPLUG_CONFIG or /etc/debplug/debplug.toml
    print(settings.config_root)
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from debplug.config.schema import (
    SETTINGS_SCHEMA,
    ValidationError,
    generate_default_config,
    validate_config,
)
from debplug.config.toml_handler import (
    TOMLError,
    generate_toml_from_schema,
    read_toml,
    write_toml,
)

SECTION = "debplug"
DEFAULT_CONFIG_FILE = Path("/etc/debplug/debplug.toml")
CONFIG_ENV_VAR = "DEBPLUG_CONFIG"

_PATH_FIELDS = {
    "config_root",
    "web_root",
    "cache_root",
    "drivers_root",
    "hub_root",
    "bin_dir",
    "temp_root",
    "notify_socket",
    "token_file",
}


class ConfigError(Exception):
    """Base exception for config API errors."""

    pass


@dataclass(frozen=True)
class Settings:
    """Resolved engine settings. See SETTINGS_SCHEMA for field meanings."""

    config_root: Path
    web_root: Path
    cache_root: Path
    drivers_root: Path
    hub_root: Path
    bin_dir: Path
    temp_root: Path
    notify_socket: Path
    token_file: Path
    release_cache_ttl: float
    release_page_size: int
    release_max_pages: int
    http_timeout: float
    max_source_size: int
    package_manager_timeout: float
    hook_timeout: float
    extract_timeout: float
    checksum_algorithm: str
    require_checksum: bool
    max_workers: int
    log_level: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """
        Build Settings from a (possibly partial) config dictionary.

        Args:
            data: Field values; missing fields take schema defaults

        Raises:
            ConfigError: If a value fails validation
        """
        try:
            resolved = validate_config(data, SETTINGS_SCHEMA)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        values = {
            name: Path(value) if name in _PATH_FIELDS else value
            for name, value in resolved.items()
        }
        return cls(**values)

    def with_root(self, root: Path) -> "Settings":
        """Return a copy with every filesystem path re-rooted under `root`."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for name in _PATH_FIELDS:
            values[name] = root / str(values[name]).lstrip("/")
        return Settings(**values)


def config_path(path: Path | None = None) -> Path:
    """Resolve the config file location (argument, env var, default)."""
    if path is not None:
        return path
    env = os.environ.get(CONFIG_ENV_VAR)
    return Path(env) if env else DEFAULT_CONFIG_FILE


def load_settings(path: Path | None = None) -> Settings:
    """
    Load settings from a TOML file.

    A missing file yields the defaults.

    Args:
        path: Config file; defaults to config_path()

    Returns:
        Settings instance

    Raises:
        ConfigError: If the file is unreadable or invalid
    """
    file_path = config_path(path)
    if not file_path.exists():
        return Settings.from_dict({})

    try:
        data = read_toml(file_path)
    except TOMLError as e:
        raise ConfigError(str(e)) from e

    section = data.get(SECTION, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{SECTION}] must be a table")

    return Settings.from_dict(section)


def write_default_config(path: Path | None = None) -> Path:
    """
    Write a commented default config file.

    Args:
        path: Destination; defaults to config_path()

    Returns:
        The path written

    Raises:
        ConfigError: If the file cannot be written
    """
    file_path = config_path(path)
    content = generate_toml_from_schema(
        SECTION, SETTINGS_SCHEMA, generate_default_config(SETTINGS_SCHEMA)
    )
    try:
        write_toml(file_path, content)
    except TOMLError as e:
        raise ConfigError(str(e)) from e
    return file_path


__all__ = [
    "ConfigError",
    "Settings",
    "config_path",
    "load_settings",
    "write_default_config",
]
