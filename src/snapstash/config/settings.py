"""
Configuration settings management for Snapstash.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from <root>/.snapstash/config.yaml by default, with
the path overridable by the caller (the CLI's --config option).
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from snapstash.backup.collector import MIB, ConcurrencyOptions
from snapstash.backup.excludes import normalize_excludes
from snapstash.errors import ConfigurationError

# Per-project configuration directory, relative to the source root
CONFIG_DIR_NAME = ".snapstash"
CONFIG_FILE_NAME = "config.yaml"
DEFAULT_BACKUP_NAME = "backup.txt"
DEFAULT_PASSWORD_ENV = "SNAPSTASH_PW"

DEFAULT_EXCLUDES = [
    ".snapstash/",
    "node_modules/",
    "dist/",
    "build/",
    ".cache/",
    "__pycache__/",
    ".venv/",
    "venv/",
    "*.pyc",
    "*.log",
]


@dataclass
class ConcurrencySettings:
    """Worker pool settings for backup collection."""

    enabled: bool = True
    threads: int | None = None
    big_file_mb: float = 1.0
    total_size_mb: float = 16.0
    file_count_threshold: int = 80

    def to_options(self) -> ConcurrencyOptions:
        """Convert to the options consumed by the collector."""
        return ConcurrencyOptions(
            enabled=self.enabled,
            threads=self.threads,
            big_file_bytes=int(self.big_file_mb * MIB),
            total_size_bytes=int(self.total_size_mb * MIB),
            file_count_threshold=self.file_count_threshold,
        )


@dataclass
class Settings:
    """
    Complete Snapstash configuration settings.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        excludes: Exclude patterns applied by both collection modes.
        password: Password stored in the config file, if any.
        password_env: Name of the environment variable holding the password.
        concurrency: Worker pool tuning.
    """

    log_level: str = "WARNING"
    excludes: list[str] = field(default_factory=list)
    password: str | None = None
    password_env: str = DEFAULT_PASSWORD_ENV
    concurrency: ConcurrencySettings = field(default_factory=ConcurrencySettings)


def get_config_dir(root: Path) -> Path:
    """Return the per-project configuration directory for ``root``."""
    return Path(root) / CONFIG_DIR_NAME


def get_config_path(root: Path) -> Path:
    """Return the default configuration file path for ``root``."""
    return get_config_dir(root) / CONFIG_FILE_NAME


def get_default_backup_path(root: Path) -> Path:
    """Return the default artifact path for ``root``."""
    return get_config_dir(root) / DEFAULT_BACKUP_NAME


def load_config(config_path: Path | None = None, root: Path | None = None) -> Settings:
    """
    Load configuration from a YAML file.

    Reads configuration from ``config_path`` (or the default file under
    ``root``), applies environment variable overrides, and validates the
    result. A missing file yields the defaults.

    Args:
        config_path: Explicit configuration file path.
        root: Project root used to find the default file.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path(root or Path.cwd())

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {config_path}")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path) -> None:
    """
    Save configuration to a YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def default_settings_template(password: str | None = None) -> Settings:
    """Settings written by ``snapstash init``."""
    return Settings(excludes=list(DEFAULT_EXCLUDES), password=password or None)


def resolve_password(
    explicit: str | None,
    settings: Settings,
    environ: Mapping[str, str],
    password_env: str | None = None,
) -> tuple[str | None, str | None]:
    """
    Pick the password to use.

    Precedence is the explicit value, then the config file, then the
    environment variable named by ``password_env`` (or the configured one).

    Returns:
        The password (or None) and where it came from: "arg", "config" or "env".
    """
    if explicit:
        return explicit, "arg"
    if settings.password:
        return settings.password, "config"
    env_name = password_env or settings.password_env
    if env_name and environ.get(env_name):
        return environ[env_name], "env"
    return None, None


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    if "log_level" in data:
        settings.log_level = str(data["log_level"]).upper()

    if "excludes" in data:
        excludes = data["excludes"]
        if excludes is not None and not isinstance(excludes, list):
            raise ConfigurationError("excludes must be a list of patterns")
        settings.excludes = normalize_excludes(excludes)

    password = _first(data, "password", "pw")
    if password:
        settings.password = str(password)

    password_env = _first(data, "password_env", "passwordEnv", "pwEnv")
    if password_env:
        settings.password_env = str(password_env)

    concurrency = data.get("concurrency") or {}
    if not isinstance(concurrency, dict):
        raise ConfigurationError("concurrency must be a mapping")
    try:
        if "enabled" in concurrency:
            settings.concurrency.enabled = bool(concurrency["enabled"])
        if concurrency.get("threads") is not None:
            settings.concurrency.threads = int(concurrency["threads"])
        value = _first(concurrency, "big_file_mb", "bigFileMB")
        if value is not None:
            settings.concurrency.big_file_mb = float(value)
        value = _first(concurrency, "total_size_mb", "totalSizeMB")
        if value is not None:
            settings.concurrency.total_size_mb = float(value)
        value = _first(concurrency, "file_count_threshold", "fileCountThreshold")
        if value is not None:
            settings.concurrency.file_count_threshold = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid concurrency setting: {e}") from e

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "SNAPSTASH_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "SNAPSTASH_THREADS": ("concurrency.threads", int),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value!r}") from e

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    concurrency = settings.concurrency
    if concurrency.threads is not None and concurrency.threads < 1:
        raise ConfigurationError("concurrency.threads must be at least 1")
    if concurrency.big_file_mb <= 0:
        raise ConfigurationError("concurrency.big_file_mb must be positive")
    if concurrency.total_size_mb <= 0:
        raise ConfigurationError("concurrency.total_size_mb must be positive")
    if concurrency.file_count_threshold < 1:
        raise ConfigurationError("concurrency.file_count_threshold must be at least 1")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    data: dict[str, Any] = {
        "log_level": settings.log_level,
        "password_env": settings.password_env,
        "concurrency": {
            "enabled": settings.concurrency.enabled,
            "threads": settings.concurrency.threads,
            "big_file_mb": settings.concurrency.big_file_mb,
            "total_size_mb": settings.concurrency.total_size_mb,
            "file_count_threshold": settings.concurrency.file_count_threshold,
        },
        "excludes": list(settings.excludes),
    }
    if settings.password:
        data["password"] = settings.password
    return data
