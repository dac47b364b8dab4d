"""
Configuration management for Snapstash.

This module handles loading, validating, and saving per-project configuration
settings, and resolving the backup password from its possible sources.
"""

from snapstash.config.settings import (
    DEFAULT_PASSWORD_ENV,
    ConcurrencySettings,
    ConfigurationError,
    Settings,
    default_settings_template,
    get_config_path,
    get_default_backup_path,
    load_config,
    resolve_password,
    save_config,
)

__all__ = [
    "Settings",
    "ConcurrencySettings",
    "load_config",
    "save_config",
    "default_settings_template",
    "resolve_password",
    "get_config_path",
    "get_default_backup_path",
    "ConfigurationError",
    "DEFAULT_PASSWORD_ENV",
]
