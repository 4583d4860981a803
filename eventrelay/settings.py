"""Settings for eventrelay: config/settings.yaml merged over built-in defaults."""

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from eventrelay.errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "EVENTRELAY_CONFIG_DIR"

_DEFAULTS: dict[str, Any] = {
    "event_bus": {
        "serialize_per_type": False,
        "record_history": True,
        "history_limit": 1000,
        "handler_retry": {
            "max_retries": 3,
            "initial_delay_ms": 500,
            "max_delay_ms": 5000,
            "backoff_factor": 2.0,
            "retryable_errors": [],
        },
    },
    "dead_letter": {
        "db_path": "data/event_dead_letter_queue.db",
        "busy_timeout": 5000,
        "stale_retry_seconds": 300,
        "storage_retry": {
            "max_retries": 2,
            "initial_delay_ms": 100,
            "max_delay_ms": 1000,
            "backoff_factor": 2.0,
            "retryable_errors": ["database is locked", "disk i/o error"],
        },
    },
    "logging": {
        "file": "logs/eventrelay.log",
        "level": "INFO",
        "log_to_console": True,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
    "admin": {
        "host": "127.0.0.1",
        "port": 8080,
    },
}

_cached: dict[str, Any] | None = None


def _overlay(target: dict[str, Any], source: dict[str, Any]) -> None:
    """Recursively copy source values onto target. ``None`` in source keeps the default."""
    for key, value in source.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _overlay(current, value)
        elif value is not None:
            target[key] = value


def _read_yaml(path: Path) -> dict[str, Any]:
    """Top-level mapping of a YAML file; empty when the file is missing or unreadable."""
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: top level is not a mapping", path)
        return {}
    return data


def _check_sections(settings: dict[str, Any]) -> None:
    for section in _DEFAULTS:
        if not isinstance(settings.get(section), dict):
            raise ConfigurationError(f"Settings section '{section}' must be a mapping")


def get_default_settings() -> dict[str, Any]:
    """Independent copy of the built-in defaults."""
    return copy.deepcopy(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Look up a nested value by dot path, e.g. ``'dead_letter.db_path'``."""
    node: Any = settings
    for key in path.split("."):
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return node


def default_config_dir() -> Path:
    """$EVENTRELAY_CONFIG_DIR when set, otherwise the repository's config/ directory."""
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override)
    return Path(__file__).resolve().parent.parent / "config"


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Defaults overlaid with settings.yaml from config_dir.

    Without an explicit config_dir the result is cached until ``reload_settings``.
    Raises ConfigurationError when a known section is not a mapping.
    """
    global _cached
    if config_dir is None and _cached is not None:
        return _cached

    settings = get_default_settings()
    _overlay(settings, _read_yaml((config_dir or default_config_dir()) / "settings.yaml"))
    _check_sections(settings)

    if config_dir is None:
        _cached = settings
    return settings


def reload_settings() -> None:
    """Drop the cached settings so the next ``load_settings`` re-reads the file."""
    global _cached
    _cached = None
