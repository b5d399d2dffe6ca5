"""Dispatcher settings: built-in defaults overlaid with config/settings.yaml.

The config directory is, in order: the explicit argument, the
EVENTQUEUE_CONFIG_DIR environment variable (a .env file works, the runner
loads it), then config/ next to the package.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "EVENTQUEUE_CONFIG_DIR"
SETTINGS_FILE = "settings.yaml"

_DEFAULTS: dict[str, Any] = {
    "store": {
        "db_path": "data/events.db",
        "busy_timeout": 5000,  # ms a writer waits on a locked database
    },
    "dispatcher": {
        "poll_interval": 60.0,
        # Cron expression; when set it replaces poll_interval (e.g. "* * * * *")
        "schedule": None,
        "batch_size": 10,
        "max_concurrency": 10,
        "stale_timeout": 300.0,
    },
    "retry": {
        "base_delay": 300.0,
        "max_delay": None,
    },
    "emitter": {
        "default_max_retries": 3,
    },
    "logging": {
        "file": "logs/eventqueue.log",
        "level": "INFO",
        "log_to_console": False,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
        "levels": {"aiosqlite": "WARNING"},
    },
}

_cache: dict[Path, dict[str, Any]] = {}


def get_default_settings() -> dict[str, Any]:
    """Fresh copy of the built-in defaults."""
    return copy.deepcopy(_DEFAULTS)


def _overlay(base: dict[str, Any], values: dict[str, Any]) -> None:
    # Nulls in the file keep the default; nested sections merge key by key
    for key, value in values.items():
        if value is None:
            continue
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _overlay(current, value)
        else:
            base[key] = value


def resolve_config_dir(config_dir: Path | None = None) -> Path:
    if config_dir is not None:
        return Path(config_dir)
    from_env = os.environ.get(CONFIG_DIR_ENV)
    if from_env:
        return Path(from_env)
    return Path(__file__).resolve().parent.parent / "config"


def _read_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: top level must be a mapping", path)
        return {}
    return data


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Defaults merged with <config_dir>/settings.yaml. Cached per directory."""
    directory = resolve_config_dir(config_dir).resolve()
    cached = _cache.get(directory)
    if cached is not None:
        return cached
    settings = get_default_settings()
    _overlay(settings, _read_file(directory / SETTINGS_FILE))
    _cache[directory] = settings
    return settings


def reload_settings() -> None:
    """Drop cached settings so the next load_settings() re-reads the file."""
    _cache.clear()


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Value at a dot path such as 'dispatcher.batch_size'; default when missing or null."""
    node: Any = settings
    for part in path.split("."):
        if not isinstance(node, dict):
            return default
        node = node.get(part)
    return default if node is None else node
