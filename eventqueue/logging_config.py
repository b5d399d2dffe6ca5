"""Root logger setup for the dispatcher process."""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _level(name: Any, fallback: int = logging.INFO) -> int:
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else fallback


def _rotating_file(project_root: Path, cfg: dict[str, Any]) -> logging.Handler:
    path = Path(cfg.get("file") or "logs/eventqueue.log")
    if not path.is_absolute():
        path = project_root / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )


def setup_logging(project_root: Path, settings: dict[str, Any], console: bool | None = None) -> None:
    """Send all records to a rotating log file and, optionally, to stderr.

    Reads the "logging" section of settings. console overrides
    logging.log_to_console when given. logging.levels maps logger names to
    their own levels, e.g. {"aiosqlite": "WARNING"} to silence the driver.
    Replaces any handlers already on the root logger.
    """
    cfg = settings.get("logging") or {}
    level = _level(cfg.get("level", "INFO"))
    to_console = bool(cfg.get("log_to_console", False)) if console is None else console

    handlers = [_rotating_file(project_root, cfg)]
    if to_console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    for old in root.handlers[:]:
        root.removeHandler(old)
    root.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name, name_level in (cfg.get("levels") or {}).items():
        logging.getLogger(name).setLevel(_level(name_level, level))
