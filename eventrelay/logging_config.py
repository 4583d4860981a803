"""Process-wide logging setup for the eventrelay service."""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _build_handlers(project_root: Path, cfg: dict[str, Any]) -> list[logging.Handler]:
    """Rotating file handler when ``file`` is set, console when asked or as the only sink."""
    handlers: list[logging.Handler] = []
    log_file = cfg.get("file")
    if log_file:
        path = Path(log_file)
        if not path.is_absolute():
            path = project_root / path
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                path,
                maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
                backupCount=int(cfg.get("backup_count", 3)),
                encoding="utf-8",
            )
        )
    if cfg.get("log_to_console", False) or not handlers:
        handlers.append(logging.StreamHandler())
    return handlers


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Replace the root logger's handlers according to ``settings["logging"]``.

    Relative log file paths are resolved against project_root. uvicorn's own
    loggers are routed through the root logger so server and library records
    share one format and destination.
    """
    cfg = settings.get("logging", {})
    level = logging.getLevelName(str(cfg.get("level", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in _build_handlers(project_root, cfg):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _UVICORN_LOGGERS:
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
