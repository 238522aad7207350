"""Logging bootstrap for the capture controller."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
RUNTIME_LOG = "capture-runtime.log"
ERROR_LOG = "capture-errors.log"

# Chatty per-request loggers; capture and submission already log their own outcome.
QUIET_LOGGERS = ("httpx", "httpcore", "multipart", "uvicorn.access")


def _rotating_file(path: Path, level: str, retention_days: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "default",
        "level": level,
        "filename": str(path),
        "when": "midnight",
        "backupCount": max(int(retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def build_logging_config(level: str, log_dir: Path, retention_days: int = 14) -> Dict[str, Any]:
    """dictConfig schema: console, a daily runtime log and a warnings-and-up log for camera/upload faults."""
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": LOG_FORMAT}},
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "default", "level": level},
            "runtime_file": _rotating_file(log_dir / RUNTIME_LOG, level, retention_days),
            "error_file": _rotating_file(log_dir / ERROR_LOG, "WARNING", retention_days),
        },
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        "root": {"level": level, "handlers": ["console", "runtime_file", "error_file"]},
    }


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> None:
    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[1] / "logs"
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    dictConfig(build_logging_config(level, log_dir, retention_days))
    logging.getLogger(__name__).debug("Logging configured (level=%s, dir=%s)", level, log_dir)


__all__ = ["build_logging_config", "configure_logging"]
