"""Logging bootstrap for the kiosk controller.

Three files land under ``log_dir``:

* ``kiosk-runtime.log``: everything at the configured level.
* ``kiosk-errors.log``: warnings and above, so dropped channels and failed
  analyses can be reviewed without wading through frame chatter.
* ``scan-sessions.log``: the session manager's lifecycle lines only
  (connect, pass changes, outcomes), one ledger entry per kiosk session.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Optional

SESSION_LOGGERS = ("scankiosk.session_manager", "scankiosk.progress")


def _daily_file(path: Path, level: str, formatter: str, retention_days: int) -> dict:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": formatter,
        "level": level,
        "filename": str(path),
        "when": "midnight",
        "backupCount": max(int(retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> None:
    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[2] / "logs"
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    level = level.upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "kiosk": {
                    "format": "%(asctime)s | %(levelname)-7s | %(name)s:%(lineno)d | %(message)s",
                },
                "session": {
                    "format": "%(asctime)s | %(levelname)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "kiosk",
                    "level": level,
                },
                "runtime_file": _daily_file(log_dir / "kiosk-runtime.log", level, "kiosk", retention_days),
                "error_file": _daily_file(log_dir / "kiosk-errors.log", "WARNING", "kiosk", retention_days),
                "session_file": _daily_file(log_dir / "scan-sessions.log", "INFO", "session", retention_days),
            },
            "loggers": {
                # websockets logs every frame at DEBUG
                "websockets": {"level": "WARNING"},
                **{name: {"handlers": ["session_file"]} for name in SESSION_LOGGERS},
            },
            "root": {"level": level, "handlers": ["console", "runtime_file", "error_file"]},
        }
    )
    logging.getLogger(__name__).debug("Logging configured (level=%s, dir=%s)", level, log_dir)


__all__ = ["configure_logging", "SESSION_LOGGERS"]
