"""Process-wide logging setup.

Console output is plain text unless ``LOG_JSON`` is set; the rotating file
under ``DATA_DIR/logs`` is always JSON so it can be grepped by resource URL,
view or route.
"""

from __future__ import annotations

import json
import logging
import logging.config
import os
from pathlib import Path
from typing import Any

# Optional attributes passed through ``extra=`` by the resource, preprocessing
# and page layers.
CONTEXT_FIELDS = ("resource_url", "view", "route", "reason")

PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
FILE_MAX_BYTES = 5 * 1024 * 1024
FILE_BACKUPS = 5

# Noisy third-party loggers: httpx logs every upstream call (the fetcher logs
# its own line) and uvicorn's access log duplicates the request middleware.
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    """One JSON object per line; context fields only when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "pid": record.process,
            "message": record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name))
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


_configured_pid: int | None = None


def _handlers(level: str, json_console: bool, log_file: str) -> dict[str, dict[str, Any]]:
    handlers: dict[str, dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "json" if json_console else "plain",
        }
    }
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "json",
            "filename": str(path),
            "maxBytes": FILE_MAX_BYTES,
            "backupCount": FILE_BACKUPS,
            "encoding": "utf-8",
        }
    return handlers


def configure_logging(settings=None) -> None:
    """Install handlers for this process. Later calls in the same process are no-ops."""

    global _configured_pid
    if _configured_pid == os.getpid():
        return

    if settings is None:
        from pagesmith.core.settings import get_settings

        settings = get_settings()

    level = (settings.log_level or "INFO").upper()
    handlers = _handlers(level, settings.log_json, settings.log_file)
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "plain": {"format": PLAIN_FORMAT},
                "json": {"()": JsonFormatter},
            },
            "handlers": handlers,
            "root": {"level": level, "handlers": list(handlers)},
            "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        }
    )
    logging.captureWarnings(True)
    _configured_pid = os.getpid()


__all__ = ["CONTEXT_FIELDS", "JsonFormatter", "configure_logging"]
