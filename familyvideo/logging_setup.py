"""JSON logs for the catalog API and its background DVD jobs.

Every record is one JSON line in ``<data>/logs/app.log`` and on stdout. Call
sites pass ``extra={"event": ..., "context": {...}}`` so upload, extraction
and Jellyfin activity can be grepped by event name.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOG_FILENAME = "app.log"
BACKGROUND_THREAD_PREFIX = "familyvideo-"

# urllib3 logs each Jellyfin connection; werkzeug logs each job poll request.
NOISY_LOGGERS = ("urllib3", "werkzeug")


class JsonFormatter(logging.Formatter):
    """Render a record with its event/context extras as a JSON line.

    Records emitted from the job and side-effect pools carry the worker thread
    name so extraction logs can be told apart from request logs.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key in ("event", "context"):
            value = record.__dict__.get(key)
            if value:
                payload[key] = value
        if record.threadName and record.threadName.startswith(BACKGROUND_THREAD_PREFIX):
            payload["thread"] = record.threadName
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        # Context may hold Paths or dates.
        return json.dumps(payload, default=str)


def setup_logging(logs_dir: Path, level: int = logging.INFO) -> Path:
    """Send JSON logs to stdout and the app log; returns the log file path."""

    logs_dir.mkdir(parents=True, exist_ok=True)
    logfile = logs_dir / LOG_FILENAME
    formatter = JsonFormatter()

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    for handler in (logging.FileHandler(logfile), logging.StreamHandler()):
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.info(
        "Logging configured",
        extra={
            "event": "logging_configured",
            "context": {"logfile": str(logfile), "level": logging.getLevelName(level)},
        },
    )
    return logfile
