"""
Logging for the `hostpulse` logger tree.

Files get one JSON object per line (rotated at midnight); the console gets
a short human line. Modules log through `logging.getLogger(__name__)` and
attach structured fields with `extra={"event": ..., "rule_id": ...}`.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .config import APP_DIR

LOGGER_NAME = "hostpulse"
LOG_FILE = "hostpulse.log"

# extra= keys copied into the JSON payload
STRUCTURED_FIELDS = ("event", "rule_id", "alert_id")


def log_dir(directory: Optional[Path] = None) -> Path:
    path = directory or APP_DIR / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts_utc": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,   # pool cycles log off the main thread
            "msg": record.getMessage(),
        }
        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(
    level: int = logging.INFO,
    console: bool = True,
    directory: Optional[Path] = None,
    keep_files: int = 7,
) -> logging.Logger:
    """
    Install handlers on the `hostpulse` logger once. Later calls only
    adjust the level, so a CLI re-run with --verbose takes effect.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    file_handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(log_dir(directory) / LOG_FILE),
        when="midnight",
        backupCount=max(1, keep_files),
        encoding="utf-8",
    )
    file_handler.setFormatter(JsonFormatter())
    logger.addHandler(file_handler)

    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s", "%H:%M:%S")
        )
        logger.addHandler(stream_handler)

    logger.info("logging to %s", file_handler.baseFilename, extra={"event": "logging_configured"})
    return logger
