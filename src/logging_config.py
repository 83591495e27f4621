"""Configure structured logging for the store server.

Every record is rendered as one JSON object carrying the timestamp, level,
logger, module and message, plus the optional ``user_id`` and the contents
of an ``extra`` dict passed by the caller::

    logger.info("Sale rejected", extra={"user_id": "alice", "extra": {"reason": "EMPTY_CART"}})

Records go to stderr and to a rotating ``store_server.log`` file.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone

LOG_FILE_NAME = "store_server.log"


class JsonFormatter(logging.Formatter):
    """Format log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if getattr(record, "user_id", None) is not None:
            log_record["user_id"] = record.user_id
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            # Flattened into the top level rather than nested under "extra"
            log_record.update(extra)
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def configure_logging(log_dir: str | None = None, level: int = logging.INFO) -> None:
    """Install JSON console and rotating file handlers on the root logger.

    Args:
        log_dir: Directory for ``store_server.log``; created if missing.
            Defaults to ``STORE_LOG_DIR`` or ``logs``.
        level: Level for the root logger and both handlers.
    """
    log_dir = log_dir or os.environ.get("STORE_LOG_DIR", "logs")
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    formatter = JsonFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    root.addHandler(console_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        filename=os.path.join(log_dir, LOG_FILE_NAME),
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)
    root.addHandler(file_handler)
