"""Logging setup for relay services.

Console logging always; optional JSON lines to a rotating file for log
shippers.
"""

import json
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came in via ``extra``
_RESERVED_ATTRIBUTES = frozenset(
    [
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    ]
)


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Formats log records as JSON with timestamp, level, logger, message and
    any extra fields passed to the logging call.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted string
        """
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    log_path: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Console format, "text" or "json"
        log_path: Directory for a rotating JSON log file (console only if None)
        max_bytes: Maximum size of the log file before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The configured root logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    if log_format == "json":
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console_handler)

    if log_path:
        try:
            os.makedirs(log_path, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_path, "relay.log"),
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(JsonFormatter())
            root.addHandler(file_handler)
        except OSError as e:
            root.warning(f"Could not create log file: {e}. Logging to console only.")

    return root
