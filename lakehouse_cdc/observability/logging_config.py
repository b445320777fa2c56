"""Structured JSON logging for the CDC worker."""

import json
import logging
import sys
from typing import Any, Dict, Optional

from lakehouse_cdc.common.config import get_settings

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}

_QUIET_LOGGERS = ("pyiceberg", "urllib3", "botocore", "minio")


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """
    Render each record as a single JSON line.

    Context passed through ``extra=`` (pipeline, table, position, ...) becomes
    top-level keys. Values that are not JSON types are rendered with ``str``.
    """

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        line.update(_extra_fields(record))
        return json.dumps(line, default=str)


def setup_logging(log_level: Optional[str] = None) -> None:
    """
    Route all logging to stdout as JSON lines.

    Args:
        log_level: Level name; defaults to the configured application log level
    """
    level_name = (log_level or get_settings().app.log_level).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers[:] = [handler]

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get logger instance with given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
