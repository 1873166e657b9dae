"""
Logging setup shared by every taskgraph component.

Engine modules only call ``get_logger``; the embedding process (or
``create_task_manager(configure_logging=True)``) calls ``setup_logging``
once to pick colored console lines or JSON lines.
"""

import json
import logging
import sys
from typing import Optional

from taskgraph.config import Settings, get_settings


class Colors:
    GREY = "\x1b[38;20m"
    YELLOW = "\x1b[33;20m"
    RED = "\x1b[31;20m"
    BOLD_RED = "\x1b[31;1m"
    RESET = "\x1b[0m"
    GREEN = "\x1b[32;20m"


_LINE = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Driver loggers that drown out engine messages at DEBUG
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncpg")


class ColoredFormatter(logging.Formatter):
    """One colored line per record, color keyed on level."""

    FORMATS = {
        logging.DEBUG: Colors.GREY + _LINE + Colors.RESET,
        logging.INFO: Colors.GREEN + _LINE + Colors.RESET,
        logging.WARNING: Colors.YELLOW + _LINE + Colors.RESET,
        logging.ERROR: Colors.RED + _LINE + Colors.RESET,
        logging.CRITICAL: Colors.BOLD_RED + _LINE + Colors.RESET,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, _LINE)
        formatter = logging.Formatter(log_fmt, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation."""

    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def setup_logging(
    settings: Optional[Settings] = None,
    *,
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
) -> None:
    """
    Route all log records to stdout.

    Args:
        settings: Source of ``log_level``, ``log_json`` and ``debug``;
            environment settings when omitted
        level: Overrides the settings' level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Overrides the settings' JSON switch
    """
    settings = settings or get_settings()

    log_level = level or settings.log_level or ("DEBUG" if settings.debug else "INFO")
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    if json_format is None:
        json_format = settings.log_json

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(JsonFormatter() if json_format else ColoredFormatter())
    root_logger.addHandler(console_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("taskgraph").setLevel(numeric_level)


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``taskgraph`` namespace, e.g. ``get_logger(__name__)``."""
    if not name.startswith("taskgraph"):
        name = f"taskgraph.{name}"
    return logging.getLogger(name)
