"""
Logging setup for the pipeline.

Console output is colourised by level. Three rotating files sit under LOG_DIR:
everything at DEBUG and above, errors only, and a job/allocation event trail
written by the ``log_*`` helpers at the bottom of this module.
"""

import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_DIR = Path(os.getenv("LOG_DIR", Path(__file__).parent.parent / "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", str(10 * 1024 * 1024)))
LOG_BACKUPS = int(os.getenv("LOG_BACKUPS", "5"))

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(module)s.%(funcName)s:%(lineno)d | %(message)s"
EVENT_FORMAT = "%(asctime)s | %(event_kind)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """Colours the level name for terminals."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record):
        original = record.levelname
        color = self.LEVEL_COLORS.get(record.levelno)
        if color:
            record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class EventFilter(logging.Filter):
    """Only lets through records tagged by the event helpers."""

    def filter(self, record):
        return hasattr(record, "event_kind")


def _rotating(filename: str, level: int, fmt: str) -> RotatingFileHandler:
    handler = RotatingFileHandler(LOG_DIR / filename, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))
    return handler


def setup_logging(name: str = "pipeline") -> logging.Logger:
    """
    Configure and return the application logger.

    Module loggers obtained with ``logging.getLogger(__name__)`` are not
    children of ``name``, so the console and file handlers also go on the
    root logger when it has none yet. The event trail is only attached to
    the application logger.

    Args:
        name: Logger name, also used as the log file prefix.

    Returns:
        The configured logger. Calling again returns it unchanged.
    """
    app_logger = logging.getLogger(name)
    if app_logger.handlers:
        return app_logger

    level = getattr(logging, LOG_LEVEL, logging.INFO)
    app_logger.setLevel(level)
    app_logger.propagate = False

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG)
    console.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))

    shared = [
        console,
        _rotating(f"{name}.log", logging.DEBUG, FILE_FORMAT),
        _rotating(f"{name}_errors.log", logging.ERROR, FILE_FORMAT),
    ]

    events = _rotating(f"{name}_events.log", logging.DEBUG, EVENT_FORMAT)
    events.addFilter(EventFilter())

    root = logging.getLogger()
    if not root.handlers:
        root.setLevel(level)
        for handler in shared:
            root.addHandler(handler)

    for handler in shared + [events]:
        app_logger.addHandler(handler)

    return app_logger


logger = setup_logging()


def log_request(method: str, path: str, user_id: str = None, status_code: int = None, duration_ms: float = None):
    """Log an HTTP request."""
    who = f" user={user_id}" if user_id else ""
    if duration_ms is None:
        logger.info(f"{method} {path}{who}")
    else:
        logger.info(f"{method} {path}{who} -> {status_code} in {duration_ms:.1f}ms")


def log_job_event(job_id: str, event: str, service_type: str = None, error: str = None):
    """Record a job lifecycle transition in the event trail."""
    label = f"job={job_id}" + (f" service={service_type}" if service_type else "")
    if error:
        logger.warning(f"{label} {event}: {error}", extra={"event_kind": "job"})
    else:
        logger.info(f"{label} {event}", extra={"event_kind": "job"})


def log_allocation(category: str, outcome: str, resource_id: str = None, order_id: str = None):
    """Record an inventory allocation; misses are warnings."""
    message = f"category={category} outcome={outcome} order={order_id}"
    if resource_id:
        logger.info(f"{message} resource={resource_id}", extra={"event_kind": "allocation"})
    else:
        logger.warning(message, extra={"event_kind": "allocation"})
