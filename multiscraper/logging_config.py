"""Structured logging configuration."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from pythonjsonlogger import jsonlogger

from multiscraper.config import settings

USER_ACTIVITY_LOGGER = "multiscraper.user_activity"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with the fields our log shipper indexes on."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        if record.funcName:
            log_record['function'] = record.funcName


def setup_logging(base_dir: str | Path | None = None):
    """Configure logging for the application.

    Args:
        base_dir: Optional base directory to place the logs folder in.
                  If omitted, uses the current working directory.
    """

    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / settings.log_dir
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    # Console handler (human-readable)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    # File handler (JSON)
    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    json_handler = logging.FileHandler(logs_dir / "app.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    # User activity gets its own file and stays out of the main log
    activity_logger = logging.getLogger(USER_ACTIVITY_LOGGER)
    activity_logger.handlers.clear()
    activity_logger.propagate = False
    activity_logger.setLevel(logging.INFO)
    activity_handler = logging.FileHandler(logs_dir / "user_activity.log")
    activity_handler.setFormatter(json_formatter)
    activity_logger.addHandler(activity_handler)

    # APScheduler is chatty at INFO about every single job execution
    logging.getLogger("apscheduler.executors").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges its context into each record's extra."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger with optional context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Additional context fields (e.g., query_id=12, retailer='lidl')

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)


def log_user_activity(user_id: int, message: str, username: str | None = None) -> None:
    """Record an action taken by (or on behalf of) a user."""
    logging.getLogger(USER_ACTIVITY_LOGGER).info(
        message, extra={"user_id": user_id, "username": username}
    )
