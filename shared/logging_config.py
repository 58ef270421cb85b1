"""Structured JSON logging configuration."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from shared.config import get_settings

# Extra attributes copied into the JSON payload when passed via `extra={...}`
EXTRA_FIELDS = (
    "user_id",
    "appointment_id",
    "outbox_event_id",
    "instance_name",
    "notification_type",
    "request_path",
)

# Chatty third-party loggers (one line per HTTP request / discovery lookup)
QUIET_LOGGERS = ("httpx", "httpcore", "googleapiclient.discovery_cache")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per log line.

    Fields: timestamp (ISO 8601), level, service, logger, message, any of
    EXTRA_FIELDS present on the record and the formatted exception.
    """

    def __init__(self, service: str = "api"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = str(getattr(record, field))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


def configure_logging(service: str = "api") -> None:
    """
    Send JSON logs to stderr (captured by Docker logs).

    Args:
        service: Process name stamped on every line ("api", "outbox_worker", ...)
    """
    settings = get_settings()
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(JSONFormatter(service))
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    root_logger.info(f"Logging configured: service={service}, level={settings.LOG_LEVEL}")
