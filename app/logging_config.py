"""
Structured logging configuration.
Outputs JSON in production so payment transitions are searchable in log storage.
Outputs plain text in development for readability.
"""

import sys
import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict

from app.config import settings


# Attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Format logs as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        # Fields passed as logger.info(..., extra={"payment_id": ...})
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_obj[key] = value

        return json.dumps(log_obj, default=str)


def configure_logging() -> None:
    """Configure root logger."""
    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if settings.is_production:
        console_handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        console_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)

    # Set levels for noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # razorpay SDK HTTP traffic
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    if not settings.db_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
