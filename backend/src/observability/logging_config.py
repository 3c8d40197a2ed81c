"""Structured JSON logging configuration.

Provides centralized logging setup with execution correlation and JSON
formatting.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from .correlation import CORRELATION_FIELDS, get_correlation

# Extra fields copied from `logger.x(..., extra={...})` into the JSON line
EXTRA_FIELDS = ("endpoint_id", "rule_id", "audit_event_id", "audit_event", "error_type", "attempt")


class CorrelationFilter(logging.Filter):
    """Add execution correlation ids to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Stamp ids from the correlation context.

        Ids passed explicitly through `extra` take precedence.

        Returns:
            bool: Always True (don't filter out records)
        """
        for key, value in get_correlation().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        if not hasattr(record, "execution_id"):
            record.execution_id = "no-execution"
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        for key in (*CORRELATION_FIELDS, *EXTRA_FIELDS):
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value if isinstance(value, (dict, int, float)) else str(value)

        # Add exception info if present
        if record.exc_info:
            log_data["error"] = str(record.exc_info[1])
            log_data["traceback"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure application-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, use JSON formatter; otherwise use simple format
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(execution_id)s - %(module)s.%(funcName)s - %(message)s'
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationFilter())
    root_logger.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
