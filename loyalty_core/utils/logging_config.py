"""
Logging configuration for Loyalty Core.

Environment Variables:
    LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default INFO)
    LOG_FORMAT: "standard" or "json" (default standard)
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict

_configured = False


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        details = getattr(record, 'details', None)
        if details:
            log_data['details'] = details

        return json.dumps(log_data, default=str)


def setup_logging(level: str = None, format_type: str = None) -> None:
    """
    Configure the root logger once per process.

    Repeated calls (one per create_app in tests) only adjust the level.
    """
    global _configured

    level = level or os.getenv('LOG_LEVEL', 'INFO')
    format_type = format_type or os.getenv('LOG_FORMAT', 'standard')
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    if _configured:
        return

    if format_type == 'json':
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from external libraries
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name (usually __name__)."""
    return logging.getLogger(name)
