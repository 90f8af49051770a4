"""Structured Logger with JSON Formatting.

Provides structured logging with JSON output for machine-readable logs.
Context passed as keyword arguments (upload_id, generation, hour, ...) is
emitted as top-level JSON fields next to the correlation ID.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

from relay_metrics.lib.distributed_tracing import get_correlation_id

# Attributes every LogRecord carries; anything else came from `extra=`.
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

SENSITIVE_KEYS = ('token', 'password', 'secret', 'authorization')


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': _utc_timestamp(),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name,
            'function': record.funcName,
            'correlation_id': get_correlation_id(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in log_data:
                continue
            if any(s in key.lower() for s in SENSITIVE_KEYS):
                continue
            log_data[key] = value

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None
            }

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """Structured logger with JSON formatting.

    Usage:
        logger = StructuredLogger(__name__)
        logger.info("Upload completed", upload_id="u1", duration_seconds=12)
        logger.error("Durable write failed", exc_info=True, upload_id="u1")
    """

    def __init__(self, name: str):
        """Initialize structured logger.

        Args:
            name: Logger name (typically module name)
        """
        self.logger = logging.getLogger(name)

        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.logger.setLevel(getattr(logging, log_level, logging.INFO))

        # Remove existing handlers to avoid duplicates
        self.logger.handlers.clear()

        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        self.logger.addHandler(handler)

        self.logger.propagate = False

    def info(self, message: str, **extra: Any) -> None:
        self.logger.info(message, extra=extra)

    def warning(self, message: str, exc_info: bool = False, **extra: Any) -> None:
        self.logger.warning(message, exc_info=exc_info, extra=extra)

    def error(self, message: str, exc_info: bool = False, **extra: Any) -> None:
        """Log ERROR level message.

        Args:
            message: Log message
            exc_info: Include exception traceback
            **extra: Identifiers of the failed operation (upload_id, hour, ...)
        """
        self.logger.error(message, exc_info=exc_info, extra=extra)


_request_logger = StructuredLogger('relay_metrics.requests')


def log_request(endpoint: str, method: str, status_code: int, duration_ms: float) -> None:
    """Log API request with performance metrics (WARNING for 4xx, ERROR for 5xx).

    Args:
        endpoint: API endpoint path
        method: HTTP method
        status_code: HTTP status code
        duration_ms: Request duration in milliseconds
    """
    if status_code >= 500:
        log = _request_logger.error
    elif status_code >= 400:
        log = _request_logger.warning
    else:
        log = _request_logger.info
    log(
        f'{method} {endpoint}',
        endpoint=endpoint,
        method=method,
        status_code=status_code,
        duration_ms=round(duration_ms, 2),
    )
