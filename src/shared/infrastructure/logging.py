"""
Structured Logging
==================

JSON log lines for the SLA engine.

Every line carries the service name, environment and, inside an HTTP
request or a sweep run, the correlation ID of that unit of work. The
ID lives in a context variable so that repositories and services deep
in the call stack do not need to pass it around.

Usage:
    from shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("SLA tracking initialized", extra={"ticket_id": "T-1001"})
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from pythonjsonlogger import jsonlogger


_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Webhook URLs embed delivery tokens
_REDACTED_KEYS = ("password", "api_key", "webhook_url", "secret")

_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.ERROR,
    "sqlalchemy.engine": logging.WARNING,
    "apscheduler": logging.WARNING,
    "watchdog": logging.WARNING,
    "httpx": logging.WARNING,
}


def set_correlation_id(value: Optional[str]):
    """Bind a correlation ID to the current task; returns a reset token."""
    return _correlation_id.set(value)


def reset_correlation_id(token) -> None:
    _correlation_id.reset(token)


def current_correlation_id() -> Optional[str]:
    return _correlation_id.get()


class SlaJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter stamping service, environment and correlation ID."""

    def __init__(self, *args, service: str = "sla-engine", environment: str = "unknown", **kwargs):
        super().__init__(*args, **kwargs)
        self.service = service
        self.environment = environment

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        log_record["service"] = self.service
        log_record["environment"] = self.environment

        correlation_id = getattr(record, "correlation_id", None) or current_correlation_id()
        if correlation_id:
            log_record["correlation_id"] = correlation_id

        for key in list(log_record):
            if any(marker in key.lower() for marker in _REDACTED_KEYS):
                log_record[key] = "***REDACTED***"


def setup_logging(
    level: str = "INFO",
    environment: str = "development",
    service: str = "sla-engine",
) -> None:
    """
    Route every logger through one JSON handler on stdout.

    Args:
        level: Root log level name
        environment: Stamped on every line
        service: Stamped on every line
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SlaJsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        service=service,
        environment=environment,
    ))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


@contextmanager
def log_duration(logger: logging.Logger, operation: str, **context: Any) -> Iterator[None]:
    """
    Log how long a block took, whether or not it raised.

    Usage:
        with log_duration(logger, "catalog_apply", rules=12):
            await repository.apply(catalog)
    """
    started = time.perf_counter()
    try:
        yield
    finally:
        logger.info(
            f"{operation} finished",
            extra={
                "operation": operation,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                **context,
            },
        )
