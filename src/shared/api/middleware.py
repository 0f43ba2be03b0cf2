"""
Shared API Middleware
======================

Request context middleware and the exception handlers that map the
engine's error taxonomy to HTTP responses.
"""

import time
import uuid
from typing import Callable
from datetime import datetime, timezone

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi.responses import JSONResponse

from config import settings
from core.exceptions import (
    ApplicationException,
    ConfigurationError,
    DomainException,
    ExternalServiceException,
    ResourceNotFoundException,
    ValidationException,
)
from shared.infrastructure.logging import get_logger, set_correlation_id, reset_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a correlation ID to the request and logs its outcome.

    The ID is taken from ``X-Correlation-ID`` when the caller sends one
    and is echoed back together with ``X-Response-Time``. While the
    request runs, every log line carries it.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("Request failed", extra={
                "method": request.method,
                "path": request.url.path,
                "error": str(e),
                "response_time_ms": int((time.perf_counter() - started) * 1000),
            })
            raise
        finally:
            reset_correlation_id(token)

        elapsed = time.perf_counter() - started
        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"

        logger.info("Request completed", extra={
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "response_time_ms": int(elapsed * 1000),
        })
        return response


def _status_for(exc: ApplicationException) -> int:
    if isinstance(exc, ResourceNotFoundException):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ValidationException):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, (ConfigurationError, DomainException)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ExternalServiceException):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "unknown")


async def application_exception_handler(request: Request, exc: ApplicationException) -> JSONResponse:
    """Engine errors become a JSON body with the exception type and details."""
    status_code = _status_for(exc)
    logger.warning("Request rejected", extra={
        "path": request.url.path,
        "error_type": type(exc).__name__,
        "error_message": exc.message,
        "status_code": status_code,
    })

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error_type": type(exc).__name__,
            "details": exc.details,
            "correlation_id": _correlation_id(request),
        }
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected is a 500; the message is only shown in development."""
    logger.error("Unhandled exception", extra={
        "path": request.url.path,
        "method": request.method,
        "error_type": type(exc).__name__,
        "error_message": str(exc),
    }, exc_info=exc)

    is_dev = settings.environment == "development"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "correlation_id": _correlation_id(request),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if is_dev else None,
        }
    )
