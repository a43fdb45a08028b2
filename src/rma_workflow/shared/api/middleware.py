"""
Shared API Middleware
======================

Common middleware and exception handlers for the FastAPI application.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from rma_workflow.core import (
    ApplicationException, ConflictException, InvalidTransitionException,
    RepositoryException, ResourceNotFoundException, ValidationException
)
from rma_workflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Adds a correlation ID to every request and response.

    An incoming ``X-Correlation-ID`` header is reused; otherwise one is
    generated.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with its status and latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = getattr(request.state, "correlation_id", "unknown")
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                extra={
                    "correlation_id": correlation_id,
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "response_time_ms": int((time.perf_counter() - start_time) * 1000)
                }
            )
            raise

        logger.info(
            "Request completed",
            extra={
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "response_time_ms": int((time.perf_counter() - start_time) * 1000)
            }
        )
        return response


# ========== Exception Handlers ==========

def _error_response(
    request: Request,
    status_code: int,
    error: str,
    exc: ApplicationException
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "detail": exc.message,
            "details": exc.details,
            "correlation_id": getattr(request.state, "correlation_id", None),
        }
    )


async def validation_exception_handler(request: Request, exc: ValidationException) -> JSONResponse:
    return _error_response(request, 422, "validation_error", exc)


async def invalid_transition_handler(request: Request, exc: InvalidTransitionException) -> JSONResponse:
    logger.info(
        "Invalid transition rejected",
        extra={"case_id": exc.case_id, "operation": exc.operation, "error": exc.message}
    )
    return _error_response(request, 409, "invalid_transition", exc)


async def conflict_exception_handler(request: Request, exc: ConflictException) -> JSONResponse:
    logger.warning(
        "Version conflict",
        extra={
            "case_id": exc.case_id,
            "expected_version": exc.expected_version,
            "actual_version": exc.actual_version
        }
    )
    return _error_response(request, 409, "version_conflict", exc)


async def not_found_exception_handler(request: Request, exc: ResourceNotFoundException) -> JSONResponse:
    return _error_response(request, 404, "not_found", exc)


async def repository_exception_handler(request: Request, exc: RepositoryException) -> JSONResponse:
    logger.error(
        "Case store unavailable",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", None),
            "path": request.url.path,
            "error": exc.message
        }
    )
    return JSONResponse(
        status_code=503,
        content={
            "error": "store_unavailable",
            "detail": "Case store unavailable, retry later",
            "correlation_id": getattr(request.state, "correlation_id", None),
        }
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handler for anything not mapped above.

    Internal details are only exposed in development.
    """
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    logger.error(
        "Unhandled exception",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error_message": str(exc)
        }
    )

    settings = getattr(request.app.state, "settings", None)
    is_dev = getattr(settings, "environment", None) == "development"

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "detail": "Internal server error",
            "correlation_id": correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if is_dev else None
        }
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain exceptions to HTTP responses."""
    app.add_exception_handler(ValidationException, validation_exception_handler)
    app.add_exception_handler(InvalidTransitionException, invalid_transition_handler)
    app.add_exception_handler(ConflictException, conflict_exception_handler)
    app.add_exception_handler(ResourceNotFoundException, not_found_exception_handler)
    app.add_exception_handler(RepositoryException, repository_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
