"""Error handling and exception management.

Every error leaves the API as ``{"error": {"code", "message", "request_id",
"details"?}}``. Job pipeline exceptions raised by services are translated
here, so routes never build error responses themselves.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import DatabaseError

from finjobs.core.otel_metrics import emit_error
from finjobs.jobs.exceptions import (
    InvalidPayload,
    InvalidRequest,
    JobError,
    JobNotFound,
    JobStateConflict,
    QueueUnavailable,
)

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors.

    Attributes:
        status_code: HTTP status code
        error_code: Application-specific error code
        message: Human-readable error message
        details: Optional additional error details
    """

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(APIError):
    """Resource not found error."""

    def __init__(self, resource: str, identifier: str | None = None):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="not_found",
            message=message,
            details={"resource": resource, "identifier": identifier},
        )


class UnauthorizedError(APIError):
    """Request carries no usable caller identity."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="unauthorized",
            message=message,
        )


class ForbiddenError(APIError):
    """Forbidden access error."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="forbidden",
            message=message,
        )


# Most specific class first; the first isinstance match wins
JOB_ERROR_STATUS: list[tuple[type[JobError], int, str]] = [
    (InvalidPayload, status.HTTP_400_BAD_REQUEST, "invalid_payload"),
    (InvalidRequest, status.HTTP_400_BAD_REQUEST, "invalid_request"),
    (JobNotFound, status.HTTP_404_NOT_FOUND, "not_found"),
    (JobStateConflict, status.HTTP_409_CONFLICT, "conflict"),
    (QueueUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE, "queue_unavailable"),
]


def _error_body(
    code: str,
    message: str,
    request_id: str | None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": {"code": code, "message": message, "request_id": request_id}
    }
    if details:
        body["error"]["details"] = details
    return body


def _validation_details(errors: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "errors": [
            {
                "field": ".".join(str(loc) for loc in err.get("loc", [])),
                "message": err.get("msg", "Invalid value"),
                "type": err.get("type", "validation_error"),
            }
            for err in errors
        ]
    }


def format_error_response(
    error: Exception,
    request: Request,
    include_details: bool = False,
) -> dict[str, Any]:
    """Format error response with structured information.

    Args:
        error: The exception that occurred
        request: FastAPI request object
        include_details: Whether to include internal error information

    Returns:
        Dictionary with error response structure
    """
    request_id = getattr(request.state, "request_id", None)

    if isinstance(error, APIError):
        return _error_body(error.error_code, error.message, request_id, error.details)

    if isinstance(error, JobError):
        _, code = job_error_status(error)
        return _error_body(code, error.message, request_id, error.details)

    if isinstance(error, (RequestValidationError, ValidationError)):
        return _error_body(
            "validation_error",
            "Validation failed",
            request_id,
            _validation_details(error.errors()),
        )

    details = None
    if include_details:
        details = {"type": type(error).__name__, "message": str(error)}
    return _error_body("internal_error", "An internal error occurred", request_id, details)


def job_error_status(error: JobError) -> tuple[int, str]:
    """Return ``(http_status, error_code)`` for a job pipeline exception."""
    for exc_type, status_code, code in JOB_ERROR_STATUS:
        if isinstance(error, exc_type):
            return status_code, code
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "job_error"


def _emit(request: Request, code: str, status_code: int) -> None:
    emit_error(
        error_code=code,
        status_code=status_code,
        path=request.url.path,
        method=request.method,
        request_id=getattr(request.state, "request_id", None),
    )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions."""
    logger.warning(
        f"API error: {exc.error_code} - {exc.message}",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    _emit(request, exc.error_code, exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=format_error_response(exc, request),
    )


async def job_error_handler(request: Request, exc: JobError) -> JSONResponse:
    """Translate job pipeline exceptions into HTTP errors."""
    status_code, code = job_error_status(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        f"Job error: {code} - {exc.message}",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "error_code": code,
            "status_code": status_code,
            "path": request.url.path,
        },
    )
    _emit(request, code, status_code)
    return JSONResponse(
        status_code=status_code,
        content=format_error_response(exc, request),
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors."""
    # Client errors, not bugs
    logger.info(
        f"Validation error: {str(exc)}",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "path": request.url.path,
            "method": request.method,
        },
    )
    errors = exc.errors()
    if errors and all(err.get("type") == "json_invalid" for err in errors):
        # Unparseable JSON body
        _emit(request, "invalid_request", status.HTTP_400_BAD_REQUEST)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_body(
                "invalid_request",
                "Request body is not valid JSON",
                getattr(request.state, "request_id", None),
                _validation_details(errors),
            ),
        )
    _emit(request, "validation_error", status.HTTP_422_UNPROCESSABLE_CONTENT)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
        content=format_error_response(exc, request),
    )


async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    """Handle database errors raised outside the queue store."""
    request_id = getattr(request.state, "request_id", None)
    logger.error(
        f"Database error: {str(exc)}",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
        },
        exc_info=True,
    )
    _emit(request, "database_error", status.HTTP_500_INTERNAL_SERVER_ERROR)

    details = None
    if getattr(request.app.state, "debug", False):
        details = {"type": type(exc).__name__, "message": str(exc)}
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("database_error", "A database error occurred", request_id, details),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", None)
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {str(exc)}",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "exception_type": type(exc).__name__,
        },
        exc_info=True,
    )
    _emit(request, "internal_error", status.HTTP_500_INTERNAL_SERVER_ERROR)

    details = None
    if getattr(request.app.state, "debug", False):
        details = {
            "type": type(exc).__name__,
            "message": str(exc),
            "traceback": traceback.format_exc().split("\n"),
        }
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("internal_error", "An internal error occurred", request_id, details),
    )


def setup_error_handlers(app: FastAPI, debug: bool = False) -> None:
    """Register global exception handlers.

    Args:
        app: FastAPI application instance
        debug: Whether to include internal error information
    """
    app.state.debug = debug

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(JobError, job_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(DatabaseError, database_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
