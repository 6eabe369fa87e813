"""Global exception handlers for the operator API."""

import logging
from typing import Dict, Any, Optional
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from .exceptions import (
    NoteImporterException, InvalidTransitionError, ItemNotFoundException,
    RateLimitException, ConfigurationException, ErrorCategory, ErrorSeverity
)

logger = logging.getLogger(__name__)


class ErrorHandler:
    """Centralized error response generation."""

    @staticmethod
    def create_error_response(
        status_code: int,
        error_code: str,
        message: str,
        user_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None
    ) -> JSONResponse:
        """Create standardized error response."""
        content = {
            "error": {
                "code": error_code,
                "message": message,
                "user_message": user_message or message,
                "details": details or {}
            }
        }

        headers = {}
        if retry_after:
            headers["Retry-After"] = str(retry_after)

        return JSONResponse(status_code=status_code, content=content, headers=headers)

    @staticmethod
    def log_error(exception: Exception, request: Request, severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> None:
        """Log error with request information."""
        error_info = {
            "exception_type": type(exception).__name__,
            "exception_message": str(exception),
            "method": request.method,
            "url": str(request.url),
        }

        if severity == ErrorSeverity.CRITICAL:
            logger.critical("Critical error occurred", extra=error_info)
        elif severity == ErrorSeverity.HIGH:
            logger.error("High severity error occurred", extra=error_info)
        elif severity == ErrorSeverity.MEDIUM:
            logger.warning("Medium severity error occurred", extra=error_info)
        else:
            logger.info("Low severity error occurred", extra=error_info)


async def note_importer_exception_handler(request: Request, exc: NoteImporterException) -> JSONResponse:
    """Handle custom Note Importer exceptions."""
    ErrorHandler.log_error(exc, request, exc.severity)

    if isinstance(exc, ItemNotFoundException):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, InvalidTransitionError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, RateLimitException):
        status_code = status.HTTP_429_TOO_MANY_REQUESTS
    elif isinstance(exc, ConfigurationException):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif exc.category == ErrorCategory.VALIDATION:
        status_code = status.HTTP_400_BAD_REQUEST
    elif exc.category == ErrorCategory.EXTERNAL_SERVICE:
        status_code = status.HTTP_502_BAD_GATEWAY
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    return ErrorHandler.create_error_response(
        status_code=status_code,
        error_code=exc.error_code,
        message=exc.message,
        user_message=exc.user_message,
        details=exc.details,
        retry_after=exc.retry_after
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors."""
    ErrorHandler.log_error(exc, request, ErrorSeverity.LOW)

    validation_errors = []
    for error in exc.errors():
        validation_errors.append({
            "field": " -> ".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    return ErrorHandler.create_error_response(
        status_code=422,
        error_code="VALIDATION_ERROR",
        message="Request validation failed",
        user_message="Please check your input data and try again.",
        details={"validation_errors": validation_errors}
    )


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy errors raised by the queue store."""
    ErrorHandler.log_error(exc, request, ErrorSeverity.HIGH)

    return ErrorHandler.create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code="DATABASE_ERROR",
        message="Database operation failed",
        user_message="A database error occurred. Please try again later."
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(NoteImporterException, note_importer_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
