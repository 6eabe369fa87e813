"""Centralized exception handling system for the Note Importer pipeline."""

from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime, timezone


class ErrorSeverity(str, Enum):
    """Error severity levels for monitoring and alerting."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories for classification and handling."""
    VALIDATION = "validation"
    STATE_TRANSITION = "state_transition"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    RATE_LIMIT = "rate_limit"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class NoteImporterException(Exception):
    """Base exception class for all Note Importer errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        retry_after: Optional[int] = None
    ):
        self.message = message
        self.error_code = error_code
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.user_message = user_message or message
        self.retry_after = retry_after
        self.timestamp = datetime.now(timezone.utc)

        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value,
            "severity": self.severity.value,
            "details": self.details,
            "retry_after": self.retry_after,
            "timestamp": self.timestamp.isoformat()
        }


class InvalidTransitionError(NoteImporterException):
    """Raised when an item is asked to move along an edge the lifecycle does not allow."""

    def __init__(self, current: str, attempted: str, **kwargs):
        self.current = current
        self.attempted = attempted

        super().__init__(
            message=f"Invalid state transition: {current} -> {attempted}",
            error_code="INVALID_TRANSITION",
            category=ErrorCategory.STATE_TRANSITION,
            severity=ErrorSeverity.HIGH,
            details={"current": current, "attempted": attempted},
            user_message=f"Item cannot move from '{current}' to '{attempted}'.",
            **kwargs
        )


class ItemNotFoundException(NoteImporterException):
    """Raised when a queue item is not present in the store."""

    def __init__(self, key: str, **kwargs):
        super().__init__(
            message=f"Queue item '{key}' not found",
            error_code="ITEM_NOT_FOUND",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            details={"key": key},
            user_message="The requested queue item was not found.",
            **kwargs
        )


class AnalysisError(NoteImporterException):
    """Raised by the analysis collaborator; its message becomes the item's error message."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code="ANALYSIS_ERROR",
            category=ErrorCategory.EXTERNAL_SERVICE,
            severity=ErrorSeverity.MEDIUM,
            **kwargs
        )


class UploadError(NoteImporterException):
    """Recoverable upload failure reported by the upload collaborator."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(
            message=message,
            error_code="UPLOAD_ERROR",
            category=ErrorCategory.EXTERNAL_SERVICE,
            severity=ErrorSeverity.MEDIUM,
            details={"status_code": status_code},
            user_message="Upload to the note service failed.",
            **kwargs
        )


class RateLimitException(NoteImporterException):
    """Raised when the remote service asks the caller to wait."""

    def __init__(self, duration_seconds: int, **kwargs):
        super().__init__(
            message=f"Rate limit exceeded, retry in {duration_seconds}s",
            error_code="RATE_LIMIT_EXCEEDED",
            category=ErrorCategory.RATE_LIMIT,
            severity=ErrorSeverity.LOW,
            details={"duration_seconds": duration_seconds},
            retry_after=duration_seconds,
            **kwargs
        )


class DatabaseException(NoteImporterException):
    """Raised when queue store operations fail."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        details = kwargs.pop('details', {})
        if operation:
            details['operation'] = operation

        super().__init__(
            message=message,
            error_code="DATABASE_ERROR",
            category=ErrorCategory.DATABASE,
            severity=ErrorSeverity.HIGH,
            details=details,
            user_message="A database error occurred. Please try again later.",
            **kwargs
        )


class ConfigurationException(NoteImporterException):
    """Raised when configuration is invalid or missing."""

    def __init__(self, config_key: str, message: str, **kwargs):
        super().__init__(
            message=f"Configuration error for '{config_key}': {message}",
            error_code="CONFIGURATION_ERROR",
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            details={"config_key": config_key},
            user_message="Service configuration error.",
            **kwargs
        )
