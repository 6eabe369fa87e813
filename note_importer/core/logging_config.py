"""Structured logging configuration with context management."""

import inspect
import logging
import logging.config
import json
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from contextvars import ContextVar
from functools import wraps

# Context variables for pipeline operation tracking
log_context: ContextVar[Dict[str, Any]] = ContextVar('log_context', default={})

CONTEXT_FIELDS = ['run_id', 'item_key', 'stage', 'operation', 'retry_count', 'duration_ms']

_RESERVED_RECORD_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename', 'module',
    'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName', 'created', 'msecs',
    'relativeCreated', 'thread', 'threadName', 'processName', 'process', 'message',
    'taskName'
}


class ContextFilter(logging.Filter):
    """Logging filter that adds context information to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = log_context.get({})

        for key, value in context.items():
            if not hasattr(record, key):
                setattr(record, key, value)

        # Ensure required fields exist for the text formatter
        if not hasattr(record, 'run_id'):
            record.run_id = '-'
        if not hasattr(record, 'item_key'):
            record.item_key = '-'
        if not hasattr(record, 'stage'):
            record.stage = '-'

        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None and value != '-':
                log_data[field] = value

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        extra_fields = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_ATTRS or key in CONTEXT_FIELDS:
                continue
            if not key.startswith('_'):
                extra_fields[key] = value

        if extra_fields:
            log_data['extra'] = extra_fields

        return json.dumps(log_data, default=str)


class ContextManager:
    """Manages logging context for pipeline runs and item operations."""

    @staticmethod
    def set_context(**kwargs) -> None:
        """Set context variables for the current task."""
        current_context = dict(log_context.get({}))
        current_context.update(kwargs)
        log_context.set(current_context)

    @staticmethod
    def get_context() -> Dict[str, Any]:
        """Get current context."""
        return log_context.get({})

    @staticmethod
    def clear_context() -> None:
        """Clear current context."""
        log_context.set({})

    @staticmethod
    def generate_run_id() -> str:
        """Generate unique run ID."""
        return str(uuid.uuid4())


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None
) -> None:
    """Setup logging configuration."""

    if log_format.lower() == "json":
        formatter_class = JSONFormatter
        format_string = ""
    else:
        formatter_class = logging.Formatter
        format_string = (
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(stage)s:%(item_key)s] - %(message)s"
        )

    config = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'detailed': {
                '()': formatter_class,
                'format': format_string
            }
        },
        'filters': {
            'context_filter': {
                '()': ContextFilter
            }
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'level': log_level,
                'formatter': 'detailed',
                'filters': ['context_filter'],
                'stream': 'ext://sys.stderr'
            }
        },
        'loggers': {
            '': {  # Root logger
                'level': log_level,
                'handlers': ['console'],
                'propagate': False
            },
            'note_importer': {
                'level': log_level,
                'handlers': ['console'],
                'propagate': False
            },
            'uvicorn': {
                'level': 'INFO',
                'handlers': ['console'],
                'propagate': False
            },
            'sqlalchemy': {
                'level': 'WARNING',
                'handlers': ['console'],
                'propagate': False
            }
        }
    }

    if log_file:
        config['handlers']['file'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'level': log_level,
            'formatter': 'detailed',
            'filters': ['context_filter'],
            'filename': log_file,
            'maxBytes': 10485760,  # 10MB
            'backupCount': 5
        }

        for logger_config in config['loggers'].values():
            logger_config['handlers'].append('file')

    logging.config.dictConfig(config)


def with_logging_context(**context_kwargs):
    """Decorator to add logging context to a sync or async function."""
    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                ContextManager.set_context(**context_kwargs)
                return await func(*args, **kwargs)
            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            ContextManager.set_context(**context_kwargs)
            return func(*args, **kwargs)
        return wrapper
    return decorator


class StructuredLogger:
    """Enhanced logger with structured logging capabilities."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log_with_context(self, level: int, message: str, **kwargs) -> None:
        """Log message with additional context."""
        exc_info = kwargs.pop('exc_info', None)
        extra = {}
        for key, value in {**ContextManager.get_context(), **kwargs}.items():
            # LogRecord refuses to overwrite its own attributes
            extra[f"ctx_{key}" if key in _RESERVED_RECORD_ATTRS else key] = value

        self.logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.CRITICAL, message, **kwargs)

    def operation_start(self, operation: str, **kwargs) -> None:
        """Log start of an operation."""
        ContextManager.set_context(operation=operation)
        self.info(f"Starting operation: {operation}", operation_status="started", **kwargs)

    def operation_end(self, operation: str, duration_ms: Optional[float] = None, **kwargs) -> None:
        """Log end of an operation."""
        log_kwargs = {"operation_status": "completed", **kwargs}
        if duration_ms is not None:
            log_kwargs["duration_ms"] = duration_ms
        self.info(f"Completed operation: {operation}", **log_kwargs)

    def operation_error(self, operation: str, error: Exception, **kwargs) -> None:
        """Log operation error."""
        self.error(
            f"Operation failed: {operation}",
            operation_status="failed",
            error_type=type(error).__name__,
            error_message=str(error),
            **kwargs
        )


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
