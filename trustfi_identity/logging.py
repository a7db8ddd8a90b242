import logging
import logging.config
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional
from uuid import uuid4

from trustfi_identity.config import Settings, settings as default_settings

"""
Configures and provides logging for the library.

This module sets up structured JSON logging by default (or text logging if configured)
and provides an operation-id context so that every log record emitted while handling
one service call (issue, verify, revoke, ...) can be correlated.
"""

_operation_id: ContextVar[str] = ContextVar("trustfi_operation_id", default="-")


class OperationIdFilter(logging.Filter):
    """Stamps each record with the current operation id so formatters can reference it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "operation_id"):
            record.operation_id = _operation_id.get()
        return True


def configure_logging(config: Optional[Settings] = None):
    """Configures library-wide logging.

    Sets up logging format (JSON or text), level, and handlers based on `config`
    (the shared `settings` instance when omitted). Configures the package logger,
    the logger named after `app_name`, and the root logger.
    """
    config = config or default_settings
    log_format = config.log_format.lower()
    if log_format not in ["json", "text"]:
        # Logging is not configured yet, so this warning can only go to stdout.
        print(f"WARNING: Invalid log_format '{config.log_format}' in settings. Falling back to 'text'.")
        log_format = "text"

    level = "DEBUG" if config.debug else config.log_level.upper()

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "operation_id": {"()": OperationIdFilter},
        },
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s %(operation_id)s",
                "rename_fields": {"levelname": "level", "asctime": "timestamp"},
            },
            "text": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - [%(operation_id)s] - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": log_format,
                "filters": ["operation_id"],
                "level": level,
                "stream": "ext://sys.stderr"
            }
        },
        "loggers": {
            config.app_name: {
                "handlers": ["console"],
                "level": level,
                "propagate": False,
            },
            "trustfi_identity": {
                "handlers": ["console"],
                "level": level,
                "propagate": False,
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        }
    }
    logging.config.dictConfig(logging_config)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger instance.

    If `name` is not provided, it defaults to the application name defined in settings,
    or 'trustfi_identity' as a fallback.

    Args:
        name: The name for the logger.

    Returns:
        A `logging.Logger` instance.
    """
    default_logger_name = default_settings.app_name or "trustfi_identity"
    return logging.getLogger(name or default_logger_name)


@contextmanager
def operation_scope(operation_id: Optional[str] = None) -> Iterator[str]:
    """Binds an operation id to all log records emitted inside the block.

    A fresh UUID4 is generated unless an id is given. Nested scopes restore the
    outer id on exit.
    """
    op_id = operation_id or str(uuid4())
    token = _operation_id.set(op_id)
    try:
        yield op_id
    finally:
        _operation_id.reset(token)


def current_operation_id() -> str:
    return _operation_id.get()
