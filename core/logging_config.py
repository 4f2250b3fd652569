"""
Logging Configuration for the chat synchronization core.

This module provides the centralized logging setup used by the engine, the
collaborator adapters and the UI bridge. It supports structured JSON logging
for production and color-coded, human-readable logs for development, and
tags every record with the sync context of the signed-in session.

Key Components:
- `SyncContextFilter`: A filter that injects the current sync context id
  (`<user_id>#<generation>`) into each log record, so all logs produced on
  behalf of one signed-in session can be grouped, and logs from a session that
  has already ended are easy to spot.
- `StructuredFormatter`: Outputs log records as JSON documents.
- `ColoredConsoleFormatter`: Adds color to log levels for development.
- `get_logging_config`: Builds the `dictConfig` dictionary from the
  `ENVIRONMENT` and `LOG_LEVEL` environment variables.
- `setup_logging`: Initializes the logging system.
- `log_function_call`: A decorator logging entry, exit and execution time of
  sync and async callables.

Architectural Design:
- Context-Aware Logging: The sync context id lives in a `ContextVar`, so tasks
  spawned while a session is active keep the id of the session that spawned
  them even after a sign-out swaps the current session.
- Environment-Aware Configuration: The format and level are chosen from
  environment variables without code changes.
"""

import os
import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from contextvars import ContextVar

# Context variable for the sync context of the active session
sync_context_id: ContextVar[Optional[str]] = ContextVar(
    "sync_context_id", default=None
)

_RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "getMessage",
    "exc_info",
    "exc_text",
    "stack_info",
    "sync_context",
}


class SyncContextFilter(logging.Filter):
    """Filter that adds the sync context id to log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx_id = sync_context_id.get()
        if ctx_id:
            record.sync_context = ctx_id
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter that outputs structured JSON logs"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        ctx_id = getattr(record, "sync_context", None)
        if ctx_id:
            log_entry["sync_context"] = ctx_id

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console formatter for development"""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")

        ctx_id = getattr(record, "sync_context", None)
        ctx_part = f" [{ctx_id}]" if ctx_id else ""

        formatted = (
            f"{color}[{timestamp}] {record.levelname:8} {record.name}{ctx_part}: "
            f"{record.getMessage()}{self.RESET}"
        )

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration based on environment"""

    environment = os.getenv("ENVIRONMENT", "development").lower()
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "sync_context": {"()": SyncContextFilter},
        },
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
            },
            "colored_console": {
                "()": ColoredConsoleFormatter,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "colored_console"
                if environment == "development"
                else "structured",
                "filters": ["sync_context"],
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            # Application loggers
            "api": {"level": log_level, "handlers": ["console"], "propagate": False},
            "services": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "providers": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "core": {"level": log_level, "handlers": ["console"], "propagate": False},
            # Third-party loggers
            "uvicorn": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "sqlalchemy.engine": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }

    log_file = os.getenv("LOG_FILE")
    if environment == "production" and log_file:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "structured",
            "filters": ["sync_context"],
            "filename": log_file,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
        }

        for logger_config in config["loggers"].values():
            logger_config["handlers"].append("file")
        config["root"]["handlers"].append("file")

    return config


def setup_logging():
    """Initialize logging configuration"""
    config = get_logging_config()
    logging.config.dictConfig(config)

    logger = logging.getLogger("core.logging")
    environment = os.getenv("ENVIRONMENT", "development")
    logger.info(f"Logging initialized for {environment} environment")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the specified name"""
    return logging.getLogger(name)


def set_sync_context(ctx_id: Optional[str]):
    """Set the sync context id for the current context"""
    sync_context_id.set(ctx_id)


def get_sync_context() -> Optional[str]:
    """Get the sync context id from the current context"""
    return sync_context_id.get()


def log_function_call(logger: logging.Logger):
    """Decorator to log function calls with parameters and execution time"""

    def decorator(func):
        import functools
        import inspect
        import time

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.time()
            logger.debug(
                f"Calling {func.__name__}",
                extra={"args_count": len(args), "kwargs_keys": list(kwargs.keys())},
            )

            try:
                result = await func(*args, **kwargs)
                logger.debug(
                    f"Completed {func.__name__}",
                    extra={
                        "execution_time_ms": round((time.time() - start_time) * 1000, 2),
                        "success": True,
                    },
                )
                return result
            except Exception as e:
                logger.error(
                    f"Failed {func.__name__}: {str(e)}",
                    extra={
                        "execution_time_ms": round((time.time() - start_time) * 1000, 2),
                        "success": False,
                        "error_type": type(e).__name__,
                    },
                )
                raise

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = time.time()
            logger.debug(
                f"Calling {func.__name__}",
                extra={"args_count": len(args), "kwargs_keys": list(kwargs.keys())},
            )

            try:
                result = func(*args, **kwargs)
                logger.debug(
                    f"Completed {func.__name__}",
                    extra={
                        "execution_time_ms": round((time.time() - start_time) * 1000, 2),
                        "success": True,
                    },
                )
                return result
            except Exception as e:
                logger.error(
                    f"Failed {func.__name__}: {str(e)}",
                    extra={
                        "execution_time_ms": round((time.time() - start_time) * 1000, 2),
                        "success": False,
                        "error_type": type(e).__name__,
                    },
                )
                raise

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
