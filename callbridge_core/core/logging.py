"""
Standardized Logging Configuration

Structured logging for every worker process. Components log snake_case event
names with keyword context through structlog; this module routes those records
through the standard library so third-party loggers share the same output.
Supports JSON logging for production and human-readable format for development.
"""

import logging
import sys
from enum import Enum
from typing import Any, Dict, Optional

import structlog


# =============================================================================
# Configuration
# =============================================================================


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    PRETTY = "pretty"
    SIMPLE = "simple"


_NOISY_LOGGERS = ("asyncio", "aiosqlite", "sqlalchemy.engine", "redis")


# =============================================================================
# Logger Setup
# =============================================================================


def _renderer(format: str) -> Any:
    if format == LogFormat.JSON:
        return structlog.processors.JSONRenderer()
    if format == LogFormat.PRETTY:
        return structlog.dev.ConsoleRenderer(colors=True)
    return structlog.dev.ConsoleRenderer(colors=False)


def setup_logging(
    level: str = LogLevel.INFO.value,
    format: str = LogFormat.PRETTY.value,
    service_name: Optional[str] = None,
    environment: Optional[str] = None,
    instance_id: Optional[str] = None,
) -> None:
    """
    Configure logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json, pretty, simple)
        service_name: Service name bound on every entry
        environment: Deployment environment bound on every entry
        instance_id: Worker identity bound on every entry
    """
    log_level = getattr(logging, level.upper())

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            _renderer(format),
        ],
    )

    # Get root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Suppress noisy third-party loggers
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    bound: Dict[str, Any] = {}
    if service_name:
        bound["service"] = service_name
    if environment:
        bound["environment"] = environment
    if instance_id:
        bound["instance_id"] = instance_id
    if bound:
        structlog.contextvars.bind_contextvars(**bound)

    structlog.get_logger("logging").info(
        "logging_configured", level=level, format=format
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)


# =============================================================================
# Context Logging
# =============================================================================


class LogContext:
    """
    Task-local context for adding call-scoped data to logs.

    Values are stored in contextvars, so concurrent tasks do not leak
    context into each other.

    Usage:
        with LogContext(call_id="call_abc", channel_id="123"):
            logger.info("call_ending")
    """

    def __init__(self, **kwargs: Any):
        self._kwargs = kwargs
        self._tokens: Dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self._kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    @staticmethod
    def all() -> Dict[str, Any]:
        """Get all context values."""
        return structlog.contextvars.get_contextvars()


# =============================================================================
# Exports
# =============================================================================


__all__ = [
    "LogLevel",
    "LogFormat",
    "setup_logging",
    "get_logger",
    "LogContext",
]
