"""Structured logging implementation for IndexPilot.

This module provides structured logging with context management and
correlation IDs, so that every line emitted during an optimization cycle or
a query run can be tied back to it.

Classes:
    StructuredLogger: Main structured logging interface
    LogContext: Context storage for log correlation
    ContextFilter: Filter for adding context to stdlib log records

Example:
    >>> logger = StructuredLogger("indexpilot.optimizer")
    >>> with logger.context(cycle_id="c-42", phase="analyzing"):
    ...     logger.info("Analysis started", table_count=12)
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Generator, Optional

import structlog

from ..core.exceptions import IndexPilotException

_VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class LogContext:
    """Thread-local context for log correlation and metadata.

    Example:
        >>> context = LogContext()
        >>> context.set("cycle_id", "c-42")
        >>> context.get_all()
        {'cycle_id': 'c-42'}
    """

    def __init__(self) -> None:
        self._local = threading.local()

    def _data(self) -> Dict[str, Any]:
        if not hasattr(self._local, "context"):
            self._local.context = {}
        return self._local.context

    def set(self, key: str, value: Any) -> None:
        """Set context value."""
        self._data()[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get context value or ``default``."""
        return self._data().get(key, default)

    def get_all(self) -> Dict[str, Any]:
        """Get a copy of all context values."""
        return dict(self._data())

    def clear(self) -> None:
        """Clear all context values."""
        self._data().clear()

    def update(self, context: Dict[str, Any]) -> None:
        """Update context with multiple values."""
        self._data().update(context)


class ContextFilter(logging.Filter):
    """Logging filter that adds context information to stdlib log records."""

    def __init__(self, context: LogContext) -> None:
        super().__init__()
        self._context = context

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context information to log record.

        Args:
            record: Log record to filter

        Returns:
            True (always allow record through)
        """
        for key, value in self._context.get_all().items():
            if not hasattr(record, key):
                setattr(record, key, value)

        if not hasattr(record, "correlation_id"):
            record.correlation_id = self._context.get("correlation_id", "unknown")

        if not hasattr(record, "timestamp_iso"):
            record.timestamp_iso = datetime.fromtimestamp(record.created).isoformat()

        return True


class StructuredLogger:
    """Structured logger with context management and correlation.

    Attributes:
        name: Logger name

    Example:
        >>> logger = StructuredLogger("indexpilot.executor")
        >>> with logger.context(action_id="create_idx_orders_total"):
        ...     logger.info("DDL statement sent", table="orders")
    """

    def __init__(
        self,
        name: str,
        *,
        level: str = "INFO",
        enable_correlation: bool = True,
        auto_correlation: bool = True,
    ) -> None:
        """Initialize structured logger.

        Args:
            name: Logger name (typically module name)
            level: Initial log level
            enable_correlation: Whether to attach correlation IDs
            auto_correlation: Whether to auto-generate correlation IDs
        """
        self.name = name
        self._enable_correlation = enable_correlation
        self._auto_correlation = auto_correlation

        self._logger = structlog.get_logger(name)
        self._context = LogContext()

        self._stdlib_logger = logging.getLogger(name)
        self._stdlib_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
        self._stdlib_logger.addFilter(ContextFilter(self._context))

        if self._enable_correlation and self._auto_correlation:
            self._ensure_correlation_id()

    def _ensure_correlation_id(self) -> str:
        correlation_id = self._context.get("correlation_id")
        if not correlation_id:
            correlation_id = str(uuid.uuid4())
            self._context.set("correlation_id", correlation_id)
        return correlation_id

    def _prepare_event_dict(self, **kwargs: Any) -> Dict[str, Any]:
        event_dict: Dict[str, Any] = {"logger_name": self.name}
        event_dict.update(self._context.get_all())

        if self._enable_correlation:
            event_dict["correlation_id"] = self._ensure_correlation_id()

        event_dict.update(kwargs)
        return event_dict

    @contextmanager
    def context(self, **context_data: Any) -> Generator[None, None, None]:
        """Temporarily add context data to every log line.

        Example:
            >>> with logger.context(table="orders"):
            ...     logger.info("Index created")
        """
        old_context = self._context.get_all()
        try:
            self._context.update(context_data)
            yield
        finally:
            self._context.clear()
            self._context.update(old_context)

    def set_level(self, level: str) -> None:
        """Set logging level.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

        Raises:
            IndexPilotException: If the level is unknown
        """
        if not level or level.upper() not in _VALID_LEVELS:
            raise IndexPilotException(
                f"Unknown log level: {level}",
                code="UNKNOWN_LOG_LEVEL",
            )
        self._stdlib_logger.setLevel(getattr(logging, level.upper()))

    def get_level(self) -> str:
        """Get current logging level name."""
        return logging.getLevelName(self._stdlib_logger.getEffectiveLevel())

    def log(self, level: str, message: str, **kwargs: Any) -> None:
        """Log a message at a level given by name."""
        method = getattr(self, level.lower(), None)
        if method is None or level.upper() not in _VALID_LEVELS:
            raise IndexPilotException(
                f"Unknown log level: {level}",
                code="UNKNOWN_LOG_LEVEL",
            )
        method(message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message."""
        self._logger.debug(message, **self._prepare_event_dict(**kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message."""
        self._logger.info(message, **self._prepare_event_dict(**kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message."""
        self._logger.warning(message, **self._prepare_event_dict(**kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message."""
        self._logger.error(message, **self._prepare_event_dict(**kwargs))

    def critical(self, message: str, **kwargs: Any) -> None:
        """Log critical message."""
        self._logger.critical(message, **self._prepare_event_dict(**kwargs))

    def exception(self, message: str, exc_info: bool = True, **kwargs: Any) -> None:
        """Log an error together with the active traceback."""
        self._logger.error(message, exc_info=exc_info, **self._prepare_event_dict(**kwargs))

    def get_correlation_id(self) -> Optional[str]:
        """Get current correlation ID."""
        if not self._enable_correlation:
            return None
        return self._context.get("correlation_id")

    def get_context(self) -> Dict[str, Any]:
        """Get current context data."""
        return self._context.get_all()

    def __repr__(self) -> str:
        return (
            f"StructuredLogger("
            f"name={self.name!r}, "
            f"level={self.get_level()!r}, "
            f"correlation={self._enable_correlation})"
        )
