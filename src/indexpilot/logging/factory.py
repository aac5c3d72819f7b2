"""Logger factory and configuration for IndexPilot.

This module provides centralized logger creation and configuration of the
structlog processor chain.

Classes:
    LoggerFactory: Main logger factory and configuration manager
    LoggerConfig: Configuration for logger instances

Functions:
    get_logger: Convenience function for getting loggers
    configure_logging: Configure logging system globally

Example:
    >>> from indexpilot.logging import get_logger, configure_logging
    >>> configure_logging(level="INFO", format="json")
    >>> logger = get_logger(__name__)
    >>> logger.info("Optimizer started", database="shop")
"""

import logging
import logging.handlers
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .audit import DEFAULT_TRAIL_SIZE, AuditLogger
from .performance import PerformanceLogger
from .structured import StructuredLogger
from ..config.models import LoggingConfig
from ..core.exceptions import ValidationError

_VALID_FORMATS = ("json", "text")


@dataclass
class LoggerConfig:
    """Configuration for logger instances.

    Attributes:
        level: Log level
        format: Log format (json, text)
        console_output: Enable console output
        file_path: Log file path, or None to disable file output
        max_file_size: Maximum file size before rotation
        backup_count: Number of backup files to keep
        correlation_ids: Enable correlation ID tracking
        audit_trail_size: Audit events kept in memory per audit logger
    """
    level: str = "INFO"
    format: str = "json"
    console_output: bool = True
    file_path: Optional[str] = None
    max_file_size: int = 10485760  # 10MB
    backup_count: int = 5
    correlation_ids: bool = True
    audit_trail_size: int = DEFAULT_TRAIL_SIZE


class LoggerFactory:
    """Factory for creating and configuring IndexPilot loggers.

    Loggers are cached by name. Output configuration (handlers and the
    structlog processor chain) is only applied by an explicit ``configure``
    call, so creating loggers never overrides a host application's setup.

    Example:
        >>> factory = LoggerFactory()
        >>> factory.configure_from_config(system_config.logging)
        >>> logger = factory.get_logger("indexpilot.executor")
        >>> perf_logger = factory.get_performance_logger("executor")
    """

    def __init__(self, config: Optional[LoggerConfig] = None) -> None:
        self.config = config or LoggerConfig()
        self.configured = False
        self._loggers: Dict[str, StructuredLogger] = {}
        self._performance_loggers: Dict[str, PerformanceLogger] = {}
        self._audit_loggers: Dict[str, AuditLogger] = {}
        self._handlers: List[logging.Handler] = []

    def configure_from_config(self, logging_config: LoggingConfig) -> None:
        """Configure factory from a LoggingConfig model."""
        self.configure(
            LoggerConfig(
                level=logging_config.level,
                format=logging_config.format,
                console_output=logging_config.console_output,
                file_path=str(logging_config.file_path) if logging_config.file_path else None,
                max_file_size=logging_config.max_file_size,
                backup_count=logging_config.backup_count,
                audit_trail_size=logging_config.audit_trail_size,
            )
        )

    def configure_from_dict(self, config_dict: Dict[str, Any]) -> None:
        """Configure factory from a dictionary; unknown keys are ignored."""
        values = {k: v for k, v in config_dict.items() if k in LoggerConfig.__dataclass_fields__}
        self.configure(LoggerConfig(**values))

    def configure(self, config: LoggerConfig) -> None:
        """Apply a logger configuration.

        Raises:
            ValidationError: If the level or format is unknown
        """
        if not isinstance(logging.getLevelName(config.level.upper()), int):
            raise ValidationError(f"Invalid log level: {config.level}", code="INVALID_LOG_LEVEL")
        if config.format.lower() not in _VALID_FORMATS:
            raise ValidationError(f"Invalid log format: {config.format}", code="INVALID_LOG_FORMAT")

        self.config = config
        self._configure_stdlib_logging()
        self._configure_structlog()
        self.configured = True

    def _configure_stdlib_logging(self) -> None:
        root_logger = logging.getLogger()
        level = getattr(logging, self.config.level.upper(), logging.INFO)
        root_logger.setLevel(level)

        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()

        if self.config.console_output:
            self._handlers.append(logging.StreamHandler(sys.stdout))

        if self.config.file_path:
            file_path = Path(self.config.file_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            self._handlers.append(
                logging.handlers.RotatingFileHandler(
                    filename=str(file_path),
                    maxBytes=self.config.max_file_size,
                    backupCount=self.config.backup_count,
                    encoding="utf-8",
                )
            )

        # structlog renders the final line; handlers only pass the message on
        for handler in self._handlers:
            handler.setLevel(level)
            handler.setFormatter(logging.Formatter("%(message)s"))
            root_logger.addHandler(handler)

    def _configure_structlog(self) -> None:
        processors: List[Any] = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
        ]

        if self.config.format.lower() == "json":
            processors.append(structlog.processors.JSONRenderer(default=str))
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=False))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=structlog.stdlib.LoggerFactory(),
            context_class=dict,
            cache_logger_on_first_use=True,
        )

    def get_logger(
        self,
        name: str,
        *,
        level: Optional[str] = None,
        enable_correlation: Optional[bool] = None,
    ) -> StructuredLogger:
        """Get or create a structured logger.

        Args:
            name: Logger name (typically module name)
            level: Override default log level
            enable_correlation: Override correlation ID setting

        Returns:
            StructuredLogger instance
        """
        cache_key = f"{name}_{level}_{enable_correlation}"
        if cache_key not in self._loggers:
            self._loggers[cache_key] = StructuredLogger(
                name,
                level=level or self.config.level,
                enable_correlation=(
                    enable_correlation if enable_correlation is not None else self.config.correlation_ids
                ),
            )
        return self._loggers[cache_key]

    def get_performance_logger(self, name: str, *, auto_log: bool = True) -> PerformanceLogger:
        """Get or create a performance logger."""
        cache_key = f"{name}_{auto_log}"
        if cache_key not in self._performance_loggers:
            self._performance_loggers[cache_key] = PerformanceLogger(
                name,
                auto_log=auto_log,
                logger=self.get_logger(f"perf.{name}"),
            )
        return self._performance_loggers[cache_key]

    def get_audit_logger(self, name: str) -> AuditLogger:
        """Get or create an audit logger."""
        if name not in self._audit_loggers:
            self._audit_loggers[name] = AuditLogger(
                name,
                trail_size=self.config.audit_trail_size,
                logger=self.get_logger(f"audit.{name}"),
            )
        return self._audit_loggers[name]

    def set_level(self, level: str) -> None:
        """Set log level for every cached logger and the root logger."""
        if not isinstance(logging.getLevelName(level.upper()), int):
            raise ValidationError(f"Invalid log level: {level}", code="INVALID_LOG_LEVEL")

        self.config.level = level
        for logger in self._loggers.values():
            logger.set_level(level)
        logging.getLogger().setLevel(getattr(logging, level.upper()))

    def get_logger_info(self) -> Dict[str, Any]:
        """Get information about configured loggers."""
        return {
            "config": {
                "level": self.config.level,
                "format": self.config.format,
                "console_output": self.config.console_output,
                "file_path": self.config.file_path,
            },
            "configured": self.configured,
            "loggers": {
                "structured": list(self._loggers.keys()),
                "performance": list(self._performance_loggers.keys()),
                "audit": list(self._audit_loggers.keys()),
            },
        }

    def shutdown(self) -> None:
        """Close handlers added by this factory and drop cached loggers."""
        root_logger = logging.getLogger()
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()

        self._loggers.clear()
        self._performance_loggers.clear()
        self._audit_loggers.clear()
        self.configured = False

    def __repr__(self) -> str:
        return (
            f"LoggerFactory("
            f"level={self.config.level!r}, "
            f"format={self.config.format!r}, "
            f"configured={self.configured})"
        )


# Default factory used by the module-level helpers
_global_factory = LoggerFactory()


def configure_logging(
    *,
    level: str = "INFO",
    format: str = "json",
    console_output: bool = True,
    file_path: Optional[str] = None,
    **kwargs: Any,
) -> None:
    """Configure IndexPilot logging output.

    Example:
        >>> configure_logging(level="DEBUG", format="text")
    """
    _global_factory.configure_from_dict({
        "level": level,
        "format": format,
        "console_output": console_output,
        "file_path": file_path,
        **kwargs,
    })


def get_logger(name: str, *, level: Optional[str] = None) -> StructuredLogger:
    """Get or create a structured logger using the default factory."""
    return _global_factory.get_logger(name, level=level)


def get_performance_logger(name: str, *, auto_log: bool = True) -> PerformanceLogger:
    """Get or create a performance logger using the default factory."""
    return _global_factory.get_performance_logger(name, auto_log=auto_log)


def get_audit_logger(name: str) -> AuditLogger:
    """Get or create an audit logger using the default factory."""
    return _global_factory.get_audit_logger(name)


def get_factory() -> LoggerFactory:
    """Get the default logger factory instance."""
    return _global_factory


def shutdown_logging() -> None:
    """Shut down the default factory."""
    _global_factory.shutdown()
