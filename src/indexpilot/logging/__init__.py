"""IndexPilot structured logging framework.

This package provides structured logging, performance timing and an audit
trail for schema changes.

Classes:
    StructuredLogger: Main structured logging interface
    PerformanceLogger: Performance monitoring and timing
    AuditLogger: Audit trail for DDL and optimization cycles
    LoggerFactory: Logger creation and configuration

Example:
    >>> from indexpilot.logging import get_logger, get_performance_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Cycle started", cycle_id="c-1")
    >>>
    >>> perf_logger = get_performance_logger("executor")
    >>> with perf_logger.measure("ddl_action", table="orders"):
    ...     pass
"""

from .audit import AuditEvent, AuditEventType, AuditLogger, AuditSeverity
from .factory import (
    LoggerConfig,
    LoggerFactory,
    configure_logging,
    get_audit_logger,
    get_factory,
    get_logger,
    get_performance_logger,
    shutdown_logging,
)
from .performance import PerformanceLogger, PerformanceMetrics, TimingContext
from .structured import LogContext, StructuredLogger

__all__ = [
    # Factory and configuration
    "LoggerConfig",
    "LoggerFactory",
    "configure_logging",
    "get_logger",
    "get_performance_logger",
    "get_audit_logger",
    "get_factory",
    "shutdown_logging",

    # Performance logging
    "PerformanceLogger",
    "PerformanceMetrics",
    "TimingContext",

    # Audit logging
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditSeverity",

    # Structured logging
    "StructuredLogger",
    "LogContext",
]
