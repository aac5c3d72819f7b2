"""IndexPilot core infrastructure.

This package provides the foundational pieces shared by every IndexPilot
component: base classes, the exception hierarchy and utilities.

Modules:
    base: Component base classes
    exceptions: Exception hierarchy
    utils: Utility functions

Example:
    >>> from indexpilot.core import AsyncComponent
    >>> from indexpilot.core.exceptions import OptimizationInProgressError
    >>> from indexpilot.core.utils import StringUtils
"""

from .base import (
    AsyncComponent,
    BaseComponent,
    ConfigurableComponent,
    LifecycleComponent,
)
from .exceptions import (
    ActionExecutionError,
    AnalysisError,
    BackupError,
    CacheError,
    ConfigurationError,
    DatabaseConnectionError,
    DatabaseError,
    DatabaseErrorKind,
    ErrorCodes,
    ExecutionCancelledError,
    IndexPilotException,
    OptimizationError,
    OptimizationInProgressError,
    PlanValidationError,
    QueryError,
    SchemaIntrospectionError,
    UnknownOptimizationTypeError,
    ValidationError,
    create_error_from_exception,
)
from .utils import (
    ListUtils,
    StringUtils,
    ValidationUtils,
    clamp,
    parse_timeframe,
)

__all__ = [
    # Base classes
    "BaseComponent",
    "ConfigurableComponent",
    "AsyncComponent",
    "LifecycleComponent",

    # Exceptions
    "IndexPilotException",
    "ConfigurationError",
    "ValidationError",
    "DatabaseError",
    "DatabaseErrorKind",
    "DatabaseConnectionError",
    "QueryError",
    "AnalysisError",
    "SchemaIntrospectionError",
    "OptimizationError",
    "PlanValidationError",
    "ActionExecutionError",
    "BackupError",
    "ExecutionCancelledError",
    "OptimizationInProgressError",
    "UnknownOptimizationTypeError",
    "CacheError",
    "ErrorCodes",
    "create_error_from_exception",

    # Utilities
    "ValidationUtils",
    "StringUtils",
    "ListUtils",
    "parse_timeframe",
    "clamp",
]
