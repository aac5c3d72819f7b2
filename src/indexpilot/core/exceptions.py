"""IndexPilot exception hierarchy.

This module defines the exception hierarchy used across IndexPilot. Every
error carries a machine-readable code, optional context and the original
cause, so failures can be logged and reported in a structured way.

Classes:
    IndexPilotException: Base exception for all IndexPilot operations
    ConfigurationError: Configuration related errors
    DatabaseError: Classified errors raised by the execution primitive
    AnalysisError: Schema and workload analysis errors
    OptimizationError: Planning and DDL execution errors
    CacheError: Query cache errors

Example:
    >>> try:
    ...     await executor.execute("DROP INDEX `idx_a` ON `orders`")
    ... except DatabaseError as e:
    ...     if e.kind is DatabaseErrorKind.NOT_FOUND:
    ...         logger.info("Index already gone", error_code=e.code)
"""

from enum import Enum
from typing import Any, Dict, Optional


class IndexPilotException(Exception):
    """Base exception for all IndexPilot operations.

    Attributes:
        code: Unique error code for categorization
        context: Additional context information about the error
        cause: Original exception that caused this error (if any)

    Example:
        >>> raise IndexPilotException(
        ...     "Cycle failed",
        ...     code="CYCLE_FAILED",
        ...     context={"phase": "analyzing"}
        ... )
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        """Initialize IndexPilot exception.

        Args:
            message: Human-readable error description
            code: Unique error code for categorization (defaults to class name)
            context: Additional context information
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.code: str = code or self.__class__.__name__
        self.context: Dict[str, Any] = context or {}
        self.cause: Optional[Exception] = cause

    def __str__(self) -> str:
        """Return formatted error message with code."""
        return f"{self.code}: {self.message}"

    def __repr__(self) -> str:
        """Return detailed representation of the exception."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"context={self.context!r}, "
            f"cause={self.cause!r})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization.

        Returns:
            Dictionary representation of the exception
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(IndexPilotException):
    """Configuration related errors.

    Raised when configuration is invalid, missing, or cannot be processed.
    """
    pass


class ValidationError(ConfigurationError):
    """Data validation errors.

    Raised when input data fails validation rules, including type mismatches,
    value constraints, and format requirements.
    """
    pass


class DatabaseErrorKind(str, Enum):
    """Coarse classification of execution failures.

    The core never needs more detail than this; retry policy stays with the
    caller of the execution primitive.
    """

    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    ACCESS_DENIED = "access_denied"
    SYNTAX = "syntax"
    GENERIC = "generic"

    @property
    def retryable(self) -> bool:
        """Whether an error of this kind may succeed on retry."""
        return self in (DatabaseErrorKind.TIMEOUT, DatabaseErrorKind.CONNECTION_LOST)


class DatabaseError(IndexPilotException):
    """Error raised by the ``execute(sql, params)`` primitive.

    Attributes:
        kind: Coarse classification of the failure
        retryable: Whether the caller may retry the statement
    """

    def __init__(
        self,
        message: str,
        *,
        kind: DatabaseErrorKind = DatabaseErrorKind.GENERIC,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, code=code, context=context, cause=cause)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind.value
        data["retryable"] = self.retryable
        return data


class DatabaseConnectionError(DatabaseError):
    """Database connection establishment errors.

    Raised when unable to establish or keep a connection to the server.
    """
    pass


class QueryError(DatabaseError):
    """SQL statement execution errors."""
    pass


class AnalysisError(IndexPilotException):
    """Schema and workload analysis errors."""
    pass


class SchemaIntrospectionError(AnalysisError):
    """Raised when the schema catalog cannot be read at all.

    This is the only structural failure of an analysis pass; optional
    sources (usage counters, statement digests) degrade instead.
    """
    pass


class OptimizationError(IndexPilotException):
    """Planning and DDL execution errors."""
    pass


class PlanValidationError(OptimizationError):
    """An action's precondition does not hold against the live schema.

    Attributes:
        idempotent: True when the failed check means the action's goal is
            already met (index already present on create, absent on drop)
    """

    def __init__(
        self,
        message: str,
        *,
        idempotent: bool = False,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, code=code, context=context, cause=cause)
        self.idempotent = idempotent


class ActionExecutionError(OptimizationError):
    """A DDL statement failed or its post-condition did not verify."""
    pass


class BackupError(OptimizationError):
    """Backup reference could not be captured before a drop."""
    pass


class ExecutionCancelledError(OptimizationError):
    """Plan execution was cancelled or ran past its deadline."""
    pass


class OptimizationInProgressError(OptimizationError):
    """An optimization cycle is already running."""
    pass


class UnknownOptimizationTypeError(OptimizationError):
    """A targeted optimization run named an unsupported type."""
    pass


class CacheError(IndexPilotException):
    """Query cache errors."""
    pass


class ErrorCodes:
    """Common error codes for IndexPilot exceptions."""

    # Configuration errors
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    CONFIG_INVALID = "CONFIG_INVALID"
    CONFIG_VALIDATION_FAILED = "CONFIG_VALIDATION_FAILED"

    # Connection errors
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    CONNECTION_LOST = "CONNECTION_LOST"
    AUTH_FAILED = "AUTH_FAILED"
    NOT_CONNECTED = "NOT_CONNECTED"

    # Query errors
    QUERY_EXECUTION_FAILED = "QUERY_EXECUTION_FAILED"
    QUERY_TIMEOUT = "QUERY_TIMEOUT"
    QUERY_SYNTAX = "QUERY_SYNTAX"
    DUPLICATE_OBJECT = "DUPLICATE_OBJECT"
    OBJECT_NOT_FOUND = "OBJECT_NOT_FOUND"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"

    # Analysis errors
    SCHEMA_INTROSPECTION_FAILED = "SCHEMA_INTROSPECTION_FAILED"
    USAGE_STATISTICS_UNAVAILABLE = "USAGE_STATISTICS_UNAVAILABLE"
    EXPLAIN_FAILED = "EXPLAIN_FAILED"

    # Optimization errors
    TABLE_NOT_FOUND = "TABLE_NOT_FOUND"
    COLUMN_NOT_FOUND = "COLUMN_NOT_FOUND"
    INDEX_ALREADY_EXISTS = "INDEX_ALREADY_EXISTS"
    INDEX_NOT_FOUND = "INDEX_NOT_FOUND"
    PRIMARY_KEY_PROTECTED = "PRIMARY_KEY_PROTECTED"
    DDL_FAILED = "DDL_FAILED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    BACKUP_CREATION_FAILED = "BACKUP_CREATION_FAILED"
    EXECUTION_CANCELLED = "EXECUTION_CANCELLED"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    OPTIMIZATION_IN_PROGRESS = "OPTIMIZATION_IN_PROGRESS"
    UNKNOWN_OPTIMIZATION_TYPE = "UNKNOWN_OPTIMIZATION_TYPE"

    # Cache errors
    CACHE_KEY_INVALID = "CACHE_KEY_INVALID"


def create_error_from_exception(
    exc: Exception,
    message: Optional[str] = None,
    code: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> IndexPilotException:
    """Create IndexPilot exception from generic exception.

    Args:
        exc: Original exception to convert
        message: Override message (uses original if not provided)
        code: Error code to assign
        context: Additional context information

    Returns:
        Appropriate IndexPilot exception type

    Example:
        >>> try:
        ...     await pool.acquire()
        ... except ConnectionRefusedError as e:
        ...     raise create_error_from_exception(
        ...         e, code=ErrorCodes.CONNECTION_REFUSED
        ...     )
    """
    if isinstance(exc, IndexPilotException):
        return exc

    error_message = message or str(exc)
    error_context = context or {}

    if isinstance(exc, (ConnectionRefusedError, ConnectionResetError, BrokenPipeError)):
        return DatabaseConnectionError(
            error_message,
            kind=DatabaseErrorKind.CONNECTION_LOST,
            code=code or ErrorCodes.CONNECTION_LOST,
            context=error_context,
            cause=exc,
        )
    if isinstance(exc, TimeoutError):
        return QueryError(
            error_message,
            kind=DatabaseErrorKind.TIMEOUT,
            code=code or ErrorCodes.QUERY_TIMEOUT,
            context=error_context,
            cause=exc,
        )

    exception_mapping = {
        FileNotFoundError: ConfigurationError,
        ValueError: ValidationError,
        TypeError: ValidationError,
    }
    exception_class = exception_mapping.get(type(exc), IndexPilotException)

    return exception_class(
        error_message,
        code=code,
        context=error_context,
        cause=exc,
    )
