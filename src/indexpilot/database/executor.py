"""The execution primitive consumed by the IndexPilot core.

Everything IndexPilot does against the database goes through one
``execute(sql, params)`` call. Implementations raise ``DatabaseError`` with a
coarse ``DatabaseErrorKind`` on failure; retry policy belongs to them, not to
the core.
"""

from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from .models import QueryResult


@runtime_checkable
class DatabaseExecutor(Protocol):
    """Protocol for the single database execution primitive.

    Example:
        >>> class Connector:
        ...     async def execute(self, sql, params=None):
        ...         ...
        >>> isinstance(Connector(), DatabaseExecutor)
        True
    """

    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> QueryResult:
        """Execute one statement.

        Args:
            sql: SQL text with ``%s`` placeholders
            params: Positional parameters

        Returns:
            Rows for statements with a result set, affected count otherwise

        Raises:
            DatabaseError: Classified execution failure
        """
        ...
