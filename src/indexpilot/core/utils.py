"""Utility functions for IndexPilot operations.

This module collects the small helpers shared by the query path and the
index control loop: identifier validation and quoting, index-name
generation, list chunking and timeframe parsing.

Example:
    >>> StringUtils.build_index_name("orders", ["customer_id", "status"])
    'idx_orders_customer_id_status'
    >>> list(ListUtils.chunk_list([1, 2, 3, 4, 5], 2))
    [[1, 2], [3, 4], [5]]
"""

import hashlib
import re
from typing import Generator, List, Sequence, TypeVar

from .exceptions import ValidationError

T = TypeVar("T")

# MySQL limit for identifier length
MAX_IDENTIFIER_LENGTH = 64


class ValidationUtils:
    """Utility class for validation operations."""

    IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
    SQL_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_$][a-zA-Z0-9_$]*$")

    @classmethod
    def validate_identifier(cls, identifier: str, *, allow_empty: bool = False) -> bool:
        """Validate identifier string.

        Args:
            identifier: String to validate as identifier
            allow_empty: Whether to allow empty strings

        Returns:
            True if identifier is valid

        Example:
            >>> ValidationUtils.validate_identifier("primary_db")
            True
            >>> ValidationUtils.validate_identifier("1db")
            False
        """
        if not identifier:
            return allow_empty

        return bool(cls.IDENTIFIER_PATTERN.match(identifier))

    @classmethod
    def validate_sql_identifier(cls, identifier: str) -> bool:
        """Validate a table, column or index name.

        Args:
            identifier: String to validate as SQL identifier

        Returns:
            True if identifier is safe to interpolate in backticks
        """
        if not identifier or len(identifier) > MAX_IDENTIFIER_LENGTH:
            return False

        return bool(cls.SQL_IDENTIFIER_PATTERN.match(identifier))


class StringUtils:
    """Utility class for string and identifier operations."""

    @staticmethod
    def sanitize_sql_identifier(identifier: str) -> str:
        """Sanitize string for use as SQL identifier.

        Args:
            identifier: String to sanitize

        Returns:
            Sanitized SQL identifier

        Example:
            >>> StringUtils.sanitize_sql_identifier("my-table name!")
            'my_table_name'
        """
        if not identifier:
            return ""

        sanitized = re.sub(r"[^a-zA-Z0-9_]", "_", identifier)

        if sanitized and sanitized[0].isdigit():
            sanitized = f"_{sanitized}"

        sanitized = re.sub(r"_{2,}", "_", sanitized)
        sanitized = sanitized.strip("_")

        return sanitized or "identifier"

    @staticmethod
    def quote_identifier(identifier: str) -> str:
        """Quote an identifier with backticks.

        Args:
            identifier: Table, column or index name

        Returns:
            Backtick-quoted identifier

        Raises:
            ValidationError: If the identifier contains unsafe characters
        """
        if not ValidationUtils.validate_sql_identifier(identifier):
            raise ValidationError(
                f"Unsafe SQL identifier: {identifier!r}",
                code="INVALID_IDENTIFIER",
                context={"identifier": identifier},
            )
        return f"`{identifier}`"

    @classmethod
    def build_index_name(
        cls,
        table: str,
        columns: Sequence[str],
        *,
        prefix: str = "idx",
        infix: str = "",
    ) -> str:
        """Build a deterministic index name for a table and column list.

        Names longer than the identifier limit are truncated and suffixed
        with a short hash so that distinct column lists stay distinct.

        Args:
            table: Table name
            columns: Ordered indexed columns
            prefix: Leading name component
            infix: Optional component between table and columns

        Returns:
            Index name such as ``idx_orders_customer_id``
        """
        parts = [prefix, table]
        if infix:
            parts.append(infix)
        parts.extend(columns)
        name = cls.sanitize_sql_identifier("_".join(parts))

        if len(name) <= MAX_IDENTIFIER_LENGTH:
            return name

        digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
        return f"{name[:MAX_IDENTIFIER_LENGTH - 9].rstrip('_')}_{digest}"

    @staticmethod
    def collapse_whitespace(text: str) -> str:
        """Collapse runs of whitespace into single spaces and trim.

        Example:
            >>> StringUtils.collapse_whitespace("SELECT  *\\n FROM t ")
            'SELECT * FROM t'
        """
        return " ".join(text.split())

    @staticmethod
    def truncate_string(text: str, max_length: int, *, suffix: str = "...") -> str:
        """Truncate string to maximum length.

        Args:
            text: String to truncate
            max_length: Maximum length including suffix
            suffix: Suffix to add when truncating

        Returns:
            Truncated string
        """
        if len(text) <= max_length:
            return text

        if len(suffix) >= max_length:
            return suffix[:max_length]

        return text[:max_length - len(suffix)] + suffix


class ListUtils:
    """Utility class for list operations."""

    @staticmethod
    def chunk_list(items: List[T], chunk_size: int) -> Generator[List[T], None, None]:
        """Split list into chunks of specified size.

        Args:
            items: List to chunk
            chunk_size: Size of each chunk

        Yields:
            Chunks of the original list
        """
        if chunk_size < 1:
            raise ValidationError(
                f"Chunk size must be positive: {chunk_size}",
                code="INVALID_CHUNK_SIZE",
            )
        for i in range(0, len(items), chunk_size):
            yield items[i:i + chunk_size]


_TIMEFRAME_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd])\s*$", re.IGNORECASE)
_TIMEFRAME_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_timeframe(timeframe: str) -> int:
    """Parse a timeframe such as ``"15m"`` or ``"2h"`` into seconds.

    Args:
        timeframe: Number followed by one of ``s``, ``m``, ``h``, ``d``

    Returns:
        Timeframe length in seconds

    Raises:
        ValidationError: If the timeframe is malformed
    """
    match = _TIMEFRAME_PATTERN.match(timeframe or "")
    if not match:
        raise ValidationError(
            f"Invalid timeframe: {timeframe!r}",
            code="INVALID_TIMEFRAME",
            context={"timeframe": timeframe},
        )
    return int(match.group(1)) * _TIMEFRAME_UNITS[match.group(2).lower()]


def clamp(value: float, lower: float = 0.0, upper: float = 100.0) -> float:
    """Clamp a value into ``[lower, upper]``."""
    return max(lower, min(upper, value))
