"""DDL statement builders.

All identifiers are validated and backtick-quoted; an unsafe name raises
``ValidationError`` instead of reaching the server.
"""

from typing import Sequence

from ..core.utils import StringUtils


def create_index_sql(table: str, index_name: str, columns: Sequence[str], *, unique: bool = False) -> str:
    """Build a ``CREATE [UNIQUE] INDEX`` statement.

    Example:
        >>> create_index_sql("orders", "idx_orders_status", ["status"])
        'CREATE INDEX `idx_orders_status` ON `orders` (`status`)'
    """
    column_list = ", ".join(StringUtils.quote_identifier(column) for column in columns)
    kind = "UNIQUE INDEX" if unique else "INDEX"
    return (
        f"CREATE {kind} {StringUtils.quote_identifier(index_name)} "
        f"ON {StringUtils.quote_identifier(table)} ({column_list})"
    )


def drop_index_sql(table: str, index_name: str) -> str:
    """Build a ``DROP INDEX`` statement.

    Example:
        >>> drop_index_sql("orders", "idx_old")
        'DROP INDEX `idx_old` ON `orders`'
    """
    return f"DROP INDEX {StringUtils.quote_identifier(index_name)} ON {StringUtils.quote_identifier(table)}"
