"""Read-only schema catalog queries.

``SchemaCatalog`` is the only place that reads ``information_schema``,
``performance_schema`` or execution plans. It wraps a ``DatabaseExecutor`` and
returns plain rows keyed by lower-case column aliases; interpreting them is
left to the analyzers.

Example:
    >>> catalog = SchemaCatalog(connector)
    >>> await catalog.index_exists("orders", "idx_orders_customer_id")
    False
"""

from typing import Any, Dict, List, Optional, Sequence

from .executor import DatabaseExecutor
from ..core.utils import StringUtils

TABLES_SQL = """
    SELECT
        TABLE_NAME AS table_name,
        TABLE_ROWS AS table_rows,
        DATA_LENGTH AS data_length,
        INDEX_LENGTH AS index_length,
        AUTO_INCREMENT AS auto_increment,
        CREATE_TIME AS create_time,
        UPDATE_TIME AS update_time
    FROM information_schema.TABLES
    WHERE TABLE_SCHEMA = DATABASE() AND TABLE_TYPE = 'BASE TABLE'
    ORDER BY DATA_LENGTH DESC
"""

COLUMNS_SQL = """
    SELECT
        TABLE_NAME AS table_name,
        COLUMN_NAME AS column_name,
        DATA_TYPE AS data_type,
        IS_NULLABLE AS is_nullable,
        COLUMN_KEY AS column_key,
        COLUMN_DEFAULT AS column_default,
        EXTRA AS extra
    FROM information_schema.COLUMNS
    WHERE TABLE_SCHEMA = DATABASE()
    ORDER BY TABLE_NAME, ORDINAL_POSITION
"""

INDEXES_WITH_USAGE_SQL = """
    SELECT
        s.TABLE_NAME AS table_name,
        s.INDEX_NAME AS index_name,
        s.COLUMN_NAME AS column_name,
        s.SEQ_IN_INDEX AS seq_in_index,
        s.NON_UNIQUE AS non_unique,
        s.CARDINALITY AS cardinality,
        st.INDEX_LENGTH AS index_length,
        st.ROWS_EXAMINED AS rows_examined,
        st.ROWS_READ AS rows_read
    FROM information_schema.STATISTICS s
    LEFT JOIN information_schema.INDEX_STATISTICS st
        ON s.TABLE_SCHEMA = st.TABLE_SCHEMA
        AND s.TABLE_NAME = st.TABLE_NAME
        AND s.INDEX_NAME = st.INDEX_NAME
    WHERE s.TABLE_SCHEMA = DATABASE()
    ORDER BY s.TABLE_NAME, s.INDEX_NAME, s.SEQ_IN_INDEX
"""

INDEXES_SQL = """
    SELECT
        TABLE_NAME AS table_name,
        INDEX_NAME AS index_name,
        COLUMN_NAME AS column_name,
        SEQ_IN_INDEX AS seq_in_index,
        NON_UNIQUE AS non_unique,
        CARDINALITY AS cardinality
    FROM information_schema.STATISTICS
    WHERE TABLE_SCHEMA = DATABASE()
    ORDER BY TABLE_NAME, INDEX_NAME, SEQ_IN_INDEX
"""

TABLE_EXISTS_SQL = """
    SELECT COUNT(*) AS count
    FROM information_schema.TABLES
    WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s
"""

INDEX_EXISTS_SQL = """
    SELECT COUNT(*) AS count
    FROM information_schema.STATISTICS
    WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s AND INDEX_NAME = %s
"""

TABLE_COLUMNS_SQL = """
    SELECT COLUMN_NAME AS column_name
    FROM information_schema.COLUMNS
    WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME = %s
    ORDER BY ORDINAL_POSITION
"""

STATEMENT_DIGESTS_SQL = """
    SELECT
        DIGEST_TEXT AS digest_text,
        COUNT_STAR AS query_count,
        AVG_TIMER_WAIT / 1000000000 AS avg_time_ms,
        SUM_ROWS_EXAMINED AS total_rows_examined,
        SUM_ROWS_SENT AS total_rows_sent,
        SUM_NO_INDEX_USED AS no_index_used
    FROM performance_schema.events_statements_summary_by_digest
    WHERE DIGEST_TEXT IS NOT NULL
    ORDER BY AVG_TIMER_WAIT DESC
    LIMIT %s
"""


class SchemaCatalog:
    """Schema-catalog queries against the managed database.

    Errors from the executor propagate unchanged as ``DatabaseError``.
    """

    def __init__(self, executor: DatabaseExecutor) -> None:
        self._executor = executor

    @property
    def executor(self) -> DatabaseExecutor:
        return self._executor

    async def list_tables(self) -> List[Dict[str, Any]]:
        """Tables with row count, byte sizes and timestamps."""
        return (await self._executor.execute(TABLES_SQL)).rows

    async def list_columns(self) -> List[Dict[str, Any]]:
        """All columns of the schema, ordered by table and position."""
        return (await self._executor.execute(COLUMNS_SQL)).rows

    async def list_index_columns(self, *, include_usage: bool = True) -> List[Dict[str, Any]]:
        """One row per indexed column, ordered by table, index and position.

        Args:
            include_usage: Join the ``INDEX_STATISTICS`` usage counters. Servers
                without user statistics reject this query.
        """
        sql = INDEXES_WITH_USAGE_SQL if include_usage else INDEXES_SQL
        return (await self._executor.execute(sql)).rows

    async def existing_index_columns(self) -> Dict[str, Dict[str, List[str]]]:
        """Map of table to index name to ordered column names."""
        indexes: Dict[str, Dict[str, List[str]]] = {}
        for row in await self.list_index_columns(include_usage=False):
            indexes.setdefault(row["table_name"], {}).setdefault(row["index_name"], []).append(
                row["column_name"]
            )
        return indexes

    async def table_exists(self, table: str) -> bool:
        result = await self._executor.execute(TABLE_EXISTS_SQL, [table])
        return int(result.scalar(0) or 0) > 0

    async def index_exists(self, table: str, index: str) -> bool:
        result = await self._executor.execute(INDEX_EXISTS_SQL, [table, index])
        return int(result.scalar(0) or 0) > 0

    async def column_names(self, table: str) -> List[str]:
        result = await self._executor.execute(TABLE_COLUMNS_SQL, [table])
        return [row["column_name"] for row in result.rows]

    async def show_create_table(self, table: str) -> Optional[str]:
        """Return the ``CREATE TABLE`` statement for a table, if any."""
        sql = f"SHOW CREATE TABLE {StringUtils.quote_identifier(table)}"
        row = (await self._executor.execute(sql)).first()
        if not row:
            return None
        return row.get("Create Table") or row.get("create_table")

    async def explain(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        *,
        extended: bool = False,
    ) -> List[Dict[str, Any]]:
        """Return the execution plan rows for a statement."""
        prefix = "EXPLAIN EXTENDED" if extended else "EXPLAIN"
        return (await self._executor.execute(f"{prefix} {sql}", params)).rows

    async def statement_digests(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Slowest statement digests from ``performance_schema``."""
        return (await self._executor.execute(STATEMENT_DIGESTS_SQL, [limit])).rows
