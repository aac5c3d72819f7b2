"""Pytest configuration and shared fixtures.

This module provides pytest configuration and shared fixtures for all tests
in the IndexPilot test suite, including ``FakeDatabase``: an in-memory schema
that implements the ``execute(sql, params)`` primitive, the catalog queries,
index DDL, EXPLAIN and injected failures.
"""

import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Sequence, Tuple

import pytest
import structlog

from indexpilot.config.models import IndexOptimizerConfig
from indexpilot.core.exceptions import DatabaseErrorKind, QueryError
from indexpilot.database.catalog import (
    COLUMNS_SQL,
    INDEX_EXISTS_SQL,
    INDEXES_SQL,
    INDEXES_WITH_USAGE_SQL,
    STATEMENT_DIGESTS_SQL,
    TABLE_COLUMNS_SQL,
    TABLE_EXISTS_SQL,
    TABLES_SQL,
    SchemaCatalog,
)
from indexpilot.database.models import QueryResult
from indexpilot.logging import AuditLogger

# Configure test logging to suppress noise during tests
structlog.configure(
    processors=[structlog.testing.LogCapture()],
    wrapper_class=structlog.BoundLogger,
    logger_factory=structlog.testing.ReturnLoggerFactory(),
    cache_logger_on_first_use=False,
)

CREATE_INDEX_RE = re.compile(
    r"^CREATE\s+(UNIQUE\s+)?INDEX\s+`([^`]+)`\s+ON\s+`([^`]+)`\s*\((.*)\)\s*$",
    re.IGNORECASE | re.DOTALL,
)
DROP_INDEX_RE = re.compile(r"^DROP\s+INDEX\s+`([^`]+)`\s+ON\s+`([^`]+)`\s*$", re.IGNORECASE)
SHOW_CREATE_RE = re.compile(r"^SHOW\s+CREATE\s+TABLE\s+`([^`]+)`", re.IGNORECASE)


@dataclass
class FakeIndex:
    name: str
    columns: List[str]
    unique: bool = False
    cardinality: Optional[int] = None
    rows_examined: Optional[int] = None
    rows_read: Optional[int] = None
    size: int = 16384


@dataclass
class FakeTable:
    name: str
    columns: List[str]
    rows: int = 0
    data_length: int = 0
    indexes: Dict[str, FakeIndex] = field(default_factory=dict)


@dataclass
class _Failure:
    fragment: str
    kind: DatabaseErrorKind
    message: str
    remaining: Optional[int]


class FakeDatabase:
    """In-memory MySQL stand-in.

    Catalog statements are matched by identity with the ``SchemaCatalog``
    constants. Index DDL mutates the in-memory schema and raises the same
    classified errors the connector would.

    Example:
        >>> db = FakeDatabase()
        >>> db.add_table("orders", ["id", "status"], rows=5000)
        >>> db.add_index("orders", "idx_orders_status", ["status"], rows_examined=40)
        >>> db.fail_on("SHOW CREATE TABLE", DatabaseErrorKind.ACCESS_DENIED)
    """

    def __init__(self) -> None:
        self.tables: Dict[str, FakeTable] = {}
        self.statements: List[Tuple[str, List[Any]]] = []
        self.digests: List[Dict[str, Any]] = []
        self.plans: List[Tuple[str, List[Dict[str, Any]]]] = []
        self.results: List[Tuple[str, List[Dict[str, Any]]]] = []
        self.default_plan: List[Dict[str, Any]] = []
        self.usage_statistics = True
        self.performance_schema = True
        self.ignore_ddl = False
        self._failures: List[_Failure] = []

    # Schema setup

    def add_table(
        self,
        name: str,
        columns: Sequence[str],
        *,
        rows: int = 0,
        primary_key: Optional[str] = "id",
    ) -> FakeTable:
        table = FakeTable(name=name, columns=list(columns), rows=rows, data_length=rows * 100)
        self.tables[name] = table
        if primary_key and primary_key in table.columns:
            table.indexes["PRIMARY"] = FakeIndex("PRIMARY", [primary_key], unique=True, cardinality=rows)
        return table

    def add_index(
        self,
        table: str,
        name: str,
        columns: Sequence[str],
        *,
        unique: bool = False,
        cardinality: Optional[int] = 1000,
        rows_examined: Optional[int] = None,
        rows_read: Optional[int] = None,
        size: int = 16384,
    ) -> FakeIndex:
        index = FakeIndex(name, list(columns), unique, cardinality, rows_examined, rows_read, size)
        self.tables[table].indexes[name] = index
        return index

    def has_index(self, table: str, name: str) -> bool:
        return table in self.tables and name in self.tables[table].indexes

    def set_plan(self, fragment: str, rows: List[Dict[str, Any]]) -> None:
        """EXPLAIN rows for statements containing ``fragment``."""
        self.plans.append((fragment.lower(), rows))

    def set_result(self, fragment: str, rows: List[Dict[str, Any]]) -> None:
        """Result rows for statements containing ``fragment``."""
        self.results.append((fragment.lower(), rows))

    def fail_on(
        self,
        fragment: str,
        kind: DatabaseErrorKind = DatabaseErrorKind.GENERIC,
        message: str = "Injected failure",
        *,
        times: Optional[int] = None,
    ) -> None:
        """Raise a classified ``QueryError`` for statements containing ``fragment``."""
        self._failures.append(_Failure(fragment.lower(), kind, message, times))

    @property
    def ddl_statements(self) -> List[str]:
        return [sql for sql, _ in self.statements if re.match(r"^\s*(CREATE|DROP)\b", sql, re.IGNORECASE)]

    def count(self, fragment: str) -> int:
        return sum(1 for sql, _ in self.statements if fragment.lower() in sql.lower())

    # Execution primitive

    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> QueryResult:
        params = list(params or [])
        self.statements.append((sql, params))
        self._raise_injected(sql)

        rows = self._dispatch(sql.strip(), params)
        if rows is None:
            return QueryResult(rows=[], row_count=0)
        return QueryResult(rows=rows, row_count=len(rows), columns=list(rows[0]) if rows else [])

    def _raise_injected(self, sql: str) -> None:
        lowered = sql.lower()
        for failure in self._failures:
            if failure.fragment not in lowered or failure.remaining == 0:
                continue
            if failure.remaining is not None:
                failure.remaining -= 1
            raise QueryError(failure.message, kind=failure.kind)

    def _dispatch(self, sql: str, params: List[Any]) -> Optional[List[Dict[str, Any]]]:
        if sql == TABLES_SQL.strip():
            return [self._table_row(table) for table in self.tables.values()]
        if sql == COLUMNS_SQL.strip():
            return [
                self._column_row(table.name, column)
                for table in sorted(self.tables.values(), key=lambda t: t.name)
                for column in table.columns
            ]
        if sql == INDEXES_WITH_USAGE_SQL.strip():
            if not self.usage_statistics:
                raise QueryError(
                    "Unknown table 'INDEX_STATISTICS' in information_schema",
                    kind=DatabaseErrorKind.NOT_FOUND,
                )
            return self._index_rows(include_usage=True)
        if sql == INDEXES_SQL.strip():
            return self._index_rows(include_usage=False)
        if sql == TABLE_EXISTS_SQL.strip():
            return [{"count": int(params[0] in self.tables)}]
        if sql == INDEX_EXISTS_SQL.strip():
            return [{"count": int(self.has_index(params[0], params[1]))}]
        if sql == TABLE_COLUMNS_SQL.strip():
            table = self.tables.get(params[0])
            return [{"column_name": column} for column in (table.columns if table else [])]
        if sql == STATEMENT_DIGESTS_SQL.strip():
            if not self.performance_schema:
                raise QueryError(
                    "performance_schema is disabled",
                    kind=DatabaseErrorKind.NOT_FOUND,
                )
            return self.digests[:params[0]]

        match = SHOW_CREATE_RE.match(sql)
        if match:
            return self._show_create(match.group(1))
        if sql.upper().startswith("EXPLAIN"):
            return self._lookup(self.plans, sql, self.default_plan)
        match = CREATE_INDEX_RE.match(sql)
        if match:
            columns = re.findall(r"`([^`]+)`", match.group(4))
            self._create_index(match.group(3), match.group(2), columns, unique=bool(match.group(1)))
            return None
        match = DROP_INDEX_RE.match(sql)
        if match:
            self._drop_index(match.group(2), match.group(1))
            return None
        return self._lookup(self.results, sql, [])

    @staticmethod
    def _lookup(
        entries: List[Tuple[str, List[Dict[str, Any]]]],
        sql: str,
        default: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        lowered = sql.lower()
        for fragment, rows in entries:
            if fragment in lowered:
                return [dict(row) for row in rows]
        return [dict(row) for row in default]

    @staticmethod
    def _table_row(table: FakeTable) -> Dict[str, Any]:
        return {
            "table_name": table.name,
            "table_rows": table.rows,
            "data_length": table.data_length,
            "index_length": sum(index.size for index in table.indexes.values()),
            "auto_increment": None,
            "create_time": None,
            "update_time": None,
        }

    @staticmethod
    def _column_row(table: str, column: str) -> Dict[str, Any]:
        return {
            "table_name": table,
            "column_name": column,
            "data_type": "int" if column == "id" or column.endswith("_id") else "varchar",
            "is_nullable": "NO" if column == "id" else "YES",
            "column_key": "PRI" if column == "id" else "",
            "column_default": None,
            "extra": "",
        }

    def _index_rows(self, *, include_usage: bool) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for table in sorted(self.tables.values(), key=lambda t: t.name):
            for index in sorted(table.indexes.values(), key=lambda i: i.name):
                for seq, column in enumerate(index.columns, start=1):
                    row = {
                        "table_name": table.name,
                        "index_name": index.name,
                        "column_name": column,
                        "seq_in_index": seq,
                        "non_unique": 0 if index.unique else 1,
                        "cardinality": index.cardinality,
                    }
                    if include_usage:
                        row.update(
                            index_length=index.size,
                            rows_examined=index.rows_examined,
                            rows_read=index.rows_read,
                        )
                    rows.append(row)
        return rows

    def _show_create(self, name: str) -> List[Dict[str, Any]]:
        table = self.tables.get(name)
        if table is None:
            raise QueryError(f"Table '{name}' doesn't exist", kind=DatabaseErrorKind.NOT_FOUND)
        lines = [f"  `{column}` varchar(255)" for column in table.columns]
        for index in table.indexes.values():
            columns = ", ".join(f"`{column}`" for column in index.columns)
            if index.name == "PRIMARY":
                lines.append(f"  PRIMARY KEY ({columns})")
            else:
                lines.append(f"  {'UNIQUE ' if index.unique else ''}KEY `{index.name}` ({columns})")
        body = ",\n".join(lines)
        return [{"Table": name, "Create Table": f"CREATE TABLE `{name}` (\n{body}\n) ENGINE=InnoDB"}]

    def _create_index(self, table_name: str, name: str, columns: List[str], *, unique: bool) -> None:
        table = self.tables.get(table_name)
        if table is None:
            raise QueryError(f"Table '{table_name}' doesn't exist", kind=DatabaseErrorKind.NOT_FOUND)
        if name in table.indexes:
            raise QueryError(f"Duplicate key name '{name}'", kind=DatabaseErrorKind.DUPLICATE)
        missing = [column for column in columns if column not in table.columns]
        if missing:
            raise QueryError(f"Key column '{missing[0]}' doesn't exist in table", kind=DatabaseErrorKind.GENERIC)
        if not self.ignore_ddl:
            table.indexes[name] = FakeIndex(name, columns, unique, cardinality=table.rows)

    def _drop_index(self, table_name: str, name: str) -> None:
        table = self.tables.get(table_name)
        if table is None or name not in table.indexes:
            raise QueryError(
                f"Can't DROP '{name}'; check that column/key exists",
                kind=DatabaseErrorKind.NOT_FOUND,
            )
        if not self.ignore_ddl:
            del table.indexes[name]


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def fake_db() -> FakeDatabase:
    """Empty in-memory database."""
    return FakeDatabase()


@pytest.fixture
def shop_db() -> FakeDatabase:
    """Small shop schema with a mix of used, unused and duplicate indexes."""
    db = FakeDatabase()
    db.add_table("orders", ["id", "customer_id", "status", "created_at", "total"], rows=500)
    db.add_table("customers", ["id", "email", "name", "country"], rows=200)
    db.add_index("orders", "idx_orders_customer_id", ["customer_id"], cardinality=150, rows_examined=1200)
    db.add_index("orders", "idx_orders_status", ["status"], cardinality=5, rows_examined=0)
    db.add_index("customers", "idx_customers_email", ["email"], unique=True, cardinality=200, rows_examined=800)
    db.add_index("customers", "idx_customers_email_name", ["email", "name"], cardinality=200, rows_examined=10)
    return db


@pytest.fixture
def catalog(fake_db: FakeDatabase) -> SchemaCatalog:
    return SchemaCatalog(fake_db)


@pytest.fixture
def shop_catalog(shop_db: FakeDatabase) -> SchemaCatalog:
    return SchemaCatalog(shop_db)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_logger() -> AuditLogger:
    """Fresh audit trail, isolated from the shared default trails."""
    return AuditLogger("test", trail_size=500)


@pytest.fixture
def log_output() -> Generator[List[Dict[str, Any]], None, None]:
    """Structured events logged while the test runs."""
    with structlog.testing.capture_logs() as events:
        yield events


@pytest.fixture
def optimizer_config() -> IndexOptimizerConfig:
    """Optimizer configuration without batch pauses."""
    return IndexOptimizerConfig(batch_pause_seconds=0.0, large_table_row_threshold=100000)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide temporary directory for test files."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


# Pytest markers for different test categories
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, isolated)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (slower, real dependencies)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests that take > 1 second"
    )
    config.addinivalue_line(
        "markers", "database: marks tests requiring a database"
    )


# Auto-mark tests based on their location
def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(config.rootdir) / "tests")

        if test_path.parts[0] == "unit":
            item.add_marker(pytest.mark.unit)
        elif test_path.parts[0] == "integration":
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)

        if "database" in test_path.parts or "connectors" in test_path.parts:
            item.add_marker(pytest.mark.database)
