"""MySQL/MariaDB connector for IndexPilot.

``MySQLConnector`` keeps a small pool of PyMySQL connections and implements
the ``DatabaseExecutor`` protocol. Blocking driver calls run in the event
loop's default executor. Driver errors are translated into ``DatabaseError``
subclasses carrying a ``DatabaseErrorKind``.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pymysql
import pymysql.cursors

from ...config.models import DatabaseConfig
from ...core import AsyncComponent
from ...core.exceptions import (
    DatabaseConnectionError,
    DatabaseError,
    DatabaseErrorKind,
    ErrorCodes,
    QueryError,
)
from ...logging import get_logger, get_performance_logger
from ..models import QueryResult

# MySQL server and client error codes grouped by kind
_ERROR_KINDS: Dict[int, DatabaseErrorKind] = {
    1050: DatabaseErrorKind.DUPLICATE,        # table exists
    1061: DatabaseErrorKind.DUPLICATE,        # duplicate key name
    1062: DatabaseErrorKind.DUPLICATE,        # duplicate entry
    1054: DatabaseErrorKind.NOT_FOUND,        # unknown column
    1091: DatabaseErrorKind.NOT_FOUND,        # can't drop; check that it exists
    1146: DatabaseErrorKind.NOT_FOUND,        # table doesn't exist
    1205: DatabaseErrorKind.TIMEOUT,          # lock wait timeout
    3024: DatabaseErrorKind.TIMEOUT,          # max execution time exceeded
    2003: DatabaseErrorKind.CONNECTION_LOST,  # can't connect
    2006: DatabaseErrorKind.CONNECTION_LOST,  # server has gone away
    2013: DatabaseErrorKind.CONNECTION_LOST,  # lost connection during query
    1044: DatabaseErrorKind.ACCESS_DENIED,    # access denied to database
    1045: DatabaseErrorKind.ACCESS_DENIED,    # access denied for user
    1142: DatabaseErrorKind.ACCESS_DENIED,    # command denied
    1064: DatabaseErrorKind.SYNTAX,
}

_KIND_CODES: Dict[DatabaseErrorKind, str] = {
    DatabaseErrorKind.DUPLICATE: ErrorCodes.DUPLICATE_OBJECT,
    DatabaseErrorKind.NOT_FOUND: ErrorCodes.OBJECT_NOT_FOUND,
    DatabaseErrorKind.TIMEOUT: ErrorCodes.QUERY_TIMEOUT,
    DatabaseErrorKind.CONNECTION_LOST: ErrorCodes.CONNECTION_LOST,
    DatabaseErrorKind.ACCESS_DENIED: ErrorCodes.INSUFFICIENT_PERMISSIONS,
    DatabaseErrorKind.SYNTAX: ErrorCodes.QUERY_SYNTAX,
    DatabaseErrorKind.GENERIC: ErrorCodes.QUERY_EXECUTION_FAILED,
}


def classify_mysql_error(error_code: int) -> DatabaseErrorKind:
    """Map a MySQL error number onto a ``DatabaseErrorKind``.

    Example:
        >>> classify_mysql_error(1061)
        <DatabaseErrorKind.DUPLICATE: 'duplicate'>
    """
    return _ERROR_KINDS.get(error_code, DatabaseErrorKind.GENERIC)


def translate_mysql_error(exc: Exception, sql: Optional[str] = None) -> DatabaseError:
    """Build a classified ``DatabaseError`` from a PyMySQL error."""
    error_code = exc.args[0] if exc.args and isinstance(exc.args[0], int) else 0
    kind = classify_mysql_error(error_code)
    context: Dict[str, Any] = {"mysql_error_code": error_code}
    if sql is not None:
        context["sql"] = sql[:200]

    error_class = DatabaseConnectionError if kind is DatabaseErrorKind.CONNECTION_LOST else QueryError
    return error_class(
        f"MySQL error {error_code}: {exc}",
        kind=kind,
        code=_KIND_CODES[kind],
        context=context,
        cause=exc,
    )


class MySQLConnector(AsyncComponent[DatabaseConfig]):
    """MySQL/MariaDB connector implementing the execution primitive.

    Connections are opened up to ``pool_config.max_size`` and handed out one
    statement at a time. A connection that reports a lost-connection error is
    discarded instead of being returned to the pool.

    Example:
        >>> async with MySQLConnector(system_config.database) as connector:
        ...     result = await connector.execute("SELECT 1")
    """

    component_name = "MySQLConnector"
    platform = "mysql"

    def __init__(self, config: DatabaseConfig) -> None:
        super().__init__(config)
        self.logger = get_logger(f"connector.mysql.{config.id}")
        self.perf_logger = get_performance_logger("connector.mysql", auto_log=False)

        self._idle: "asyncio.Queue[pymysql.connections.Connection]" = asyncio.Queue()
        self._open_connections: List[pymysql.connections.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._server_version: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        """Check if connected to the MySQL server."""
        return self.is_initialized and bool(self._open_connections)

    @property
    def server_version(self) -> Optional[str]:
        return self._server_version

    def _connect_sync(self) -> pymysql.connections.Connection:
        return pymysql.connect(
            host=self.config.host,
            port=self.config.port,
            user=self.config.credentials.username,
            password=self.config.credentials.password.get_secret_value(),
            database=self.config.database,
            charset=self.config.charset,
            connect_timeout=self.config.connection_timeout,
            read_timeout=self.config.query_timeout,
            autocommit=True,
            cursorclass=pymysql.cursors.DictCursor,
        )

    async def _open_connection(self) -> pymysql.connections.Connection:
        loop = asyncio.get_running_loop()
        try:
            conn = await loop.run_in_executor(None, self._connect_sync)
        except pymysql.MySQLError as e:
            error = translate_mysql_error(e)
            raise DatabaseConnectionError(
                f"MySQL connection failed: {e}",
                kind=error.kind,
                code=(
                    ErrorCodes.AUTH_FAILED
                    if error.kind is DatabaseErrorKind.ACCESS_DENIED
                    else ErrorCodes.CONNECTION_REFUSED
                ),
                context={
                    "host": self.config.host,
                    "port": self.config.port,
                    "database": self.config.database,
                    **error.context,
                },
                cause=e,
            ) from e
        except OSError as e:
            raise DatabaseConnectionError(
                f"MySQL connection failed: {e}",
                kind=DatabaseErrorKind.CONNECTION_LOST,
                code=ErrorCodes.CONNECTION_REFUSED,
                context={"host": self.config.host, "port": self.config.port},
                cause=e,
            ) from e

        self._open_connections.append(conn)
        return conn

    async def _async_initialize(self) -> None:
        """Open the minimum number of connections and read the server version."""
        self.logger.info("Initializing MySQL connector", host=self.config.host, port=self.config.port)

        for _ in range(self.config.pool_config.min_size):
            self._idle.put_nowait(await self._open_connection())

        conn = await self._acquire()
        try:
            rows, _, _ = await asyncio.get_running_loop().run_in_executor(
                None, self._execute_sync, conn, "SELECT VERSION() AS version", None
            )
            self._server_version = rows[0]["version"] if rows else "unknown"
        finally:
            self._release(conn)

        self.logger.info("MySQL connector initialized", server_version=self._server_version)

    async def _async_cleanup(self) -> None:
        """Close every open connection."""
        for conn in self._open_connections:
            try:
                conn.close()
            except pymysql.MySQLError as e:
                self.logger.warning("Failed to close MySQL connection", error=str(e))
        self._open_connections.clear()
        self._idle = asyncio.Queue()
        self.logger.info("MySQL connections closed")

    async def _acquire(self) -> pymysql.connections.Connection:
        async with self._pool_lock:
            if self._idle.empty() and len(self._open_connections) < self.config.pool_config.max_size:
                return await self._open_connection()
        return await asyncio.wait_for(self._idle.get(), timeout=self.config.connection_timeout)

    def _release(self, conn: pymysql.connections.Connection) -> None:
        if conn in self._open_connections:
            self._idle.put_nowait(conn)

    def _discard(self, conn: pymysql.connections.Connection) -> None:
        if conn in self._open_connections:
            self._open_connections.remove(conn)
        try:
            conn.close()
        except pymysql.MySQLError as e:
            self.logger.debug("Discarded connection did not close cleanly", error=str(e))

    @staticmethod
    def _execute_sync(
        conn: pymysql.connections.Connection,
        sql: str,
        params: Optional[Sequence[Any]],
    ) -> Tuple[List[Dict[str, Any]], List[str], int]:
        with conn.cursor() as cursor:
            cursor.execute(sql, tuple(params) if params else None)
            if cursor.description:
                columns = [desc[0] for desc in cursor.description]
                return list(cursor.fetchall()), columns, cursor.rowcount
            return [], [], cursor.rowcount

    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> QueryResult:
        """Execute one statement.

        Args:
            sql: SQL text with ``%s`` placeholders
            params: Positional parameters

        Returns:
            QueryResult with dictionary rows

        Raises:
            DatabaseConnectionError: If not connected or the connection dropped
            QueryError: Any other classified failure
        """
        if not self.is_initialized:
            raise DatabaseConnectionError(
                "MySQL connector not connected",
                kind=DatabaseErrorKind.CONNECTION_LOST,
                code=ErrorCodes.NOT_CONNECTED,
            )

        start_time = time.perf_counter()
        try:
            conn = await self._acquire()
        except asyncio.TimeoutError as e:
            raise DatabaseConnectionError(
                "Timed out waiting for a MySQL connection",
                kind=DatabaseErrorKind.TIMEOUT,
                code=ErrorCodes.QUERY_TIMEOUT,
                cause=e,
            ) from e

        try:
            rows, columns, rowcount = await asyncio.get_running_loop().run_in_executor(
                None, self._execute_sync, conn, sql, params
            )
        except pymysql.MySQLError as e:
            error = translate_mysql_error(e, sql)
            if error.kind is DatabaseErrorKind.CONNECTION_LOST:
                self._discard(conn)
            else:
                self._release(conn)
            self.perf_logger.record_timing(
                "query_execution", time.perf_counter() - start_time, success=False, error=str(e)
            )
            self.logger.warning(
                "Query execution failed",
                error_code=error.context.get("mysql_error_code"),
                kind=error.kind.value,
            )
            raise error from e

        self._release(conn)
        execution_time = time.perf_counter() - start_time
        self.perf_logger.record_timing("query_execution", execution_time)

        if columns:
            return QueryResult(
                rows=[dict(row) for row in rows],
                row_count=len(rows),
                columns=columns,
                execution_time=execution_time,
            )
        return QueryResult(row_count=max(rowcount, 0), execution_time=execution_time)

    def get_connection_info(self) -> Dict[str, Any]:
        """Get connection information."""
        return {
            "platform": self.platform,
            "host": self.config.host,
            "port": self.config.port,
            "database": self.config.database,
            "connected": self.is_connected,
            "open_connections": len(self._open_connections),
            "server_version": self._server_version,
        }

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics["queries"] = self.perf_logger.get_metrics("query_execution").to_dict()
        return metrics
