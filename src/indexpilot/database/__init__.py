"""IndexPilot database layer.

This package holds the ``execute(sql, params)`` primitive the core depends
on, the schema-catalog queries built on top of it and a MySQL connector.

Example:
    >>> from indexpilot.database import MySQLConnector, SchemaCatalog
    >>> async with MySQLConnector(config.database) as connector:
    ...     tables = await SchemaCatalog(connector).list_tables()
"""

from .catalog import SchemaCatalog
from .connectors import MySQLConnector, classify_mysql_error
from .executor import DatabaseExecutor
from .models import QueryResult

__all__ = [
    "DatabaseExecutor",
    "MySQLConnector",
    "QueryResult",
    "SchemaCatalog",
    "classify_mysql_error",
]
