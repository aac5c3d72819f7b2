"""Database connectors implementing the execution primitive."""

from .mysql import MySQLConnector, classify_mysql_error, translate_mysql_error

__all__ = [
    "MySQLConnector",
    "classify_mysql_error",
    "translate_mysql_error",
]
