"""IndexPilot - Adaptive Index and Query Optimization for MySQL.

IndexPilot watches the statements an application runs, caches and rewrites
them, mines their access patterns, and periodically turns what it learned
into index DDL against the managed schema.

Modules:
    core: Core infrastructure and base classes
    config: Configuration management
    logging: Structured logging framework
    database: Execution primitive, schema catalog and MySQL connector
    query: Tokenizer, cache, rewrites, plan analysis and the query engine
    optimization: Index analysis, planning, execution and learning

Example:
    >>> from indexpilot.config import SystemConfig
    >>> from indexpilot.database import MySQLConnector, SchemaCatalog
    >>> from indexpilot.optimization import AutoIndexOptimizer
    >>>
    >>> config = SystemConfig.from_yaml("indexpilot.yaml")
    >>> async with MySQLConnector(config.database) as connector:
    ...     optimizer = AutoIndexOptimizer(config.optimizer, SchemaCatalog(connector))
    ...     cycle = await optimizer.run_cycle()
"""

# query is imported before optimization; the engine depends on the tracker.
from . import core, config, logging, database, query, optimization

__version__ = "0.1.0"
__title__ = "IndexPilot"
__description__ = "Adaptive index and query optimization for MySQL"
__author__ = "IndexPilot Team"
__license__ = "MIT"

__all__ = [
    "core",
    "config",
    "logging",
    "database",
    "query",
    "optimization",
    "__version__",
    "__title__",
    "__description__",
    "__author__",
    "__license__",
]
