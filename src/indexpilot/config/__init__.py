"""IndexPilot configuration management.

This package provides type-safe configuration models with validation,
environment variable substitution and YAML loading.

Example:
    >>> from indexpilot.config import SystemConfig
    >>> config = SystemConfig.from_yaml("indexpilot.yaml")
    >>> config.cache.default_ttl
    300.0
"""

from .models import (
    BaseConfig,
    CacheConfig,
    CredentialConfig,
    DatabaseConfig,
    EngineConfig,
    IndexOptimizerConfig,
    LoggingConfig,
    PatternTrackerConfig,
    PoolConfig,
    QueryAnalyzerConfig,
    QueryOptimizerConfig,
    SystemConfig,
)

__all__ = [
    "BaseConfig",
    "CacheConfig",
    "CredentialConfig",
    "DatabaseConfig",
    "EngineConfig",
    "IndexOptimizerConfig",
    "LoggingConfig",
    "PatternTrackerConfig",
    "PoolConfig",
    "QueryAnalyzerConfig",
    "QueryOptimizerConfig",
    "SystemConfig",
]
