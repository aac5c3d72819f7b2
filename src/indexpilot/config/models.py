"""Configuration models for IndexPilot.

This module defines the Pydantic models for every configurable part of
IndexPilot. The models validate values on construction and on assignment,
resolve ``${VAR}`` / ``${VAR:default}`` environment references, and can be
loaded from YAML.

Classes:
    BaseConfig: Base configuration class
    CredentialConfig: Database credentials
    PoolConfig: Connection pool sizing
    DatabaseConfig: Database connection configuration
    LoggingConfig: Logging configuration
    CacheConfig: Query result cache configuration
    QueryOptimizerConfig: Rewrite layer configuration
    QueryAnalyzerConfig: EXPLAIN analysis configuration
    PatternTrackerConfig: Query pattern mining configuration
    IndexOptimizerConfig: Index control loop configuration
    EngineConfig: Query-path orchestrator switches
    SystemConfig: Aggregate configuration

Example:
    >>> config = SystemConfig.from_yaml("indexpilot.yaml")
    >>> config.optimizer.max_batch_size
    5
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

from ..core.exceptions import ConfigurationError, ErrorCodes
from ..core.utils import ValidationUtils

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


class BaseConfig(BaseModel):
    """Base configuration class with common functionality.

    This class provides the foundation for all configuration objects
    including validation, environment variable resolution, and serialization.

    Example:
        >>> class MyConfig(BaseConfig):
        ...     name: str
        ...     value: int = 42
    """

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid",
        use_enum_values=True,
        validate_default=True,
        populate_by_name=True,
    )

    @model_validator(mode="before")
    @classmethod
    def resolve_environment_variables(cls, values: Any) -> Any:
        """Resolve environment variables in configuration values.

        Supports ${VAR_NAME} and ${VAR_NAME:default_value} syntax.

        Args:
            values: Raw configuration values

        Returns:
            Values with environment variables resolved
        """
        def replace_env_var(match: "re.Match[str]") -> str:
            var_spec = match.group(1)
            if ":" in var_spec:
                var_name, default = var_spec.split(":", 1)
            else:
                var_name, default = var_spec, ""
            return os.getenv(var_name, default)

        def resolve_value(value: Any) -> Any:
            if isinstance(value, str):
                return _ENV_PATTERN.sub(replace_env_var, value)
            elif isinstance(value, dict):
                return {k: resolve_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [resolve_value(item) for item in value]
            return value

        if isinstance(values, dict):
            return {key: resolve_value(value) for key, value in values.items()}
        return values

    def to_dict(self, *, mask_secrets: bool = True) -> Dict[str, Any]:
        """Convert configuration to dictionary.

        Args:
            mask_secrets: Whether to mask secret values

        Returns:
            Dictionary representation of configuration
        """
        if mask_secrets:
            return self.model_dump(mode="json")

        def reveal(value: Any) -> Any:
            if isinstance(value, SecretStr):
                return value.get_secret_value()
            elif isinstance(value, dict):
                return {k: reveal(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [reveal(item) for item in value]
            return value

        return reveal(self.model_dump())

    def update_from_dict(self, data: Dict[str, Any]) -> "BaseConfig":
        """Return a new configuration with the given fields replaced.

        Args:
            data: Dictionary with updated values

        Returns:
            New configuration instance with updated values
        """
        current_data = self.model_dump()
        current_data.update(data)
        return self.__class__(**current_data)


class CredentialConfig(BaseConfig):
    """Credential configuration with secure handling.

    Attributes:
        username: Database username
        password: Database password (stored securely)
    """

    username: str = Field(..., min_length=1, description="Database username")
    password: SecretStr = Field(..., description="Database password")

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Username cannot be empty or whitespace")
        return v.strip()


class PoolConfig(BaseConfig):
    """Connection pool configuration.

    Attributes:
        min_size: Minimum number of connections in pool
        max_size: Maximum number of connections in pool
    """

    min_size: int = Field(1, ge=1, description="Minimum pool size")
    max_size: int = Field(10, ge=1, description="Maximum pool size")

    @model_validator(mode="after")
    def validate_sizes(self) -> "PoolConfig":
        if self.max_size < self.min_size:
            raise ValueError(
                f"max_size ({self.max_size}) must be >= min_size ({self.min_size})"
            )
        return self


class DatabaseConfig(BaseConfig):
    """Database connection configuration.

    Attributes:
        id: Unique database identifier
        platform: Database platform
        host: Database host
        port: Database port
        database: Schema whose indexes are managed
        credentials: Database credentials
        pool_config: Connection pool configuration
        connection_timeout: Connection timeout in seconds
        query_timeout: Per-statement timeout in seconds

    Example:
        >>> config = DatabaseConfig(
        ...     id="primary",
        ...     host="db.internal",
        ...     database="shop",
        ...     credentials={"username": "tuner", "password": "secret"},
        ... )
    """

    id: str = Field(..., min_length=1, description="Unique database identifier")
    platform: Literal["mysql"] = Field("mysql", description="Database platform")
    host: str = Field(..., min_length=1, description="Database host")
    port: int = Field(3306, gt=0, lt=65536, description="Database port")
    database: str = Field(..., min_length=1, description="Database name")
    credentials: CredentialConfig = Field(..., description="Database credentials")
    pool_config: PoolConfig = Field(default_factory=PoolConfig, description="Pool configuration")
    connection_timeout: int = Field(30, gt=0, description="Connection timeout in seconds")
    query_timeout: int = Field(300, gt=0, description="Query timeout in seconds")
    charset: str = Field("utf8mb4", description="Connection character set")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not ValidationUtils.validate_identifier(v):
            raise ValueError(f"Invalid database ID format: {v}")
        return v

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Host cannot be empty")
        return v.strip()

    @field_validator("database")
    @classmethod
    def validate_database(cls, v: str) -> str:
        if not ValidationUtils.validate_sql_identifier(v):
            raise ValueError(f"Invalid database name format: {v}")
        return v

    @property
    def connection_string(self) -> str:
        """Connection string with the password masked."""
        return (
            f"{self.platform}://{self.credentials.username}:***@"
            f"{self.host}:{self.port}/{self.database}"
        )


class LoggingConfig(BaseConfig):
    """Logging configuration.

    Attributes:
        level: Log level
        format: Log format (json, text)
        file_path: Optional log file path
        console_output: Enable console output
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        "INFO", description="Logging level"
    )
    format: Literal["json", "text"] = Field("json", description="Log format")
    file_path: Optional[Path] = Field(None, description="Log file path")
    max_file_size: int = Field(10485760, gt=0, description="Max file size in bytes (10MB)")
    backup_count: int = Field(5, ge=0, description="Number of backup files")
    console_output: bool = Field(True, description="Enable console output")
    audit_trail_size: int = Field(1000, gt=0, description="Audit events kept in memory")


class CacheConfig(BaseConfig):
    """Query result cache configuration.

    Attributes:
        max_size: Maximum number of cached results
        default_ttl: Entry time-to-live in seconds
        cleanup_interval: Seconds between expiry sweeps
        enable_lru: Evict least-recently-used (else oldest inserted)
    """

    max_size: int = Field(1000, gt=0, description="Maximum cached entries")
    default_ttl: float = Field(300.0, gt=0, description="Entry TTL in seconds")
    cleanup_interval: float = Field(60.0, gt=0, description="Sweep interval in seconds")
    enable_lru: bool = Field(True, description="Use LRU eviction")


class QueryOptimizerConfig(BaseConfig):
    """Rewrite layer configuration."""

    enable_query_rewriting: bool = Field(True, description="Apply rewrite rules")
    enable_index_hints: bool = Field(False, description="Annotate queries with USE INDEX hints")
    add_missing_limit: bool = Field(True, description="Inject a row cap when missing")
    optimize_count_queries: bool = Field(True, description="Rewrite COUNT(*) to COUNT(1)")
    default_limit: int = Field(1000, gt=0, description="Row cap added by ADD_MISSING_LIMIT")
    max_index_hints: int = Field(3, ge=0, description="Maximum hints per query")
    max_join_count: int = Field(3, ge=0, description="Joins above this are reported")


class QueryAnalyzerConfig(BaseConfig):
    """EXPLAIN analysis configuration."""

    enable_explain: bool = Field(True, description="Run EXPLAIN for SELECT statements")
    enable_extended_explain: bool = Field(False, description="Also run EXPLAIN EXTENDED")
    track_slow_queries: bool = Field(True, description="Keep a slow query list")
    slow_query_threshold_ms: float = Field(1000.0, gt=0, description="Slow query threshold")
    max_analysis_history: int = Field(100, gt=0, description="Analyses kept in history")
    max_slow_queries: int = Field(50, gt=0, description="Slow queries kept")
    large_result_rows: int = Field(1000, gt=0, description="Rows that warrant a LIMIT")
    trend_window: int = Field(10, gt=0, description="Analyses per trend window")


class PatternTrackerConfig(BaseConfig):
    """Query pattern mining configuration."""

    analysis_threshold: int = Field(10, gt=0, description="Observations between regenerations")
    confidence_threshold: float = Field(70.0, ge=0, le=100, description="Minimum confidence")
    max_recommendations: int = Field(20, gt=0, description="Maximum recommendations kept")
    min_frequency: int = Field(3, gt=0, description="Minimum observations per pattern")
    max_patterns: int = Field(10000, gt=0, description="Maximum tracked patterns")


class IndexOptimizerConfig(BaseConfig):
    """Index control loop configuration.

    Shared by the analyzer, planner, executor, learning system and the
    batch orchestrator.
    """

    confidence_threshold: float = Field(80.0, ge=0, le=100, description="Minimum confidence for create actions")
    performance_threshold_ms: float = Field(1000.0, gt=0, description="Slow pattern threshold")
    max_indexes_per_table: int = Field(10, gt=0, description="Index budget per table")
    min_usage_threshold: int = Field(5, ge=0, description="Usage needed for composite merge")
    redundancy_threshold: float = Field(0.8, gt=0, le=1, description="Duplicate similarity threshold")
    inefficient_threshold: float = Field(40.0, ge=0, le=100, description="Effectiveness below this is inefficient")
    auto_execute: bool = Field(False, description="Execute plans without approval")
    backup_enabled: bool = Field(True, description="Capture SHOW CREATE TABLE before drops")
    max_batch_size: int = Field(5, gt=0, description="Actions per execution batch")
    batch_pause_seconds: float = Field(1.0, ge=0, description="Pause between batches")
    large_tables: List[str] = Field(default_factory=list, description="Tables flagged as high risk")
    large_table_row_threshold: int = Field(1_000_000, ge=0, description="Rows above which a table is large")
    history_limit: int = Field(50, gt=0, description="Learning records kept")
    baseline_limit: int = Field(100, gt=0, description="Baseline samples kept per table")
    drift_row_change_ratio: float = Field(0.10, ge=0, description="Row change ratio reported as drift")
    hot_spot_interval_hours: float = Field(1.0, gt=0, description="Cycle interval that signals a hot spot")
    top_statement_digests: int = Field(20, gt=0, description="Statement digests fetched per analysis")

    @field_validator("large_tables")
    @classmethod
    def validate_large_tables(cls, v: List[str]) -> List[str]:
        for table in v:
            if not ValidationUtils.validate_sql_identifier(table):
                raise ValueError(f"Invalid table name: {table}")
        return v


class EngineConfig(BaseConfig):
    """Query-path orchestrator switches."""

    enable_caching: bool = Field(True, description="Serve and store results in the cache")
    enable_optimization: bool = Field(True, description="Run the rewrite layer")
    enable_analysis: bool = Field(True, description="Run EXPLAIN analysis")
    enable_index_recommendations: bool = Field(True, description="Feed the pattern tracker")


class SystemConfig(BaseConfig):
    """Aggregate configuration for an IndexPilot deployment.

    Example:
        >>> config = SystemConfig.from_dict({"optimizer": {"auto_execute": True}})
        >>> config.optimizer.auto_execute
        True
    """

    app_name: str = Field("IndexPilot", description="Application name")
    environment: Literal["development", "staging", "production", "testing"] = Field(
        "development", description="Deployment environment"
    )
    database: Optional[DatabaseConfig] = Field(None, description="Managed database")
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    query_optimizer: QueryOptimizerConfig = Field(default_factory=QueryOptimizerConfig)
    query_analyzer: QueryAnalyzerConfig = Field(default_factory=QueryAnalyzerConfig)
    pattern_tracker: PatternTrackerConfig = Field(default_factory=PatternTrackerConfig)
    optimizer: IndexOptimizerConfig = Field(default_factory=IndexOptimizerConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)

    @model_validator(mode="after")
    def validate_environment_specific_settings(self) -> "SystemConfig":
        if self.environment == "production" and self.optimizer.auto_execute and not self.optimizer.backup_enabled:
            raise ValueError("Backups must be enabled for automatic execution in production")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemConfig":
        """Build configuration from a dictionary."""
        return cls(**(data or {}))

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "SystemConfig":
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML document

        Returns:
            Validated configuration

        Raises:
            ConfigurationError: If the file is missing or not a mapping
        """
        config_path = Path(path)
        if not config_path.is_file():
            raise ConfigurationError(
                f"Configuration file not found: {config_path}",
                code=ErrorCodes.CONFIG_NOT_FOUND,
                context={"path": str(config_path)},
            )

        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}

        if not isinstance(data, dict):
            raise ConfigurationError(
                "Configuration root must be a mapping",
                code=ErrorCodes.CONFIG_INVALID,
                context={"path": str(config_path)},
            )

        return cls.from_dict(data)
