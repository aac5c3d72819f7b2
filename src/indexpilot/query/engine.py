"""Query-path orchestrator.

``OptimizationEngine.run`` serves a statement from the cache when possible,
otherwise rewrites, executes, caches, analyzes and feeds the pattern tracker.

Example:
    >>> engine = OptimizationEngine(SystemConfig(), connector)
    >>> async with engine:
    ...     result = await engine.run("SELECT * FROM orders WHERE status = %s", ["paid"])
    >>> result.cache_hit
    False
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from ..config.models import BaseConfig, SystemConfig
from ..core import AsyncComponent
from ..core.exceptions import DatabaseError, ValidationError
from ..database.catalog import SchemaCatalog
from ..database.executor import DatabaseExecutor
from ..logging import get_logger, get_performance_logger
from ..optimization.models import Priority, Recommendation
from ..optimization.recommendations import IndexRecommendations
from .analyzer import QueryAnalysis, QueryAnalyzer
from .cache import CacheManager
from .optimizer import AppliedOptimization, OptimizationOutcome, QueryOptimizer
from .sql import analyze_statement

CONFIG_SECTIONS = ("cache", "query_optimizer", "query_analyzer", "pattern_tracker", "engine")


@dataclass
class QueryRunResult:
    """Outcome of ``OptimizationEngine.run``."""

    success: bool
    data: Any = None
    cache_hit: bool = False
    rewritten: bool = False
    executed_sql: Optional[str] = None
    timing_ms: float = 0.0
    optimizations: List[AppliedOptimization] = field(default_factory=list)
    analysis: Optional[QueryAnalysis] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "cache_hit": self.cache_hit,
            "rewritten": self.rewritten,
            "executed_sql": self.executed_sql,
            "timing_ms": round(self.timing_ms, 3),
            "optimizations": [
                {"type": o.type, "description": o.description, "impact": o.impact, "applied": o.applied}
                for o in self.optimizations
            ],
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "error": self.error,
            "error_kind": self.error_kind,
        }


class OptimizationEngine(AsyncComponent[SystemConfig]):
    """Cache, rewrite, execute, analyze and learn for each statement.

    Args:
        config: System configuration; the cache, query_optimizer,
            query_analyzer, pattern_tracker and engine sections are used
        executor: Execution primitive of the managed database
        clock: Wall clock shared with the cache, analyzer and tracker
    """

    component_name = "OptimizationEngine"

    def __init__(
        self,
        config: SystemConfig,
        executor: DatabaseExecutor,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(config)
        self.executor = executor
        self.catalog = SchemaCatalog(executor)
        self.logger = get_logger("query.engine")
        self.perf_logger = get_performance_logger("query.engine", auto_log=False)

        self.cache = CacheManager(config.cache, clock=clock)
        self.optimizer = QueryOptimizer(config.query_optimizer)
        self.analyzer = QueryAnalyzer(config.query_analyzer, self.catalog, clock=clock)
        self.recommendations = IndexRecommendations(config.pattern_tracker, clock=clock)

        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "total_queries": 0,
            "cache_hits": 0,
            "executions": 0,
            "errors": 0,
            "rewritten_queries": 0,
            "rejected_rewrites": 0,
            "total_execution_time_ms": 0.0,
        }

    async def _async_initialize(self) -> None:
        await self.cache.initialize()
        try:
            await self.recommendations.load_existing_indexes(self.catalog)
        except DatabaseError as e:
            self.logger.warning("Existing indexes not loaded", error=e.message, kind=e.kind.value)

    async def _async_cleanup(self) -> None:
        await self.cache.cleanup()

    async def run(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        *,
        use_cache: bool = True,
        optimize: bool = True,
        analyze: bool = True,
    ) -> QueryRunResult:
        """Run one statement through the full query path.

        Args:
            sql: Statement text
            params: Statement parameters
            use_cache: Serve from and store into the result cache; only
                single-statement SELECTs are cached
            optimize: Apply the rewrite layer
            analyze: Run plan analysis after execution

        Returns:
            QueryRunResult; execution failures are reported in ``error``
        """
        self._stats["total_queries"] += 1
        params_list = list(params or [])
        engine_config = self.config.engine
        shape = analyze_statement(sql)
        reads_only = shape.is_select and shape.statement_count == 1
        caching = use_cache and engine_config.enable_caching and reads_only

        if caching:
            cached = self.cache.get(sql, params_list)
            if cached is not None:
                self._stats["cache_hits"] += 1
                return QueryRunResult(success=True, data=cached, cache_hit=True)

        executed_sql, executed_params = sql, params_list
        optimizations: List[AppliedOptimization] = []
        if optimize and engine_config.enable_optimization:
            outcome = self.optimizer.optimize(sql, params_list)
            optimizations = outcome.optimizations_applied
            if outcome.success and outcome.validation.is_valid:
                executed_sql, executed_params = outcome.optimized_sql, outcome.optimized_params
            elif outcome.rewritten:
                self._stats["rejected_rewrites"] += 1
                self.logger.warning(
                    "Rewrite rejected, executing original statement",
                    warnings=outcome.validation.warnings,
                )

        rewritten = executed_sql != sql
        if rewritten:
            self._stats["rewritten_queries"] += 1

        start = time.perf_counter()
        try:
            with self.perf_logger.measure("query_execution"):
                result = await self.executor.execute(executed_sql, executed_params)
        except DatabaseError as e:
            timing_ms = (time.perf_counter() - start) * 1000
            self._stats["errors"] += 1
            self.logger.warning("Query execution failed", error=e.message, kind=e.kind.value)
            return QueryRunResult(
                success=False,
                rewritten=rewritten,
                executed_sql=executed_sql,
                timing_ms=timing_ms,
                optimizations=optimizations,
                error=e.message,
                error_kind=e.kind.value,
            )

        timing_ms = (time.perf_counter() - start) * 1000
        self._stats["executions"] += 1
        self._stats["total_execution_time_ms"] += timing_ms

        if caching:
            self.cache.set(sql, params_list, result.rows)
        elif not reads_only:
            self._invalidate_written_tables(shape.tables)

        analysis: Optional[QueryAnalysis] = None
        if analyze and engine_config.enable_analysis:
            analysis = await self.analyzer.analyze(executed_sql, executed_params, timing_ms)

        if engine_config.enable_index_recommendations:
            self.recommendations.observe(executed_sql, executed_params, timing_ms, analysis)

        return QueryRunResult(
            success=True,
            data=result.rows,
            rewritten=rewritten,
            executed_sql=executed_sql,
            timing_ms=timing_ms,
            optimizations=optimizations,
            analysis=analysis,
        )

    def _invalidate_written_tables(self, tables: Sequence[str]) -> None:
        for table in tables:
            removed = self.cache.invalidate_by_table(table)
            if removed:
                self.logger.debug("Cached reads invalidated by write", table=table, entries=removed)

    def optimize_query(self, sql: str, params: Optional[Sequence[Any]] = None) -> OptimizationOutcome:
        """Rewrite a statement without executing it."""
        return self.optimizer.optimize(sql, params)

    async def analyze_query(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        execution_time_ms: Optional[float] = None,
    ) -> QueryAnalysis:
        """Analyze a statement without executing it."""
        return await self.analyzer.analyze(sql, params, execution_time_ms)

    def get_index_recommendations(
        self,
        *,
        min_confidence: Optional[float] = None,
        priority: Optional[Union[Priority, str]] = None,
        table: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> List[Recommendation]:
        return self.recommendations.get_recommendations(
            min_confidence=min_confidence,
            priority=priority,
            table=table,
            max_results=max_results,
        )

    # Cache administration

    def invalidate(self, pattern: str) -> int:
        return self.cache.invalidate(pattern)

    def invalidate_table(self, table: str) -> int:
        return self.cache.invalidate_by_table(table)

    def clear_cache(self) -> int:
        return self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()

    def update_configuration(self, **sections: Union[BaseConfig, Dict[str, Any]]) -> SystemConfig:
        """Replace configuration sections at runtime.

        Each keyword names a section (``cache``, ``query_optimizer``,
        ``query_analyzer``, ``pattern_tracker`` or ``engine``) and is either a
        full config object or a dict of fields to change.

        Raises:
            ValidationError: If a section name is unknown
        """
        updates: Dict[str, BaseConfig] = {}
        for name, value in sections.items():
            if name not in CONFIG_SECTIONS:
                raise ValidationError(
                    f"Unknown configuration section: {name}",
                    code="CONFIG_SECTION_UNKNOWN",
                    context={"supported": list(CONFIG_SECTIONS)},
                )
            current: BaseConfig = getattr(self.config, name)
            updates[name] = value if isinstance(value, BaseConfig) else current.update_from_dict(value)

        self.update_config(self.config.model_copy(update=updates))
        return self.config

    def _on_config_updated(self) -> None:
        pairs = (
            (self.cache, self.config.cache),
            (self.optimizer, self.config.query_optimizer),
            (self.analyzer, self.config.query_analyzer),
            (self.recommendations, self.config.pattern_tracker),
        )
        for component, section in pairs:
            if component.config != section:
                component.update_config(section)

    def get_stats(self) -> Dict[str, Any]:
        total = self._stats["total_queries"]
        executions = self._stats["executions"]
        return {
            **self._stats,
            "cache_hit_rate": round(self._stats["cache_hits"] / total * 100, 2) if total else 0.0,
            "average_execution_time_ms": (
                round(self._stats["total_execution_time_ms"] / executions, 3) if executions else 0.0
            ),
            "rewrite_fraction": round(self._stats["rewritten_queries"] / total, 4) if total else 0.0,
        }

    def get_performance_report(self) -> Dict[str, Any]:
        """Engine, cache, optimizer, analyzer and tracker statistics in one report."""
        return {
            "engine": self.get_stats(),
            "cache": self.cache.get_stats(),
            "top_cached_queries": self.cache.get_top_queries(5),
            "optimizer": self.optimizer.get_stats(),
            "analyzer": self.analyzer.get_stats(),
            "slow_queries": self.analyzer.get_slow_query_report(),
            "trends": self.analyzer.get_performance_trends(),
            "recommendations": self.recommendations.get_stats(),
            "execution_timing": self.perf_logger.get_metrics("query_execution").to_dict(),
        }

    def reset_stats(self) -> None:
        self._stats = self._empty_stats()
        self.optimizer.reset_stats()
        self.perf_logger.reset_metrics()
        self.analyzer.reset()

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics.update(self.get_stats())
        return metrics
