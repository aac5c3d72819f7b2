"""Execution plan analysis and query performance tracking.

``QueryAnalyzer`` runs ``EXPLAIN`` for SELECT statements, summarizes the plan
rows, derives recommendations and a complexity score, and keeps a bounded
history used for slow-query reports and trend detection.
"""

import json
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from ..config.models import QueryAnalyzerConfig
from ..core import ConfigurableComponent
from ..core.exceptions import DatabaseError
from ..core.utils import StringUtils, parse_timeframe
from ..database.catalog import SchemaCatalog
from ..logging import get_logger, get_performance_logger
from .sql import StatementShape, analyze_statement

TREND_DELTA = 5.0
LARGE_ESTIMATE_ROWS = 10000
MAX_COMPLEXITY = 100


class PlanWarningKind(str, Enum):
    FULL_SCAN = "full_scan"
    FILESORT = "filesort"
    TEMPORARY = "temporary"


_WARNING_TEMPLATES = {
    PlanWarningKind.FULL_SCAN: "Full table scan on {table}",
    PlanWarningKind.FILESORT: "Filesort detected for {table}",
    PlanWarningKind.TEMPORARY: "Temporary table used for {table}",
}


@dataclass(frozen=True)
class PlanWarning:
    kind: PlanWarningKind
    table: Optional[str]

    @property
    def message(self) -> str:
        return _WARNING_TEMPLATES[self.kind].format(table=self.table)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "table": self.table, "message": self.message}


@dataclass
class PlanSummary:
    """Aggregates over the rows of an ``EXPLAIN`` result."""

    tables: int = 0
    joins: int = 0
    indexes: int = 0
    estimated_rows: int = 0
    key_usage: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[PlanWarning] = field(default_factory=list)

    def tables_with(self, kind: PlanWarningKind) -> List[str]:
        return [w.table for w in self.warnings if w.kind is kind and w.table]

    def has_warning(self, kind: PlanWarningKind) -> bool:
        return any(w.kind is kind for w in self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["warnings"] = [w.to_dict() for w in self.warnings]
        return data


@dataclass
class ExecutionPlan:
    rows: List[Dict[str, Any]]
    summary: PlanSummary
    extended_rows: Optional[List[Dict[str, Any]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": self.rows,
            "extended_rows": self.extended_rows,
            "summary": self.summary.to_dict(),
        }


@dataclass
class AnalysisRecommendation:
    type: str
    priority: str
    description: str
    impact: str


@dataclass
class PerformanceAssessment:
    is_slow_query: bool = False
    complexity_score: float = 0.0
    index_usage: str = "unknown"
    estimated_cost: int = 0
    bottlenecks: List[str] = field(default_factory=list)


@dataclass
class QueryAnalysis:
    """Analysis of one executed statement."""

    id: str
    timestamp: float
    sql: str
    statement_type: str
    param_count: int
    execution_time_ms: Optional[float]
    tables: List[str] = field(default_factory=list)
    plan: Optional[ExecutionPlan] = None
    plan_error: Optional[str] = None
    recommendations: List[AnalysisRecommendation] = field(default_factory=list)
    performance: PerformanceAssessment = field(default_factory=PerformanceAssessment)

    @property
    def plan_summary(self) -> Optional[PlanSummary]:
        return self.plan.summary if self.plan else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            "sql": self.sql,
            "statement_type": self.statement_type,
            "param_count": self.param_count,
            "execution_time_ms": self.execution_time_ms,
            "tables": self.tables,
            "plan": self.plan.to_dict() if self.plan else None,
            "plan_error": self.plan_error,
            "recommendations": [asdict(r) for r in self.recommendations],
            "performance": asdict(self.performance),
        }


def summarize_plan(rows: Sequence[Dict[str, Any]]) -> PlanSummary:
    """Summarize ``EXPLAIN`` rows.

    Example:
        >>> summary = summarize_plan([{"table": "orders", "type": "ALL", "rows": 5000}])
        >>> summary.warnings[0].message
        'Full table scan on orders'
    """
    summary = PlanSummary(tables=len(rows), joins=max(0, len(rows) - 1))

    for row in rows:
        table = row.get("table")
        key = row.get("key")
        if key:
            summary.indexes += 1
            summary.key_usage.append({
                "table": table,
                "key": key,
                "key_len": row.get("key_len"),
                "rows": row.get("rows"),
            })

        try:
            summary.estimated_rows += int(row.get("rows") or 0)
        except (TypeError, ValueError):
            pass

        extra = row.get("Extra") or row.get("extra") or ""
        if row.get("type") == "ALL":
            summary.warnings.append(PlanWarning(PlanWarningKind.FULL_SCAN, table))
        if "Using filesort" in extra:
            summary.warnings.append(PlanWarning(PlanWarningKind.FILESORT, table))
        if "Using temporary" in extra:
            summary.warnings.append(PlanWarning(PlanWarningKind.TEMPORARY, table))

    return summary


def complexity_score(shape: StatementShape, summary: Optional[PlanSummary] = None) -> float:
    """Complexity in ``[0, 100]`` from statement structure and plan."""
    score = (
        shape.join_count * 10
        + shape.subquery_count * 8
        + shape.parenthesis_count * 5
        + shape.function_count * 3
    )
    if summary is not None:
        score += summary.tables * 5 + len(summary.warnings) * 15
        if summary.estimated_rows > 1000:
            score += 20
    return float(min(score, MAX_COMPLEXITY))


def _trend(recent: Sequence[float], older: Sequence[float]) -> str:
    if not recent or not older:
        return "stable"
    difference = sum(recent) / len(recent) - sum(older) / len(older)
    if difference > TREND_DELTA:
        return "increasing"
    if difference < -TREND_DELTA:
        return "decreasing"
    return "stable"


class QueryAnalyzer(ConfigurableComponent[QueryAnalyzerConfig]):
    """Plan analysis with slow-query tracking.

    EXPLAIN failures never propagate; they are recorded on the analysis in
    ``plan_error``.

    Example:
        >>> analyzer = QueryAnalyzer(QueryAnalyzerConfig(), SchemaCatalog(connector))
        >>> analysis = await analyzer.analyze("SELECT * FROM orders WHERE id = %s", [7], 12.5)
        >>> analysis.performance.index_usage
        'optimal'
    """

    component_name = "QueryAnalyzer"

    def __init__(
        self,
        config: QueryAnalyzerConfig,
        catalog: SchemaCatalog,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(config)
        self.catalog = catalog
        self.logger = get_logger("query.analyzer")
        self.perf_logger = get_performance_logger("query.analyzer", auto_log=False)
        self._clock = clock

        self._history: Deque[QueryAnalysis] = deque(maxlen=config.max_analysis_history)
        self._slow_queries: Deque[QueryAnalysis] = deque(maxlen=config.max_slow_queries)
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "total_queries": 0,
            "slow_queries": 0,
            "timed_queries": 0,
            "total_execution_time_ms": 0.0,
            "explain_failures": 0,
        }

    def _on_config_updated(self) -> None:
        self._history = deque(self._history, maxlen=self.config.max_analysis_history)
        self._slow_queries = deque(self._slow_queries, maxlen=self.config.max_slow_queries)

    async def analyze(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        execution_time_ms: Optional[float] = None,
    ) -> QueryAnalysis:
        """Analyze a statement and record it in the history.

        Args:
            sql: Statement text
            params: Statement parameters, passed through to EXPLAIN
            execution_time_ms: Measured execution time, if known

        Returns:
            QueryAnalysis
        """
        shape = analyze_statement(sql)
        analysis = QueryAnalysis(
            id=f"qa_{uuid.uuid4().hex[:12]}",
            timestamp=self._clock(),
            sql=sql[:500],
            statement_type=shape.statement_type,
            param_count=len(params or []),
            execution_time_ms=execution_time_ms,
            tables=list(shape.tables),
        )

        if self.config.enable_explain and shape.is_select:
            analysis.plan = await self._explain(sql, params, analysis)
            if analysis.plan is not None:
                summary = analysis.plan.summary
                analysis.recommendations = self.generate_recommendations(summary, shape)
                analysis.performance = self.assess_performance(summary, execution_time_ms)

        analysis.performance.complexity_score = complexity_score(shape, analysis.plan_summary)
        if execution_time_ms is not None:
            analysis.performance.is_slow_query = execution_time_ms > self.config.slow_query_threshold_ms

        if self.config.track_slow_queries and analysis.performance.is_slow_query:
            self._slow_queries.append(analysis)
            self._stats["slow_queries"] += 1
            self.logger.warning(
                "Slow query detected",
                execution_time_ms=execution_time_ms,
                sql=StringUtils.truncate_string(analysis.sql, 100),
            )

        self._stats["total_queries"] += 1
        if execution_time_ms is not None:
            self._stats["timed_queries"] += 1
            self._stats["total_execution_time_ms"] += execution_time_ms
        self._history.append(analysis)
        return analysis

    async def _explain(
        self,
        sql: str,
        params: Optional[Sequence[Any]],
        analysis: QueryAnalysis,
    ) -> Optional[ExecutionPlan]:
        try:
            with self.perf_logger.measure("explain"):
                rows = await self.catalog.explain(sql, params)
        except DatabaseError as e:
            analysis.plan_error = e.message
            self._stats["explain_failures"] += 1
            self.logger.warning("Failed to get execution plan", error=str(e), kind=e.kind.value)
            return None

        plan = ExecutionPlan(rows=rows, summary=summarize_plan(rows))
        if self.config.enable_extended_explain:
            try:
                plan.extended_rows = await self.catalog.explain(sql, params, extended=True)
            except DatabaseError as e:
                self.logger.debug("EXPLAIN EXTENDED not supported", error=str(e))
        return plan

    def generate_recommendations(
        self,
        summary: PlanSummary,
        shape: StatementShape,
    ) -> List[AnalysisRecommendation]:
        recommendations: List[AnalysisRecommendation] = []

        if summary.has_warning(PlanWarningKind.FULL_SCAN):
            recommendations.append(AnalysisRecommendation(
                "INDEX_RECOMMENDATION", "high",
                "Add indexes to avoid full table scans",
                "Can significantly improve query performance",
            ))
        if summary.has_warning(PlanWarningKind.FILESORT):
            recommendations.append(AnalysisRecommendation(
                "SORTING_OPTIMIZATION", "medium",
                "Consider adding composite index for ORDER BY clause",
                "Can eliminate expensive filesort operations",
            ))
        if summary.has_warning(PlanWarningKind.TEMPORARY):
            recommendations.append(AnalysisRecommendation(
                "TEMPORARY_TABLE_OPTIMIZATION", "medium",
                "Optimize GROUP BY or DISTINCT operations",
                "Can reduce memory usage and improve performance",
            ))
        if summary.estimated_rows > self.config.large_result_rows and not shape.has_limit:
            recommendations.append(AnalysisRecommendation(
                "RESULT_SET_LIMITATION", "medium",
                "Add LIMIT clause to control result set size",
                "Can reduce memory usage and network transfer",
            ))
        if summary.tables > 3:
            recommendations.append(AnalysisRecommendation(
                "JOIN_OPTIMIZATION", "low",
                "Consider breaking complex joins into smaller queries",
                "Can improve query maintainability and performance",
            ))
        return recommendations

    def assess_performance(
        self,
        summary: PlanSummary,
        execution_time_ms: Optional[float],
    ) -> PerformanceAssessment:
        assessment = PerformanceAssessment(estimated_cost=summary.estimated_rows)
        if execution_time_ms is not None:
            assessment.is_slow_query = execution_time_ms > self.config.slow_query_threshold_ms

        if summary.tables and summary.indexes == summary.tables:
            assessment.index_usage = "optimal"
        elif summary.indexes > 0:
            assessment.index_usage = "partial"
        else:
            assessment.index_usage = "none"

        if summary.estimated_rows > LARGE_ESTIMATE_ROWS:
            assessment.bottlenecks.append("Large result set")
        if summary.warnings:
            assessment.bottlenecks.append("Inefficient operations")
        if summary.tables > 5:
            assessment.bottlenecks.append("Complex joins")
        return assessment

    @property
    def history(self) -> List[QueryAnalysis]:
        return list(self._history)

    @property
    def slow_queries(self) -> List[QueryAnalysis]:
        return list(self._slow_queries)

    def get_stats(self) -> Dict[str, Any]:
        total = self._stats["total_queries"]
        timed = self._stats["timed_queries"]
        return {
            **self._stats,
            "average_execution_time_ms": (
                round(self._stats["total_execution_time_ms"] / timed, 2) if timed else 0.0
            ),
            "slow_query_rate": round(self._stats["slow_queries"] / total * 100, 2) if total else 0.0,
            "analysis_history_size": len(self._history),
            "config": self.config.to_dict(),
        }

    def get_slow_query_report(self, limit: int = 10) -> Dict[str, Any]:
        """Slowest tracked queries, slowest first."""
        ranked = sorted(self._slow_queries, key=lambda a: a.execution_time_ms or 0.0, reverse=True)
        return {
            "total_slow_queries": len(self._slow_queries),
            "threshold_ms": self.config.slow_query_threshold_ms,
            "queries": [
                {
                    "id": a.id,
                    "execution_time_ms": a.execution_time_ms,
                    "complexity_score": a.performance.complexity_score,
                    "sql": a.sql[:200],
                    "recommendations": len(a.recommendations),
                    "timestamp": a.timestamp,
                }
                for a in ranked[:limit]
            ],
        }

    def get_performance_trends(self, timeframe: str = "1h") -> Dict[str, Any]:
        """Compare the latest analyses in a timeframe with the ones before them.

        The most recent ``trend_window`` analyses are compared with the
        ``trend_window`` analyses preceding them. A difference above 5 in
        average execution time or complexity is reported as ``increasing``,
        below -5 as ``decreasing``.

        Raises:
            ValidationError: If the timeframe is malformed
        """
        cutoff = self._clock() - parse_timeframe(timeframe)
        analyses = [a for a in self._history if a.timestamp > cutoff]
        if not analyses:
            return {
                "timeframe": timeframe,
                "data_points": 0,
                "average_execution_time_ms": 0.0,
                "slow_query_rate": 0.0,
                "execution_time_trend": "stable",
                "complexity_trend": "stable",
            }

        window = self.config.trend_window
        recent = analyses[-window:]
        older = analyses[-2 * window:-window]

        def times(items: Sequence[QueryAnalysis]) -> List[float]:
            return [a.execution_time_ms for a in items if a.execution_time_ms is not None]

        def complexities(items: Sequence[QueryAnalysis]) -> List[float]:
            return [a.performance.complexity_score for a in items]

        timed = times(analyses)
        slow = sum(1 for a in analyses if a.performance.is_slow_query)
        return {
            "timeframe": timeframe,
            "data_points": len(analyses),
            "average_execution_time_ms": round(sum(timed) / len(timed), 2) if timed else 0.0,
            "slow_query_rate": round(slow / len(analyses) * 100, 2),
            "execution_time_trend": _trend(times(recent), times(older)),
            "complexity_trend": _trend(complexities(recent), complexities(older)),
        }

    def reset(self) -> None:
        self._history.clear()
        self._slow_queries.clear()
        self._stats = self._empty_stats()
        self.logger.info("Query analyzer state reset")

    def export_analysis_data(self) -> str:
        """Export history, slow queries and stats as JSON."""
        return json.dumps(
            {
                "stats": self.get_stats(),
                "history": [a.to_dict() for a in self._history],
                "slow_queries": [a.to_dict() for a in self._slow_queries],
            },
            default=str,
        )

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics.update(self.get_stats())
        return metrics
