"""Workload pattern tracking and create-index recommendations.

``IndexRecommendations`` observes executed statements, aggregates their
WHERE, JOIN, ORDER BY and GROUP BY columns into table-resolved patterns, and
turns frequent uncovered patterns into ``CREATE INDEX`` recommendations.
"""

import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from ..config.models import PatternTrackerConfig
from ..core import ConfigurableComponent
from ..core.exceptions import ValidationError
from ..core.utils import StringUtils
from ..database.catalog import SchemaCatalog
from ..logging import get_logger
from ..query.analyzer import PlanSummary, PlanWarningKind, QueryAnalysis
from ..query.sql import StatementShape, analyze_statement
from .ddl import create_index_sql
from .models import (
    ImpactLevel,
    IndexDescriptor,
    PatternKind,
    Priority,
    QueryPattern,
    Recommendation,
    RecommendationType,
)

EQUALITY_OPERATORS = frozenset({"=", "<=>"})
RANGE_OPERATORS = frozenset({"<", ">", "<=", ">=", "BETWEEN", "NOT BETWEEN"})

ExistingIndexes = Union[Mapping[str, Mapping[str, Sequence[str]]], Iterable[IndexDescriptor]]


def operator_selectivity(operator: str) -> float:
    """Estimated fraction of rows a predicate keeps."""
    if operator in EQUALITY_OPERATORS:
        return 0.1
    if operator in RANGE_OPERATORS:
        return 0.3
    if operator in ("LIKE", "NOT LIKE"):
        return 0.5
    if operator == "IN":
        return 0.2
    return 0.5


def operator_priority(operator: str) -> Priority:
    if operator in EQUALITY_OPERATORS:
        return Priority.HIGH
    if operator in RANGE_OPERATORS:
        return Priority.MEDIUM
    return Priority.LOW


def pattern_key(kind: PatternKind, table: str, columns: Sequence[str]) -> str:
    return f"{kind.value}:{table}:{','.join(columns)}"


def calculate_confidence(pattern: QueryPattern) -> float:
    """Confidence that an index on the pattern pays off, in ``[0, 100]``.

    Example:
        >>> pattern = QueryPattern("where:orders:status", PatternKind.WHERE, "orders", ["status"], frequency=12)
        >>> calculate_confidence(pattern)
        70.0
    """
    confidence = 50.0
    if pattern.frequency >= 10:
        confidence += 20
    elif pattern.frequency >= 5:
        confidence += 10
    if pattern.full_scan:
        confidence += 25
    if pattern.filesort:
        confidence += 15

    average = pattern.avg_execution_time_ms
    if average > 1000:
        confidence += 20
    elif average > 500:
        confidence += 10
    return min(confidence, 100.0)


def estimate_impact(pattern: QueryPattern) -> ImpactLevel:
    average = pattern.avg_execution_time_ms
    if (pattern.full_scan and pattern.frequency >= 10) or (average > 1000 and pattern.frequency >= 5):
        return ImpactLevel.HIGH
    if pattern.frequency >= 10 or average > 500:
        return ImpactLevel.MEDIUM
    return ImpactLevel.LOW


def build_reasoning(pattern: QueryPattern) -> str:
    reasons = [f"Query pattern appears {pattern.frequency} times"]
    if pattern.avg_execution_time_ms > 1000:
        reasons.append(f"Average execution time is {pattern.avg_execution_time_ms:.0f}ms (slow)")
    if pattern.full_scan:
        reasons.append("Queries are performing full table scans")
    if pattern.filesort:
        reasons.append("Queries require filesort operations")
    if pattern.kind is PatternKind.JOIN:
        reasons.append("Index will optimize JOIN operations")
    if pattern.kind is PatternKind.ORDER_BY:
        reasons.append("Index will eliminate sorting overhead")
    return ". ".join(reasons) + "."


def _unique(values: Iterable[str]) -> List[str]:
    return list(OrderedDict.fromkeys(values))


def _plan_tables(shape: StatementShape, summary: Optional[PlanSummary], kind: PlanWarningKind) -> Set[str]:
    """Lowercased base tables flagged with ``kind`` in a plan.

    EXPLAIN names a table by its alias when the statement gives one.
    """
    if summary is None:
        return set()
    aliases = {ref.alias.lower(): ref.table for ref in shape.table_refs if ref.alias}
    return {aliases.get(name.lower(), name).lower() for name in summary.tables_with(kind)}


class IndexRecommendations(ConfigurableComponent[PatternTrackerConfig]):
    """Tracks query patterns and recommends indexes for them.

    Every ``analysis_threshold`` observations the recommendation list is
    regenerated; ``generate_recommendations()`` can also be called directly.

    Example:
        >>> tracker = IndexRecommendations(PatternTrackerConfig(min_frequency=1, confidence_threshold=50))
        >>> tracker.observe("SELECT * FROM orders WHERE customer_id = %s", [42], 35.0)
        >>> [r.index_name for r in tracker.generate_recommendations()]
        ['idx_orders_customer_id']
    """

    component_name = "IndexRecommendations"

    def __init__(self, config: PatternTrackerConfig, *, clock: Callable[[], float] = time.time) -> None:
        super().__init__(config)
        self.logger = get_logger("optimization.recommendations")
        self._clock = clock

        self._patterns: "OrderedDict[str, QueryPattern]" = OrderedDict()
        self._existing: Dict[str, List[List[str]]] = {}
        self._recommendations: List[Recommendation] = []
        self._observations = 0
        self._last_generated_at: Optional[float] = None

    def set_existing_indexes(self, indexes: ExistingIndexes) -> None:
        """Replace the known index list used for coverage checks.

        Args:
            indexes: ``{table: {index_name: [columns]}}`` or index descriptors
        """
        existing: Dict[str, List[List[str]]] = {}
        if isinstance(indexes, Mapping):
            for table, table_indexes in indexes.items():
                existing[table] = [list(columns) for columns in table_indexes.values()]
        else:
            for index in indexes:
                existing.setdefault(index.table, []).append(index.column_names)
        self._existing = existing

    async def load_existing_indexes(self, catalog: SchemaCatalog) -> None:
        self.set_existing_indexes(await catalog.existing_index_columns())

    def observe(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        execution_time_ms: Optional[float] = None,
        analysis: Optional[Union[QueryAnalysis, PlanSummary]] = None,
    ) -> List[QueryPattern]:
        """Record the patterns of one executed statement.

        Args:
            sql: Executed statement
            params: Statement parameters, unused for pattern extraction
            execution_time_ms: Measured execution time
            analysis: Plan analysis of the statement, used for the full scan
                and filesort flags

        Returns:
            The patterns updated by this observation
        """
        shape = analyze_statement(sql)
        summary = analysis.plan_summary if isinstance(analysis, QueryAnalysis) else analysis
        full_scan_tables = _plan_tables(shape, summary, PlanWarningKind.FULL_SCAN)
        filesort_tables = _plan_tables(shape, summary, PlanWarningKind.FILESORT)

        now = self._clock()
        updated: List[QueryPattern] = []
        for candidate in self._extract_patterns(shape):
            pattern = self._upsert(candidate, now)
            pattern.record(execution_time_ms, now)
            if pattern.table.lower() in full_scan_tables:
                pattern.full_scan = True
            if pattern.table.lower() in filesort_tables:
                pattern.filesort = True
            updated.append(pattern)

        self._observations += 1
        if self._observations % self.config.analysis_threshold == 0:
            self.generate_recommendations()
        return updated

    def _extract_patterns(self, shape: StatementShape) -> List[QueryPattern]:
        candidates: Dict[str, QueryPattern] = OrderedDict()

        def add(pattern: QueryPattern) -> None:
            current = candidates.get(pattern.key)
            if current is None:
                candidates[pattern.key] = pattern
            elif pattern.priority.rank < current.priority.rank:
                current.priority = pattern.priority
                current.selectivity = min(current.selectivity, pattern.selectivity)
                current.operator = pattern.operator

        where_columns: Dict[str, List[str]] = OrderedDict()
        for predicate in shape.predicates:
            columns = [predicate.column]
            add(QueryPattern(
                key=pattern_key(PatternKind.WHERE, predicate.table, columns),
                kind=PatternKind.WHERE,
                table=predicate.table,
                columns=columns,
                priority=operator_priority(predicate.operator),
                selectivity=operator_selectivity(predicate.operator),
                operator=predicate.operator,
            ))
            where_columns.setdefault(predicate.table, []).append(predicate.column)

        for join in shape.joins:
            sides = (
                (join.left_table, join.left_column, join.right_table, join.right_column),
                (join.right_table, join.right_column, join.left_table, join.left_column),
            )
            for table, column, other_table, other_column in sides:
                add(QueryPattern(
                    key=pattern_key(PatternKind.JOIN, table, [column]),
                    kind=PatternKind.JOIN,
                    table=table,
                    columns=[column],
                    priority=Priority.HIGH,
                    selectivity=0.1,
                    joined_table=other_table,
                    joined_column=other_column,
                ))

        for kind, refs in ((PatternKind.ORDER_BY, shape.order_by), (PatternKind.GROUP_BY, shape.group_by)):
            per_table: Dict[str, List[str]] = OrderedDict()
            for ref in refs:
                per_table.setdefault(ref.table, []).append(ref.column)
            for table, columns in per_table.items():
                columns = _unique(columns)
                add(QueryPattern(
                    key=pattern_key(kind, table, columns),
                    kind=kind,
                    table=table,
                    columns=columns,
                    priority=Priority.HIGH if len(columns) > 1 else Priority.MEDIUM,
                ))

        for table, columns in where_columns.items():
            columns = _unique(columns)
            if len(columns) >= 2:
                add(QueryPattern(
                    key=pattern_key(PatternKind.COMPOSITE_WHERE, table, columns),
                    kind=PatternKind.COMPOSITE_WHERE,
                    table=table,
                    columns=columns,
                    priority=Priority.HIGH,
                ))

        return list(candidates.values())

    def _upsert(self, candidate: QueryPattern, now: float) -> QueryPattern:
        pattern = self._patterns.get(candidate.key)
        if pattern is None:
            if len(self._patterns) >= self.config.max_patterns:
                stalest = min(self._patterns.values(), key=lambda p: p.last_seen)
                del self._patterns[stalest.key]
            candidate.first_seen = now
            candidate.last_seen = now
            self._patterns[candidate.key] = candidate
            return candidate

        if candidate.priority.rank < pattern.priority.rank:
            pattern.priority = candidate.priority
            pattern.operator = candidate.operator
        pattern.selectivity = min(pattern.selectivity, candidate.selectivity)
        return pattern

    def is_covered(self, table: str, columns: Sequence[str]) -> bool:
        """Whether an existing index on the table starts with these columns."""
        wanted = [column.lower() for column in columns]
        for index_columns in self._existing.get(table, []):
            leading = [column.lower() for column in index_columns[:len(wanted)]]
            if leading == wanted:
                return True
        return False

    def generate_recommendations(self) -> List[Recommendation]:
        """Rebuild the recommendation list from the tracked patterns."""
        candidates: List[Recommendation] = []
        for pattern in self._patterns.values():
            if pattern.frequency < self.config.min_frequency:
                continue
            if self.is_covered(pattern.table, pattern.columns):
                continue
            confidence = calculate_confidence(pattern)
            if confidence < self.config.confidence_threshold:
                continue

            recommendation = self._build_recommendation(pattern, confidence)
            if recommendation is not None:
                candidates.append(recommendation)

        candidates.sort(key=lambda r: (r.priority.rank, -r.confidence))
        seen = set()
        recommendations: List[Recommendation] = []
        for recommendation in candidates:
            if (recommendation.table, recommendation.index_name) in seen:
                continue
            seen.add((recommendation.table, recommendation.index_name))
            recommendations.append(recommendation)

        self._recommendations = recommendations[:self.config.max_recommendations]
        self._last_generated_at = self._clock()
        self.logger.info(
            "Index recommendations generated",
            patterns=len(self._patterns),
            recommendations=len(self._recommendations),
        )
        return list(self._recommendations)

    def _build_recommendation(self, pattern: QueryPattern, confidence: float) -> Optional[Recommendation]:
        index_name = StringUtils.build_index_name(pattern.table, pattern.columns)
        try:
            sql = create_index_sql(pattern.table, index_name, pattern.columns)
        except ValidationError as e:
            self.logger.debug("Pattern skipped, unsafe identifier", pattern=pattern.key, error=str(e))
            return None

        return Recommendation(
            type=(
                RecommendationType.COMPOSITE
                if pattern.kind is PatternKind.COMPOSITE_WHERE
                else RecommendationType.CREATE
            ),
            table=pattern.table,
            columns=list(pattern.columns),
            index_name=index_name,
            priority=pattern.priority,
            confidence=confidence,
            impact=estimate_impact(pattern),
            reasoning=build_reasoning(pattern),
            sql=sql,
            reason=pattern.kind.value,
            pattern_key=pattern.key,
        )

    def get_recommendations(
        self,
        *,
        min_confidence: Optional[float] = None,
        priority: Optional[Union[Priority, str]] = None,
        table: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> List[Recommendation]:
        """Filter the current recommendation list."""
        wanted_priority = Priority(priority) if priority is not None else None
        results = [
            r for r in self._recommendations
            if (min_confidence is None or r.confidence >= min_confidence)
            and (wanted_priority is None or r.priority is wanted_priority)
            and (table is None or r.table == table)
        ]
        return results[:max_results] if max_results else results

    @property
    def patterns(self) -> List[QueryPattern]:
        """Tracked patterns, most frequent first."""
        return sorted(self._patterns.values(), key=lambda p: (-p.frequency, p.key))

    def get_pattern(self, key: str) -> Optional[QueryPattern]:
        return self._patterns.get(key)

    @property
    def observations(self) -> int:
        return self._observations

    def get_stats(self) -> Dict[str, Any]:
        by_kind: Dict[str, int] = {}
        for pattern in self._patterns.values():
            by_kind[pattern.kind.value] = by_kind.get(pattern.kind.value, 0) + 1
        return {
            "observations": self._observations,
            "total_patterns": len(self._patterns),
            "patterns_by_kind": by_kind,
            "recommendations": len(self._recommendations),
            "tables_with_known_indexes": len(self._existing),
            "last_generated_at": self._last_generated_at,
        }

    def top_patterns(self, limit: int = 10) -> List[Tuple[str, int]]:
        return [(p.key, p.frequency) for p in self.patterns[:limit]]

    def export_patterns(self) -> Dict[str, Any]:
        """JSON-serializable snapshot of patterns and recommendations."""
        return {
            "exported_at": self._clock(),
            "stats": self.get_stats(),
            "patterns": [p.to_dict() for p in self.patterns],
            "recommendations": [r.to_dict() for r in self._recommendations],
        }

    def reset(self) -> None:
        self._patterns.clear()
        self._recommendations = []
        self._observations = 0
        self._last_generated_at = None
        self.logger.info("Pattern tracker reset")
