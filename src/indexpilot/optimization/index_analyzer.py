"""Schema and index analysis.

``IndexAnalyzer`` reads tables, columns and indexes from the schema catalog,
scores every index, classifies duplicates, unused and inefficient indexes,
detects drift against the previous pass and folds the pattern tracker's
recommendations into one ``AnalysisReport``.

Optional sources degrade instead of failing the pass:

* without ``INDEX_STATISTICS`` usage counters are zero, the report is marked
  ``usage_statistics_available=False`` and unused-index classification is
  suppressed;
* without ``performance_schema`` the performance metrics are empty.

Only an unreadable catalog raises ``SchemaIntrospectionError``.
"""

import math
import time
from itertools import combinations
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..config.models import IndexOptimizerConfig
from ..core import ConfigurableComponent
from ..core.exceptions import DatabaseError, ErrorCodes, SchemaIntrospectionError, ValidationError
from ..core.utils import clamp
from ..database.catalog import SchemaCatalog
from ..logging import get_logger, get_performance_logger
from .ddl import drop_index_sql
from .models import (
    AnalysisReport,
    ColumnDescriptor,
    DuplicatePair,
    ImpactLevel,
    IndexColumn,
    IndexDescriptor,
    IndexUsage,
    InefficientIndex,
    Priority,
    Recommendation,
    RecommendationType,
    RowCountChange,
    SchemaChanges,
    TableSnapshot,
)
from .recommendations import IndexRecommendations

LARGE_INDEX_BYTES = 100 * 1024 * 1024
LOW_CARDINALITY = 10
MAX_USEFUL_COLUMNS = 4


def calculate_effectiveness(index: IndexDescriptor) -> float:
    """Score an index in ``[0, 100]`` from usage, cardinality and shape.

    Example:
        >>> index = IndexDescriptor("orders", "idx_a", [IndexColumn("a", 1, 5000)], usage=IndexUsage(999))
        >>> calculate_effectiveness(index)
        100.0
    """
    score = 50.0

    examined = index.usage.rows_examined
    if examined > 0:
        score += 10 + min(30.0, 10 * math.log10(examined + 1))
    else:
        score -= 30

    cardinality = index.average_cardinality
    if cardinality > 1000:
        score += 15
    elif cardinality > 100:
        score += 10
    elif cardinality < LOW_CARDINALITY:
        score -= 15

    if len(index.columns) > 1:
        score += 5
        if len(index.columns) > 3:
            score -= 5

    if index.unique:
        score += 10

    return round(clamp(score, 0.0, 100.0), 2)


def prefix_similarity(left: Sequence[str], right: Sequence[str]) -> float:
    """Ordered common-prefix length over the longer column list."""
    longest = max(len(left), len(right))
    if not longest:
        return 0.0
    common = 0
    for a, b in zip(left, right):
        if a.lower() != b.lower():
            break
        common += 1
    return common / longest


def find_duplicates(indexes: Sequence[IndexDescriptor], threshold: float) -> List[DuplicatePair]:
    """Pair up redundant indexes on the same table.

    The index with fewer rows examined loses; on a tie the name that sorts
    later loses. A UNIQUE index enforces a constraint, so it only loses to a
    UNIQUE index on the same columns. Each index is reported as a loser at
    most once.
    """
    by_table: Dict[str, List[IndexDescriptor]] = {}
    for index in indexes:
        if not index.is_primary:
            by_table.setdefault(index.table, []).append(index)

    duplicates: List[DuplicatePair] = []
    for table in sorted(by_table):
        losers: Set[str] = set()
        candidates = sorted(by_table[table], key=lambda i: i.name)
        for first, second in combinations(candidates, 2):
            if first.name in losers or second.name in losers:
                continue
            similarity = prefix_similarity(first.column_names, second.column_names)
            if similarity < threshold:
                continue

            ranked = _rank_pair(first, second)
            if ranked is None:
                continue
            kept, dropped = ranked
            losers.add(dropped.name)
            duplicates.append(DuplicatePair(
                table=table,
                kept=kept.name,
                dropped=dropped.name,
                similarity=round(similarity, 4),
            ))
    return duplicates


def _rank_pair(
    first: IndexDescriptor,
    second: IndexDescriptor,
) -> Optional[Tuple[IndexDescriptor, IndexDescriptor]]:
    if first.unique != second.unique:
        return (first, second) if first.unique else (second, first)
    if first.unique and first.column_names != second.column_names:
        return None
    if first.usage.rows_examined != second.usage.rows_examined:
        kept, dropped = sorted((first, second), key=lambda i: i.usage.rows_examined, reverse=True)
        return kept, dropped
    return first, second


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class IndexAnalyzer(ConfigurableComponent[IndexOptimizerConfig]):
    """Builds ``AnalysisReport``s from the live schema.

    Example:
        >>> analyzer = IndexAnalyzer(config.optimizer, SchemaCatalog(connector), tracker)
        >>> report = await analyzer.analyze()
        >>> report.summary()["duplicates"]
        1
    """

    component_name = "IndexAnalyzer"

    def __init__(
        self,
        config: IndexOptimizerConfig,
        catalog: SchemaCatalog,
        recommendations: Optional[IndexRecommendations] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(config)
        self.catalog = catalog
        self.recommendations = recommendations
        self.logger = get_logger("optimization.index_analyzer")
        self.perf_logger = get_performance_logger("optimization.index_analyzer", auto_log=False)
        self._clock = clock

        self._previous_tables: Optional[Dict[str, TableSnapshot]] = None
        self._last_report: Optional[AnalysisReport] = None

    @property
    def last_report(self) -> Optional[AnalysisReport]:
        return self._last_report

    async def analyze(self) -> AnalysisReport:
        """Run a full analysis pass.

        Returns:
            AnalysisReport

        Raises:
            SchemaIntrospectionError: If tables, columns or indexes cannot be read
        """
        start = time.perf_counter()
        report = AnalysisReport(generated_at=self._clock())

        with self.perf_logger.measure("index_analysis"):
            report.tables = await self._read_tables()
            report.indexes = await self._read_indexes(report)
            report.performance_metrics = await self._read_performance_metrics(report)

            for index in report.indexes:
                index.effectiveness = calculate_effectiveness(index)

            report.duplicates = find_duplicates(report.indexes, self.config.redundancy_threshold)
            if report.usage_statistics_available:
                report.unused = [
                    index for index in report.indexes
                    if not index.is_primary and not index.unique and index.usage.rows_examined == 0
                ]
            report.inefficient = self._find_inefficient(report)
            report.schema_changes = self._detect_changes(report.tables)

            if self.recommendations is not None:
                self.recommendations.set_existing_indexes(report.indexes)
            report.recommendations = self._collect_recommendations(report)

        report.duration_ms = (time.perf_counter() - start) * 1000
        self._previous_tables = report.tables
        self._last_report = report

        self.logger.info("Index analysis completed", duration_ms=round(report.duration_ms, 2), **report.summary())
        return report

    async def _read_tables(self) -> Dict[str, TableSnapshot]:
        try:
            table_rows = await self.catalog.list_tables()
            column_rows = await self.catalog.list_columns()
        except DatabaseError as e:
            raise SchemaIntrospectionError(
                "Unable to read schema catalog",
                code=ErrorCodes.SCHEMA_INTROSPECTION_FAILED,
                context={"kind": e.kind.value},
                cause=e,
            ) from e

        tables: Dict[str, TableSnapshot] = {}
        for row in table_rows:
            tables[row["table_name"]] = TableSnapshot(
                name=row["table_name"],
                rows=_as_int(row.get("table_rows")),
                data_length=_as_int(row.get("data_length")),
                index_length=_as_int(row.get("index_length")),
                auto_increment=row.get("auto_increment"),
                create_time=str(row["create_time"]) if row.get("create_time") else None,
                update_time=str(row["update_time"]) if row.get("update_time") else None,
            )

        for row in column_rows:
            table = tables.get(row["table_name"])
            if table is None:
                continue
            table.columns.append(ColumnDescriptor(
                table=row["table_name"],
                name=row["column_name"],
                data_type=row.get("data_type") or "",
                nullable=row.get("is_nullable") == "YES",
                key=row.get("column_key") or "",
                default=row.get("column_default"),
                extra=row.get("extra") or "",
            ))
        return tables

    async def _read_indexes(self, report: AnalysisReport) -> List[IndexDescriptor]:
        try:
            rows = await self.catalog.list_index_columns(include_usage=True)
        except DatabaseError as e:
            self.logger.warning(
                "Index usage statistics unavailable, continuing without them",
                error=str(e),
                code=ErrorCodes.USAGE_STATISTICS_UNAVAILABLE,
            )
            report.usage_statistics_available = False
            report.notes.append(
                "Index usage statistics unavailable; unused-index detection skipped "
                "and effectiveness scores have reduced confidence"
            )
            try:
                rows = await self.catalog.list_index_columns(include_usage=False)
            except DatabaseError as inner:
                raise SchemaIntrospectionError(
                    "Unable to read index statistics",
                    code=ErrorCodes.SCHEMA_INTROSPECTION_FAILED,
                    context={"kind": inner.kind.value},
                    cause=inner,
                ) from inner

        indexes: Dict[Tuple[str, str], IndexDescriptor] = {}
        for row in rows:
            key = (row["table_name"], row["index_name"])
            index = indexes.get(key)
            if index is None:
                index = IndexDescriptor(
                    table=row["table_name"],
                    name=row["index_name"],
                    unique=_as_int(row.get("non_unique")) == 0,
                    usage=IndexUsage(
                        rows_examined=_as_int(row.get("rows_examined")),
                        rows_read=_as_int(row.get("rows_read")),
                        available=report.usage_statistics_available,
                    ),
                    size_bytes=_as_int(row.get("index_length")),
                )
                indexes[key] = index
            cardinality = row.get("cardinality")
            index.columns.append(IndexColumn(
                name=row["column_name"],
                seq=_as_int(row.get("seq_in_index")),
                cardinality=_as_int(cardinality) if cardinality is not None else None,
            ))

        for index in indexes.values():
            index.columns.sort(key=lambda column: column.seq)
        return list(indexes.values())

    async def _read_performance_metrics(self, report: AnalysisReport) -> List[Dict[str, Any]]:
        try:
            return await self.catalog.statement_digests(self.config.top_statement_digests)
        except DatabaseError as e:
            self.logger.info("Statement digests unavailable", error=str(e))
            report.notes.append("Statement performance metrics unavailable")
            return []

    def _find_inefficient(self, report: AnalysisReport) -> List[InefficientIndex]:
        inefficient: List[InefficientIndex] = []
        for index in report.indexes:
            if index.is_primary or index.effectiveness >= self.config.inefficient_threshold:
                continue

            issues: List[str] = []
            if report.usage_statistics_available and index.usage.rows_examined == 0:
                issues.append("unused")
            if index.average_cardinality < LOW_CARDINALITY:
                issues.append("low_cardinality")
            if len(index.columns) > MAX_USEFUL_COLUMNS:
                issues.append("too_many_columns")
            if index.size_bytes > LARGE_INDEX_BYTES:
                issues.append("large_size")

            inefficient.append(InefficientIndex(
                table=index.table,
                index=index.name,
                effectiveness=index.effectiveness,
                issues=issues,
            ))
        return inefficient

    def _detect_changes(self, tables: Dict[str, TableSnapshot]) -> SchemaChanges:
        changes = SchemaChanges()
        previous = self._previous_tables
        if previous is None:
            return changes

        changes.new_tables = sorted(set(tables) - set(previous))
        changes.dropped_tables = sorted(set(previous) - set(tables))

        for name in sorted(set(tables) & set(previous)):
            old, new = previous[name], tables[name]
            old_columns, new_columns = set(old.column_names), set(new.column_names)
            if new_columns - old_columns:
                changes.added_columns[name] = sorted(new_columns - old_columns)
            if old_columns - new_columns:
                changes.removed_columns[name] = sorted(old_columns - new_columns)

            ratio = abs(new.rows - old.rows) / max(old.rows, 1)
            if ratio > self.config.drift_row_change_ratio:
                changes.row_changes[name] = RowCountChange(
                    old_rows=old.rows,
                    new_rows=new.rows,
                    change_ratio=round(ratio, 4),
                )

        if changes.has_changes:
            self.logger.info(
                "Schema drift detected",
                new_tables=changes.new_tables,
                dropped_tables=changes.dropped_tables,
                row_changes=len(changes.row_changes),
            )
        return changes

    def _collect_recommendations(self, report: AnalysisReport) -> List[Recommendation]:
        recommendations: List[Recommendation] = []
        if self.recommendations is not None:
            recommendations.extend(self.recommendations.generate_recommendations())

        for pair in report.duplicates:
            index = report.find_index(pair.table, pair.dropped)
            recommendations.append(self._drop_recommendation(
                pair.table, pair.dropped,
                columns=index.column_names if index else [],
                priority=Priority.HIGH,
                confidence=90.0,
                impact=ImpactLevel.MEDIUM,
                reason="duplicate",
                reasoning=f"Index {pair.dropped} duplicates {pair.kept} ({pair.similarity:.0%} column overlap)",
            ))

        for index in report.unused:
            recommendations.append(self._drop_recommendation(
                index.table, index.name,
                columns=index.column_names,
                priority=Priority.MEDIUM,
                confidence=80.0,
                impact=ImpactLevel.LOW,
                reason="unused",
                reasoning=f"Index {index.name} has not been used since statistics were collected",
            ))

        counts: Dict[str, int] = {}
        for index in report.indexes:
            counts[index.table] = counts.get(index.table, 0) + 1
        for table, count in sorted(counts.items()):
            if count > self.config.max_indexes_per_table:
                recommendations.append(Recommendation(
                    type=RecommendationType.DROP,
                    table=table,
                    columns=[],
                    index_name="",
                    priority=Priority.LOW,
                    confidence=50.0,
                    impact=ImpactLevel.LOW,
                    reasoning=(
                        f"Table {table} has {count} indexes, more than the budget of "
                        f"{self.config.max_indexes_per_table}; consider consolidating"
                    ),
                    reason="index_budget",
                    advisory=True,
                ))
        return recommendations

    def _drop_recommendation(
        self,
        table: str,
        index_name: str,
        *,
        columns: List[str],
        priority: Priority,
        confidence: float,
        impact: ImpactLevel,
        reason: str,
        reasoning: str,
    ) -> Recommendation:
        try:
            sql: Optional[str] = drop_index_sql(table, index_name)
        except ValidationError:
            sql = None
        return Recommendation(
            type=RecommendationType.DROP,
            table=table,
            columns=columns,
            index_name=index_name,
            priority=priority,
            confidence=confidence,
            impact=impact,
            reasoning=reasoning,
            sql=sql,
            reason=reason,
        )
