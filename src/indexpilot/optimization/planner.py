"""Turns an analysis report into an ordered, risk-assessed DDL plan."""

import time
import uuid
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..config.models import IndexOptimizerConfig
from ..core import ConfigurableComponent
from ..core.exceptions import ValidationError
from ..core.utils import StringUtils, clamp
from ..logging import get_logger
from .ddl import create_index_sql, drop_index_sql
from .models import (
    ActionType,
    AnalysisReport,
    IndexDescriptor,
    OptimizationAction,
    OptimizationPlan,
    Priority,
    RecommendationType,
    RiskAssessment,
    RiskLevel,
)

MAX_COMPOSITE_COLUMNS = 3
CREATE_WARNING_COUNT = 5
DROP_WARNING_COUNT = 3

# Seconds per action, plus a per-row allowance for index builds
BASE_CREATE_SECONDS = 5.0
ROWS_PER_SECOND = 50000
BASE_DROP_SECONDS = 2.0

HIGH_RISK_MITIGATIONS = [
    "Execute operations during low-traffic periods",
    "Create backup before executing plan",
    "Monitor system performance during execution",
]
MEDIUM_RISK_MITIGATIONS = [
    "Test plan on staging environment first",
    "Execute in smaller batches",
]
STANDARD_MITIGATIONS = [
    "Verify application compatibility",
    "Have rollback plan ready",
]


def estimate_action_impact(action: OptimizationAction) -> float:
    """Expected benefit of one action in ``[0, 100]``."""
    if action.type is ActionType.CREATE_INDEX:
        impact = 20.0
        if action.priority is Priority.HIGH:
            impact += 30
        elif action.priority is Priority.MEDIUM:
            impact += 15
        if action.unique:
            impact += 10
        if len(action.columns) > 1:
            impact += 15
    elif action.type is ActionType.DROP_INDEX:
        impact = 5.0
        if action.reason == "duplicate":
            impact += 10
        elif action.reason == "unused":
            impact += 5
    else:
        impact = 25.0 + 5 * len(action.replaces)
    return clamp(impact, 0.0, 100.0)


class OptimizationPlanner(ConfigurableComponent[IndexOptimizerConfig]):
    """Builds ``OptimizationPlan``s.

    Plans hold create actions for confident recommendations, drop actions for
    duplicate and unused indexes, and composite actions that merge heavily
    used single-column indexes. PRIMARY is never dropped and no index is
    dropped twice. A UNIQUE index is never dropped for lack of reads.
    """

    component_name = "OptimizationPlanner"

    def __init__(self, config: IndexOptimizerConfig, *, clock: Callable[[], float] = time.time) -> None:
        super().__init__(config)
        self.logger = get_logger("optimization.planner")
        self._clock = clock

    def create_plan(self, report: AnalysisReport) -> OptimizationPlan:
        """Plan DDL for an analysis report.

        Args:
            report: Output of ``IndexAnalyzer.analyze()``

        Returns:
            OptimizationPlan with actions ordered by priority
        """
        index_counts: Dict[str, int] = {}
        for index in report.indexes:
            index_counts[index.table] = index_counts.get(index.table, 0) + 1

        actions: List[OptimizationAction] = []
        actions.extend(self._plan_creates(report, index_counts))
        drops = self._plan_drops(report)
        actions.extend(drops)
        actions.extend(self._plan_composites(report, {(a.table, a.index_name) for a in drops}))

        for action in actions:
            action.impact = estimate_action_impact(action)

        actions.sort(key=lambda a: a.priority.rank)
        for n, action in enumerate(actions, start=1):
            action.id = f"action_{n}_{action.type.value}_{action.table}"

        total_impact = clamp(sum(a.impact for a in actions), 0.0, 100.0)
        plan = OptimizationPlan(
            id=f"plan_{uuid.uuid4().hex[:12]}",
            created_at=self._clock(),
            actions=actions,
            priority=self._plan_priority(actions, total_impact),
            risk=self.assess_risk(actions, report),
            estimated_duration_seconds=self._estimate_duration(actions, report),
            total_impact=total_impact,
        )

        self.logger.info("Optimization plan created", **plan.summary())
        return plan

    def _plan_creates(self, report: AnalysisReport, index_counts: Dict[str, int]) -> List[OptimizationAction]:
        actions: List[OptimizationAction] = []
        planned: Set[Tuple[str, str]] = set()
        for recommendation in report.recommendations:
            if recommendation.type not in (RecommendationType.CREATE, RecommendationType.COMPOSITE):
                continue
            if recommendation.advisory or not recommendation.sql:
                continue
            if recommendation.confidence < self.config.confidence_threshold:
                continue
            key = (recommendation.table, recommendation.index_name)
            if key in planned:
                continue
            if index_counts.get(recommendation.table, 0) >= self.config.max_indexes_per_table:
                self.logger.info(
                    "Create skipped, table at index budget",
                    table=recommendation.table,
                    index=recommendation.index_name,
                )
                continue

            planned.add(key)
            index_counts[recommendation.table] = index_counts.get(recommendation.table, 0) + 1
            actions.append(OptimizationAction(
                id="",
                type=ActionType.CREATE_INDEX,
                table=recommendation.table,
                index_name=recommendation.index_name,
                sql=recommendation.sql,
                priority=recommendation.priority,
                reason=recommendation.reason or "recommendation",
                columns=list(recommendation.columns),
                confidence=recommendation.confidence,
                unique=recommendation.unique,
            ))
        return actions

    def _plan_drops(self, report: AnalysisReport) -> List[OptimizationAction]:
        actions: List[OptimizationAction] = []
        scheduled: Set[Tuple[str, str]] = set()

        def add(index: Optional[IndexDescriptor], priority: Priority, reason: str) -> None:
            if index is None or index.is_primary:
                return
            key = (index.table, index.name)
            if key in scheduled:
                return
            try:
                sql = drop_index_sql(index.table, index.name)
            except ValidationError as e:
                self.logger.warning("Drop skipped, unsafe identifier", index=index.qualified_name, error=str(e))
                return
            scheduled.add(key)
            actions.append(OptimizationAction(
                id="",
                type=ActionType.DROP_INDEX,
                table=index.table,
                index_name=index.name,
                sql=sql,
                priority=priority,
                reason=reason,
                columns=index.column_names,
            ))

        for pair in report.duplicates:
            add(report.find_index(pair.table, pair.dropped), Priority.HIGH, "duplicate")
        for index in report.unused:
            # Zero reads do not make a UNIQUE constraint redundant
            if not index.unique:
                add(index, Priority.MEDIUM, "unused")
        return actions

    def _plan_composites(
        self,
        report: AnalysisReport,
        dropping: Set[Tuple[str, str]],
    ) -> List[OptimizationAction]:
        by_table: Dict[str, List[IndexDescriptor]] = {}
        for index in report.indexes:
            if (
                index.is_primary
                or index.unique
                or len(index.columns) != 1
                or index.usage.rows_examined <= self.config.min_usage_threshold
                or (index.table, index.name) in dropping
            ):
                continue
            by_table.setdefault(index.table, []).append(index)

        actions: List[OptimizationAction] = []
        for table in sorted(by_table):
            candidates = sorted(by_table[table], key=lambda i: (-i.usage.rows_examined, i.name))
            if len(candidates) < 2:
                continue

            merged = candidates[:MAX_COMPOSITE_COLUMNS]
            columns = [index.columns[0].name for index in merged]
            if self._is_covered(report, table, columns):
                continue

            index_name = StringUtils.build_index_name(table, columns, infix="composite")
            try:
                sql = create_index_sql(table, index_name, columns)
            except ValidationError as e:
                self.logger.warning("Composite skipped, unsafe identifier", table=table, error=str(e))
                continue

            actions.append(OptimizationAction(
                id="",
                type=ActionType.CREATE_COMPOSITE_INDEX,
                table=table,
                index_name=index_name,
                sql=sql,
                priority=Priority.MEDIUM,
                reason="consolidate",
                columns=columns,
                replaces=[index.name for index in merged],
            ))
        return actions

    @staticmethod
    def _is_covered(report: AnalysisReport, table: str, columns: List[str]) -> bool:
        return any(
            index.column_names[:len(columns)] == columns
            for index in report.indexes_for(table)
        )

    @staticmethod
    def _plan_priority(actions: List[OptimizationAction], total_impact: float) -> Priority:
        if any(action.priority is Priority.HIGH for action in actions):
            return Priority.HIGH
        if len(actions) > 3 or total_impact > 50:
            return Priority.MEDIUM
        return Priority.LOW

    def _is_large_table(self, table: str, report: AnalysisReport) -> bool:
        if table in self.config.large_tables:
            return True
        snapshot = report.tables.get(table)
        return snapshot is not None and snapshot.rows > self.config.large_table_row_threshold

    def assess_risk(self, actions: List[OptimizationAction], report: AnalysisReport) -> RiskAssessment:
        """Score the risk of executing a set of actions."""
        factors: List[Tuple[RiskLevel, str]] = []

        creates = [a for a in actions if a.type.creates]
        drops = [a for a in actions if a.type is ActionType.DROP_INDEX]
        if len(creates) > CREATE_WARNING_COUNT:
            factors.append((
                RiskLevel.MEDIUM,
                f"{len(creates)} index builds increase write amplification",
            ))
        if len(drops) > DROP_WARNING_COUNT:
            factors.append((
                RiskLevel.LOW,
                f"{len(drops)} index drops; verify no application dependencies before dropping",
            ))

        large_tables = sorted({a.table for a in actions if self._is_large_table(a.table, report)})
        for table in large_tables:
            factors.append((RiskLevel.HIGH, f"DDL on large table {table} may impact performance"))

        if len(actions) > self.config.max_batch_size:
            factors.append((
                RiskLevel.HIGH,
                f"{len(actions)} operations exceed the batch size of {self.config.max_batch_size}",
            ))

        levels = [level for level, _ in factors]
        mitigations: List[str] = []
        if RiskLevel.HIGH in levels:
            mitigations.extend(HIGH_RISK_MITIGATIONS)
        if RiskLevel.MEDIUM in levels:
            mitigations.extend(MEDIUM_RISK_MITIGATIONS)
        mitigations.extend(STANDARD_MITIGATIONS)

        return RiskAssessment(
            level=RiskLevel.highest(levels),
            factors=[description for _, description in factors],
            mitigations=mitigations,
        )

    def _estimate_duration(self, actions: List[OptimizationAction], report: AnalysisReport) -> float:
        seconds = 0.0
        for action in actions:
            if action.type is ActionType.DROP_INDEX:
                seconds += BASE_DROP_SECONDS
                continue
            snapshot = report.tables.get(action.table)
            rows = snapshot.rows if snapshot else 0
            seconds += BASE_CREATE_SECONDS + rows / ROWS_PER_SECOND
            seconds += BASE_DROP_SECONDS * len(action.replaces)

        batches = -(-len(actions) // self.config.max_batch_size) if actions else 0
        seconds += max(0, batches - 1) * self.config.batch_pause_seconds
        return round(seconds, 2)
