"""Cycle history, baselines and derived insights.

All mutable state lives in a ``LearningState`` owned by the ``LearningSystem``
that receives it. Nothing is global, so two optimizers never share history.
"""

import statistics
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ..config.models import IndexOptimizerConfig
from ..core import ConfigurableComponent
from ..core.exceptions import ValidationError
from ..logging import get_logger
from .models import (
    ActionStatus,
    AnalysisReport,
    ExecutionResult,
    LearningRecord,
    OptimizationPlan,
    QueryPattern,
)

STATE_FORMAT_VERSION = 1
RECENT_CYCLES = 10
MAX_PATTERN_SUMMARIES = 1000

LOW_SUCCESS_RATE = 70.0
HOT_SPOT_MIN_CYCLES = 3
LOW_EFFECTIVENESS = 30.0
LOW_EFFECTIVENESS_COUNT = 5
SLOW_PATTERN_COUNT = 10


@dataclass
class TableBaseline:
    timestamp: float
    rows: int
    data_length: int
    index_length: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "rows": self.rows,
            "data_length": self.data_length,
            "index_length": self.index_length,
        }


@dataclass
class LearningState:
    """Everything the learning system remembers between cycles.

    Attributes:
        history: Most recent cycle records
        baselines: Per-table size samples
        effectiveness: Per-index ``(timestamp, score)`` series keyed ``table.index``
        action_outcomes: Counts per action type and status
        pattern_summaries: Per-pattern count and average time
    """

    history: Deque[LearningRecord]
    baselines: Dict[str, Deque[TableBaseline]] = field(default_factory=dict)
    effectiveness: Dict[str, Deque[Tuple[float, float]]] = field(default_factory=dict)
    action_outcomes: Dict[str, Dict[str, int]] = field(default_factory=dict)
    pattern_summaries: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    baseline_limit: int = 100

    @classmethod
    def create(cls, history_limit: int, baseline_limit: int) -> "LearningState":
        return cls(history=deque(maxlen=history_limit), baseline_limit=baseline_limit)

    def series(self, mapping: Dict[str, Deque[Any]], key: str) -> Deque[Any]:
        if key not in mapping:
            mapping[key] = deque(maxlen=self.baseline_limit)
        return mapping[key]


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return statistics.fmean(values) if values else 0.0


def _direction(older: List[float], recent: List[float]) -> str:
    if not older or not recent:
        return "stable"
    delta = _mean(recent) - _mean(older)
    if delta > 0:
        return "increasing"
    if delta < 0:
        return "decreasing"
    return "stable"


class LearningSystem(ConfigurableComponent[IndexOptimizerConfig]):
    """Learns from optimization cycles.

    Example:
        >>> learning = LearningSystem(IndexOptimizerConfig())
        >>> learning.record_cycle(report, plan, result)
        >>> learning.get_trends()["success_rate"]
        100.0
    """

    component_name = "LearningSystem"

    def __init__(
        self,
        config: IndexOptimizerConfig,
        state: Optional[LearningState] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(config)
        self.logger = get_logger("optimization.learning")
        self._clock = clock
        self.state = state if state is not None else self._new_state()

    def _new_state(self) -> LearningState:
        return LearningState.create(self.config.history_limit, self.config.baseline_limit)

    def record_cycle(
        self,
        report: AnalysisReport,
        plan: Optional[OptimizationPlan] = None,
        result: Optional[ExecutionResult] = None,
        *,
        duration_ms: float = 0.0,
    ) -> LearningRecord:
        """Fold one cycle into the learning state.

        Args:
            report: The cycle's analysis report
            plan: The plan built from the report, if any
            result: The execution result, None when the plan was not executed
            duration_ms: Wall time of the whole cycle

        Returns:
            The appended LearningRecord
        """
        now = self._clock()
        record = LearningRecord(
            timestamp=now,
            plan_id=plan.id if plan else None,
            tables_analyzed=len(report.tables),
            indexes_analyzed=len(report.indexes),
            actions_planned=len(plan.actions) if plan else 0,
            duration_ms=duration_ms,
        )
        if result is not None:
            record.executed = True
            record.actions_succeeded = result.successful
            record.actions_skipped = result.skipped
            record.actions_failed = result.failed
            record.indexes_created = len(result.indexes_created)
            record.indexes_dropped = len(result.indexes_dropped)
            record.improvement = result.performance_improvement
            self._record_outcomes(result)

        self.state.history.append(record)
        self._record_baselines(report, now)
        self._record_effectiveness(report, result, now)
        self._record_digests(report.performance_metrics, now)

        self.logger.info(
            "Cycle recorded",
            plan_id=record.plan_id,
            executed=record.executed,
            succeeded=record.actions_succeeded,
            failed=record.actions_failed,
            improvement=record.improvement,
            history=len(self.state.history),
        )
        return record

    def _record_outcomes(self, result: ExecutionResult) -> None:
        for action in result.results:
            counts = self.state.action_outcomes.setdefault(
                action.action_type.value, {status.value: 0 for status in ActionStatus}
            )
            counts[action.status.value] = counts.get(action.status.value, 0) + 1

    def _record_baselines(self, report: AnalysisReport, now: float) -> None:
        for name, table in report.tables.items():
            self.state.series(self.state.baselines, name).append(
                TableBaseline(now, table.rows, table.data_length, table.index_length)
            )
        for name in report.schema_changes.dropped_tables:
            self.state.baselines.pop(name, None)

    def _record_effectiveness(
        self,
        report: AnalysisReport,
        result: Optional[ExecutionResult],
        now: float,
    ) -> None:
        if report.usage_statistics_available:
            for index in report.indexes:
                self.state.series(self.state.effectiveness, index.qualified_name).append(
                    (now, index.effectiveness)
                )
        if result is not None:
            for name in result.indexes_dropped:
                self.state.effectiveness.pop(name, None)

    def _record_digests(self, metrics: List[Dict[str, Any]], now: float) -> None:
        for row in metrics:
            digest = row.get("digest_text")
            if not digest:
                continue
            self._store_pattern(
                str(digest),
                count=int(row.get("query_count") or 0),
                avg_time_ms=float(row.get("avg_time_ms") or 0.0),
                now=now,
            )

    def record_patterns(self, patterns: Iterable[QueryPattern]) -> None:
        """Merge pattern tracker aggregates into the pattern summaries."""
        now = self._clock()
        for pattern in patterns:
            self._store_pattern(
                pattern.key,
                count=pattern.frequency,
                avg_time_ms=pattern.avg_execution_time_ms,
                now=now,
            )

    def _store_pattern(self, key: str, *, count: int, avg_time_ms: float, now: float) -> None:
        summaries = self.state.pattern_summaries
        if key not in summaries and len(summaries) >= MAX_PATTERN_SUMMARIES:
            stalest = min(summaries, key=lambda k: summaries[k]["last_seen"])
            del summaries[stalest]
        summaries[key] = {"count": count, "avg_time_ms": avg_time_ms, "last_seen": now}

    def _recent(self) -> List[LearningRecord]:
        return list(self.state.history)[-RECENT_CYCLES:]

    def _intervals_hours(self) -> List[float]:
        stamps = [record.timestamp for record in self.state.history]
        return [(later - earlier) / 3600 for earlier, later in zip(stamps, stamps[1:])]

    def success_rate(self) -> Optional[float]:
        """Percent of recent attempted actions that did not fail."""
        attempted = sum(record.actions_attempted for record in self._recent())
        if not attempted:
            return None
        failed = sum(record.actions_failed for record in self._recent())
        return (attempted - failed) / attempted * 100

    def get_trends(self) -> Dict[str, Any]:
        """Trends over the retained history.

        Returns:
            Dictionary with optimization frequency, success rate, average
            improvement, index creation trend and per-table growth
        """
        recent = self._recent()
        created = [float(record.indexes_created) for record in recent if record.executed]
        half = len(created) // 2

        table_growth: Dict[str, float] = {}
        for name, samples in self.state.baselines.items():
            if len(samples) < 2 or samples[0].rows <= 0:
                continue
            table_growth[name] = round((samples[-1].rows - samples[0].rows) / samples[0].rows * 100, 2)

        intervals = self._intervals_hours()
        return {
            "cycles": len(self.state.history),
            "optimization_frequency_hours": round(_mean(intervals), 4) if intervals else None,
            "success_rate": self.success_rate(),
            "average_improvement": _mean(record.improvement for record in recent),
            "index_creation_trend": _direction(created[:half], created[half:]),
            "indexes_created_recent": [int(count) for count in created],
            "table_growth": table_growth,
        }

    def get_insights(self) -> List[Dict[str, Any]]:
        """Actionable observations derived from the learning state."""
        insights: List[Dict[str, Any]] = []

        rate = self.success_rate()
        if rate is not None and rate < LOW_SUCCESS_RATE:
            insights.append({
                "type": "warning",
                "category": "success_rate",
                "message": f"Optimization success rate is {rate:.1f}%; review the optimization strategy",
                "value": round(rate, 2),
            })

        intervals = self._intervals_hours()
        if len(self.state.history) >= HOT_SPOT_MIN_CYCLES and intervals:
            mean_interval = _mean(intervals)
            if mean_interval < self.config.hot_spot_interval_hours:
                insights.append({
                    "type": "warning",
                    "category": "hot_spot",
                    "message": (
                        f"Optimization runs every {mean_interval:.2f}h on average; "
                        "the workload may have a persistent hot spot"
                    ),
                    "value": round(mean_interval, 4),
                })

        weak = sorted(
            name for name, series in self.state.effectiveness.items()
            if series and series[-1][1] < LOW_EFFECTIVENESS
        )
        if len(weak) > LOW_EFFECTIVENESS_COUNT:
            insights.append({
                "type": "recommendation",
                "category": "index_effectiveness",
                "message": f"{len(weak)} indexes score below {LOW_EFFECTIVENESS:.0f} effectiveness; review them",
                "indexes": weak,
            })

        slow = sorted(
            key for key, summary in self.state.pattern_summaries.items()
            if summary["avg_time_ms"] > self.config.performance_threshold_ms
        )
        if len(slow) > SLOW_PATTERN_COUNT:
            insights.append({
                "type": "recommendation",
                "category": "slow_patterns",
                "message": (
                    f"{len(slow)} query patterns average over "
                    f"{self.config.performance_threshold_ms:.0f}ms; investigate them"
                ),
                "patterns": slow[:SLOW_PATTERN_COUNT],
            })

        return insights

    def export_state(self) -> Dict[str, Any]:
        """JSON-serializable copy of the learning state."""
        return {
            "version": STATE_FORMAT_VERSION,
            "history": [record.to_dict() for record in self.state.history],
            "baselines": {
                name: [sample.to_dict() for sample in samples]
                for name, samples in self.state.baselines.items()
            },
            "effectiveness": {
                name: [list(point) for point in series]
                for name, series in self.state.effectiveness.items()
            },
            "action_outcomes": {kind: dict(counts) for kind, counts in self.state.action_outcomes.items()},
            "pattern_summaries": {key: dict(summary) for key, summary in self.state.pattern_summaries.items()},
        }

    def import_state(self, data: Dict[str, Any]) -> None:
        """Replace the learning state with an exported copy.

        Raises:
            ValidationError: If the data is not an exported state
        """
        if data.get("version") != STATE_FORMAT_VERSION:
            raise ValidationError(
                f"Unsupported learning state version: {data.get('version')!r}",
                code="LEARNING_STATE_INVALID",
            )

        state = self._new_state()
        try:
            for item in data.get("history", []):
                state.history.append(LearningRecord(**item))
            for name, samples in data.get("baselines", {}).items():
                series = state.series(state.baselines, name)
                series.extend(TableBaseline(**sample) for sample in samples)
            for name, points in data.get("effectiveness", {}).items():
                series = state.series(state.effectiveness, name)
                series.extend((float(ts), float(score)) for ts, score in points)
            state.action_outcomes = {
                kind: {status: int(count) for status, count in counts.items()}
                for kind, counts in data.get("action_outcomes", {}).items()
            }
            state.pattern_summaries = {
                key: dict(summary) for key, summary in data.get("pattern_summaries", {}).items()
            }
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Malformed learning state: {e}",
                code="LEARNING_STATE_INVALID",
                cause=e,
            ) from e

        self.state = state
        self.logger.info("Learning state imported", cycles=len(state.history))

    def reset(self) -> None:
        self.state = self._new_state()
        self.logger.info("Learning state reset")

    def _on_config_updated(self) -> None:
        self.import_state(self.export_state())

    def get_summary(self) -> Dict[str, Any]:
        last = self.state.history[-1] if self.state.history else None
        return {
            "total_cycles": len(self.state.history),
            "executed_cycles": sum(1 for record in self.state.history if record.executed),
            "tables_tracked": len(self.state.baselines),
            "indexes_tracked": len(self.state.effectiveness),
            "patterns_tracked": len(self.state.pattern_summaries),
            "action_outcomes": {kind: dict(counts) for kind, counts in self.state.action_outcomes.items()},
            "last_cycle": last.to_dict() if last else None,
            "trends": self.get_trends(),
            "insights": len(self.get_insights()),
        }

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics.update({
            "total_cycles": len(self.state.history),
            "success_rate": self.success_rate(),
        })
        return metrics
