"""Data model shared by the analysis, planning, execution and learning stages.

Every entity is a dataclass with a ``to_dict()`` used for reports, exports
and structured log fields.
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


def _dict_factory(items: Iterable) -> Dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in items}


class _Serializable:
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self, dict_factory=_dict_factory)


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank, 0 for the most urgent."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class PatternKind(str, Enum):
    WHERE = "where"
    JOIN = "join"
    ORDER_BY = "order_by"
    GROUP_BY = "group_by"
    COMPOSITE_WHERE = "composite_where"


class RecommendationType(str, Enum):
    CREATE = "create"
    DROP = "drop"
    COMPOSITE = "composite"


class ActionType(str, Enum):
    CREATE_INDEX = "create_index"
    DROP_INDEX = "drop_index"
    CREATE_COMPOSITE_INDEX = "create_composite_index"

    @property
    def creates(self) -> bool:
        return self is not ActionType.DROP_INDEX


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    @classmethod
    def highest(cls, levels: Iterable["RiskLevel"]) -> "RiskLevel":
        return max(levels, key=lambda level: level.rank, default=cls.LOW)


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class ImpactLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CyclePhase(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    EXECUTING = "executing"
    LEARNING = "learning"
    ERROR = "error"


class ActionStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


PRIMARY_INDEX = "PRIMARY"


@dataclass
class IndexColumn(_Serializable):
    name: str
    seq: int
    cardinality: Optional[int] = None


@dataclass
class IndexUsage(_Serializable):
    rows_examined: int = 0
    rows_read: int = 0
    available: bool = True


@dataclass
class IndexDescriptor(_Serializable):
    """An index as read from ``information_schema.STATISTICS``.

    Attributes:
        table: Owning table
        name: Index name
        columns: Columns ordered by position in the index
        unique: Whether the index enforces uniqueness
        usage: Usage counters, zero when unavailable
        size_bytes: Index size when the usage source reports it
        effectiveness: Score in ``[0, 100]`` assigned by the analyzer
    """

    table: str
    name: str
    columns: List[IndexColumn] = field(default_factory=list)
    unique: bool = False
    usage: IndexUsage = field(default_factory=IndexUsage)
    size_bytes: int = 0
    effectiveness: float = 0.0

    @property
    def is_primary(self) -> bool:
        return self.name == PRIMARY_INDEX

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    @property
    def is_composite(self) -> bool:
        return len(self.columns) > 1

    @property
    def average_cardinality(self) -> float:
        if not self.columns:
            return 0.0
        return sum(column.cardinality or 0 for column in self.columns) / len(self.columns)

    @property
    def qualified_name(self) -> str:
        return f"{self.table}.{self.name}"


@dataclass
class ColumnDescriptor(_Serializable):
    table: str
    name: str
    data_type: str
    nullable: bool = True
    key: str = ""
    default: Optional[str] = None
    extra: str = ""


@dataclass
class TableSnapshot(_Serializable):
    name: str
    rows: int = 0
    data_length: int = 0
    index_length: int = 0
    auto_increment: Optional[int] = None
    create_time: Optional[str] = None
    update_time: Optional[str] = None
    columns: List[ColumnDescriptor] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]


@dataclass
class RowCountChange(_Serializable):
    old_rows: int
    new_rows: int
    change_ratio: float


@dataclass
class SchemaChanges(_Serializable):
    """Drift between two consecutive schema snapshots."""

    new_tables: List[str] = field(default_factory=list)
    dropped_tables: List[str] = field(default_factory=list)
    added_columns: Dict[str, List[str]] = field(default_factory=dict)
    removed_columns: Dict[str, List[str]] = field(default_factory=dict)
    row_changes: Dict[str, RowCountChange] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(
            self.new_tables or self.dropped_tables or self.added_columns
            or self.removed_columns or self.row_changes
        )


@dataclass
class QueryPattern(_Serializable):
    """An aggregated, table-resolved access pattern.

    The average execution time covers timed observations only. The full scan
    and filesort flags are sticky once set.
    """

    key: str
    kind: PatternKind
    table: str
    columns: List[str]
    priority: Priority = Priority.MEDIUM
    selectivity: float = 0.5
    operator: Optional[str] = None
    joined_table: Optional[str] = None
    joined_column: Optional[str] = None
    frequency: int = 0
    timed_observations: int = 0
    total_execution_time_ms: float = 0.0
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    full_scan: bool = False
    filesort: bool = False

    @property
    def avg_execution_time_ms(self) -> float:
        if not self.timed_observations:
            return 0.0
        return self.total_execution_time_ms / self.timed_observations

    def record(self, execution_time_ms: Optional[float], now: float) -> None:
        self.frequency += 1
        self.last_seen = now
        if execution_time_ms is not None:
            self.timed_observations += 1
            self.total_execution_time_ms += execution_time_ms

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["avg_execution_time_ms"] = round(self.avg_execution_time_ms, 3)
        return data


@dataclass
class Recommendation(_Serializable):
    """A suggested index change.

    Attributes:
        type: create, drop or composite
        table: Target table
        columns: Index columns in order
        index_name: Name of the index to create or drop
        priority: Urgency
        confidence: Score in ``[0, 100]``
        impact: Expected benefit level
        reasoning: Human-readable justification
        sql: DDL that implements the recommendation
        reason: Short machine reason (duplicate, unused, index_budget ...)
        pattern_key: Key of the pattern behind a create recommendation
        advisory: True when the recommendation is informational only
    """

    type: RecommendationType
    table: str
    columns: List[str]
    index_name: str
    priority: Priority
    confidence: float
    impact: ImpactLevel
    reasoning: str
    sql: Optional[str] = None
    reason: Optional[str] = None
    pattern_key: Optional[str] = None
    advisory: bool = False
    unique: bool = False


@dataclass
class DuplicatePair(_Serializable):
    table: str
    kept: str
    dropped: str
    similarity: float


@dataclass
class InefficientIndex(_Serializable):
    table: str
    index: str
    effectiveness: float
    issues: List[str] = field(default_factory=list)


@dataclass
class AnalysisReport(_Serializable):
    """Output of one ``IndexAnalyzer.analyze()`` pass."""

    generated_at: float = field(default_factory=time.time)
    tables: Dict[str, TableSnapshot] = field(default_factory=dict)
    indexes: List[IndexDescriptor] = field(default_factory=list)
    duplicates: List[DuplicatePair] = field(default_factory=list)
    unused: List[IndexDescriptor] = field(default_factory=list)
    inefficient: List[InefficientIndex] = field(default_factory=list)
    performance_metrics: List[Dict[str, Any]] = field(default_factory=list)
    schema_changes: SchemaChanges = field(default_factory=SchemaChanges)
    recommendations: List[Recommendation] = field(default_factory=list)
    usage_statistics_available: bool = True
    notes: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    def indexes_for(self, table: str) -> List[IndexDescriptor]:
        return [index for index in self.indexes if index.table == table]

    def find_index(self, table: str, name: str) -> Optional[IndexDescriptor]:
        return next((i for i in self.indexes if i.table == table and i.name == name), None)

    def summary(self) -> Dict[str, Any]:
        scored = [index.effectiveness for index in self.indexes]
        return {
            "tables": len(self.tables),
            "indexes": len(self.indexes),
            "duplicates": len(self.duplicates),
            "unused": len(self.unused),
            "inefficient": len(self.inefficient),
            "average_effectiveness": round(sum(scored) / len(scored), 2) if scored else 0.0,
            "total_index_size_bytes": sum(index.size_bytes for index in self.indexes),
            "recommendations": len(self.recommendations),
            "usage_statistics_available": self.usage_statistics_available,
        }


@dataclass
class OptimizationAction(_Serializable):
    """One DDL step of a plan."""

    id: str
    type: ActionType
    table: str
    index_name: str
    sql: str
    priority: Priority
    reason: str
    impact: float = 0.0
    columns: List[str] = field(default_factory=list)
    replaces: List[str] = field(default_factory=list)
    confidence: Optional[float] = None
    unique: bool = False


@dataclass
class RiskAssessment(_Serializable):
    level: RiskLevel = RiskLevel.LOW
    factors: List[str] = field(default_factory=list)
    mitigations: List[str] = field(default_factory=list)


@dataclass
class OptimizationPlan(_Serializable):
    """Ordered DDL actions with a risk assessment."""

    id: str
    created_at: float
    actions: List[OptimizationAction] = field(default_factory=list)
    priority: Priority = Priority.LOW
    risk: RiskAssessment = field(default_factory=RiskAssessment)
    estimated_duration_seconds: float = 0.0
    total_impact: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def actions_of(self, action_type: ActionType) -> List[OptimizationAction]:
        return [action for action in self.actions if action.type is action_type]

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "total_actions": len(self.actions),
            "creates": len(self.actions_of(ActionType.CREATE_INDEX)),
            "drops": len(self.actions_of(ActionType.DROP_INDEX)),
            "composites": len(self.actions_of(ActionType.CREATE_COMPOSITE_INDEX)),
            "priority": self.priority.value,
            "risk_level": self.risk.level.value,
            "total_impact": round(self.total_impact, 2),
            "estimated_duration_seconds": self.estimated_duration_seconds,
        }


@dataclass
class ActionResult(_Serializable):
    action_id: str
    action_type: ActionType
    table: str
    index_name: str
    status: ActionStatus
    sql: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: float = 0.0
    backup_definition: Optional[str] = None
    dropped_replacements: List[str] = field(default_factory=list)
    failed_replacements: List[str] = field(default_factory=list)


@dataclass
class ExecutionResult(_Serializable):
    """Outcome of executing a plan."""

    plan_id: str
    started_at: float
    completed_at: Optional[float] = None
    results: List[ActionResult] = field(default_factory=list)
    cancelled: bool = False
    deadline_exceeded: bool = False

    def _count(self, status: ActionStatus) -> int:
        return sum(1 for result in self.results if result.status is status)

    @property
    def successful(self) -> int:
        return self._count(ActionStatus.SUCCESS)

    @property
    def skipped(self) -> int:
        return self._count(ActionStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(ActionStatus.FAILED)

    @property
    def cancelled_actions(self) -> int:
        return self._count(ActionStatus.CANCELLED)

    @property
    def indexes_created(self) -> List[str]:
        return [
            f"{r.table}.{r.index_name}" for r in self.results
            if r.status is ActionStatus.SUCCESS and r.action_type.creates
        ]

    @property
    def indexes_dropped(self) -> List[str]:
        dropped = [
            f"{r.table}.{r.index_name}" for r in self.results
            if r.status is ActionStatus.SUCCESS and r.action_type is ActionType.DROP_INDEX
        ]
        for r in self.results:
            dropped.extend(f"{r.table}.{name}" for name in r.dropped_replacements)
        return dropped

    @property
    def duration_ms(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at) * 1000

    @property
    def performance_improvement(self) -> float:
        score = (
            self.successful * 5
            + len(self.indexes_created) * 10
            + len(self.indexes_dropped) * 3
            - self.failed * 2
        )
        return float(max(0, score))

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            successful=self.successful,
            skipped=self.skipped,
            failed=self.failed,
            cancelled_actions=self.cancelled_actions,
            indexes_created=self.indexes_created,
            indexes_dropped=self.indexes_dropped,
            duration_ms=round(self.duration_ms, 3),
            performance_improvement=self.performance_improvement,
        )
        return data


@dataclass
class LearningRecord(_Serializable):
    """Summary of one optimization cycle kept by the learning system."""

    timestamp: float
    plan_id: Optional[str] = None
    tables_analyzed: int = 0
    indexes_analyzed: int = 0
    actions_planned: int = 0
    actions_succeeded: int = 0
    actions_skipped: int = 0
    actions_failed: int = 0
    indexes_created: int = 0
    indexes_dropped: int = 0
    improvement: float = 0.0
    duration_ms: float = 0.0
    executed: bool = False

    @property
    def actions_attempted(self) -> int:
        return self.actions_succeeded + self.actions_skipped + self.actions_failed
