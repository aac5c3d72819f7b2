"""IndexPilot index control loop.

This package analyzes the managed schema, plans index DDL, executes it with
backups and verification, and learns from each cycle.

Example:
    >>> from indexpilot.optimization import AutoIndexOptimizer
    >>> optimizer = AutoIndexOptimizer(config.optimizer, catalog)
    >>> cycle = await optimizer.run_cycle()
    >>> cycle.awaiting_approval
    True
"""

from .auto_optimizer import AutoIndexOptimizer, CycleReport
from .executor import CancellationToken, CleanupReport, OptimizationExecutor
from .index_analyzer import IndexAnalyzer, calculate_effectiveness, find_duplicates
from .learning import LearningState, LearningSystem
from .models import (
    ActionResult,
    ActionStatus,
    ActionType,
    AnalysisReport,
    CyclePhase,
    ExecutionResult,
    IndexDescriptor,
    LearningRecord,
    OptimizationAction,
    OptimizationPlan,
    Priority,
    QueryPattern,
    Recommendation,
    RecommendationType,
    RiskAssessment,
    RiskLevel,
)
from .planner import OptimizationPlanner
from .recommendations import IndexRecommendations

__all__ = [
    # Components
    "AutoIndexOptimizer",
    "IndexAnalyzer",
    "IndexRecommendations",
    "LearningSystem",
    "OptimizationExecutor",
    "OptimizationPlanner",

    # Execution control
    "CancellationToken",
    "CleanupReport",
    "CycleReport",
    "LearningState",

    # Scoring
    "calculate_effectiveness",
    "find_duplicates",

    # Data model
    "ActionResult",
    "ActionStatus",
    "ActionType",
    "AnalysisReport",
    "CyclePhase",
    "ExecutionResult",
    "IndexDescriptor",
    "LearningRecord",
    "OptimizationAction",
    "OptimizationPlan",
    "Priority",
    "QueryPattern",
    "Recommendation",
    "RecommendationType",
    "RiskAssessment",
    "RiskLevel",
]
