"""IndexPilot query path.

This package holds the SQL tokenizer and statement shapes, the result cache,
the rewrite layer, plan analysis and the engine that ties them together.

Example:
    >>> from indexpilot.query import OptimizationEngine, analyze_statement
    >>> analyze_statement("SELECT id FROM orders WHERE status = ?").main_table
    'orders'
"""

from .analyzer import (
    ExecutionPlan,
    PlanSummary,
    PlanWarning,
    PlanWarningKind,
    QueryAnalysis,
    QueryAnalyzer,
    summarize_plan,
)
from .cache import CacheEntry, CacheManager
from .optimizer import AppliedOptimization, OptimizationOutcome, QueryIssue, QueryOptimizer
from .sql import StatementShape, TokenizedStatement, analyze_statement, tokenize
from .engine import OptimizationEngine, QueryRunResult

__all__ = [
    # Statement parsing
    "StatementShape",
    "TokenizedStatement",
    "analyze_statement",
    "tokenize",

    # Cache
    "CacheEntry",
    "CacheManager",

    # Rewrites
    "AppliedOptimization",
    "OptimizationOutcome",
    "QueryIssue",
    "QueryOptimizer",

    # Plan analysis
    "ExecutionPlan",
    "PlanSummary",
    "PlanWarning",
    "PlanWarningKind",
    "QueryAnalysis",
    "QueryAnalyzer",
    "summarize_plan",

    # Engine
    "OptimizationEngine",
    "QueryRunResult",
]
