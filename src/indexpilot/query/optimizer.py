"""Rule-based query rewriting.

``QueryOptimizer`` inspects a statement's shape, reports common performance
issues and applies a small set of safe token-level rewrites. Index hints are
optional and off by default.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..config.models import QueryOptimizerConfig
from ..core import ConfigurableComponent
from ..core.utils import StringUtils
from ..logging import get_logger, get_performance_logger
from .sql import (
    StatementShape,
    TokenKind,
    analyze_statement,
    append_limit,
    insert_index_hint,
    replace_count_star,
    tokenize,
)

IMPACT_WEIGHTS = {"high": 30, "medium": 15, "low": 5}
MAX_ESTIMATED_IMPROVEMENT = 80

ISSUE_RECOMMENDATIONS = {
    "SELECT_STAR": "Replace SELECT * with specific column names",
    "MISSING_LIMIT": "Add LIMIT clause to control result size",
    "OR_IN_WHERE": "Consider using IN() clause or UNION for better performance",
    "FUNCTION_IN_WHERE": "Move functions out of WHERE clause or use computed columns",
    "COMPLEX_JOINS": "Consider breaking into smaller queries or adding appropriate indexes",
}


@dataclass
class QueryIssue:
    type: str
    severity: str
    description: str
    recommendation: str


@dataclass
class AppliedOptimization:
    """A rewrite considered for a statement.

    ``applied`` is False for rules that were detected but deliberately left
    the statement unchanged.
    """

    type: str
    description: str
    impact: str = "medium"
    applied: bool = True


@dataclass
class ValidationReport:
    is_valid: bool = True
    warnings: List[str] = field(default_factory=list)
    changes: List[str] = field(default_factory=list)


@dataclass
class QueryProfile:
    """Structural summary of a statement."""

    type: str
    complexity: str
    tables: List[str]
    join_count: int
    where_columns: List[str]
    has_group_by: bool
    has_order_by: bool
    has_limit: bool
    parameter_count: int
    issues: List[QueryIssue] = field(default_factory=list)


@dataclass
class OptimizationOutcome:
    """Result of ``QueryOptimizer.optimize``."""

    success: bool
    original_sql: str
    optimized_sql: str
    original_params: List[Any]
    optimized_params: List[Any]
    profile: Optional[QueryProfile] = None
    optimizations_applied: List[AppliedOptimization] = field(default_factory=list)
    validation: ValidationReport = field(default_factory=ValidationReport)
    optimization_time_ms: float = 0.0
    estimated_improvement: float = 0.0
    error: Optional[str] = None

    @property
    def rewritten(self) -> bool:
        return self.optimized_sql != self.original_sql

    @property
    def issues(self) -> List[QueryIssue]:
        return self.profile.issues if self.profile else []

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["rewritten"] = self.rewritten
        return data


def classify_complexity(shape: StatementShape) -> str:
    if shape.join_count > 2 or len(shape.tables) > 3:
        return "high"
    if shape.join_count > 0 or shape.group_by:
        return "medium"
    return "low"


def estimate_improvement(optimizations: Sequence[AppliedOptimization]) -> float:
    """Rough percentage gain from the applied rewrites, capped at 80."""
    total = sum(IMPACT_WEIGHTS.get(opt.impact, 0) for opt in optimizations if opt.applied)
    return float(min(total, MAX_ESTIMATED_IMPROVEMENT))


def has_or_to_in_candidate(sql: str) -> bool:
    """Detect ``col = ? OR col = ?`` on the same column."""
    tokens = tokenize(sql).tokens
    for i in range(len(tokens) - 6):
        window = tokens[i:i + 7]
        if (
            window[0].kind is TokenKind.IDENTIFIER
            and window[1].value == "="
            and window[2].kind is TokenKind.PLACEHOLDER
            and window[3].is_keyword("OR")
            and window[4].kind is TokenKind.IDENTIFIER
            and window[4].value.lower() == window[0].value.lower()
            and window[5].value == "="
            and window[6].kind is TokenKind.PLACEHOLDER
        ):
            return True
    return False


class QueryOptimizer(ConfigurableComponent[QueryOptimizerConfig]):
    """Detects query issues and applies safe rewrites.

    Rewrites only touch SELECT statements. Each rewrite edits lexer tokens,
    so string literals and comments are never modified.

    Example:
        >>> optimizer = QueryOptimizer(QueryOptimizerConfig())
        >>> outcome = optimizer.optimize("SELECT COUNT(*) FROM orders")
        >>> outcome.optimized_sql
        'SELECT COUNT(1) FROM orders LIMIT 1000'
    """

    component_name = "QueryOptimizer"

    def __init__(self, config: QueryOptimizerConfig) -> None:
        super().__init__(config)
        self.logger = get_logger("query.optimizer")
        self.perf_logger = get_performance_logger("query.optimizer", auto_log=False)

        self._queries_optimized = 0
        self._successful_optimizations = 0
        self._total_optimization_time_ms = 0.0

    def profile(self, sql: str, params: Optional[Sequence[Any]] = None) -> QueryProfile:
        """Describe a statement and list its performance issues."""
        shape = analyze_statement(sql)
        profile = QueryProfile(
            type=shape.statement_type,
            complexity=classify_complexity(shape),
            tables=list(shape.tables),
            join_count=shape.join_count,
            where_columns=[f"{p.table}.{p.column}" for p in shape.predicates],
            has_group_by=bool(shape.group_by),
            has_order_by=bool(shape.order_by),
            has_limit=shape.has_limit,
            parameter_count=len(params or []),
        )
        profile.issues = self.detect_issues(shape)
        return profile

    def detect_issues(self, shape: StatementShape) -> List[QueryIssue]:
        issues: List[QueryIssue] = []

        def add(issue_type: str, severity: str, description: str) -> None:
            issues.append(QueryIssue(issue_type, severity, description, ISSUE_RECOMMENDATIONS[issue_type]))

        if shape.select_star:
            add("SELECT_STAR", "medium", "SELECT * should be avoided, specify explicit columns")
        if shape.is_select and shape.has_from and shape.has_where and not shape.has_limit:
            add("MISSING_LIMIT", "high", "Large result sets without LIMIT can cause performance issues")
        if shape.or_count >= 2:
            add("OR_IN_WHERE", "medium", "Multiple OR conditions can be slow, consider using IN() or UNION")
        if shape.function_in_where:
            add("FUNCTION_IN_WHERE", "high", "Functions in WHERE clause prevent index usage")
        if shape.join_count > self.config.max_join_count:
            add("COMPLEX_JOINS", "medium", "Query has many joins which may impact performance")
        return issues

    def optimize(self, sql: str, params: Optional[Sequence[Any]] = None) -> OptimizationOutcome:
        """Profile and rewrite a statement.

        Args:
            sql: Statement text
            params: Statement parameters

        Returns:
            OptimizationOutcome; failures are reported in ``error``
        """
        start = time.perf_counter()
        self._queries_optimized += 1
        original_params = list(params or [])

        try:
            with self.perf_logger.measure("query_optimization"):
                profile = self.profile(sql, original_params)
                optimized_sql, applied = self._apply_rewrites(sql)

                if self.config.enable_index_hints:
                    optimized_sql, hints = self._apply_index_hints(optimized_sql)
                    applied.extend(hints)

                validation = self.validate(sql, optimized_sql, original_params, original_params)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self._total_optimization_time_ms += elapsed_ms
            self.logger.exception("Query optimization failed", error=str(e))
            return OptimizationOutcome(
                success=False,
                original_sql=sql,
                optimized_sql=sql,
                original_params=original_params,
                optimized_params=original_params,
                optimization_time_ms=elapsed_ms,
                error=str(e),
            )

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._total_optimization_time_ms += elapsed_ms
        if any(opt.applied for opt in applied):
            self._successful_optimizations += 1

        outcome = OptimizationOutcome(
            success=True,
            original_sql=sql,
            optimized_sql=optimized_sql,
            original_params=original_params,
            optimized_params=list(original_params),
            profile=profile,
            optimizations_applied=applied,
            validation=validation,
            optimization_time_ms=elapsed_ms,
            estimated_improvement=estimate_improvement(applied),
        )

        if outcome.rewritten:
            self.logger.debug(
                "Query rewritten",
                optimizations=[opt.type for opt in applied if opt.applied],
                valid=validation.is_valid,
            )
        return outcome

    def _apply_rewrites(self, sql: str) -> Tuple[str, List[AppliedOptimization]]:
        applied: List[AppliedOptimization] = []
        shape = analyze_statement(sql)
        if not self.config.enable_query_rewriting or not shape.is_select or shape.statement_count != 1:
            return sql, applied

        optimized = sql
        if self.config.add_missing_limit and shape.has_from and not shape.has_limit:
            optimized = append_limit(optimized, self.config.default_limit)
            applied.append(AppliedOptimization(
                "ADD_MISSING_LIMIT",
                f"Added LIMIT {self.config.default_limit} to unbounded SELECT",
            ))

        if self.config.optimize_count_queries:
            rewritten, replaced = replace_count_star(optimized)
            if replaced:
                optimized = rewritten
                applied.append(AppliedOptimization("OPTIMIZE_COUNT_QUERY", "Rewrote COUNT(*) to COUNT(1)"))

        if has_or_to_in_candidate(optimized):
            # Folding the placeholders would change the parameter list
            applied.append(AppliedOptimization(
                "CONVERT_OR_TO_IN",
                "OR of equalities on one column could be expressed as IN()",
                impact="low",
                applied=False,
            ))

        return optimized, applied

    def _apply_index_hints(self, sql: str) -> Tuple[str, List[AppliedOptimization]]:
        shape = analyze_statement(sql)
        candidates: List[Tuple[str, str]] = [(p.table, p.column) for p in shape.predicates]
        candidates.extend((j.left_table, j.left_column) for j in shape.joins)

        per_table: Dict[str, List[str]] = {}
        seen = set()
        for table, column in candidates:
            if len(seen) >= self.config.max_index_hints:
                break
            index_name = StringUtils.build_index_name(table, [column])
            if index_name in seen:
                continue
            seen.add(index_name)
            per_table.setdefault(table, []).append(index_name)

        applied: List[AppliedOptimization] = []
        for table, index_names in per_table.items():
            hinted = insert_index_hint(sql, table, index_names)
            if hinted is None:
                continue
            sql = hinted
            applied.extend(
                AppliedOptimization("INDEX_HINT", f"Added index hint: {name}") for name in index_names
            )
        return sql, applied

    @staticmethod
    def validate(
        original_sql: str,
        optimized_sql: str,
        original_params: Sequence[Any],
        optimized_params: Sequence[Any],
    ) -> ValidationReport:
        """Check that a rewrite kept the statement's structure."""
        report = ValidationReport()
        before = analyze_statement(original_sql)
        after = analyze_statement(optimized_sql)

        if original_sql.upper() != optimized_sql.upper():
            report.changes.append("SQL structure modified")

        if len(original_params) != len(optimized_params) or before.placeholder_count != after.placeholder_count:
            report.changes.append("Parameter count changed")
            report.warnings.append("Parameter count differs - verify query logic")

        if after.is_select:
            structurally_sound = (
                after.select_count > 0
                and after.from_count > 0
                and after.select_count >= after.from_count
            )
            preserved = (
                before.select_count == after.select_count
                and before.from_count == after.from_count
            )
            if not (structurally_sound and preserved):
                report.is_valid = False
                report.warnings.append("Optimized SQL may have syntax errors")
            if after.limit_after_locking and not before.limit_after_locking:
                report.is_valid = False
                report.warnings.append("LIMIT placed after the locking clause")

        return report

    def get_stats(self) -> Dict[str, Any]:
        average = (
            self._total_optimization_time_ms / self._queries_optimized
            if self._queries_optimized else 0.0
        )
        return {
            "queries_optimized": self._queries_optimized,
            "successful_optimizations": self._successful_optimizations,
            "average_optimization_time_ms": round(average, 3),
            "config": self.config.to_dict(),
        }

    def reset_stats(self) -> None:
        self._queries_optimized = 0
        self._successful_optimizations = 0
        self._total_optimization_time_ms = 0.0
