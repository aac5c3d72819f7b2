"""Database result models for IndexPilot."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class QueryResult:
    """Result of one statement executed through the execution primitive.

    Attributes:
        rows: Result rows as column-name keyed dictionaries
        row_count: Rows returned, or rows affected for statements without a result set
        columns: Column names of the result set
        execution_time: Wall time in seconds
        warnings: Driver warnings, if any
    """
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    columns: List[str] = field(default_factory=list)
    execution_time: float = 0.0
    warnings: List[str] = field(default_factory=list)

    @property
    def execution_time_ms(self) -> float:
        return self.execution_time * 1000

    def first(self) -> Optional[Dict[str, Any]]:
        """Return the first row or None."""
        return self.rows[0] if self.rows else None

    def scalar(self, default: Any = None) -> Any:
        """Return the first column of the first row."""
        row = self.first()
        if not row:
            return default
        return next(iter(row.values()), default)
