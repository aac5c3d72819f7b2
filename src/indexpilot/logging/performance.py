"""Performance logging for IndexPilot operations.

This module times query runs, optimization cycles and DDL batches, keeps
aggregated per-operation metrics and logs the results through a
``StructuredLogger``.

Classes:
    TimingMetrics: A single timing measurement
    PerformanceMetrics: Aggregated metrics for one operation
    TimingContext: Context manager for operation timing
    PerformanceLogger: Main performance logging interface

Example:
    >>> perf_logger = PerformanceLogger("optimizer")
    >>> with perf_logger.measure("optimization_cycle", cycle_id="c-1") as timer:
    ...     await optimizer.run_cycle()
    >>> timer.duration_ms
    1520.4
"""

import statistics
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Generator, Optional, Union

from .structured import StructuredLogger

# Durations kept per operation for percentile estimates
DURATION_SAMPLE_LIMIT = 1000


@dataclass
class TimingMetrics:
    """Metrics for a single timing measurement.

    Attributes:
        operation: Operation name
        start_time: ``perf_counter`` value at start
        end_time: ``perf_counter`` value at end
        duration: Duration in seconds
        metadata: Additional metadata
        success: Whether operation succeeded
        error: Error information if failed
    """
    operation: str
    start_time: float
    end_time: Optional[float] = None
    duration: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error: Optional[str] = None

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark timing as complete."""
        self.end_time = time.perf_counter()
        self.duration = self.end_time - self.start_time
        self.success = success
        self.error = error

    @property
    def duration_ms(self) -> Optional[float]:
        """Duration in milliseconds or None if not completed."""
        return self.duration * 1000 if self.duration is not None else None

    @property
    def is_complete(self) -> bool:
        return self.end_time is not None


@dataclass
class PerformanceMetrics:
    """Aggregated performance metrics for an operation.

    Attributes:
        operation: Operation name
        total_calls: Total number of calls
        successful_calls: Number of successful calls
        failed_calls: Number of failed calls
        total_duration: Total duration in seconds
        min_duration: Minimum duration
        max_duration: Maximum duration
        avg_duration: Average duration
        median_duration: Median duration of the retained samples
        p95_duration: 95th percentile of the retained samples
        last_error: Most recent error message
    """
    operation: str
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_duration: float = 0.0
    min_duration: Optional[float] = None
    max_duration: Optional[float] = None
    avg_duration: Optional[float] = None
    median_duration: Optional[float] = None
    p95_duration: Optional[float] = None
    last_error: Optional[str] = None
    _durations: Deque[float] = field(
        default_factory=lambda: deque(maxlen=DURATION_SAMPLE_LIMIT), repr=False
    )

    def add_timing(self, timing: TimingMetrics) -> None:
        """Add a completed timing measurement to the aggregate."""
        if not timing.is_complete or timing.duration is None:
            return

        self.total_calls += 1
        if timing.success:
            self.successful_calls += 1
        else:
            self.failed_calls += 1
            self.last_error = timing.error

        duration = timing.duration
        self.total_duration += duration
        self._durations.append(duration)

        if self.min_duration is None or duration < self.min_duration:
            self.min_duration = duration
        if self.max_duration is None or duration > self.max_duration:
            self.max_duration = duration

        self.avg_duration = self.total_duration / self.total_calls
        self.median_duration = statistics.median(self._durations)

        # Percentiles need a minimum sample
        if len(self._durations) >= 20:
            sorted_durations = sorted(self._durations)
            self.p95_duration = sorted_durations[int(len(sorted_durations) * 0.95)]

    @property
    def success_rate(self) -> float:
        """Success rate as a percentage (0-100)."""
        if self.total_calls == 0:
            return 0.0
        return (self.successful_calls / self.total_calls) * 100

    @property
    def avg_duration_ms(self) -> float:
        return (self.avg_duration or 0.0) * 1000

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "operation": self.operation,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "success_rate": self.success_rate,
            "total_duration": self.total_duration,
            "min_duration": self.min_duration,
            "max_duration": self.max_duration,
            "avg_duration": self.avg_duration,
            "median_duration": self.median_duration,
            "p95_duration": self.p95_duration,
            "last_error": self.last_error,
        }


class TimingContext:
    """Context manager for measuring operation timing.

    Example:
        >>> with TimingContext("explain", logger=logger) as timer:
        ...     plan = await catalog.explain(sql)
        >>> timer.duration_ms
        3.1
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[StructuredLogger] = None,
        metadata: Optional[Dict[str, Any]] = None,
        auto_log: bool = True,
    ) -> None:
        self.operation = operation
        self.logger = logger
        self.metadata = metadata or {}
        self.auto_log = auto_log
        self._timing: Optional[TimingMetrics] = None

    @property
    def timing(self) -> Optional[TimingMetrics]:
        return self._timing

    @property
    def duration(self) -> Optional[float]:
        """Operation duration in seconds or None if not completed."""
        return self._timing.duration if self._timing else None

    @property
    def duration_ms(self) -> Optional[float]:
        """Operation duration in milliseconds or None if not completed."""
        return self._timing.duration_ms if self._timing else None

    def __enter__(self) -> "TimingContext":
        self._timing = TimingMetrics(
            operation=self.operation,
            start_time=time.perf_counter(),
            metadata=self.metadata,
        )

        if self.logger and self.auto_log:
            self.logger.debug("Operation started", operation=self.operation, **self.metadata)

        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._timing is None:
            return

        success = exc_type is None
        error = str(exc_val) if exc_val else None
        self._timing.complete(success=success, error=error)

        if self.logger and self.auto_log:
            if success:
                self.logger.info(
                    "Operation completed",
                    operation=self.operation,
                    duration_ms=self._timing.duration_ms,
                    success=True,
                    **self.metadata,
                )
            else:
                self.logger.error(
                    "Operation failed",
                    operation=self.operation,
                    duration_ms=self._timing.duration_ms,
                    success=False,
                    error=error,
                    **self.metadata,
                )


class PerformanceLogger:
    """Performance logger for monitoring operation timings.

    Attributes:
        name: Logger name
        logger: Underlying structured logger

    Example:
        >>> perf_logger = PerformanceLogger("engine")
        >>> perf_logger.record_timing("query_execution", 0.012, table="orders")
        >>> perf_logger.get_metrics("query_execution").total_calls
        1
    """

    def __init__(
        self,
        name: str,
        *,
        auto_log: bool = True,
        track_metrics: bool = True,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        """Initialize performance logger.

        Args:
            name: Logger name
            auto_log: Whether to log each timing result
            track_metrics: Whether to track aggregated metrics
            logger: Custom structured logger instance
        """
        self.name = name
        self.auto_log = auto_log
        self.track_metrics = track_metrics
        self.logger = logger or StructuredLogger(f"perf.{name}")

        self._metrics: Dict[str, PerformanceMetrics] = {}

    @contextmanager
    def measure(self, operation: str, **metadata: Any) -> Generator[TimingContext, None, None]:
        """Context manager for measuring operation performance.

        Args:
            operation: Operation name
            **metadata: Additional metadata

        Yields:
            TimingContext for the operation
        """
        timing_context = TimingContext(
            operation=operation,
            logger=self.logger if self.auto_log else None,
            metadata=metadata,
            auto_log=self.auto_log,
        )

        try:
            with timing_context as ctx:
                yield ctx
        finally:
            if self.track_metrics and timing_context.timing:
                self._add_timing_to_metrics(timing_context.timing)

    def _add_timing_to_metrics(self, timing: TimingMetrics) -> None:
        if timing.operation not in self._metrics:
            self._metrics[timing.operation] = PerformanceMetrics(operation=timing.operation)
        self._metrics[timing.operation].add_timing(timing)

    def record_timing(
        self,
        operation: str,
        duration: float,
        success: bool = True,
        error: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        """Record a timing measured elsewhere.

        Args:
            operation: Operation name
            duration: Duration in seconds
            success: Whether operation succeeded
            error: Error message if failed
            **metadata: Additional metadata
        """
        end_time = time.perf_counter()
        timing = TimingMetrics(
            operation=operation,
            start_time=end_time - duration,
            end_time=end_time,
            duration=duration,
            metadata=metadata,
            success=success,
            error=error,
        )

        if self.auto_log:
            self.logger.log(
                "debug" if success else "warning",
                f"Timing recorded: {operation}",
                operation=operation,
                duration_ms=timing.duration_ms,
                success=success,
                error=error,
                **metadata,
            )

        if self.track_metrics:
            self._add_timing_to_metrics(timing)

    def get_metrics(
        self, operation: Optional[str] = None
    ) -> Union[PerformanceMetrics, Dict[str, PerformanceMetrics]]:
        """Get metrics for one operation, or all of them when ``operation`` is None."""
        if operation:
            return self._metrics.get(operation, PerformanceMetrics(operation=operation))
        return dict(self._metrics)

    def reset_metrics(self, operation: Optional[str] = None) -> None:
        """Reset metrics for one operation or all of them."""
        if operation:
            self._metrics.pop(operation, None)
        else:
            self._metrics.clear()

        self.logger.info("Performance metrics reset", operation=operation or "all")

    def __repr__(self) -> str:
        return (
            f"PerformanceLogger("
            f"name={self.name!r}, "
            f"operations={len(self._metrics)}, "
            f"auto_log={self.auto_log})"
        )
