"""Batch orchestrator for the index control loop.

A cycle runs analysis, planning, optional execution and learning in order.
Only one cycle (or targeted run) may be active per optimizer; a second
request fails fast with ``OptimizationInProgressError``.
"""

import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generator, Optional

from ..config.models import IndexOptimizerConfig
from ..core import LifecycleComponent
from ..core.exceptions import ErrorCodes, OptimizationInProgressError, UnknownOptimizationTypeError
from ..database.catalog import SchemaCatalog
from ..logging import AuditEventType, AuditLogger, get_audit_logger, get_logger, get_performance_logger
from .executor import CancellationToken, OptimizationExecutor
from .index_analyzer import IndexAnalyzer
from .learning import LearningState, LearningSystem
from .models import AnalysisReport, CyclePhase, ExecutionResult, LearningRecord, OptimizationPlan
from .planner import OptimizationPlanner
from .recommendations import IndexRecommendations

SPECIFIC_OPTIMIZATIONS = ("cleanup", "recommendations", "analysis")


@dataclass
class CycleReport:
    """Everything one optimization cycle produced.

    ``execution`` is None when the plan was left for approval.
    """

    cycle_id: str
    started_at: float
    analysis: AnalysisReport
    plan: OptimizationPlan
    execution: Optional[ExecutionResult]
    learning: LearningRecord
    completed_at: float = 0.0
    phase_timings_ms: Dict[str, float] = field(default_factory=dict)

    @property
    def awaiting_approval(self) -> bool:
        return self.execution is None and not self.plan.is_empty

    @property
    def duration_ms(self) -> float:
        return (self.completed_at - self.started_at) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": round(self.duration_ms, 3),
            "analysis": self.analysis.summary(),
            "plan": self.plan.to_dict(),
            "execution": self.execution.to_dict() if self.execution else None,
            "learning": self.learning.to_dict(),
            "awaiting_approval": self.awaiting_approval,
            "phase_timings_ms": dict(self.phase_timings_ms),
        }


class AutoIndexOptimizer(LifecycleComponent[IndexOptimizerConfig]):
    """Runs analyze → plan → execute → learn cycles.

    Args:
        config: Optimizer configuration
        catalog: Catalog of the managed schema
        recommendations: Pattern tracker whose recommendations feed the plan
        audit: Audit trail for cycles and DDL
        learning_state: Existing learning state to continue from
        clock: Wall clock

    Example:
        >>> optimizer = AutoIndexOptimizer(IndexOptimizerConfig(auto_execute=True), catalog)
        >>> async with optimizer:
        ...     cycle = await optimizer.run_cycle()
        >>> cycle.execution.successful
        2
    """

    component_name = "AutoIndexOptimizer"

    def __init__(
        self,
        config: IndexOptimizerConfig,
        catalog: SchemaCatalog,
        *,
        recommendations: Optional[IndexRecommendations] = None,
        audit: Optional[AuditLogger] = None,
        learning_state: Optional[LearningState] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(config)
        self.catalog = catalog
        self.recommendations = recommendations
        self.logger = get_logger("optimization.auto_optimizer")
        self.perf_logger = get_performance_logger("optimization.auto_optimizer", auto_log=False)
        self.audit = audit if audit is not None else get_audit_logger("optimizer")
        self._clock = clock

        self.analyzer = IndexAnalyzer(config, catalog, recommendations, clock=clock)
        self.planner = OptimizationPlanner(config, clock=clock)
        self.executor = OptimizationExecutor(config, catalog, audit=self.audit, clock=clock)
        self.learning = LearningSystem(config, learning_state, clock=clock)

        self._running = False
        self._phase = CyclePhase.IDLE
        self._stats: Dict[str, Any] = {
            "cycles": 0,
            "successful_cycles": 0,
            "failed_cycles": 0,
            "indexes_created": 0,
            "indexes_dropped": 0,
            "total_improvement": 0.0,
            "last_run_time": None,
            "last_cycle_id": None,
            "last_error": None,
        }

    async def _async_initialize(self) -> None:
        if self.recommendations is not None:
            await self.recommendations.load_existing_indexes(self.catalog)
        self._set_phase(CyclePhase.IDLE)

    def _on_config_updated(self) -> None:
        for component in (self.analyzer, self.planner, self.executor, self.learning):
            component.update_config(self.config)

    @property
    def phase(self) -> CyclePhase:
        return self._phase

    @property
    def running(self) -> bool:
        return self._running

    def _set_phase(self, phase: CyclePhase) -> None:
        self._phase = phase
        self._set_state(phase.value)

    def _acquire(self, operation: str) -> None:
        # Checked and set without an await in between.
        if self._running:
            raise OptimizationInProgressError(
                "An optimization is already running",
                code=ErrorCodes.OPTIMIZATION_IN_PROGRESS,
                context={"operation": operation, "phase": self._phase.value},
            )
        self._running = True

    @contextmanager
    def _timed_phase(
        self,
        phase: CyclePhase,
        cycle_id: str,
        timings: Dict[str, float],
    ) -> Generator[None, None, None]:
        self._set_phase(phase)
        with self.perf_logger.measure(f"phase.{phase.value}", cycle_id=cycle_id) as timer:
            yield
        timings[phase.value] = timer.duration_ms or 0.0
        self.audit.log_event(
            AuditEventType.CUSTOM,
            resource=cycle_id,
            action=f"phase.{phase.value}",
            outcome="success",
            severity="low",
            details={"duration_ms": round(timings[phase.value], 3)},
        )

    # Component delegation

    async def analyze(self) -> AnalysisReport:
        return await self.analyzer.analyze()

    def plan(self, report: AnalysisReport) -> OptimizationPlan:
        return self.planner.create_plan(report)

    async def execute(
        self,
        plan: OptimizationPlan,
        cancel_token: Optional[CancellationToken] = None,
        deadline: Optional[float] = None,
    ) -> ExecutionResult:
        return await self.executor.execute(plan, cancel_token=cancel_token, deadline=deadline)

    async def run_cycle(
        self,
        *,
        cancel_token: Optional[CancellationToken] = None,
        deadline: Optional[float] = None,
    ) -> CycleReport:
        """Run one full optimization cycle.

        Args:
            cancel_token: Cancels plan execution between actions
            deadline: ``time.monotonic()`` value after which execution stops

        Returns:
            CycleReport for the cycle

        Raises:
            OptimizationInProgressError: If a cycle is already running
        """
        self._acquire("run_cycle")
        cycle_id = f"cycle_{uuid.uuid4().hex[:12]}"
        started_at = self._clock()
        timings: Dict[str, float] = {}

        self._stats["cycles"] += 1
        self._stats["last_run_time"] = started_at
        self._stats["last_cycle_id"] = cycle_id
        self.audit.log_event(
            AuditEventType.CYCLE_START,
            resource=cycle_id,
            action="run_cycle",
            details={"auto_execute": self.config.auto_execute},
        )
        self.logger.info("Optimization cycle started", cycle_id=cycle_id, auto_execute=self.config.auto_execute)

        try:
            with self._timed_phase(CyclePhase.ANALYZING, cycle_id, timings):
                report = await self.analyze()

            with self._timed_phase(CyclePhase.PLANNING, cycle_id, timings):
                plan = self.plan(report)

            execution: Optional[ExecutionResult] = None
            if self.config.auto_execute:
                with self._timed_phase(CyclePhase.EXECUTING, cycle_id, timings):
                    execution = await self.execute(plan, cancel_token, deadline)

            with self._timed_phase(CyclePhase.LEARNING, cycle_id, timings):
                if self.recommendations is not None:
                    self.learning.record_patterns(self.recommendations.patterns)
                record = self.learning.record_cycle(
                    report,
                    plan,
                    execution,
                    duration_ms=(self._clock() - started_at) * 1000,
                )

            self._set_phase(CyclePhase.IDLE)
        except Exception as e:
            self._set_phase(CyclePhase.ERROR)
            self._stats["failed_cycles"] += 1
            self._stats["last_error"] = str(e)
            self.audit.log_event(
                AuditEventType.CYCLE_FAILED,
                resource=cycle_id,
                action="run_cycle",
                outcome="failed",
                severity="high",
                details={"error": str(e), "phase_timings_ms": timings},
            )
            self.logger.exception("Optimization cycle failed", cycle_id=cycle_id, error=str(e))
            raise
        finally:
            self._running = False

        cycle = CycleReport(
            cycle_id=cycle_id,
            started_at=started_at,
            analysis=report,
            plan=plan,
            execution=execution,
            learning=record,
            completed_at=self._clock(),
            phase_timings_ms=timings,
        )
        self._stats["successful_cycles"] += 1
        if execution is not None:
            self._stats["indexes_created"] += len(execution.indexes_created)
            self._stats["indexes_dropped"] += len(execution.indexes_dropped)
            self._stats["total_improvement"] += execution.performance_improvement

        self.audit.log_event(
            AuditEventType.CYCLE_COMPLETE,
            resource=cycle_id,
            action="run_cycle",
            details={
                "plan": plan.summary(),
                "executed": execution is not None,
                "awaiting_approval": cycle.awaiting_approval,
            },
        )
        self.logger.info(
            "Optimization cycle completed",
            cycle_id=cycle_id,
            actions=len(plan.actions),
            executed=execution is not None,
            awaiting_approval=cycle.awaiting_approval,
            duration_ms=round(cycle.duration_ms, 2),
        )
        return cycle

    async def run_specific_optimization(
        self,
        kind: str,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """Run one targeted optimization.

        Args:
            kind: ``"cleanup"``, ``"recommendations"`` or ``"analysis"``

        Raises:
            UnknownOptimizationTypeError: For any other kind
            OptimizationInProgressError: If a cycle is already running
        """
        if kind not in SPECIFIC_OPTIMIZATIONS:
            raise UnknownOptimizationTypeError(
                f"Unknown optimization type: {kind}",
                code=ErrorCodes.UNKNOWN_OPTIMIZATION_TYPE,
                context={"supported": list(SPECIFIC_OPTIMIZATIONS)},
            )

        self._acquire(kind)
        try:
            self._set_phase(CyclePhase.ANALYZING)
            report = await self.analyze()

            if kind == "analysis":
                return {"type": kind, "analysis": report.to_dict()}

            if kind == "recommendations":
                self._set_phase(CyclePhase.PLANNING)
                plan = self.plan(report)
                return {
                    "type": kind,
                    "analysis": report.summary(),
                    "recommendations": [r.to_dict() for r in report.recommendations],
                    "plan": plan.to_dict(),
                }

            self._set_phase(CyclePhase.EXECUTING)
            cleanup = await self.executor.cleanup_unused_indexes(
                report.unused,
                dry_run=not self.config.auto_execute,
                cancel_token=cancel_token,
            )
            if cleanup.execution is not None:
                self._stats["indexes_dropped"] += len(cleanup.execution.indexes_dropped)
            return {"type": kind, **cleanup.to_dict()}
        except Exception:
            self._set_phase(CyclePhase.ERROR)
            raise
        finally:
            self._running = False
            if self._phase is not CyclePhase.ERROR:
                self._set_phase(CyclePhase.IDLE)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "phase": self._phase.value,
            "last_run_time": self._stats["last_run_time"],
            "last_cycle_id": self._stats["last_cycle_id"],
            "auto_execute": self.config.auto_execute,
            "totals": {
                "cycles": self._stats["cycles"],
                "successful_cycles": self._stats["successful_cycles"],
                "failed_cycles": self._stats["failed_cycles"],
                "indexes_created": self._stats["indexes_created"],
                "indexes_dropped": self._stats["indexes_dropped"],
                "total_improvement": self._stats["total_improvement"],
            },
            "last_error": self._stats["last_error"],
        }

    def get_detailed_stats(self) -> Dict[str, Any]:
        """Status plus per-component metrics and the learning summary."""
        stats = self.status()
        stats.update({
            "components": {
                "analyzer": self.analyzer.get_metrics(),
                "planner": self.planner.get_metrics(),
                "executor": self.executor.get_stats(),
                "recommendations": self.recommendations.get_stats() if self.recommendations else None,
            },
            "learning": self.learning.get_summary(),
            "insights": self.learning.get_insights(),
            "audit": self.audit.get_statistics(),
            "phase_timings": {
                name: metrics.to_dict() for name, metrics in self.perf_logger.get_metrics().items()
            },
        })
        return stats

    def reset_learning_data(self) -> None:
        self.learning.reset()
        self.logger.info("Learning data reset")

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics.update(self.status()["totals"])
        return metrics
