"""Unit tests for the batch optimization orchestrator."""

import json
import time
from unittest.mock import patch

import pytest

from indexpilot.config.models import PatternTrackerConfig
from indexpilot.core.exceptions import (
    DatabaseErrorKind,
    OptimizationInProgressError,
    SchemaIntrospectionError,
    UnknownOptimizationTypeError,
)
from indexpilot.logging import AuditEventType, AuditLogger
from indexpilot.optimization.auto_optimizer import AutoIndexOptimizer
from indexpilot.optimization.learning import LearningState
from indexpilot.optimization.models import ActionType, AnalysisReport, CyclePhase
from indexpilot.optimization.recommendations import IndexRecommendations
from indexpilot.query.analyzer import summarize_plan

FULL_SCAN_PLAN = [{"table": "orders", "type": "ALL", "rows": 500, "key": None}]


@pytest.fixture
def optimizer(optimizer_config, shop_catalog, audit_logger, clock):
    return AutoIndexOptimizer(optimizer_config, shop_catalog, audit=audit_logger, clock=clock)


@pytest.fixture
def auto_optimizer(optimizer_config, shop_catalog, audit_logger, clock):
    config = optimizer_config.update_from_dict({"auto_execute": True})
    return AutoIndexOptimizer(config, shop_catalog, audit=audit_logger, clock=clock)


class TestRunCycle:
    """Test full analyze, plan, execute and learn cycles."""

    @pytest.mark.asyncio
    async def test_plan_awaits_approval(self, optimizer, shop_db, audit_logger):
        """Test plans are not executed without auto_execute."""
        cycle = await optimizer.run_cycle()

        assert [a.index_name for a in cycle.plan.actions] == ["idx_orders_status"]
        assert cycle.execution is None
        assert cycle.awaiting_approval
        assert shop_db.has_index("orders", "idx_orders_status")
        assert set(cycle.phase_timings_ms) == {"analyzing", "planning", "learning"}
        assert not cycle.learning.executed
        assert optimizer.phase is CyclePhase.IDLE
        assert not optimizer.running
        assert audit_logger.get_events(event_type=AuditEventType.CYCLE_START)
        [complete] = audit_logger.get_events(event_type=AuditEventType.CYCLE_COMPLETE)
        assert complete.details["awaiting_approval"]
        assert shop_db.ddl_statements == []

    @pytest.mark.asyncio
    async def test_auto_execute(self, auto_optimizer, shop_db):
        """Test the plan is executed and totals updated."""
        cycle = await auto_optimizer.run_cycle()

        assert cycle.execution.indexes_dropped == ["orders.idx_orders_status"]
        assert not shop_db.has_index("orders", "idx_orders_status")
        assert "executing" in cycle.phase_timings_ms
        assert cycle.learning.executed
        totals = auto_optimizer.status()["totals"]
        assert totals["successful_cycles"] == 1
        assert totals["indexes_dropped"] == 1
        assert json.loads(json.dumps(cycle.to_dict()))["execution"]["successful"] == 1

    @pytest.mark.asyncio
    async def test_empty_plan_still_executes(self, auto_optimizer, shop_db):
        """Test an empty plan produces an empty execution result."""
        shop_db.usage_statistics = False

        cycle = await auto_optimizer.run_cycle()

        assert cycle.plan.is_empty
        assert cycle.execution is not None
        assert cycle.execution.results == []
        assert not cycle.awaiting_approval

    @pytest.mark.asyncio
    async def test_deadline_is_passed_to_execution(self, auto_optimizer, shop_db):
        """Test an expired deadline cancels the cycle's actions."""
        cycle = await auto_optimizer.run_cycle(deadline=time.monotonic() - 1)

        assert cycle.execution.deadline_exceeded
        assert cycle.execution.cancelled_actions == 1
        assert shop_db.has_index("orders", "idx_orders_status")

    @pytest.mark.asyncio
    async def test_failed_cycle(self, optimizer, shop_db, audit_logger):
        """Test failures are recorded, re-raised and release the optimizer."""
        shop_db.fail_on("information_schema.TABLES", DatabaseErrorKind.ACCESS_DENIED, times=1)

        with pytest.raises(SchemaIntrospectionError):
            await optimizer.run_cycle()

        assert optimizer.phase is CyclePhase.ERROR
        assert not optimizer.running
        status = optimizer.status()
        assert status["totals"]["failed_cycles"] == 1
        assert status["last_error"] == "SCHEMA_INTROSPECTION_FAILED: Unable to read schema catalog"
        assert audit_logger.get_events(event_type=AuditEventType.CYCLE_FAILED, outcome="failed")

        await optimizer.run_cycle()
        assert optimizer.status()["totals"]["successful_cycles"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_cycle_is_rejected(self, optimizer):
        """Test a second request fails fast while a cycle runs."""
        attempts = []

        async def reentrant_analysis():
            with pytest.raises(OptimizationInProgressError) as exc_info:
                await optimizer.run_cycle()
            attempts.append(exc_info.value.code)
            with pytest.raises(OptimizationInProgressError):
                await optimizer.run_specific_optimization("analysis")
            return AnalysisReport()

        with patch.object(optimizer.analyzer, "analyze", side_effect=reentrant_analysis):
            cycle = await optimizer.run_cycle()

        assert attempts == ["OPTIMIZATION_IN_PROGRESS"]
        assert cycle.plan.is_empty
        assert not optimizer.running

    @pytest.mark.asyncio
    async def test_learning_state_is_continued(self, optimizer_config, shop_catalog, audit_logger):
        """Test an injected learning state keeps accumulating."""
        state = LearningState.create(10, 10)
        first = AutoIndexOptimizer(optimizer_config, shop_catalog, audit=audit_logger, learning_state=state)
        await first.run_cycle()

        second = AutoIndexOptimizer(optimizer_config, shop_catalog, audit=audit_logger, learning_state=state)
        await second.run_cycle()

        assert len(state.history) == 2


class TestWorkloadRecommendations:
    """Test the pattern tracker feeding the cycle."""

    @pytest.mark.asyncio
    async def test_observed_workload_creates_index(self, optimizer_config, shop_catalog, shop_db, audit_logger):
        """Test frequent full scans lead to an executed create."""
        tracker = IndexRecommendations(PatternTrackerConfig(min_frequency=1))
        summary = summarize_plan(FULL_SCAN_PLAN)
        for _ in range(10):
            tracker.observe("SELECT id FROM orders WHERE total > %s", [100], 20.0, summary)
            tracker.observe("SELECT id FROM orders WHERE customer_id = %s", [3], 20.0, summary)
        optimizer = AutoIndexOptimizer(
            optimizer_config.update_from_dict({"auto_execute": True}),
            shop_catalog,
            recommendations=tracker,
            audit=audit_logger,
        )

        async with optimizer:
            cycle = await optimizer.run_cycle()

        created = cycle.plan.actions_of(ActionType.CREATE_INDEX)
        assert [a.index_name for a in created] == ["idx_orders_total"]
        assert shop_db.has_index("orders", "idx_orders_total")
        assert cycle.execution.indexes_created == ["orders.idx_orders_total"]
        assert "where:orders:total" in optimizer.learning.state.pattern_summaries


class TestSpecificOptimizations:
    """Test targeted runs."""

    @pytest.mark.asyncio
    async def test_unknown_kind(self, optimizer):
        """Test unsupported kinds are rejected before any work."""
        with pytest.raises(UnknownOptimizationTypeError) as exc_info:
            await optimizer.run_specific_optimization("vacuum")

        assert exc_info.value.context["supported"] == ["cleanup", "recommendations", "analysis"]
        assert not optimizer.running

    @pytest.mark.asyncio
    async def test_analysis(self, optimizer):
        """Test the analysis-only run."""
        result = await optimizer.run_specific_optimization("analysis")

        assert result["type"] == "analysis"
        assert len(result["analysis"]["indexes"]) == 6
        assert optimizer.phase is CyclePhase.IDLE

    @pytest.mark.asyncio
    async def test_recommendations(self, optimizer):
        """Test recommendations and a plan without execution."""
        result = await optimizer.run_specific_optimization("recommendations")

        assert [r["reason"] for r in result["recommendations"]] == ["unused"]
        assert result["plan"]["actions"][0]["index_name"] == "idx_orders_status"

    @pytest.mark.asyncio
    async def test_cleanup_dry_run(self, optimizer, shop_db):
        """Test cleanup only plans without auto_execute."""
        result = await optimizer.run_specific_optimization("cleanup")

        assert result["dry_run"]
        assert result["execution"] is None
        assert shop_db.has_index("orders", "idx_orders_status")

    @pytest.mark.asyncio
    async def test_cleanup(self, auto_optimizer, shop_db):
        """Test cleanup drops unused indexes with auto_execute."""
        result = await auto_optimizer.run_specific_optimization("cleanup")

        assert not result["dry_run"]
        assert result["execution"]["indexes_dropped"] == ["orders.idx_orders_status"]
        assert not shop_db.has_index("orders", "idx_orders_status")
        assert auto_optimizer.status()["totals"]["indexes_dropped"] == 1


class TestAdministration:
    """Test configuration, stats and learning reset."""

    def test_injected_audit_trail_reaches_executor(self, optimizer_config, shop_catalog):
        """Test an empty caller-owned trail is shared with the executor."""
        audit = AuditLogger("caller")

        optimizer = AutoIndexOptimizer(optimizer_config, shop_catalog, audit=audit)

        assert optimizer.audit is audit
        assert optimizer.executor.audit is audit

    def test_config_update_reaches_components(self, optimizer):
        """Test stage components follow the orchestrator's config."""
        optimizer.update_config(optimizer.config.update_from_dict({"auto_execute": True, "max_batch_size": 2}))

        assert optimizer.executor.config.max_batch_size == 2
        assert optimizer.planner.config.auto_execute
        assert optimizer.analyzer.config is optimizer.config

    @pytest.mark.asyncio
    async def test_detailed_stats_and_reset(self, optimizer):
        """Test the detailed report and learning reset."""
        await optimizer.run_cycle()

        stats = optimizer.get_detailed_stats()
        optimizer.reset_learning_data()

        assert stats["learning"]["total_cycles"] == 1
        assert stats["components"]["recommendations"] is None
        assert stats["audit"]["event_types"]["cycle.complete"] == 1
        assert "phase.analyzing" in stats["phase_timings"]
        assert optimizer.learning.get_summary()["total_cycles"] == 0
