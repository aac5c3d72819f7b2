"""Unit tests for workload pattern tracking."""

import json

import pytest

from indexpilot.config.models import PatternTrackerConfig
from indexpilot.optimization.models import (
    ImpactLevel,
    PatternKind,
    Priority,
    QueryPattern,
    RecommendationType,
)
from indexpilot.optimization.recommendations import (
    IndexRecommendations,
    calculate_confidence,
    estimate_impact,
    operator_priority,
    operator_selectivity,
)
from indexpilot.query.analyzer import summarize_plan

FULL_SCAN_PLAN = [{"table": "orders", "type": "ALL", "rows": 5000, "key": None, "Extra": "Using filesort"}]
STATUS_AND_TOTAL = "SELECT id FROM orders WHERE status = %s AND total > %s"


def _pattern(**kwargs):
    defaults = dict(key="where:orders:status", kind=PatternKind.WHERE, table="orders", columns=["status"])
    defaults.update(kwargs)
    return QueryPattern(**defaults)


@pytest.fixture
def tracker(clock):
    return IndexRecommendations(PatternTrackerConfig(min_frequency=1, confidence_threshold=50), clock=clock)


class TestScoring:
    """Test confidence, impact and operator helpers."""

    @pytest.mark.parametrize("kwargs, expected", [
        ({"frequency": 1}, 50.0),
        ({"frequency": 5}, 60.0),
        ({"frequency": 12}, 70.0),
        ({"frequency": 1, "full_scan": True}, 75.0),
        ({"frequency": 1, "filesort": True, "timed_observations": 1, "total_execution_time_ms": 600.0}, 75.0),
        ({"frequency": 10, "full_scan": True, "filesort": True,
          "timed_observations": 1, "total_execution_time_ms": 2000.0}, 100.0),
    ])
    def test_calculate_confidence(self, kwargs, expected):
        """Test each contribution and the ceiling."""
        assert calculate_confidence(_pattern(**kwargs)) == expected

    def test_estimate_impact(self):
        """Test impact levels from frequency, scans and timing."""
        assert estimate_impact(_pattern(frequency=10, full_scan=True)) is ImpactLevel.HIGH
        assert estimate_impact(_pattern(frequency=10)) is ImpactLevel.MEDIUM
        assert estimate_impact(_pattern(frequency=2)) is ImpactLevel.LOW

    @pytest.mark.parametrize("operator, selectivity, priority", [
        ("=", 0.1, Priority.HIGH),
        ("BETWEEN", 0.3, Priority.MEDIUM),
        ("IN", 0.2, Priority.LOW),
        ("LIKE", 0.5, Priority.LOW),
        ("IS NULL", 0.5, Priority.LOW),
    ])
    def test_operators(self, operator, selectivity, priority):
        """Test operator selectivity and priority."""
        assert operator_selectivity(operator) == selectivity
        assert operator_priority(operator) is priority


class TestObserve:
    """Test pattern extraction and aggregation."""

    def test_patterns_from_one_statement(self, tracker):
        """Test WHERE, JOIN, ORDER BY and composite patterns."""
        tracker.observe(
            "SELECT o.id FROM orders o JOIN customers c ON o.customer_id = c.id "
            "WHERE o.status = %s AND o.total > %s ORDER BY o.created_at",
            ["paid", 10],
        )

        assert {p.key for p in tracker.patterns} == {
            "where:orders:status",
            "where:orders:total",
            "join:orders:customer_id",
            "join:customers:id",
            "order_by:orders:created_at",
            "composite_where:orders:status,total",
        }
        join = tracker.get_pattern("join:orders:customer_id")
        assert (join.joined_table, join.joined_column) == ("customers", "id")
        assert tracker.observations == 1

    def test_priority_is_upgraded(self, tracker):
        """Test a later equality raises a range pattern's priority."""
        tracker.observe("SELECT id FROM orders WHERE total > %s", [10])
        tracker.observe("SELECT id FROM orders WHERE total = %s", [10])

        pattern = tracker.get_pattern("where:orders:total")
        assert pattern.frequency == 2
        assert pattern.priority is Priority.HIGH
        assert pattern.operator == "="
        assert pattern.selectivity == 0.1

    def test_average_covers_timed_observations(self, tracker):
        """Test untimed observations count toward frequency only."""
        tracker.observe("SELECT id FROM orders WHERE status = %s", ["paid"], 100.0)
        tracker.observe("SELECT id FROM orders WHERE status = %s", ["paid"])

        pattern = tracker.get_pattern("where:orders:status")
        assert pattern.frequency == 2
        assert pattern.avg_execution_time_ms == 100.0

    def test_plan_flags_are_sticky(self, tracker):
        """Test full scan and filesort flags survive later observations."""
        tracker.observe("SELECT id FROM orders WHERE status = %s", ["paid"], 5.0, summarize_plan(FULL_SCAN_PLAN))
        tracker.observe("SELECT id FROM orders WHERE status = %s", ["paid"], 5.0)

        pattern = tracker.get_pattern("where:orders:status")
        assert pattern.full_scan
        assert pattern.filesort

    def test_plan_flags_are_table_specific(self, tracker):
        """Test flags only apply to the tables the plan names."""
        tracker.observe(
            "SELECT c.id FROM customers c WHERE c.country = %s", ["NZ"], None, summarize_plan(FULL_SCAN_PLAN),
        )

        assert not tracker.get_pattern("where:customers:country").full_scan

    def test_plan_flags_resolve_aliases(self, tracker):
        """Test plan rows keyed by alias flag the aliased base table."""
        tracker.observe(
            "SELECT o.id FROM orders o WHERE o.customer_id = %s",
            [3],
            None,
            summarize_plan([{"table": "o", "type": "ALL"}]),
        )

        assert tracker.get_pattern("where:orders:customer_id").full_scan

    def test_plan_flags_ignore_table_case(self, tracker):
        """Test plan and statement table names match case-insensitively."""
        tracker.observe(
            "SELECT id FROM Orders WHERE total > %s ORDER BY created_at",
            [10],
            None,
            summarize_plan([{"table": "orders", "type": "index", "Extra": "Using filesort"}]),
        )

        assert tracker.get_pattern("where:Orders:total").filesort

    def test_pattern_limit_evicts_stalest(self, clock):
        """Test the least recently seen pattern makes room."""
        tracker = IndexRecommendations(PatternTrackerConfig(max_patterns=2), clock=clock)
        for column in ("status", "total", "customer_id"):
            tracker.observe(f"SELECT id FROM orders WHERE {column} = %s", [1])
            clock.advance(1)

        assert [p.key for p in tracker.patterns] == ["where:orders:customer_id", "where:orders:total"]


class TestCoverage:
    """Test existing-index coverage checks."""

    def test_prefix_coverage(self, tracker):
        """Test a leading column prefix counts as covered."""
        tracker.set_existing_indexes({"orders": {"idx_orders_status_total": ["status", "total"]}})

        assert tracker.is_covered("orders", ["status"])
        assert tracker.is_covered("orders", ["STATUS", "total"])
        assert not tracker.is_covered("orders", ["total"])
        assert not tracker.is_covered("customers", ["status"])

    @pytest.mark.asyncio
    async def test_load_existing_indexes(self, tracker, shop_catalog):
        """Test indexes are read from the catalog."""
        await tracker.load_existing_indexes(shop_catalog)

        assert tracker.get_stats()["tables_with_known_indexes"] == 2
        assert tracker.is_covered("customers", ["email", "name"])
        assert tracker.is_covered("orders", ["id"])

    def test_covered_patterns_are_not_recommended(self, tracker):
        """Test recommendations skip covered columns."""
        tracker.set_existing_indexes({"orders": {"idx_orders_status": ["status"]}})
        tracker.observe(STATUS_AND_TOTAL, ["paid", 10])

        names = [r.index_name for r in tracker.generate_recommendations()]

        assert "idx_orders_status" not in names
        assert "idx_orders_total" in names


class TestRecommendations:
    """Test recommendation generation and filtering."""

    def test_generate(self, tracker):
        """Test ordering, types and DDL."""
        tracker.observe(STATUS_AND_TOTAL, ["paid", 10])

        recommendations = tracker.generate_recommendations()

        assert [(r.index_name, r.type, r.priority) for r in recommendations] == [
            ("idx_orders_status", RecommendationType.CREATE, Priority.HIGH),
            ("idx_orders_status_total", RecommendationType.COMPOSITE, Priority.HIGH),
            ("idx_orders_total", RecommendationType.CREATE, Priority.MEDIUM),
        ]
        assert recommendations[1].sql == "CREATE INDEX `idx_orders_status_total` ON `orders` (`status`, `total`)"
        assert recommendations[1].pattern_key == "composite_where:orders:status,total"
        assert recommendations[0].reasoning == "Query pattern appears 1 times."

    def test_thresholds(self, clock):
        """Test minimum frequency and confidence."""
        tracker = IndexRecommendations(PatternTrackerConfig(min_frequency=2, confidence_threshold=75), clock=clock)
        tracker.observe("SELECT id FROM orders WHERE status = %s", ["paid"], 5.0, summarize_plan(FULL_SCAN_PLAN))
        tracker.observe("SELECT id FROM customers WHERE country = %s", ["NZ"])
        tracker.observe("SELECT id FROM customers WHERE country = %s", ["NZ"])

        assert tracker.generate_recommendations() == []

        tracker.observe("SELECT id FROM orders WHERE status = %s", ["paid"])

        [recommendation] = tracker.generate_recommendations()
        assert recommendation.index_name == "idx_orders_status"
        assert recommendation.confidence == 90.0
        assert "Queries are performing full table scans" in recommendation.reasoning

    def test_regenerates_every_threshold_observations(self, clock):
        """Test automatic regeneration."""
        tracker = IndexRecommendations(
            PatternTrackerConfig(analysis_threshold=2, min_frequency=1, confidence_threshold=50), clock=clock,
        )

        tracker.observe("SELECT id FROM orders WHERE status = %s", ["paid"])
        assert tracker.get_recommendations() == []

        tracker.observe("SELECT id FROM orders WHERE status = %s", ["paid"])
        assert [r.index_name for r in tracker.get_recommendations()] == ["idx_orders_status"]
        assert tracker.get_stats()["last_generated_at"] == clock()

    def test_filters(self, tracker):
        """Test priority, table, confidence and count filters."""
        tracker.observe(STATUS_AND_TOTAL, ["paid", 10])
        tracker.observe("SELECT id FROM customers WHERE email = %s", ["a@b.c"])
        tracker.generate_recommendations()

        assert len(tracker.get_recommendations()) == 4
        assert [r.index_name for r in tracker.get_recommendations(priority="medium")] == ["idx_orders_total"]
        assert [r.table for r in tracker.get_recommendations(table="customers")] == ["customers"]
        assert tracker.get_recommendations(min_confidence=60) == []
        assert len(tracker.get_recommendations(max_results=2)) == 2

    def test_max_recommendations(self, clock):
        """Test the list is truncated."""
        tracker = IndexRecommendations(
            PatternTrackerConfig(min_frequency=1, confidence_threshold=50, max_recommendations=1), clock=clock,
        )
        tracker.observe(STATUS_AND_TOTAL, ["paid", 10])

        assert len(tracker.generate_recommendations()) == 1


class TestReporting:
    """Test stats, export and reset."""

    def test_stats_and_top_patterns(self, tracker):
        """Test counters by kind and the frequency ranking."""
        tracker.observe(STATUS_AND_TOTAL, ["paid", 10])
        tracker.observe("SELECT id FROM orders WHERE status = %s", ["paid"])

        stats = tracker.get_stats()
        assert stats["observations"] == 2
        assert stats["total_patterns"] == 3
        assert stats["patterns_by_kind"] == {"where": 2, "composite_where": 1}
        assert tracker.top_patterns(1) == [("where:orders:status", 2)]

    def test_export_and_reset(self, tracker):
        """Test the JSON snapshot and reset."""
        tracker.observe("SELECT id FROM orders WHERE status = %s", ["paid"], 12.0)
        tracker.generate_recommendations()

        exported = json.loads(json.dumps(tracker.export_patterns()))
        tracker.reset()

        assert exported["patterns"][0]["avg_execution_time_ms"] == 12.0
        assert exported["recommendations"][0]["index_name"] == "idx_orders_status"
        assert tracker.patterns == []
        assert tracker.get_recommendations() == []
        assert tracker.observations == 0
