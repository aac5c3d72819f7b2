"""Unit tests for schema and index analysis."""

import pytest

from indexpilot.config.models import PatternTrackerConfig
from indexpilot.core.exceptions import DatabaseErrorKind, ErrorCodes, SchemaIntrospectionError
from indexpilot.optimization.index_analyzer import (
    IndexAnalyzer,
    calculate_effectiveness,
    find_duplicates,
    prefix_similarity,
)
from indexpilot.optimization.models import (
    IndexColumn,
    IndexDescriptor,
    IndexUsage,
    Priority,
    RecommendationType,
)
from indexpilot.optimization.recommendations import IndexRecommendations


def _index(name, columns, *, table="orders", examined=0, cardinality=1000, unique=False):
    return IndexDescriptor(
        table=table,
        name=name,
        columns=[IndexColumn(column, seq, cardinality) for seq, column in enumerate(columns, start=1)],
        unique=unique,
        usage=IndexUsage(rows_examined=examined),
    )


@pytest.fixture
def analyzer(optimizer_config, shop_catalog, clock):
    return IndexAnalyzer(optimizer_config, shop_catalog, clock=clock)


class TestScoring:
    """Test effectiveness and similarity helpers."""

    @pytest.mark.parametrize("index, expected", [
        (_index("idx_a", ["a"], examined=999, cardinality=5000), 100.0),
        (_index("idx_a", ["a"], examined=0, cardinality=5), 5.0),
        (_index("idx_a", ["a"], examined=0, cardinality=500, unique=True), 40.0),
        (_index("idx_ab", ["a", "b"], examined=10, cardinality=200), 85.41),
    ])
    def test_calculate_effectiveness(self, index, expected):
        """Test the score for common index profiles."""
        assert calculate_effectiveness(index) == expected

    def test_score_is_clamped(self):
        """Test the score never leaves [0, 100]."""
        index = _index("idx_abcde", ["a", "b", "c", "d", "e"], examined=0, cardinality=1)

        assert 0.0 <= calculate_effectiveness(index) <= 100.0

    @pytest.mark.parametrize("left, right, expected", [
        (["email"], ["email"], 1.0),
        (["email"], ["email", "name"], 0.5),
        (["name", "email"], ["email", "name"], 0.0),
        (["A", "b"], ["a", "B"], 1.0),
        ([], [], 0.0),
    ])
    def test_prefix_similarity(self, left, right, expected):
        """Test ordered prefix overlap."""
        assert prefix_similarity(left, right) == expected


class TestFindDuplicates:
    """Test redundant index pairing."""

    def test_less_used_index_loses(self):
        """Test the index with fewer rows examined is dropped."""
        pairs = find_duplicates([
            _index("idx_a", ["customer_id"], examined=5),
            _index("idx_b", ["customer_id"], examined=900),
        ], 0.8)

        assert [(p.kept, p.dropped, p.similarity) for p in pairs] == [("idx_b", "idx_a", 1.0)]

    def test_tie_drops_later_name(self):
        """Test equal usage keeps the name that sorts first."""
        pairs = find_duplicates([
            _index("idx_z", ["status"], examined=3),
            _index("idx_m", ["status"], examined=3),
        ], 0.8)

        assert (pairs[0].kept, pairs[0].dropped) == ("idx_m", "idx_z")

    def test_loser_reported_once_and_primary_ignored(self):
        """Test each index loses at most once and PRIMARY never pairs."""
        pairs = find_duplicates([
            _index("PRIMARY", ["id"], unique=True),
            _index("idx_id", ["id"]),
            _index("idx_a", ["status"], examined=10),
            _index("idx_b", ["status"], examined=5),
            _index("idx_c", ["status"], examined=1),
        ], 0.8)

        assert sorted(p.dropped for p in pairs) == ["idx_b", "idx_c"]
        assert all(p.kept != "PRIMARY" and p.dropped != "PRIMARY" for p in pairs)

    def test_unique_index_is_kept(self):
        """Test a UNIQUE index survives a busier plain twin."""
        pairs = find_duplicates([
            _index("idx_email", ["email"], table="customers", examined=900),
            _index("uq_email", ["email"], table="customers", examined=0, unique=True),
        ], 0.8)

        assert [(p.kept, p.dropped) for p in pairs] == [("uq_email", "idx_email")]

    def test_unique_indexes_on_different_columns_never_pair(self):
        """Test overlapping UNIQUE constraints are both kept."""
        pairs = find_duplicates([
            _index("uq_a", ["tenant_id", "email", "region", "code"], unique=True, examined=9),
            _index("uq_b", ["tenant_id", "email", "region", "code", "kind"], unique=True),
        ], 0.8)

        assert pairs == []

    def test_tables_are_separate(self):
        """Test indexes on different tables never pair."""
        pairs = find_duplicates([
            _index("idx_email", ["email"], table="customers"),
            _index("idx_email", ["email"], table="users"),
        ], 0.8)

        assert pairs == []


class TestIndexAnalyzer:
    """Test full analysis passes against the in-memory schema."""

    @pytest.mark.asyncio
    async def test_analyze_shop_schema(self, analyzer):
        """Test tables, indexes, scores and classifications."""
        report = await analyzer.analyze()

        assert set(report.tables) == {"orders", "customers"}
        assert report.tables["orders"].rows == 500
        assert report.tables["customers"].column_names == ["id", "email", "name", "country"]
        assert len(report.indexes) == 6
        assert report.find_index("customers", "idx_customers_email_name").column_names == ["email", "name"]
        assert report.find_index("customers", "idx_customers_email").unique
        assert report.find_index("orders", "idx_orders_status").effectiveness == 5.0
        assert report.usage_statistics_available
        assert [i.name for i in report.unused] == ["idx_orders_status"]
        assert [(i.index, i.issues) for i in report.inefficient] == [
            ("idx_orders_status", ["unused", "low_cardinality"]),
        ]
        assert report.duplicates == []
        assert analyzer.last_report is report

    @pytest.mark.asyncio
    async def test_unused_unique_index_is_not_reported(self, shop_db, analyzer):
        """Test a UNIQUE index with zero reads is not classified unused."""
        shop_db.add_index("orders", "uq_orders_reference", ["created_at"], unique=True, rows_examined=0)

        report = await analyzer.analyze()

        assert [i.name for i in report.unused] == ["idx_orders_status"]
        assert all(r.index_name != "uq_orders_reference" for r in report.recommendations)

    @pytest.mark.asyncio
    async def test_unused_index_recommendation(self, analyzer):
        """Test unused indexes become drop recommendations."""
        report = await analyzer.analyze()

        [recommendation] = report.recommendations
        assert recommendation.type is RecommendationType.DROP
        assert recommendation.reason == "unused"
        assert recommendation.priority is Priority.MEDIUM
        assert recommendation.sql == "DROP INDEX `idx_orders_status` ON `orders`"

    @pytest.mark.asyncio
    async def test_duplicate_recommendation(self, shop_db, analyzer):
        """Test duplicate pairs become high-priority drops."""
        shop_db.add_index("orders", "idx_orders_customer", ["customer_id"], cardinality=150, rows_examined=4)

        report = await analyzer.analyze()

        assert [(p.kept, p.dropped) for p in report.duplicates] == [
            ("idx_orders_customer_id", "idx_orders_customer"),
        ]
        duplicate = next(r for r in report.recommendations if r.reason == "duplicate")
        assert duplicate.priority is Priority.HIGH
        assert duplicate.confidence == 90.0
        assert duplicate.columns == ["customer_id"]

    @pytest.mark.asyncio
    async def test_redundancy_threshold(self, optimizer_config, shop_catalog):
        """Test a lower threshold pairs prefix-overlapping indexes."""
        config = optimizer_config.update_from_dict({"redundancy_threshold": 0.5})
        report = await IndexAnalyzer(config, shop_catalog).analyze()

        assert [(p.kept, p.dropped, p.similarity) for p in report.duplicates] == [
            ("idx_customers_email", "idx_customers_email_name", 0.5),
        ]

    @pytest.mark.asyncio
    async def test_index_budget_is_advisory(self, optimizer_config, shop_catalog):
        """Test tables over the index budget get an advisory recommendation."""
        config = optimizer_config.update_from_dict({"max_indexes_per_table": 2})
        report = await IndexAnalyzer(config, shop_catalog).analyze()

        budget = [r for r in report.recommendations if r.reason == "index_budget"]
        assert [r.table for r in budget] == ["customers", "orders"]
        assert all(r.advisory and r.sql is None for r in budget)

    @pytest.mark.asyncio
    async def test_without_usage_statistics(self, shop_db, analyzer):
        """Test the pass degrades when INDEX_STATISTICS is missing."""
        shop_db.usage_statistics = False

        report = await analyzer.analyze()

        assert not report.usage_statistics_available
        assert report.unused == []
        assert all(not index.usage.available for index in report.indexes)
        assert any("usage statistics unavailable" in note for note in report.notes)
        assert all("unused" not in entry.issues for entry in report.inefficient)
        assert not any(r.reason == "unused" for r in report.recommendations)

    @pytest.mark.asyncio
    async def test_performance_metrics(self, shop_db, analyzer):
        """Test statement digests are attached when available."""
        shop_db.digests = [{"digest_text": "SELECT * FROM `orders` WHERE `status` = ?", "query_count": 40}]

        report = await analyzer.analyze()

        assert report.performance_metrics == shop_db.digests

    @pytest.mark.asyncio
    async def test_without_performance_schema(self, shop_db, analyzer):
        """Test missing performance_schema leaves the metrics empty."""
        shop_db.performance_schema = False

        report = await analyzer.analyze()

        assert report.performance_metrics == []
        assert "Statement performance metrics unavailable" in report.notes

    @pytest.mark.asyncio
    async def test_unreadable_tables(self, shop_db, analyzer):
        """Test catalog failures raise SchemaIntrospectionError."""
        shop_db.fail_on("information_schema.TABLES", DatabaseErrorKind.ACCESS_DENIED)

        with pytest.raises(SchemaIntrospectionError) as exc_info:
            await analyzer.analyze()

        assert exc_info.value.code == ErrorCodes.SCHEMA_INTROSPECTION_FAILED
        assert exc_info.value.context["kind"] == "access_denied"

    @pytest.mark.asyncio
    async def test_unreadable_indexes(self, shop_db, analyzer):
        """Test failing both index queries raises."""
        shop_db.fail_on("information_schema.STATISTICS", DatabaseErrorKind.ACCESS_DENIED)

        with pytest.raises(SchemaIntrospectionError):
            await analyzer.analyze()

    @pytest.mark.asyncio
    async def test_schema_drift(self, shop_db, analyzer):
        """Test changes against the previous pass are reported."""
        first = await analyzer.analyze()
        shop_db.tables["orders"].rows = 1000
        shop_db.tables["customers"].columns.remove("country")
        shop_db.add_table("invoices", ["id", "order_id"], rows=10)

        second = await analyzer.analyze()

        assert not first.schema_changes.has_changes
        changes = second.schema_changes
        assert changes.new_tables == ["invoices"]
        assert changes.removed_columns == {"customers": ["country"]}
        assert changes.row_changes["orders"].change_ratio == 1.0
        assert "customers" not in changes.row_changes

    @pytest.mark.asyncio
    async def test_tracker_recommendations_respect_existing_indexes(self, optimizer_config, shop_catalog):
        """Test pattern recommendations skip columns an index already covers."""
        tracker = IndexRecommendations(PatternTrackerConfig(min_frequency=1, confidence_threshold=50))
        tracker.observe("SELECT * FROM orders WHERE total = %s", [10])
        tracker.observe("SELECT * FROM orders WHERE customer_id = %s", [3])
        analyzer = IndexAnalyzer(optimizer_config, shop_catalog, tracker)

        report = await analyzer.analyze()

        creates = [r for r in report.recommendations if r.type is RecommendationType.CREATE]
        assert [r.index_name for r in creates] == ["idx_orders_total"]

    @pytest.mark.asyncio
    async def test_summary(self, analyzer):
        """Test the report summary."""
        summary = (await analyzer.analyze()).summary()

        assert summary["tables"] == 2
        assert summary["indexes"] == 6
        assert summary["unused"] == 1
        assert summary["total_index_size_bytes"] == 6 * 16384
