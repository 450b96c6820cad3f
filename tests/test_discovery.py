"""Tests for node and test discovery from a project directory."""

from __future__ import annotations

import textwrap

import pytest

from strata.config import load_project
from strata.engine.discovery import discover_nodes, parse_test
from strata.engine.errors import ConfigurationError, UnresolvedReference
from strata.engine.graph import Materialization, NodeKind
from strata.engine.orchestration import load_graph
from strata.engine.validator import TestKind


class TestDiscoverNodes:
    def test_nodes_and_kinds(self, project):
        nodes, _ = discover_nodes(load_project(project))
        by_name = {n.name: n for n in nodes}
        assert list(by_name) == [
            "landing.products",
            "landing.orders",
            "snapshots.products",
            "gold.dim_product",
            "gold.fct_orders",
        ]
        assert by_name["landing.orders"].kind is NodeKind.SOURCE
        snap = by_name["snapshots.products"]
        assert snap.kind is NodeKind.SNAPSHOT
        assert snap.materialized is Materialization.SNAPSHOT
        assert snap.snapshot.unique_key == ("product_id",)
        assert snap.snapshot.updated_at == "updated_at"
        assert snap.description == "Product price history"
        assert by_name["gold.dim_product"].materialized is Materialization.TABLE

    def test_inferred_dependencies(self, project):
        nodes, _ = discover_nodes(load_project(project))
        deps = {n.name: set(n.depends_on) for n in nodes}
        assert deps["snapshots.products"] == {"landing.products"}
        assert deps["gold.dim_product"] == {"snapshots.products"}
        assert deps["gold.fct_orders"] == {"landing.orders", "gold.dim_product"}

    def test_unknown_inferred_reference_dropped(self, project):
        (project / "transform" / "gold" / "extra.sql").write_text("SELECT * FROM somewhere_else.table_x")
        nodes, _ = discover_nodes(load_project(project))
        extra = next(n for n in nodes if n.name == "gold.extra")
        assert extra.depends_on == ()
        assert extra.materialized is Materialization.VIEW

    def test_explicit_dependency_must_resolve(self, project):
        (project / "transform" / "gold" / "extra.sql").write_text(
            "-- depends_on: silver.missing\nSELECT 1 AS x"
        )
        with pytest.raises(UnresolvedReference):
            load_graph(load_project(project))

    def test_declared_tests(self, project):
        _, tests = discover_nodes(load_project(project))
        summary = [(t.node, t.kind, t.severity) for t in tests]
        assert summary == [
            ("snapshots.products", TestKind.NOT_NULL, "error"),
            ("gold.dim_product", TestKind.UNIQUE, "error"),
            ("gold.fct_orders", TestKind.RELATIONSHIPS, "error"),
            ("gold.fct_orders", TestKind.ACCEPTED_VALUES, "warn"),
        ]

    def test_hard_delete_default_from_project(self, project):
        (project / "project.yml").write_text("snapshots:\n  invalidate_hard_deletes: true\n")
        nodes, _ = discover_nodes(load_project(project))
        snap = next(n for n in nodes if n.kind is NodeKind.SNAPSHOT)
        assert snap.snapshot.invalidate_hard_deletes is True

    def test_snapshot_options(self, project):
        (project / "snapshots" / "customers.sql").write_text(textwrap.dedent("""\
            -- config: unique_key=region|customer_id, strategy=hash, check_cols=email|tier, invalidate_hard_deletes=true
            SELECT * FROM landing.orders
        """))
        nodes, _ = discover_nodes(load_project(project))
        snap = next(n for n in nodes if n.name == "snapshots.customers")
        assert snap.snapshot.unique_key == ("region", "customer_id")
        assert snap.snapshot.strategy == "hash"
        assert snap.snapshot.check_cols == ("email", "tier")
        assert snap.snapshot.invalidate_hard_deletes is True


class TestInvalidProjects:
    @pytest.mark.parametrize(
        "path, content",
        [
            ("snapshots/nokey.sql", "SELECT 1 AS id"),
            ("snapshots/badstrategy.sql", "-- config: unique_key=id, strategy=magic\nSELECT 1 AS id"),
            ("snapshots/ts.sql", "-- config: unique_key=id, strategy=timestamp\nSELECT 1 AS id"),
            ("transform/gold/weird.sql", "-- config: materialized=snapshot\nSELECT 1"),
            ("transform/gold/bad-name.sql", "SELECT 1"),
            ("transform/gold/badtest.sql", "-- assert: row_count > 0\nSELECT 1"),
        ],
    )
    def test_rejected(self, project, path, content):
        (project / path).write_text(content)
        with pytest.raises(ConfigurationError):
            discover_nodes(load_project(project))


class TestParseTest:
    def test_unique(self):
        t = parse_test("gold.x", "unique(id)")
        assert (t.kind, t.column) == (TestKind.UNIQUE, "id")

    def test_no_nulls_alias(self):
        assert parse_test("gold.x", "no_nulls(id)").kind is TestKind.NOT_NULL

    def test_relationships(self):
        t = parse_test("gold.fct", "relationships(customer_id, gold.dim_customer.id)")
        assert (t.column, t.to, t.field) == ("customer_id", "gold.dim_customer", "id")

    def test_accepted_values(self):
        t = parse_test("gold.x", "accepted_values(status, ['a', \"b\"])", severity="warn")
        assert t.values == ("a", "b")
        assert t.severity == "warn"
