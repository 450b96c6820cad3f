"""Tests for the DuckDB warehouse sessions and error translation."""

from __future__ import annotations

import duckdb
import pytest

from strata.engine.database import _error_position, translate_error
from strata.engine.errors import QueryError, WarehouseConnectionError, WarehouseTimeoutError
from strata.engine.warehouse import DuckDBWarehouse, MaterializeMode, QueryResult, WarehouseSession


@pytest.fixture
def warehouse():
    wh = DuckDBWarehouse.connect(":memory:")
    wh.conn.execute("CREATE SCHEMA landing")
    wh.conn.execute("CREATE TABLE landing.orders AS SELECT * FROM (VALUES (1, 'a', 10), (2, 'b', 20)) t(id, status, amount)")
    yield wh
    wh.conn.close()


class TestMaterialize:
    def test_table(self, warehouse):
        with warehouse.open_session() as session:
            result = session.materialize("SELECT * FROM landing.orders", "gold.orders", MaterializeMode.TABLE)
        assert result.rows_affected == 2
        assert warehouse.conn.execute("SELECT count(*) FROM gold.orders").fetchone()[0] == 2

    def test_view(self, warehouse):
        with warehouse.open_session() as session:
            session.materialize("SELECT id FROM landing.orders WHERE amount > 15", "silver.big_orders", MaterializeMode.VIEW)
        kind = warehouse.conn.execute(
            "SELECT table_type FROM information_schema.tables WHERE table_schema = 'silver' AND table_name = 'big_orders'"
        ).fetchone()[0]
        assert kind == "VIEW"
        assert warehouse.conn.execute("SELECT id FROM silver.big_orders").fetchall() == [(2,)]

    def test_incremental_merge_upserts(self, warehouse):
        query = "SELECT id, status, amount FROM landing.orders"
        with warehouse.open_session() as session:
            session.materialize(query, "gold.orders", MaterializeMode.INCREMENTAL_MERGE, unique_key=("id",))
        warehouse.conn.execute("UPDATE landing.orders SET status = 'z' WHERE id = 1")
        warehouse.conn.execute("INSERT INTO landing.orders VALUES (3, 'c', 30)")
        with warehouse.open_session() as session:
            result = session.materialize(query, "gold.orders", MaterializeMode.INCREMENTAL_MERGE, unique_key=("id",))

        assert result.rows_affected == 3
        rows = warehouse.conn.execute("SELECT id, status FROM gold.orders ORDER BY id").fetchall()
        assert rows == [(1, "z"), (2, "b"), (3, "c")]

    def test_incremental_without_key_appends(self, warehouse):
        query = "SELECT id FROM landing.orders"
        with warehouse.open_session() as session:
            session.materialize(query, "gold.log", MaterializeMode.INCREMENTAL_MERGE)
            result = session.materialize(query, "gold.log", MaterializeMode.INCREMENTAL_MERGE)
        assert result.rows_affected == 2
        assert warehouse.conn.execute("SELECT count(*) FROM gold.log").fetchone()[0] == 4

    def test_incremental_merge_failure_leaves_target_untouched(self, warehouse):
        warehouse.conn.execute("CREATE SCHEMA gold")
        warehouse.conn.execute("CREATE TABLE gold.orders (id INTEGER, status VARCHAR, amount INTEGER CHECK (amount > 0))")
        warehouse.conn.execute("INSERT INTO gold.orders VALUES (1, 'a', 10)")
        # Row 1 updates cleanly, row 3 violates the CHECK on insert
        query = "SELECT * FROM (VALUES (1, 'paid', 15), (3, 'new', -1)) t(id, status, amount)"
        with warehouse.open_session() as session:
            with pytest.raises(QueryError):
                session.materialize(query, "gold.orders", MaterializeMode.INCREMENTAL_MERGE, unique_key=("id",))
        assert warehouse.conn.execute("SELECT id, status, amount FROM gold.orders").fetchall() == [(1, "a", 10)]

    def test_invalid_target_rejected(self, warehouse):
        with warehouse.open_session() as session:
            with pytest.raises(ValueError):
                session.materialize("SELECT 1", "gold.x; DROP TABLE y", MaterializeMode.TABLE)


class TestErrors:
    def test_query_error_position(self, warehouse):
        with warehouse.open_session() as session:
            with pytest.raises(QueryError) as exc:
                session.execute("SELECT * FORM landing.orders")
        assert exc.value.line == 1

    def test_missing_table_is_query_error(self, warehouse):
        with warehouse.open_session() as session:
            with pytest.raises(QueryError):
                session.execute("SELECT * FROM landing.nope")

    def test_error_position_parsing(self):
        message = 'Parser Error: syntax error at or near "FORM"\n\nLINE 1: SELECT * FORM x\n' + " " * 17 + "^"
        assert _error_position(message) == (1, 10)

    def test_error_position_absent(self):
        assert _error_position("Catalog Error: Table x does not exist") == (None, None)

    def test_translate(self):
        assert isinstance(translate_error(duckdb.IOException("disk gone")), WarehouseConnectionError)
        assert isinstance(translate_error(duckdb.InterruptException("stop")), WarehouseTimeoutError)
        assert isinstance(translate_error(duckdb.CatalogException("nope"), timed_out=True), WarehouseTimeoutError)
        assert isinstance(translate_error(duckdb.CatalogException("nope")), QueryError)

    def test_query_timeout(self):
        wh = DuckDBWarehouse.connect(":memory:", query_timeout=0.2)
        try:
            with wh.open_session() as session:
                with pytest.raises(WarehouseTimeoutError):
                    session.execute("SELECT sum(a.range * b.range) FROM range(100000) a, range(100000) b")
        finally:
            wh.conn.close()

    def test_unreachable_database(self, tmp_path):
        with pytest.raises(WarehouseConnectionError):
            DuckDBWarehouse.connect(tmp_path / "missing_dir" / "wh.duckdb")


class TestSessionInterface:
    def test_incomplete_session_cannot_be_created(self):
        class ReadOnlySession(WarehouseSession):
            def execute(self, query, params=None):
                return QueryResult()

        with pytest.raises(TypeError):
            ReadOnlySession()
