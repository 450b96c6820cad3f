"""Tests for the batch-parallel executor, using an in-process fake warehouse."""

from __future__ import annotations

import threading
from datetime import datetime

import pytest

from strata.engine.errors import QueryError, WarehouseConnectionError, WarehouseTimeoutError
from strata.engine.executor import BuildStatus, Executor, NodeStatus
from strata.engine.graph import Materialization, Node, NodeGraph, NodeKind, SnapshotConfig
from strata.engine.history import InMemoryHistoryStore
from strata.engine.planner import plan
from strata.engine.retry import RetryConfig
from strata.engine.warehouse import QueryResult, Warehouse, WarehouseSession


class FakeSession(WarehouseSession):
    def __init__(self, warehouse: FakeWarehouse) -> None:
        self.warehouse = warehouse

    def execute(self, query, params=None):
        rows = self.warehouse.rows.get(query, [])
        return QueryResult(rows_affected=len(rows), rows=list(rows))

    def materialize(self, query, target, mode, unique_key=()):
        with self.warehouse.lock:
            self.warehouse.calls.append(target)
            pending = self.warehouse.failures.get(target)
            error = pending.pop(0) if pending else None
        if self.warehouse.barrier is not None:
            self.warehouse.barrier.wait()
        if error is not None:
            raise error
        return QueryResult(rows_affected=1)

    def history_store(self, relation, key_columns, source_query=None, timestamp_column=None):
        return self.warehouse.stores.setdefault(relation, InMemoryHistoryStore())


class FakeWarehouse(Warehouse):
    def __init__(self, failures=None, rows=None, barrier=None) -> None:
        self.failures: dict[str, list[Exception]] = failures or {}
        self.rows: dict[str, list[dict]] = rows or {}
        self.barrier = barrier
        self.calls: list[str] = []
        self.stores: dict[str, InMemoryHistoryStore] = {}
        self.lock = threading.Lock()

    def open_session(self):
        return FakeSession(self)


class FlakyStore(InMemoryHistoryStore):
    """Drops the connection on the first write."""

    def __init__(self) -> None:
        super().__init__()
        self.failed = False

    def apply(self, mutation):
        if not self.failed:
            self.failed = True
            raise WarehouseConnectionError("connection reset")
        super().apply(mutation)


def _snapshot_graph(query: str, config: SnapshotConfig) -> NodeGraph:
    return NodeGraph.from_nodes([
        Node(name="landing.products", kind=NodeKind.SOURCE),
        Node(
            name="snapshots.products",
            kind=NodeKind.SNAPSHOT,
            depends_on=("landing.products",),
            query=query,
            materialized=Materialization.SNAPSHOT,
            snapshot=config,
        ),
    ])


def _model(name: str, *deps: str) -> Node:
    return Node(name=name, kind=NodeKind.MODEL, depends_on=deps, query=f"SELECT * -- {name}", materialized=Materialization.TABLE)


def _executor(warehouse, **kwargs) -> Executor:
    kwargs.setdefault("retry", RetryConfig(max_retries=2, base_delay=0, jitter=False))
    return Executor(warehouse, sleep=lambda _: None, **kwargs)


@pytest.fixture
def chain_plan():
    """gold.a -> gold.b -> gold.c, plus independent gold.d."""
    graph = NodeGraph.from_nodes([
        _model("gold.a"),
        _model("gold.b", "gold.a"),
        _model("gold.c", "gold.b"),
        _model("gold.d"),
    ])
    return plan(graph)


class TestExecution:
    def test_all_succeed(self, chain_plan):
        wh = FakeWarehouse()
        report = _executor(wh).execute(chain_plan)
        assert report.overall_status is BuildStatus.SUCCESS
        assert report.exit_code == 0
        assert report.counts == {"succeeded": 4, "failed": 0, "skipped": 0}
        assert sorted(wh.calls) == ["gold.a", "gold.b", "gold.c", "gold.d"]
        assert wh.calls.index("gold.a") < wh.calls.index("gold.b") < wh.calls.index("gold.c")

    def test_results_in_batch_order(self, chain_plan):
        report = _executor(FakeWarehouse()).execute(chain_plan)
        indices = [r.batch_index for r in report.results]
        assert indices == sorted(indices)
        assert report.result_for("gold.c").batch_index == 2

    def test_batch_runs_concurrently(self):
        graph = NodeGraph.from_nodes([_model(f"gold.m{i}") for i in range(4)])
        # Every node waits for the other three: only passes if all four run at once
        wh = FakeWarehouse(barrier=threading.Barrier(4, timeout=5))
        report = _executor(wh, max_workers=4).execute(plan(graph))
        assert report.counts["succeeded"] == 4

    def test_on_result_callback(self, chain_plan):
        seen = []
        _executor(FakeWarehouse()).execute(chain_plan, on_result=lambda r: seen.append(r.node))
        assert sorted(seen) == ["gold.a", "gold.b", "gold.c", "gold.d"]

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError):
            Executor(FakeWarehouse(), max_workers=0)


class TestFailurePropagation:
    def test_failure_skips_downstream_only(self, chain_plan):
        wh = FakeWarehouse(failures={"gold.a": [QueryError("syntax error", line=1, column=3)]})
        report = _executor(wh).execute(chain_plan)

        a = report.result_for("gold.a")
        assert a.status is NodeStatus.FAILED
        assert a.error_type == "QueryError"
        assert a.attempts == 1  # query errors are not retried
        b = report.result_for("gold.b")
        assert b.status is NodeStatus.SKIPPED
        assert b.skipped_reason == "upstream gold.a failed"
        c = report.result_for("gold.c")
        assert c.status is NodeStatus.SKIPPED
        assert c.skipped_reason == "upstream gold.b skipped"
        assert report.result_for("gold.d").status is NodeStatus.SUCCEEDED
        assert "gold.b" not in wh.calls
        assert report.overall_status is BuildStatus.PARTIAL_FAILURE
        assert report.exit_code == 1

    def test_everything_failed(self):
        graph = NodeGraph.from_nodes([_model("gold.a"), _model("gold.b", "gold.a")])
        wh = FakeWarehouse(failures={"gold.a": [QueryError("boom")]})
        report = _executor(wh).execute(plan(graph))
        assert report.overall_status is BuildStatus.FAILURE

    def test_unexpected_exception_contained(self, chain_plan):
        wh = FakeWarehouse(failures={"gold.d": [RuntimeError("bug")]})
        report = _executor(wh).execute(chain_plan)
        d = report.result_for("gold.d")
        assert d.status is NodeStatus.FAILED
        assert d.error_type == "RuntimeError"
        assert report.result_for("gold.c").status is NodeStatus.SUCCEEDED


class TestRetry:
    def test_transient_error_retried(self, chain_plan):
        wh = FakeWarehouse(failures={"gold.a": [WarehouseConnectionError("reset"), WarehouseTimeoutError("slow")]})
        report = _executor(wh).execute(chain_plan)
        a = report.result_for("gold.a")
        assert a.status is NodeStatus.SUCCEEDED
        assert a.attempts == 3
        assert report.overall_status is BuildStatus.SUCCESS

    def test_retries_exhausted(self, chain_plan):
        wh = FakeWarehouse(failures={"gold.a": [WarehouseConnectionError("reset")] * 3})
        report = _executor(wh).execute(chain_plan)
        a = report.result_for("gold.a")
        assert a.status is NodeStatus.FAILED
        assert a.attempts == 3
        assert a.error_type == "WarehouseConnectionError"

    def test_backoff_sleeps(self, chain_plan):
        delays = []
        wh = FakeWarehouse(failures={"gold.a": [WarehouseConnectionError("reset")]})
        executor = Executor(
            wh,
            retry=RetryConfig(max_retries=1, base_delay=0.5, jitter=False),
            sleep=delays.append,
        )
        executor.execute(chain_plan)
        assert delays == [0.5]


class TestCancellation:
    def test_cancel_skips_later_batches(self, chain_plan):
        cancel = threading.Event()
        report = _executor(FakeWarehouse()).execute(chain_plan, cancel=cancel, on_result=lambda r: cancel.set())

        batch0 = [r for r in report.results if r.batch_index == 0]
        assert all(r.status is NodeStatus.SUCCEEDED for r in batch0)
        later = [r for r in report.results if r.batch_index > 0]
        assert later
        assert all(r.status is NodeStatus.SKIPPED and r.skipped_reason == "cancelled" for r in later)
        assert report.cancelled
        assert report.overall_status is BuildStatus.PARTIAL_FAILURE

    def test_cancel_before_start(self, chain_plan):
        cancel = threading.Event()
        cancel.set()
        wh = FakeWarehouse()
        report = _executor(wh).execute(chain_plan, cancel=cancel)
        assert wh.calls == []
        assert report.count(NodeStatus.SKIPPED) == 4

    def test_cancel_after_last_batch_is_not_reported(self):
        graph = NodeGraph.from_nodes([_model("gold.a"), _model("gold.b")])
        cancel = threading.Event()
        report = _executor(FakeWarehouse()).execute(plan(graph), cancel=cancel, on_result=lambda r: cancel.set())
        assert cancel.is_set()
        assert not report.cancelled
        assert report.overall_status is BuildStatus.SUCCESS
        assert report.exit_code == 0


class TestSnapshotNodes:
    def test_snapshot_node_writes_history(self):
        query = "SELECT * FROM landing.products"
        graph = NodeGraph.from_nodes([
            Node(name="landing.products", kind=NodeKind.SOURCE),
            Node(
                name="snapshots.products",
                kind=NodeKind.SNAPSHOT,
                depends_on=("landing.products",),
                query=query,
                materialized=Materialization.SNAPSHOT,
                snapshot=SnapshotConfig(unique_key=("id",)),
            ),
            _model("gold.dim_products", "snapshots.products"),
        ])
        wh = FakeWarehouse(rows={query: [{"id": 1, "price": 10}, {"id": 2, "price": 20}]})
        executor = _executor(wh, build_ts=datetime(2024, 1, 1))
        report = executor.execute(plan(graph))

        snap = report.result_for("snapshots.products")
        assert snap.status is NodeStatus.SUCCEEDED
        assert snap.snapshot.inserted == 2
        assert snap.rows_affected == 2
        versions = wh.stores["snapshots.products"].versions()
        assert {v.valid_from for v in versions} == {datetime(2024, 1, 1)}
        assert report.result_for("landing.products") is None
        assert report.result_for("gold.dim_products").status is NodeStatus.SUCCEEDED

    def test_history_write_connection_error_retried(self):
        query = "SELECT * FROM landing.products"
        wh = FakeWarehouse(rows={query: [{"id": 1, "price": 10}, {"id": 2, "price": 20}]})
        wh.stores["snapshots.products"] = FlakyStore()
        graph = _snapshot_graph(query, SnapshotConfig(unique_key=("id",)))
        report = _executor(wh, build_ts=datetime(2024, 1, 1)).execute(plan(graph))

        snap = report.result_for("snapshots.products")
        assert snap.status is NodeStatus.SUCCEEDED
        assert snap.attempts == 2
        assert len(wh.stores["snapshots.products"].versions()) == 2

    def test_hard_delete_closes_on_updated_at_clock(self):
        query = "SELECT * FROM landing.products"
        config = SnapshotConfig(unique_key=("id",), updated_at="t", invalidate_hard_deletes=True)
        graph = _snapshot_graph(query, config)
        wh = FakeWarehouse(rows={query: [{"id": 1, "price": 10, "t": 1}, {"id": 2, "price": 20, "t": 1}]})
        executor = _executor(wh)
        executor.execute(plan(graph))

        wh.rows[query] = [{"id": 1, "price": 10, "t": 2}]
        report = executor.execute(plan(graph))

        snap = report.result_for("snapshots.products")
        assert snap.status is NodeStatus.SUCCEEDED
        assert snap.snapshot.expired == 1
        [deleted] = wh.stores["snapshots.products"].versions((2,))
        assert deleted.valid_to == 2
