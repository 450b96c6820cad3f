"""Plan execution: batch-parallel, barrier between batches.

Nodes in one batch run on a bounded thread pool, each with its own warehouse
session. Batch i+1 starts only once every node of batch i is terminal. A
node whose upstream failed or was skipped is itself skipped without being
attempted; unrelated branches keep going.

Results are yielded as nodes finish, so callers can report progress while
the build runs. Batch order of results is non-decreasing; order within a
batch is completion order.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import BuildError, ConfigurationError, StrataError
from .graph import Materialization, Node, NodeKind
from .planner import BuildPlan
from .retry import RetryConfig, retry_with_backoff
from .snapshot import SnapshotEngine, SnapshotResult, utc_now
from .warehouse import MaterializeMode, Warehouse, WarehouseSession

logger = logging.getLogger("strata.executor")


class NodeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class BuildStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


@dataclass
class NodeResult:
    """Terminal state of one node."""

    node: str
    kind: NodeKind
    batch_index: int
    status: NodeStatus
    duration_ms: int = 0
    rows_affected: int | None = None
    error: str | None = None
    error_type: str | None = None
    skipped_reason: str | None = None
    attempts: int = 0
    snapshot: SnapshotResult | None = None


@dataclass
class BuildReport:
    plan: BuildPlan
    results: list[NodeResult] = field(default_factory=list)
    cancelled: bool = False

    def count(self, status: NodeStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def counts(self) -> dict[str, int]:
        return {s.value: self.count(s) for s in NodeStatus}

    @property
    def overall_status(self) -> BuildStatus:
        failed = self.count(NodeStatus.FAILED)
        succeeded = self.count(NodeStatus.SUCCEEDED)
        if failed == 0 and not self.cancelled:
            return BuildStatus.SUCCESS
        if failed and not succeeded:
            return BuildStatus.FAILURE
        return BuildStatus.PARTIAL_FAILURE

    @property
    def exit_code(self) -> int:
        return 0 if self.overall_status is BuildStatus.SUCCESS else 1

    def result_for(self, name: str) -> NodeResult | None:
        for r in self.results:
            if r.node == name:
                return r
        return None

    def statuses(self) -> dict[str, NodeStatus]:
        return {r.node: r.status for r in self.results}


_BLOCKING = (NodeStatus.FAILED, NodeStatus.SKIPPED)

CANCELLED = "cancelled"

_MODES = {
    Materialization.TABLE: MaterializeMode.TABLE,
    Materialization.VIEW: MaterializeMode.VIEW,
    Materialization.INCREMENTAL: MaterializeMode.INCREMENTAL_MERGE,
}


class Executor:
    """Runs a BuildPlan against a warehouse."""

    def __init__(
        self,
        warehouse: Warehouse,
        max_workers: int = 4,
        retry: RetryConfig | None = None,
        snapshot_engine: SnapshotEngine | None = None,
        build_ts: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.warehouse = warehouse
        self.max_workers = max_workers
        self.retry = retry or RetryConfig()
        self.snapshot_engine = snapshot_engine or SnapshotEngine()
        self.build_ts = build_ts
        self._sleep = sleep

    def execute(
        self,
        plan: BuildPlan,
        cancel: threading.Event | None = None,
        on_result: Callable[[NodeResult], None] | None = None,
    ) -> BuildReport:
        """Run the whole plan and collect results into a BuildReport."""
        report = BuildReport(plan=plan)
        for result in self.iter_execute(plan, cancel=cancel):
            report.results.append(result)
            if on_result is not None:
                on_result(result)
        report.cancelled = any(r.skipped_reason == CANCELLED for r in report.results)
        return report

    def iter_execute(self, plan: BuildPlan, cancel: threading.Event | None = None) -> Iterator[NodeResult]:
        """Run the plan, yielding each node's result as it reaches a terminal state."""
        build_ts = self.build_ts if self.build_ts is not None else utc_now()
        states: dict[str, NodeStatus] = {}

        for batch_index, batch in enumerate(plan.batches):
            if cancel is not None and cancel.is_set():
                logger.info("Cancelled before batch %d; skipping %d node(s)", batch_index, len(batch))
                for node in batch:
                    states[node.name] = NodeStatus.SKIPPED
                    yield _skipped(node, batch_index, CANCELLED)
                continue

            runnable: list[Node] = []
            for node in batch:
                blocked = [d for d in node.depends_on if states.get(d) in _BLOCKING]
                if blocked:
                    reason = f"upstream {blocked[0]} {states[blocked[0]].value}"
                    logger.info("Skipping %s: %s", node.name, reason)
                    states[node.name] = NodeStatus.SKIPPED
                    yield _skipped(node, batch_index, reason)
                else:
                    runnable.append(node)

            if not runnable:
                continue

            workers = min(self.max_workers, len(runnable))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="strata-node") as pool:
                futures = {
                    pool.submit(self._run_node, node, batch_index, build_ts): node
                    for node in runnable
                }
                for future in as_completed(futures):
                    result = future.result()
                    states[result.node] = result.status
                    yield result

    def _run_node(self, node: Node, batch_index: int, build_ts: Any) -> NodeResult:
        start = time.perf_counter()
        attempts = 0

        def attempt() -> tuple[int | None, SnapshotResult | None]:
            nonlocal attempts
            attempts += 1
            with self.warehouse.open_session() as session:
                return self._dispatch(node, session, build_ts)

        try:
            rows_affected, snapshot = retry_with_backoff(attempt, self.retry, sleep=self._sleep)
        except Exception as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            err = e if isinstance(e, BuildError) else BuildError(node.name, str(e), cause=e)
            cause = err.cause or err
            if not isinstance(cause, StrataError):
                logger.exception("Unexpected error building %s", node.name)
            logger.error("Failed %s after %d attempt(s): %s", node.name, attempts, err.message)
            return NodeResult(
                node=node.name,
                kind=node.kind,
                batch_index=batch_index,
                status=NodeStatus.FAILED,
                duration_ms=duration_ms,
                error=err.message,
                error_type=type(cause).__name__,
                attempts=attempts,
            )

        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info("Built %s in %dms", node.name, duration_ms)
        return NodeResult(
            node=node.name,
            kind=node.kind,
            batch_index=batch_index,
            status=NodeStatus.SUCCEEDED,
            duration_ms=duration_ms,
            rows_affected=rows_affected,
            attempts=attempts,
            snapshot=snapshot,
        )

    def _dispatch(
        self,
        node: Node,
        session: WarehouseSession,
        build_ts: Any,
    ) -> tuple[int | None, SnapshotResult | None]:
        if node.materialized is Materialization.SNAPSHOT:
            if node.snapshot is None:
                raise ConfigurationError(f"{node.name}: snapshot node without snapshot config")
            rows = session.execute(node.query).rows
            store = session.history_store(
                node.relation,
                node.snapshot.unique_key,
                source_query=node.query,
                timestamp_column=node.snapshot.updated_at,
            )
            snap = self.snapshot_engine.run_snapshot(node, rows, store, build_ts=build_ts)
            return snap.rows_affected, snap

        mode = _MODES.get(node.materialized) if node.materialized is not None else None
        if mode is None:
            raise ConfigurationError(f"{node.name}: no materialization to run")
        result = session.materialize(node.query, node.relation, mode, unique_key=node.unique_key)
        return result.rows_affected, None


def _skipped(node: Node, batch_index: int, reason: str) -> NodeResult:
    return NodeResult(
        node=node.name,
        kind=node.kind,
        batch_index=batch_index,
        status=NodeStatus.SKIPPED,
        skipped_reason=reason,
    )
