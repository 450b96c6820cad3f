"""Build orchestration: discovery -> plan -> execute -> validate -> record."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rich.console import Console

from strata.engine.database import ensure_meta_table, log_run, save_test_results

from .discovery import discover_nodes
from .executor import BuildReport, Executor, NodeResult, NodeStatus
from .graph import NodeGraph
from .planner import BuildPlan, plan
from .snapshot import SnapshotEngine
from .validator import ConstraintValidator, TestDefinition, TestReport, TestStatus
from .warehouse import DuckDBWarehouse

if TYPE_CHECKING:
    from strata.config import ProjectConfig

console = Console()
logger = logging.getLogger("strata.orchestration")


@dataclass
class BuildOutcome:
    run_id: str
    report: BuildReport
    tests: TestReport | None = None

    @property
    def exit_code(self) -> int:
        if self.report.exit_code:
            return self.report.exit_code
        if self.tests is not None and not self.tests.passed:
            return 1
        return 0


def load_graph(config: ProjectConfig) -> tuple[NodeGraph, list[TestDefinition]]:
    """Discover the project's nodes and resolve them into a graph."""
    nodes, tests = discover_nodes(config)
    graph = NodeGraph.from_nodes(nodes)
    return graph, tests


def plan_build(config: ProjectConfig, targets: list[str] | None = None) -> BuildPlan:
    graph, _ = load_graph(config)
    return plan(graph, targets or None)


def _tests_for(plan_: BuildPlan, tests: list[TestDefinition]) -> list[TestDefinition]:
    if not plan_.selective:
        return tests
    members = {n.name for n in plan_.nodes}
    return [t for t in tests if t.node in members]


def _print_result(result: NodeResult) -> None:
    label = f"[bold]{result.node}[/bold] ({result.kind.value})"
    if result.status is NodeStatus.SUCCEEDED:
        if result.snapshot is not None:
            snap = result.snapshot
            suffix = (
                f" ({snap.inserted} inserted, {snap.closed} closed, "
                f"{snap.expired} expired, {result.duration_ms}ms)"
            )
        elif result.rows_affected:
            suffix = f" ({result.rows_affected:,} rows, {result.duration_ms}ms)"
        else:
            suffix = f" ({result.duration_ms}ms)"
        console.print(f"  [green]done[/green]  {label}{suffix}")
    elif result.status is NodeStatus.FAILED:
        console.print(f"  [red]fail[/red]  {label}: {result.error}")
    else:
        console.print(f"  [dim]skip[/dim]  {label} ({result.skipped_reason})")


def _print_tests(report: TestReport) -> None:
    for r in report.results:
        if r.status is TestStatus.PASS:
            console.print(f"         [green]pass[/green]  {r.name}")
        elif r.status is TestStatus.WARN:
            console.print(f"         [yellow]warn[/yellow]  {r.name} ({r.message})")
        elif r.status is TestStatus.SKIP:
            console.print(f"         [dim]skip[/dim]  {r.name} ({r.message})")
        else:
            console.print(f"         [red]FAIL[/red]  {r.name} ({r.message})")


def run_build(
    config: ProjectConfig,
    targets: list[str] | None = None,
    workers: int | None = None,
    with_tests: bool = True,
    cancel: threading.Event | None = None,
    warehouse: DuckDBWarehouse | None = None,
) -> BuildOutcome:
    """Run a full or selective build of the project.

    Args:
        config: Loaded project configuration
        targets: Node selectors (None = everything)
        workers: Max concurrent nodes per batch (default from project.yml)
        with_tests: Run declared tests after the build
        cancel: Set to stop scheduling new batches
        warehouse: Explicit warehouse (default: the project's DuckDB file)

    Configuration errors (duplicates, unresolved references, cycles) are
    raised before anything runs.
    """
    graph, tests = load_graph(config)
    build_plan = plan(graph, targets or None)
    run_id = uuid.uuid4().hex[:12]

    owns_warehouse = warehouse is None
    if warehouse is None:
        warehouse = DuckDBWarehouse.connect(config.db_path, query_timeout=config.build.query_timeout)

    try:
        meta = warehouse.conn.cursor()
        ensure_meta_table(meta)

        def on_result(result: NodeResult) -> None:
            _print_result(result)
            log_run(meta, run_id, result)

        executor = Executor(
            warehouse,
            max_workers=workers or config.build.workers,
            retry=config.build.retry_config(),
            snapshot_engine=SnapshotEngine(),
        )
        logger.info("Run %s: %d node(s) in %d batch(es)", run_id, len(build_plan), len(build_plan.batches))
        report = executor.execute(build_plan, cancel=cancel, on_result=on_result)

        test_report = None
        if with_tests:
            selected = _tests_for(build_plan, tests)
            if selected:
                test_report = ConstraintValidator(warehouse).run(selected, build_report=report)
                _print_tests(test_report)
                save_test_results(meta, run_id, test_report.results)
        meta.close()
    finally:
        if owns_warehouse:
            warehouse.conn.close()

    return BuildOutcome(run_id=run_id, report=report, tests=test_report)


def run_tests(
    config: ProjectConfig,
    targets: list[str] | None = None,
    warehouse: DuckDBWarehouse | None = None,
) -> TestReport:
    """Run declared tests against whatever is currently materialized."""
    _, tests = load_graph(config)
    if targets:
        wanted = set(targets)
        tests = [t for t in tests if t.node in wanted]

    owns_warehouse = warehouse is None
    if warehouse is None:
        warehouse = DuckDBWarehouse.connect(config.db_path, query_timeout=config.build.query_timeout)
    try:
        report = ConstraintValidator(warehouse).run(tests)
        meta = warehouse.conn.cursor()
        ensure_meta_table(meta)
        save_test_results(meta, uuid.uuid4().hex[:12], report.results)
        meta.close()
    finally:
        if owns_warehouse:
            warehouse.conn.close()
    return report
