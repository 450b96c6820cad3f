"""Pipeline commands: build, plan, history."""

from __future__ import annotations

import signal
import threading
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.table import Table

from strata.cli import _load_config, _resolve_project, _setup_logging, app, console


@app.command()
def build(
    targets: Annotated[Optional[list[str]], typer.Argument(help="Nodes to build; prefix with + to include downstream")] = None,
    workers: Annotated[Optional[int], typer.Option("--workers", "-w", help="Max parallel nodes per batch")] = None,
    no_tests: Annotated[bool, typer.Option("--no-tests", help="Skip data quality tests after the build")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Build snapshots and models in dependency order, then run tests.

    Independent nodes run in parallel. A failed node skips everything
    downstream of it; unrelated branches keep building. Ctrl-C lets the
    running batch finish and skips the rest.
    """
    from strata.engine.errors import StrataError
    from strata.engine.orchestration import run_build

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)
    _setup_logging(verbose)

    cancel = threading.Event()
    previous = None

    def _on_interrupt(signum, frame) -> None:
        console.print("[yellow]Cancelling: waiting for running nodes to finish...[/yellow]")
        cancel.set()

    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, _on_interrupt)

    console.print(f"[bold]Build[/bold] [dim]({config.name})[/dim]:")
    try:
        outcome = run_build(config, targets=targets, workers=workers, with_tests=not no_tests, cancel=cancel)
    except StrataError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    report = outcome.report
    counts = report.counts
    console.print()
    parts = [
        f"{counts['succeeded']} succeeded",
        f"{counts['failed']} failed",
        f"{counts['skipped']} skipped",
    ]
    if outcome.tests is not None:
        tc = outcome.tests.counts
        parts.append(
            f"tests: {tc['pass']} passed, {tc['fail'] + tc['error']} failed, "
            f"{tc['warn']} warned, {tc['skip']} skipped"
        )
    console.print(f"  {', '.join(parts)}")
    console.print(f"  [dim]run {outcome.run_id}: {report.overall_status.value}[/dim]")
    if outcome.exit_code:
        raise typer.Exit(outcome.exit_code)


@app.command()
def plan(
    targets: Annotated[Optional[list[str]], typer.Argument(help="Nodes to plan; prefix with + to include downstream")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Show the batches a build would run, without running anything."""
    from strata.engine.errors import ConfigurationError
    from strata.engine.orchestration import plan_build

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)

    try:
        build_plan = plan_build(config, targets)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if not build_plan.batches:
        console.print("[yellow]Nothing to build.[/yellow]")
        return

    table = Table(title="Build plan")
    table.add_column("Batch", justify="right")
    table.add_column("Node", style="bold")
    table.add_column("Kind")
    table.add_column("Materialized")
    table.add_column("Depends on", style="dim")
    for i, batch in enumerate(build_plan.batches):
        for node in batch:
            table.add_row(
                str(i),
                node.name,
                node.kind.value,
                node.materialized.value if node.materialized else "",
                ", ".join(node.depends_on),
            )
    console.print(table)
    if build_plan.sources:
        console.print(f"  [dim]sources: {', '.join(n.name for n in build_plan.sources)}[/dim]")
    console.print(f"  {len(build_plan)} nodes in {len(build_plan.batches)} batches")


@app.command()
def history(
    snapshot: Annotated[str, typer.Argument(help="Snapshot node (e.g. snapshots.customers)")],
    key: Annotated[Optional[list[str]], typer.Argument(help="Natural key value(s) to show")] = None,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Show the recorded versions of a snapshot, optionally for one key."""
    from strata.engine.database import connect
    from strata.engine.errors import ConfigurationError
    from strata.engine.graph import NodeKind
    from strata.engine.history import DuckDBHistoryStore
    from strata.engine.orchestration import load_graph

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)

    try:
        graph, _ = load_graph(config)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if snapshot not in graph or graph.get(snapshot).kind is not NodeKind.SNAPSHOT:
        console.print(f"[red]Not a snapshot: {snapshot}[/red]")
        raise typer.Exit(1)
    node = graph.get(snapshot)

    if not config.db_path.exists():
        console.print("[yellow]No warehouse database found. Run a build first.[/yellow]")
        return

    conn = connect(config.db_path, read_only=True)
    try:
        store = DuckDBHistoryStore(conn, node.relation, node.snapshot.unique_key)
        versions = store.versions()
    finally:
        conn.close()

    if key:
        wanted = tuple(key)
        versions = [v for v in versions if tuple(str(k) for k in v.key) == wanted]
    if not versions:
        console.print("[yellow]No history recorded.[/yellow]")
        return

    table = Table(title=f"History: {snapshot}")
    table.add_column(", ".join(node.snapshot.unique_key), style="bold")
    table.add_column("Valid from")
    table.add_column("Valid to")
    table.add_column("Values", style="dim")
    for v in versions:
        table.add_row(
            ", ".join(str(k) for k in v.key),
            str(v.valid_from),
            str(v.valid_to) if v.valid_to is not None else "[green]current[/green]",
            ", ".join(f"{c}={val}" for c, val in v.payload.items()),
        )
    console.print(table)
