"""Data quality commands: test."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.table import Table

from strata.cli import _load_config, _resolve_project, _setup_logging, app, console

_STATUS_STYLE = {
    "pass": "[green]pass[/green]",
    "fail": "[red]FAIL[/red]",
    "error": "[red]error[/red]",
    "warn": "[yellow]warn[/yellow]",
    "skip": "[dim]skip[/dim]",
}


@app.command()
def test(
    targets: Annotated[Optional[list[str]], typer.Argument(help="Only test these nodes")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Run declared data quality tests against the current warehouse."""
    from strata.engine.errors import StrataError
    from strata.engine.orchestration import run_tests

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)
    _setup_logging(verbose)

    try:
        report = run_tests(config, targets=targets)
    except StrataError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if not report.results:
        console.print("[yellow]No tests declared.[/yellow]")
        return

    table = Table(title="Data quality tests")
    table.add_column("Test", style="bold")
    table.add_column("Node")
    table.add_column("Status")
    table.add_column("Failures", justify="right")
    table.add_column("Detail", style="dim")
    for r in report.results:
        table.add_row(r.name, r.node, _STATUS_STYLE[r.status.value], str(r.failures), r.message)
    console.print(table)

    counts = report.counts
    console.print(
        f"  {counts['pass']} passed, {counts['fail']} failed, {counts['error']} errors, "
        f"{counts['warn']} warned, {counts['skip']} skipped"
    )
    if not report.passed:
        raise typer.Exit(1)
