"""CLI interface for strata.

The Typer app and shared helpers live here; each module registers its commands.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

app = typer.Typer(
    name="strata",
    help="Dependency-ordered SQL builds with SCD Type 2 snapshots on DuckDB.",
    no_args_is_help=True,
)
console = Console()


def _resolve_project(project_dir: Path | None = None) -> Path:
    project_dir = project_dir or Path.cwd()
    if not (project_dir / "project.yml").exists():
        console.print(f"[red]No project.yml found in {project_dir}[/red]")
        raise typer.Exit(1)
    return project_dir


def _load_config(project_dir: Path):
    """Load project config, turning configuration errors into a clean exit."""
    from strata.config import load_project
    from strata.engine.errors import ConfigurationError

    try:
        return load_project(project_dir)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _setup_logging(verbose: bool) -> None:
    from strata import setup_logging

    setup_logging("DEBUG" if verbose else "WARNING")


# Import submodules so they register their commands on `app`.
from strata.cli import pipeline  # noqa: E402, F401
from strata.cli import quality  # noqa: E402, F401
