"""Project configuration: project.yml / sources.yml parsing and defaults."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

from strata.engine.errors import ConfigurationError
from strata.engine.retry import RetryConfig


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")
    path: str = "warehouse.duckdb"


class BuildConfig(BaseModel):
    """Execution settings for ``strata build``."""
    model_config = ConfigDict(extra="ignore")

    workers: int = Field(default=4, ge=1)
    retries: int = Field(default=2, ge=0)  # retry attempts for transient warehouse errors
    retry_delay: float = Field(default=1.0, ge=0.0)  # base backoff in seconds
    max_retry_delay: float = Field(default=30.0, ge=0.0)
    query_timeout: float | None = None  # seconds; None = no limit

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.retries,
            base_delay=self.retry_delay,
            max_delay=self.max_retry_delay,
        )


class SnapshotDefaults(BaseModel):
    """Project-wide defaults for snapshot nodes."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    schema_name: str = Field(default="snapshots", alias="schema")
    invalidate_hard_deletes: bool = False

    @property
    def schema(self) -> str:
        return self.schema_name


class SourceTable(BaseModel):
    """A declared external source table."""
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str = ""


class SourceConfig(BaseModel):
    """An external data source declaration."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    schema_name: str = Field(default="landing", alias="schema")
    description: str = ""
    tables: list[SourceTable] = Field(default_factory=list)

    @property
    def schema(self) -> str:
        return self.schema_name


class ProjectConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", arbitrary_types_allowed=True)

    name: str = "default"
    description: str = ""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    snapshots: SnapshotDefaults = Field(default_factory=SnapshotDefaults)
    sources: list[SourceConfig] = Field(default_factory=list)
    project_dir: Path = Field(default_factory=Path.cwd)

    @property
    def db_path(self) -> Path:
        path = Path(self.database.path)
        return path if path.is_absolute() else self.project_dir / path


def _expand_env_vars(value: Any) -> Any:
    """Expand ${ENV_VAR} references in string values."""
    if isinstance(value, str):
        return re.sub(
            r"\$\{(\w+)\}",
            lambda m: os.environ.get(m.group(1), m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    return value


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path.name}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path.name} must contain a mapping at the top level")
    return _expand_env_vars(raw)


def _parse_sources(project_dir: Path) -> list[SourceConfig]:
    """Parse sources.yml if it exists."""
    sources_path = project_dir / "sources.yml"
    if not sources_path.exists():
        return []
    raw = _read_yaml(sources_path)
    sources = []
    for src_raw in raw.get("sources", []):
        tables = [
            SourceTable(name=t.get("name", ""), description=t.get("description", ""))
            for t in src_raw.get("tables", [])
        ]
        sources.append(SourceConfig(
            name=src_raw.get("name", ""),
            schema=src_raw.get("schema", "landing"),
            description=src_raw.get("description", ""),
            tables=tables,
        ))
    return sources


def load_project(project_dir: Path | None = None) -> ProjectConfig:
    """Load project.yml and sources.yml from the given directory (or cwd)."""
    project_dir = Path(project_dir) if project_dir else Path.cwd()
    config_path = project_dir / "project.yml"

    if not config_path.exists():
        return ProjectConfig(project_dir=project_dir, sources=_parse_sources(project_dir))

    raw = _read_yaml(config_path)

    try:
        return ProjectConfig(
            name=raw.get("name", "default"),
            description=raw.get("description", ""),
            database=DatabaseConfig(**(raw.get("database") or {})),
            build=BuildConfig(**(raw.get("build") or {})),
            snapshots=SnapshotDefaults(**(raw.get("snapshots") or {})),
            sources=_parse_sources(project_dir),
            project_dir=project_dir,
        )
    except ValueError as e:
        # pydantic.ValidationError is a ValueError
        raise ConfigurationError(f"Invalid project.yml: {e}") from e
