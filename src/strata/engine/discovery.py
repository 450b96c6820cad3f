"""Node discovery: build the node list and declared tests from a project directory.

Conventions:
    sources.yml                 external source tables    -> Source nodes
    snapshots/<name>.sql        snapshot queries          -> Snapshot nodes in the snapshot schema
    transform/<schema>/<name>.sql  model queries          -> Model nodes, folder name = schema

Dependencies listed in ``-- depends_on:`` must name known nodes. Without that
header, dependencies are inferred from the query and kept only when they
name a known node.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from strata.engine.sql_analysis import (
    extract_table_refs,
    parse_config,
    parse_depends,
    parse_description,
    parse_tests,
    strip_config_comments,
)
from strata.engine.utils import validate_identifier

from .change_detection import STRATEGIES
from .errors import ConfigurationError
from .graph import Materialization, Node, NodeKind, SnapshotConfig
from .validator import TestDefinition, TestKind

if TYPE_CHECKING:
    from strata.config import ProjectConfig

logger = logging.getLogger("strata.discovery")

_UNIQUE_RE = re.compile(r"^unique\((\w+)\)$")
_NOT_NULL_RE = re.compile(r"^(?:not_null|no_nulls)\((\w+)\)$")
_RELATIONSHIPS_RE = re.compile(r"^relationships\((\w+),\s*(\w+\.\w+)\.(\w+)\)$")
_ACCEPTED_RE = re.compile(r"^accepted_values\((\w+),\s*\[(.+)\]\)$")

_MODEL_MATERIALIZATIONS = {
    Materialization.TABLE.value,
    Materialization.VIEW.value,
    Materialization.INCREMENTAL.value,
}


def _identifier(value: str, label: str) -> str:
    try:
        return validate_identifier(value, label)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def _split_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(v.strip() for v in value.split("|") if v.strip())


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def parse_test(node: str, expr: str, severity: str = "error") -> TestDefinition:
    """Turn one ``-- assert:`` expression into a TestDefinition."""
    expr = expr.strip()
    m = _UNIQUE_RE.match(expr)
    if m:
        return TestDefinition(node=node, kind=TestKind.UNIQUE, column=m.group(1), severity=severity)
    m = _NOT_NULL_RE.match(expr)
    if m:
        return TestDefinition(node=node, kind=TestKind.NOT_NULL, column=m.group(1), severity=severity)
    m = _RELATIONSHIPS_RE.match(expr)
    if m:
        return TestDefinition(
            node=node,
            kind=TestKind.RELATIONSHIPS,
            column=m.group(1),
            to=m.group(2),
            field=m.group(3),
            severity=severity,
        )
    m = _ACCEPTED_RE.match(expr)
    if m:
        values = tuple(v.strip().strip("'\"") for v in m.group(2).split(","))
        return TestDefinition(
            node=node,
            kind=TestKind.ACCEPTED_VALUES,
            column=m.group(1),
            values=values,
            severity=severity,
        )
    raise ConfigurationError(f"{node}: unrecognized test {expr!r}")


def _source_nodes(config: ProjectConfig) -> list[Node]:
    nodes = []
    for source in config.sources:
        _identifier(source.schema, f"schema for source {source.name}")
        for table in source.tables:
            _identifier(table.name, f"table in source {source.name}")
            nodes.append(Node(
                name=f"{source.schema}.{table.name}",
                kind=NodeKind.SOURCE,
                description=table.description,
            ))
    return nodes


def _read_sql_nodes(
    root: Path,
    kind: NodeKind,
    default_schema: str,
    config: ProjectConfig,
) -> list[tuple[Node, str, list[tuple[str, str]], bool]]:
    """Parse every .sql file under ``root``.

    Returns (node, query, tests, explicit_depends) tuples; dependencies are
    filled in later once all node names are known.
    """
    parsed = []
    if not root.exists():
        return parsed

    for sql_file in sorted(root.rglob("*.sql")):
        sql = sql_file.read_text()
        header = parse_config(sql)
        query = strip_config_comments(sql)
        depends = parse_depends(sql)

        rel = sql_file.relative_to(root)
        folder_schema = rel.parent.name if rel.parent.name else default_schema
        schema = header.get("schema", folder_schema)
        name = sql_file.stem
        # Validate identifiers at discovery time to prevent SQL injection downstream
        _identifier(schema, f"schema for {sql_file.name}")
        _identifier(name, f"node name for {sql_file.name}")

        snapshot: SnapshotConfig | None = None
        unique_key = _split_list(header.get("unique_key"))
        for col in unique_key:
            _identifier(col, f"unique_key column in {sql_file.name}")

        if kind is NodeKind.SNAPSHOT:
            materialized = Materialization.SNAPSHOT
            if not unique_key:
                raise ConfigurationError(f"Snapshot {sql_file.name} needs a unique_key")
            strategy = header.get("strategy", "check")
            if strategy not in STRATEGIES:
                raise ConfigurationError(f"Snapshot {sql_file.name}: unknown strategy {strategy!r}")
            if strategy == "timestamp" and not header.get("updated_at"):
                raise ConfigurationError(f"Snapshot {sql_file.name}: timestamp strategy needs updated_at")
            check_cols = _split_list(header.get("check_cols")) or None
            snapshot = SnapshotConfig(
                unique_key=unique_key,
                strategy=strategy,
                updated_at=header.get("updated_at"),
                check_cols=check_cols,
                invalidate_hard_deletes=_as_bool(
                    header.get("invalidate_hard_deletes"),
                    config.snapshots.invalidate_hard_deletes,
                ),
            )
            unique_key = ()
        else:
            value = header.get("materialized", Materialization.VIEW.value)
            if value not in _MODEL_MATERIALIZATIONS:
                raise ConfigurationError(
                    f"Model {sql_file.name}: unknown materialization {value!r}"
                )
            materialized = Materialization(value)

        node = Node(
            name=f"{schema}.{name}",
            kind=kind,
            depends_on=tuple(depends),
            query=query,
            materialized=materialized,
            unique_key=unique_key,
            snapshot=snapshot,
            description=parse_description(sql),
            path=sql_file,
        )
        parsed.append((node, query, parse_tests(sql), bool(depends)))
    return parsed


def discover_nodes(config: ProjectConfig) -> tuple[list[Node], list[TestDefinition]]:
    """Discover all nodes and declared tests of a project.

    Order: sources, then snapshots, then models, each in path order.
    """
    project_dir = config.project_dir
    sources = _source_nodes(config)
    parsed = _read_sql_nodes(project_dir / "snapshots", NodeKind.SNAPSHOT, config.snapshots.schema, config)
    parsed += _read_sql_nodes(project_dir / "transform", NodeKind.MODEL, "public", config)

    known = {n.name for n in sources} | {node.name for node, *_ in parsed}
    nodes: list[Node] = list(sources)
    tests: list[TestDefinition] = []

    for node, query, node_tests, explicit in parsed:
        if not explicit:
            inferred = extract_table_refs(query, exclude=node.name)
            deps = tuple(d for d in inferred if d in known)
            ignored = [d for d in inferred if d not in known]
            if ignored:
                logger.debug("%s: ignoring undeclared relations %s", node.name, ", ".join(ignored))
            node = replace(node, depends_on=deps)
        nodes.append(node)
        tests.extend(parse_test(node.name, expr, severity) for severity, expr in node_tests)

    logger.info("Discovered %d nodes and %d tests", len(nodes), len(tests))
    return nodes, tests
