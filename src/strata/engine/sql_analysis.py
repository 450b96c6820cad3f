"""SQL header parsing and table reference extraction.

Node files carry their configuration in leading line comments::

    -- config: materialized=table, unique_key=id
    -- depends_on: landing.customers, snapshots.customers_history
    -- description: One row per customer
    -- assert: unique(customer_id)
    -- warn: not_null(email)

Any other comment is part of the query. Table references in the query body
are found with sqlglot, so CTEs, subqueries and UNION ALL are handled.
"""

from __future__ import annotations

import re

import sqlglot
from sqlglot import exp

# Schemas that are never real upstream dependencies
SKIP_SCHEMAS = frozenset({"information_schema", "_strata_internal", "pg_catalog", "sys"})

HEADER_KEYS = ("config", "depends_on", "description", "assert", "warn")

_HEADER_LINE = re.compile(r"^\s*--\s*(" + "|".join(HEADER_KEYS) + r"):\s*(.*?)\s*$")

# FROM/JOIN schema.table, used only when sqlglot cannot parse the query
_FROM_JOIN_REF = re.compile(r"\b(?:FROM|JOIN)\s+([a-zA-Z_]\w*)\.([a-zA-Z_]\w*)\b", re.IGNORECASE)


def header_lines(sql: str) -> list[tuple[str, str]]:
    """All (key, value) header comments in file order."""
    found = []
    for line in sql.splitlines():
        m = _HEADER_LINE.match(line)
        if m and m.group(2):
            found.append((m.group(1), m.group(2)))
    return found


def _first(sql: str, key: str) -> str | None:
    return next((v for k, v in header_lines(sql) if k == key), None)


def _comma_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_config(sql: str) -> dict[str, str]:
    """``-- config: a=1, b=2`` -> {"a": "1", "b": "2"}. Items without ``=`` are ignored."""
    value = _first(sql, "config")
    if value is None:
        return {}
    config = {}
    for item in _comma_list(value):
        key, sep, val = item.partition("=")
        if sep:
            config[key.strip()] = val.strip()
    return config


def parse_depends(sql: str) -> list[str]:
    value = _first(sql, "depends_on")
    return _comma_list(value) if value else []


def parse_description(sql: str) -> str:
    return _first(sql, "description") or ""


def parse_tests(sql: str) -> list[tuple[str, str]]:
    """(severity, expression) for every ``-- assert:`` (error) and ``-- warn:`` line."""
    return [
        ("warn" if key == "warn" else "error", value)
        for key, value in header_lines(sql)
        if key in ("assert", "warn")
    ]


def strip_config_comments(sql: str) -> str:
    """The query without its header comments, leading blank lines or trailing semicolon."""
    body = "\n".join(line for line in sql.splitlines() if not _HEADER_LINE.match(line))
    return body.strip("\n").rstrip().rstrip(";")


def _keep_ref(schema: str, name: str, exclude: str | None, ctes: set[str] | frozenset[str] = frozenset()) -> str | None:
    schema, name = schema.lower(), name.lower()
    if not schema or not name or schema in SKIP_SCHEMAS:
        return None
    if schema in ctes or name in ctes:
        return None
    fqn = f"{schema}.{name}"
    return None if fqn == exclude else fqn


def extract_table_refs(sql: str, *, exclude: str | None = None) -> list[str]:
    """Sorted, unique ``schema.table`` relations read by ``sql``.

    Unqualified names, CTEs, internal schemas and ``exclude`` (usually the
    node's own relation) are left out.
    """
    try:
        tree = sqlglot.parse_one(sql, read="duckdb")
    except (sqlglot.errors.ParseError, sqlglot.errors.TokenError):
        return _regex_table_refs(sql, exclude=exclude)
    if tree is None:
        return []

    ctes = {cte.alias.lower() for cte in tree.find_all(exp.CTE) if cte.alias}
    refs = {_keep_ref(t.db or "", t.name or "", exclude, ctes) for t in tree.find_all(exp.Table)}
    refs.discard(None)
    return sorted(refs)


def _regex_table_refs(sql: str, *, exclude: str | None = None) -> list[str]:
    without_comments = re.sub(r"--[^\n]*", "", sql)
    refs = {
        _keep_ref(m.group(1), m.group(2), exclude)
        for m in _FROM_JOIN_REF.finditer(without_comments)
    }
    refs.discard(None)
    return sorted(refs)
