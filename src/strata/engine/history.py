"""Snapshot history stores.

A history store holds every version of every natural key of one snapshot
node. Versions are append-only: the single permitted mutation is setting
``valid_to`` on the currently open version of a key. All mutations for one
key are applied together by ``apply``.

Two stores are provided:

    InMemoryHistoryStore  arena of versions keyed by surrogate id
    DuckDBHistoryStore    one warehouse table per snapshot node
"""

from __future__ import annotations

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Hashable
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import duckdb

from strata.engine.utils import quote_identifier, validate_relation

from .database import guarded, rollback
from .errors import HistoryConflict

logger = logging.getLogger("strata.history")

SCD_ID = "strata_scd_id"
VALID_FROM = "strata_valid_from"
VALID_TO = "strata_valid_to"
ROW_HASH = "strata_row_hash"
META_COLUMNS = (SCD_ID, VALID_FROM, VALID_TO, ROW_HASH)


@dataclass(frozen=True)
class SnapshotVersion:
    """One historical version of a natural key."""

    key: tuple[Any, ...]
    payload: dict[str, Any] = field(hash=False)
    valid_from: Any
    valid_to: Any = None  # None = current
    scd_id: str = ""
    row_hash: str | None = None

    @property
    def is_open(self) -> bool:
        return self.valid_to is None


def surrogate_id(key: tuple[Any, ...], valid_from: Any) -> str:
    """Deterministic id for the version of ``key`` starting at ``valid_from``."""
    raw = "|".join(repr(k) for k in key) + "@" + repr(valid_from)
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


@dataclass
class KeyMutation:
    """Everything one snapshot pass writes for a single key."""

    key: tuple[Any, ...]
    close_scd_id: str | None = None  # open version to close
    close_at: Any = None
    inserts: list[SnapshotVersion] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return self.close_scd_id is None and not self.inserts


class HistoryStore(ABC):
    """Interface every history store implements."""

    @abstractmethod
    def latest_versions(self) -> dict[tuple[Any, ...], SnapshotVersion]:
        """The most recent version (open or closed) of every key."""

    @abstractmethod
    def apply(self, mutation: KeyMutation) -> None:
        """Apply one key's close and inserts as a single atomic unit."""

    @abstractmethod
    def versions(self, key: tuple[Any, ...] | None = None) -> list[SnapshotVersion]:
        """All versions, ordered by key then valid_from."""

    def open_versions(self) -> dict[tuple[Any, ...], SnapshotVersion]:
        return {k: v for k, v in self.latest_versions().items() if v.is_open}

    def writer_key(self) -> Hashable:
        """Identifies the underlying history; passes sharing a key never write concurrently."""
        return ("store", id(self))


class InMemoryHistoryStore(HistoryStore):
    def __init__(self) -> None:
        self._arena: dict[str, SnapshotVersion] = {}
        self._by_key: dict[tuple[Any, ...], list[str]] = {}
        self._open: dict[tuple[Any, ...], str] = {}
        self._lock = threading.Lock()

    def latest_versions(self) -> dict[tuple[Any, ...], SnapshotVersion]:
        with self._lock:
            return {key: self._arena[ids[-1]] for key, ids in self._by_key.items() if ids}

    def apply(self, mutation: KeyMutation) -> None:
        with self._lock:
            current = self._open.get(mutation.key)
            if mutation.close_scd_id is not None:
                if current != mutation.close_scd_id:
                    raise HistoryConflict(
                        f"Key {mutation.key!r}: expected open version {mutation.close_scd_id}, "
                        f"found {current}"
                    )
            elif current is not None and mutation.inserts:
                raise HistoryConflict(f"Key {mutation.key!r} already has an open version {current}")

            if mutation.close_scd_id is not None:
                closed = replace(self._arena[mutation.close_scd_id], valid_to=mutation.close_at)
                self._arena[closed.scd_id] = closed
                del self._open[mutation.key]

            ids = self._by_key.setdefault(mutation.key, [])
            for version in mutation.inserts:
                if version.scd_id in self._arena:
                    continue
                self._arena[version.scd_id] = version
                ids.append(version.scd_id)
                if version.is_open:
                    self._open[mutation.key] = version.scd_id

    def versions(self, key: tuple[Any, ...] | None = None) -> list[SnapshotVersion]:
        with self._lock:
            keys = [key] if key is not None else list(self._by_key)
            return [self._arena[sid] for k in keys for sid in self._by_key.get(k, [])]


def _duckdb_type(value: Any) -> str:
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "BOOLEAN"
    if isinstance(value, int):
        return "BIGINT"
    if isinstance(value, float):
        return "DOUBLE"
    if isinstance(value, Decimal):
        return "DECIMAL(38, 9)"
    if isinstance(value, datetime):
        return "TIMESTAMPTZ" if value.tzinfo else "TIMESTAMP"
    if isinstance(value, date):
        return "DATE"
    return "VARCHAR"


class DuckDBHistoryStore(HistoryStore):
    """History table in DuckDB.

    Layout: natural key columns, payload columns, then ``strata_scd_id``,
    ``strata_valid_from``, ``strata_valid_to`` and ``strata_row_hash``.

    When ``source_query`` is given, the table is created from the query's
    own column types and columns that appear later take their type from the
    query too; otherwise types are inferred from the first value written.

    Every statement runs under ``guarded``, so DuckDB failures surface as
    warehouse errors and ``query_timeout`` applies.
    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        relation: str,
        key_columns: tuple[str, ...] | list[str],
        source_query: str | None = None,
        timestamp_column: str | None = None,
        ddl_lock: threading.Lock | None = None,
        query_timeout: float | None = None,
    ) -> None:
        self.conn = conn
        self.relation = validate_relation(relation)
        self.key_columns = list(key_columns)
        self.source_query = source_query
        self.timestamp_column = timestamp_column
        self.query_timeout = query_timeout
        self._ddl_lock = ddl_lock or threading.Lock()
        self._columns: list[str] | None = None
        self._source_types: dict[str, str] | None = None

    def _run(self, sql: str, params: list | None = None) -> None:
        with guarded(self.conn, self.query_timeout):
            self.conn.execute(sql, params or [])

    def _query(self, sql: str, params: list | None = None) -> tuple[list[str], list[tuple]]:
        with guarded(self.conn, self.query_timeout):
            result = self.conn.execute(sql, params or [])
            columns = [d[0] for d in result.description] if result.description else []
            return columns, result.fetchall()

    def _scalar(self, sql: str, params: list | None = None) -> Any:
        _, rows = self._query(sql, params)
        return rows[0][0] if rows else None

    @property
    def _schema_and_name(self) -> tuple[str, str]:
        if "." in self.relation:
            schema, name = self.relation.split(".", 1)
            return schema, name
        return "main", self.relation

    def writer_key(self) -> Hashable:
        # Same database file + relation = same history, whichever connection writes it
        database = self._scalar(
            "SELECT coalesce(path, database_name) FROM duckdb_databases() "
            "WHERE database_name = current_database()"
        )
        return ("duckdb", database, self.relation)

    def exists(self) -> bool:
        schema, name = self._schema_and_name
        count = self._scalar(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = ? AND table_name = ?",
            [schema, name],
        )
        return bool(count)

    def _table_columns(self) -> list[str]:
        schema, name = self._schema_and_name
        _, rows = self._query(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = ? AND table_name = ? ORDER BY ordinal_position",
            [schema, name],
        )
        return [r[0] for r in rows]

    def _column_types_from_source(self) -> dict[str, str]:
        if self._source_types is None:
            if self.source_query:
                _, rows = self._query(f"DESCRIBE SELECT * FROM ({self.source_query}) AS src")
                self._source_types = {r[0]: r[1] for r in rows}
            else:
                self._source_types = {}
        return self._source_types

    def _rows_to_versions(self, columns: list[str], rows: list[tuple]) -> list[SnapshotVersion]:
        payload_cols = [c for c in columns if c not in META_COLUMNS and c not in self.key_columns]
        versions = []
        for row in rows:
            rec = dict(zip(columns, row))
            versions.append(SnapshotVersion(
                key=tuple(rec[k] for k in self.key_columns),
                payload={c: rec[c] for c in payload_cols},
                valid_from=rec[VALID_FROM],
                valid_to=rec[VALID_TO],
                scd_id=rec[SCD_ID],
                row_hash=rec[ROW_HASH],
            ))
        return versions

    def _select(self, where: str = "", params: list | None = None, latest_only: bool = False) -> list[SnapshotVersion]:
        if not self.exists():
            return []
        keys = ", ".join(quote_identifier(k) for k in self.key_columns)
        sql = f"SELECT * FROM {self.relation} {where}"
        if latest_only:
            sql += f" QUALIFY row_number() OVER (PARTITION BY {keys} ORDER BY {VALID_FROM} DESC) = 1"
        sql += f" ORDER BY {keys}, {VALID_FROM}"
        columns, rows = self._query(sql, params)
        return self._rows_to_versions(columns, rows)

    def latest_versions(self) -> dict[tuple[Any, ...], SnapshotVersion]:
        return {v.key: v for v in self._select(latest_only=True)}

    def open_versions(self) -> dict[tuple[Any, ...], SnapshotVersion]:
        return {v.key: v for v in self._select(f"WHERE {VALID_TO} IS NULL")}

    def versions(self, key: tuple[Any, ...] | None = None) -> list[SnapshotVersion]:
        if key is None:
            return self._select()
        cond = " AND ".join(f"{quote_identifier(k)} = ?" for k in self.key_columns)
        return self._select(f"WHERE {cond}", list(key))

    def _ensure_table(self, sample: SnapshotVersion) -> list[str]:
        """Create or widen the history table. Returns its column list."""
        with self._ddl_lock:
            schema, _ = self._schema_and_name
            self._run(f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(schema)}")
            if not self.exists():
                if self.source_query:
                    # The timestamp column becomes valid_from, not payload
                    if self.timestamp_column:
                        ts_col = quote_identifier(self.timestamp_column)
                        ts = f"src.{ts_col}"
                        star = f"src.* EXCLUDE ({ts_col})"
                    else:
                        ts = f"NULL::{_duckdb_type(sample.valid_from)}"
                        star = "src.*"
                    self._run(
                        f"CREATE TABLE {self.relation} AS SELECT {star}, "
                        f"NULL::VARCHAR AS {SCD_ID}, {ts} AS {VALID_FROM}, {ts} AS {VALID_TO}, "
                        f"NULL::VARCHAR AS {ROW_HASH} "
                        f"FROM ({self.source_query}) AS src WHERE false"
                    )
                else:
                    cols = [
                        f"{quote_identifier(k)} {_duckdb_type(v)}"
                        for k, v in zip(self.key_columns, sample.key)
                    ]
                    cols += [
                        f"{quote_identifier(c)} {_duckdb_type(v)}"
                        for c, v in sample.payload.items()
                    ]
                    ts_type = _duckdb_type(sample.valid_from)
                    cols += [
                        f"{SCD_ID} VARCHAR",
                        f"{VALID_FROM} {ts_type}",
                        f"{VALID_TO} {ts_type}",
                        f"{ROW_HASH} VARCHAR",
                    ]
                    self._run(f"CREATE TABLE {self.relation} ({', '.join(cols)})")
                logger.info("Created history table %s", self.relation)

            existing = self._table_columns()
            added = [c for c in sample.payload if c not in existing]
            if added:
                source_types = self._column_types_from_source()
                for col in added:
                    col_type = source_types.get(col) or _duckdb_type(sample.payload[col])
                    self._run(f"ALTER TABLE {self.relation} ADD COLUMN {quote_identifier(col)} {col_type}")
                    logger.info("Added column %s %s to history table %s", col, col_type, self.relation)
                    existing.append(col)
            return existing

    def apply(self, mutation: KeyMutation) -> None:
        if mutation.empty:
            return
        for version in mutation.inserts:
            if self._columns is None or any(c not in self._columns for c in version.payload):
                self._columns = self._ensure_table(version)

        self._run("BEGIN TRANSACTION")
        try:
            key_cond = " AND ".join(f"{quote_identifier(k)} = ?" for k in self.key_columns)
            current = None
            if self.exists():
                current = self._scalar(
                    f"SELECT {SCD_ID} FROM {self.relation} WHERE {key_cond} AND {VALID_TO} IS NULL",
                    list(mutation.key),
                )
            if mutation.close_scd_id is not None and current != mutation.close_scd_id:
                raise HistoryConflict(
                    f"Key {mutation.key!r}: expected open version {mutation.close_scd_id}, found {current}"
                )
            if mutation.close_scd_id is None and current is not None and mutation.inserts:
                raise HistoryConflict(f"Key {mutation.key!r} already has an open version {current}")

            if mutation.close_scd_id is not None:
                self._run(
                    f"UPDATE {self.relation} SET {VALID_TO} = ? "
                    f"WHERE {SCD_ID} = ? AND {VALID_TO} IS NULL",
                    [mutation.close_at, mutation.close_scd_id],
                )

            for version in mutation.inserts:
                if self._scalar(f"SELECT COUNT(*) FROM {self.relation} WHERE {SCD_ID} = ?", [version.scd_id]):
                    continue
                columns = list(self.key_columns) + list(version.payload) + list(META_COLUMNS)
                values = (
                    list(version.key)
                    + list(version.payload.values())
                    + [version.scd_id, version.valid_from, version.valid_to, version.row_hash]
                )
                col_sql = ", ".join(quote_identifier(c) for c in columns)
                placeholders = ", ".join("?" for _ in columns)
                self._run(f"INSERT INTO {self.relation} ({col_sql}) VALUES ({placeholders})", values)
            self._run("COMMIT")
        except Exception:
            rollback(self.conn)
            raise
