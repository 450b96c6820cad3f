"""Warehouse interface and its DuckDB implementation.

The executor talks to the warehouse only through sessions. Each executing
node opens its own session and closes it when done; sessions are never
shared between concurrently running nodes.

Errors are translated into the engine's taxonomy:

    connection / IO failures  -> WarehouseConnectionError  (retried)
    interrupted by timeout    -> WarehouseTimeoutError     (retried)
    anything else             -> QueryError(message, line, column)
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import duckdb

from strata.engine.utils import quote_identifier, validate_identifier, validate_relation

from .database import connect, guarded, rollback
from .errors import WarehouseConnectionError
from .history import DuckDBHistoryStore, HistoryStore

logger = logging.getLogger("strata.warehouse")


class MaterializeMode(str, Enum):
    TABLE = "table"
    VIEW = "view"
    INCREMENTAL_MERGE = "incremental_merge"


@dataclass
class QueryResult:
    rows_affected: int = 0
    rows: list[dict[str, Any]] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)


class WarehouseSession(ABC):
    """One exclusive connection to the warehouse."""

    @abstractmethod
    def execute(self, query: str, params: list | None = None) -> QueryResult: ...

    @abstractmethod
    def materialize(
        self,
        query: str,
        target: str,
        mode: MaterializeMode,
        unique_key: tuple[str, ...] = (),
    ) -> QueryResult: ...

    @abstractmethod
    def history_store(
        self,
        relation: str,
        key_columns: tuple[str, ...],
        source_query: str | None = None,
        timestamp_column: str | None = None,
    ) -> HistoryStore: ...

    def close(self) -> None:
        pass

    def __enter__(self) -> WarehouseSession:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class Warehouse(ABC):
    @abstractmethod
    def open_session(self) -> WarehouseSession: ...


def _split_relation(relation: str) -> tuple[str, str]:
    if "." in relation:
        schema, name = relation.split(".", 1)
        return schema, name
    return "main", relation


class DuckDBSession(WarehouseSession):
    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        ddl_lock: threading.Lock,
        query_timeout: float | None = None,
    ) -> None:
        self.conn = conn
        self._ddl_lock = ddl_lock
        self.query_timeout = query_timeout

    def _guard(self) -> AbstractContextManager[None]:
        return guarded(self.conn, self.query_timeout)

    def _run(self, sql: str, params: list | None = None) -> duckdb.DuckDBPyConnection:
        with self._guard():
            return self.conn.execute(sql, params or [])

    def _ensure_schema(self, schema: str) -> None:
        # Concurrent CREATE SCHEMA from several sessions conflicts in the catalog
        with self._ddl_lock:
            self._run(f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(schema)}")

    def _exists(self, relation: str) -> bool:
        schema, name = _split_relation(relation)
        row = self._run(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = ? AND table_name = ?",
            [schema, name],
        ).fetchone()
        return bool(row and row[0])

    def _count(self, relation: str) -> int:
        row = self._run(f"SELECT count(*) FROM {relation}").fetchone()
        return row[0] if row else 0

    def execute(self, query: str, params: list | None = None) -> QueryResult:
        with self._guard():
            cur = self.conn.execute(query, params or [])
            if cur.description is None:
                return QueryResult()
            columns = [d[0] for d in cur.description]
            rows = [dict(zip(columns, r)) for r in cur.fetchall()]
        return QueryResult(rows_affected=len(rows), rows=rows, columns=columns)

    def materialize(
        self,
        query: str,
        target: str,
        mode: MaterializeMode,
        unique_key: tuple[str, ...] = (),
    ) -> QueryResult:
        validate_relation(target)
        schema, _ = _split_relation(target)
        self._ensure_schema(schema)

        if mode is MaterializeMode.VIEW:
            self._run(f"CREATE OR REPLACE VIEW {target} AS\n{query}")
            return QueryResult()
        if mode is MaterializeMode.TABLE:
            self._run(f"CREATE OR REPLACE TABLE {target} AS\n{query}")
            return QueryResult(rows_affected=self._count(target))
        if mode is MaterializeMode.INCREMENTAL_MERGE:
            return self._merge(query, target, unique_key)
        raise ValueError(f"Unknown materialization mode: {mode}")

    def _merge(self, query: str, target: str, unique_key: tuple[str, ...]) -> QueryResult:
        """Upsert ``query`` into ``target`` by ``unique_key``.

        First run (no target yet) is a full load. Without a key the rows are
        appended. New columns in the query are added to the target.
        """
        if not self._exists(target):
            self._run(f"CREATE TABLE {target} AS\n{query}")
            return QueryResult(rows_affected=self._count(target))
        if not unique_key:
            before = self._count(target)
            self._run(f"INSERT INTO {target} BY NAME\n{query}")
            return QueryResult(rows_affected=self._count(target) - before)

        keys = [validate_identifier(k, "unique_key column") for k in unique_key]
        _, name = _split_relation(target)
        staging = f"_strata_staging_{name}"
        self._run(f"CREATE OR REPLACE TEMP TABLE {staging} AS\n{query}")
        try:
            schema, _ = _split_relation(target)
            target_cols = {
                r[0]
                for r in self._run(
                    "SELECT column_name FROM information_schema.columns "
                    "WHERE table_schema = ? AND table_name = ?",
                    [schema, name],
                ).fetchall()
            }
            staging_cols = self._run(
                "SELECT column_name, data_type FROM information_schema.columns "
                "WHERE table_name = ? ORDER BY ordinal_position",
                [staging],
            ).fetchall()
            for col_name, col_type in staging_cols:
                if col_name not in target_cols:
                    with self._ddl_lock:
                        self._run(f"ALTER TABLE {target} ADD COLUMN {quote_identifier(col_name)} {col_type}")
                    logger.info("Added column %s to %s", col_name, target)

            col_names = [r[0] for r in staging_cols]
            non_key = [c for c in col_names if c not in keys]
            join_cond = " AND ".join(
                f"target.{quote_identifier(k)} = staging.{quote_identifier(k)}" for k in keys
            )
            insert_cols = ", ".join(quote_identifier(c) for c in col_names)

            # Update and insert land together or not at all
            self._run("BEGIN TRANSACTION")
            try:
                if non_key:
                    set_clause = ", ".join(f"{quote_identifier(c)} = staging.{quote_identifier(c)}" for c in non_key)
                    self._run(
                        f"UPDATE {target} AS target SET {set_clause} "
                        f"FROM {staging} AS staging WHERE {join_cond}"
                    )
                self._run(
                    f"INSERT INTO {target} ({insert_cols}) "
                    f"SELECT {', '.join('staging.' + quote_identifier(c) for c in col_names)} "
                    f"FROM {staging} AS staging "
                    f"WHERE NOT EXISTS (SELECT 1 FROM {target} AS target WHERE {join_cond})"
                )
                self._run("COMMIT")
            except Exception:
                rollback(self.conn)
                raise
            return QueryResult(rows_affected=self._count(staging))
        finally:
            self._run(f"DROP TABLE IF EXISTS {staging}")

    def history_store(
        self,
        relation: str,
        key_columns: tuple[str, ...],
        source_query: str | None = None,
        timestamp_column: str | None = None,
    ) -> HistoryStore:
        return DuckDBHistoryStore(
            self.conn,
            relation,
            key_columns,
            source_query=source_query,
            timestamp_column=timestamp_column,
            ddl_lock=self._ddl_lock,
            query_timeout=self.query_timeout,
        )

    def close(self) -> None:
        self.conn.close()


class DuckDBWarehouse(Warehouse):
    """DuckDB database shared by all sessions; each session is its own cursor."""

    def __init__(self, conn: duckdb.DuckDBPyConnection, query_timeout: float | None = None) -> None:
        self.conn = conn
        self.query_timeout = query_timeout
        self._ddl_lock = threading.Lock()

    @classmethod
    def connect(cls, db_path: str | Path = ":memory:", query_timeout: float | None = None) -> DuckDBWarehouse:
        try:
            conn = connect(db_path)
        except duckdb.Error as e:
            raise WarehouseConnectionError(str(e)) from e
        return cls(conn, query_timeout=query_timeout)

    def open_session(self) -> DuckDBSession:
        try:
            cursor = self.conn.cursor()
        except duckdb.Error as e:
            raise WarehouseConnectionError(str(e)) from e
        return DuckDBSession(cursor, self._ddl_lock, query_timeout=self.query_timeout)
