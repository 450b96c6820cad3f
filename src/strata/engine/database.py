"""DuckDB connection management, error translation and run metadata."""

from __future__ import annotations

import logging
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

import duckdb

from .errors import QueryError, WarehouseConnectionError, WarehouseError, WarehouseTimeoutError

if TYPE_CHECKING:
    from .executor import NodeResult
    from .validator import ValidationResult

logger = logging.getLogger("strata.database")


def connect(db_path: str | Path, read_only: bool = False) -> duckdb.DuckDBPyConnection:
    """Open a DuckDB connection to the given path."""
    db_path = str(db_path)
    conn = duckdb.connect(db_path, read_only=read_only)
    # Enable progress bar for long-running queries
    conn.execute("SET enable_progress_bar = true")
    return conn


_LINE_RE = re.compile(r"LINE (\d+):( ?)(.*)$", re.MULTILINE)


def _error_position(message: str) -> tuple[int | None, int | None]:
    """Pull line/column out of a DuckDB error message.

    DuckDB reports parser errors as ``LINE n: <sql>`` followed by a caret line.
    """
    m = _LINE_RE.search(message)
    if not m:
        return None, None
    line = int(m.group(1))
    prefix_len = len(f"LINE {m.group(1)}:") + len(m.group(2))
    rest = message[m.end():].lstrip("\n").split("\n", 1)[0]
    caret = rest.find("^")
    column = caret - prefix_len + 1 if caret >= prefix_len else None
    return line, column


def translate_error(exc: duckdb.Error, timed_out: bool = False) -> WarehouseError:
    """Map a DuckDB exception onto the warehouse error taxonomy.

    connection / IO failures  -> WarehouseConnectionError  (retried)
    interrupted by timeout    -> WarehouseTimeoutError     (retried)
    anything else             -> QueryError(message, line, column)
    """
    message = str(exc)
    if timed_out or isinstance(exc, duckdb.InterruptException):
        return WarehouseTimeoutError(message or "query interrupted")
    if isinstance(exc, (duckdb.ConnectionException, duckdb.IOException)):
        return WarehouseConnectionError(message)
    line, column = _error_position(message)
    return QueryError(message, line=line, column=column)


@contextmanager
def guarded(conn: duckdb.DuckDBPyConnection, query_timeout: float | None = None) -> Iterator[None]:
    """Translate DuckDB errors raised inside the block; interrupt ``conn`` after ``query_timeout`` seconds."""
    timer: threading.Timer | None = None
    fired = threading.Event()
    if query_timeout:
        def _interrupt() -> None:
            fired.set()
            conn.interrupt()

        timer = threading.Timer(query_timeout, _interrupt)
        timer.daemon = True
        timer.start()
    try:
        yield
    except duckdb.Error as e:
        raise translate_error(e, timed_out=fired.is_set()) from e
    finally:
        if timer is not None:
            timer.cancel()


def rollback(conn: duckdb.DuckDBPyConnection) -> None:
    """Roll back the open transaction. A failed rollback is logged so the original error surfaces."""
    try:
        conn.execute("ROLLBACK")
    except duckdb.Error as e:
        logger.warning("Rollback failed: %s", e)


def ensure_meta_table(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the internal tables for the run log and test results."""
    conn.execute("CREATE SCHEMA IF NOT EXISTS _strata_internal")
    conn.execute("""
        CREATE TABLE IF NOT EXISTS _strata_internal.run_log (
            run_id       VARCHAR NOT NULL,
            node         VARCHAR NOT NULL,
            kind         VARCHAR NOT NULL,
            batch_index  INTEGER,
            status       VARCHAR NOT NULL,
            finished_at  TIMESTAMP DEFAULT current_timestamp,
            duration_ms  BIGINT,
            rows_affected BIGINT,
            error        VARCHAR
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS _strata_internal.test_results (
            run_id      VARCHAR NOT NULL,
            test_name   VARCHAR NOT NULL,
            node        VARCHAR NOT NULL,
            kind        VARCHAR NOT NULL,
            status      VARCHAR NOT NULL,
            failures    BIGINT DEFAULT 0,
            message     VARCHAR,
            checked_at  TIMESTAMP DEFAULT current_timestamp
        )
    """)


def log_run(
    conn: duckdb.DuckDBPyConnection,
    run_id: str,
    result: NodeResult,
) -> None:
    """Insert a run log entry for one node."""
    conn.execute(
        """
        INSERT INTO _strata_internal.run_log
            (run_id, node, kind, batch_index, status, duration_ms, rows_affected, error)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            run_id,
            result.node,
            result.kind.value,
            result.batch_index,
            result.status.value,
            result.duration_ms,
            result.rows_affected,
            result.error,
        ],
    )


def save_test_results(
    conn: duckdb.DuckDBPyConnection,
    run_id: str,
    results: list[ValidationResult],
) -> None:
    """Save test results to the metadata table."""
    for r in results:
        conn.execute(
            """
            INSERT INTO _strata_internal.test_results
                (run_id, test_name, node, kind, status, failures, message)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [run_id, r.name, r.node, r.kind.value, r.status.value, r.failures, r.message],
        )

