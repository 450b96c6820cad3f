"""SCD Type 2 snapshot engine.

One pass takes the rows of a snapshot node's source query and folds them
into the node's history store:

    1. rows -> SourceRecords (rows without a usable natural key are RecordErrors)
    2. group by natural key, order each key's observations by (timestamp, ordinal)
    3. classify each observation against the key's current version
    4. apply each key's close + inserts as one unit
    5. optionally expire open keys missing from the batch

Observations at or before the current version's valid_from are stale and
ignored, so re-running a pass over the same input is a no-op.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from .change_detection import ChangeDetectionStrategy, ChangeKind, SourceRecord, get_strategy
from .errors import TRANSIENT_ERRORS, BuildError, ConfigurationError, RecordError
from .graph import Node, NodeKind, SnapshotConfig
from .history import HistoryStore, KeyMutation, SnapshotVersion, surrogate_id

logger = logging.getLogger("strata.snapshot")


@dataclass
class SnapshotResult:
    """Counts from one snapshot pass."""

    node: str
    inserted: int = 0
    closed: int = 0
    unchanged: int = 0
    expired: int = 0
    stale: int = 0
    record_errors: list[RecordError] = field(default_factory=list)

    @property
    def rows_affected(self) -> int:
        return self.inserted + self.closed + self.expired


def utc_now() -> datetime:
    """Build timestamp: naive UTC, matching DuckDB TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_records(
    rows: Iterable[Mapping[str, Any]],
    config: SnapshotConfig,
    build_ts: Any,
) -> tuple[list[SourceRecord], list[RecordError], set[tuple[Any, ...]]]:
    """Convert source rows into records.

    Returns (records, errors, seen_keys). ``seen_keys`` includes keys of rows
    that were rejected for reasons other than their key, so hard-delete
    detection does not expire them.
    """
    records: list[SourceRecord] = []
    errors: list[RecordError] = []
    seen: set[tuple[Any, ...]] = set()
    key_cols = config.unique_key

    for ordinal, row in enumerate(rows):
        missing = [k for k in key_cols if k not in row]
        if missing:
            errors.append(RecordError(f"missing natural key column(s): {', '.join(missing)}", ordinal, dict(row)))
            continue
        nulls = [k for k in key_cols if row[k] is None]
        if nulls:
            errors.append(RecordError(f"null natural key column(s): {', '.join(nulls)}", ordinal, dict(row)))
            continue
        key = tuple(row[k] for k in key_cols)
        seen.add(key)

        if config.updated_at:
            ts = row.get(config.updated_at)
            if ts is None:
                errors.append(RecordError(f"missing {config.updated_at} value", ordinal, dict(row)))
                continue
        else:
            ts = build_ts

        payload = {c: v for c, v in row.items() if c not in key_cols and c != config.updated_at}
        records.append(SourceRecord(key=key, payload=payload, timestamp=ts, ordinal=ordinal))

    return records, errors, seen


def _order_observations(observations: list[SourceRecord]) -> list[SourceRecord]:
    """Sort by (timestamp, ordinal); equal timestamps collapse to the last ordinal."""
    ordered = sorted(observations, key=lambda r: (r.timestamp, r.ordinal))
    collapsed: list[SourceRecord] = []
    for rec in ordered:
        if collapsed and collapsed[-1].timestamp == rec.timestamp:
            collapsed[-1] = rec
        else:
            collapsed.append(rec)
    return collapsed


def _comparable(a: Any, b: Any) -> bool:
    try:
        _ = a < b
    except TypeError:
        return False
    return True


def expiry_timestamp(
    build_ts: Any,
    records: list[SourceRecord],
    latest: Mapping[tuple[Any, ...], SnapshotVersion],
) -> Any:
    """Timestamp that closes keys missing from a pass.

    The build timestamp, unless history is kept on a different clock (an
    integer or date ``updated_at``, say). Then it is the newest ``updated_at``
    observed in the pass, or None when the pass observed nothing.
    """
    sample = next((v.valid_from for v in latest.values()), None)
    if sample is None or _comparable(build_ts, sample):
        return build_ts
    observed = [r.timestamp for r in records if _comparable(r.timestamp, sample)]
    return max(observed) if observed else None


_writer_locks: dict[Hashable, threading.Lock] = {}
_writer_locks_guard = threading.Lock()


def writer_lock(store: HistoryStore) -> threading.Lock:
    """Process-wide lock for the history behind ``store``."""
    key = store.writer_key()
    with _writer_locks_guard:
        lock = _writer_locks.get(key)
        if lock is None:
            lock = _writer_locks[key] = threading.Lock()
        return lock


class SnapshotEngine:
    """Runs snapshot passes. One writer per snapshot history at a time, across engines."""

    def __init__(self, invalidate_hard_deletes: bool = False) -> None:
        self.invalidate_hard_deletes = invalidate_hard_deletes

    def run_snapshot(
        self,
        node: Node,
        rows: Iterable[Mapping[str, Any]],
        store: HistoryStore,
        build_ts: Any = None,
    ) -> SnapshotResult:
        if node.kind is not NodeKind.SNAPSHOT or node.snapshot is None:
            raise ConfigurationError(f"{node.name} is not a snapshot node")
        config = node.snapshot
        strategy = get_strategy(config.strategy, config.check_cols)
        if config.strategy == "timestamp" and not config.updated_at:
            raise ConfigurationError(f"{node.name}: timestamp strategy requires updated_at")
        if build_ts is None:
            build_ts = utc_now()

        result = SnapshotResult(node=node.name)
        records, errors, seen = to_records(rows, config, build_ts)
        for err in errors:
            logger.warning("%s: skipping malformed row: %s", node.name, err)
        result.record_errors = errors

        grouped: dict[tuple[Any, ...], list[SourceRecord]] = {}
        for rec in records:
            grouped.setdefault(rec.key, []).append(rec)

        with writer_lock(store):
            latest = store.latest_versions()
            mutations = [
                self._plan_key(key, observations, latest.get(key), strategy, result)
                for key, observations in grouped.items()
            ]

            if config.invalidate_hard_deletes or self.invalidate_hard_deletes:
                mutations += self._plan_expiry(node, latest, seen, expiry_timestamp(build_ts, records, latest), result)

            for mutation in mutations:
                if mutation.empty:
                    continue
                try:
                    store.apply(mutation)
                except TRANSIENT_ERRORS:
                    # Left for the executor's retry; keys already applied are stale on the next attempt
                    raise
                except Exception as e:
                    raise BuildError(
                        node.name, f"history write failed for key {mutation.key!r}: {e}", cause=e,
                    ) from e

        logger.info(
            "%s: %d inserted, %d closed, %d expired, %d unchanged, %d stale, %d bad rows",
            node.name, result.inserted, result.closed, result.expired,
            result.unchanged, result.stale, len(result.record_errors),
        )
        return result

    def _plan_expiry(
        self,
        node: Node,
        latest: Mapping[tuple[Any, ...], SnapshotVersion],
        seen: set[tuple[Any, ...]],
        close_at: Any,
        result: SnapshotResult,
    ) -> list[KeyMutation]:
        missing = [v for key, v in latest.items() if v.is_open and key not in seen]
        if missing and close_at is None:
            logger.warning("%s: %d missing key(s) not expired, the pass observed no timestamps", node.name, len(missing))
            return []
        mutations = []
        for version in missing:
            if not _comparable(close_at, version.valid_from) or not close_at > version.valid_from:
                logger.warning(
                    "%s: not expiring %r, %s is not after valid_from %s",
                    node.name, version.key, close_at, version.valid_from,
                )
                continue
            mutations.append(KeyMutation(key=version.key, close_scd_id=version.scd_id, close_at=close_at))
            result.expired += 1
        return mutations

    def _plan_key(
        self,
        key: tuple[Any, ...],
        observations: list[SourceRecord],
        prior: SnapshotVersion | None,
        strategy: ChangeDetectionStrategy,
        result: SnapshotResult,
    ) -> KeyMutation:
        mutation = KeyMutation(key=key)
        open_version = prior if prior is not None and prior.is_open else None
        # A key closed earlier (hard delete) may reopen, but not inside its old interval
        floor = prior.valid_to if prior is not None and not prior.is_open else None
        pending: SnapshotVersion | None = None

        for rec in _order_observations(observations):
            current = pending or open_version
            if current is not None and not rec.timestamp > current.valid_from:
                result.stale += 1
                continue

            kind = strategy.classify(current, rec)
            if kind is ChangeKind.UNCHANGED:
                result.unchanged += 1
                continue

            valid_from = strategy.valid_from(rec)
            if kind is ChangeKind.NEW and floor is not None and valid_from < floor:
                valid_from = floor

            if kind is ChangeKind.CHANGED:
                if pending is not None:
                    # Opened and superseded within this pass: insert it already closed
                    mutation.inserts.append(replace(pending, valid_to=valid_from))
                else:
                    assert open_version is not None
                    mutation.close_scd_id = open_version.scd_id
                    mutation.close_at = valid_from
                result.closed += 1

            pending = SnapshotVersion(
                key=key,
                payload=dict(rec.payload),
                valid_from=valid_from,
                valid_to=None,
                scd_id=surrogate_id(key, valid_from),
                row_hash=strategy.row_hash(rec),
            )

        if pending is not None:
            mutation.inserts.append(pending)
        result.inserted += len(mutation.inserts)
        return mutation
