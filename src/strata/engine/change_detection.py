"""Change detection strategies for snapshot nodes.

A strategy compares the open version of a natural key against a newly
observed source record and classifies the transition. Strategies are pure:
they never touch the history store.

    check      exact, type-sensitive equality of tracked payload columns (default)
    hash       SHA-256 digest of the tracked payload
    timestamp  the record's updated_at is strictly newer than the open version
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ConfigurationError
from .history import SnapshotVersion


class ChangeKind(str, Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SourceRecord:
    """One row read from a snapshot's source query."""

    key: tuple[Any, ...]
    payload: dict[str, Any] = field(hash=False)
    timestamp: Any
    ordinal: int = 0


_MISSING = object()


def _same_value(a: Any, b: Any) -> bool:
    # 1 == 1.0 == True in Python; history must not collapse those
    return type(a) is type(b) and a == b


def payload_hash(payload: dict[str, Any], columns: list[str] | None = None) -> str:
    """Stable digest of the payload, restricted to ``columns`` when given."""
    cols = sorted(columns) if columns is not None else sorted(payload)
    subset = {c: payload.get(c) for c in cols}
    encoded = json.dumps(subset, sort_keys=True, default=repr)
    return hashlib.sha256(encoded.encode()).hexdigest()


class ChangeDetectionStrategy:
    """Base strategy. Subclasses implement ``_differs``."""

    name = "base"

    def __init__(self, check_cols: tuple[str, ...] | list[str] | None = None) -> None:
        self.check_cols = list(check_cols) if check_cols else None

    def tracked_columns(self, record: SourceRecord) -> list[str]:
        return self.check_cols if self.check_cols is not None else list(record.payload)

    def classify(self, open_version: SnapshotVersion | None, record: SourceRecord) -> ChangeKind:
        if open_version is None:
            return ChangeKind.NEW
        if self._differs(open_version, record):
            return ChangeKind.CHANGED
        return ChangeKind.UNCHANGED

    def valid_from(self, record: SourceRecord) -> Any:
        return record.timestamp

    def row_hash(self, record: SourceRecord) -> str | None:
        return None

    def _differs(self, open_version: SnapshotVersion, record: SourceRecord) -> bool:
        raise NotImplementedError


class CheckStrategy(ChangeDetectionStrategy):
    name = "check"

    def _differs(self, open_version: SnapshotVersion, record: SourceRecord) -> bool:
        for col in self.tracked_columns(record):
            old = open_version.payload.get(col, _MISSING)
            new = record.payload.get(col, _MISSING)
            if old is _MISSING and new is _MISSING:
                continue
            if not _same_value(old, new):
                return True
        return False


class HashStrategy(ChangeDetectionStrategy):
    name = "hash"

    def row_hash(self, record: SourceRecord) -> str | None:
        return payload_hash(record.payload, self.tracked_columns(record))

    def _differs(self, open_version: SnapshotVersion, record: SourceRecord) -> bool:
        old_hash = open_version.row_hash
        if old_hash is None:
            old_hash = payload_hash(open_version.payload, self.tracked_columns(record))
        return old_hash != self.row_hash(record)


class TimestampStrategy(ChangeDetectionStrategy):
    name = "timestamp"

    def _differs(self, open_version: SnapshotVersion, record: SourceRecord) -> bool:
        return record.timestamp > open_version.valid_from


STRATEGIES: dict[str, type[ChangeDetectionStrategy]] = {
    "check": CheckStrategy,
    "hash": HashStrategy,
    "timestamp": TimestampStrategy,
}


def get_strategy(name: str, check_cols: tuple[str, ...] | None = None) -> ChangeDetectionStrategy:
    cls = STRATEGIES.get(name)
    if cls is None:
        raise ConfigurationError(
            f"Unknown snapshot strategy: {name!r} (expected one of {', '.join(STRATEGIES)})"
        )
    return cls(check_cols)
