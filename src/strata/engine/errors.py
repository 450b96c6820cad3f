"""Error taxonomy for the build engine.

Structural errors (``ConfigurationError`` and subclasses) are raised before
anything touches the warehouse. Runtime errors are contained to the node that
raised them and its downstream closure.
"""

from __future__ import annotations

from typing import Any


class StrataError(Exception):
    """Base class for all engine errors."""


# --- Structural errors ---


class ConfigurationError(StrataError):
    """The node graph or project configuration is invalid. Fatal."""


class DuplicateNode(ConfigurationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Duplicate node: {name!r} is already registered")
        self.name = name


class UnresolvedReference(ConfigurationError):
    def __init__(self, name: str, referenced_by: str | None = None) -> None:
        if referenced_by:
            msg = f"Node {referenced_by!r} depends on unknown node {name!r}"
        else:
            msg = f"Unknown node: {name!r}"
        super().__init__(msg)
        self.name = name
        self.referenced_by = referenced_by


class CyclicDependency(ConfigurationError):
    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Cyclic dependency: {' -> '.join(cycle)}")
        self.cycle = cycle


# --- Data and runtime errors ---


class RecordError(StrataError):
    """A single malformed source row. Reported and skipped, never fatal."""

    def __init__(self, message: str, ordinal: int, row: dict[str, Any] | None = None) -> None:
        super().__init__(f"Row {ordinal}: {message}")
        self.message = message
        self.ordinal = ordinal
        self.row = row or {}


class BuildError(StrataError):
    """A node failed to build."""

    def __init__(self, node: str, message: str, cause: Exception | None = None) -> None:
        super().__init__(f"{node}: {message}")
        self.node = node
        self.message = message
        self.cause = cause


class HistoryConflict(StrataError):
    """A history write found a different open version than the one it meant to close."""


class ValidationFailure(StrataError):
    """One or more data quality tests failed."""

    def __init__(self, failed: list[str]) -> None:
        super().__init__(f"{len(failed)} test(s) failed: {', '.join(failed)}")
        self.failed = failed


# --- Warehouse errors ---


class WarehouseError(StrataError):
    """Base class for errors raised by a warehouse session."""


class WarehouseConnectionError(WarehouseError):
    """The warehouse could not be reached. Transient."""


class WarehouseTimeoutError(WarehouseError):
    """A query exceeded its time limit. Transient."""


class QueryError(WarehouseError):
    """The warehouse rejected a query."""

    def __init__(self, message: str, line: int | None = None, column: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column


TRANSIENT_ERRORS: tuple[type[Exception], ...] = (WarehouseConnectionError, WarehouseTimeoutError)
