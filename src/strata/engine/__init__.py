"""Build engine.

Resolves a graph of nodes, plans it into batches, executes the batches
against a warehouse, maintains SCD Type 2 history for snapshot nodes and
runs data quality tests over the results.

This package re-exports the core public symbols:
    from strata.engine import NodeGraph, plan, Executor, SnapshotEngine, ...

Project-level helpers (discovery, orchestration) import configuration and
live in their own modules.
"""

from __future__ import annotations

# Errors
from .errors import (
    BuildError,
    ConfigurationError,
    CyclicDependency,
    DuplicateNode,
    HistoryConflict,
    QueryError,
    RecordError,
    StrataError,
    UnresolvedReference,
    ValidationFailure,
    WarehouseConnectionError,
    WarehouseError,
    WarehouseTimeoutError,
)

# Graph and planning
from .graph import Materialization, Node, NodeGraph, NodeKind, SnapshotConfig
from .planner import BuildPlan, plan

# Snapshots
from .change_detection import (
    ChangeDetectionStrategy,
    ChangeKind,
    CheckStrategy,
    HashStrategy,
    SourceRecord,
    TimestampStrategy,
    get_strategy,
)
from .history import DuckDBHistoryStore, HistoryStore, InMemoryHistoryStore, SnapshotVersion
from .snapshot import SnapshotEngine, SnapshotResult

# Execution
from .executor import BuildReport, BuildStatus, Executor, NodeResult, NodeStatus
from .retry import RetryConfig
from .warehouse import DuckDBWarehouse, MaterializeMode, QueryResult, Warehouse, WarehouseSession

# Validation
from .validator import (
    ConstraintValidator,
    TestDefinition,
    TestKind,
    TestReport,
    TestStatus,
    ValidationResult,
)
