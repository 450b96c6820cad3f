"""Node graph: typed registry of buildable entities and their dependency edges.

Nodes reference each other by qualified name (``schema.name``). Names are
resolved once, in ``resolve_dependencies``, into index tuples; everything
downstream (planner, executor) works on indices.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import CyclicDependency, DuplicateNode, UnresolvedReference

logger = logging.getLogger("strata.graph")


class NodeKind(str, Enum):
    SOURCE = "source"
    SNAPSHOT = "snapshot"
    MODEL = "model"


class Materialization(str, Enum):
    TABLE = "table"
    VIEW = "view"
    INCREMENTAL = "incremental"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class SnapshotConfig:
    """How a snapshot node detects change and handles disappearing keys."""

    unique_key: tuple[str, ...]
    strategy: str = "check"  # "check", "hash", or "timestamp"
    updated_at: str | None = None  # None = use the build timestamp
    check_cols: tuple[str, ...] | None = None  # None = all payload columns
    invalidate_hard_deletes: bool = False


@dataclass(frozen=True)
class Node:
    """A buildable unit of the graph."""

    name: str  # qualified, e.g. "gold.dim_customers"
    kind: NodeKind
    depends_on: tuple[str, ...] = ()
    query: str = ""
    materialized: Materialization | None = None  # None for sources
    unique_key: tuple[str, ...] = ()  # incremental merge key
    snapshot: SnapshotConfig | None = None
    description: str = ""
    path: Path | None = None

    @property
    def schema(self) -> str:
        return self.name.split(".", 1)[0] if "." in self.name else "main"

    @property
    def relation(self) -> str:
        """The warehouse relation this node reads from or writes to."""
        return self.name

    @property
    def executable(self) -> bool:
        return self.kind is not NodeKind.SOURCE


class NodeGraph:
    """Insertion-ordered registry of nodes with resolved dependency indices."""

    def __init__(self) -> None:
        self._nodes: list[Node] = []
        self._index: dict[str, int] = {}
        self._deps: list[tuple[int, ...]] | None = None
        self._dependents: list[tuple[int, ...]] | None = None

    @classmethod
    def from_nodes(cls, nodes: list[Node]) -> NodeGraph:
        graph = cls()
        for node in nodes:
            graph.add_node(node)
        graph.resolve_dependencies()
        return graph

    def add_node(self, node: Node) -> None:
        if node.name in self._index:
            raise DuplicateNode(node.name)
        self._index[node.name] = len(self._nodes)
        self._nodes.append(node)
        # Any earlier resolution no longer covers the new node
        self._deps = None
        self._dependents = None

    def resolve_dependencies(self) -> None:
        """Resolve dependency names to indices and reject cycles."""
        deps: list[tuple[int, ...]] = []
        for node in self._nodes:
            resolved = []
            for dep in node.depends_on:
                idx = self._index.get(dep)
                if idx is None:
                    raise UnresolvedReference(dep, referenced_by=node.name)
                if idx not in resolved:
                    resolved.append(idx)
            deps.append(tuple(resolved))

        cycle = find_cycle(deps)
        if cycle is not None:
            raise CyclicDependency([self._nodes[i].name for i in cycle])

        dependents: list[list[int]] = [[] for _ in self._nodes]
        for idx, node_deps in enumerate(deps):
            for dep in node_deps:
                dependents[dep].append(idx)

        self._deps = deps
        self._dependents = [tuple(d) for d in dependents]
        logger.debug("Resolved %d nodes", len(self._nodes))

    @property
    def resolved(self) -> bool:
        return self._deps is not None

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def get(self, name: str) -> Node:
        return self._nodes[self.index_of(name)]

    def index_of(self, name: str) -> int:
        idx = self._index.get(name)
        if idx is None:
            raise UnresolvedReference(name)
        return idx

    def node_at(self, idx: int) -> Node:
        return self._nodes[idx]

    def dependency_indices(self, idx: int) -> tuple[int, ...]:
        return self._require_resolved()[0][idx]

    def dependent_indices(self, idx: int) -> tuple[int, ...]:
        return self._require_resolved()[1][idx]

    def dependencies(self, name: str) -> list[Node]:
        return [self._nodes[i] for i in self.dependency_indices(self.index_of(name))]

    def dependents(self, name: str) -> list[Node]:
        return [self._nodes[i] for i in self.dependent_indices(self.index_of(name))]

    def upstream_closure(self, names: list[str]) -> set[int]:
        """Indices of the given nodes plus everything they transitively depend on."""
        deps, _ = self._require_resolved()
        return _closure([self.index_of(n) for n in names], deps)

    def downstream_closure(self, names: list[str]) -> set[int]:
        """Indices of the given nodes plus everything that transitively depends on them."""
        _, dependents = self._require_resolved()
        return _closure([self.index_of(n) for n in names], dependents)

    def _require_resolved(self) -> tuple[list[tuple[int, ...]], list[tuple[int, ...]]]:
        if self._deps is None or self._dependents is None:
            self.resolve_dependencies()
        assert self._deps is not None and self._dependents is not None
        return self._deps, self._dependents


def _closure(start: list[int], edges: list[tuple[int, ...]]) -> set[int]:
    seen: set[int] = set()
    stack = list(start)
    while stack:
        idx = stack.pop()
        if idx in seen:
            continue
        seen.add(idx)
        stack.extend(edges[idx])
    return seen


def find_cycle(deps: list[tuple[int, ...]]) -> list[int] | None:
    """Depth-first search for a cycle. Returns the cycle path, closed on its first node.

    Iterative so deep chains don't hit the recursion limit.
    """
    done: set[int] = set()
    for root in range(len(deps)):
        if root in done:
            continue
        path: list[int] = [root]
        in_progress: set[int] = {root}
        iters = [iter(deps[root])]
        while iters:
            nxt = next(iters[-1], None)
            if nxt is None:
                finished = path.pop()
                in_progress.discard(finished)
                done.add(finished)
                iters.pop()
                continue
            if nxt in in_progress:
                start = path.index(nxt)
                return path[start:] + [nxt]
            if nxt in done:
                continue
            path.append(nxt)
            in_progress.add(nxt)
            iters.append(iter(deps[nxt]))
    return None
