"""Build planner: turn a node graph into ordered batches.

Layered Kahn's algorithm. Every node with no unbuilt dependency forms the
next batch; the batch is removed and the process repeats. Nodes in one batch
have no dependency relation between them and may run concurrently.

Source nodes are external relations. They are part of the graph (so
references to them resolve) but are never built and never occupy a batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import CyclicDependency
from .graph import Node, NodeGraph, find_cycle

logger = logging.getLogger("strata.planner")


@dataclass
class BuildPlan:
    """Ordered batches of nodes to build."""

    batches: list[list[Node]] = field(default_factory=list)
    sources: list[Node] = field(default_factory=list)
    targets: list[str] | None = None  # None = full plan

    @property
    def selective(self) -> bool:
        return self.targets is not None

    @property
    def nodes(self) -> list[Node]:
        return [n for batch in self.batches for n in batch]

    def batch_index(self) -> dict[str, int]:
        return {n.name: i for i, batch in enumerate(self.batches) for n in batch}

    def __len__(self) -> int:
        return sum(len(b) for b in self.batches)


def _select(graph: NodeGraph, targets: list[str]) -> set[int]:
    """Resolve target selectors to node indices.

    ``name``   the node and everything upstream of it
    ``+name``  additionally everything downstream of it (and their upstream)
    """
    selected: set[int] = set()
    for target in targets:
        if target.startswith("+"):
            name = target[1:]
            downstream = graph.downstream_closure([name])
            selected |= graph.upstream_closure([graph.node_at(i).name for i in downstream])
        else:
            selected |= graph.upstream_closure([target])
    return selected


def plan(graph: NodeGraph, targets: list[str] | None = None) -> BuildPlan:
    """Build a full plan, or a selective one covering ``targets`` and their upstream."""
    if not graph.resolved:
        graph.resolve_dependencies()

    if targets:
        selected = _select(graph, targets)
    else:
        selected = set(range(len(graph)))

    sources = [graph.node_at(i) for i in sorted(selected) if not graph.node_at(i).executable]
    members = [i for i in sorted(selected) if graph.node_at(i).executable]
    member_set = set(members)

    in_degree: dict[int, int] = {}
    for i in members:
        in_degree[i] = sum(1 for d in graph.dependency_indices(i) if d in member_set)

    batches: list[list[Node]] = []
    remaining = set(members)
    while remaining:
        ready = [i for i in members if i in remaining and in_degree[i] == 0]
        if not ready:
            # Only reachable if the graph changed under us; resolve_dependencies rejects cycles
            deps = [
                tuple(d for d in graph.dependency_indices(i) if d in remaining) if i in remaining else ()
                for i in range(len(graph))
            ]
            cycle = find_cycle(deps) or sorted(remaining)
            raise CyclicDependency([graph.node_at(i).name for i in cycle])
        batches.append([graph.node_at(i) for i in ready])
        for i in ready:
            remaining.discard(i)
            for dependent in graph.dependent_indices(i):
                if dependent in in_degree:
                    in_degree[dependent] -= 1

    logger.debug(
        "Planned %d nodes in %d batches (%s)",
        len(members), len(batches), "selective" if targets else "full",
    )
    return BuildPlan(batches=batches, sources=sources, targets=list(targets) if targets else None)
