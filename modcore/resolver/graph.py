"""Dependency graph + deterministic load-order resolution.

The graph is built fresh for every resolution from an immutable list of
descriptors and thrown away afterwards.

Edges are stored as declared (source = declaring package, target = the id it
names). For ordering, ``hard`` and ``soft_after`` edges mean target loads
first; ``soft_before`` means source loads first. ``incompatible`` edges never
order anything.

Algorithm:
  1. Hard edges from `dependencies` (missing required id, unsatisfied version
     constraint and present incompatible package are resolution errors).
  2. Cycle check on the hard graph by DFS three-coloring; a self dependency
     is a cycle of length one.
  3. Soft hints added one by one in discovery order; a hint that would close
     a cycle is dropped with a warning.
  4. Kahn's algorithm; the ready set is a heap keyed by
     (discovery_index, id) so independent packages keep a stable order.
"""
from __future__ import annotations

import heapq
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from modcore.events import emit, LoadOrderResolved, ResolutionFailed
from modcore.exceptions import (
    CircularDependencyError,
    IncompatiblePackagesError,
    MissingDependencyError,
    ResolutionError,
    VersionIncompatibleError,
)
from modcore.log import get_logger
from modcore.registry.manifest import PackageDescriptor

log = get_logger("resolver")

LoadOrder = Tuple[str, ...]

_WHITE, _GREY, _BLACK = 0, 1, 2


class EdgeKind(str, Enum):
    HARD = "hard"
    SOFT_AFTER = "soft_after"
    SOFT_BEFORE = "soft_before"
    INCOMPATIBLE = "incompatible"


@dataclass(frozen=True)
class DependencyEdge:
    source: str
    target: str
    kind: EdgeKind

    def ordering(self) -> Optional[Tuple[str, str]]:
        """(first, second) load-order pair, or None for non-ordering edges."""
        if self.kind in (EdgeKind.HARD, EdgeKind.SOFT_AFTER):
            return (self.target, self.source)
        if self.kind is EdgeKind.SOFT_BEFORE:
            return (self.source, self.target)
        return None


class DependencyGraph:
    def __init__(self, descriptors: Sequence[PackageDescriptor]) -> None:
        self.nodes: Dict[str, PackageDescriptor] = {}
        self._rank: Dict[str, Tuple[int, str]] = {}
        for desc in descriptors:
            if desc.id in self.nodes:
                log.warning("ignoring duplicate descriptor id %s", desc.id)
                continue
            self.nodes[desc.id] = desc
            self._rank[desc.id] = (desc.discovery_index, desc.id)
        self.edges: List[DependencyEdge] = []
        self.dropped: List[DependencyEdge] = []
        self.problems: List[ResolutionError] = []
        self.optional_missing: List[Tuple[str, str]] = []
        # load-order successors: first -> {second}
        self._succ: Dict[str, Set[str]] = {n: set() for n in self.nodes}
        # dependency direction for cycle reporting: dependent -> [deps]
        self._deps: Dict[str, List[str]] = {n: [] for n in self.nodes}

    # --- Construction ----------------------------------------------------
    @classmethod
    def build(
        cls,
        descriptors: Sequence[PackageDescriptor],
        strict: bool = True,
    ) -> "DependencyGraph":
        """Build graph; strict mode raises the first problem found.

        Non-strict mode records every problem in ``problems`` (used by
        validation) and still returns the graph without offending edges.
        """
        graph = cls(descriptors)
        for desc in graph.ordered_nodes():
            for dep in desc.dependencies:
                target = graph.nodes.get(dep.id)
                if target is None:
                    if dep.optional:
                        graph.optional_missing.append((desc.id, dep.id))
                        log.warning(
                            "optional dependency %s of %s not found",
                            dep.id,
                            desc.id,
                        )
                        continue
                    graph._problem(MissingDependencyError(desc.id, dep.id),
                                   strict)
                    continue
                if not dep.constraint.satisfied_by(target.semver):
                    graph._problem(
                        VersionIncompatibleError(
                            desc.id, dep.id, str(dep.constraint),
                            target.version,
                        ),
                        strict,
                    )
                    continue
                graph._add_hard(desc.id, dep.id)
            for inc in desc.incompatible_with:
                if inc.id in graph.nodes and inc.id != desc.id:
                    graph.edges.append(
                        DependencyEdge(desc.id, inc.id, EdgeKind.INCOMPATIBLE)
                    )
                    graph._problem(
                        IncompatiblePackagesError(desc.id, inc.id, inc.reason),
                        strict,
                    )
        cycle = graph.find_cycle()
        if cycle:
            graph._problem(CircularDependencyError(cycle), strict)
            return graph
        graph._add_soft_hints()
        return graph

    def _problem(self, err: ResolutionError, strict: bool) -> None:
        if strict:
            raise err
        self.problems.append(err)

    def _add_hard(self, source: str, target: str) -> None:
        self.edges.append(DependencyEdge(source, target, EdgeKind.HARD))
        self._deps[source].append(target)
        if source != target:
            self._succ[target].add(source)

    def _add_soft_hints(self) -> None:
        for desc in self.ordered_nodes():
            hints = [
                DependencyEdge(desc.id, other, EdgeKind.SOFT_AFTER)
                for other in desc.load_after
            ] + [
                DependencyEdge(desc.id, other, EdgeKind.SOFT_BEFORE)
                for other in desc.load_before
            ]
            for edge in hints:
                if edge.target not in self.nodes:
                    log.debug(
                        "ordering hint %s -> %s ignored (not present)",
                        edge.source,
                        edge.target,
                    )
                    continue
                self.add_soft(edge)

    def add_soft(self, edge: DependencyEdge) -> bool:
        """Add a soft ordering edge unless it would introduce a cycle."""
        pair = edge.ordering()
        if pair is None:
            return False
        first, second = pair
        if first == second or self.reaches(second, first):
            self.dropped.append(edge)
            log.warning(
                "dropping %s hint %s -> %s: would create a cycle",
                edge.kind.value,
                edge.source,
                edge.target,
            )
            return False
        self.edges.append(edge)
        self._succ[first].add(second)
        return True

    # --- Queries -----------------------------------------------------------
    def ordered_nodes(self) -> List[PackageDescriptor]:
        return [self.nodes[n] for n in sorted(self.nodes, key=self._rank.get)]

    def reaches(self, start: str, goal: str) -> bool:
        """True if `goal` must load after `start` under current edges."""
        stack = [start]
        seen: Set[str] = set()
        while stack:
            node = stack.pop()
            if node == goal:
                return True
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._succ.get(node, ()))
        return False

    def find_cycle(self) -> Optional[List[str]]:
        """Return the first dependency cycle as [A, B, ..., A], or None.

        Walks dependent -> dependency so the chain reads "A needs B needs
        ... needs A".
        """
        color = {n: _WHITE for n in self.nodes}
        for desc in self.ordered_nodes():
            if color[desc.id] != _WHITE:
                continue
            # explicit stack: long chains must not hit the recursion limit
            path: List[str] = [desc.id]
            stack = [(desc.id, iter(self._deps.get(desc.id, ())))]
            color[desc.id] = _GREY
            while stack:
                node, deps = stack[-1]
                nxt = next(deps, None)
                if nxt is None:
                    stack.pop()
                    path.pop()
                    color[node] = _BLACK
                    continue
                if color[nxt] == _GREY:
                    return path[path.index(nxt):] + [nxt]
                if color[nxt] == _WHITE:
                    color[nxt] = _GREY
                    path.append(nxt)
                    stack.append((nxt, iter(self._deps.get(nxt, ()))))
        return None

    def topological_order(self) -> LoadOrder:
        indegree = {n: 0 for n in self.nodes}
        for succs in self._succ.values():
            for s in succs:
                indegree[s] += 1
        ready = [self._rank[n] for n, d in indegree.items() if d == 0]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for nxt in self._succ[node]:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    heapq.heappush(ready, self._rank[nxt])
        if len(order) != len(self.nodes):
            # unreachable when build() succeeded; kept as a hard guard
            unresolved = [n for n in self.nodes if n not in set(order)]
            raise CircularDependencyError(unresolved + unresolved[:1])
        return tuple(order)

    def dependents_of(self, mod_id: str) -> List[str]:
        return [
            e.source
            for e in self.edges
            if e.kind is EdgeKind.HARD and e.target == mod_id
        ]


def dependents_of(
    mod_id: str, descriptors: Iterable[PackageDescriptor]
) -> List[str]:
    """Ids of packages declaring any dependency (optional too) on `mod_id`."""
    return [
        d.id
        for d in descriptors
        if d.id != mod_id and any(dep.id == mod_id for dep in d.dependencies)
    ]


class DependencyGraphResolver:
    """Pure resolution over a descriptor snapshot (no retained graph)."""

    def __init__(self) -> None:
        self.last_dropped_edges: List[DependencyEdge] = []

    def resolve_load_order(
        self, descriptors: Sequence[PackageDescriptor]
    ) -> LoadOrder:
        log.info("resolving load order for %d mods", len(descriptors))
        try:
            graph = DependencyGraph.build(descriptors, strict=True)
            order = graph.topological_order()
        except ResolutionError as e:
            log.error("load order resolution failed: %s", e)
            emit(
                ResolutionFailed(
                    error_type=e.error_type,
                    message=str(e),
                    mod_ids=list(e.mod_ids),
                )
            )
            raise
        self.last_dropped_edges = list(graph.dropped)
        log.info("load order: %s", ", ".join(order) or "<empty>")
        emit(
            LoadOrderResolved(
                order=list(order), dropped_soft_edges=len(graph.dropped)
            )
        )
        return order


__all__ = [
    "EdgeKind",
    "DependencyEdge",
    "DependencyGraph",
    "DependencyGraphResolver",
    "LoadOrder",
    "dependents_of",
]
