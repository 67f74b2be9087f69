"""
core/orderer.py
---------------
Dependency-aware ordering of schema differences.

Design Decisions:
    * The graph is a pair of adjacency maps over ``schema.name`` keys
      (``depends_on`` and its transpose ``depended_on_by``), built from each
      difference's explicit dependencies plus foreign-key targets found in
      its SQL.
    * Drops are walked on the transposed graph so dependents go first;
      creates and alters are walked on the forward graph.
    * Cycles are logged and broken by skipping the back edge; ordering
      never fails.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from core.sql_utils import split_qualified
from core.table_parser import extract_references
from logger import get_logger
from models.schema import Difference, Operation, make_key

log = get_logger(__name__)


@dataclass
class DependencyGraph:
    """Adjacency maps over difference keys, in first-seen order."""
    nodes: list[str] = field(default_factory=list)
    depends_on: dict[str, list[str]] = field(default_factory=dict)
    depended_on_by: dict[str, list[str]] = field(default_factory=dict)

    def add_node(self, key: str) -> None:
        if key not in self.depends_on:
            self.nodes.append(key)
            self.depends_on[key] = []
            self.depended_on_by.setdefault(key, [])

    def add_edge(self, dependent: str, dependency: str) -> None:
        """Record that *dependent* requires *dependency* to exist first."""
        if dependent == dependency:
            return
        self.add_node(dependent)
        self.add_node(dependency)
        if dependency not in self.depends_on[dependent]:
            self.depends_on[dependent].append(dependency)
            self.depended_on_by[dependency].append(dependent)

    def transpose(self) -> "DependencyGraph":
        return DependencyGraph(
            nodes=list(self.nodes),
            depends_on={k: list(v) for k, v in self.depended_on_by.items()},
            depended_on_by={k: list(v) for k, v in self.depends_on.items()},
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {key: list(self.depends_on[key]) for key in self.nodes}


class DependencyOrderer:
    """
    Order differences so dependencies are honoured.

    Attributes:
        cycles: Cycles found by the most recent :meth:`order` call, each as
                the key path that closed the loop.

    Example::

        orderer = DependencyOrderer()
        ordered = orderer.order(annotated_differences)
        if orderer.cycles:
            print("cycles:", orderer.cycles)
    """

    def __init__(self) -> None:
        self.cycles: list[list[str]] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def order(self, differences: Sequence[Difference]) -> list[Difference]:
        """
        Return *differences* reordered: drops first, then creates and alters.

        The output contains every input difference exactly once and is
        deterministic for a given input order.
        """
        self.cycles = []
        drops = [d for d in differences if d.operation is Operation.DROP]
        for partition in (drops, [d for d in differences if d.operation is not Operation.DROP]):
            keys = [d.key for d in partition]
            if len(keys) != len(set(keys)):
                raise ValueError(f"Duplicate difference keys in one partition: {sorted(keys)}")
        others = [d for d in differences if d.operation is not Operation.DROP]

        ordered_drops = self._walk(drops, self.build_graph(drops).transpose(), "drop")
        ordered_others = self._walk(others, self.build_graph(others), "create/alter")
        return ordered_drops + ordered_others

    def build_graph(self, differences: Sequence[Difference]) -> DependencyGraph:
        """
        Forward dependency graph restricted to keys present in *differences*.

        Edges to objects that are not changing are irrelevant to ordering
        and are left out.
        """
        graph = DependencyGraph()
        present = {d.key for d in differences}
        for diff in differences:
            graph.add_node(diff.key)
        for diff in differences:
            for dependency in self.dependencies_of(diff):
                if dependency in present:
                    graph.add_edge(diff.key, dependency)
        return graph

    @staticmethod
    def dependencies_of(diff: Difference) -> list[str]:
        """Explicit dependencies plus foreign-key targets referenced by the SQL."""
        keys: list[str] = []
        for dep in diff.dependencies:
            key = make_key(*split_qualified(dep, diff.schema))
            if key not in keys:
                keys.append(key)
        if diff.operation is Operation.DROP:
            text = diff.target.definition if diff.target is not None else diff.rollback_sql
        else:
            text = diff.sql
        for key in extract_references(text, diff.schema):
            if key not in keys:
                keys.append(key)
        return [key for key in keys if key != diff.key]

    # ------------------------------------------------------------------
    # Topological walk
    # ------------------------------------------------------------------

    def _walk(
        self,
        differences: Sequence[Difference],
        graph: DependencyGraph,
        label: str,
    ) -> list[Difference]:
        """
        Depth-first post-order over *graph*, dependencies before dependents.

        Iterative, so chain length is bounded only by memory. A neighbour
        that is still on the active path closes a cycle: the cycle is
        recorded and the edge skipped.
        """
        by_key = {d.key: d for d in differences}
        visited: set[str] = set()
        visiting: set[str] = set()
        result: list[Difference] = []

        for diff in differences:
            if diff.key in visited:
                continue
            stack = [(diff.key, iter(graph.depends_on.get(diff.key, ())))]
            visiting.add(diff.key)
            while stack:
                key, neighbours = stack[-1]
                for neighbour in neighbours:
                    if neighbour not in by_key or neighbour in visited:
                        continue
                    if neighbour in visiting:
                        path = [k for k, _ in stack]
                        cycle = path[path.index(neighbour):] + [neighbour]
                        self.cycles.append(cycle)
                        log.warning(
                            "Dependency cycle among %s differences: %s; breaking at %s",
                            label, " -> ".join(cycle), neighbour,
                        )
                        continue
                    visiting.add(neighbour)
                    stack.append((neighbour, iter(graph.depends_on.get(neighbour, ()))))
                    break
                else:
                    stack.pop()
                    visiting.discard(key)
                    visited.add(key)
                    result.append(by_key[key])
        return result
