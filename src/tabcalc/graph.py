"""Dependency graphs over slot ids and the Kahn's-algorithm scheduler.

An edge ``a -> b`` means "the formula of ``a`` references ``b``".  Each graph
keeps two adjacency maps (depends-on and dependents) so both directions can
be queried in constant time and edits stay incremental.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Iterable, Mapping


@dataclass(frozen=True)
class Schedule:
    """Result of scheduling a node subset.

    Attributes:
        order: Nodes in evaluation order (dependencies first).
        excluded: Nodes that never reached in-degree zero because they are
            on, or downstream of, a cycle.  They are not evaluated by the
            scheduled pass.
    """

    order: list[int] = field(default_factory=list)
    excluded: frozenset[int] = frozenset()

    @property
    def has_cycle(self) -> bool:
        return bool(self.excluded)


def kahn_order(
    nodes: Iterable[int],
    depends_on: dict[int, set[int]],
    dependents: dict[int, set[int]],
) -> Schedule:
    """Topologically order *nodes* using Kahn's algorithm.

    In-degrees count only edges whose two endpoints are both in *nodes*.
    Ready nodes are dequeued in ascending id order so output is
    reproducible.

    Args:
        nodes: The subset of node ids to order.
        depends_on: node -> ids it references.
        dependents: node -> ids that reference it.

    Returns:
        A ``Schedule`` with the order and the cycle-excluded nodes.
    """
    subset = set(nodes)
    in_degree: dict[int, int] = {}
    for node in subset:
        in_degree[node] = sum(1 for dep in depends_on.get(node, ()) if dep in subset)

    ready = [node for node, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    order: list[int] = []
    while ready:
        current = heapq.heappop(ready)
        order.append(current)
        for dependent in dependents.get(current, ()):
            if dependent not in subset:
                continue
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, dependent)

    return Schedule(order=order, excluded=frozenset(subset.difference(order)))


class DependencyGraph:
    """Directed graph of "formula of A references B" edges between slots.

    Usage::

        graph = DependencyGraph()
        graph.add_dependency(1, 0)      # C1's formula references C0
        graph.topological_order([0, 1]) # -> [0, 1]
    """

    def __init__(self) -> None:
        self._depends_on: dict[int, set[int]] = {}
        self._dependents: dict[int, set[int]] = {}
        self._formula_nodes: set[int] = set()

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def add_dependency(self, node: int, depends_on: int) -> None:
        """Record that *node*'s formula references *depends_on*.

        No-op for negative ids or an edge that already exists.
        """
        if node < 0 or depends_on < 0:
            return
        self._formula_nodes.add(node)
        self._depends_on.setdefault(node, set()).add(depends_on)
        self._dependents.setdefault(depends_on, set()).add(node)

    def remove_dependencies(self, node: int) -> None:
        """Remove every outgoing edge of *node* and the mirrored incoming entries.

        Call before re-adding edges for an edited formula, or when the slot
        is deleted.  Edges pointing *at* the node are left in place: the
        formulas that reference it still do, and validation reports them as
        missing dependencies.
        """
        if node < 0:
            return
        self._formula_nodes.discard(node)
        for target in self._depends_on.pop(node, set()):
            incoming = self._dependents.get(target)
            if incoming is None:
                continue
            incoming.discard(node)
            if not incoming:
                del self._dependents[target]

    def set_dependencies(self, node: int, depends_on: Iterable[int]) -> None:
        """Replace *node*'s outgoing edges with *depends_on*."""
        self.remove_dependencies(node)
        for target in depends_on:
            self.add_dependency(node, target)
        if node >= 0:
            self._formula_nodes.add(node)

    def clear(self) -> None:
        """Drop all state."""
        self._depends_on.clear()
        self._dependents.clear()
        self._formula_nodes.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> set[int]:
        """Every id that appears as a formula node or an edge endpoint."""
        out = set(self._formula_nodes)
        out.update(self._depends_on)
        out.update(self._dependents)
        return out

    @property
    def formula_nodes(self) -> set[int]:
        """Ids registered as formula slots."""
        return set(self._formula_nodes)

    def get_dependents(self, node: int) -> set[int]:
        """Nodes whose formulas reference *node*."""
        return set(self._dependents.get(node, ()))

    def get_dependencies(self, node: int) -> set[int]:
        """Nodes that *node*'s formula references."""
        return set(self._depends_on.get(node, ()))

    def has_edge(self, node: int, depends_on: int) -> bool:
        return depends_on in self._depends_on.get(node, ())

    def schedule(self, nodes: Iterable[int] | None = None) -> Schedule:
        """Order *nodes* (default: all nodes) and report cycle-excluded ones."""
        subset = self.nodes if nodes is None else nodes
        return kahn_order(subset, self._depends_on, self._dependents)

    def topological_order(self, nodes: Iterable[int] | None = None) -> list[int]:
        """Evaluation order for *nodes*; nodes on or behind a cycle are omitted."""
        return self.schedule(nodes).order

    def recalculation_order(self, changed: int) -> list[int]:
        """Transitive dependents of *changed*, in evaluation order."""
        return self.topological_order(self.transitive_dependents(changed))

    def transitive_dependents(self, node: int) -> set[int]:
        """Every node that directly or indirectly references *node*."""
        seen: set[int] = set()
        stack = [node]
        while stack:
            current = stack.pop()
            for dependent in self._dependents.get(current, ()):
                if dependent not in seen:
                    seen.add(dependent)
                    stack.append(dependent)
        seen.discard(node)
        return seen

    def will_create_cycle(self, source: int, target: int) -> bool:
        """True if adding ``source -> target`` would close a cycle."""
        if source == target:
            return True
        return source in self._reachable(target)

    def _reachable(self, start: int) -> set[int]:
        """Nodes reachable from *start* along depends-on edges."""
        seen: set[int] = set()
        stack = [start]
        while stack:
            current = stack.pop()
            for dep in self._depends_on.get(current, ()):
                if dep not in seen:
                    seen.add(dep)
                    stack.append(dep)
        return seen

    def find_cycle(self, start: int | None = None) -> list[int] | None:
        """Return one cycle as a node path (first node repeated at the end).

        Args:
            start: If given, only report a cycle that passes through this node.

        Returns:
            The cycle path, e.g. ``[1, 2, 1]``, or ``None``.
        """
        if start is not None:
            return self._cycle_through(start)

        white = set(self.nodes)
        gray: set[int] = set()
        stack: list[int] = []

        def visit(node: int) -> list[int] | None:
            white.discard(node)
            gray.add(node)
            stack.append(node)
            for dep in sorted(self._depends_on.get(node, ())):
                if dep in gray:
                    return stack[stack.index(dep):] + [dep]
                if dep in white:
                    found = visit(dep)
                    if found is not None:
                        return found
            gray.discard(node)
            stack.pop()
            return None

        for node in sorted(self.nodes):
            if node in white:
                found = visit(node)
                if found is not None:
                    return found
        return None

    def _cycle_through(self, start: int) -> list[int] | None:
        # Breadth-first so the shortest loop back to start is reported.
        parents: dict[int, int] = {}
        frontier = [start]
        visited = {start}
        while frontier:
            next_frontier: list[int] = []
            for current in frontier:
                for dep in sorted(self._depends_on.get(current, ())):
                    if dep == start:
                        path = [current]
                        while path[-1] != start:
                            path.append(parents[path[-1]])
                        path.reverse()
                        return path + [start]
                    if dep not in visited:
                        visited.add(dep)
                        parents[dep] = current
                        next_frontier.append(dep)
            frontier = next_frontier
        return None


class VariableDependencyGraph(DependencyGraph):
    """Variable -> variable graph that also tracks variable -> column edges.

    Scheduling only considers variable -> variable edges; column edges are
    kept so that a column edit can find the variables it invalidates.
    """

    def __init__(self) -> None:
        super().__init__()
        self._column_deps: dict[int, set[int]] = {}
        self._column_dependents: dict[int, set[int]] = {}

    def add_variable_dependency(self, variable: int, referenced_variable: int) -> None:
        self.add_dependency(variable, referenced_variable)

    def add_column_dependency(self, variable: int, referenced_column: int) -> None:
        """Record that *variable*'s formula references column *referenced_column*."""
        if variable < 0 or referenced_column < 0:
            return
        self._formula_nodes.add(variable)
        self._column_deps.setdefault(variable, set()).add(referenced_column)
        self._column_dependents.setdefault(referenced_column, set()).add(variable)

    def remove_dependencies(self, node: int) -> None:
        super().remove_dependencies(node)
        for column in self._column_deps.pop(node, set()):
            incoming = self._column_dependents.get(column)
            if incoming is None:
                continue
            incoming.discard(node)
            if not incoming:
                del self._column_dependents[column]

    def clear(self) -> None:
        super().clear()
        self._column_deps.clear()
        self._column_dependents.clear()

    def get_dependent_variables(self, variable: int) -> set[int]:
        return self.get_dependents(variable)

    def get_column_dependencies(self, variable: int) -> set[int]:
        """Column ids that *variable*'s formula references."""
        return set(self._column_deps.get(variable, ()))

    def get_variables_for_column(self, column: int) -> set[int]:
        """Variables whose formulas reference column *column*."""
        return set(self._column_dependents.get(column, ()))

    def evaluation_order(self) -> list[int]:
        """Order of all formula variables, cyclic ones omitted."""
        return self.topological_order(self.formula_nodes)


def cross_graph_excluded(
    column_ids: Iterable[int],
    column_graph: DependencyGraph,
    variable_ids: Iterable[int],
    variable_graph: VariableDependencyGraph,
    column_variable_refs: Mapping[int, Iterable[int]],
) -> tuple[frozenset[int], frozenset[int]]:
    """Schedule columns and variables together and return what is excluded.

    Loops that pass through both a column and a variable (``C1 = V0 + 1``,
    ``V0 = C1 + 1``) are invisible to either graph alone.  Column ``c`` is
    node ``2c`` and variable ``v`` is node ``2v + 1`` in the combined graph.
    Slots already excluded by their own graph are left out, so only loops
    that need both kinds (and what feeds on them) are returned.

    Args:
        column_ids: Columns of the sheet.
        column_graph: Column -> column edges.
        variable_ids: Variables of the sheet.
        variable_graph: Variable -> variable and variable -> column edges.
        column_variable_refs: Column id -> variable ids its formula references.

    Returns:
        ``(excluded column ids, excluded variable ids)``.
    """
    column_ids = set(column_ids)
    variable_ids = set(variable_ids)
    column_ids -= column_graph.schedule(column_ids).excluded
    variable_ids -= variable_graph.schedule(variable_ids).excluded

    combined = DependencyGraph()
    nodes: set[int] = set()
    for column in column_ids:
        nodes.add(2 * column)
        for dep in column_graph.get_dependencies(column):
            combined.add_dependency(2 * column, 2 * dep)
        for variable in column_variable_refs.get(column, ()):
            combined.add_dependency(2 * column, 2 * variable + 1)
    for variable in variable_ids:
        nodes.add(2 * variable + 1)
        for dep in variable_graph.get_dependencies(variable):
            combined.add_dependency(2 * variable + 1, 2 * dep + 1)
        for column in variable_graph.get_column_dependencies(variable):
            combined.add_dependency(2 * variable + 1, 2 * column)

    excluded = combined.schedule(nodes).excluded
    return (
        frozenset(n // 2 for n in excluded if n % 2 == 0),
        frozenset(n // 2 for n in excluded if n % 2 == 1),
    )
