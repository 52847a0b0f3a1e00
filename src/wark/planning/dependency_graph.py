"""Deterministic in-memory view of the ticket dependency graph."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator, Sequence, Set
from heapq import heapify, heappop, heappush


class CycleError(ValueError):
    """Raised when a cycle is detected in the dependency graph."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "Dependency graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Dependency graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class DependencyGraph:
    """Directed graph of ``ticket -> depends_on`` edges keyed by ticket key."""

    __slots__ = ("_nodes", "_dependencies", "_dependents")

    def __init__(
        self,
        nodes: Iterable[str] | None = None,
        edges: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        self._nodes: set[str] = set()
        self._dependencies: dict[str, set[str]] = {}
        self._dependents: dict[str, set[str]] = {}

        if nodes is not None:
            for node_id in nodes:
                self.add_node(node_id)

        if edges is not None:
            for ticket, depends_on in edges:
                self.add_dependency(ticket, depends_on)

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(sorted(self._nodes))

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """All edges as ``(ticket, depends_on)`` pairs in deterministic order."""
        return tuple(
            (ticket, depends_on)
            for ticket in sorted(self._nodes)
            for depends_on in sorted(self._dependencies[ticket])
        )

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def add_node(self, node_id: str) -> None:
        self._validate_node_id(node_id)
        if node_id in self._nodes:
            return
        self._nodes.add(node_id)
        self._dependencies[node_id] = set()
        self._dependents[node_id] = set()

    def remove_node(self, node_id: str) -> None:
        """Remove a node and every edge touching it."""
        self._assert_node_exists(node_id)
        for depends_on in tuple(self._dependencies[node_id]):
            self._dependents[depends_on].discard(node_id)
        for dependent in tuple(self._dependents[node_id]):
            self._dependencies[dependent].discard(node_id)
        del self._dependencies[node_id]
        del self._dependents[node_id]
        self._nodes.remove(node_id)

    def add_dependency(self, ticket: str, depends_on: str) -> None:
        """Record that ``ticket`` cannot start until ``depends_on`` is closed."""
        self.add_node(ticket)
        self.add_node(depends_on)
        self._dependencies[ticket].add(depends_on)
        self._dependents[depends_on].add(ticket)

    def remove_dependency(self, ticket: str, depends_on: str) -> None:
        self._assert_node_exists(ticket)
        self._assert_node_exists(depends_on)
        self._dependencies[ticket].discard(depends_on)
        self._dependents[depends_on].discard(ticket)

    def find_path(self, start: str, target: str) -> tuple[str, ...] | None:
        """Shortest ``start -> ... -> target`` path along depends-on edges, if any."""
        if start not in self._nodes or target not in self._nodes:
            return None
        previous: dict[str, str | None] = {start: None}
        queue: deque[str] = deque([start])
        while queue:
            node = queue.popleft()
            if node == target:
                path: list[str] = []
                cursor: str | None = node
                while cursor is not None:
                    path.append(cursor)
                    cursor = previous[cursor]
                return tuple(reversed(path))
            for depends_on in sorted(self._dependencies[node]):
                if depends_on not in previous:
                    previous[depends_on] = node
                    queue.append(depends_on)
        return None

    def cycle_if_added(self, ticket: str, depends_on: str) -> tuple[str, ...] | None:
        """Closed cycle path the edge ``ticket -> depends_on`` would create, else ``None``."""
        if ticket == depends_on:
            return (ticket, ticket)
        path = self.find_path(depends_on, ticket)
        if path is None:
            return None
        return (ticket, *path)

    def topological_order(self) -> tuple[str, ...]:
        """Prerequisites first; ties broken by key. Raises ``CycleError``."""
        indegree: dict[str, int] = {node: len(self._dependencies[node]) for node in self._nodes}
        ready: list[str] = [node for node, degree in indegree.items() if degree == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            node = heappop(ready)
            order.append(node)
            for dependent in sorted(self._dependents[node]):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heappush(ready, dependent)

        if len(order) != len(self._nodes):
            raise CycleError(self.detect_cycles())
        return tuple(order)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect directed cycles.

        Returns cycle paths as closed paths, e.g. ``("A-1", "A-2", "A-1")``.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in sorted(self._nodes):
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = len(stack) - 1
            frames: list[tuple[str, Iterator[str]]] = [
                (start, iter(sorted(self._dependencies[start])))
            ]

            while frames:
                node, child_iter = frames[-1]
                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(sorted(self._dependencies[child]))))
                    continue

                if child_state == 1:
                    cycle = tuple(stack[stack_index[child] :] + [child])
                    cycles[self._canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def get_dependencies(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        self._assert_node_exists(node_id)
        if not transitive:
            return tuple(sorted(self._dependencies[node_id]))
        return self._transitive_closure(node_id, upstream=True)

    def get_dependents(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        self._assert_node_exists(node_id)
        if not transitive:
            return tuple(sorted(self._dependents[node_id]))
        return self._transitive_closure(node_id, upstream=False)

    def unblocked(self, closed: Set[str]) -> tuple[str, ...]:
        """Open nodes whose every dependency is in ``closed``."""
        return tuple(
            node
            for node in sorted(self._nodes)
            if node not in closed and self._dependencies[node] <= closed
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "nodes": list(self.nodes),
            "edges": [list(edge) for edge in self.edges],
        }

    def _transitive_closure(self, node_id: str, *, upstream: bool) -> tuple[str, ...]:
        adjacency = self._dependencies if upstream else self._dependents
        visited: set[str] = set()
        pending: list[str] = list(adjacency[node_id])
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            pending.extend(neighbor for neighbor in adjacency[node] if neighbor not in visited)
        return tuple(sorted(visited))

    @staticmethod
    def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
        if len(cycle) < 2:
            raise ValueError("Cycle path must contain at least two nodes.")

        core = tuple(cycle[:-1])
        if len(core) == 1:
            return (core[0], core[0])

        best = core
        for offset in range(1, len(core)):
            rotated = core[offset:] + core[:offset]
            if rotated < best:
                best = rotated
        return best + (best[0],)

    @staticmethod
    def _validate_node_id(node_id: str) -> None:
        if not isinstance(node_id, str) or not node_id:
            raise ValueError("Node ID must be a non-empty string.")

    def _assert_node_exists(self, node_id: str) -> None:
        if node_id not in self._nodes:
            raise KeyError(f"Unknown node: {node_id}")


__all__ = ["CycleError", "DependencyGraph"]
