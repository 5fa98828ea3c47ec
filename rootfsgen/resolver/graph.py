"""Build graph.

Packages are stored in an arena: a list of nodes addressed by index, with a
name-to-index map and per-node adjacency lists. An edge A -> B means
"A depends on B", so B must be built before A.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterator

from rootfsgen.resolver.errors import CircularDependencyError
from rootfsgen.types import PackageDescriptor

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


class BuildGraph:
    """Directed acyclic graph of resolved packages."""

    def __init__(self) -> None:
        self._nodes: list[PackageDescriptor] = []
        self._index: dict[str, int] = {}
        self._deps: list[set[int]] = []
        self._rdeps: list[set[int]] = []

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __iter__(self) -> Iterator[PackageDescriptor]:
        return iter(self._nodes)

    @property
    def names(self) -> list[str]:
        """Package names in insertion order."""
        return [node.name for node in self._nodes]

    def add_package(self, package: PackageDescriptor) -> int:
        """Add a package node and return its index.

        Raises:
            ValueError: If a package with the same name is already present.
        """
        if package.name in self._index:
            raise ValueError(f"Package already in graph: {package.name}")
        idx = len(self._nodes)
        self._nodes.append(package)
        self._index[package.name] = idx
        self._deps.append(set())
        self._rdeps.append(set())
        return idx

    def add_dependency(self, package: str, dependency: str) -> None:
        """Record that package depends on dependency.

        Raises:
            KeyError: If either name is not in the graph.
        """
        src, dst = self._index[package], self._index[dependency]
        self._deps[src].add(dst)
        self._rdeps[dst].add(src)

    def get(self, name: str) -> PackageDescriptor:
        """Return the package node for name.

        Raises:
            KeyError: If name is not in the graph.
        """
        return self._nodes[self._index[name]]

    def dependencies(self, name: str) -> list[str]:
        """Direct dependencies of name, sorted."""
        return sorted(self._nodes[i].name for i in self._deps[self._index[name]])

    def dependents(self, name: str) -> list[str]:
        """Packages that directly depend on name, sorted."""
        return sorted(self._nodes[i].name for i in self._rdeps[self._index[name]])

    def transitive_dependencies(self, name: str) -> set[str]:
        """Every package reachable from name through depends edges."""
        seen: set[int] = set()
        stack = list(self._deps[self._index[name]])
        while stack:
            idx = stack.pop()
            if idx in seen:
                continue
            seen.add(idx)
            stack.extend(self._deps[idx])
        return {self._nodes[i].name for i in seen}

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as a name path (first == last), or None."""
        marks = [_UNVISITED] * len(self._nodes)
        order = sorted(range(len(self._nodes)), key=lambda i: self._nodes[i].name)

        for root in order:
            if marks[root] != _UNVISITED:
                continue
            # Iterative DFS; path mirrors the in-progress chain
            path: list[int] = [root]
            marks[root] = _IN_PROGRESS
            stack: list[Iterator[int]] = [iter(sorted(self._deps[root], key=self._name_of))]
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    marks[path.pop()] = _DONE
                    continue
                if marks[child] == _IN_PROGRESS:
                    start = path.index(child)
                    return [self._nodes[i].name for i in path[start:]] + [
                        self._nodes[child].name
                    ]
                if marks[child] == _UNVISITED:
                    marks[child] = _IN_PROGRESS
                    path.append(child)
                    stack.append(iter(sorted(self._deps[child], key=self._name_of)))
        return None

    def topological_order(self) -> list[str]:
        """Return names with every dependency before its dependents.

        Ties between ready packages are broken by name, so the order is
        deterministic for a given graph.

        Raises:
            CircularDependencyError: If the graph contains a cycle.
        """
        remaining = [len(deps) for deps in self._deps]
        ready = [self._nodes[i].name for i, n in enumerate(remaining) if n == 0]
        heapq.heapify(ready)
        order: list[str] = []

        while ready:
            name = heapq.heappop(ready)
            order.append(name)
            for dependent in self._rdeps[self._index[name]]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, self._nodes[dependent].name)

        if len(order) != len(self._nodes):
            cycle = self.find_cycle() or sorted(set(self.names) - set(order))
            raise CircularDependencyError(cycle)
        return order

    def _name_of(self, idx: int) -> str:
        return self._nodes[idx].name


__all__ = ["BuildGraph"]
