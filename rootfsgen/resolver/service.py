"""Dependency resolution service.

This module provides the high-level resolution API:
- resolve(): manifest + package source -> build graph + lock file
- Depth-first closure over depends with three-state marks for cycle detection
- Version selection: highest version satisfying every request, restarting
  with a hint when a later request invalidates an earlier choice
- Local packages take priority over registry versions
- Board compatibility checks (architecture and required capabilities)
- Conflicts between resolved packages

Resolution has no side effects; callers decide whether to write the lock.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from rootfsgen.project.lockfile import LockEntry, LockFile
from rootfsgen.project.schema import ManifestSchema
from rootfsgen.registry.client import PackageNotFoundError
from rootfsgen.registry.lookup import PackageSource
from rootfsgen.resolver.errors import (
    BoardIncompatibleError,
    CircularDependencyError,
    NoMatchingVersionError,
    PackageConflictError,
    ResolutionError,
    UnknownPackageError,
    VersionConflictError,
)
from rootfsgen.resolver.graph import BuildGraph
from rootfsgen.resolver.versions import parse_requirement, satisfies, select_version
from rootfsgen.types import BoardDescriptor, PackageDescriptor

logger = logging.getLogger(__name__)

DEFAULT_TARGET = "x86_64-linux-musl"
MANIFEST_REQUESTER = "manifest"

# Upper bound on hint restarts; each restart pins one more package
MAX_RESTARTS = 256

_IN_PROGRESS, _DONE = 1, 2

# Architecture wildcards accepted in a package's arch list
_ANY_ARCH = {"any", "all", "*"}


@dataclass
class Resolution:
    """Result of resolving a manifest.

    Attributes:
        graph: Build graph of every reachable package.
        lock: Lock file describing the resolution.
        board: Selected board, if any.
        target: Target triple the packages are built for.
        roots: Names requested directly by the manifest or board.
    """

    graph: BuildGraph
    lock: LockFile
    board: BoardDescriptor | None
    target: str
    roots: list[str] = field(default_factory=list)

    @property
    def order(self) -> list[str]:
        """Deterministic build order."""
        return self.graph.topological_order()


class _Restart(Exception):
    """Internal: restart the walk preferring version for name."""

    def __init__(self, name: str, version: str) -> None:
        super().__init__(f"restart with {name}@{version}")
        self.name = name
        self.version = version


class _Walk:
    """One depth-first pass over the dependency closure."""

    def __init__(self, source: PackageSource, hints: dict[str, str]) -> None:
        self.source = source
        self.hints = hints
        self.chosen: dict[str, PackageDescriptor] = {}
        self.requests: dict[str, list[tuple[str, str]]] = defaultdict(list)
        self.marks: dict[str, int] = {}
        self.path: list[str] = []

    def visit(self, name: str, requester: str, constraint: str) -> None:
        self.requests[name].append((requester, constraint))
        mark = self.marks.get(name)

        if mark == _IN_PROGRESS:
            start = self.path.index(name)
            raise CircularDependencyError([*self.path[start:], name])

        if mark == _DONE:
            self._recheck(name, requester, constraint)
            return

        package = self._choose(name, requester, constraint)
        self.chosen[name] = package
        self.marks[name] = _IN_PROGRESS
        self.path.append(name)
        for requirement in package.depends:
            dep_name, dep_constraint = parse_requirement(requirement)
            self.visit(dep_name, name, dep_constraint)
        self.path.pop()
        self.marks[name] = _DONE

    def _choose(self, name: str, requester: str, constraint: str) -> PackageDescriptor:
        if self.source.is_local(name):
            version = self.source.available_versions(name)[0]
            if not satisfies(version, constraint):
                logger.warning(
                    "Using local %s@%s although %s requires %s",
                    name,
                    version,
                    requester,
                    constraint,
                )
            return self.source.get_package(name, version)

        try:
            available = self.source.available_versions(name)
        except PackageNotFoundError as e:
            raise UnknownPackageError(name, requester) from e

        version = select_version(available, [constraint], hint=self.hints.get(name))
        if version is None:
            raise NoMatchingVersionError(name, constraint, requester, available)
        logger.debug("Selected %s@%s for %s (%s)", name, version, requester, constraint)
        try:
            return self.source.get_package(name, version)
        except PackageNotFoundError as e:
            raise UnknownPackageError(f"{name}@{version}", requester) from e

    def _recheck(self, name: str, requester: str, constraint: str) -> None:
        package = self.chosen[name]
        if satisfies(package.version, constraint):
            return
        if self.source.is_local(name):
            logger.warning(
                "Using local %s@%s although %s requires %s",
                name,
                package.version,
                requester,
                constraint,
            )
            return

        requests = self.requests[name]
        available = self.source.available_versions(name)
        common = select_version(available, [c for _, c in requests])
        if common is None or common == package.version:
            raise VersionConflictError(name, list(requests), available)
        raise _Restart(name, common)


def _check_board(
    packages: list[PackageDescriptor],
    board: BoardDescriptor,
) -> None:
    """Check every package against the board.

    Raises:
        BoardIncompatibleError: On the first incompatible package.
    """
    provided = {p.name for p in packages}
    for package in packages:
        provided.update(package.provides)
    features = set(board.features)

    for package in packages:
        arch = set(package.arch)
        if arch and not arch & _ANY_ARCH and board.target not in arch and board.arch not in arch:
            raise BoardIncompatibleError(
                package.name,
                board.name,
                f"supports {', '.join(sorted(arch))}, board target is {board.target}",
            )
        for capability in package.requires:
            if capability not in features and capability not in provided:
                raise BoardIncompatibleError(
                    package.name,
                    board.name,
                    f"requires '{capability}', which neither the board nor any "
                    "resolved package provides",
                )


def _check_conflicts(packages: list[PackageDescriptor]) -> None:
    """Reject a graph holding a package and something it conflicts with.

    A conflict names a package or a capability; capabilities match any
    package that provides them.
    """
    owners: dict[str, list[str]] = defaultdict(list)
    for package in packages:
        owners[package.name].append(package.name)
        for capability in package.provides:
            owners[capability].append(package.name)

    for package in packages:
        for conflict in package.conflicts:
            conflict_name, _ = parse_requirement(conflict)
            for other in owners.get(conflict_name, []):
                if other != package.name:
                    raise PackageConflictError(package.name, other)


def lock_from_graph(graph: BuildGraph) -> LockFile:
    """Build the lock file for a resolved graph."""
    return LockFile(
        LockEntry(
            name=package.name,
            version=package.version,
            checksum=package.checksum,
            source=package.source.render(),
            dependencies=tuple(graph.dependencies(package.name)),
        )
        for package in graph
    )


def resolve(
    manifest: ManifestSchema,
    source: PackageSource,
    board: BoardDescriptor | None = None,
    default_target: str = DEFAULT_TARGET,
    preferred: dict[str, str] | None = None,
) -> Resolution:
    """Resolve a manifest into a build graph and lock file.

    Args:
        manifest: Validated manifest.
        source: Package source (local-first lookup).
        board: Board descriptor, if the project selects one.
        default_target: Target triple used when there is no board.
        preferred: Versions to keep when they still satisfy every request
            (usually the existing lock file).

    Returns:
        Resolution with graph, lock file, board and target.

    Raises:
        UnknownPackageError: If a package cannot be found.
        NoMatchingVersionError: If no version satisfies a single request.
        VersionConflictError: If requests for one package cannot all be met.
        CircularDependencyError: If depends edges form a cycle.
        BoardIncompatibleError: If a package cannot be built for the board.
        PackageConflictError: If two resolved packages conflict.
    """
    roots: list[tuple[str, str, str]] = [
        (MANIFEST_REQUESTER, name, constraint)
        for name, constraint in manifest.requested_packages()
    ]
    if board is not None:
        for requirement in board.requires:
            name, constraint = parse_requirement(requirement)
            roots.append((f"board {board.name}", name, constraint))

    hints = dict(preferred or {})
    for _ in range(MAX_RESTARTS):
        walk = _Walk(source, hints)
        try:
            for requester, name, constraint in roots:
                walk.visit(name, requester, constraint)
        except _Restart as restart:
            logger.debug("Restarting resolution: %s", restart)
            hints[restart.name] = restart.version
            continue
        break
    else:
        raise ResolutionError(
            "Dependency resolution did not converge", code="resolution_diverged"
        )

    graph = BuildGraph()
    for name in sorted(walk.chosen):
        graph.add_package(walk.chosen[name])
    for package in graph:
        for requirement in package.depends:
            dep_name, _ = parse_requirement(requirement)
            graph.add_dependency(package.name, dep_name)

    # Raises CircularDependencyError if the closure walk missed a cycle
    graph.topological_order()

    _check_conflicts(list(graph))

    if board is not None:
        _check_board(list(graph), board)

    target = board.target if board is not None else default_target
    logger.info(
        "Resolved %d package(s) for %s",
        len(graph),
        board.name if board is not None else target,
    )
    return Resolution(
        graph=graph,
        lock=lock_from_graph(graph),
        board=board,
        target=target,
        roots=sorted({name for _, name, _ in roots}),
    )


__all__ = [
    "DEFAULT_TARGET",
    "Resolution",
    "lock_from_graph",
    "resolve",
]
