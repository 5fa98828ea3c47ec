"""Resolution errors.

Every error raised while turning a manifest into a build graph derives from
ResolutionError and is raised before any build side effect happens.
"""

from __future__ import annotations


class ResolutionError(Exception):
    """Base error for dependency resolution."""

    def __init__(self, message: str, code: str = "resolution_error") -> None:
        super().__init__(message)
        self.code = code


class UnknownPackageError(ResolutionError):
    """Raised when a package name is found neither locally nor in the registry."""

    def __init__(self, name: str, requested_by: str | None = None) -> None:
        message = f"Unknown package: {name}"
        if requested_by:
            message += f" (required by {requested_by})"
        super().__init__(message, code="unknown_package")
        self.name = name
        self.requested_by = requested_by


class InvalidConstraintError(ResolutionError):
    """Raised when a version constraint cannot be parsed."""

    def __init__(self, constraint: str, reason: str) -> None:
        super().__init__(
            f"Invalid version constraint '{constraint}': {reason}",
            code="invalid_constraint",
        )
        self.constraint = constraint


class VersionConflictError(ResolutionError):
    """Raised when no single version satisfies every request for a package."""

    def __init__(
        self,
        name: str,
        requests: list[tuple[str, str]],
        available: list[str] | None = None,
    ) -> None:
        """Initialize VersionConflictError.

        Args:
            name: Package whose requests conflict.
            requests: (requester, constraint) pairs that cannot all be met.
            available: Versions that were considered.
        """
        details = ", ".join(f"{who} requires {name}@{c}" for who, c in requests)
        message = f"Version conflict for {name}: {details}"
        if available:
            message += f" (available: {', '.join(available)})"
        super().__init__(message, code="version_conflict")
        self.name = name
        self.requests = requests
        self.available = available or []


class NoMatchingVersionError(ResolutionError):
    """Raised when no published version satisfies a constraint."""

    def __init__(self, name: str, constraint: str, requested_by: str, available: list[str]) -> None:
        super().__init__(
            f"No version of {name} matches {constraint} (required by {requested_by}); "
            f"available: {', '.join(available) or 'none'}",
            code="no_matching_version",
        )
        self.name = name
        self.constraint = constraint
        self.requested_by = requested_by
        self.available = available


class CircularDependencyError(ResolutionError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            code="circular_dependency",
        )
        self.cycle = cycle


class BoardIncompatibleError(ResolutionError):
    """Raised when a package cannot be built for the selected board."""

    def __init__(self, package: str, board: str, reason: str) -> None:
        super().__init__(
            f"Package {package} is incompatible with board {board}: {reason}",
            code="board_incompatible",
        )
        self.package = package
        self.board = board
        self.reason = reason


class PackageConflictError(ResolutionError):
    """Raised when two resolved packages declare each other incompatible."""

    def __init__(self, package: str, conflicts_with: str) -> None:
        super().__init__(
            f"Package {package} conflicts with {conflicts_with}",
            code="package_conflict",
        )
        self.package = package
        self.conflicts_with = conflicts_with


__all__ = [
    "BoardIncompatibleError",
    "CircularDependencyError",
    "InvalidConstraintError",
    "NoMatchingVersionError",
    "PackageConflictError",
    "ResolutionError",
    "UnknownPackageError",
    "VersionConflictError",
]
