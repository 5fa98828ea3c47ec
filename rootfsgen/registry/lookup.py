"""Package lookup across local definitions and the registry.

Local packages always take priority: when packages/<name>/package.toml
exists, the registry is never consulted for that name.
"""

from __future__ import annotations

import logging
from typing import Protocol

from rootfsgen.registry.client import BoardNotFoundError, HttpRegistry, PackageNotFoundError
from rootfsgen.registry.local import LocalPackages
from rootfsgen.types import BoardDescriptor, PackageDescriptor

logger = logging.getLogger(__name__)


class PackageSource(Protocol):
    """What the resolver needs to know about packages and boards."""

    def is_local(self, name: str) -> bool: ...

    def available_versions(self, name: str) -> list[str]: ...

    def get_package(self, name: str, version: str) -> PackageDescriptor: ...

    def get_board(self, name: str) -> BoardDescriptor: ...


class PackageLookup:
    """PackageSource that checks the project tree before the registry.

    Args:
        local: Local package definitions.
        registry: Registry client, or None to resolve purely locally.
    """

    def __init__(self, local: LocalPackages, registry: HttpRegistry | None = None) -> None:
        self.local = local
        self.registry = registry

    def is_local(self, name: str) -> bool:
        return self.local.has_package(name)

    def available_versions(self, name: str) -> list[str]:
        """Versions available for name.

        Raises:
            PackageNotFoundError: If neither source knows the package.
        """
        if self.local.has_package(name):
            return [self.local.get_package(name).version]
        if self.registry is None:
            raise PackageNotFoundError(name)
        return self.registry.available_versions(name)

    def get_package(self, name: str, version: str) -> PackageDescriptor:
        """Descriptor for name at version.

        Raises:
            PackageNotFoundError: If the package or version is unknown.
        """
        if self.local.has_package(name):
            package = self.local.get_package(name)
            if package.version != version:
                raise PackageNotFoundError(name, version)
            return package
        if self.registry is None:
            raise PackageNotFoundError(name, version)
        return self.registry.get_package(name, version)

    def get_board(self, name: str) -> BoardDescriptor:
        """Board descriptor, local boards first.

        Raises:
            BoardNotFoundError: If neither source knows the board.
        """
        if self.local.has_board(name):
            return self.local.get_board(name)
        if self.registry is None:
            raise BoardNotFoundError(name)
        return self.registry.get_board(name)


__all__ = ["PackageLookup", "PackageSource"]
