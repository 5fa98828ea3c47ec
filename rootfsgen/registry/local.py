"""Project-local package and board definitions.

Local packages live in packages/<name>/package.toml and local boards in
boards/<name>/board.toml. A local package's checksum is a hash of its whole
directory, so editing the definition, a build script or a patch changes the
cache key.
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
from pathlib import Path

from rootfsgen.project.io import ManifestError, load_board_definition, load_package_definition
from rootfsgen.project.layout import BOARD_FILENAME, PACKAGE_FILENAME, ProjectLayout
from rootfsgen.types import BoardDescriptor, PackageDescriptor, PackageOrigin

logger = logging.getLogger(__name__)


def compute_tree_hash(directory: Path) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash is computed over:
    - Sorted file paths (relative to directory)
    - File contents
    - File modes (lower 9 bits: rwxrwxrwx)

    Args:
        directory: Directory to hash.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    if not directory.exists():
        return hasher.hexdigest()

    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue
        rel_path = path.relative_to(directory).as_posix()
        mode = stat.S_IMODE(path.stat().st_mode)
        # path\0mode\0content\0
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(f"{mode:o}".encode())
        hasher.update(b"\0")
        hasher.update(path.read_bytes())
        hasher.update(b"\0")

    return hasher.hexdigest()


class LocalPackages:
    """Reads package and board definitions from a project tree."""

    def __init__(self, layout: ProjectLayout) -> None:
        self.layout = layout
        self._packages: dict[str, PackageDescriptor] = {}

    def has_package(self, name: str) -> bool:
        return (self.layout.package_dir(name) / PACKAGE_FILENAME).is_file()

    def list_packages(self) -> list[str]:
        """Names of all local packages, sorted."""
        if not self.layout.packages_dir.is_dir():
            return []
        return sorted(
            d.name
            for d in self.layout.packages_dir.iterdir()
            if (d / PACKAGE_FILENAME).is_file()
        )

    def get_package(self, name: str) -> PackageDescriptor:
        """Load the local package definition for name.

        Raises:
            ManifestError: If the definition is invalid or names another package.
            FileNotFoundError: If there is no local package with that name.
        """
        cached = self._packages.get(name)
        if cached is not None:
            return cached

        package_dir = self.layout.package_dir(name)
        definition_path = package_dir / PACKAGE_FILENAME
        if not definition_path.is_file():
            raise FileNotFoundError(f"No local package {name} in {self.layout.packages_dir}")

        definition = load_package_definition(definition_path)
        if definition.package.name != name:
            raise ManifestError(
                f"{definition_path} declares package '{definition.package.name}', "
                f"expected '{name}'",
                path=definition_path,
                code="name_mismatch",
            )

        # Without an explicit source path the package directory is the source
        source_dir = package_dir / definition.source.path if definition.source.path else package_dir
        checksum = compute_tree_hash(package_dir)
        if source_dir != package_dir and source_dir.is_dir():
            checksum = hashlib.sha256(
                f"{checksum}:{compute_tree_hash(source_dir)}".encode()
            ).hexdigest()
        descriptor = definition.to_descriptor(
            checksum=checksum,
            origin=PackageOrigin.LOCAL,
            package_dir=package_dir,
            source_path=os.path.relpath(source_dir, self.layout.root).replace(os.sep, "/"),
        )
        logger.debug("Loaded local package %s (checksum %s)", descriptor.spec, checksum[:16])
        self._packages[name] = descriptor
        return descriptor

    def has_board(self, name: str) -> bool:
        return (self.layout.board_dir(name) / BOARD_FILENAME).is_file()

    def get_board(self, name: str) -> BoardDescriptor:
        """Load the local board definition for name.

        Raises:
            ManifestError: If the definition is invalid.
            FileNotFoundError: If there is no local board with that name.
        """
        path = self.layout.board_dir(name) / BOARD_FILENAME
        if not path.is_file():
            raise FileNotFoundError(f"No local board {name} in {self.layout.boards_dir}")
        return load_board_definition(path).to_descriptor()


__all__ = ["LocalPackages", "compute_tree_hash"]
