"""Project directory layout.

A project is a directory holding rootfsgen.toml. Everything the project owns
(local packages, local boards, lock file, build tree) lives beneath it.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

MANIFEST_FILENAME = "rootfsgen.toml"
LOCK_FILENAME = "rootfsgen.lock"
PACKAGE_FILENAME = "package.toml"
BOARD_FILENAME = "board.toml"


@dataclass(frozen=True)
class ProjectLayout:
    """Paths inside a project directory.

    Attributes:
        root: Project root directory.
    """

    root: Path

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_FILENAME

    @property
    def packages_dir(self) -> Path:
        return self.root / "packages"

    @property
    def boards_dir(self) -> Path:
        return self.root / "boards"

    @property
    def build_dir(self) -> Path:
        return self.root / "build"

    @property
    def stamps_dir(self) -> Path:
        return self.build_dir / "stamps"

    @property
    def logs_dir(self) -> Path:
        return self.build_dir / "logs"

    @property
    def output_dir(self) -> Path:
        return self.root / "output"

    def package_dir(self, name: str) -> Path:
        """Local package directory for name."""
        return self.packages_dir / name

    def board_dir(self, name: str) -> Path:
        """Local board directory for name."""
        return self.boards_dir / name

    def src_dir(self, name: str) -> Path:
        """Extracted source tree for a package."""
        return self.build_dir / "src" / name

    def work_dir(self, name: str) -> Path:
        """Writable copy of the source tree a build step runs in."""
        return self.build_dir / "work" / name

    def dest_dir(self, name: str) -> Path:
        """Install destination (DESTDIR) for a package."""
        return self.build_dir / "dest" / name

    def stamp_path(self, name: str) -> Path:
        return self.stamps_dir / f"{name}.stamp"

    def log_path(self, name: str) -> Path:
        return self.logs_dir / f"{name}.log"


def find_project_root(start: Path | None = None) -> Path | None:
    """Walk up from start looking for a directory containing the manifest.

    Args:
        start: Directory to start from (defaults to the current directory).

    Returns:
        The project root, or None if no manifest was found.
    """
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / MANIFEST_FILENAME).is_file():
            return candidate
    return None


__all__ = [
    "BOARD_FILENAME",
    "LOCK_FILENAME",
    "MANIFEST_FILENAME",
    "PACKAGE_FILENAME",
    "ProjectLayout",
    "find_project_root",
]
