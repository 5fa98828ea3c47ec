"""Lock file model and persistence.

This module handles:
- LockEntry / LockFile: exact name, version, checksum and source per package
- Deterministic rendering (entries sorted by name, fixed key order)
- Loading rootfsgen.lock and comparing two lock files
- LockMismatchError for --locked builds
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import tomlkit

from rootfsgen.project.io import write_text_atomic

logger = logging.getLogger(__name__)

LOCK_FORMAT_VERSION = 1
LOCK_HEADER = "This file is generated by rootfsgen. Do not edit it by hand."


class LockFileError(Exception):
    """Raised when a lock file cannot be read."""

    def __init__(self, message: str, code: str = "lock_error") -> None:
        super().__init__(message)
        self.code = code


class LockMismatchError(Exception):
    """Raised when a --locked build would change the lock file."""

    def __init__(self, packages: list[str], lock_path: Path | None = None, code: str = "lock_mismatch") -> None:
        if packages:
            message = "Lock file is out of date for: " + ", ".join(packages)
        else:
            message = "Lock file is missing"
        if lock_path is not None:
            message += f" ({lock_path})"
        message += "; run without --locked to update it"
        super().__init__(message)
        self.packages = packages
        self.lock_path = lock_path
        self.code = code


@dataclass(frozen=True)
class LockEntry:
    """One resolved package in the lock file.

    Attributes:
        name: Package name.
        version: Exact resolved version.
        checksum: Exact source checksum.
        source: Rendered source locator.
        dependencies: Names of direct dependencies, sorted.
    """

    name: str
    version: str
    checksum: str
    source: str = "none"
    dependencies: tuple[str, ...] = ()


@dataclass
class LockDiff:
    """Differences between two lock files."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    @property
    def packages(self) -> list[str]:
        """Every package that differs, sorted."""
        return sorted({*self.added, *self.removed, *self.changed})


class LockFile:
    """Collection of lock entries keyed by name."""

    def __init__(self, entries: Iterable[LockEntry] = ()) -> None:
        self._entries: dict[str, LockEntry] = {}
        for entry in entries:
            if entry.name in self._entries:
                raise LockFileError(f"Duplicate lock entry: {entry.name}", code="duplicate_entry")
            self._entries[entry.name] = entry

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[LockEntry]:
        return iter(self.entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LockFile):
            return NotImplemented
        return self._entries == other._entries

    @property
    def entries(self) -> list[LockEntry]:
        """Entries sorted by name."""
        return [self._entries[name] for name in sorted(self._entries)]

    def get(self, name: str) -> LockEntry | None:
        return self._entries.get(name)

    def render(self) -> str:
        """Render the canonical TOML text for this lock file."""
        doc = tomlkit.document()
        doc.add(tomlkit.comment(LOCK_HEADER))
        doc.add("version", LOCK_FORMAT_VERSION)

        packages = tomlkit.aot()
        for entry in self.entries:
            table = tomlkit.table()
            table.add("name", entry.name)
            table.add("version", entry.version)
            table.add("checksum", entry.checksum)
            table.add("source", entry.source)
            table.add("dependencies", sorted(entry.dependencies))
            packages.append(table)
        doc.add("package", packages)
        return tomlkit.dumps(doc)

    def write(self, path: Path) -> None:
        """Atomically write the lock file."""
        write_text_atomic(path, self.render())
        logger.debug("Wrote lock file %s (%d packages)", path, len(self))

    @classmethod
    def parse(cls, text: str) -> LockFile:
        """Parse lock file text.

        Raises:
            LockFileError: If the text is not a valid lock file.
        """
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            raise LockFileError(f"Invalid lock file: {e}", code="invalid_toml") from e

        version = data.get("version", LOCK_FORMAT_VERSION)
        if version != LOCK_FORMAT_VERSION:
            raise LockFileError(
                f"Unsupported lock file version {version}", code="unsupported_version"
            )

        entries = []
        for raw in data.get("package", []):
            try:
                entries.append(
                    LockEntry(
                        name=raw["name"],
                        version=raw["version"],
                        checksum=raw["checksum"],
                        source=raw.get("source", "none"),
                        dependencies=tuple(sorted(raw.get("dependencies", []))),
                    )
                )
            except KeyError as e:
                raise LockFileError(
                    f"Lock entry missing field {e.args[0]!r}", code="invalid_entry"
                ) from e
        return cls(entries)

    @classmethod
    def load(cls, path: Path) -> LockFile | None:
        """Load a lock file, returning None when it does not exist."""
        if not path.exists():
            return None
        return cls.parse(path.read_text(encoding="utf-8"))

    def diff(self, other: LockFile) -> LockDiff:
        """Compare self (existing) against other (fresh resolution)."""
        result = LockDiff()
        for name in sorted(set(self._entries) | set(other._entries)):
            old, new = self._entries.get(name), other._entries.get(name)
            if old is None:
                result.added.append(name)
            elif new is None:
                result.removed.append(name)
            elif old != new:
                result.changed.append(name)
        return result


def verify_locked(existing: LockFile | None, fresh: LockFile, lock_path: Path | None = None) -> None:
    """Ensure a fresh resolution matches the lock file exactly.

    Raises:
        LockMismatchError: If the lock is missing or any entry differs.
    """
    if existing is None:
        raise LockMismatchError([], lock_path=lock_path)
    changes = existing.diff(fresh)
    if not changes.is_empty:
        raise LockMismatchError(changes.packages, lock_path=lock_path)


__all__ = [
    "LOCK_FORMAT_VERSION",
    "LockDiff",
    "LockEntry",
    "LockFile",
    "LockFileError",
    "LockMismatchError",
    "verify_locked",
]
