"""Shared fixtures and helpers for rootfsgen tests."""

import hashlib
from pathlib import Path

import pytest

from rootfsgen.builds.storage import SharedStorage
from rootfsgen.registry.client import BoardNotFoundError, PackageNotFoundError
from rootfsgen.resolver.versions import sort_versions
from rootfsgen.types import (
    BoardDescriptor,
    BuildStepDescriptor,
    BuildType,
    PackageDescriptor,
    PackageOrigin,
)

DEFAULT_BUILD_SCRIPT = """\
mkdir -p "$DESTDIR/usr/share/$PKG_NAME"
echo "$PKG_NAME $PKG_VERSION" > "$DESTDIR/usr/share/$PKG_NAME/VERSION"
"""


def make_package(
    name: str,
    version: str = "1.0.0",
    depends: tuple[str, ...] = (),
    **kwargs,
) -> PackageDescriptor:
    """Build a registry-style PackageDescriptor for tests."""
    kwargs.setdefault("checksum", hashlib.sha256(f"{name}@{version}".encode()).hexdigest())
    kwargs.setdefault("build", BuildStepDescriptor(type=BuildType.CUSTOM, steps=("true",)))
    return PackageDescriptor(name=name, version=version, depends=tuple(depends), **kwargs)


class FakeSource:
    """In-memory PackageSource.

    Packages are registered per version; local names report a single version
    and take priority the same way a project's packages/ directory does.
    """

    def __init__(self) -> None:
        self.packages: dict[str, dict[str, PackageDescriptor]] = {}
        self.boards: dict[str, BoardDescriptor] = {}
        self.local: set[str] = set()
        self.lookups: list[str] = []

    def add(
        self,
        name: str,
        version: str = "1.0.0",
        depends: tuple[str, ...] = (),
        local: bool = False,
        **kwargs,
    ) -> PackageDescriptor:
        if local:
            kwargs.setdefault("origin", PackageOrigin.LOCAL)
            self.local.add(name)
            self.packages[name] = {}
        package = make_package(name, version, depends, **kwargs)
        self.packages.setdefault(name, {})[version] = package
        return package

    def add_board(self, name: str, target: str, **kwargs) -> BoardDescriptor:
        board = BoardDescriptor(name=name, target=target, **kwargs)
        self.boards[name] = board
        return board

    def is_local(self, name: str) -> bool:
        return name in self.local

    def available_versions(self, name: str) -> list[str]:
        self.lookups.append(name)
        if name not in self.packages:
            raise PackageNotFoundError(name)
        return sort_versions(self.packages[name])

    def get_package(self, name: str, version: str) -> PackageDescriptor:
        try:
            return self.packages[name][version]
        except KeyError:
            raise PackageNotFoundError(name, version) from None

    def get_board(self, name: str) -> BoardDescriptor:
        if name not in self.boards:
            raise BoardNotFoundError(name)
        return self.boards[name]


def write_local_package(
    root: Path,
    name: str,
    version: str = "1.0.0",
    depends: tuple[str, ...] = (),
    script: str = DEFAULT_BUILD_SCRIPT,
    extra: str = "",
) -> Path:
    """Write packages/<name>/ with a package.toml and a build.sh script."""
    package_dir = root / "packages" / name
    package_dir.mkdir(parents=True, exist_ok=True)
    deps = ", ".join(f'"{d}"' for d in depends)
    (package_dir / "package.toml").write_text(
        f"""\
[package]
name = "{name}"
version = "{version}"
description = "Test package {name}"
license = "MIT"
depends = [{deps}]

[build]
type = "script"
script = "build.sh"
{extra}"""
    )
    (package_dir / "build.sh").write_text(script)
    return package_dir


def write_local_board(root: Path, name: str, target: str, features: tuple[str, ...] = ()) -> Path:
    """Write boards/<name>/board.toml."""
    board_dir = root / "boards" / name
    board_dir.mkdir(parents=True, exist_ok=True)
    feats = ", ".join(f'"{f}"' for f in features)
    (board_dir / "board.toml").write_text(
        f"""\
[board]
name = "{name}"
target = "{target}"
cpu = "cortex-a72"
features = [{feats}]
"""
    )
    return board_dir


@pytest.fixture
def fake_source():
    """Empty in-memory package source."""
    return FakeSource()


@pytest.fixture
def storage(tmp_path):
    """Shared storage rooted in a temporary directory."""
    return SharedStorage(
        downloads_dir=tmp_path / "shared" / "downloads",
        build_cache_dir=tmp_path / "shared" / "build-cache",
    )
