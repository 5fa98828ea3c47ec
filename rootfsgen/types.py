"""Shared type definitions for rootfsgen.

This module contains enums, dataclasses, and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class PackageOrigin(str, Enum):
    """Where a package definition was found."""

    LOCAL = "local"
    REGISTRY = "registry"


class SourceKind(str, Enum):
    """Kind of source a package is built from."""

    URL = "url"
    PATH = "path"
    NONE = "none"


class BuildType(str, Enum):
    """Build system used by a package."""

    SCRIPT = "script"
    MAKE = "make"
    AUTOTOOLS = "autotools"
    CMAKE = "cmake"
    CUSTOM = "custom"


class NodeOutcome(str, Enum):
    """Outcome of a single package in a build run."""

    BUILT = "built"
    RESTORED = "restored"
    UP_TO_DATE = "up-to-date"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_ATTEMPTED = "not-attempted"

    @property
    def changed(self) -> bool:
        """Whether dependents must be re-evaluated after this outcome."""
        return self in (NodeOutcome.BUILT, NodeOutcome.RESTORED)

    @property
    def succeeded(self) -> bool:
        """Whether this outcome unblocks dependents."""
        return self in (NodeOutcome.BUILT, NodeOutcome.RESTORED, NodeOutcome.UP_TO_DATE)


class ContainerRuntime(str, Enum):
    """Supported container runtimes, in order of preference."""

    DOCKER = "docker"
    PODMAN = "podman"


@dataclass(frozen=True)
class SourceLocator:
    """Resolved location of a package's source.

    Attributes:
        kind: Source kind (url, path, none).
        location: URL or project-relative path; empty for kind none.
    """

    kind: SourceKind = SourceKind.NONE
    location: str = ""

    def render(self) -> str:
        """Render the locator as a single string for lock files."""
        if self.kind == SourceKind.NONE:
            return "none"
        return f"{self.kind.value}+{self.location}"

    @classmethod
    def parse(cls, value: str) -> "SourceLocator":
        """Parse a locator rendered by render()."""
        if value == "none" or "+" not in value:
            return cls()
        kind, _, location = value.partition("+")
        return cls(kind=SourceKind(kind), location=location)


@dataclass(frozen=True)
class BuildStepDescriptor:
    """How a package is built.

    Attributes:
        type: Build system type.
        toolchain: Toolchain family ("zig" or "gcc").
        toolchain_prefix: Cross prefix for gcc toolchains (e.g. "arm-linux-gnueabihf-").
        script: Shell script for script builds, relative to the package directory.
        steps: Shell commands for custom builds.
        configure_args: Extra ./configure arguments.
        make_args: Extra make arguments.
        cmake_args: Extra cmake arguments.
        patches: Patch files applied to the work directory, relative to the
            package directory.
        network: Whether the build step needs network access.
        compress: Per-package compression override.
    """

    type: BuildType = BuildType.SCRIPT
    toolchain: str = "zig"
    toolchain_prefix: str | None = None
    script: str | None = None
    steps: tuple[str, ...] = ()
    configure_args: tuple[str, ...] = ()
    make_args: tuple[str, ...] = ()
    cmake_args: tuple[str, ...] = ()
    patches: tuple[str, ...] = ()
    network: bool = False
    compress: bool | None = None


@dataclass(frozen=True)
class InstallRule:
    """One declarative install rule.

    Attributes:
        src: File or directory relative to the work directory.
        dst: Destination relative to the install root (DESTDIR).
        mode: Optional permission bits for installed files.
    """

    src: str
    dst: str
    mode: int | None = None


@dataclass(frozen=True)
class PackageDescriptor:
    """Resolved, immutable description of one package version.

    Attributes:
        name: Package name, unique within a resolution.
        version: Exact version string.
        source: Where the source comes from.
        checksum: Hex digest of the source (or of the package directory).
        source_checksum: SHA-256 of the source archive for URL sources.
        depends: Hard dependencies, "name" or "name@constraint".
        requires: Soft capabilities checked against the board.
        build: Build step description.
        description: Human-readable description.
        license: SPDX license identifier.
        arch: Supported architectures or triples (empty = all).
        provides: Capabilities this package satisfies.
        conflicts: Packages that cannot be installed alongside this one.
        install: Files copied into DESTDIR after the build step.
        homepage: Project homepage.
        keywords: Search keywords.
        origin: Local package directory or registry.
        package_dir: Directory holding package files, when local or cached.
    """

    name: str
    version: str
    source: SourceLocator = field(default_factory=SourceLocator)
    checksum: str = ""
    source_checksum: str = ""
    depends: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    build: BuildStepDescriptor = field(default_factory=BuildStepDescriptor)
    description: str = ""
    license: str | None = None
    arch: tuple[str, ...] = ()
    provides: tuple[str, ...] = ()
    conflicts: tuple[str, ...] = ()
    install: tuple[InstallRule, ...] = ()
    homepage: str | None = None
    keywords: tuple[str, ...] = ()
    origin: PackageOrigin = PackageOrigin.REGISTRY
    package_dir: Path | None = None

    @property
    def spec(self) -> str:
        """Return "name@version"."""
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class BoardDescriptor:
    """Description of a target board.

    Attributes:
        name: Board name.
        target: Target triple (e.g. "arm-linux-musleabihf").
        description: Human-readable description.
        cpu: CPU model passed to the toolchain.
        features: CPU/board features (e.g. "neon", "vfpv4").
        requires: Packages every image for this board needs.
        defaults: Default image options (image_format, rootfs_size, hostname).
        flash: Flash profile metadata.
    """

    name: str
    target: str
    description: str = ""
    cpu: str = "generic"
    features: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    defaults: dict[str, Any] = field(default_factory=dict, compare=False)
    flash: tuple[dict[str, Any], ...] = field(default=(), compare=False)

    @property
    def arch(self) -> str:
        """Return the architecture component of the target triple."""
        return self.target.split("-", 1)[0]


__all__ = [
    "BoardDescriptor",
    "BuildStepDescriptor",
    "BuildType",
    "ContainerRuntime",
    "InstallRule",
    "NodeOutcome",
    "PackageDescriptor",
    "PackageOrigin",
    "SourceKind",
    "SourceLocator",
]
