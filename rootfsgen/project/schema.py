"""Pydantic models for manifest, package and board validation.

This module defines the Pydantic models for validating the project manifest
(rootfsgen.toml), package definitions (package.toml) and board definitions
(board.toml), and for converting validated definitions into the immutable
descriptors the resolver works with.
"""

import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rootfsgen.types import (
    BoardDescriptor,
    BuildStepDescriptor,
    BuildType,
    InstallRule,
    PackageDescriptor,
    PackageOrigin,
    SourceKind,
    SourceLocator,
)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.+\-]*$")
SIZE_PATTERN = re.compile(r"^\d+[KMG]?$")
IMAGE_FORMATS = {"ext4", "squashfs", "initramfs"}
TOOLCHAINS = {"zig", "gcc"}


def _validate_name(value: str, what: str) -> str:
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{what} must contain only letters, digits, '_', '.', '+', '-', got '{value}'"
        )
    return value


# =============================================================================
# Manifest (rootfsgen.toml)
# =============================================================================


class ProjectSection(BaseModel):
    """Schema for the [project] table.

    Attributes:
        name: Project name.
        version: Project version.
        description: Optional description.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Project name")
    version: str = Field(default="0.1.0", description="Project version")
    description: str | None = Field(default=None)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate project name characters."""
        return _validate_name(v, "project name")


class BoardSection(BaseModel):
    """Schema for the [board] table."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, description="Board name")


class BuildSection(BaseModel):
    """Schema for the [build] table of the manifest.

    Attributes:
        compress: Compress binaries by default.
        image_format: Root filesystem image format.
        rootfs_size: Image size (e.g. "256M").
        hostname: Hostname baked into the image.
        jobs: Default parallel build jobs.
        sandbox: Run build steps in a container by default.
    """

    model_config = ConfigDict(extra="forbid")

    compress: bool = Field(default=False)
    image_format: str = Field(default="ext4")
    rootfs_size: str = Field(default="256M")
    hostname: str = Field(default="rootfsgen")
    jobs: int | None = Field(default=None, ge=1)
    sandbox: bool | None = Field(default=None)

    @field_validator("image_format")
    @classmethod
    def validate_image_format(cls, v: str) -> str:
        """Validate image format is supported."""
        if v not in IMAGE_FORMATS:
            raise ValueError(f"image_format must be one of {sorted(IMAGE_FORMATS)}, got '{v}'")
        return v

    @field_validator("rootfs_size")
    @classmethod
    def validate_rootfs_size(cls, v: str) -> str:
        """Validate rootfs size looks like 256M / 1G."""
        if not SIZE_PATTERN.match(v):
            raise ValueError(f"rootfs_size must look like '256M' or '1G', got '{v}'")
        return v


class PackageRef(BaseModel):
    """Schema for a [packages.<name>] entry."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="*", description="Version constraint")


class ExternalArtifact(BaseModel):
    """Schema for an [external.<name>] entry (bootloader, kernel, ...)."""

    model_config = ConfigDict(extra="forbid")

    type: str = Field(description="Artifact type (bootloader, kernel, dtb, ...)")
    url: str | None = Field(default=None)
    path: str | None = Field(default=None)
    sha256: str | None = Field(default=None)

    @model_validator(mode="after")
    def validate_location(self) -> "ExternalArtifact":
        """Exactly one of url or path must be set; url requires sha256."""
        if (self.url is None) == (self.path is None):
            raise ValueError("external artifact needs exactly one of 'url' or 'path'")
        if self.url is not None and not self.sha256:
            raise ValueError("external artifact with 'url' requires 'sha256'")
        return self


class ManifestSchema(BaseModel):
    """Complete manifest schema.

    Attributes:
        project: Project metadata.
        board: Selected board.
        build: Build options.
        packages: Declared packages keyed by name.
        external: External artifacts keyed by name.
    """

    model_config = ConfigDict(extra="forbid")

    project: ProjectSection
    board: BoardSection = Field(default_factory=BoardSection)
    build: BuildSection = Field(default_factory=BuildSection)
    packages: dict[str, PackageRef] = Field(default_factory=dict)
    external: dict[str, ExternalArtifact] = Field(default_factory=dict)

    @field_validator("packages")
    @classmethod
    def validate_package_names(cls, v: dict[str, PackageRef]) -> dict[str, PackageRef]:
        """Validate declared package names."""
        for name in v:
            _validate_name(name, "package name")
        return v

    def requested_packages(self) -> list[tuple[str, str]]:
        """Return (name, constraint) pairs sorted by name."""
        return sorted((name, ref.version) for name, ref in self.packages.items())


# =============================================================================
# Package definition (package.toml)
# =============================================================================


class PackageMeta(BaseModel):
    """Schema for the [package] table of a package definition."""

    model_config = ConfigDict(extra="forbid")

    name: str
    version: str
    description: str = ""
    license: str | None = None
    homepage: str | None = None
    keywords: list[str] = Field(default_factory=list)
    depends: list[str] = Field(default_factory=list)
    requires: list[str] = Field(default_factory=list)
    arch: list[str] = Field(default_factory=list)
    provides: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate package name characters."""
        return _validate_name(v, "package name")


class SourceSection(BaseModel):
    """Schema for the [source] table.

    Either a URL with its sha256, or a path relative to the package directory.
    """

    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    sha256: str | None = None
    path: str | None = None

    @model_validator(mode="after")
    def validate_source(self) -> "SourceSection":
        """Validate url/sha256/path combinations."""
        if self.url and self.path:
            raise ValueError("source cannot have both 'url' and 'path'")
        if self.url and not self.sha256:
            raise ValueError("source with 'url' requires 'sha256'")
        if self.sha256 and not re.fullmatch(r"[0-9a-fA-F]{64}", self.sha256):
            raise ValueError("sha256 must be 64 hex characters")
        return self


class BuildStepSection(BaseModel):
    """Schema for the [build] table of a package definition."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["script", "make", "autotools", "cmake", "custom"] = "script"
    toolchain: str = "zig"
    toolchain_prefix: str | None = None
    script: str | None = None
    steps: list[str] = Field(default_factory=list)
    configure_args: list[str] = Field(default_factory=list)
    make_args: list[str] = Field(default_factory=list)
    cmake_args: list[str] = Field(default_factory=list)
    patches: list[str] = Field(default_factory=list)
    network: bool = False
    compress: bool | None = None

    @field_validator("toolchain")
    @classmethod
    def validate_toolchain(cls, v: str) -> str:
        """Validate toolchain family."""
        if v not in TOOLCHAINS:
            raise ValueError(f"toolchain must be one of {sorted(TOOLCHAINS)}, got '{v}'")
        return v

    @field_validator("patches")
    @classmethod
    def validate_patches(cls, v: list[str]) -> list[str]:
        """Patches live inside the package directory."""
        for patch in v:
            if Path(patch).is_absolute() or ".." in Path(patch).parts:
                raise ValueError(f"patch paths must be relative to the package, got '{patch}'")
        return v

    @model_validator(mode="after")
    def validate_steps(self) -> "BuildStepSection":
        """Custom builds need steps; gcc toolchains need a prefix."""
        if self.type == "custom" and not self.steps:
            raise ValueError("custom builds require 'steps'")
        if self.toolchain == "gcc" and not self.toolchain_prefix:
            raise ValueError("gcc toolchain requires 'toolchain_prefix'")
        return self


class InstallFileRule(BaseModel):
    """Schema for one [[install.files]] rule."""

    model_config = ConfigDict(extra="forbid")

    src: str = Field(description="Path relative to the work directory")
    dst: str = Field(description="Path relative to the install root")
    mode: str | None = Field(default=None, description="Octal mode, e.g. \"755\"")

    @field_validator("src", "dst")
    @classmethod
    def validate_relative(cls, v: str) -> str:
        """Reject empty paths and parent references."""
        if not v.strip("/") or ".." in Path(v).parts:
            raise ValueError(f"install paths must stay inside their root, got '{v}'")
        return v

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str | None) -> str | None:
        """Validate the mode is octal."""
        if v is not None and not re.fullmatch(r"0?[0-7]{3,4}", v):
            raise ValueError(f"mode must be octal like '755', got '{v}'")
        return v

    def to_rule(self) -> InstallRule:
        return InstallRule(
            src=self.src,
            dst=self.dst,
            mode=int(self.mode, 8) if self.mode is not None else None,
        )


class InstallSection(BaseModel):
    """Schema for the [install] table."""

    model_config = ConfigDict(extra="forbid")

    files: list[InstallFileRule] = Field(default_factory=list)


class PackageDefinition(BaseModel):
    """Complete package definition schema."""

    model_config = ConfigDict(extra="forbid")

    package: PackageMeta
    source: SourceSection = Field(default_factory=SourceSection)
    build: BuildStepSection = Field(default_factory=BuildStepSection)
    install: InstallSection = Field(default_factory=InstallSection)

    def to_descriptor(
        self,
        checksum: str,
        origin: PackageOrigin,
        package_dir: Path | None = None,
        source_path: str | None = None,
    ) -> PackageDescriptor:
        """Convert into an immutable PackageDescriptor.

        Args:
            checksum: Content checksum for the cache key.
            origin: Where the definition came from.
            package_dir: Directory containing package files.
            source_path: Project-relative location for path sources.

        Returns:
            PackageDescriptor for the resolver.
        """
        if self.source.url:
            source = SourceLocator(SourceKind.URL, self.source.url)
        elif source_path is not None:
            source = SourceLocator(SourceKind.PATH, source_path)
        else:
            source = SourceLocator()

        build = BuildStepDescriptor(
            type=BuildType(self.build.type),
            toolchain=self.build.toolchain,
            toolchain_prefix=self.build.toolchain_prefix,
            script=self.build.script,
            steps=tuple(self.build.steps),
            configure_args=tuple(self.build.configure_args),
            make_args=tuple(self.build.make_args),
            cmake_args=tuple(self.build.cmake_args),
            patches=tuple(self.build.patches),
            network=self.build.network,
            compress=self.build.compress,
        )
        meta = self.package
        return PackageDescriptor(
            name=meta.name,
            version=meta.version,
            source=source,
            checksum=checksum,
            source_checksum=(self.source.sha256 or "").lower(),
            depends=tuple(meta.depends),
            requires=tuple(meta.requires),
            build=build,
            description=meta.description,
            license=meta.license,
            arch=tuple(meta.arch),
            provides=tuple(meta.provides),
            conflicts=tuple(meta.conflicts),
            install=tuple(rule.to_rule() for rule in self.install.files),
            homepage=meta.homepage,
            keywords=tuple(meta.keywords),
            origin=origin,
            package_dir=package_dir,
        )


# =============================================================================
# Board definition (board.toml)
# =============================================================================


class BoardMeta(BaseModel):
    """Schema for the [board] table of a board definition."""

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""
    target: str
    cpu: str = "generic"
    features: list[str] = Field(default_factory=list)

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        """Validate the target looks like a triple."""
        if v.count("-") < 1:
            raise ValueError(f"target must be a triple like 'arm-linux-musleabihf', got '{v}'")
        return v


class BoardDefaults(BaseModel):
    """Schema for the [defaults] table of a board definition."""

    model_config = ConfigDict(extra="forbid")

    image_format: str = "ext4"
    rootfs_size: str = "256M"
    hostname: str = "rootfsgen"


class BoardDefinition(BaseModel):
    """Complete board definition schema."""

    model_config = ConfigDict(extra="allow")

    requires: list[str] = Field(default_factory=list)
    board: BoardMeta
    defaults: BoardDefaults = Field(default_factory=BoardDefaults)
    flash: list[dict[str, Any]] = Field(default_factory=list)

    def to_descriptor(self) -> BoardDescriptor:
        """Convert into an immutable BoardDescriptor."""
        return BoardDescriptor(
            name=self.board.name,
            target=self.board.target,
            description=self.board.description,
            cpu=self.board.cpu,
            features=tuple(self.board.features),
            requires=tuple(self.requires),
            defaults=self.defaults.model_dump(),
            flash=tuple(self.flash),
        )


__all__ = [
    "BoardDefinition",
    "BoardDefaults",
    "BoardMeta",
    "BoardSection",
    "BuildSection",
    "BuildStepSection",
    "ExternalArtifact",
    "InstallFileRule",
    "InstallSection",
    "ManifestSchema",
    "PackageDefinition",
    "PackageMeta",
    "PackageRef",
    "ProjectSection",
    "SourceSection",
]
