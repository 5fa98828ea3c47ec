"""Project service module.

This module provides the manifest-editing API:
- init_project(): create a new project skeleton
- add_package() / remove_package(): edit [packages] and re-resolve
- update_packages(): move exact pins to the newest version and re-resolve
- resolve_project() / lock_project(): resolve, optionally writing the lock file
- check_project(): dry-run validation with the build order
- clean_project(): remove build/ and output/
- package_info(): describe one package

Every operation resolves first and only writes the manifest and lock file
when resolution succeeds, so a failed add/remove/update leaves both untouched.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from rootfsgen.project.io import (
    load_manifest,
    load_manifest_document,
    new_manifest_document,
    parse_manifest,
    remove_package_entry,
    save_manifest_document,
    set_package_constraint,
    write_text_atomic,
)
from rootfsgen.project.layout import ProjectLayout
from rootfsgen.project.lockfile import LockFile
from rootfsgen.project.schema import ManifestSchema
from rootfsgen.registry.client import PackageNotFoundError
from rootfsgen.registry.lookup import PackageSource
from rootfsgen.resolver.errors import ResolutionError, UnknownPackageError
from rootfsgen.resolver.service import DEFAULT_TARGET, MANIFEST_REQUESTER, Resolution, resolve
from rootfsgen.resolver.versions import ANY, is_exact_pin, parse_requirement, version_sort_key
from rootfsgen.types import BoardDescriptor, PackageDescriptor

logger = logging.getLogger(__name__)

GITIGNORE_CONTENT = "build/\noutput/\n"


class ProjectExistsError(Exception):
    """Raised when initializing over an existing project."""

    def __init__(self, path: Path) -> None:
        super().__init__(f"Project already exists: {path}")
        self.path = path
        self.code = "project_exists"


class PackageNotInManifestError(Exception):
    """Raised when removing or updating a package the project does not use."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Package not in project: {name}")
        self.name = name
        self.code = "package_not_in_manifest"


@dataclass
class AddResult:
    """Result of adding a package.

    Attributes:
        name: Package name.
        version: Resolved version.
        constraint: Constraint written to the manifest.
        dependencies: Packages newly pulled into the lock file.
        already_present: Whether the manifest already declared the package.
    """

    name: str
    version: str
    constraint: str
    dependencies: list[str] = field(default_factory=list)
    already_present: bool = False


@dataclass
class RemoveResult:
    """Result of removing a package.

    Attributes:
        name: Package removed from the manifest.
        removed: Packages dropped from the lock file.
        still_required_by: Packages that still depend on the removed one.
    """

    name: str
    removed: list[str] = field(default_factory=list)
    still_required_by: list[str] = field(default_factory=list)


@dataclass
class UpdateResult:
    """Result of an update.

    Attributes:
        updated: (name, old_version, new_version) for changed packages.
        added: Packages new to the lock file.
        removed: Packages no longer in the lock file.
    """

    updated: list[tuple[str, str, str]] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.updated or self.added or self.removed)


@dataclass
class CheckResult:
    """Result of validating a project without building it.

    Attributes:
        valid: Whether the project resolves.
        target: Target triple, when resolution succeeded.
        build_order: Packages in build order.
        lock_status: "up-to-date", "outdated" or "missing".
        errors: Resolution errors.
        warnings: Problems that do not stop a build.
    """

    valid: bool
    target: str | None = None
    build_order: list[str] = field(default_factory=list)
    lock_status: str = "missing"
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class CleanResult:
    """Directories removed by clean_project()."""

    removed: list[Path] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)


def load_board(manifest: ManifestSchema, source: PackageSource) -> BoardDescriptor | None:
    """Load the board the manifest selects, if any.

    Raises:
        BoardNotFoundError: If the board is unknown.
    """
    if not manifest.board.name:
        return None
    return source.get_board(manifest.board.name)


def _locked_versions(lock: LockFile | None) -> dict[str, str]:
    if lock is None:
        return {}
    return {entry.name: entry.version for entry in lock}


def init_project(
    root: Path,
    name: str | None = None,
    board: str | None = None,
    force: bool = False,
) -> ProjectLayout:
    """Create a project skeleton in root.

    Args:
        root: Project directory (created if missing).
        name: Project name (defaults to the directory name).
        board: Optional board name.
        force: Overwrite an existing manifest.

    Returns:
        Layout of the new project.

    Raises:
        ProjectExistsError: If a manifest exists and force is not set.
    """
    layout = ProjectLayout(root)
    if layout.manifest_path.exists() and not force:
        raise ProjectExistsError(layout.manifest_path)

    root.mkdir(parents=True, exist_ok=True)
    layout.packages_dir.mkdir(exist_ok=True)
    layout.boards_dir.mkdir(exist_ok=True)

    project_name = name or root.resolve().name
    doc = new_manifest_document(project_name, board=board)
    save_manifest_document(doc, layout.manifest_path)

    gitignore = root / ".gitignore"
    if not gitignore.exists():
        write_text_atomic(gitignore, GITIGNORE_CONTENT)

    logger.info("Initialized project %s in %s", project_name, root)
    return layout


def resolve_project(
    layout: ProjectLayout,
    source: PackageSource,
    default_target: str = DEFAULT_TARGET,
) -> Resolution:
    """Resolve the project without writing anything.

    Versions already in the lock file are kept while they still satisfy
    every request, so the result matches what lock and build would use.
    """
    manifest = load_manifest(layout.manifest_path)
    return resolve(
        manifest,
        source,
        board=load_board(manifest, source),
        default_target=default_target,
        preferred=_locked_versions(LockFile.load(layout.lock_path)),
    )


def lock_project(
    layout: ProjectLayout,
    source: PackageSource,
    default_target: str = DEFAULT_TARGET,
) -> Resolution:
    """Resolve the project and write its lock file if it changed."""
    existing = LockFile.load(layout.lock_path)
    resolution = resolve_project(layout, source, default_target=default_target)
    if existing != resolution.lock:
        resolution.lock.write(layout.lock_path)
    return resolution


def add_package(
    layout: ProjectLayout,
    spec: str,
    source: PackageSource,
    default_target: str = DEFAULT_TARGET,
) -> AddResult:
    """Add a package ("name" or "name@constraint") to the project.

    Without a constraint the highest available version is pinned.

    Raises:
        UnknownPackageError: If the package does not exist.
        ResolutionError: If the project no longer resolves with the package.
        ManifestError: If the manifest is missing or invalid.
    """
    name, constraint = parse_requirement(spec)
    doc = load_manifest_document(layout.manifest_path)
    current = parse_manifest(doc.unwrap(), layout.manifest_path)
    already_present = name in current.packages

    if constraint == ANY:
        try:
            versions = source.available_versions(name)
        except PackageNotFoundError as e:
            raise UnknownPackageError(name, "add") from e
        constraint = versions[-1]

    set_package_constraint(doc, name, constraint)
    manifest = parse_manifest(doc.unwrap(), layout.manifest_path)

    existing = LockFile.load(layout.lock_path)
    preferred = _locked_versions(existing)
    preferred.pop(name, None)
    resolution = resolve(
        manifest,
        source,
        board=load_board(manifest, source),
        default_target=default_target,
        preferred=preferred,
    )

    save_manifest_document(doc, layout.manifest_path)
    resolution.lock.write(layout.lock_path)

    previous = set(preferred)
    pulled_in = sorted(
        dep for dep in resolution.graph.transitive_dependencies(name) if dep not in previous
    )
    version = resolution.graph.get(name).version
    logger.info("Added %s@%s", name, version)
    return AddResult(
        name=name,
        version=version,
        constraint=constraint,
        dependencies=pulled_in,
        already_present=already_present,
    )


def remove_package(
    layout: ProjectLayout,
    name: str,
    source: PackageSource,
    default_target: str = DEFAULT_TARGET,
) -> RemoveResult:
    """Remove a package from the manifest and re-resolve.

    Raises:
        PackageNotInManifestError: If the manifest does not declare name.
        ResolutionError: If the remaining packages no longer resolve.
    """
    doc = load_manifest_document(layout.manifest_path)
    if not remove_package_entry(doc, name):
        raise PackageNotInManifestError(name)
    manifest = parse_manifest(doc.unwrap(), layout.manifest_path)

    existing = LockFile.load(layout.lock_path)
    resolution = resolve(
        manifest,
        source,
        board=load_board(manifest, source),
        default_target=default_target,
        preferred=_locked_versions(existing),
    )

    save_manifest_document(doc, layout.manifest_path)
    resolution.lock.write(layout.lock_path)

    old_names = set(_locked_versions(existing))
    removed = sorted(old_names - set(resolution.graph.names))
    still_required_by: list[str] = []
    if name in resolution.graph:
        still_required_by = resolution.graph.dependents(name)
        logger.warning(
            "%s is still required by %s and stays in the lock file",
            name,
            ", ".join(still_required_by),
        )
    logger.info("Removed %s", name)
    return RemoveResult(name=name, removed=removed, still_required_by=still_required_by)


def update_packages(
    layout: ProjectLayout,
    source: PackageSource,
    names: list[str] | None = None,
    default_target: str = DEFAULT_TARGET,
) -> UpdateResult:
    """Re-resolve to the newest allowed versions.

    Args:
        layout: Project layout.
        source: Package source.
        names: Packages to update; all packages when None or empty.
        default_target: Target triple used when there is no board.

    Returns:
        UpdateResult listing version changes.

    Raises:
        PackageNotInManifestError: If a named package is not part of the project.
        ResolutionError: If the project no longer resolves.
    """
    doc = load_manifest_document(layout.manifest_path)
    manifest = parse_manifest(doc.unwrap(), layout.manifest_path)
    existing = LockFile.load(layout.lock_path)
    locked = _locked_versions(existing)

    if names:
        for name in names:
            if name not in manifest.packages and name not in locked:
                raise PackageNotInManifestError(name)
        preferred = {n: v for n, v in locked.items() if n not in names}
    else:
        preferred = {}

    # Exact pins in the manifest move to the newest published version
    pins_changed = False
    for name, constraint in manifest.requested_packages():
        if names and name not in names:
            continue
        if not is_exact_pin(constraint) or source.is_local(name):
            continue
        try:
            latest = source.available_versions(name)[-1]
        except PackageNotFoundError as e:
            raise UnknownPackageError(name, MANIFEST_REQUESTER) from e
        if version_sort_key(latest) > version_sort_key(constraint):
            set_package_constraint(doc, name, latest)
            pins_changed = True
    if pins_changed:
        manifest = parse_manifest(doc.unwrap(), layout.manifest_path)

    resolution = resolve(
        manifest,
        source,
        board=load_board(manifest, source),
        default_target=default_target,
        preferred=preferred,
    )

    result = UpdateResult()
    fresh = {package.name: package.version for package in resolution.graph}
    for name in sorted(set(locked) | set(fresh)):
        if name not in locked:
            result.added.append(name)
        elif name not in fresh:
            result.removed.append(name)
        elif locked[name] != fresh[name]:
            result.updated.append((name, locked[name], fresh[name]))

    if pins_changed:
        save_manifest_document(doc, layout.manifest_path)
    if existing != resolution.lock:
        resolution.lock.write(layout.lock_path)
    for name, old, new in result.updated:
        logger.info("Updated %s %s -> %s", name, old, new)
    return result


def check_project(
    layout: ProjectLayout,
    source: PackageSource,
    default_target: str = DEFAULT_TARGET,
) -> CheckResult:
    """Validate the manifest and resolve the project without building.

    Resolution failures are reported in the result rather than raised;
    nothing is written.

    Raises:
        ManifestError: If the manifest is missing or invalid.
    """
    manifest = load_manifest(layout.manifest_path)
    existing = LockFile.load(layout.lock_path)

    try:
        resolution = resolve_project(layout, source, default_target=default_target)
    except ResolutionError as e:
        logger.debug("Check failed to resolve: %s", e)
        return CheckResult(valid=False, errors=[str(e)])

    result = CheckResult(
        valid=True,
        target=resolution.target,
        build_order=resolution.order,
    )
    if existing is None:
        result.warnings.append("No lock file; run 'rootfsgen lock' to create one")
    elif existing != resolution.lock:
        result.lock_status = "outdated"
        changed = ", ".join(existing.diff(resolution.lock).packages)
        result.warnings.append(f"Lock file is out of date for: {changed}")
    else:
        result.lock_status = "up-to-date"

    for name, artifact in sorted(manifest.external.items()):
        if artifact.path is not None and not (layout.root / artifact.path).exists():
            result.warnings.append(f"External artifact {name} not found: {artifact.path}")
    if not resolution.graph.names:
        result.warnings.append("Project declares no packages")
    return result


def clean_project(layout: ProjectLayout) -> CleanResult:
    """Remove the project's build and output directories.

    Raises:
        OSError: If a directory cannot be removed.
    """
    result = CleanResult()
    for directory in (layout.build_dir, layout.output_dir):
        if directory.is_dir():
            shutil.rmtree(directory)
            result.removed.append(directory)
            logger.info("Removed %s", directory)
        else:
            result.skipped.append(directory)
    return result


def package_info(
    layout: ProjectLayout,
    name: str,
    source: PackageSource,
    version: str | None = None,
) -> PackageDescriptor:
    """Describe a package: the locked version, or the newest one.

    Raises:
        UnknownPackageError: If the package does not exist.
    """
    if version is None:
        entry = (LockFile.load(layout.lock_path) or LockFile()).get(name)
        if entry is not None:
            version = entry.version
    try:
        if version is None:
            version = source.available_versions(name)[-1]
        return source.get_package(name, version)
    except PackageNotFoundError as e:
        raise UnknownPackageError(name, "info") from e


__all__ = [
    "AddResult",
    "CheckResult",
    "CleanResult",
    "PackageNotInManifestError",
    "ProjectExistsError",
    "RemoveResult",
    "UpdateResult",
    "add_package",
    "check_project",
    "clean_project",
    "init_project",
    "load_board",
    "lock_project",
    "package_info",
    "remove_package",
    "resolve_project",
    "update_packages",
]
