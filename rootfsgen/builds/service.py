"""Build service module.

This module provides the high-level build API:
- build_project(): load manifest, resolve, enforce --locked, write the lock
  file, then schedule every package
- PackageBuilder: per-package incremental logic (stamp, shared cache,
  build step, cache store)
- Cache index bookkeeping for outputs stored or restored during a run
- fetch_project(): fill the download store ahead of a build
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from sqlalchemy.orm import Session, sessionmaker

from rootfsgen.builds.cache_index import record_cache_entry, touch_cache_entry
from rootfsgen.builds.cache_key import cache_key_for
from rootfsgen.builds.fetch import (
    DOWNLOAD_TIMEOUT,
    DownloadError,
    HashMismatchError,
    archive_filename,
    compute_file_sha256,
    download_file,
    extract_archive,
    fetch_package_source,
)
from rootfsgen.builds.runner import BuildPaths, run_build_step
from rootfsgen.builds.sandbox import DEFAULT_IMAGE, require_runtime, resolve_sandbox_enabled
from rootfsgen.builds.scheduler import BuildScheduler, ScheduleResult
from rootfsgen.builds.staging import apply_patches, install_files
from rootfsgen.builds.stamps import BuildStamp, clear_stamp, stamp_matches, write_stamp
from rootfsgen.builds.storage import CacheIOError, SharedStorage, directory_size
from rootfsgen.db import get_session
from rootfsgen.project.io import load_manifest
from rootfsgen.project.layout import ProjectLayout
from rootfsgen.project.lockfile import LockFile, verify_locked
from rootfsgen.project.service import load_board, resolve_project
from rootfsgen.resolver.errors import UnknownPackageError
from rootfsgen.resolver.graph import BuildGraph
from rootfsgen.resolver.service import DEFAULT_TARGET, Resolution, resolve
from rootfsgen.types import ContainerRuntime, NodeOutcome, PackageDescriptor, SourceKind

if TYPE_CHECKING:
    from rootfsgen.config import Settings
    from rootfsgen.project.schema import ExternalArtifact
    from rootfsgen.registry.lookup import PackageSource

logger = logging.getLogger(__name__)


class BuildServiceError(Exception):
    """Raised for build service failures outside the build step itself."""

    def __init__(self, message: str, code: str = "build_service_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class BuildOptions:
    """Scheduling flags for one build invocation.

    Attributes:
        jobs: Maximum concurrent package builds (None = manifest or settings).
        locked: Fail if the lock file would change.
        package: Force this package through its build step.
        force: Ignore stamps (the shared cache is still used).
        sandbox: --sandbox/--no-sandbox (None = manifest or settings).
    """

    jobs: int | None = None
    locked: bool = False
    package: str | None = None
    force: bool = False
    sandbox: bool | None = None


@dataclass
class BuildReport:
    """Result of build_project().

    Attributes:
        resolution: The resolution that was built.
        schedule: Per-package outcomes.
        lock_written: Whether the lock file was (re)written.
        sandboxed: Whether build steps ran in containers.
        jobs: Worker count used.
    """

    resolution: Resolution
    schedule: ScheduleResult
    lock_written: bool = False
    sandboxed: bool = False
    jobs: int = 1

    @property
    def success(self) -> bool:
        return self.schedule.success


@dataclass
class _CacheUse:
    package: PackageDescriptor
    key: str
    stored: bool
    touch_only: bool = False


class PackageBuilder:
    """Builds one package at a time, reusing stamps and the shared cache.

    Instances are called from scheduler worker threads; the only shared
    mutable state is the list of cache uses, guarded by a lock.

    Args:
        layout: Project layout.
        graph: Resolved build graph.
        storage: Shared download store and build cache.
        target: Target triple.
        toolchain_version: Toolchain version folded into cache keys.
        cpu: Target CPU.
        jobs: Parallel jobs inside each build step.
        compress: Default for packages without a compress override.
        runtime: Container runtime, or None to build on the host.
        image: Container image for sandboxed builds.
        force: Ignore stamps.
        rebuild: Packages that bypass both stamp and cache.
        http_client: HTTP client for source downloads.
        offline: Never download; only use the download store.
        download_timeout: Timeout for one source download.
        cancel_event: Set to terminate running build steps.
    """

    def __init__(
        self,
        layout: ProjectLayout,
        graph: BuildGraph,
        storage: SharedStorage,
        target: str,
        toolchain_version: str,
        cpu: str = "generic",
        jobs: int = 1,
        compress: bool = False,
        runtime: ContainerRuntime | None = None,
        image: str = DEFAULT_IMAGE,
        force: bool = False,
        rebuild: frozenset[str] = frozenset(),
        http_client: httpx.Client | None = None,
        offline: bool = False,
        download_timeout: float = DOWNLOAD_TIMEOUT,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.layout = layout
        self.graph = graph
        self.storage = storage
        self.target = target
        self.toolchain_version = toolchain_version
        self.cpu = cpu
        self.jobs = jobs
        self.compress = compress
        self.runtime = runtime
        self.image = image
        self.force = force
        self.rebuild = rebuild
        self.offline = offline
        self.download_timeout = download_timeout
        self.cancel_event = cancel_event
        self._http_client = http_client
        self._owns_client = http_client is None
        self._client_lock = threading.Lock()
        self._uses: list[_CacheUse] = []
        self._uses_lock = threading.Lock()

    @property
    def http_client(self) -> httpx.Client:
        with self._client_lock:
            if self._http_client is None:
                self._http_client = httpx.Client()
            return self._http_client

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    @property
    def cache_uses(self) -> list[_CacheUse]:
        with self._uses_lock:
            return list(self._uses)

    def cache_key(self, package: PackageDescriptor) -> str:
        return cache_key_for(package, self.target, self.toolchain_version)

    def __call__(
        self,
        package: PackageDescriptor,
        dep_outcomes: Mapping[str, NodeOutcome],
    ) -> NodeOutcome:
        """Bring one package's install destination up to date.

        A dependency that was built in this run forces a rebuild, since
        the cached output may have been produced against the old one.
        """
        name = package.name
        key = self.cache_key(package)
        stamp_path = self.layout.stamp_path(name)
        dest_dir = self.layout.dest_dir(name)

        targeted = name in self.rebuild
        dep_built = any(outcome == NodeOutcome.BUILT for outcome in dep_outcomes.values())
        dep_changed = any(outcome.changed for outcome in dep_outcomes.values())

        if (
            not self.force
            and not targeted
            and not dep_changed
            and dest_dir.is_dir()
            and stamp_matches(stamp_path, key)
        ):
            logger.debug("%s is up to date", package.spec)
            self._record(package, key, stored=False, touch_only=True)
            return NodeOutcome.UP_TO_DATE

        clear_stamp(stamp_path)

        if not targeted and not dep_built and self.storage.cache_exists(key):
            with self.storage.key_lock(key):
                self.storage.restore_build_output(key, dest_dir)
            write_stamp(stamp_path, BuildStamp(package=name, version=package.version, cache_key=key))
            self._record(package, key, stored=False)
            logger.info("Restored %s from cache", package.spec)
            return NodeOutcome.RESTORED

        self._build(package, key, replace=targeted or dep_built)
        write_stamp(stamp_path, BuildStamp(package=name, version=package.version, cache_key=key))
        return NodeOutcome.BUILT

    def prepare_source(self, package: PackageDescriptor) -> Path | None:
        """Make the package's source tree available.

        Returns:
            Source directory, or None for packages without a source.

        Raises:
            BuildServiceError: If a path source does not exist.
            DownloadError: If a URL source cannot be fetched.
            HashMismatchError: If a download does not match its checksum.
            ExtractionError: If the archive cannot be extracted.
        """
        kind = package.source.kind
        if kind == SourceKind.NONE:
            return None

        if kind == SourceKind.PATH:
            path = Path(package.source.location)
            if not path.is_absolute():
                path = self.layout.root / path
            if not path.is_dir():
                raise BuildServiceError(
                    f"Source directory for {package.spec} not found: {path}",
                    code="source_missing",
                )
            return path

        archive = fetch_package_source(
            self.http_client,
            self.storage,
            package,
            offline=self.offline,
            timeout=self.download_timeout,
        )
        return extract_archive(archive, self.layout.src_dir(package.name))

    def _build(self, package: PackageDescriptor, key: str, replace: bool) -> None:
        name = package.name
        src_dir = self.prepare_source(package)

        work_dir = self.layout.work_dir(name)
        dest_dir = self.layout.dest_dir(name)
        for directory in (work_dir, dest_dir):
            if directory.exists():
                shutil.rmtree(directory)
        if src_dir is not None:
            shutil.copytree(src_dir, work_dir, symlinks=True)
        else:
            work_dir.mkdir(parents=True)
        dest_dir.mkdir(parents=True)
        patched = apply_patches(package, work_dir, self.layout.log_path(name))

        compress = package.build.compress if package.build.compress is not None else self.compress
        paths = BuildPaths(
            work_dir=work_dir,
            dest_dir=dest_dir,
            src_dir=src_dir,
            package_dir=package.package_dir,
            dependency_dirs={
                dep: self.layout.dest_dir(dep)
                for dep in sorted(self.graph.transitive_dependencies(name))
            },
        )
        run_build_step(
            package,
            paths,
            self.layout.log_path(name),
            target=self.target,
            cpu=self.cpu,
            jobs=self.jobs,
            compress=compress,
            runtime=self.runtime,
            image=self.image,
            cancel_event=self.cancel_event,
            append_log=bool(patched),
        )
        install_files(package.install, work_dir, dest_dir)

        with self.storage.key_lock(key):
            self.storage.store_build_output(key, dest_dir, replace=replace)
        self._record(package, key, stored=True)
        shutil.rmtree(work_dir, ignore_errors=True)

    def _record(
        self,
        package: PackageDescriptor,
        key: str,
        stored: bool,
        touch_only: bool = False,
    ) -> None:
        with self._uses_lock:
            self._uses.append(
                _CacheUse(package=package, key=key, stored=stored, touch_only=touch_only)
            )


def _record_cache_uses(
    builder: PackageBuilder,
    session_factory: sessionmaker[Session],
    target: str,
    toolchain_version: str,
) -> None:
    uses = builder.cache_uses
    if not uses:
        return
    with get_session(session_factory) as session:
        for use in uses:
            if use.touch_only:
                # Up-to-date outputs keep their cache entry alive for prune
                touch_cache_entry(session, use.key)
                continue
            size = directory_size(builder.storage.cache_path(use.key)) if use.stored else 0
            record_cache_entry(
                session,
                key=use.key,
                package=use.package.name,
                version=use.package.version,
                checksum=use.package.checksum,
                target=target,
                toolchain=toolchain_version,
                size_bytes=size,
            )


def build_project(
    layout: ProjectLayout,
    source: PackageSource,
    storage: SharedStorage,
    options: BuildOptions | None = None,
    settings: Settings | None = None,
    http_client: httpx.Client | None = None,
    session_factory: sessionmaker[Session] | None = None,
    cancel_event: threading.Event | None = None,
) -> BuildReport:
    """Resolve and build a project.

    Resolution, the --locked check, the --package check and runtime
    detection all happen before any build step runs.

    Args:
        layout: Project layout.
        source: Package source (local-first lookup).
        storage: Shared storage.
        options: Scheduling flags.
        settings: Application settings.
        http_client: HTTP client for source downloads.
        session_factory: Cache index sessions (None = no index updates).
        cancel_event: Set to cancel the run.

    Returns:
        BuildReport with the resolution and per-package outcomes.

    Raises:
        ManifestError: If the manifest is missing or invalid.
        ResolutionError: If resolution fails.
        LockMismatchError: If --locked and the lock file would change.
        UnknownPackageError: If --package names a package not in the graph.
        RuntimeUnavailableError: If sandboxing is on and no runtime works.
        KeyboardInterrupt: If interrupted; running builds are cancelled.
    """
    if options is None:
        options = BuildOptions()
    if settings is None:
        from rootfsgen.config import get_settings

        settings = get_settings()

    manifest = load_manifest(layout.manifest_path)
    existing = LockFile.load(layout.lock_path)
    board = load_board(manifest, source)
    resolution = resolve(
        manifest,
        source,
        board=board,
        default_target=settings.default_target or DEFAULT_TARGET,
        preferred={entry.name: entry.version for entry in existing} if existing else None,
    )

    if options.locked:
        verify_locked(existing, resolution.lock, layout.lock_path)

    if options.package is not None and options.package not in resolution.graph:
        raise UnknownPackageError(options.package, requested_by="--package")

    sandboxed = resolve_sandbox_enabled(options.sandbox, manifest.build.sandbox, settings.sandbox)
    runtime = require_runtime() if sandboxed else None

    # Only a run that passed every pre-build check may rewrite the lock
    lock_written = False
    if not options.locked and existing != resolution.lock:
        resolution.lock.write(layout.lock_path)
        lock_written = True

    jobs = options.jobs or manifest.build.jobs or settings.jobs
    builder = PackageBuilder(
        layout,
        resolution.graph,
        storage,
        target=resolution.target,
        toolchain_version=settings.toolchain_version,
        cpu=board.cpu if board is not None else "generic",
        jobs=jobs,
        compress=manifest.build.compress,
        runtime=runtime,
        image=settings.container_image,
        force=options.force,
        rebuild=frozenset({options.package}) if options.package else frozenset(),
        http_client=http_client,
        offline=settings.offline,
        download_timeout=settings.download_timeout,
        cancel_event=cancel_event,
    )
    scheduler = BuildScheduler(resolution.graph, builder, jobs=jobs, cancel_event=cancel_event)

    logger.info(
        "Building %d package(s) for %s%s",
        len(resolution.graph),
        resolution.target,
        f" in {runtime.value}" if runtime is not None else "",
    )
    try:
        schedule = scheduler.run()
    finally:
        builder.close()
        if session_factory is not None:
            _record_cache_uses(builder, session_factory, resolution.target, settings.toolchain_version)

    return BuildReport(
        resolution=resolution,
        schedule=schedule,
        lock_written=lock_written,
        sandboxed=sandboxed,
        jobs=jobs,
    )


@dataclass
class FetchReport:
    """Result of fetch_project().

    Packages are reported as "name@version", external artifacts as
    "external:<name>".

    Attributes:
        downloaded: Items downloaded and verified in this run.
        cached: Items already present and valid.
        skipped: Packages without a URL source.
        failed: Items that could not be fetched, with the error.
    """

    downloaded: list[str] = field(default_factory=list)
    cached: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


def _fetch_external(
    client: httpx.Client,
    storage: SharedStorage,
    layout: ProjectLayout,
    name: str,
    artifact: ExternalArtifact,
    report: FetchReport,
    force: bool,
    offline: bool,
    timeout: float,
) -> None:
    label = f"external:{name}"
    if artifact.path is not None:
        path = layout.root / artifact.path
        if not path.is_file():
            report.failed[label] = f"File not found: {path}"
        elif artifact.sha256 and compute_file_sha256(path) != artifact.sha256.lower():
            report.failed[label] = f"Checksum mismatch for {path}"
        else:
            report.cached.append(label)
        return

    # The manifest schema requires sha256 alongside url
    url, sha256 = artifact.url or "", artifact.sha256 or ""
    filename = archive_filename(url, name)
    if force:
        storage.download_path(name, "external", sha256, filename).unlink(missing_ok=True)
    elif storage.download_exists(name, "external", sha256, filename):
        report.cached.append(label)
        return
    if offline:
        report.failed[label] = f"Offline mode: {url} is not in the download store"
        return

    staged = storage.staging_file(filename)
    try:
        download_file(client, url, staged, expected_checksum=sha256, timeout=timeout)
        storage.store_download(name, "external", sha256, staged, filename)
    except (DownloadError, HashMismatchError, CacheIOError) as e:
        report.failed[label] = str(e)
        return
    finally:
        staged.unlink(missing_ok=True)
    report.downloaded.append(label)


def fetch_project(
    layout: ProjectLayout,
    source: PackageSource,
    storage: SharedStorage,
    settings: Settings | None = None,
    http_client: httpx.Client | None = None,
    force: bool = False,
) -> FetchReport:
    """Download every source archive and external artifact the project needs.

    Versions come from the lock file while it still satisfies the
    manifest; nothing is written to the project. A failed item does not
    stop the others.

    Args:
        layout: Project layout.
        source: Package source (local-first lookup).
        storage: Shared storage.
        settings: Application settings.
        http_client: HTTP client (a temporary one is created if None).
        force: Download again even if the store has a verified copy.

    Returns:
        FetchReport listing what was downloaded, cached, skipped or failed.

    Raises:
        ManifestError: If the manifest is missing or invalid.
        ResolutionError: If the project does not resolve.
    """
    if settings is None:
        from rootfsgen.config import get_settings

        settings = get_settings()

    manifest = load_manifest(layout.manifest_path)
    resolution = resolve_project(
        layout, source, default_target=settings.default_target or DEFAULT_TARGET
    )

    report = FetchReport()
    client = http_client or httpx.Client()
    try:
        for name in resolution.order:
            package = resolution.graph.get(name)
            if package.source.kind != SourceKind.URL:
                report.skipped.append(package.spec)
                continue

            filename = archive_filename(
                package.source.location, f"{package.name}-{package.version}.tar.gz"
            )
            checksum = package.source_checksum or package.checksum
            if force:
                storage.download_path(name, package.version, checksum, filename).unlink(
                    missing_ok=True
                )
            elif storage.download_exists(name, package.version, checksum, filename):
                report.cached.append(package.spec)
                continue

            try:
                fetch_package_source(
                    client,
                    storage,
                    package,
                    offline=settings.offline,
                    timeout=settings.download_timeout,
                )
            except (DownloadError, HashMismatchError, CacheIOError) as e:
                logger.error("Failed to fetch %s: %s", package.spec, e)
                report.failed[package.spec] = str(e)
                continue
            report.downloaded.append(package.spec)

        for name, artifact in sorted(manifest.external.items()):
            _fetch_external(
                client,
                storage,
                layout,
                name,
                artifact,
                report,
                force=force,
                offline=settings.offline,
                timeout=settings.download_timeout,
            )
    finally:
        if http_client is None:
            client.close()

    logger.info(
        "Fetched %d item(s), %d already present, %d failed",
        len(report.downloaded),
        len(report.cached),
        len(report.failed),
    )
    return report


__all__ = [
    "BuildOptions",
    "BuildReport",
    "BuildServiceError",
    "FetchReport",
    "PackageBuilder",
    "build_project",
    "fetch_project",
]
