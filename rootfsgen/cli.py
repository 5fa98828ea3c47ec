"""Thin CLI wrapper for rootfsgen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.tree import Tree

from rootfsgen import __version__
from rootfsgen.builds.fetch import DownloadError, ExtractionError, HashMismatchError
from rootfsgen.builds.runner import BuildStepFailedError
from rootfsgen.builds.sandbox import MountFailureError, RuntimeUnavailableError
from rootfsgen.builds.service import BuildServiceError
from rootfsgen.builds.storage import CacheIOError
from rootfsgen.config import Settings, get_settings, print_settings_json
from rootfsgen.project.io import ManifestError
from rootfsgen.project.layout import ProjectLayout, find_project_root
from rootfsgen.project.lockfile import LockFileError, LockMismatchError
from rootfsgen.project.service import PackageNotInManifestError, ProjectExistsError
from rootfsgen.registry.client import HttpRegistry, RegistryError
from rootfsgen.registry.local import LocalPackages
from rootfsgen.registry.lookup import PackageLookup
from rootfsgen.resolver.errors import ResolutionError
from rootfsgen.types import NodeOutcome

app = typer.Typer(
    name="rootfsgen",
    help="rootfsgen - resolve, build and cache embedded Linux root filesystems",
    no_args_is_help=True,
)
console = Console()

# Errors reported as a red message and exit code 1
HANDLED_ERRORS = (
    ManifestError,
    LockFileError,
    LockMismatchError,
    ResolutionError,
    RegistryError,
    ProjectExistsError,
    PackageNotInManifestError,
    RuntimeUnavailableError,
    MountFailureError,
    CacheIOError,
    DownloadError,
    HashMismatchError,
    ExtractionError,
    BuildStepFailedError,
    BuildServiceError,
)

_OUTCOME_STYLES = {
    NodeOutcome.BUILT: "green",
    NodeOutcome.RESTORED: "blue",
    NodeOutcome.UP_TO_DATE: "dim",
    NodeOutcome.FAILED: "red",
    NodeOutcome.CANCELLED: "yellow",
    NodeOutcome.NOT_ATTEMPTED: "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"rootfsgen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """rootfsgen - resolve, build and cache embedded Linux root filesystems."""
    level = logging.DEBUG if verbose else getattr(logging, get_settings().log_level)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


ProjectOption = Annotated[
    Path | None,
    typer.Option("--project", "-C", help="Project directory (default: search upwards)"),
]


def _fail(error: Exception) -> NoReturn:
    console.print(f"[red]Error: {error}[/red]")
    raise typer.Exit(code=1) from None


def _layout(project: Path | None) -> ProjectLayout:
    """Locate the project, exiting with an error if there is none."""
    if project is not None:
        return ProjectLayout(project)
    root = find_project_root()
    if root is None:
        console.print("[red]Error: No rootfsgen.toml found in this or any parent directory[/red]")
        console.print("Run 'rootfsgen init' to create a project")
        raise typer.Exit(code=1)
    return ProjectLayout(root)


@contextmanager
def create_lookup(layout: ProjectLayout, settings: Settings) -> Iterator[PackageLookup]:
    """Local-first package lookup backed by the configured registry."""
    with HttpRegistry(
        settings.registry_url,
        settings.registry_cache_dir,
        offline=settings.offline,
        timeout=settings.registry_timeout,
    ) as registry:
        yield PackageLookup(LocalPackages(layout), registry)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Data directory:      {settings.data_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Registry:[/bold]")
        console.print(f"  Registry URL:        {settings.registry_url}")
        console.print(f"  Offline mode:        {settings.offline}")
        console.print()
        console.print("[bold]Builds:[/bold]")
        console.print(f"  Jobs:                {settings.jobs}")
        console.print(f"  Sandbox:             {settings.sandbox}")
        console.print(f"  Container image:     {settings.container_image}")
        console.print(f"  Toolchain version:   {settings.toolchain_version}")
        console.print(f"  Default target:      {settings.default_target}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Registry timeout:    {settings.registry_timeout}")
        console.print(f"  Download timeout:    {settings.download_timeout}")


@app.command()
def init(
    path: Annotated[
        Path,
        typer.Argument(help="Project directory"),
    ] = Path("."),
    name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Project name (default: directory name)"),
    ] = None,
    board: Annotated[
        str | None,
        typer.Option("--board", "-b", help="Target board"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite an existing manifest"),
    ] = False,
) -> None:
    """Create a new project."""
    from rootfsgen.project.service import init_project

    try:
        layout = init_project(path, name=name, board=board, force=force)
    except HANDLED_ERRORS as e:
        _fail(e)

    console.print(f"[green]Created project in {layout.root}[/green]")
    console.print(f"  Manifest: {layout.manifest_path}")


@app.command()
def add(
    spec: Annotated[str, typer.Argument(help="Package to add: name or name@constraint")],
    project: ProjectOption = None,
) -> None:
    """Add a package to the project and update the lock file."""
    from rootfsgen.project.service import add_package

    layout = _layout(project)
    settings = get_settings()
    try:
        with create_lookup(layout, settings) as lookup:
            result = add_package(layout, spec, lookup, default_target=settings.default_target)
    except HANDLED_ERRORS as e:
        _fail(e)

    verb = "Updated" if result.already_present else "Added"
    console.print(f"[green]{verb} {result.name}@{result.version}[/green] ({result.constraint})")
    for dep in result.dependencies:
        console.print(f"  + {dep}")


@app.command()
def remove(
    name: Annotated[str, typer.Argument(help="Package to remove")],
    project: ProjectOption = None,
) -> None:
    """Remove a package from the project and update the lock file."""
    from rootfsgen.project.service import remove_package

    layout = _layout(project)
    settings = get_settings()
    try:
        with create_lookup(layout, settings) as lookup:
            result = remove_package(layout, name, lookup, default_target=settings.default_target)
    except HANDLED_ERRORS as e:
        _fail(e)

    console.print(f"[green]Removed {result.name}[/green]")
    for dropped in result.removed:
        console.print(f"  - {dropped}")
    if result.still_required_by:
        console.print(
            f"[yellow]{result.name} is still required by: "
            f"{', '.join(result.still_required_by)}[/yellow]"
        )


@app.command()
def update(
    names: Annotated[
        list[str] | None,
        typer.Argument(help="Packages to update (default: all)"),
    ] = None,
    project: ProjectOption = None,
) -> None:
    """Update packages to the newest allowed versions."""
    from rootfsgen.project.service import update_packages

    layout = _layout(project)
    settings = get_settings()
    try:
        with create_lookup(layout, settings) as lookup:
            result = update_packages(
                layout, lookup, names=names or None, default_target=settings.default_target
            )
    except HANDLED_ERRORS as e:
        _fail(e)

    if result.is_empty:
        console.print("[yellow]Everything is up to date[/yellow]")
        return
    for pkg, old, new in result.updated:
        console.print(f"  [green]{pkg}[/green] {old} -> {new}")
    for pkg in result.added:
        console.print(f"  + {pkg}")
    for pkg in result.removed:
        console.print(f"  - {pkg}")


@app.command()
def lock(
    project: ProjectOption = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Resolve the project and write the lock file."""
    from rootfsgen.project.service import lock_project

    layout = _layout(project)
    settings = get_settings()
    try:
        with create_lookup(layout, settings) as lookup:
            resolution = lock_project(layout, lookup, default_target=settings.default_target)
    except HANDLED_ERRORS as e:
        _fail(e)

    if json_output:
        output = [
            {
                "name": entry.name,
                "version": entry.version,
                "checksum": entry.checksum,
                "source": entry.source,
                "dependencies": list(entry.dependencies),
            }
            for entry in resolution.lock
        ]
        console.print(json.dumps(output, indent=2))
    else:
        console.print(
            f"[green]Locked {len(resolution.lock)} package(s)[/green] for {resolution.target}"
        )
        for entry in resolution.lock:
            console.print(f"  {entry.name} {entry.version}")


@app.command()
def tree(
    project: ProjectOption = None,
) -> None:
    """Show the resolved dependency tree."""
    from rootfsgen.project.io import load_manifest
    from rootfsgen.project.service import resolve_project

    layout = _layout(project)
    settings = get_settings()
    try:
        manifest = load_manifest(layout.manifest_path)
        with create_lookup(layout, settings) as lookup:
            resolution = resolve_project(layout, lookup, default_target=settings.default_target)
    except HANDLED_ERRORS as e:
        _fail(e)

    graph = resolution.graph
    root = Tree(f"[bold]{manifest.project.name}[/bold] ({resolution.target})")

    def _add(node: Tree, name: str, path: tuple[str, ...]) -> None:
        package = graph.get(name)
        branch = node.add(f"{name} [dim]{package.version}[/dim]")
        for dep in graph.dependencies(name):
            if dep not in path:
                _add(branch, dep, (*path, dep))

    for name in resolution.roots:
        _add(root, name, (name,))
    console.print(root)


@app.command()
def info(
    name: Annotated[str, typer.Argument(help="Package name")],
    version: Annotated[
        str | None,
        typer.Option("--version", help="Version to show (default: locked or newest)"),
    ] = None,
    project: ProjectOption = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show package metadata."""
    from rootfsgen.project.service import package_info

    layout = _layout(project)
    settings = get_settings()
    try:
        with create_lookup(layout, settings) as lookup:
            package = package_info(layout, name, lookup, version=version)
    except HANDLED_ERRORS as e:
        _fail(e)

    if json_output:
        output = {
            "name": package.name,
            "version": package.version,
            "description": package.description,
            "license": package.license,
            "homepage": package.homepage,
            "keywords": list(package.keywords),
            "source": package.source.render(),
            "origin": package.origin.value,
            "depends": list(package.depends),
            "provides": list(package.provides),
            "conflicts": list(package.conflicts),
            "arch": list(package.arch),
        }
        console.print(json.dumps(output, indent=2))
        return

    console.print(f"[bold]{package.spec}[/bold] ({package.origin.value})")
    if package.description:
        console.print(f"  {package.description}")
    console.print()
    console.print(f"  License:    {package.license or '-'}")
    console.print(f"  Homepage:   {package.homepage or '-'}")
    console.print(f"  Source:     {package.source.render()}")
    if package.keywords:
        console.print(f"  Keywords:   {', '.join(package.keywords)}")
    if package.depends:
        console.print(f"  Depends:    {', '.join(package.depends)}")
    if package.provides:
        console.print(f"  Provides:   {', '.join(package.provides)}")
    if package.conflicts:
        console.print(f"  Conflicts:  {', '.join(package.conflicts)}")
    if package.arch:
        console.print(f"  Arch:       {', '.join(package.arch)}")


@app.command()
def check(
    project: ProjectOption = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Validate the project and show the build order without building."""
    from rootfsgen.project.service import check_project

    layout = _layout(project)
    settings = get_settings()
    try:
        with create_lookup(layout, settings) as lookup:
            result = check_project(layout, lookup, default_target=settings.default_target)
    except HANDLED_ERRORS as e:
        _fail(e)

    if json_output:
        output = {
            "valid": result.valid,
            "target": result.target,
            "build_order": result.build_order,
            "lock_status": result.lock_status,
            "errors": result.errors,
            "warnings": result.warnings,
        }
        console.print(json.dumps(output, indent=2))
    else:
        for error in result.errors:
            console.print(f"[red]Error: {error}[/red]")
        for warning in result.warnings:
            console.print(f"[yellow]Warning: {warning}[/yellow]")
        if result.valid:
            console.print(f"[green]Project is valid[/green] ({result.target})")
            console.print(f"  Lock file: {result.lock_status}")
            console.print("  Build order:")
            for index, name in enumerate(result.build_order, start=1):
                console.print(f"    {index}. {name}")

    if not result.valid:
        raise typer.Exit(code=1)


@app.command()
def fetch(
    project: ProjectOption = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Download again even if already stored"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Download sources and external artifacts without building."""
    from rootfsgen.builds.service import fetch_project
    from rootfsgen.builds.storage import SharedStorage

    layout = _layout(project)
    settings = get_settings()
    storage = SharedStorage(settings.downloads_dir, settings.build_cache_dir)
    try:
        with create_lookup(layout, settings) as lookup:
            report = fetch_project(layout, lookup, storage, settings=settings, force=force)
    except HANDLED_ERRORS as e:
        _fail(e)

    if json_output:
        output = {
            "success": report.success,
            "downloaded": report.downloaded,
            "cached": report.cached,
            "skipped": report.skipped,
            "failed": report.failed,
        }
        console.print(json.dumps(output, indent=2))
    else:
        for item in report.downloaded:
            console.print(f"  [green]downloaded[/green] {item}")
        for item in report.cached:
            console.print(f"  [dim]cached[/dim]     {item}")
        for item, error in report.failed.items():
            console.print(f"  [red]failed[/red]     {item}: {error}")
        console.print()
        console.print(
            f"  Downloaded: {len(report.downloaded)}  Cached: {len(report.cached)}  "
            f"Skipped: {len(report.skipped)}"
        )
        if report.failed:
            console.print(f"  [red]Failed: {len(report.failed)}[/red]")

    if not report.success:
        raise typer.Exit(code=1)


@app.command()
def clean(
    project: ProjectOption = None,
) -> None:
    """Remove the project's build and output directories."""
    from rootfsgen.project.service import clean_project

    layout = _layout(project)
    try:
        result = clean_project(layout)
    except OSError as e:
        _fail(e)

    if not result.removed:
        console.print("[yellow]Nothing to clean[/yellow]")
    for directory in result.removed:
        console.print(f"[green]Removed {directory}[/green]")


@app.command()
def build(
    project: ProjectOption = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, help="Packages built in parallel"),
    ] = None,
    locked: Annotated[
        bool,
        typer.Option("--locked", help="Fail if the lock file would change"),
    ] = False,
    package: Annotated[
        str | None,
        typer.Option("--package", "-p", help="Rebuild this package, bypassing stamp and cache"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Ignore build stamps"),
    ] = False,
    sandbox: Annotated[
        bool | None,
        typer.Option("--sandbox/--no-sandbox", help="Run build steps in a container"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Resolve and build every package in the project."""
    from rootfsgen.builds.service import BuildOptions, build_project
    from rootfsgen.builds.storage import SharedStorage
    from rootfsgen.db import create_all_tables, get_engine, get_session_factory

    layout = _layout(project)
    settings = get_settings()
    storage = SharedStorage(settings.downloads_dir, settings.build_cache_dir)

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    options = BuildOptions(
        jobs=jobs,
        locked=locked,
        package=package,
        force=force,
        sandbox=sandbox,
    )
    cancel_event = threading.Event()
    try:
        with create_lookup(layout, settings) as lookup:
            report = build_project(
                layout,
                lookup,
                storage,
                options=options,
                settings=settings,
                session_factory=factory,
                cancel_event=cancel_event,
            )
    except KeyboardInterrupt:
        console.print("[yellow]Build cancelled[/yellow]")
        raise typer.Exit(code=130) from None
    except HANDLED_ERRORS as e:
        if isinstance(e, LockMismatchError) and e.packages:
            console.print(f"[red]Error: {e}[/red]")
            console.print("Run 'rootfsgen lock' to update the lock file")
            raise typer.Exit(code=1) from None
        _fail(e)

    schedule = report.schedule
    if json_output:
        output = {
            "target": report.resolution.target,
            "success": report.success,
            "lock_written": report.lock_written,
            "sandboxed": report.sandboxed,
            "outcomes": {name: outcome.value for name, outcome in sorted(schedule.outcomes.items())},
            "failed": {
                name: {
                    "error": failure.message,
                    "log_path": str(failure.log_path) if failure.log_path else None,
                }
                for name, failure in sorted(schedule.failed.items())
            },
        }
        console.print(json.dumps(output, indent=2))
    else:
        console.print(
            f"[bold]Build Results[/bold] ({report.resolution.target}, {report.jobs} job(s)"
            f"{', sandboxed' if report.sandboxed else ''}):"
        )
        for name in report.resolution.order:
            outcome = schedule.outcomes[name]
            style = _OUTCOME_STYLES[outcome]
            console.print(f"  [{style}]{name:<24} {outcome.value}[/{style}]")
            failure = schedule.failed.get(name)
            if failure is not None:
                console.print(f"      Error: {failure.message}")
                if failure.log_path is not None:
                    console.print(f"      Log: {failure.log_path}")
        console.print()
        console.print(
            f"  Built: {len(schedule.built)}  Restored: {len(schedule.restored)}  "
            f"Up to date: {len(schedule.up_to_date)}"
        )
        if schedule.failed:
            console.print(f"  [red]Failed: {len(schedule.failed)}[/red]")
        if schedule.not_attempted:
            console.print(f"  [yellow]Not attempted: {len(schedule.not_attempted)}[/yellow]")

    if schedule.interrupted:
        raise typer.Exit(code=130)
    if not report.success:
        raise typer.Exit(code=1)


cache_app = typer.Typer(help="Manage the shared build cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("info")
def cache_info(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show shared cache information."""
    from rootfsgen.builds.cache_index import get_cache_info
    from rootfsgen.builds.storage import SharedStorage
    from rootfsgen.db import create_all_tables, get_engine, get_session_factory

    settings = get_settings()
    storage = SharedStorage(settings.downloads_dir, settings.build_cache_dir)
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        info = get_cache_info(session, storage)

    if json_output:
        console.print(json.dumps(info, indent=2))
    else:
        console.print("[bold]Shared Cache Information:[/bold]")
        console.print()
        console.print(f"  Build cache:  {info['build_cache_dir']}")
        console.print(f"  Downloads:    {info['downloads_dir']}")
        console.print(f"  Entries:      {info['entries']} ({info['packages']} package(s))")
        console.print(f"  Cache size:   {info['build_cache_size_human']}")
        console.print(f"  Download size: {info['downloads_size_human']}")


@cache_app.command("prune")
def cache_prune(
    unused_days: Annotated[
        int,
        typer.Option("--unused-days", "-d", min=0, help="Prune entries unused for this many days"),
    ] = 30,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-n", help="Show what would be pruned without actually pruning"
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Prune cache entries that have not been used recently."""
    from rootfsgen.builds.cache_index import prune_cache
    from rootfsgen.builds.storage import SharedStorage
    from rootfsgen.db import create_all_tables, get_engine, get_session_factory

    settings = get_settings()
    storage = SharedStorage(settings.downloads_dir, settings.build_cache_dir)
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        pruned = prune_cache(session, storage, unused_days=unused_days, dry_run=dry_run)
        if not dry_run:
            session.commit()

    if json_output:
        output = {
            "dry_run": dry_run,
            "pruned": [
                {"package": p.package, "version": p.version, "key": p.key, "size_bytes": p.size_bytes}
                for p in pruned
            ],
        }
        console.print(json.dumps(output, indent=2))
    else:
        if not pruned:
            console.print("[yellow]No cache entries to prune[/yellow]")
        else:
            prefix = "[DRY RUN] Would prune" if dry_run else "Pruned"
            console.print(f"[bold]{prefix} {len(pruned)} cache entry(ies):[/bold]")
            for p in pruned:
                console.print(f"  - {p.package}@{p.version} ({p.key[:16]})")


if __name__ == "__main__":
    app()
