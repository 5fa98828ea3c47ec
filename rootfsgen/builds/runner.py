"""Build step runner.

This module handles:
- Composing the build step command for each build type
- The build environment (toolchain, directories, dependency outputs)
- Executing a step on the host or in a container, output captured to the
  package's log file
- Terminating a running step on cancellation

A build step is an opaque process: argv, working directory and environment
in, exit code out. Exit code 0 is success.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import signal
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePath

from rootfsgen.builds.sandbox import (
    CONTAINER_DEPS,
    CONTAINER_DEST,
    CONTAINER_PKG,
    CONTAINER_SRC,
    CONTAINER_WORK,
    build_sandbox_config,
    compose_container_command,
    kill_container,
)
from rootfsgen.types import BuildStepDescriptor, BuildType, ContainerRuntime, PackageDescriptor

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "/usr"

# How often a running step checks for cancellation (seconds)
POLL_INTERVAL = 0.2

# Grace period between SIGTERM and SIGKILL (seconds)
TERMINATE_GRACE = 10


class BuildStepFailedError(Exception):
    """Raised when a build step exits non-zero or cannot be started."""

    def __init__(
        self,
        package: str,
        exit_code: int | None,
        log_path: Path,
        message: str | None = None,
        code: str = "build_step_failed",
    ) -> None:
        super().__init__(
            message or f"Build of {package} failed with exit code {exit_code}; see {log_path}"
        )
        self.package = package
        self.exit_code = exit_code
        self.log_path = log_path
        self.code = code


class BuildCancelledError(Exception):
    """Raised when a running build step was terminated by cancellation."""

    def __init__(self, package: str, code: str = "cancelled") -> None:
        super().__init__(f"Build of {package} was cancelled")
        self.package = package
        self.code = code


@dataclass
class BuildPaths:
    """Host directories used by one package build.

    Attributes:
        work_dir: Writable working directory (a copy of the source tree).
        dest_dir: Install destination (DESTDIR).
        src_dir: Pristine source tree, if the package has one.
        package_dir: Directory with the package definition and scripts.
        dependency_dirs: Install destinations of dependencies, by name.
    """

    work_dir: Path
    dest_dir: Path
    src_dir: Path | None = None
    package_dir: Path | None = None
    dependency_dirs: dict[str, Path] = field(default_factory=dict)


@dataclass
class BuildResult:
    """Result of a build step execution.

    Attributes:
        package: Package name.
        exit_code: Process exit code.
        log_path: Path to the build log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
        sandboxed: Whether the step ran in a container.
    """

    package: str
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    sandboxed: bool = False


def dependency_env_name(name: str) -> str:
    """Environment variable naming a dependency's output, e.g. zlib -> ZLIB_DIR."""
    return re.sub(r"[^A-Za-z0-9]", "_", name).upper() + "_DIR"


def toolchain_env(build: BuildStepDescriptor, target: str) -> dict[str, str]:
    """Compiler variables for the package's toolchain."""
    if build.toolchain == "gcc":
        prefix = build.toolchain_prefix or ""
        return {
            "CC": f"{prefix}gcc",
            "CXX": f"{prefix}g++",
            "AR": f"{prefix}ar",
        }
    return {
        "CC": f"zig cc -target {target}",
        "CXX": f"zig c++ -target {target}",
    }


def build_environment(
    package: PackageDescriptor,
    target: str,
    cpu: str,
    jobs: int,
    src_dir: PurePath | None,
    dest_dir: PurePath,
    package_dir: PurePath | None = None,
    dependency_dirs: dict[str, PurePath] | None = None,
    compress: bool = False,
) -> dict[str, str]:
    """Compose the environment passed to a build step.

    Paths are given as the step will see them (host or container).
    """
    env = {
        "TARGET": target,
        "CPU": cpu,
        "JOBS": str(max(1, jobs)),
        "PREFIX": DEFAULT_PREFIX,
        "DESTDIR": str(dest_dir),
        "SRCDIR": str(src_dir) if src_dir is not None else "",
        "COMPRESS": "1" if compress else "0",
        "PKG_NAME": package.name,
        "PKG_VERSION": package.version,
    }
    if package_dir is not None:
        env["PKGDIR"] = str(package_dir)
    env.update(toolchain_env(package.build, target))
    for dep_name, dep_dir in sorted((dependency_dirs or {}).items()):
        env[dependency_env_name(dep_name)] = str(dep_dir)
    return env


def _join(args: tuple[str, ...]) -> str:
    return (" " + shlex.join(args)) if args else ""


def compose_build_command(
    package: PackageDescriptor,
    package_dir: PurePath | None = None,
) -> list[str]:
    """Compose the build step argv for a package.

    Commands run in the work directory and read their settings from the
    build environment.

    Args:
        package: Resolved package.
        package_dir: Package directory as the step will see it.

    Returns:
        Command as list of strings suitable for subprocess.

    Raises:
        ValueError: If the build description is incomplete.
    """
    build = package.build

    if build.type == BuildType.SCRIPT:
        if not build.script or package_dir is None:
            raise ValueError(f"{package.name}: script build needs a script in the package directory")
        return ["sh", "-eu", str(package_dir / build.script)]

    if build.type == BuildType.MAKE:
        script = (
            f'make -j"$JOBS"{_join(build.make_args)}\n'
            f'make install DESTDIR="$DESTDIR" PREFIX="$PREFIX"{_join(build.make_args)}\n'
        )
    elif build.type == BuildType.AUTOTOOLS:
        script = (
            f'./configure --host="$TARGET" --prefix="$PREFIX"{_join(build.configure_args)}\n'
            f'make -j"$JOBS"{_join(build.make_args)}\n'
            'make install DESTDIR="$DESTDIR"\n'
        )
    elif build.type == BuildType.CMAKE:
        script = (
            'cmake -S . -B _build -DCMAKE_INSTALL_PREFIX="$PREFIX"'
            f"{_join(build.cmake_args)}\n"
            'cmake --build _build -j "$JOBS"\n'
            'DESTDIR="$DESTDIR" cmake --install _build\n'
        )
    elif build.type == BuildType.CUSTOM:
        if not build.steps:
            raise ValueError(f"{package.name}: custom build needs at least one step")
        script = "\n".join(build.steps) + "\n"
    else:
        raise ValueError(f"{package.name}: unsupported build type {build.type}")

    return ["sh", "-euc", script]


def _terminate(process: subprocess.Popen[bytes]) -> None:
    """Terminate a step's process group, escalating to SIGKILL."""
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        process.wait(timeout=TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        process.wait()


def run_build_step(
    package: PackageDescriptor,
    paths: BuildPaths,
    log_path: Path,
    target: str,
    cpu: str = "generic",
    jobs: int = 1,
    compress: bool = False,
    runtime: ContainerRuntime | None = None,
    image: str = "alpine:latest",
    cancel_event: threading.Event | None = None,
    append_log: bool = False,
) -> BuildResult:
    """Execute a package's build step.

    With a runtime the step runs in a container under the sandbox mount and
    network policy; without one it runs on the host with no isolation.

    Args:
        package: Resolved package.
        paths: Host directories for the build.
        log_path: Log file for stdout/stderr (overwritten unless append_log).
        target: Target triple.
        cpu: Target CPU.
        jobs: Parallel jobs inside the step.
        compress: Whether the step should compress its outputs.
        runtime: Container runtime, or None to run on the host.
        image: Container image for sandboxed steps.
        cancel_event: Set to terminate the running step.
        append_log: Append to an existing log, such as patch output.

    Returns:
        BuildResult with execution details.

    Raises:
        BuildStepFailedError: If the step fails or cannot be started.
        BuildCancelledError: If cancel_event was set while running.
        MountFailureError: If a sandbox mount source is missing.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    container_name: str | None = None

    if runtime is not None:
        dep_mounts = {name: CONTAINER_DEPS / name for name in paths.dependency_dirs}
        env = build_environment(
            package,
            target,
            cpu,
            jobs,
            src_dir=CONTAINER_SRC if paths.src_dir is not None else None,
            dest_dir=CONTAINER_DEST,
            package_dir=CONTAINER_PKG if paths.package_dir is not None else None,
            dependency_dirs=dict(dep_mounts),
            compress=compress,
        )
        container_name = f"rootfsgen-{package.name}-{uuid.uuid4().hex[:8]}"
        config = build_sandbox_config(
            runtime=runtime,
            image=image,
            src_dir=paths.src_dir,
            package_dir=paths.package_dir,
            work_dir=paths.work_dir,
            dest_dir=paths.dest_dir,
            dependency_dirs=paths.dependency_dirs,
            network=package.build.network,
            env=env,
            name=container_name,
        )
        argv = compose_build_command(
            package, CONTAINER_PKG if paths.package_dir is not None else None
        )
        cmd = compose_container_command(config, argv)
        process_env = None
        cwd = paths.work_dir
        cwd_label = str(CONTAINER_WORK)
    else:
        env = build_environment(
            package,
            target,
            cpu,
            jobs,
            src_dir=paths.src_dir,
            dest_dir=paths.dest_dir,
            package_dir=paths.package_dir,
            dependency_dirs=dict(paths.dependency_dirs),
            compress=compress,
        )
        cmd = compose_build_command(package, paths.package_dir)
        process_env = dict(os.environ)
        process_env.update(env)
        cwd = paths.work_dir
        cwd_label = str(paths.work_dir)

    cmd_str = shlex.join(cmd)
    logger.info("Building %s", package.spec)
    logger.debug("Executing build step: %s", cmd_str)

    started_at = datetime.now(timezone.utc)
    cancelled = False

    try:
        with log_path.open("a" if append_log else "w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd_label}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            process = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=process_env,
                start_new_session=True,
            )
            while True:
                try:
                    exit_code = process.wait(timeout=POLL_INTERVAL)
                    break
                except subprocess.TimeoutExpired:
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        if runtime is not None and container_name is not None:
                            kill_container(runtime, container_name)
                        _terminate(process)
                        exit_code = process.returncode if process.returncode is not None else -1
                        break

    except OSError as e:
        logger.error("Failed to execute build step for %s: %s", package.name, e)
        raise BuildStepFailedError(
            package.name,
            None,
            log_path,
            message=f"Failed to execute build step for {package.name}: {e}",
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        if cancelled:
            log_file.write("\n# CANCELLED\n")
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    if cancelled:
        raise BuildCancelledError(package.name)
    if exit_code != 0:
        logger.error("Build of %s failed with exit code %d. See log: %s", package.name, exit_code, log_path)
        raise BuildStepFailedError(package.name, exit_code, log_path)

    return BuildResult(
        package=package.name,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        sandboxed=runtime is not None,
    )


__all__ = [
    "BuildCancelledError",
    "BuildPaths",
    "BuildResult",
    "BuildStepFailedError",
    "build_environment",
    "compose_build_command",
    "dependency_env_name",
    "run_build_step",
    "toolchain_env",
]
