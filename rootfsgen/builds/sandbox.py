"""Sandboxed execution of build steps.

This module handles:
- Container runtime detection (docker preferred over podman)
- Choosing whether a build runs on the host or in a container
- Mount and network policy for sandboxed builds
- Composing the container command line and killing running containers

Mount policy: the pristine source tree, the package directory and dependency
outputs are read-only; only the package's work directory and its install
destination are writable. Network is disabled unless the package asks for it.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from rootfsgen.types import ContainerRuntime

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "alpine:latest"

# Where host directories appear inside the container
CONTAINER_ROOT = PurePosixPath("/rootfsgen")
CONTAINER_SRC = CONTAINER_ROOT / "src"
CONTAINER_PKG = CONTAINER_ROOT / "pkg"
CONTAINER_WORK = CONTAINER_ROOT / "work"
CONTAINER_DEST = CONTAINER_ROOT / "dest"
CONTAINER_DEPS = CONTAINER_ROOT / "deps"

# Timeout for runtime probes (seconds)
PROBE_TIMEOUT = 10


class RuntimeUnavailableError(Exception):
    """Raised when sandboxing is requested but no container runtime works."""

    def __init__(self, message: str | None = None, code: str = "runtime_unavailable") -> None:
        super().__init__(
            message
            or "Sandboxing requested but neither docker nor podman is available; "
            "install one or build with --no-sandbox"
        )
        self.code = code


class MountFailureError(Exception):
    """Raised when a sandbox mount source does not exist."""

    def __init__(self, path: Path, code: str = "mount_failure") -> None:
        super().__init__(f"Cannot mount {path}: path does not exist")
        self.path = path
        self.code = code


@dataclass(frozen=True)
class Mount:
    """A bind mount.

    Attributes:
        host: Host path.
        container: Path inside the container.
        read_only: Mount read-only.
    """

    host: Path
    container: PurePosixPath
    read_only: bool = True

    def to_arg(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"-v={self.host}:{self.container}{suffix}"


@dataclass
class SandboxConfig:
    """Per-package sandbox configuration.

    Attributes:
        runtime: Container runtime.
        image: Container image.
        mounts: Bind mounts.
        network: Allow network access.
        workdir: Working directory inside the container.
        env: Environment variables passed into the container.
        name: Container name (used to kill it on cancellation).
    """

    runtime: ContainerRuntime
    image: str = DEFAULT_IMAGE
    mounts: list[Mount] = field(default_factory=list)
    network: bool = False
    workdir: PurePosixPath = CONTAINER_WORK
    env: dict[str, str] = field(default_factory=dict)
    name: str | None = None

    def validate(self) -> None:
        """Check every mount source exists.

        Raises:
            MountFailureError: If a host path is missing.
        """
        for mount in self.mounts:
            if not mount.host.exists():
                raise MountFailureError(mount.host)


def _runtime_works(runtime: ContainerRuntime) -> bool:
    executable = shutil.which(runtime.value)
    if executable is None:
        return False
    try:
        result = subprocess.run(
            [executable, "--version"],
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("%s probe failed: %s", runtime.value, e)
        return False
    return result.returncode == 0


def detect_runtime() -> ContainerRuntime | None:
    """Return the first working runtime (docker, then podman), or None."""
    for runtime in ContainerRuntime:
        if _runtime_works(runtime):
            logger.debug("Using container runtime %s", runtime.value)
            return runtime
    return None


def require_runtime() -> ContainerRuntime:
    """Return a working runtime.

    Raises:
        RuntimeUnavailableError: If neither docker nor podman works.
    """
    runtime = detect_runtime()
    if runtime is None:
        raise RuntimeUnavailableError()
    return runtime


def resolve_sandbox_enabled(
    cli_sandbox: bool | None,
    manifest_sandbox: bool | None,
    default: bool = False,
) -> bool:
    """Decide whether builds run in a container.

    Precedence: --sandbox/--no-sandbox, then the manifest's [build] sandbox,
    then the configured default.
    """
    if cli_sandbox is not None:
        return cli_sandbox
    if manifest_sandbox is not None:
        return manifest_sandbox
    return default


def build_sandbox_config(
    runtime: ContainerRuntime,
    image: str,
    src_dir: Path | None,
    package_dir: Path | None,
    work_dir: Path,
    dest_dir: Path,
    dependency_dirs: dict[str, Path],
    network: bool,
    env: dict[str, str],
    name: str | None = None,
) -> SandboxConfig:
    """Create the sandbox configuration for one package build.

    Raises:
        MountFailureError: If a mount source does not exist.
    """
    mounts: list[Mount] = []
    if src_dir is not None:
        mounts.append(Mount(src_dir, CONTAINER_SRC, read_only=True))
    if package_dir is not None:
        mounts.append(Mount(package_dir, CONTAINER_PKG, read_only=True))
    mounts.append(Mount(work_dir, CONTAINER_WORK, read_only=False))
    mounts.append(Mount(dest_dir, CONTAINER_DEST, read_only=False))
    for dep_name in sorted(dependency_dirs):
        mounts.append(Mount(dependency_dirs[dep_name], CONTAINER_DEPS / dep_name, read_only=True))

    config = SandboxConfig(
        runtime=runtime,
        image=image,
        mounts=mounts,
        network=network,
        workdir=CONTAINER_WORK,
        env=env,
        name=name,
    )
    config.validate()
    return config


def compose_container_command(config: SandboxConfig, argv: list[str]) -> list[str]:
    """Compose the container runtime command that runs argv.

    Args:
        config: Sandbox configuration.
        argv: Build step command inside the container.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [config.runtime.value, "run", "--rm"]
    if config.name:
        cmd.append(f"--name={config.name}")
    if not config.network:
        cmd.append("--network=none")
    cmd.extend(mount.to_arg() for mount in config.mounts)
    cmd.append(f"-w={config.workdir}")
    cmd.extend(f"-e={key}={value}" for key, value in sorted(config.env.items()))
    cmd.append(config.image)
    cmd.extend(argv)
    return cmd


def kill_container(runtime: ContainerRuntime, name: str) -> None:
    """Kill a running container; errors are logged, not raised."""
    try:
        subprocess.run(
            [runtime.value, "kill", name],
            capture_output=True,
            timeout=PROBE_TIMEOUT * 3,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("Failed to kill container %s: %s", name, e)


__all__ = [
    "CONTAINER_DEPS",
    "CONTAINER_DEST",
    "CONTAINER_PKG",
    "CONTAINER_SRC",
    "CONTAINER_WORK",
    "DEFAULT_IMAGE",
    "Mount",
    "MountFailureError",
    "RuntimeUnavailableError",
    "SandboxConfig",
    "build_sandbox_config",
    "compose_container_command",
    "detect_runtime",
    "kill_container",
    "require_runtime",
    "resolve_sandbox_enabled",
]
