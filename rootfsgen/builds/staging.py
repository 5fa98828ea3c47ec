"""Work directory preparation and install staging.

This module handles:
- Applying a package's patches to its work directory before the build step
- Copying files named by [install] rules into the install destination
  after the build step

Patches are applied on the host with `patch -p1`; their output goes to the
package's build log. Install rules never write outside DESTDIR.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from rootfsgen.builds.runner import BuildStepFailedError
from rootfsgen.types import InstallRule, PackageDescriptor

logger = logging.getLogger(__name__)

PATCH_TIMEOUT = 120


class StagingError(Exception):
    """Raised when install rules cannot be applied."""

    def __init__(self, message: str, code: str = "staging_error") -> None:
        super().__init__(message)
        self.code = code


def compose_patch_command(patch_file: Path) -> list[str]:
    """Compose the argv applying one patch in the current directory."""
    return ["patch", "-p1", "--forward", "--batch", "-i", str(patch_file)]


def apply_patches(package: PackageDescriptor, work_dir: Path, log_path: Path) -> list[str]:
    """Apply the package's patches to its work directory, in order.

    Args:
        package: Resolved package.
        work_dir: Writable copy of the source tree.
        log_path: Build log; patch output is written here (overwritten).

    Returns:
        Patches that were applied.

    Raises:
        BuildStepFailedError: If a patch is missing, patch cannot run or a
            patch does not apply.
    """
    patches = package.build.patches
    if not patches:
        return []

    log_path.parent.mkdir(parents=True, exist_ok=True)
    applied: list[str] = []
    with log_path.open("w") as log_file:
        for rel in patches:
            patch_file = package.package_dir / rel if package.package_dir is not None else None
            if patch_file is None or not patch_file.is_file():
                log_file.write(f"# Patch not found: {rel}\n")
                raise BuildStepFailedError(
                    package.name,
                    None,
                    log_path,
                    message=f"Patch {rel} for {package.spec} not found",
                    code="patch_missing",
                )

            cmd = compose_patch_command(patch_file.resolve())
            log_file.write(f"# Patch: {rel}\n")
            log_file.flush()
            logger.debug("Applying %s to %s", rel, package.spec)
            try:
                result = subprocess.run(
                    cmd,
                    cwd=work_dir,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=PATCH_TIMEOUT,
                    check=False,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                raise BuildStepFailedError(
                    package.name,
                    None,
                    log_path,
                    message=f"Failed to apply {rel} to {package.spec}: {e}",
                    code="patch_failed",
                ) from e

            if result.returncode != 0:
                logger.error("Patch %s failed for %s. See log: %s", rel, package.spec, log_path)
                raise BuildStepFailedError(
                    package.name,
                    result.returncode,
                    log_path,
                    message=f"Patch {rel} does not apply to {package.spec}; see {log_path}",
                    code="patch_failed",
                )
            applied.append(rel)

    logger.info("Applied %d patch(es) to %s", len(applied), package.spec)
    return applied


def _within(path: Path, base: Path, what: str) -> Path:
    resolved = path.resolve()
    try:
        resolved.relative_to(base.resolve())
    except ValueError:
        raise StagingError(
            f"{what} path traversal detected: {path} resolves outside {base}",
            code="path_traversal",
        ) from None
    return resolved


def install_files(rules: tuple[InstallRule, ...], work_dir: Path, dest_dir: Path) -> list[Path]:
    """Copy files named by install rules from the work directory into DESTDIR.

    A rule whose source is a directory copies the whole tree. A destination
    ending in "/" names a directory the source is copied into.

    Args:
        rules: Install rules.
        work_dir: Work directory the build step ran in.
        dest_dir: Install destination.

    Returns:
        Installed paths.

    Raises:
        StagingError: If a source is missing or a path leaves its root.
    """
    installed: list[Path] = []
    for rule in rules:
        source = _within(work_dir / rule.src, work_dir, "Install source")
        if not source.exists():
            raise StagingError(
                f"Install source {rule.src} not found in {work_dir}",
                code="install_source_missing",
            )

        target = dest_dir / rule.dst.lstrip("/")
        if rule.dst.endswith("/"):
            target = target / source.name
        target = _within(target, dest_dir, "Install destination")

        try:
            if source.is_dir():
                shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
                if rule.mode is not None:
                    target.chmod(rule.mode)
        except OSError as e:
            raise StagingError(
                f"Failed to install {rule.src} -> {rule.dst}: {e}",
                code="install_error",
            ) from e
        installed.append(target)

    return installed


__all__ = [
    "StagingError",
    "apply_patches",
    "compose_patch_command",
    "install_files",
]
