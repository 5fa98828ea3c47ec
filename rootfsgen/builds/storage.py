"""Shared content-addressable storage.

This module handles:
- Path computation for the download store and the build-output cache
- Per-key file locks so only one writer populates a key at a time
- Crash-safe writes: content is staged next to its final location and
  renamed into place, so readers never see a partial entry
- Restoring cached build outputs into a project's build tree

Layout:
    <downloads>/<name>/<version>/<checksum>/<filename>
    <build-cache>/<key[:2]>/<key>/
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

LOCKS_DIRNAME = ".locks"
STAGING_PREFIX = ".staging-"


class CacheIOError(Exception):
    """Raised when a cache or download store operation fails on disk."""

    def __init__(self, message: str, path: Path | None = None, code: str = "cache_io_error") -> None:
        super().__init__(message)
        self.path = path
        self.code = code


def directory_size(path: Path) -> int:
    """Total size in bytes of regular files under path."""
    total = 0
    if path.exists():
        for child in path.rglob("*"):
            if child.is_file() and not child.is_symlink():
                total += child.stat().st_size
    return total


def _copy_tree(src: Path, dest: Path) -> None:
    shutil.copytree(src, dest, symlinks=True)


class SharedStorage:
    """Download store and build-output cache shared across projects.

    Args:
        downloads_dir: Root of the download store.
        build_cache_dir: Root of the build-output cache.
    """

    def __init__(self, downloads_dir: Path, build_cache_dir: Path) -> None:
        self.downloads_dir = downloads_dir
        self.build_cache_dir = build_cache_dir

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def download_path(
        self,
        name: str,
        version: str,
        checksum: str,
        filename: str | None = None,
    ) -> Path:
        """Path of a verified download in the store."""
        return (
            self.downloads_dir
            / name
            / version
            / checksum.lower()
            / (filename or f"{name}-{version}.tar.gz")
        )

    def cache_path(self, key: str) -> Path:
        """Directory holding the build output for a cache key."""
        return self.build_cache_dir / key[:2] / key

    def download_exists(
        self,
        name: str,
        version: str,
        checksum: str,
        filename: str | None = None,
    ) -> bool:
        return self.download_path(name, version, checksum, filename).is_file()

    def cache_exists(self, key: str) -> bool:
        return self.cache_path(key).is_dir()

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    @contextmanager
    def key_lock(self, key: str, timeout: float | None = None) -> Iterator[None]:
        """Acquire the exclusive writer lock for a cache key.

        Uses a file-based lock, so it serializes writers across threads and
        processes sharing the same cache directory.

        Args:
            key: Cache key (or any store-unique identifier) to lock on.
            timeout: Lock acquisition timeout in seconds (None = blocking).

        Yields:
            None when lock is acquired.

        Raises:
            TimeoutError: If lock cannot be acquired within timeout.
            CacheIOError: If the lock file cannot be opened.
        """
        lock_dir = self.build_cache_dir / LOCKS_DIRNAME
        safe_key = key.replace(":", "_").replace("/", "_")[:96]
        lock_file = lock_dir / f"{safe_key}.lock"

        try:
            lock_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise CacheIOError(f"Cannot open lock file {lock_file}: {e}", path=lock_file) from e

        logger.debug("Acquiring cache lock for key: %s", key[:16])
        lock_acquired = False
        try:
            if timeout is not None:
                start = time.monotonic()
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        lock_acquired = True
                        break
                    except BlockingIOError:
                        if time.monotonic() - start >= timeout:
                            raise TimeoutError(
                                f"Timeout waiting for cache lock on {key[:16]}"
                            ) from None
                        time.sleep(0.1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)
                lock_acquired = True

            logger.debug("Cache lock acquired for key: %s", key[:16])
            yield
        finally:
            if lock_acquired:
                fcntl.flock(fd, fcntl.LOCK_UN)
                logger.debug("Cache lock released for key: %s", key[:16])
            os.close(fd)

    # -------------------------------------------------------------------------
    # Build outputs
    # -------------------------------------------------------------------------

    def store_build_output(self, key: str, source_dir: Path, replace: bool = False) -> Path:
        """Copy a build output directory into the cache under key.

        The copy is staged in the cache root and renamed into place. When the
        entry already exists it is kept unless replace is set.

        Args:
            key: Cache key.
            source_dir: Directory holding the build output (DESTDIR).
            replace: Replace an existing entry.

        Returns:
            Path of the cache entry.

        Raises:
            CacheIOError: If copying or renaming fails.
        """
        final = self.cache_path(key)
        if final.exists() and not replace:
            logger.debug("Cache entry %s already present", key[:16])
            return final

        staging = self.build_cache_dir / f"{STAGING_PREFIX}{uuid.uuid4().hex}"
        try:
            final.parent.mkdir(parents=True, exist_ok=True)
            _copy_tree(source_dir, staging)
            if final.exists():
                # Swap the old entry out before renaming the new one in
                retired = self.build_cache_dir / f"{STAGING_PREFIX}{uuid.uuid4().hex}"
                os.rename(final, retired)
                os.rename(staging, final)
                shutil.rmtree(retired, ignore_errors=True)
            else:
                try:
                    os.rename(staging, final)
                except OSError:
                    if not final.exists():
                        raise
                    # Another writer won; keep theirs
                    logger.debug("Lost store race for %s; keeping existing entry", key[:16])
        except OSError as e:
            raise CacheIOError(
                f"Failed to store build output for {key[:16]}: {e}", path=final
            ) from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.info("Stored build output %s", final)
        return final

    def restore_build_output(self, key: str, dest_dir: Path) -> Path:
        """Replace dest_dir with a copy of the cached output for key.

        Raises:
            CacheIOError: If the entry is missing or copying fails.
        """
        entry = self.cache_path(key)
        if not entry.is_dir():
            raise CacheIOError(f"Cache entry not found: {key}", path=entry, code="cache_miss")

        staging = dest_dir.parent / f"{STAGING_PREFIX}{dest_dir.name}-{uuid.uuid4().hex[:8]}"
        try:
            dest_dir.parent.mkdir(parents=True, exist_ok=True)
            _copy_tree(entry, staging)
            if dest_dir.exists():
                shutil.rmtree(dest_dir)
            os.rename(staging, dest_dir)
        except OSError as e:
            raise CacheIOError(
                f"Failed to restore {key[:16]} into {dest_dir}: {e}", path=dest_dir
            ) from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.info("Restored %s from cache", dest_dir.name)
        return dest_dir

    def remove_cache_entry(self, key: str) -> bool:
        """Delete the cache entry for key; return False when absent."""
        entry = self.cache_path(key)
        if not entry.exists():
            return False
        try:
            shutil.rmtree(entry)
        except OSError as e:
            raise CacheIOError(f"Failed to remove cache entry {key[:16]}: {e}", path=entry) from e
        return True

    # -------------------------------------------------------------------------
    # Downloads
    # -------------------------------------------------------------------------

    def store_download(
        self,
        name: str,
        version: str,
        checksum: str,
        staged_file: Path,
        filename: str | None = None,
    ) -> Path:
        """Move a verified file into the download store.

        staged_file must be on the same filesystem as the store; it is renamed
        into place. If the entry already exists the staged file is discarded.

        Raises:
            CacheIOError: If the rename fails.
        """
        final = self.download_path(name, version, checksum, filename)
        try:
            final.parent.mkdir(parents=True, exist_ok=True)
            if final.exists():
                staged_file.unlink(missing_ok=True)
                return final
            os.replace(staged_file, final)
        except OSError as e:
            raise CacheIOError(f"Failed to store download {final}: {e}", path=final) from e
        return final

    def staging_file(self, name: str) -> Path:
        """A fresh temp path inside the download store for staging."""
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        return self.downloads_dir / f"{STAGING_PREFIX}{name}-{uuid.uuid4().hex}"


__all__ = ["CacheIOError", "SharedStorage", "directory_size"]
