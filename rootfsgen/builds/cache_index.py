"""Shared cache index and pruning.

This module handles:
- Recording build-output cache entries and their last use
- Listing entries and summarizing cache usage
- Pruning entries that have not been used for a number of days
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from rootfsgen.builds.models import CacheEntry
from rootfsgen.builds.storage import CacheIOError, SharedStorage, directory_size

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrunedEntry:
    """A pruned (or would-be pruned) cache entry."""

    key: str
    package: str
    version: str
    size_bytes: int


def _utcnow() -> datetime:
    # Stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def record_cache_entry(
    session: Session,
    key: str,
    package: str,
    version: str,
    checksum: str,
    target: str,
    toolchain: str,
    size_bytes: int = 0,
) -> CacheEntry:
    """Create or refresh the index row for a cache entry.

    Args:
        session: Database session.
        key: Cache key.
        package: Package name.
        version: Package version.
        checksum: Source checksum.
        target: Target triple.
        toolchain: Toolchain version.
        size_bytes: Size of the stored output.

    Returns:
        The CacheEntry row.
    """
    now = _utcnow()
    entry = session.execute(select(CacheEntry).where(CacheEntry.key == key)).scalar_one_or_none()
    if entry is None:
        entry = CacheEntry(
            key=key,
            package=package,
            version=version,
            checksum=checksum,
            target=target,
            toolchain=toolchain,
            size_bytes=size_bytes,
            created_at=now,
            last_used_at=now,
        )
        session.add(entry)
        logger.debug("Indexed cache entry %s for %s@%s", key[:16], package, version)
    else:
        entry.last_used_at = now
        if size_bytes:
            entry.size_bytes = size_bytes
    session.flush()
    return entry


def touch_cache_entry(session: Session, key: str) -> bool:
    """Mark a cache entry as used now; return False if it is not indexed."""
    entry = session.execute(select(CacheEntry).where(CacheEntry.key == key)).scalar_one_or_none()
    if entry is None:
        return False
    entry.last_used_at = _utcnow()
    session.flush()
    return True


def list_cache_entries(session: Session, package: str | None = None) -> list[CacheEntry]:
    """List indexed cache entries ordered by package and version."""
    stmt = select(CacheEntry)
    if package is not None:
        stmt = stmt.where(CacheEntry.package == package)
    stmt = stmt.order_by(CacheEntry.package, CacheEntry.version, CacheEntry.key)
    return list(session.execute(stmt).scalars().all())


def get_cache_info(session: Session, storage: SharedStorage) -> dict[str, object]:
    """Get information about the shared cache.

    Args:
        session: Database session.
        storage: Shared storage.

    Returns:
        Dictionary with cache information.
    """
    entries = list_cache_entries(session)
    build_cache_size = directory_size(storage.build_cache_dir)
    downloads_size = directory_size(storage.downloads_dir)

    return {
        "build_cache_dir": str(storage.build_cache_dir),
        "downloads_dir": str(storage.downloads_dir),
        "entries": len(entries),
        "packages": len({entry.package for entry in entries}),
        "build_cache_size_bytes": build_cache_size,
        "build_cache_size_human": _format_size(build_cache_size),
        "downloads_size_bytes": downloads_size,
        "downloads_size_human": _format_size(downloads_size),
    }


def prune_cache(
    session: Session,
    storage: SharedStorage,
    unused_days: int,
    dry_run: bool = False,
) -> list[PrunedEntry]:
    """Prune cache entries not used for unused_days days.

    Entries are removed from disk under their key lock, then from the index.

    Args:
        session: Database session.
        storage: Shared storage.
        unused_days: Prune entries whose last use is older than this.
        dry_run: If True, only report what would be pruned.

    Returns:
        Entries that were (or would be) pruned.
    """
    cutoff = _utcnow() - timedelta(days=unused_days)
    stmt = select(CacheEntry).where(
        (CacheEntry.last_used_at < cutoff) | (CacheEntry.last_used_at.is_(None))
    )
    entries = list(session.execute(stmt).scalars().all())

    pruned: list[PrunedEntry] = []
    for entry in entries:
        item = PrunedEntry(
            key=entry.key,
            package=entry.package,
            version=entry.version,
            size_bytes=entry.size_bytes,
        )

        if dry_run:
            logger.info("[DRY RUN] Would prune cache entry: %s@%s (%s)", entry.package, entry.version, entry.key[:16])
            pruned.append(item)
            continue

        try:
            with storage.key_lock(entry.key):
                storage.remove_cache_entry(entry.key)
        except CacheIOError as e:
            logger.error("Failed to prune %s: %s", entry.key[:16], e)
            continue

        session.delete(entry)
        pruned.append(item)
        logger.info("Pruned cache entry: %s@%s (%s)", entry.package, entry.version, entry.key[:16])

    if not dry_run:
        session.flush()

    return pruned


def _format_size(size_bytes: int) -> str:
    """Format bytes as human-readable size."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} PB"


__all__ = [
    "PrunedEntry",
    "get_cache_info",
    "list_cache_entries",
    "prune_cache",
    "record_cache_entry",
    "touch_cache_entry",
]
