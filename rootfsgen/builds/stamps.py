"""Per-package build stamps.

A stamp records the cache key of the last successful build of a package in
one project tree (build/stamps/<name>.stamp). A stamp whose key differs from
the freshly computed key is stale and ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from rootfsgen.project.io import write_text_atomic

logger = logging.getLogger(__name__)


class BuildStamp(BaseModel):
    """Stamp file contents.

    Attributes:
        package: Package name.
        version: Package version.
        cache_key: Cache key of the build that produced the current output.
        built_at: When the output was produced or restored.
    """

    package: str
    version: str
    cache_key: str
    built_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def read_stamp(path: Path) -> BuildStamp | None:
    """Read a stamp, returning None when missing or unreadable."""
    try:
        return BuildStamp.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValidationError) as e:
        logger.warning("Ignoring unreadable stamp %s: %s", path, e)
        return None


def write_stamp(path: Path, stamp: BuildStamp) -> None:
    """Atomically write a stamp."""
    write_text_atomic(path, stamp.model_dump_json(indent=2) + "\n")


def stamp_matches(path: Path, cache_key: str) -> bool:
    """Return True when the stamp at path records cache_key."""
    stamp = read_stamp(path)
    return stamp is not None and stamp.cache_key == cache_key


def clear_stamp(path: Path) -> None:
    path.unlink(missing_ok=True)


__all__ = ["BuildStamp", "clear_stamp", "read_stamp", "stamp_matches", "write_stamp"]
