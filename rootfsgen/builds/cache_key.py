"""Cache key computation for package builds.

This module handles:
- Canonical input snapshot for one package build
- Deterministic hash computation over the normalized inputs

A package build is identified by exactly five inputs: name, version, source
checksum, target triple and toolchain version. Identical inputs always give
the same key, on any machine and in any project; changing any one of them
gives a different key.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass
from typing import Any

from rootfsgen.types import PackageDescriptor

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"


@dataclass(frozen=True)
class CacheKeyInputs:
    """Canonical representation of all build inputs.

    Attributes:
        name: Package name.
        version: Exact package version.
        checksum: Source checksum.
        target: Target triple.
        toolchain_version: Toolchain version.
    """

    name: str
    version: str
    checksum: str
    target: str
    toolchain_version: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["schema_version"] = CACHE_KEY_SCHEMA_VERSION
        return data


def compute_cache_key(
    name: str,
    version: str,
    checksum: str,
    target: str,
    toolchain_version: str,
) -> str:
    """Compute the cache key for one package build.

    The cache key is a SHA-256 hash of the canonical JSON representation
    of the inputs.

    Returns:
        Cache key as a 64-character hex string.
    """
    inputs = CacheKeyInputs(
        name=name,
        version=version,
        checksum=checksum.lower(),
        target=target,
        toolchain_version=toolchain_version,
    )
    # Canonical JSON: sorted keys, no extra whitespace
    canonical_json = json.dumps(inputs.to_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def cache_key_for(package: PackageDescriptor, target: str, toolchain_version: str) -> str:
    """Compute the cache key for a resolved package."""
    return compute_cache_key(
        name=package.name,
        version=package.version,
        checksum=package.checksum,
        target=target,
        toolchain_version=toolchain_version,
    )


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "CacheKeyInputs",
    "cache_key_for",
    "compute_cache_key",
]
