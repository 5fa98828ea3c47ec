"""Build orchestration module.

This module handles:
- Cache key computation
- Shared download store and build-output cache
- Per-package stamps
- Sandboxed build step execution
- Parallel scheduling over the build graph
- The cache index and pruning
"""

from rootfsgen.builds.models import CacheEntry

__all__ = ["CacheEntry"]

# Submodules are imported explicitly (rootfsgen.builds.service, etc.)
# to keep package import cheap
