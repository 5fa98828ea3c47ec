"""rootfsgen - Build orchestration for cross-compiled embedded Linux root filesystems.

This package resolves versioned package manifests into build graphs, schedules
incremental builds through a shared content-addressable cache, and runs build
steps on the host or inside a container sandbox.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
