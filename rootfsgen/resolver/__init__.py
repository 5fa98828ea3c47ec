"""Dependency resolution.

This module handles:
- Version constraint parsing and matching
- The build graph (arena of packages plus depends edges)
- Resolving a manifest into a build graph and lock file
"""
