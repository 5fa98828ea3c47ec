"""Project model.

This module handles:
- Manifest, package and board schemas
- Manifest and lock file persistence
- Project layout
- add / remove / update / init operations
"""
