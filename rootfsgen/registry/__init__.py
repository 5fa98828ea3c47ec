"""Package and board lookup.

This module handles:
- Project-local package and board definitions
- The HTTP package registry with an on-disk response cache
- Combined lookup with local-first priority
"""
