"""
Domain services of the save & restore engine.

This module handles:
- TreeOperationEngine: move, copy and batch delete with invariant checks
- ConfigurationService: configuration nodes and their PV lists
- SnapshotService: draft/committed snapshots, captured values, golden marker
- TagManager: snapshot tags

All services build on NodeStore transactions; none keeps state between calls.
"""

from .configuration import ConfigurationService
from .snapshots import SnapshotService
from .tags import TagManager
from .tree_ops import TreeOperationEngine

__all__ = [
    "ConfigurationService",
    "SnapshotService",
    "TagManager",
    "TreeOperationEngine",
]
