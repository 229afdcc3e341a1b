"""
Persistence module for the save & restore engine.

This module handles:
- SQLite schema for nodes, configuration PVs, snapshot items and tags
- NodeStore: node CRUD, recursive delete, transactions
- PathResolver: path <-> node id translation

Invariants:
    - NodeStore is the only component opening database connections
    - All multi-statement writes run in one transaction
    - SQLite uses WAL mode for consistent reads during writes
"""

from .node_store import NodeStore
from .path_resolver import PathResolver

__all__ = [
    "NodeStore",
    "PathResolver",
]
