"""
Save & Restore Server - persistence engine for control-system snapshots.

This package implements the tree behind a save & restore service:
- Folders organize configurations (save sets naming lists of PVs)
- Configurations own snapshots (captured PV values at a point in time)
- SQLite holds the tree, PV lists, snapshot items and tags

Architecture:
    ┌─────────────┐     ┌──────────────────────────────────────────┐
    │  API layer  │────▶│            SaveRestoreEngine             │
    └─────────────┘     └──────────────────────────────────────────┘
                          │          │            │           │
                          ▼          ▼            ▼           ▼
                   ┌──────────┐ ┌─────────┐ ┌──────────┐ ┌────────┐
                   │ TreeOps  │ │ Config  │ │ Snapshot │ │  Tags  │
                   └────┬─────┘ └────┬────┘ └────┬─────┘ └───┬────┘
                        └────────────┴─────┬─────┴───────────┘
                                           ▼
                              ┌──────────────────────────┐
                              │ NodeStore + PathResolver │
                              └────────────┬─────────────┘
                                           ▼
                                    ┌─────────────┐
                                    │   SQLite    │
                                    └─────────────┘

Invariants:
    - The nodes form a single tree rooted at a fixed-id folder
    - Folders hold folders and configurations; configurations hold snapshots
    - Same-type siblings never share a name
    - Every mutation is one transaction: it commits fully or not at all

How to change safely:
    - New node types need entries in ALLOWED_CHILDREN and a payload variant
    - Schema changes must keep existing databases readable
"""

from ._version import __version__

__all__ = ["__version__"]
