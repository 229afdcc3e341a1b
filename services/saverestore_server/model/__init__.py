"""
Data model for the save & restore tree.

Nodes form a single-rooted tree: folders hold folders and configurations,
configurations hold snapshots, snapshots are leaves.
"""

from .types import (
    ALLOWED_CHILDREN,
    GOLDEN_PROPERTY,
    ROOT_NODE_ID,
    ROOT_NODE_NAME,
    ConfigPv,
    Configuration,
    ConfigurationData,
    ConfigurationPayload,
    Node,
    NodeType,
    Snapshot,
    SnapshotData,
    SnapshotItem,
    SnapshotPayload,
    SnapshotStatus,
    Tag,
    validate_name,
)

__all__ = [
    "ALLOWED_CHILDREN",
    "GOLDEN_PROPERTY",
    "ROOT_NODE_ID",
    "ROOT_NODE_NAME",
    "ConfigPv",
    "Configuration",
    "ConfigurationData",
    "ConfigurationPayload",
    "Node",
    "NodeType",
    "Snapshot",
    "SnapshotData",
    "SnapshotItem",
    "SnapshotPayload",
    "SnapshotStatus",
    "Tag",
    "validate_name",
]
