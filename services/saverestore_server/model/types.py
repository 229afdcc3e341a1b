"""
Core type definitions for the save & restore tree.

This module defines the records stored and returned by the engine:
- Node: Entry of the tree (folder, configuration or snapshot)
- ConfigurationPayload / SnapshotPayload: Node-type specific payloads
- ConfigPv: Process variable reference owned by a configuration
- SnapshotItem: Captured value of one ConfigPv
- Tag: User label attached to a committed snapshot
- Configuration / Snapshot: Node plus its PV or item list

Invariants:
    - node_type is immutable once a node is created
    - payload kind is constrained by node_type (checked in __post_init__)
    - Names are non-empty and never contain '/' (paths are '/'-joined names)
    - The root node has a fixed id and no parent

How to change safely:
    - New payload fields need defaults so stored JSON stays readable
    - Never change ROOT_NODE_ID, existing databases reference it
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from ..errors import ValidationError

ROOT_NODE_ID = "44bef5de-e8e6-4014-af37-b8f6c8a939a2"
ROOT_NODE_NAME = "Save & Restore Root"

GOLDEN_PROPERTY = "golden"


class NodeType(Enum):
    """Kinds of tree nodes."""

    FOLDER = "FOLDER"
    CONFIGURATION = "CONFIGURATION"
    SNAPSHOT = "SNAPSHOT"


class SnapshotStatus(Enum):
    """Lifecycle state of a snapshot node."""

    DRAFT = "draft"
    COMMITTED = "committed"


# Allowed child types per parent type
ALLOWED_CHILDREN: dict[NodeType, frozenset[NodeType]] = {
    NodeType.FOLDER: frozenset({NodeType.FOLDER, NodeType.CONFIGURATION}),
    NodeType.CONFIGURATION: frozenset({NodeType.SNAPSHOT}),
    NodeType.SNAPSHOT: frozenset(),
}


def validate_name(name: str, what: str = "Node") -> str:
    """Check a node name and return it stripped.

    Raises:
        ValidationError: If the name is empty or contains '/'
    """
    stripped = (name or "").strip()
    if not stripped:
        raise ValidationError(f"{what} name cannot be empty", field_name="name")
    if "/" in stripped:
        raise ValidationError(f"{what} name cannot contain '/': {name!r}", field_name="name")
    return stripped


@dataclass(frozen=True)
class ConfigurationPayload:
    """Payload of a CONFIGURATION node."""

    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"description": self.description}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConfigurationPayload:
        return cls(description=data.get("description", ""))


@dataclass(frozen=True)
class SnapshotPayload:
    """Payload of a SNAPSHOT node.

    Attributes:
        status: Draft or committed
        comment: Comment supplied on commit (empty for drafts)
    """

    status: SnapshotStatus = SnapshotStatus.DRAFT
    comment: str = ""

    @property
    def committed(self) -> bool:
        return self.status == SnapshotStatus.COMMITTED

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "comment": self.comment}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotPayload:
        return cls(
            status=SnapshotStatus(data.get("status", SnapshotStatus.DRAFT.value)),
            comment=data.get("comment", ""),
        )


NodePayload = Union[ConfigurationPayload, SnapshotPayload, None]


@dataclass
class Node:
    """A node in the save & restore tree.

    Attributes:
        unique_id: Opaque stable identifier (empty until stored)
        name: Node name, unique among same-type siblings
        node_type: Folder, configuration or snapshot
        parent_id: Id of the parent node (None only for root)
        properties: Free-form string properties (e.g. "golden" -> "true")
        created_time: Creation timestamp (Unix ms)
        last_modified_time: Last modification timestamp (Unix ms)
        user_name: User who created or last modified the node
        payload: Type-specific payload
        version: Optimistic concurrency counter, bumped on every write

    Example:
        >>> folder = Node(name="Accelerator", node_type=NodeType.FOLDER)
        >>> config = Node(
        ...     name="RF Settings",
        ...     node_type=NodeType.CONFIGURATION,
        ...     payload=ConfigurationPayload(description="RF cavities"),
        ... )
    """

    name: str
    node_type: NodeType
    unique_id: str = ""
    parent_id: str | None = None
    properties: dict[str, str] = field(default_factory=dict)
    created_time: int = 0
    last_modified_time: int = 0
    user_name: str = ""
    payload: NodePayload = None
    version: int = 0

    def __post_init__(self) -> None:
        """Validate the payload against the node type."""
        if not isinstance(self.node_type, NodeType):
            raise ValidationError(f"Invalid node type: {self.node_type!r}", field_name="node_type")

        if self.node_type == NodeType.FOLDER:
            if self.payload is not None:
                raise ValidationError("FOLDER nodes carry no payload", field_name="payload")
        elif self.node_type == NodeType.CONFIGURATION:
            if self.payload is None:
                self.payload = ConfigurationPayload()
            elif not isinstance(self.payload, ConfigurationPayload):
                raise ValidationError(
                    "CONFIGURATION nodes require a ConfigurationPayload", field_name="payload"
                )
        else:
            if self.payload is None:
                self.payload = SnapshotPayload()
            elif not isinstance(self.payload, SnapshotPayload):
                raise ValidationError(
                    "SNAPSHOT nodes require a SnapshotPayload", field_name="payload"
                )

        for key, value in self.properties.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ValidationError("Node properties must map str to str", field_name="properties")

    @property
    def is_root(self) -> bool:
        return self.unique_id == ROOT_NODE_ID

    @property
    def is_golden(self) -> bool:
        return self.properties.get(GOLDEN_PROPERTY, "false").lower() == "true"

    @property
    def is_draft(self) -> bool:
        return isinstance(self.payload, SnapshotPayload) and not self.payload.committed

    def payload_dict(self) -> dict[str, Any]:
        """Serialize the payload for storage."""
        if self.payload is None:
            return {}
        return self.payload.to_dict()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "unique_id": self.unique_id,
            "name": self.name,
            "node_type": self.node_type.value,
            "parent_id": self.parent_id,
            "properties": dict(self.properties),
            "created_time": self.created_time,
            "last_modified_time": self.last_modified_time,
            "user_name": self.user_name,
            "payload": self.payload_dict(),
            "version": self.version,
        }


def payload_from_dict(node_type: NodeType, data: dict[str, Any]) -> NodePayload:
    """Rebuild a payload from its stored dictionary form."""
    if node_type == NodeType.CONFIGURATION:
        return ConfigurationPayload.from_dict(data)
    if node_type == NodeType.SNAPSHOT:
        return SnapshotPayload.from_dict(data)
    return None


@dataclass(frozen=True)
class ConfigPv:
    """Process variable reference of a configuration.

    Attributes:
        pv_name: Name of the set point PV
        readback_pv_name: Optional read back PV
        read_only: PV is captured but never restored
        pv_id: Identifier assigned by the store (None for new PVs)
    """

    pv_name: str
    readback_pv_name: str | None = None
    read_only: bool = False
    pv_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pv_id": self.pv_id,
            "pv_name": self.pv_name,
            "readback_pv_name": self.readback_pv_name,
            "read_only": self.read_only,
        }


@dataclass(frozen=True)
class SnapshotItem:
    """Captured value of one ConfigPv.

    Attributes:
        config_pv: The PV this value was read from
        value: JSON-serializable captured value
        readback_value: JSON-serializable read back value, if any
        timestamp: Time of the reading (Unix ms)
        alarm_severity: Alarm severity at capture (e.g. "NONE", "MINOR")
        alarm_status: Alarm status at capture
    """

    config_pv: ConfigPv
    value: Any = None
    readback_value: Any = None
    timestamp: int = 0
    alarm_severity: str = "NONE"
    alarm_status: str = "NONE"

    def to_dict(self) -> dict[str, Any]:
        return {
            "config_pv": self.config_pv.to_dict(),
            "value": self.value,
            "readback_value": self.readback_value,
            "timestamp": self.timestamp,
            "alarm_severity": self.alarm_severity,
            "alarm_status": self.alarm_status,
        }


@dataclass(frozen=True)
class Tag:
    """User label attached to a snapshot."""

    name: str
    comment: str = ""
    user_name: str = ""
    created_time: int | None = None
    snapshot_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "comment": self.comment,
            "user_name": self.user_name,
            "created_time": self.created_time,
            "snapshot_id": self.snapshot_id,
        }


@dataclass
class ConfigurationData:
    """Ordered PV list of a configuration node."""

    unique_id: str = ""
    pv_list: list[ConfigPv] = field(default_factory=list)


@dataclass
class Configuration:
    """A configuration node together with its PV list."""

    node: Node
    data: ConfigurationData = field(default_factory=ConfigurationData)

    def __post_init__(self) -> None:
        if self.node.node_type != NodeType.CONFIGURATION:
            raise ValidationError(
                f"Configuration requires a CONFIGURATION node, got {self.node.node_type.value}",
                field_name="node",
            )


@dataclass
class SnapshotData:
    """Captured items of a snapshot node."""

    unique_id: str = ""
    snapshot_items: list[SnapshotItem] = field(default_factory=list)


@dataclass
class Snapshot:
    """A snapshot node together with its captured items."""

    node: Node
    data: SnapshotData = field(default_factory=SnapshotData)
