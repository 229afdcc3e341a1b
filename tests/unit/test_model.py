"""
Unit tests for core record types.

Tests cover:
- Payload validation against node type
- Name validation
- Serialization helpers
"""

import pytest

from services.saverestore_server.errors import ValidationError
from services.saverestore_server.model import (
    ROOT_NODE_ID,
    ConfigurationPayload,
    Configuration,
    Node,
    NodeType,
    SnapshotPayload,
    SnapshotStatus,
    validate_name,
)
from services.saverestore_server.model.types import payload_from_dict


class TestNode:
    """Tests for Node construction."""

    def test_configuration_gets_default_payload(self):
        node = Node(name="RF", node_type=NodeType.CONFIGURATION)
        assert node.payload == ConfigurationPayload()

    def test_snapshot_defaults_to_draft(self):
        node = Node(name="", node_type=NodeType.SNAPSHOT)
        assert node.payload.status == SnapshotStatus.DRAFT
        assert node.is_draft

    def test_folder_rejects_payload(self):
        with pytest.raises(ValidationError):
            Node(name="A", node_type=NodeType.FOLDER, payload=ConfigurationPayload())

    def test_configuration_rejects_snapshot_payload(self):
        with pytest.raises(ValidationError):
            Node(name="A", node_type=NodeType.CONFIGURATION, payload=SnapshotPayload())

    def test_snapshot_rejects_configuration_payload(self):
        with pytest.raises(ValidationError):
            Node(name="A", node_type=NodeType.SNAPSHOT, payload=ConfigurationPayload())

    def test_invalid_node_type(self):
        with pytest.raises(ValidationError):
            Node(name="A", node_type="FOLDER")

    def test_properties_must_be_strings(self):
        with pytest.raises(ValidationError):
            Node(name="A", node_type=NodeType.FOLDER, properties={"golden": True})

    def test_golden_property(self):
        node = Node(name="S", node_type=NodeType.SNAPSHOT, properties={"golden": "TRUE"})
        assert node.is_golden

    def test_is_root(self):
        assert Node(name="r", node_type=NodeType.FOLDER, unique_id=ROOT_NODE_ID).is_root
        assert not Node(name="r", node_type=NodeType.FOLDER, unique_id="other").is_root

    def test_to_dict(self):
        node = Node(
            name="Baseline",
            node_type=NodeType.SNAPSHOT,
            payload=SnapshotPayload(status=SnapshotStatus.COMMITTED, comment="ok"),
        )

        data = node.to_dict()

        assert data["node_type"] == "SNAPSHOT"
        assert data["payload"] == {"status": "committed", "comment": "ok"}

    def test_payload_from_dict(self):
        payload = payload_from_dict(NodeType.SNAPSHOT, {"status": "committed", "comment": "c"})
        assert payload == SnapshotPayload(status=SnapshotStatus.COMMITTED, comment="c")
        assert payload_from_dict(NodeType.FOLDER, {}) is None

    def test_configuration_requires_configuration_node(self):
        with pytest.raises(ValidationError):
            Configuration(node=Node(name="A", node_type=NodeType.FOLDER))


class TestValidateName:
    """Tests for validate_name."""

    def test_strips(self):
        assert validate_name("  RF  ") == "RF"

    @pytest.mark.parametrize("name", ["", "  ", None, "a/b"])
    def test_rejects(self, name):
        with pytest.raises(ValidationError) as exc_info:
            validate_name(name)

        assert exc_info.value.field_name == "name"
