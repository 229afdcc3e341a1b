"""
Unit tests for snapshot tags.

Tests cover:
- Adding and removing tags
- Newest-first ordering
- Uniqueness per snapshot
- Rejection on drafts and non-snapshot nodes
"""

import tempfile

import pytest

from services.saverestore_server.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from services.saverestore_server.model import (
    ROOT_NODE_ID,
    ConfigPv,
    Configuration,
    ConfigurationData,
    Node,
    NodeType,
    SnapshotItem,
    Tag,
)
from services.saverestore_server.persistence import NodeStore
from services.saverestore_server.service import (
    ConfigurationService,
    SnapshotService,
    TagManager,
)


class TestTagManager:
    """Tests for TagManager."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        store = NodeStore(data_dir, wal_mode=False)
        store.initialize()
        return store

    @pytest.fixture
    def tags(self, store):
        return TagManager(store)

    @pytest.fixture
    def snapshots(self, store):
        return SnapshotService(store)

    @pytest.fixture
    def config(self, store):
        return ConfigurationService(store).create_configuration(
            ROOT_NODE_ID,
            Configuration(
                node=Node(name="Vacuum", node_type=NodeType.CONFIGURATION),
                data=ConfigurationData(pv_list=[ConfigPv("VAC:Gauge1")]),
            ),
            "operator",
        )

    def save(self, snapshots, config, name=None):
        items = [SnapshotItem(config_pv=config.data.pv_list[0], value=1e-9)]
        comment = "captured" if name else None
        return snapshots.save_snapshot(config.node.unique_id, items, name, comment, "op").node

    def test_add_tag(self, tags, snapshots, config):
        snapshot = self.save(snapshots, config, "Baseline")

        result = tags.add_tag_to_snapshot(
            snapshot, Tag(name="release", comment="Run 42", user_name="alice")
        )

        assert len(result) == 1
        assert result[0].name == "release"
        assert result[0].comment == "Run 42"
        assert result[0].user_name == "alice"
        assert result[0].snapshot_id == snapshot.unique_id
        assert result[0].created_time > 0

    def test_tags_newest_first(self, tags, snapshots, config):
        snapshot = self.save(snapshots, config, "Baseline")
        tags.add_tag_to_snapshot(snapshot, Tag(name="old", created_time=1000))
        tags.add_tag_to_snapshot(snapshot, Tag(name="new", created_time=2000))

        assert [t.name for t in tags.get_tags(snapshot.unique_id)] == ["new", "old"]

    def test_duplicate_tag_conflicts(self, tags, snapshots, config):
        snapshot = self.save(snapshots, config, "Baseline")
        tags.add_tag_to_snapshot(snapshot, Tag(name="release"))

        with pytest.raises(ConflictError):
            tags.add_tag_to_snapshot(snapshot, Tag(name="release", comment="again"))

    def test_same_tag_on_different_snapshots(self, tags, snapshots, config):
        first = self.save(snapshots, config, "First")
        second = self.save(snapshots, config, "Second")

        tags.add_tag_to_snapshot(first, Tag(name="release"))
        tags.add_tag_to_snapshot(second, Tag(name="release"))

        assert len(tags.get_all_tags()) == 2

    def test_empty_tag_name_rejected(self, tags, snapshots, config):
        snapshot = self.save(snapshots, config, "Baseline")

        with pytest.raises(ValidationError):
            tags.add_tag_to_snapshot(snapshot, Tag(name="  "))

    def test_draft_cannot_be_tagged(self, tags, snapshots, config):
        draft = self.save(snapshots, config)

        with pytest.raises(ValidationError):
            tags.add_tag_to_snapshot(draft, Tag(name="release"))

    def test_folder_cannot_be_tagged(self, store, tags):
        with pytest.raises(ValidationError):
            tags.add_tag_to_snapshot(store.get_root_node(), Tag(name="release"))

    def test_add_then_remove_restores_tags(self, tags, snapshots, config):
        snapshot = self.save(snapshots, config, "Baseline")
        tags.add_tag_to_snapshot(snapshot, Tag(name="keep"))
        before = tags.get_tags(snapshot.unique_id)

        tags.add_tag_to_snapshot(snapshot, Tag(name="temporary"))
        after = tags.remove_tag_from_snapshot(snapshot, Tag(name="temporary"))

        assert after == before

    def test_remove_missing_tag(self, tags, snapshots, config):
        snapshot = self.save(snapshots, config, "Baseline")

        with pytest.raises(NotFoundError):
            tags.remove_tag_from_snapshot(snapshot, Tag(name="absent"))

    def test_remove_tag_of_other_snapshot(self, tags, snapshots, config):
        first = self.save(snapshots, config, "First")
        second = self.save(snapshots, config, "Second")
        added = tags.add_tag_to_snapshot(first, Tag(name="release"))[0]

        with pytest.raises(NotFoundError):
            tags.remove_tag_from_snapshot(second, added)

        assert tags.get_tags(first.unique_id) == [added]

    def test_tags_removed_with_snapshot(self, store, tags, snapshots, config):
        snapshot = self.save(snapshots, config, "Baseline")
        tags.add_tag_to_snapshot(snapshot, Tag(name="release"))

        store.delete_node(config.node.unique_id)

        assert tags.get_all_tags() == []
