"""
Unit tests for move, copy and delete of subtrees.

Tests cover:
- Move reparenting and all-or-nothing failure
- Cycle detection
- Deep copy with PV lists, snapshots and tags
- Copy name collision policies (reject, suffix)
- Batch delete
"""

import tempfile

import pytest

from services.saverestore_server.config import CopyNamePolicy
from services.saverestore_server.errors import (
    ConflictError,
    CycleError,
    NotFoundError,
    ValidationError,
)
from services.saverestore_server.model import (
    ROOT_NODE_ID,
    ConfigPv,
    Configuration,
    ConfigurationData,
    ConfigurationPayload,
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
    TreeOperationEngine,
)


class TestTreeOperations:
    """Tests for TreeOperationEngine.

    Fixture tree:
        /Accelerator            (folder)
        /Accelerator/Linac      (folder)
        /Accelerator/RF         (configuration with two PVs)
        /Archive                (folder)
    """

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
    def engine(self, store):
        return TreeOperationEngine(store)

    @pytest.fixture
    def tree(self, store):
        accelerator = store.create_node(
            ROOT_NODE_ID, Node(name="Accelerator", node_type=NodeType.FOLDER), "operator"
        )
        linac = store.create_node(
            accelerator.unique_id, Node(name="Linac", node_type=NodeType.FOLDER), "operator"
        )
        rf = ConfigurationService(store).create_configuration(
            accelerator.unique_id,
            Configuration(
                node=Node(
                    name="RF",
                    node_type=NodeType.CONFIGURATION,
                    payload=ConfigurationPayload(description="RF cavities"),
                ),
                data=ConfigurationData(
                    pv_list=[ConfigPv("RF:Amp"), ConfigPv("RF:Phase", read_only=True)]
                ),
            ),
            "operator",
        ).node
        archive = store.create_node(
            ROOT_NODE_ID, Node(name="Archive", node_type=NodeType.FOLDER), "operator"
        )
        return {"accelerator": accelerator, "linac": linac, "rf": rf, "archive": archive}

    def _ids(self, nodes):
        return [n.unique_id for n in nodes]

    def _dump(self, store):
        """Stats plus every node reachable from the root, in walk order."""
        dump = [store.get_stats()]
        pending = [store.get_root_node()]
        while pending:
            node = pending.pop()
            dump.append(node.to_dict())
            pending.extend(reversed(store.get_child_nodes(node.unique_id)))
        return dump

    # -- move ------------------------------------------------------------------

    def test_move_single_node(self, store, engine, tree):
        """Moved node is listed under the target only."""
        target = engine.move_nodes([tree["rf"].unique_id], tree["archive"].unique_id, "alice")

        assert target.unique_id == tree["archive"].unique_id
        assert store.get_node(tree["rf"].unique_id).parent_id == tree["archive"].unique_id
        assert tree["rf"].unique_id in self._ids(store.get_child_nodes(tree["archive"].unique_id))
        assert tree["rf"].unique_id not in self._ids(
            store.get_child_nodes(tree["accelerator"].unique_id)
        )
        assert store.get_full_path(tree["rf"].unique_id) == "/Archive/RF"

    def test_move_multiple_nodes(self, store, engine, tree):
        ids = [tree["linac"].unique_id, tree["rf"].unique_id]

        engine.move_nodes(ids, tree["archive"].unique_id, "alice")

        assert self._ids(store.get_child_nodes(tree["archive"].unique_id)) == ids
        assert store.get_child_nodes(tree["accelerator"].unique_id) == []

    def test_move_updates_attribution(self, store, engine, tree):
        """Moved nodes and the target record the user."""
        before = store.get_node(tree["archive"].unique_id).version

        target = engine.move_nodes([tree["rf"].unique_id], tree["archive"].unique_id, "alice")

        assert target.user_name == "alice"
        assert target.version > before
        assert store.get_node(tree["rf"].unique_id).user_name == "alice"

    def test_move_keeps_subtree(self, store, engine, tree):
        """Descendants travel with the moved node."""
        deep = store.create_node(
            tree["linac"].unique_id, Node(name="Injector", node_type=NodeType.FOLDER), "op"
        )

        engine.move_nodes([tree["accelerator"].unique_id], tree["archive"].unique_id, "alice")

        assert store.get_full_path(deep.unique_id) == "/Archive/Accelerator/Linac/Injector"

    def test_move_into_own_subtree_is_cycle(self, store, engine, tree):
        """Target below a source raises CycleError and changes nothing."""
        before = self._dump(store)

        with pytest.raises(CycleError):
            engine.move_nodes(
                [tree["accelerator"].unique_id], tree["linac"].unique_id, "alice"
            )

        assert self._dump(store) == before
        assert store.get_node(tree["accelerator"].unique_id).parent_id == ROOT_NODE_ID

    def test_move_into_itself_is_cycle(self, engine, tree):
        with pytest.raises(CycleError):
            engine.move_nodes(
                [tree["accelerator"].unique_id], tree["accelerator"].unique_id, "alice"
            )

    def test_move_to_configuration_rejected(self, engine, tree):
        """Target must be a folder."""
        with pytest.raises(ValidationError):
            engine.move_nodes([tree["linac"].unique_id], tree["rf"].unique_id, "alice")

    def test_move_root_rejected(self, engine, tree):
        with pytest.raises(ValidationError):
            engine.move_nodes([ROOT_NODE_ID], tree["archive"].unique_id, "alice")

    def test_move_nodes_with_different_parents_rejected(self, store, engine, tree):
        with pytest.raises(ValidationError):
            engine.move_nodes(
                [tree["linac"].unique_id, tree["accelerator"].unique_id],
                tree["archive"].unique_id,
                "alice",
            )

    def test_move_empty_selection_rejected(self, engine, tree):
        with pytest.raises(ValidationError):
            engine.move_nodes([], tree["archive"].unique_id, "alice")

    def test_move_unknown_node(self, engine, tree):
        with pytest.raises(NotFoundError):
            engine.move_nodes(["missing"], tree["archive"].unique_id, "alice")

    def test_move_unknown_target(self, engine, tree):
        with pytest.raises(NotFoundError):
            engine.move_nodes([tree["linac"].unique_id], "missing", "alice")

    def test_move_snapshot_rejected(self, store, engine, tree):
        """Snapshots stay with their configuration."""
        snapshots = SnapshotService(store)
        pvs = snapshots.get_config_pvs(tree["rf"].unique_id)
        snapshot = snapshots.save_snapshot(
            tree["rf"].unique_id,
            [SnapshotItem(config_pv=pv, value=1) for pv in pvs],
            "Baseline",
            "initial",
            "alice",
        )

        with pytest.raises(ValidationError):
            engine.move_nodes([snapshot.node.unique_id], tree["archive"].unique_id, "alice")

    def test_move_name_collision_is_all_or_nothing(self, store, engine, tree):
        """One colliding node aborts the whole move."""
        store.create_node(
            tree["archive"].unique_id, Node(name="Linac", node_type=NodeType.FOLDER), "op"
        )

        with pytest.raises(ConflictError):
            engine.move_nodes(
                [tree["rf"].unique_id, tree["linac"].unique_id],
                tree["archive"].unique_id,
                "alice",
            )

        assert store.get_node(tree["rf"].unique_id).parent_id == tree["accelerator"].unique_id
        assert store.get_node(tree["linac"].unique_id).parent_id == tree["accelerator"].unique_id

    def test_move_to_current_parent_is_noop(self, store, engine, tree):
        engine.move_nodes([tree["linac"].unique_id], tree["accelerator"].unique_id, "alice")

        assert store.get_node(tree["linac"].unique_id).parent_id == tree["accelerator"].unique_id

    def test_is_move_or_copy_allowed(self, store, engine, tree):
        archive = tree["archive"]
        assert engine.is_move_or_copy_allowed([tree["linac"], tree["rf"]], archive) is True
        assert engine.is_move_or_copy_allowed([tree["accelerator"]], tree["linac"]) is False
        assert engine.is_move_or_copy_allowed([tree["linac"]], tree["rf"]) is False
        assert engine.is_move_or_copy_allowed([store.get_root_node()], archive) is False

    # -- copy ------------------------------------------------------------------

    def test_copy_creates_new_ids(self, store, engine, tree):
        """Copies get fresh ids; sources stay in place."""
        engine.copy_nodes([tree["accelerator"].unique_id], tree["archive"].unique_id, "bob")

        copy = store.get_from_path("/Archive/Accelerator")[0]
        assert copy.unique_id != tree["accelerator"].unique_id
        assert copy.user_name == "bob"
        assert store.get_node(tree["accelerator"].unique_id).parent_id == ROOT_NODE_ID

        original_ids = set(self._ids(store.get_child_nodes(tree["accelerator"].unique_id)))
        copied = store.get_child_nodes(copy.unique_id)
        assert [n.name for n in copied] == ["Linac", "RF"]
        assert original_ids.isdisjoint(self._ids(copied))

    def test_copy_duplicates_payloads(self, store, engine, tree):
        """PV list, snapshots, items and tags are duplicated."""
        snapshots = SnapshotService(store)
        pvs = snapshots.get_config_pvs(tree["rf"].unique_id)
        snapshot = snapshots.save_snapshot(
            tree["rf"].unique_id,
            [SnapshotItem(config_pv=pv, value=i) for i, pv in enumerate(pvs)],
            "Baseline",
            "initial",
            "alice",
        )
        TagManager(store).add_tag_to_snapshot(snapshot.node, Tag(name="release", comment="v1"))
        source_items = snapshots.get_snapshot_items(snapshot.node.unique_id)
        source_tags = TagManager(store).get_tags(snapshot.node.unique_id)

        engine.copy_nodes([tree["rf"].unique_id], tree["archive"].unique_id, "bob")

        copy = store.get_from_path("/Archive/RF")[0]
        assert copy.payload == ConfigurationPayload(description="RF cavities")
        copied_pvs = snapshots.get_config_pvs(copy.unique_id)
        assert [pv.pv_name for pv in copied_pvs] == ["RF:Amp", "RF:Phase"]
        assert copied_pvs[1].read_only is True
        assert {pv.pv_id for pv in copied_pvs}.isdisjoint({pv.pv_id for pv in pvs})

        copied_snapshot = snapshots.get_snapshots(copy.unique_id)[0]
        assert copied_snapshot.unique_id != snapshot.node.unique_id
        items = snapshots.get_snapshot_items(copied_snapshot.unique_id)
        assert [item.value for item in items] == [0, 1]
        assert [item.config_pv.pv_id for item in items] == [pv.pv_id for pv in copied_pvs]
        assert [t.name for t in TagManager(store).get_tags(copied_snapshot.unique_id)] == [
            "release"
        ]

        # Source is untouched
        assert snapshots.get_config_pvs(tree["rf"].unique_id) == pvs
        assert snapshots.get_snapshot_items(snapshot.node.unique_id) == source_items
        assert TagManager(store).get_tags(snapshot.node.unique_id) == source_tags
        assert [item.config_pv.pv_id for item in source_items] == [pv.pv_id for pv in pvs]

    def test_copy_name_collision_rejected_by_default(self, store, engine, tree):
        with pytest.raises(ConflictError):
            engine.copy_nodes([tree["linac"].unique_id], tree["accelerator"].unique_id, "bob")

        assert len(store.get_child_nodes(tree["accelerator"].unique_id)) == 2

    def test_copy_name_collision_suffix_policy(self, store, tree):
        """Suffix policy picks the first free '(copy N)' name."""
        engine = TreeOperationEngine(store, CopyNamePolicy.SUFFIX)
        parent_id = tree["accelerator"].unique_id

        engine.copy_nodes([tree["linac"].unique_id], parent_id, "bob")
        engine.copy_nodes([tree["linac"].unique_id], parent_id, "bob")

        names = [n.name for n in store.get_child_nodes(parent_id)]
        assert names == ["Linac", "RF", "Linac (copy)", "Linac (copy 2)"]

    def test_copy_suffix_policy_keeps_free_name(self, store, tree):
        engine = TreeOperationEngine(store, CopyNamePolicy.SUFFIX)

        engine.copy_nodes([tree["linac"].unique_id], tree["archive"].unique_id, "bob")

        assert [n.name for n in store.get_child_nodes(tree["archive"].unique_id)] == ["Linac"]

    def test_copy_into_own_subtree_is_cycle(self, engine, tree):
        with pytest.raises(CycleError):
            engine.copy_nodes(
                [tree["accelerator"].unique_id], tree["linac"].unique_id, "bob"
            )

    # -- delete ----------------------------------------------------------------

    def test_delete_nodes(self, store, engine, tree):
        """Batch delete removes every selected subtree."""
        deleted = engine.delete_nodes([tree["linac"].unique_id, tree["rf"].unique_id])

        assert deleted == 2
        assert store.get_child_nodes(tree["accelerator"].unique_id) == []
        with pytest.raises(NotFoundError):
            store.get_node(tree["rf"].unique_id)

    def test_delete_nodes_with_root_rejected(self, store, engine, tree):
        with pytest.raises(ValidationError):
            engine.delete_nodes([ROOT_NODE_ID])

        assert len(store.get_child_nodes(ROOT_NODE_ID)) == 2

    def test_delete_nodes_unknown_is_all_or_nothing(self, store, engine, tree):
        with pytest.raises(NotFoundError):
            engine.delete_nodes([tree["linac"].unique_id, "missing"])

        assert store.get_node(tree["linac"].unique_id)
