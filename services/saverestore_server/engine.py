"""
Save & restore engine - single entry point for the API layer.

Wires the node store and the domain services from a ServerConfig and exposes
their operations as one synchronous call interface.

Invariants:
    - All components share one NodeStore
    - Every call completes fully or raises a SaveRestoreError with nothing
      persisted

Example:
    >>> engine = SaveRestoreEngine(config)
    >>> engine.initialize()
    >>> root = engine.get_root_node()
"""

from __future__ import annotations

import logging

from .config import ServerConfig
from .model.types import (
    ConfigPv,
    Configuration,
    ConfigurationData,
    Node,
    Snapshot,
    SnapshotData,
    SnapshotItem,
    Tag,
)
from .persistence.node_store import NodeStore
from .service.configuration import ConfigurationService
from .service.snapshots import SnapshotService
from .service.tags import TagManager
from .service.tree_ops import TreeOperationEngine

logger = logging.getLogger(__name__)


class SaveRestoreEngine:
    """Facade over NodeStore and the domain services.

    Attributes:
        config: Engine configuration
        store: Node store
        tree: Move/copy/delete engine
        configurations: Configuration service
        snapshots: Snapshot service
        tags: Tag manager
    """

    def __init__(self, config: ServerConfig | None = None, store: NodeStore | None = None) -> None:
        """Initialize the engine.

        Args:
            config: Optional configuration (loaded from env if not provided)
            store: Optional pre-built node store (built from config otherwise)
        """
        self.config = config or ServerConfig.from_env()
        storage = self.config.storage
        self.store = store or NodeStore(
            data_dir=storage.data_dir,
            db_file=storage.db_file,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
            cache_size_pages=storage.cache_size_pages,
        )
        self.tree = TreeOperationEngine(self.store, self.config.policy.copy_name_policy)
        self.configurations = ConfigurationService(self.store)
        self.snapshots = SnapshotService(self.store, self.config.policy.golden_exclusive)
        self.tags = TagManager(self.store)

    def initialize(self) -> None:
        """Create schema and root node."""
        self.store.initialize()

    # Node store

    def get_node(self, node_id: str) -> Node:
        return self.store.get_node(node_id)

    def get_root_node(self) -> Node:
        return self.store.get_root_node()

    def get_child_nodes(self, node_id: str) -> list[Node]:
        return self.store.get_child_nodes(node_id)

    def get_parent_node(self, node_id: str) -> Node:
        return self.store.get_parent_node(node_id)

    def create_node(self, parent_id: str, node: Node, user_name: str | None = None) -> Node:
        return self.store.create_node(parent_id, node, user_name)

    def update_node(self, node: Node, preserve_timestamp: bool = False) -> Node:
        return self.store.update_node(node, preserve_timestamp)

    def delete_node(self, node_id: str) -> int:
        return self.store.delete_node(node_id)

    def get_from_path(self, path: str) -> list[Node]:
        return self.store.get_from_path(path)

    def get_full_path(self, node_id: str) -> str:
        return self.store.get_full_path(node_id)

    def get_stats(self) -> dict[str, int]:
        return self.store.get_stats()

    # Tree operations

    def move_nodes(self, node_ids: list[str], target_id: str, user_name: str) -> Node:
        return self.tree.move_nodes(node_ids, target_id, user_name)

    def copy_nodes(self, node_ids: list[str], target_id: str, user_name: str) -> Node:
        return self.tree.copy_nodes(node_ids, target_id, user_name)

    def delete_nodes(self, node_ids: list[str]) -> int:
        return self.tree.delete_nodes(node_ids)

    def is_move_or_copy_allowed(self, nodes: list[Node], target: Node) -> bool:
        return self.tree.is_move_or_copy_allowed(nodes, target)

    # Configurations

    def create_configuration(
        self, parent_id: str, configuration: Configuration, user_name: str | None = None
    ) -> Configuration:
        return self.configurations.create_configuration(parent_id, configuration, user_name)

    def get_configuration(self, config_id: str) -> Configuration:
        return self.configurations.get_configuration(config_id)

    def get_configuration_data(self, config_id: str) -> ConfigurationData:
        return self.configurations.get_configuration_data(config_id)

    def update_configuration(
        self, configuration: Configuration, user_name: str | None = None
    ) -> Configuration:
        return self.configurations.update_configuration(configuration, user_name)

    def rename_config_pv(
        self, config_id: str, old_name: str, new_name: str, user_name: str
    ) -> ConfigPv:
        return self.configurations.rename_config_pv(config_id, old_name, new_name, user_name)

    # Snapshots

    def save_snapshot(
        self,
        config_id: str,
        items: list[SnapshotItem],
        name: str | None = None,
        comment: str | None = None,
        user_name: str = "",
    ) -> Snapshot:
        return self.snapshots.save_snapshot(config_id, items, name, comment, user_name)

    def commit_snapshot(self, snapshot_id: str, name: str, comment: str, user_name: str) -> Node:
        return self.snapshots.commit_snapshot(snapshot_id, name, comment, user_name)

    def get_snapshots(self, config_id: str) -> list[Node]:
        return self.snapshots.get_snapshots(config_id)

    def get_all_snapshots(self) -> list[Node]:
        return self.snapshots.get_all_snapshots()

    def get_snapshot_node(self, snapshot_id: str) -> Node:
        return self.snapshots.get_snapshot_node(snapshot_id)

    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        return self.snapshots.get_snapshot(snapshot_id)

    def get_snapshot_items(self, snapshot_id: str) -> list[SnapshotItem]:
        return self.snapshots.get_snapshot_items(snapshot_id)

    def get_snapshot_data(self, snapshot_id: str) -> SnapshotData:
        return self.snapshots.get_snapshot_data(snapshot_id)

    def get_config_pvs(self, config_id: str) -> list[ConfigPv]:
        return self.snapshots.get_config_pvs(config_id)

    def tag_snapshot_as_golden(self, node: Node, golden: bool) -> Node:
        return self.snapshots.tag_snapshot_as_golden(node, golden)

    # Tags

    def add_tag_to_snapshot(self, node: Node, tag: Tag) -> list[Tag]:
        return self.tags.add_tag_to_snapshot(node, tag)

    def remove_tag_from_snapshot(self, node: Node, tag: Tag) -> list[Tag]:
        return self.tags.remove_tag_from_snapshot(node, tag)

    def get_tags(self, snapshot_id: str) -> list[Tag]:
        return self.tags.get_tags(snapshot_id)

    def get_all_tags(self) -> list[Tag]:
        return self.tags.get_all_tags()
