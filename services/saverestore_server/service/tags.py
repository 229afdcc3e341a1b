"""
Tag management for snapshots.

A tag is a named, commented label attached to one committed snapshot.
Tag names are unique per snapshot; listings are newest first.
"""

from __future__ import annotations

import logging

from ..errors import ConflictError, NotFoundError, ValidationError
from ..model.types import Node, NodeType, Tag
from ..persistence.node_store import NodeStore
from ..persistence.schema import fetch_tags, now_ms

logger = logging.getLogger(__name__)


class TagManager:
    """Adds, removes and lists snapshot tags."""

    def __init__(self, store: NodeStore) -> None:
        self.store = store

    def add_tag_to_snapshot(self, node: Node, tag: Tag) -> list[Tag]:
        """Attach a tag to a committed snapshot.

        Args:
            node: The snapshot
            tag: Tag to add (snapshot_id is taken from node, created_time
                defaults to now)

        Returns:
            The snapshot's tags, newest first

        Raises:
            NotFoundError: If the snapshot does not exist
            ValidationError: If the node is not a committed snapshot or the tag name is empty
            ConflictError: If the snapshot already has a tag with that name
        """
        name = (tag.name or "").strip()
        if not name:
            raise ValidationError("Tag name cannot be empty", field_name="name")

        with self.store.write_transaction() as conn:
            snapshot = self.store.require_typed(
                conn, node.unique_id, NodeType.SNAPSHOT, ValidationError
            )
            if snapshot.is_draft:
                raise ValidationError("Draft snapshots cannot be tagged", field_name="node")

            existing = conn.execute(
                "SELECT 1 FROM tags WHERE snapshot_id = ? AND name = ?",
                (snapshot.unique_id, name),
            ).fetchone()
            if existing:
                raise ConflictError(
                    f"Snapshot already has a tag named '{name}'",
                    node_id=snapshot.unique_id,
                    name=name,
                )

            conn.execute(
                """
                INSERT INTO tags (snapshot_id, name, comment, user_name, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    snapshot.unique_id,
                    name,
                    tag.comment or "",
                    tag.user_name or "",
                    tag.created_time or now_ms(),
                ),
            )
            tags = fetch_tags(conn, snapshot.unique_id)

        logger.info(
            f"Tagged snapshot '{snapshot.name}' with '{name}'",
            extra={"node_id": snapshot.unique_id, "user_name": tag.user_name},
        )
        return tags

    def remove_tag_from_snapshot(self, node: Node, tag: Tag) -> list[Tag]:
        """Remove the tag matching (tag.name, snapshot id).

        Returns:
            The snapshot's remaining tags, newest first

        Raises:
            NotFoundError: If the snapshot or the tag does not exist
        """
        snapshot_id = node.unique_id
        if tag.snapshot_id and tag.snapshot_id != snapshot_id:
            raise NotFoundError(
                f"Tag '{tag.name}' does not belong to snapshot {snapshot_id}",
                node_id=snapshot_id,
            )

        with self.store.write_transaction() as conn:
            self.store.require_typed(conn, snapshot_id, NodeType.SNAPSHOT)
            cursor = conn.execute(
                "DELETE FROM tags WHERE snapshot_id = ? AND name = ?",
                (snapshot_id, tag.name),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Tag '{tag.name}' not found", node_id=snapshot_id)
            tags = fetch_tags(conn, snapshot_id)

        logger.info(
            f"Removed tag '{tag.name}'",
            extra={"node_id": snapshot_id},
        )
        return tags

    def get_tags(self, snapshot_id: str) -> list[Tag]:
        with self.store.read_snapshot() as conn:
            self.store.require_typed(conn, snapshot_id, NodeType.SNAPSHOT)
            return fetch_tags(conn, snapshot_id)

    def get_all_tags(self) -> list[Tag]:
        with self.store.read_snapshot() as conn:
            return fetch_tags(conn)
