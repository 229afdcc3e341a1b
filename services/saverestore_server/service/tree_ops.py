"""
Structural tree operations: move, copy and batch delete.

Every operation runs in two phases:
1. Plan: validate preconditions against a read snapshot and note the parent
   the sources live under.
2. Commit: in one write transaction, re-run the precondition checks and
   confirm the sources still live under that parent; if a concurrent writer
   invalidated anything, fail with ConflictError and apply nothing.

Unrelated writes near the operation (a new child in the target, a rename
of a source or a sibling) leave it valid and do not fail it.

Invariants:
    - Only FOLDER and CONFIGURATION nodes are moved or copied
    - All source nodes share one parent (multi-select semantics)
    - The target is a FOLDER that is neither a source nor below one
    - All-or-nothing: a failing check for any node aborts the whole call

How to change safely:
    - Any new mutation must re-run its own checks inside the write transaction
    - Keep the commit phase free of reads outside its own transaction
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable
from typing import TypeVar

from ..config import CopyNamePolicy
from ..errors import ConflictError, CycleError, SaveRestoreError, ValidationError
from ..model.types import ROOT_NODE_ID, Node, NodeType
from ..persistence.node_store import NodeStore
from ..persistence.schema import (
    ancestor_ids,
    fetch_sibling_by_name,
    next_position,
    now_ms,
    subtree_ids,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MOVABLE_TYPES = frozenset({NodeType.FOLDER, NodeType.CONFIGURATION})


class TreeOperationEngine:
    """Orchestrates move, copy and delete across the node store.

    Example:
        >>> engine = TreeOperationEngine(store)
        >>> target = engine.move_nodes([config.unique_id], archive.unique_id, "operator")
        >>> store.get_full_path(config.unique_id)
        '/Archive/RF Settings'
    """

    def __init__(
        self,
        store: NodeStore,
        copy_name_policy: CopyNamePolicy = CopyNamePolicy.REJECT,
    ) -> None:
        self.store = store
        self.copy_name_policy = copy_name_policy

    # -- preconditions -------------------------------------------------------

    def _check_sources(self, conn: sqlite3.Connection, node_ids: list[str]) -> list[Node]:
        if not node_ids:
            raise ValidationError("No nodes selected", field_name="node_ids")
        if len(set(node_ids)) != len(node_ids):
            raise ValidationError("Node selection contains duplicates", field_name="node_ids")

        nodes = [self.store.require_node(conn, node_id) for node_id in node_ids]
        for node in nodes:
            if node.unique_id == ROOT_NODE_ID:
                raise ValidationError("The root node cannot be moved, copied or deleted")

        parent_ids = {node.parent_id for node in nodes}
        if len(parent_ids) > 1:
            raise ValidationError(
                "All selected nodes must have the same parent", field_name="node_ids"
            )
        return nodes

    def _check_preconditions(
        self,
        conn: sqlite3.Connection,
        node_ids: list[str],
        target_id: str,
        allow_in_place: bool,
        check_collisions: bool = True,
    ) -> tuple[list[Node], Node]:
        """Validate a move or copy request.

        Args:
            conn: Connection with an open transaction
            node_ids: Source node ids
            target_id: Id of the new parent
            allow_in_place: A source may "collide" with itself (move semantics)
            check_collisions: Reject same-type name collisions in the target

        Returns:
            Tuple of (source nodes, target node)
        """
        nodes = self._check_sources(conn, node_ids)
        for node in nodes:
            if node.node_type not in MOVABLE_TYPES:
                raise ValidationError(
                    f"Only folders and configurations can be moved or copied, "
                    f"'{node.name}' is a {node.node_type.value}",
                    field_name="node_ids",
                )

        target = self.store.require_node(conn, target_id)
        if target.node_type != NodeType.FOLDER:
            raise ValidationError(
                f"Target must be a FOLDER, got {target.node_type.value}",
                field_name="target_id",
            )

        target_lineage = set(ancestor_ids(conn, target_id))
        for node in nodes:
            if node.unique_id in target_lineage:
                raise CycleError(node.unique_id, target_id)

        if check_collisions:
            for node in nodes:
                existing = fetch_sibling_by_name(conn, target_id, node.node_type, node.name)
                if existing is None:
                    continue
                if allow_in_place and existing.unique_id == node.unique_id:
                    continue
                raise ConflictError(
                    f"Target already contains a {node.node_type.value} named '{node.name}'",
                    node_id=existing.unique_id,
                    name=node.name,
                )

        return nodes, target

    def _revalidate(self, check: Callable[[], T]) -> T:
        """Re-run planning checks inside the write transaction.

        Raises:
            ConflictError: If a check no longer passes
        """
        try:
            return check()
        except ConflictError:
            raise
        except SaveRestoreError as e:
            raise ConflictError(
                f"Precondition invalidated by a concurrent modification: {e.message}"
            ) from e

    @staticmethod
    def _check_parent_unchanged(nodes: list[Node], planned_parent_id: str | None) -> None:
        if nodes[0].parent_id != planned_parent_id:
            raise ConflictError(
                f"Node {nodes[0].unique_id} was moved concurrently",
                node_id=nodes[0].unique_id,
            )

    def is_move_or_copy_allowed(self, nodes: list[Node], target: Node) -> bool:
        """Check whether nodes may be moved or copied into target.

        Lets callers pre-validate a selection before asking for confirmation.
        """
        node_ids = [node.unique_id for node in nodes]
        with self.store.read_snapshot() as conn:
            try:
                self._check_preconditions(conn, node_ids, target.unique_id, allow_in_place=True)
            except SaveRestoreError as e:
                logger.debug(
                    "Move/copy not allowed",
                    extra={"target_id": target.unique_id, "reason": e.code},
                )
                return False
        return True

    # -- move ----------------------------------------------------------------

    def move_nodes(self, node_ids: list[str], target_id: str, user_name: str) -> Node:
        """Reparent nodes to a target folder.

        Args:
            node_ids: Ids of nodes sharing one parent
            target_id: Id of the target folder
            user_name: Attribution

        Returns:
            The target node after the move

        Raises:
            NotFoundError: If a source or the target does not exist
            ValidationError: If a containment or selection rule is violated
            CycleError: If the target lies within a moved subtree
            ConflictError: On name collision or concurrent modification
        """
        with self.store.read_snapshot() as conn:
            nodes, target = self._check_preconditions(
                conn, node_ids, target_id, allow_in_place=True
            )
            planned_parent_id = nodes[0].parent_id

        with self.store.write_transaction() as conn:
            nodes, target = self._revalidate(
                lambda: self._check_preconditions(conn, node_ids, target_id, allow_in_place=True)
            )
            self._check_parent_unchanged(nodes, planned_parent_id)
            now = now_ms()
            for node in nodes:
                if node.parent_id == target_id:
                    continue
                conn.execute(
                    """
                    UPDATE nodes SET parent_id = ?, position = ?, updated_at = ?,
                                     user_name = ?, version = version + 1
                    WHERE node_id = ?
                    """,
                    (target_id, next_position(conn, target_id), now, user_name, node.unique_id),
                )
            self.store.touch(conn, target_id, user_name, now=now)
            result = self.store.require_node(conn, target_id)

        logger.info(
            f"Moved {len(node_ids)} node(s) to '{result.name}'",
            extra={"node_ids": node_ids, "target_id": target_id, "user_name": user_name},
        )
        return result

    # -- copy ----------------------------------------------------------------

    def copy_nodes(self, node_ids: list[str], target_id: str, user_name: str) -> Node:
        """Deep-copy nodes and their subtrees into a target folder.

        Every copied node gets a fresh id; PV lists, snapshot items, tags,
        properties and payloads are duplicated. Creation and modification
        stamps of the copies name user_name.

        Args:
            node_ids: Ids of nodes sharing one parent
            target_id: Id of the target folder
            user_name: Attribution

        Returns:
            The target node after the copy

        Raises:
            NotFoundError: If a source or the target does not exist
            ValidationError: If a containment or selection rule is violated
            CycleError: If the target lies within a copied subtree
            ConflictError: On name collision (reject policy) or concurrent modification
        """
        reject = self.copy_name_policy == CopyNamePolicy.REJECT

        def check(conn: sqlite3.Connection) -> tuple[list[Node], Node]:
            return self._check_preconditions(
                conn, node_ids, target_id, allow_in_place=False, check_collisions=reject
            )

        with self.store.read_snapshot() as conn:
            check(conn)

        copies: list[str] = []
        with self.store.write_transaction() as conn:
            nodes, target = self._revalidate(lambda: check(conn))
            now = now_ms()
            for node in nodes:
                name = node.name if reject else self._free_name(conn, target_id, node)
                copies.append(self._clone_subtree(conn, node, target, name, user_name, now))
            self.store.touch(conn, target_id, user_name, now=now)
            result = self.store.require_node(conn, target_id)

        logger.info(
            f"Copied {len(node_ids)} node(s) to '{result.name}'",
            extra={"node_ids": node_ids, "copies": copies, "target_id": target_id},
        )
        return result

    @staticmethod
    def _free_name(conn: sqlite3.Connection, parent_id: str, node: Node) -> str:
        """First of name, 'name (copy)', 'name (copy 2)', ... unused by a same-type sibling."""
        candidate = node.name
        counter = 1
        while fetch_sibling_by_name(conn, parent_id, node.node_type, candidate) is not None:
            candidate = f"{node.name} (copy)" if counter == 1 else f"{node.name} (copy {counter})"
            counter += 1
        return candidate

    def _clone_subtree(
        self,
        conn: sqlite3.Connection,
        source: Node,
        target: Node,
        name: str,
        user_name: str,
        now: int,
    ) -> str:
        """Copy source's subtree below target. Returns the id of the copy's root."""
        id_map: dict[str, str] = {}
        pv_map: dict[str, str] = {}

        for old_id in subtree_ids(conn, source.unique_id):
            new_id = str(uuid.uuid4())
            id_map[old_id] = new_id
            if old_id == source.unique_id:
                self.store.check_name_free(conn, target.unique_id, source.node_type, name)
                parent_id, new_name, position = (
                    target.unique_id,
                    name,
                    next_position(conn, target.unique_id),
                )
            else:
                row = conn.execute(
                    "SELECT parent_id, name, position FROM nodes WHERE node_id = ?", (old_id,)
                ).fetchone()
                parent_id, new_name, position = id_map[row["parent_id"]], row["name"], row["position"]

            conn.execute(
                """
                INSERT INTO nodes (node_id, parent_id, name, node_type, draft, position,
                                   properties_json, payload_json, created_at, updated_at,
                                   user_name, version)
                SELECT ?, ?, ?, node_type, draft, ?, properties_json, payload_json, ?, ?, ?, 1
                FROM nodes WHERE node_id = ?
                """,
                (new_id, parent_id, new_name, position, now, now, user_name, old_id),
            )
            self._clone_payload(conn, old_id, new_id, pv_map)

        return id_map[source.unique_id]

    @staticmethod
    def _clone_payload(
        conn: sqlite3.Connection,
        old_id: str,
        new_id: str,
        pv_map: dict[str, str],
    ) -> None:
        """Duplicate PV list, snapshot items and tags of one node."""
        for row in conn.execute(
            "SELECT pv_id FROM config_pvs WHERE config_id = ?", (old_id,)
        ).fetchall():
            pv_map[row["pv_id"]] = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO config_pvs (pv_id, config_id, pv_name, readback_pv_name,
                                        read_only, position, active)
                SELECT ?, ?, pv_name, readback_pv_name, read_only, position, active
                FROM config_pvs WHERE pv_id = ?
                """,
                (pv_map[row["pv_id"]], new_id, row["pv_id"]),
            )

        for row in conn.execute(
            "SELECT config_pv_id FROM snapshot_items WHERE snapshot_id = ?", (old_id,)
        ).fetchall():
            conn.execute(
                """
                INSERT INTO snapshot_items (snapshot_id, config_pv_id, value_json, readback_json,
                                            timestamp, alarm_severity, alarm_status, position)
                SELECT ?, ?, value_json, readback_json, timestamp, alarm_severity,
                       alarm_status, position
                FROM snapshot_items WHERE snapshot_id = ? AND config_pv_id = ?
                """,
                (new_id, pv_map[row["config_pv_id"]], old_id, row["config_pv_id"]),
            )

        conn.execute(
            """
            INSERT INTO tags (snapshot_id, name, comment, user_name, created_at)
            SELECT ?, name, comment, user_name, created_at FROM tags WHERE snapshot_id = ?
            """,
            (new_id, old_id),
        )

    # -- delete --------------------------------------------------------------

    def delete_nodes(self, node_ids: list[str]) -> int:
        """Delete several sibling nodes and their subtrees atomically.

        Returns:
            Number of deleted nodes

        Raises:
            NotFoundError: If a node does not exist
            ValidationError: If the root is selected or parents differ
            ConflictError: If a node was deleted or moved concurrently
        """
        with self.store.read_snapshot() as conn:
            planned_parent_id = self._check_sources(conn, node_ids)[0].parent_id

        with self.store.write_transaction() as conn:
            nodes = self._revalidate(lambda: self._check_sources(conn, node_ids))
            self._check_parent_unchanged(nodes, planned_parent_id)
            deleted = 0
            for node in nodes:
                deleted += len(self.store.delete_subtree(conn, node))

        logger.info(
            f"Deleted {len(node_ids)} node(s) with {deleted} node(s) in total",
            extra={"node_ids": node_ids},
        )
        return deleted
