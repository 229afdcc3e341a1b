"""
Snapshot capture, commit and golden marking.

Snapshots live below their configuration and hold one item per active
ConfigPv of that configuration at capture time.

Lifecycle:
    - save_snapshot without name and comment stores a draft (one per
      configuration; saving another draft overwrites it)
    - save_snapshot with name and comment commits (promoting the draft if any)
    - commit_snapshot promotes a specific draft
    - committed snapshots are immutable except for tags and the golden property

Invariants:
    - Items correspond 1:1 to the configuration's active PV list
    - Drafts never appear in committed listings
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from ..errors import ValidationError
from ..model.types import (
    GOLDEN_PROPERTY,
    ConfigPv,
    Node,
    NodeType,
    Snapshot,
    SnapshotData,
    SnapshotItem,
    SnapshotPayload,
    SnapshotStatus,
    validate_name,
)
from ..persistence.node_store import NodeStore
from ..persistence.schema import (
    fetch_config_pvs,
    fetch_snapshot_items,
    now_ms,
    row_to_node,
)

logger = logging.getLogger(__name__)


def _to_json(value: Any, pv_name: str) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Value of PV '{pv_name}' is not JSON serializable", field_name="items"
        ) from e


def match_items(pvs: list[ConfigPv], items: list[SnapshotItem]) -> list[tuple[ConfigPv, SnapshotItem]]:
    """Pair items with the configuration's PVs, in PV list order.

    Items reference their PV by pv_id, or by pv_name when no id is set.

    Raises:
        ValidationError: On unknown, duplicate or missing PVs
    """
    by_id = {pv.pv_id: pv for pv in pvs}
    by_name = {pv.pv_name: pv for pv in pvs}

    errors = []
    matched: dict[str, SnapshotItem] = {}
    for item in items:
        ref = item.config_pv
        pv = by_id.get(ref.pv_id) if ref.pv_id else by_name.get(ref.pv_name)
        if pv is None:
            errors.append(f"PV '{ref.pv_name}' is not part of the configuration")
        elif pv.pv_id in matched:
            errors.append(f"Duplicate item for PV '{pv.pv_name}'")
        else:
            matched[pv.pv_id] = item

    errors.extend(
        f"Missing item for PV '{pv.pv_name}'" for pv in pvs if pv.pv_id not in matched
    )
    if errors:
        raise ValidationError(
            "Snapshot items do not match the configuration", field_name="items", errors=errors
        )
    return [(pv, matched[pv.pv_id]) for pv in pvs]


class SnapshotService:
    """Stores snapshots and their captured values.

    Example:
        >>> service = SnapshotService(store)
        >>> pvs = service.get_config_pvs(config_id)
        >>> items = [SnapshotItem(config_pv=pv, value=1.0) for pv in pvs]
        >>> snapshot = service.save_snapshot(config_id, items, "Baseline", "initial", "operator")
    """

    def __init__(self, store: NodeStore, golden_exclusive: bool = False) -> None:
        self.store = store
        self.golden_exclusive = golden_exclusive

    def _find_draft(self, conn: sqlite3.Connection, config_id: str) -> Node | None:
        row = conn.execute(
            """
            SELECT * FROM nodes
            WHERE parent_id = ? AND node_type = ? AND draft = 1
            ORDER BY created_at DESC LIMIT 1
            """,
            (config_id, NodeType.SNAPSHOT.value),
        ).fetchone()
        return row_to_node(row) if row else None

    def _promote(
        self,
        conn: sqlite3.Connection,
        snapshot: Node,
        name: str,
        payload: SnapshotPayload,
        user_name: str,
    ) -> None:
        """Rewrite a draft's name/payload. Caller owns the transaction."""
        if payload.committed:
            self.store.check_name_free(conn, snapshot.parent_id, NodeType.SNAPSHOT, name)
        conn.execute(
            """
            UPDATE nodes SET name = ?, draft = ?, payload_json = ?, updated_at = ?,
                             user_name = ?, version = version + 1
            WHERE node_id = ?
            """,
            (
                name,
                0 if payload.committed else 1,
                json.dumps(payload.to_dict()),
                now_ms(),
                user_name,
                snapshot.unique_id,
            ),
        )

    def save_snapshot(
        self,
        config_id: str,
        items: list[SnapshotItem],
        name: str | None = None,
        comment: str | None = None,
        user_name: str = "",
    ) -> Snapshot:
        """Store captured values as a draft or committed snapshot.

        Args:
            config_id: Id of the configuration the values were captured for
            items: One item per active PV of the configuration
            name: Snapshot name (empty together with comment for a draft)
            comment: Snapshot comment
            user_name: Attribution

        Returns:
            The stored snapshot with its items

        Raises:
            NotFoundError: If the configuration does not exist
            ValidationError: If config_id is not a configuration, items don't
                match its PV list, or only one of name/comment is given
            ConflictError: If a committed sibling snapshot has the same name
        """
        name = (name or "").strip()
        comment = (comment or "").strip()
        if bool(name) != bool(comment):
            raise ValidationError(
                "Name and comment must both be given to commit a snapshot",
                field_name="name" if not name else "comment",
            )
        committed = bool(name)
        if committed:
            name = validate_name(name, "Snapshot")
        payload = SnapshotPayload(
            status=SnapshotStatus.COMMITTED if committed else SnapshotStatus.DRAFT,
            comment=comment,
        )

        with self.store.write_transaction() as conn:
            config = self.store.require_typed(
                conn, config_id, NodeType.CONFIGURATION, ValidationError
            )
            pairs = match_items(fetch_config_pvs(conn, config_id), items)

            draft = self._find_draft(conn, config_id)
            if draft is not None:
                self._promote(conn, draft, name, payload, user_name)
                conn.execute("DELETE FROM snapshot_items WHERE snapshot_id = ?", (draft.unique_id,))
                snapshot_id = draft.unique_id
            else:
                candidate = Node(name=name, node_type=NodeType.SNAPSHOT, payload=payload)
                snapshot_id = self.store.insert_node(
                    conn, config, candidate, user_name, draft=not committed
                ).unique_id

            conn.executemany(
                """
                INSERT INTO snapshot_items (snapshot_id, config_pv_id, value_json, readback_json,
                                            timestamp, alarm_severity, alarm_status, position)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        snapshot_id,
                        pv.pv_id,
                        _to_json(item.value, pv.pv_name),
                        _to_json(item.readback_value, pv.pv_name),
                        item.timestamp,
                        item.alarm_severity,
                        item.alarm_status,
                        position,
                    )
                    for position, (pv, item) in enumerate(pairs)
                ],
            )
            snapshot = Snapshot(
                node=self.store.require_node(conn, snapshot_id),
                data=SnapshotData(
                    unique_id=snapshot_id, snapshot_items=fetch_snapshot_items(conn, snapshot_id)
                ),
            )

        logger.info(
            f"Saved {payload.status.value} snapshot with {len(pairs)} item(s)",
            extra={"node_id": snapshot_id, "config_id": config_id, "user_name": user_name},
        )
        return snapshot

    def commit_snapshot(self, snapshot_id: str, name: str, comment: str, user_name: str) -> Node:
        """Promote a draft snapshot to committed.

        Raises:
            NotFoundError: If the snapshot does not exist
            ValidationError: If it is already committed or name/comment are empty
            ConflictError: If a committed sibling snapshot has the same name
        """
        comment = (comment or "").strip()
        name = validate_name(name, "Snapshot")
        if not comment:
            raise ValidationError("Comment cannot be empty", field_name="comment")

        with self.store.write_transaction() as conn:
            snapshot = self.store.require_typed(
                conn, snapshot_id, NodeType.SNAPSHOT, ValidationError
            )
            if not snapshot.is_draft:
                raise ValidationError(
                    f"Snapshot {snapshot_id} is already committed", field_name="snapshot_id"
                )
            payload = SnapshotPayload(status=SnapshotStatus.COMMITTED, comment=comment)
            self._promote(conn, snapshot, name, payload, user_name)
            committed = self.store.require_node(conn, snapshot_id)

        logger.info(
            f"Committed snapshot '{name}'",
            extra={"node_id": snapshot_id, "user_name": user_name},
        )
        return committed

    def get_snapshots(self, config_id: str) -> list[Node]:
        """Committed snapshots of a configuration, oldest first.

        Raises:
            NotFoundError: If config_id is unknown or not a configuration
        """
        with self.store.read_snapshot() as conn:
            self.store.require_typed(conn, config_id, NodeType.CONFIGURATION)
            cursor = conn.execute(
                """
                SELECT * FROM nodes
                WHERE parent_id = ? AND node_type = ? AND draft = 0
                ORDER BY created_at, position
                """,
                (config_id, NodeType.SNAPSHOT.value),
            )
            return [row_to_node(row) for row in cursor.fetchall()]

    def get_all_snapshots(self) -> list[Node]:
        with self.store.read_snapshot() as conn:
            cursor = conn.execute(
                "SELECT * FROM nodes WHERE node_type = ? AND draft = 0 ORDER BY created_at",
                (NodeType.SNAPSHOT.value,),
            )
            return [row_to_node(row) for row in cursor.fetchall()]

    def get_snapshot_node(self, snapshot_id: str) -> Node:
        with self.store.read_snapshot() as conn:
            return self.store.require_typed(conn, snapshot_id, NodeType.SNAPSHOT)

    def get_snapshot_items(self, snapshot_id: str) -> list[SnapshotItem]:
        """Captured items of a snapshot, in PV list order.

        Raises:
            NotFoundError: If snapshot_id is unknown or not a snapshot
        """
        with self.store.read_snapshot() as conn:
            self.store.require_typed(conn, snapshot_id, NodeType.SNAPSHOT)
            return fetch_snapshot_items(conn, snapshot_id)

    def get_snapshot_data(self, snapshot_id: str) -> SnapshotData:
        return SnapshotData(
            unique_id=snapshot_id, snapshot_items=self.get_snapshot_items(snapshot_id)
        )

    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        with self.store.read_snapshot() as conn:
            node = self.store.require_typed(conn, snapshot_id, NodeType.SNAPSHOT)
            return Snapshot(
                node=node,
                data=SnapshotData(
                    unique_id=snapshot_id, snapshot_items=fetch_snapshot_items(conn, snapshot_id)
                ),
            )

    def get_config_pvs(self, config_id: str) -> list[ConfigPv]:
        """Active PV list of a configuration.

        Raises:
            NotFoundError: If config_id is unknown or not a configuration
        """
        with self.store.read_snapshot() as conn:
            self.store.require_typed(conn, config_id, NodeType.CONFIGURATION)
            return fetch_config_pvs(conn, config_id)

    def tag_snapshot_as_golden(self, node: Node, golden: bool) -> Node:
        """Set or clear the golden property of a committed snapshot.

        Sibling snapshots are left alone unless golden_exclusive is set, in
        which case marking one golden clears the others in the same transaction.

        Raises:
            NotFoundError: If the snapshot does not exist
            ValidationError: If the node is not a committed snapshot
        """
        with self.store.write_transaction() as conn:
            snapshot = self.store.require_typed(
                conn, node.unique_id, NodeType.SNAPSHOT, ValidationError
            )
            if snapshot.is_draft:
                raise ValidationError("Draft snapshots cannot be marked golden")

            cleared = []
            if golden and self.golden_exclusive:
                for row in conn.execute(
                    "SELECT * FROM nodes WHERE parent_id = ? AND node_type = ? AND node_id != ?",
                    (snapshot.parent_id, NodeType.SNAPSHOT.value, snapshot.unique_id),
                ).fetchall():
                    sibling = row_to_node(row)
                    if sibling.is_golden:
                        self._set_golden(conn, sibling, False)
                        cleared.append(sibling.unique_id)

            self._set_golden(conn, snapshot, golden)
            updated = self.store.require_node(conn, snapshot.unique_id)

        logger.info(
            f"Snapshot '{updated.name}' golden={golden}",
            extra={"node_id": updated.unique_id, "cleared": cleared},
        )
        return updated

    @staticmethod
    def _set_golden(conn: sqlite3.Connection, snapshot: Node, golden: bool) -> None:
        properties = dict(snapshot.properties)
        if golden:
            properties[GOLDEN_PROPERTY] = "true"
        else:
            properties.pop(GOLDEN_PROPERTY, None)
        conn.execute(
            """
            UPDATE nodes SET properties_json = ?, updated_at = ?, version = version + 1
            WHERE node_id = ?
            """,
            (json.dumps(properties), now_ms(), snapshot.unique_id),
        )
