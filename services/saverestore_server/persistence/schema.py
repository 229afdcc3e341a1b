"""
SQLite schema and row mapping for the save & restore store.

Table schema:
    nodes:
        - node_id TEXT PRIMARY KEY
        - parent_id TEXT (NULL only for root, cascades on delete)
        - name TEXT
        - node_type TEXT (FOLDER, CONFIGURATION, SNAPSHOT)
        - draft INTEGER (1 for uncommitted snapshots)
        - position INTEGER (child order within the parent)
        - properties_json TEXT
        - payload_json TEXT
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - user_name TEXT
        - version INTEGER (optimistic concurrency counter)
        - UNIQUE (parent_id, node_type, name) for non-draft nodes

    config_pvs:
        - pv_id TEXT PRIMARY KEY
        - config_id TEXT -> nodes
        - pv_name, readback_pv_name, read_only, position
        - active INTEGER (0 once removed but still referenced by snapshot items)
        - UNIQUE (config_id, pv_name) for active PVs

    snapshot_items:
        - snapshot_id TEXT -> nodes
        - config_pv_id TEXT -> config_pvs
        - value_json, readback_json, timestamp, alarm_severity, alarm_status, position
        - PRIMARY KEY (snapshot_id, config_pv_id)

    tags:
        - snapshot_id TEXT -> nodes
        - name, comment, user_name, created_at
        - PRIMARY KEY (snapshot_id, name)

All traversal goes through id lookups on these tables; no in-memory object
graph is kept between calls.
"""

from __future__ import annotations

import json
import sqlite3
import time

from ..model.types import (
    ConfigPv,
    Node,
    NodeType,
    SnapshotItem,
    Tag,
    payload_from_dict,
)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS nodes (
        node_id TEXT PRIMARY KEY,
        parent_id TEXT REFERENCES nodes(node_id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        node_type TEXT NOT NULL,
        draft INTEGER NOT NULL DEFAULT 0,
        position INTEGER NOT NULL DEFAULT 0,
        properties_json TEXT NOT NULL DEFAULT '{}',
        payload_json TEXT NOT NULL DEFAULT '{}',
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        user_name TEXT NOT NULL DEFAULT '',
        version INTEGER NOT NULL DEFAULT 1
    );

    CREATE INDEX IF NOT EXISTS idx_nodes_parent ON nodes(parent_id, position);
    CREATE INDEX IF NOT EXISTS idx_nodes_type ON nodes(node_type, draft);
    CREATE UNIQUE INDEX IF NOT EXISTS idx_nodes_sibling_name
        ON nodes(parent_id, node_type, name) WHERE draft = 0;

    CREATE TABLE IF NOT EXISTS config_pvs (
        pv_id TEXT PRIMARY KEY,
        config_id TEXT NOT NULL REFERENCES nodes(node_id) ON DELETE CASCADE,
        pv_name TEXT NOT NULL,
        readback_pv_name TEXT,
        read_only INTEGER NOT NULL DEFAULT 0,
        position INTEGER NOT NULL DEFAULT 0,
        active INTEGER NOT NULL DEFAULT 1
    );

    CREATE INDEX IF NOT EXISTS idx_config_pvs_config ON config_pvs(config_id, position);
    CREATE UNIQUE INDEX IF NOT EXISTS idx_config_pvs_name
        ON config_pvs(config_id, pv_name) WHERE active = 1;

    CREATE TABLE IF NOT EXISTS snapshot_items (
        snapshot_id TEXT NOT NULL REFERENCES nodes(node_id) ON DELETE CASCADE,
        config_pv_id TEXT NOT NULL REFERENCES config_pvs(pv_id) ON DELETE CASCADE,
        value_json TEXT NOT NULL DEFAULT 'null',
        readback_json TEXT NOT NULL DEFAULT 'null',
        timestamp INTEGER NOT NULL DEFAULT 0,
        alarm_severity TEXT NOT NULL DEFAULT 'NONE',
        alarm_status TEXT NOT NULL DEFAULT 'NONE',
        position INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (snapshot_id, config_pv_id)
    );

    CREATE INDEX IF NOT EXISTS idx_snapshot_items_pv ON snapshot_items(config_pv_id);

    CREATE TABLE IF NOT EXISTS tags (
        snapshot_id TEXT NOT NULL REFERENCES nodes(node_id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        comment TEXT NOT NULL DEFAULT '',
        user_name TEXT NOT NULL DEFAULT '',
        created_at INTEGER NOT NULL,
        PRIMARY KEY (snapshot_id, name)
    );

    CREATE INDEX IF NOT EXISTS idx_tags_created ON tags(created_at DESC);

    INSERT OR IGNORE INTO schema_version (version, applied_at)
    VALUES (1, strftime('%s', 'now') * 1000);
"""


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


def row_to_node(row: sqlite3.Row) -> Node:
    node_type = NodeType(row["node_type"])
    return Node(
        unique_id=row["node_id"],
        name=row["name"],
        node_type=node_type,
        parent_id=row["parent_id"],
        properties=json.loads(row["properties_json"]),
        created_time=row["created_at"],
        last_modified_time=row["updated_at"],
        user_name=row["user_name"],
        payload=payload_from_dict(node_type, json.loads(row["payload_json"])),
        version=row["version"],
    )


def row_to_config_pv(row: sqlite3.Row) -> ConfigPv:
    return ConfigPv(
        pv_id=row["pv_id"],
        pv_name=row["pv_name"],
        readback_pv_name=row["readback_pv_name"],
        read_only=bool(row["read_only"]),
    )


def row_to_tag(row: sqlite3.Row) -> Tag:
    return Tag(
        name=row["name"],
        comment=row["comment"],
        user_name=row["user_name"],
        created_time=row["created_at"],
        snapshot_id=row["snapshot_id"],
    )


def fetch_node(conn: sqlite3.Connection, node_id: str) -> Node | None:
    row = conn.execute("SELECT * FROM nodes WHERE node_id = ?", (node_id,)).fetchone()
    return row_to_node(row) if row else None


def fetch_children(
    conn: sqlite3.Connection,
    node_id: str,
    node_type: NodeType | None = None,
) -> list[Node]:
    """Children of a node in insertion order, optionally filtered by type."""
    if node_type is not None:
        cursor = conn.execute(
            """
            SELECT * FROM nodes WHERE parent_id = ? AND node_type = ?
            ORDER BY position, created_at
            """,
            (node_id, node_type.value),
        )
    else:
        cursor = conn.execute(
            "SELECT * FROM nodes WHERE parent_id = ? ORDER BY position, created_at",
            (node_id,),
        )
    return [row_to_node(row) for row in cursor.fetchall()]


def fetch_sibling_by_name(
    conn: sqlite3.Connection,
    parent_id: str,
    node_type: NodeType,
    name: str,
) -> Node | None:
    """Non-draft child of parent_id with the given type and name."""
    row = conn.execute(
        """
        SELECT * FROM nodes
        WHERE parent_id = ? AND node_type = ? AND name = ? AND draft = 0
        """,
        (parent_id, node_type.value, name),
    ).fetchone()
    return row_to_node(row) if row else None


def next_position(conn: sqlite3.Connection, parent_id: str) -> int:
    row = conn.execute(
        "SELECT COALESCE(MAX(position), -1) + 1 FROM nodes WHERE parent_id = ?",
        (parent_id,),
    ).fetchone()
    return row[0]


def subtree_ids(conn: sqlite3.Connection, node_id: str) -> list[str]:
    """Ids of node_id and all its descendants, parents before children."""
    cursor = conn.execute(
        """
        WITH RECURSIVE subtree(node_id, depth) AS (
            SELECT node_id, 0 FROM nodes WHERE node_id = ?
            UNION ALL
            SELECT n.node_id, s.depth + 1
            FROM nodes n JOIN subtree s ON n.parent_id = s.node_id
        )
        SELECT node_id FROM subtree ORDER BY depth
        """,
        (node_id,),
    )
    return [row[0] for row in cursor.fetchall()]


def ancestor_ids(conn: sqlite3.Connection, node_id: str) -> list[str]:
    """Ids from node_id up to the root, node_id first."""
    ids: list[str] = []
    current: str | None = node_id
    while current is not None:
        if current in ids:
            # Corrupt parent chain; stop instead of looping forever
            break
        row = conn.execute(
            "SELECT parent_id FROM nodes WHERE node_id = ?", (current,)
        ).fetchone()
        if row is None:
            break
        ids.append(current)
        current = row["parent_id"]
    return ids


def fetch_config_pvs(
    conn: sqlite3.Connection,
    config_id: str,
    include_retired: bool = False,
) -> list[ConfigPv]:
    query = "SELECT * FROM config_pvs WHERE config_id = ?"
    if not include_retired:
        query += " AND active = 1"
    query += " ORDER BY position"
    return [row_to_config_pv(row) for row in conn.execute(query, (config_id,)).fetchall()]


def fetch_snapshot_items(conn: sqlite3.Connection, snapshot_id: str) -> list[SnapshotItem]:
    cursor = conn.execute(
        """
        SELECT i.*, p.pv_id, p.pv_name, p.readback_pv_name, p.read_only
        FROM snapshot_items i JOIN config_pvs p ON p.pv_id = i.config_pv_id
        WHERE i.snapshot_id = ?
        ORDER BY i.position
        """,
        (snapshot_id,),
    )
    return [
        SnapshotItem(
            config_pv=row_to_config_pv(row),
            value=json.loads(row["value_json"]),
            readback_value=json.loads(row["readback_json"]),
            timestamp=row["timestamp"],
            alarm_severity=row["alarm_severity"],
            alarm_status=row["alarm_status"],
        )
        for row in cursor.fetchall()
    ]


def fetch_tags(conn: sqlite3.Connection, snapshot_id: str | None = None) -> list[Tag]:
    """Tags of one snapshot (or all tags), newest first."""
    if snapshot_id is not None:
        cursor = conn.execute(
            "SELECT * FROM tags WHERE snapshot_id = ? ORDER BY created_at DESC, rowid DESC",
            (snapshot_id,),
        )
    else:
        cursor = conn.execute("SELECT * FROM tags ORDER BY created_at DESC, rowid DESC")
    return [row_to_tag(row) for row in cursor.fetchall()]