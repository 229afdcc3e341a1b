"""
SQLite node store for the save & restore tree.

This module is the only component touching physical storage. It stores:
- Nodes (folders, configurations, snapshots) with parent links and child order
- Configuration PV lists, snapshot items and tags (see schema.py)

Invariants:
    - One SQLite file holds the whole tree
    - Every write runs in a single BEGIN IMMEDIATE transaction and is rolled
      back entirely on any error
    - Reads run in one deferred transaction, so multi-statement walks see a
      single point-in-time view (WAL mode keeps them lock-free)
    - Every write bumps the version of the records it changes; callers that
      carry a version (update_node) are rejected when it is stale
    - Adding, renaming or removing a child does not change the parent record
    - A writer that cannot get the write lock within busy_timeout fails with
      ConflictError instead of blocking further

How to change safely:
    - Schema migrations must be backward compatible
    - Use write_transaction() for all write operations
    - Re-check preconditions inside the write transaction, never rely on a
      read made before it
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import ConflictError, NotFoundError, ValidationError
from ..model.types import (
    ALLOWED_CHILDREN,
    GOLDEN_PROPERTY,
    ROOT_NODE_ID,
    ROOT_NODE_NAME,
    Node,
    NodeType,
    validate_name,
)
from .path_resolver import PathResolver
from .schema import (
    SCHEMA_SQL,
    SCHEMA_VERSION,
    fetch_children,
    fetch_node,
    fetch_sibling_by_name,
    next_position,
    now_ms,
    subtree_ids,
)

logger = logging.getLogger(__name__)


def _is_busy(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class NodeStore:
    """SQLite store for tree nodes and their payload tables.

    Thread safety:
        Each operation opens its own connection.
        SQLite serializes writers; WAL mode lets readers run concurrently.

    Example:
        >>> store = NodeStore("/var/lib/saverestore")
        >>> store.initialize()
        >>> folder = store.create_node(
        ...     ROOT_NODE_ID,
        ...     Node(name="Accelerator", node_type=NodeType.FOLDER),
        ...     user_name="operator",
        ... )
        >>> store.get_full_path(folder.unique_id)
        '/Accelerator'
    """

    def __init__(
        self,
        data_dir: str,
        db_file: str = "saveandrestore.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the node store.

        Args:
            data_dir: Directory for the SQLite database file
            db_file: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.db_file = db_file
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self.path_resolver = PathResolver()

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_file

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the database."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def read_snapshot(self) -> Iterator[sqlite3.Connection]:
        """Connection inside a read transaction (one consistent view)."""
        with self._get_connection() as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.execute("ROLLBACK")

    @contextmanager
    def write_transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection inside a BEGIN IMMEDIATE transaction.

        Commits when the block exits normally, rolls back on any exception.

        Raises:
            ConflictError: If a uniqueness constraint fails at commit or the
                write lock is not granted within busy_timeout
        """
        with self._get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                if _is_busy(e):
                    raise self._busy_error(e) from e
                raise
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                if "UNIQUE" in str(e):
                    raise ConflictError(f"Name collision: {e}") from e
                raise
            except sqlite3.OperationalError as e:
                conn.execute("ROLLBACK")
                if _is_busy(e):
                    raise self._busy_error(e) from e
                raise
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _busy_error(self, error: sqlite3.OperationalError) -> ConflictError:
        logger.warning(
            "Write lock not granted",
            extra={"db_path": str(self.db_path), "busy_timeout_ms": self.busy_timeout_ms},
        )
        return ConflictError(f"Database is busy, retry the operation: {error}")

    def initialize(self) -> None:
        """Create the schema and the root folder if they don't exist."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA_SQL)

        with self.write_transaction() as conn:
            if fetch_node(conn, ROOT_NODE_ID) is None:
                now = now_ms()
                conn.execute(
                    """
                    INSERT INTO nodes (node_id, parent_id, name, node_type,
                                       created_at, updated_at, user_name)
                    VALUES (?, NULL, ?, ?, ?, ?, ?)
                    """,
                    (ROOT_NODE_ID, ROOT_NODE_NAME, NodeType.FOLDER.value, now, now, "system"),
                )
                logger.info("Created root node", extra={"node_id": ROOT_NODE_ID})

        logger.info(
            f"Initialized save & restore database: {self.db_path}",
            extra={"schema_version": SCHEMA_VERSION},
        )

    # -- transaction-scoped helpers, caller owns the transaction -------------

    def require_node(self, conn: sqlite3.Connection, node_id: str) -> Node:
        """Fetch a node or raise NotFoundError."""
        node = fetch_node(conn, node_id)
        if node is None:
            raise NotFoundError(f"Node not found: {node_id}", node_id=node_id)
        return node

    def require_typed(
        self,
        conn: sqlite3.Connection,
        node_id: str,
        node_type: NodeType,
        wrong_type_error: type[NotFoundError] | type[ValidationError] = NotFoundError,
    ) -> Node:
        """Fetch a node of the given type.

        Raises:
            NotFoundError: If the node does not exist
            wrong_type_error: If the node exists with another type
        """
        node = self.require_node(conn, node_id)
        if node.node_type != node_type:
            message = f"Node {node_id} is a {node.node_type.value}, not a {node_type.value}"
            if wrong_type_error is NotFoundError:
                raise NotFoundError(message, node_id=node_id)
            raise ValidationError(message, field_name="node_type")
        return node

    def touch(
        self,
        conn: sqlite3.Connection,
        node_id: str,
        user_name: str,
        now: int | None = None,
    ) -> None:
        """Stamp a node as modified by user_name and bump its version."""
        conn.execute(
            """
            UPDATE nodes SET version = version + 1, updated_at = ?, user_name = ?
            WHERE node_id = ?
            """,
            (now or now_ms(), user_name, node_id),
        )

    def check_child_allowed(self, parent: Node, child_type: NodeType) -> None:
        """Enforce the containment rules.

        Raises:
            ValidationError: If parent may not hold a child of child_type
        """
        if child_type not in ALLOWED_CHILDREN[parent.node_type]:
            raise ValidationError(
                f"A {parent.node_type.value} node cannot contain a {child_type.value} node",
                field_name="node_type",
            )

    def check_name_free(
        self,
        conn: sqlite3.Connection,
        parent_id: str,
        node_type: NodeType,
        name: str,
        exclude_id: str | None = None,
    ) -> None:
        """Raise ConflictError if a same-type sibling already uses name."""
        existing = fetch_sibling_by_name(conn, parent_id, node_type, name)
        if existing is not None and existing.unique_id != exclude_id:
            raise ConflictError(
                f"A {node_type.value} named '{name}' already exists in {parent_id}",
                node_id=existing.unique_id,
                name=name,
            )

    def insert_node(
        self,
        conn: sqlite3.Connection,
        parent: Node,
        node: Node,
        user_name: str,
        draft: bool = False,
        node_id: str | None = None,
        created_at: int | None = None,
    ) -> Node:
        """Insert a validated child of parent. Caller owns the transaction.

        Args:
            conn: Connection inside a write transaction
            parent: Parent node as read in this transaction
            node: Node to insert (unique_id, parent_id and stamps are assigned)
            user_name: Attribution
            draft: Node is an uncommitted snapshot (exempt from name uniqueness)
            node_id: Optional specific node id (generated if not provided)
            created_at: Optional creation timestamp

        Returns:
            The stored node
        """
        self.check_child_allowed(parent, node.node_type)
        if not draft:
            self.check_name_free(conn, parent.unique_id, node.node_type, node.name)

        node_id = node_id or str(uuid.uuid4())
        now = created_at or now_ms()
        conn.execute(
            """
            INSERT INTO nodes (node_id, parent_id, name, node_type, draft, position,
                               properties_json, payload_json, created_at, updated_at,
                               user_name, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (
                node_id,
                parent.unique_id,
                node.name,
                node.node_type.value,
                1 if draft else 0,
                next_position(conn, parent.unique_id),
                json.dumps(node.properties),
                json.dumps(node.payload_dict()),
                now,
                now,
                user_name,
            ),
        )

        logger.debug(
            "Created node",
            extra={
                "node_id": node_id,
                "parent_id": parent.unique_id,
                "node_type": node.node_type.value,
            },
        )
        return self.require_node(conn, node_id)

    def delete_subtree(self, conn: sqlite3.Connection, node: Node) -> list[str]:
        """Delete node and its descendants. Caller owns the transaction.

        Payload rows (PVs, items, tags) go with their nodes via ON DELETE CASCADE.

        Returns:
            Ids of the deleted nodes
        """
        if node.unique_id == ROOT_NODE_ID:
            raise ValidationError("The root node cannot be deleted", field_name="node_id")

        ids = subtree_ids(conn, node.unique_id)
        # Leaves first so no row ever points at a deleted parent
        conn.executemany(
            "DELETE FROM nodes WHERE node_id = ?",
            [(node_id,) for node_id in reversed(ids)],
        )

        logger.debug(
            "Deleted subtree",
            extra={"node_id": node.unique_id, "deleted": len(ids)},
        )
        return ids

    # -- public operations ---------------------------------------------------

    def get_node(self, node_id: str) -> Node:
        """Get a node by id.

        Raises:
            NotFoundError: If the node does not exist
        """
        with self.read_snapshot() as conn:
            return self.require_node(conn, node_id)

    def get_root_node(self) -> Node:
        return self.get_node(ROOT_NODE_ID)

    def get_child_nodes(self, node_id: str) -> list[Node]:
        """Get the children of a node in child order.

        Raises:
            NotFoundError: If the node does not exist
        """
        with self.read_snapshot() as conn:
            self.require_node(conn, node_id)
            return fetch_children(conn, node_id)

    def get_parent_node(self, node_id: str) -> Node:
        """Get the parent of a node.

        Raises:
            NotFoundError: If the node does not exist or is the root
        """
        with self.read_snapshot() as conn:
            node = self.require_node(conn, node_id)
            if node.parent_id is None:
                raise NotFoundError(f"Node {node_id} has no parent", node_id=node_id)
            return self.require_node(conn, node.parent_id)

    def create_node(self, parent_id: str, node: Node, user_name: str | None = None) -> Node:
        """Create a folder or configuration node under parent_id.

        Snapshot nodes are created through the snapshot service.

        Args:
            parent_id: Id of the parent node
            node: Node to create
            user_name: Attribution (defaults to node.user_name)

        Returns:
            The created node

        Raises:
            NotFoundError: If the parent does not exist
            ConflictError: If a same-type sibling has the same name
            ValidationError: If the containment rules forbid the node
        """
        if node.node_type == NodeType.SNAPSHOT:
            raise ValidationError(
                "Snapshot nodes are created by saving a snapshot", field_name="node_type"
            )
        name = validate_name(node.name)
        candidate = Node(
            name=name,
            node_type=node.node_type,
            properties=dict(node.properties),
            payload=node.payload,
        )

        with self.write_transaction() as conn:
            parent = self.require_node(conn, parent_id)
            created = self.insert_node(conn, parent, candidate, user_name or node.user_name)

        logger.info(
            f"Created {created.node_type.value} '{created.name}'",
            extra={"node_id": created.unique_id, "parent_id": parent_id},
        )
        return created

    def update_node(self, node: Node, preserve_timestamp: bool = False) -> Node:
        """Update a node's name and properties.

        The node type is immutable. Snapshots only accept a change of the
        golden property. A non-zero node.version must match the stored one.

        Args:
            node: Node carrying the new name/properties
            preserve_timestamp: Keep last_modified_time (migrations)

        Returns:
            The node as stored after the update

        Raises:
            NotFoundError: If the node does not exist
            ConflictError: On stale version or sibling name collision
            ValidationError: On type change, root rename or snapshot change
        """
        name = validate_name(node.name)

        with self.write_transaction() as conn:
            stored = self.require_node(conn, node.unique_id)

            if node.version and node.version != stored.version:
                raise ConflictError(
                    f"Node {stored.unique_id} was modified concurrently",
                    node_id=stored.unique_id,
                )
            if node.node_type != stored.node_type:
                raise ValidationError("Node type cannot be changed", field_name="node_type")

            renamed = name != stored.name
            if stored.unique_id == ROOT_NODE_ID and renamed:
                raise ValidationError("The root node cannot be renamed", field_name="name")

            if stored.node_type == NodeType.SNAPSHOT:
                self._check_snapshot_update(stored, name, node.properties)

            if renamed and stored.parent_id is not None:
                self.check_name_free(
                    conn, stored.parent_id, stored.node_type, name, exclude_id=stored.unique_id
                )

            updated_at = stored.last_modified_time if preserve_timestamp else now_ms()
            conn.execute(
                """
                UPDATE nodes SET name = ?, properties_json = ?, updated_at = ?,
                                 user_name = ?, version = version + 1
                WHERE node_id = ?
                """,
                (
                    name,
                    json.dumps(node.properties),
                    updated_at,
                    node.user_name or stored.user_name,
                    stored.unique_id,
                ),
            )

            updated = self.require_node(conn, stored.unique_id)

        logger.debug(
            "Updated node",
            extra={"node_id": updated.unique_id, "renamed": renamed},
        )
        return updated

    @staticmethod
    def _check_snapshot_update(stored: Node, name: str, properties: dict[str, str]) -> None:
        if name != stored.name:
            raise ValidationError("Snapshot nodes cannot be renamed", field_name="name")
        old = {k: v for k, v in stored.properties.items() if k != GOLDEN_PROPERTY}
        new = {k: v for k, v in properties.items() if k != GOLDEN_PROPERTY}
        if old != new:
            raise ValidationError(
                "Only the golden property of a snapshot can be changed",
                field_name="properties",
            )

    def delete_node(self, node_id: str) -> int:
        """Delete a node and its entire subtree atomically.

        Returns:
            Number of deleted nodes

        Raises:
            NotFoundError: If the node does not exist
            ValidationError: If node_id is the root
        """
        with self.write_transaction() as conn:
            node = self.require_node(conn, node_id)
            deleted = self.delete_subtree(conn, node)

        logger.info(
            f"Deleted {node.node_type.value} '{node.name}'",
            extra={"node_id": node_id, "deleted": len(deleted)},
        )
        return len(deleted)

    def get_from_path(self, path: str) -> list[Node]:
        """Resolve an absolute path to 0, 1 or 2 nodes.

        Raises:
            ValidationError: If path is not absolute
        """
        with self.read_snapshot() as conn:
            return self.path_resolver.from_path(conn, path)

    def get_full_path(self, node_id: str) -> str:
        """Get the absolute path of a node.

        Raises:
            NotFoundError: If node_id is unknown
            ValidationError: If node_id is a draft snapshot
        """
        with self.read_snapshot() as conn:
            return self.path_resolver.full_path(conn, node_id)

    def get_stats(self) -> dict[str, int]:
        """Get record counts per node type and payload table."""
        with self.read_snapshot() as conn:
            stats = {node_type.value.lower(): 0 for node_type in NodeType}
            cursor = conn.execute("SELECT node_type, COUNT(*) FROM nodes GROUP BY node_type")
            for row in cursor.fetchall():
                stats[row[0].lower()] = row[1]

            cursor = conn.execute("SELECT COUNT(*) FROM nodes WHERE draft = 1")
            stats["draft_snapshots"] = cursor.fetchone()[0]

            cursor = conn.execute("SELECT COUNT(*) FROM config_pvs WHERE active = 1")
            stats["config_pvs"] = cursor.fetchone()[0]

            cursor = conn.execute("SELECT COUNT(*) FROM snapshot_items")
            stats["snapshot_items"] = cursor.fetchone()[0]

            cursor = conn.execute("SELECT COUNT(*) FROM tags")
            stats["tags"] = cursor.fetchone()[0]

            return stats
