"""
Configuration (save set) management.

A configuration node owns an ordered list of process variable references
(ConfigPv). Snapshot items point at ConfigPv ids, so PV identity must survive
list updates:
- update_configuration matches PVs by name; retained PVs keep their id
- A removed PV still referenced by snapshot items is retired, not deleted
- Renaming a PV goes through rename_config_pv, which keeps the id

Invariants:
    - No two active PVs of one configuration share a pv_name
    - Node and PV list are created and updated in one transaction
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid

from ..errors import ConflictError, NotFoundError, ValidationError
from ..model.types import (
    ConfigPv,
    Configuration,
    ConfigurationData,
    ConfigurationPayload,
    Node,
    NodeType,
    validate_name,
)
from ..persistence.node_store import NodeStore
from ..persistence.schema import fetch_config_pvs, now_ms

logger = logging.getLogger(__name__)


def validate_pv_list(pv_list: list[ConfigPv]) -> list[ConfigPv]:
    """Check PV names and return the list with names stripped.

    Raises:
        ValidationError: On empty or duplicate PV names
    """
    errors = []
    seen: set[str] = set()
    cleaned = []
    for pv in pv_list:
        name = (pv.pv_name or "").strip()
        if not name:
            errors.append("PV name cannot be empty")
            continue
        if name in seen:
            errors.append(f"Duplicate PV name: {name}")
            continue
        seen.add(name)
        readback = (pv.readback_pv_name or "").strip() or None
        cleaned.append(
            ConfigPv(
                pv_name=name,
                readback_pv_name=readback,
                read_only=pv.read_only,
                pv_id=pv.pv_id,
            )
        )
    if errors:
        raise ValidationError("Invalid PV list", field_name="pv_list", errors=errors)
    return cleaned


class ConfigurationService:
    """Creates and updates configuration nodes with their PV lists."""

    def __init__(self, store: NodeStore) -> None:
        self.store = store

    def _insert_pv(
        self, conn: sqlite3.Connection, config_id: str, pv: ConfigPv, position: int
    ) -> None:
        conn.execute(
            """
            INSERT INTO config_pvs (pv_id, config_id, pv_name, readback_pv_name,
                                    read_only, position, active)
            VALUES (?, ?, ?, ?, ?, ?, 1)
            """,
            (
                str(uuid.uuid4()),
                config_id,
                pv.pv_name,
                pv.readback_pv_name,
                1 if pv.read_only else 0,
                position,
            ),
        )

    def _load(self, conn: sqlite3.Connection, config_id: str) -> Configuration:
        node = self.store.require_typed(conn, config_id, NodeType.CONFIGURATION)
        return Configuration(
            node=node,
            data=ConfigurationData(unique_id=config_id, pv_list=fetch_config_pvs(conn, config_id)),
        )

    def create_configuration(
        self,
        parent_id: str,
        configuration: Configuration,
        user_name: str | None = None,
    ) -> Configuration:
        """Create a configuration node and its PV list atomically.

        Args:
            parent_id: Id of the parent folder
            configuration: Node (name, description, properties) and PV list
            user_name: Attribution (defaults to the node's user_name)

        Returns:
            The stored configuration

        Raises:
            NotFoundError: If the parent does not exist
            ConflictError: If a sibling configuration has the same name
            ValidationError: On invalid names or a non-folder parent
        """
        node = configuration.node
        name = validate_name(node.name, "Configuration")
        pv_list = validate_pv_list(configuration.data.pv_list)
        candidate = Node(
            name=name,
            node_type=NodeType.CONFIGURATION,
            properties=dict(node.properties),
            payload=node.payload,
        )

        with self.store.write_transaction() as conn:
            parent = self.store.require_node(conn, parent_id)
            created = self.store.insert_node(conn, parent, candidate, user_name or node.user_name)
            for position, pv in enumerate(pv_list):
                self._insert_pv(conn, created.unique_id, pv, position)
            result = self._load(conn, created.unique_id)

        logger.info(
            f"Created configuration '{name}' with {len(pv_list)} PV(s)",
            extra={"node_id": created.unique_id, "parent_id": parent_id},
        )
        return result

    def get_configuration(self, config_id: str) -> Configuration:
        """Get a configuration node with its active PV list.

        Raises:
            NotFoundError: If config_id is unknown or not a configuration
        """
        with self.store.read_snapshot() as conn:
            return self._load(conn, config_id)

    def get_configuration_data(self, config_id: str) -> ConfigurationData:
        return self.get_configuration(config_id).data

    def update_configuration(
        self,
        configuration: Configuration,
        user_name: str | None = None,
    ) -> Configuration:
        """Overwrite a configuration's name, description and PV list.

        PVs are matched by name: new names are added, missing names are
        removed (retired if snapshot items reference them), retained PVs keep
        their id and get readback, read-only flag and position updated.

        Raises:
            NotFoundError: If the configuration does not exist
            ConflictError: On stale node version or sibling name collision
            ValidationError: On invalid names
        """
        node = configuration.node
        name = validate_name(node.name, "Configuration")
        pv_list = validate_pv_list(configuration.data.pv_list)
        payload = node.payload if isinstance(node.payload, ConfigurationPayload) else None

        with self.store.write_transaction() as conn:
            stored = self.store.require_typed(
                conn, node.unique_id, NodeType.CONFIGURATION, ValidationError
            )
            if node.version and node.version != stored.version:
                raise ConflictError(
                    f"Configuration {stored.unique_id} was modified concurrently",
                    node_id=stored.unique_id,
                )

            renamed = name != stored.name
            if renamed:
                self.store.check_name_free(
                    conn,
                    stored.parent_id,
                    NodeType.CONFIGURATION,
                    name,
                    exclude_id=stored.unique_id,
                )

            conn.execute(
                """
                UPDATE nodes SET name = ?, properties_json = ?, payload_json = ?,
                                 updated_at = ?, user_name = ?, version = version + 1
                WHERE node_id = ?
                """,
                (
                    name,
                    json.dumps(node.properties),
                    json.dumps((payload or stored.payload).to_dict()),
                    now_ms(),
                    user_name or node.user_name or stored.user_name,
                    stored.unique_id,
                ),
            )

            added, removed = self._sync_pvs(conn, stored.unique_id, pv_list)
            result = self._load(conn, stored.unique_id)

        logger.info(
            f"Updated configuration '{name}'",
            extra={"node_id": stored.unique_id, "added": added, "removed": removed},
        )
        return result

    def _sync_pvs(
        self, conn: sqlite3.Connection, config_id: str, pv_list: list[ConfigPv]
    ) -> tuple[int, int]:
        """Apply a full PV list by name. Returns (added, removed) counts."""
        rows = conn.execute(
            "SELECT * FROM config_pvs WHERE config_id = ? ORDER BY active",
            (config_id,),
        ).fetchall()
        # Active rows override retired ones with the same name
        existing = {row["pv_name"]: row for row in rows}

        added = 0
        for position, pv in enumerate(pv_list):
            row = existing.get(pv.pv_name)
            if row is None:
                self._insert_pv(conn, config_id, pv, position)
                added += 1
                continue
            if not row["active"]:
                added += 1
            conn.execute(
                """
                UPDATE config_pvs SET readback_pv_name = ?, read_only = ?, position = ?, active = 1
                WHERE pv_id = ?
                """,
                (pv.readback_pv_name, 1 if pv.read_only else 0, position, row["pv_id"]),
            )

        wanted = {pv.pv_name for pv in pv_list}
        removed = 0
        for pv_name, row in existing.items():
            if pv_name in wanted or not row["active"]:
                continue
            referenced = conn.execute(
                "SELECT 1 FROM snapshot_items WHERE config_pv_id = ? LIMIT 1", (row["pv_id"],)
            ).fetchone()
            if referenced:
                conn.execute("UPDATE config_pvs SET active = 0 WHERE pv_id = ?", (row["pv_id"],))
            else:
                conn.execute("DELETE FROM config_pvs WHERE pv_id = ?", (row["pv_id"],))
            removed += 1
        return added, removed

    def rename_config_pv(
        self,
        config_id: str,
        old_name: str,
        new_name: str,
        user_name: str,
    ) -> ConfigPv:
        """Rename one PV of a configuration, keeping its identity.

        Historical snapshot items keep pointing at the renamed PV.

        Raises:
            NotFoundError: If the configuration or the PV does not exist
            ConflictError: If another active PV already uses new_name
            ValidationError: If new_name is empty
        """
        new_name = (new_name or "").strip()
        if not new_name:
            raise ValidationError("PV name cannot be empty", field_name="new_name")

        with self.store.write_transaction() as conn:
            self.store.require_typed(conn, config_id, NodeType.CONFIGURATION, ValidationError)
            row = conn.execute(
                "SELECT pv_id FROM config_pvs WHERE config_id = ? AND pv_name = ? AND active = 1",
                (config_id, old_name),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"PV '{old_name}' not found in configuration", node_id=config_id)
            if new_name != old_name:
                clash = conn.execute(
                    "SELECT 1 FROM config_pvs WHERE config_id = ? AND pv_name = ? AND active = 1",
                    (config_id, new_name),
                ).fetchone()
                if clash:
                    raise ConflictError(
                        f"PV '{new_name}' already exists in configuration",
                        node_id=config_id,
                        name=new_name,
                    )
                conn.execute(
                    "UPDATE config_pvs SET pv_name = ? WHERE pv_id = ?", (new_name, row["pv_id"])
                )
            self.store.touch(conn, config_id, user_name)
            renamed = next(
                pv for pv in fetch_config_pvs(conn, config_id) if pv.pv_id == row["pv_id"]
            )

        logger.info(
            f"Renamed PV '{old_name}' to '{new_name}'",
            extra={"node_id": config_id, "pv_id": renamed.pv_id},
        )
        return renamed
