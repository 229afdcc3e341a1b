"""
Path resolution for the save & restore tree.

Translates between node ids and slash-separated path strings like
"/Accelerator/RF Settings". The root node's name is never part of a path.

Invariants:
    - Paths are absolute (start with '/'); '/' alone is the root
    - Non-terminal segments resolve to FOLDER nodes only
    - A terminal segment may match a FOLDER and a CONFIGURATION sibling
      sharing that name, so resolution yields 0, 1 or 2 nodes
    - Every lookup runs on the caller's connection, so a whole walk sees one
      point-in-time view of the tree
"""

from __future__ import annotations

import logging
import sqlite3

from ..errors import NotFoundError, ValidationError
from ..model.types import ROOT_NODE_ID, Node, NodeType
from .schema import fetch_children, fetch_node

logger = logging.getLogger(__name__)

PATH_SEPARATOR = "/"


class PathResolver:
    """Resolves paths to nodes and nodes to paths via id lookups.

    Example:
        >>> resolver = PathResolver()
        >>> nodes = resolver.from_path(conn, "/Accelerator/RF Settings")
        >>> resolver.full_path(conn, nodes[0].unique_id)
        '/Accelerator/RF Settings'
    """

    @staticmethod
    def split(path: str) -> list[str]:
        """Split an absolute path into its name segments.

        Empty segments (from '//' or a trailing '/') are ignored.

        Raises:
            ValidationError: If path is not absolute
        """
        if not path or not path.startswith(PATH_SEPARATOR):
            raise ValidationError(f"Path must start with '/': {path!r}", field_name="path")
        return [segment for segment in path.split(PATH_SEPARATOR) if segment]

    def from_path(self, conn: sqlite3.Connection, path: str) -> list[Node]:
        """Find the node(s) a path points to.

        Args:
            conn: Connection with an open read transaction
            path: Absolute path

        Returns:
            Matching nodes (FOLDER first); empty if the path does not resolve
        """
        elements = self.split(path)
        root = fetch_node(conn, ROOT_NODE_ID)
        if root is None:
            return []
        if not elements:
            return [root]

        parent = root
        if len(elements) > 1:
            parent = self.find_parent_from_path_elements(conn, root, elements, 0)
            if parent is None:
                return []

        terminal = elements[-1]
        matches = [
            child
            for child in fetch_children(conn, parent.unique_id)
            if child.name == terminal
            and child.node_type in (NodeType.FOLDER, NodeType.CONFIGURATION)
        ]
        matches.sort(key=lambda n: 0 if n.node_type == NodeType.FOLDER else 1)
        return matches

    def find_parent_from_path_elements(
        self,
        conn: sqlite3.Connection,
        node: Node,
        elements: list[str],
        depth: int,
    ) -> Node | None:
        """Descend from node following elements[depth:-1] through FOLDER children.

        Args:
            conn: Connection with an open read transaction
            node: Folder to descend from
            elements: Full list of path segments
            depth: Index of the segment to match below node

        Returns:
            The folder that is the parent of the terminal segment, or None
        """
        if depth >= len(elements) - 1:
            return node
        for child in fetch_children(conn, node.unique_id, NodeType.FOLDER):
            if child.name == elements[depth]:
                return self.find_parent_from_path_elements(conn, child, elements, depth + 1)
        return None

    def full_path(self, conn: sqlite3.Connection, node_id: str) -> str:
        """Build the path of a node by walking its parent links.

        Raises:
            NotFoundError: If node_id is unknown
            ValidationError: If node_id is a draft snapshot, which has no name yet
        """
        node = fetch_node(conn, node_id)
        if node is None:
            raise NotFoundError(f"Node not found: {node_id}", node_id=node_id)
        if node.is_draft:
            raise ValidationError(
                f"Draft snapshot {node_id} has no path until it is committed",
                field_name="node_id",
            )

        names: list[str] = []
        visited: set[str] = set()
        while node.parent_id is not None:
            if node.unique_id in visited:
                raise ValidationError(f"Parent chain of {node_id} contains a cycle")
            visited.add(node.unique_id)
            names.append(node.name)
            parent = fetch_node(conn, node.parent_id)
            if parent is None:
                raise NotFoundError(
                    f"Parent {node.parent_id} of {node.unique_id} not found",
                    node_id=node.parent_id,
                )
            node = parent

        return PATH_SEPARATOR + PATH_SEPARATOR.join(reversed(names))
