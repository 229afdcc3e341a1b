"""
Tree administration CLI for the save & restore engine.

This tool inspects and edits the node tree of a local database:
- init: Create schema and root folder
- stats: Print record counts
- ls: List the children of the node(s) at a path
- path: Print the full path of a node
- tree: Print the whole tree (indented text or JSON)
- mkdir: Create a folder under a folder path
- mv / cp / rm: Move, copy or delete nodes by id

Usage:
    saverestore-admin --data-dir /tmp/sr init
    saverestore-admin ls /Accelerator
    saverestore-admin mv --target <folder-id> <id> <id>
    saverestore-admin tree --json

Invariants:
    - Engine errors print to stderr and exit with code 1
    - Structural commands run as one engine call (all-or-nothing)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripting
"""

from __future__ import annotations

import argparse
import dataclasses
import getpass
import json
import sys
from typing import Any

from ..config import ObservabilityConfig, ServerConfig, StorageConfig, TreePolicyConfig
from ..engine import SaveRestoreEngine
from ..errors import NotFoundError, SaveRestoreError
from ..model.types import Node, NodeType


class TreeCLI:
    """CLI commands over a SaveRestoreEngine.

    Each command returns its output as a string so it can be tested without
    capturing stdout.

    Example:
        >>> cli = TreeCLI(engine)
        >>> print(cli.ls("/"))
    """

    def __init__(self, engine: SaveRestoreEngine, user_name: str = "admin") -> None:
        self.engine = engine
        self.user_name = user_name

    def init(self) -> str:
        self.engine.initialize()
        return f"Initialized {self.engine.store.db_path}"

    def stats(self) -> str:
        stats = self.engine.get_stats()
        return "\n".join(f"{key}: {value}" for key, value in sorted(stats.items()))

    def ls(self, path: str) -> str:
        """List children of every node the path resolves to.

        Raises:
            NotFoundError: If nothing exists at the path
        """
        nodes = self.engine.get_from_path(path)
        if not nodes:
            raise NotFoundError(f"No node at path: {path}")

        lines = []
        for node in nodes:
            for child in self.engine.get_child_nodes(node.unique_id):
                lines.append(_format_node(child))
        return "\n".join(lines)

    def path(self, node_id: str) -> str:
        return self.engine.get_full_path(node_id)

    def tree(self, as_json: bool = False) -> str:
        """Render the whole tree starting from the root."""
        root = self.engine.get_root_node()
        if as_json:
            return json.dumps(self._tree_dict(root), indent=2, sort_keys=True)

        lines: list[str] = []
        self._tree_lines(root, 0, lines)
        return "\n".join(lines)

    def mkdir(self, parent_path: str, name: str) -> str:
        """Create a folder under the folder at parent_path.

        Raises:
            NotFoundError: If no folder exists at parent_path
        """
        folders = [
            n for n in self.engine.get_from_path(parent_path) if n.node_type == NodeType.FOLDER
        ]
        if not folders:
            raise NotFoundError(f"No folder at path: {parent_path}")

        folder = self.engine.create_node(
            folders[0].unique_id,
            Node(name=name, node_type=NodeType.FOLDER),
            user_name=self.user_name,
        )
        return folder.unique_id

    def mv(self, node_ids: list[str], target_id: str) -> str:
        target = self.engine.move_nodes(node_ids, target_id, self.user_name)
        return f"Moved {len(node_ids)} node(s) to {self.engine.get_full_path(target.unique_id)}"

    def cp(self, node_ids: list[str], target_id: str) -> str:
        target = self.engine.copy_nodes(node_ids, target_id, self.user_name)
        return f"Copied {len(node_ids)} node(s) to {self.engine.get_full_path(target.unique_id)}"

    def rm(self, node_ids: list[str]) -> str:
        deleted = self.engine.delete_nodes(node_ids)
        return f"Deleted {deleted} node(s)"

    def _tree_dict(self, node: Node) -> dict[str, Any]:
        data = node.to_dict()
        data["children"] = [
            self._tree_dict(child) for child in self.engine.get_child_nodes(node.unique_id)
        ]
        return data

    def _tree_lines(self, node: Node, depth: int, lines: list[str]) -> None:
        lines.append("  " * depth + _format_node(node))
        for child in self.engine.get_child_nodes(node.unique_id):
            self._tree_lines(child, depth + 1, lines)


def _format_node(node: Node) -> str:
    marker = ""
    if node.is_golden:
        marker = " *"
    elif node.is_draft:
        marker = " (draft)"
    return f"[{node.node_type.value}] {node.name}{marker}  {node.unique_id}"


def _build_engine(data_dir: str | None) -> SaveRestoreEngine:
    storage = StorageConfig.from_env()
    if data_dir:
        storage = dataclasses.replace(storage, data_dir=data_dir)
    config = ServerConfig(
        storage=storage,
        policy=TreePolicyConfig.from_env(),
        observability=ObservabilityConfig.from_env(),
    )
    config.validate()
    return SaveRestoreEngine(config)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the tree tool."""
    parser = argparse.ArgumentParser(description="Save & restore tree administration tool")
    parser.add_argument("--data-dir", help="Database directory (default: $DATA_DIR)")
    parser.add_argument("--user", default=None, help="User name recorded on changes")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create schema and root folder")
    subparsers.add_parser("stats", help="Print record counts")

    ls_parser = subparsers.add_parser("ls", help="List children at a path")
    ls_parser.add_argument("path", help="Absolute path, e.g. /Accelerator")

    path_parser = subparsers.add_parser("path", help="Print the full path of a node")
    path_parser.add_argument("node_id")

    tree_parser = subparsers.add_parser("tree", help="Print the whole tree")
    tree_parser.add_argument("--json", action="store_true", help="Output JSON")

    mkdir_parser = subparsers.add_parser("mkdir", help="Create a folder")
    mkdir_parser.add_argument("parent_path")
    mkdir_parser.add_argument("name")

    # mv / cp share arguments
    for command, help_text in (("mv", "Move nodes"), ("cp", "Copy nodes")):
        sub = subparsers.add_parser(command, help=help_text)
        sub.add_argument("--target", "-t", required=True, help="Target folder id")
        sub.add_argument("node_ids", nargs="+")

    rm_parser = subparsers.add_parser("rm", help="Delete nodes and their subtrees")
    rm_parser.add_argument("node_ids", nargs="+")

    args = parser.parse_args(argv)

    try:
        engine = _build_engine(args.data_dir)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    cli = TreeCLI(engine, user_name=args.user or getpass.getuser())

    try:
        if args.command == "init":
            output = cli.init()
        elif args.command == "stats":
            output = cli.stats()
        elif args.command == "ls":
            output = cli.ls(args.path)
        elif args.command == "path":
            output = cli.path(args.node_id)
        elif args.command == "tree":
            output = cli.tree(as_json=args.json)
        elif args.command == "mkdir":
            output = cli.mkdir(args.parent_path, args.name)
        elif args.command == "mv":
            output = cli.mv(args.node_ids, args.target)
        elif args.command == "cp":
            output = cli.cp(args.node_ids, args.target)
        else:
            output = cli.rm(args.node_ids)
    except SaveRestoreError as e:
        print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
        sys.exit(1)

    if output:
        print(output)


if __name__ == "__main__":
    main()
