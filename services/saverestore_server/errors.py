"""
Error types for the save & restore persistence engine.

Every component surfaces one of these kinds to its caller:
- SaveRestoreError: Base exception
- NotFoundError: Unknown node id, path or tag
- ConflictError: Name collision, duplicate tag, stale precondition
- ValidationError: Containment rule violation, snapshot/configuration mismatch
- CycleError: Move/copy target lies within a moved subtree

Invariants:
    - All errors inherit from SaveRestoreError
    - No partial structural change is committed when one is raised
    - The engine never retries; callers decide what to do
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SaveRestoreError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SAVERESTORE_ERROR"
        self.details = details or {}


class NotFoundError(SaveRestoreError):
    """Referenced node, path or tag does not exist."""

    def __init__(self, message: str, node_id: Optional[str] = None) -> None:
        super().__init__(message, code="NOT_FOUND", details={"node_id": node_id})
        self.node_id = node_id


class ConflictError(SaveRestoreError):
    """Operation conflicts with existing or concurrently modified state.

    Raised when:
    - A same-type sibling already has the requested name
    - A tag with the same name is already attached to the snapshot
    - A record changed between planning and commit of a mutation
    - The database write lock was not granted within busy_timeout
    """

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"node_id": node_id, "name": name},
        )
        self.node_id = node_id
        self.name = name


class ValidationError(SaveRestoreError):
    """Request violates a structural or domain rule."""

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[list[str]] = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class CycleError(ValidationError):
    """Target of a move or copy is one of the source nodes or lies below one."""

    def __init__(self, node_id: str, target_id: str) -> None:
        super().__init__(
            f"Target {target_id} is {node_id} or one of its descendants",
            field_name="target_id",
            code="CYCLE",
        )
        self.node_id = node_id
        self.target_id = target_id
