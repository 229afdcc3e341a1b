"""
Configuration management for the save & restore engine.

All configuration is done via environment variables.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Invalid values fail at load time, never at first use

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep tree policy defaults conservative (reject collisions, golden not exclusive)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class CopyNamePolicy(Enum):
    """How copy_nodes handles a same-named sibling in the target."""

    REJECT = "reject"
    SUFFIX = "suffix"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding the SQLite database
        db_file: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled (needed for lock-free snapshot reads)
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/saverestore"
    db_file: str = "saveandrestore.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/saverestore"),
            db_file=os.getenv("DB_FILE", "saveandrestore.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class TreePolicyConfig:
    """Policies for tree and snapshot operations.

    Attributes:
        copy_name_policy: Reject or auto-suffix copies colliding with a sibling name
        golden_exclusive: Marking a snapshot golden clears its siblings' golden flag
    """

    copy_name_policy: CopyNamePolicy = CopyNamePolicy.REJECT
    golden_exclusive: bool = False

    @classmethod
    def from_env(cls) -> TreePolicyConfig:
        """Load configuration from environment variables."""
        policy_str = os.getenv("COPY_NAME_POLICY", "reject").lower()
        try:
            policy = CopyNamePolicy(policy_str)
        except ValueError:
            raise ValueError(
                f"Invalid COPY_NAME_POLICY '{policy_str}'. Must be one of: reject, suffix"
            )
        return cls(
            copy_name_policy=policy,
            golden_exclusive=os.getenv("GOLDEN_EXCLUSIVE", "false").lower() == "true",
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete engine configuration.

    Attributes:
        storage: Local storage configuration
        policy: Tree and snapshot policies
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    policy: TreePolicyConfig = field(default_factory=TreePolicyConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            policy=TreePolicyConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.db_file:
            raise ValueError("DB_FILE must not be empty")
        if self.storage.busy_timeout_ms < 0:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must be >= 0")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )
        if not self.storage.wal_mode:
            logger.warning("SQLite WAL mode disabled, readers will block during writes")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "db_file": self.storage.db_file,
                "wal_mode": self.storage.wal_mode,
                "copy_name_policy": self.policy.copy_name_policy.value,
                "golden_exclusive": self.policy.golden_exclusive,
                "log_level": self.observability.log_level,
            },
        )
