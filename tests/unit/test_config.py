"""
Unit tests for environment-based configuration.

Tests cover:
- Defaults
- Loading from environment variables
- Validation failures
"""

import pytest

from services.saverestore_server.config import (
    CopyNamePolicy,
    ObservabilityConfig,
    ServerConfig,
    StorageConfig,
    TreePolicyConfig,
)


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self):
        config = ServerConfig()

        assert config.storage.db_file == "saveandrestore.db"
        assert config.storage.wal_mode is True
        assert config.policy.copy_name_policy == CopyNamePolicy.REJECT
        assert config.policy.golden_exclusive is False
        assert config.observability.log_format == "json"

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("DB_FILE", "test.db")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("SQLITE_BUSY_TIMEOUT_MS", "250")
        monkeypatch.setenv("COPY_NAME_POLICY", "SUFFIX")
        monkeypatch.setenv("GOLDEN_EXCLUSIVE", "true")
        monkeypatch.setenv("LOG_FORMAT", "text")

        config = ServerConfig.from_env()

        assert config.storage.data_dir == str(tmp_path)
        assert config.storage.db_file == "test.db"
        assert config.storage.wal_mode is False
        assert config.storage.busy_timeout_ms == 250
        assert config.policy.copy_name_policy == CopyNamePolicy.SUFFIX
        assert config.policy.golden_exclusive is True
        assert config.observability.log_format == "text"

    def test_invalid_copy_policy(self, monkeypatch):
        monkeypatch.setenv("COPY_NAME_POLICY", "overwrite")

        with pytest.raises(ValueError, match="COPY_NAME_POLICY"):
            TreePolicyConfig.from_env()

    def test_invalid_log_format(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("LOG_FORMAT", "xml")

        with pytest.raises(ValueError, match="LOG_FORMAT"):
            ServerConfig.from_env()

    def test_negative_busy_timeout(self, tmp_path):
        config = ServerConfig(storage=StorageConfig(data_dir=str(tmp_path), busy_timeout_ms=-1))

        with pytest.raises(ValueError, match="SQLITE_BUSY_TIMEOUT_MS"):
            config.validate()

    def test_empty_db_file(self, tmp_path):
        config = ServerConfig(storage=StorageConfig(data_dir=str(tmp_path), db_file=""))

        with pytest.raises(ValueError):
            config.validate()

    def test_observability_from_env(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        assert ObservabilityConfig.from_env().log_level == "DEBUG"
