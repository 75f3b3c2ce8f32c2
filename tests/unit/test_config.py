"""Unit tests for runtime configuration."""

from __future__ import annotations

import pytest

from s3select.config import SelectRuntimeConfig


def test_from_env_defaults() -> None:
    """Use built-in defaults when no overrides are set."""
    config = SelectRuntimeConfig.from_env()
    assert config == SelectRuntimeConfig()
    assert config.read_chunk_bytes == 64 * 1024
    assert config.records_batch_bytes == 128 * 1024
    assert config.progress_bytes is None
    assert config.session_timeout is None


def test_from_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    """Apply ``S3SELECT_*`` overrides."""
    monkeypatch.setenv("S3SELECT_READ_CHUNK_BYTES", "4096")
    monkeypatch.setenv("S3SELECT_KEEPALIVE_INTERVAL", "0.5")
    monkeypatch.setenv("S3SELECT_PROGRESS_BYTES", "1000")
    monkeypatch.setenv("S3SELECT_SESSION_TIMEOUT", "30")
    monkeypatch.setenv("S3SELECT_LOG_SKIPPED_ROWS", "yes")
    monkeypatch.setenv("S3SELECT_ENGINE_BATCH_ROWS", "256")
    config = SelectRuntimeConfig.from_env()
    assert config.read_chunk_bytes == 4096
    assert config.keepalive_interval == 0.5
    assert config.progress_bytes == 1000
    assert config.session_timeout == 30.0
    assert config.log_skipped_rows is True
    assert config.engine_batch_rows == 256


def test_from_env_ignores_invalid_values(monkeypatch: pytest.MonkeyPatch) -> None:
    """Fall back to defaults for unparsable or out-of-range values."""
    monkeypatch.setenv("S3SELECT_READ_CHUNK_BYTES", "lots")
    monkeypatch.setenv("S3SELECT_RECORDS_BATCH_BYTES", "0")
    monkeypatch.setenv("S3SELECT_ENGINE_BATCH_ROWS", "0")
    config = SelectRuntimeConfig.from_env()
    assert config.read_chunk_bytes == SelectRuntimeConfig().read_chunk_bytes
    assert config.records_batch_bytes == SelectRuntimeConfig().records_batch_bytes
    assert config.engine_batch_rows == SelectRuntimeConfig().engine_batch_rows
