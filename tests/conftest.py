"""Shared pytest fixtures for select tests."""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from obs.otel.metrics import reset_metrics_registry
from s3select.config import ENV_PREFIX, SelectRuntimeConfig
from tests.test_helpers.select_runtime import TEST_CONFIG


@pytest.fixture(autouse=True)
def _isolated_select_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop ``S3SELECT_*`` overrides and cached instruments around each test."""
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)
    reset_metrics_registry()
    yield
    reset_metrics_registry()


@pytest.fixture
def select_config() -> SelectRuntimeConfig:
    """Return a configuration with tiny reads and one row per Records frame."""
    return TEST_CONFIG
