"""Pytest configuration for pillar tests."""

from datetime import datetime, timezone

import pytest

from pillar.lib import init_workspace
from pillar.store import ENV_WORKSPACE


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep a PILLAR_WORKSPACE from the developer's shell out of the tests."""
    monkeypatch.delenv(ENV_WORKSPACE, raising=False)


@pytest.fixture
def workspace(tmp_path):
    """An initialized workspace with the default base directory."""
    return init_workspace(tmp_path / "ws")


@pytest.fixture
def fixed_time():
    return datetime(2025, 12, 29, 10, 30, tzinfo=timezone.utc)
