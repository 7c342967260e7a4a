"""Shared test fixtures for the agentlens test suite.

Points config at a throwaway data dir (via AGENTLENS_CONFIG) so no test
touches ~/.agentlens, and resets the process-wide store between tests.
"""

from __future__ import annotations

import os

import pytest

from agentlens.config.settings import reload_config
from agentlens.metrics.store import reset_store
from tests.helpers import make_config, write_test_config


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Load config from a temp TOML and start every test with a fresh store."""
    cfg_path = write_test_config(tmp_path)
    monkeypatch.setenv("AGENTLENS_CONFIG", str(cfg_path))
    reload_config()
    reset_store()
    yield
    reset_store()
    monkeypatch.delenv("AGENTLENS_CONFIG", raising=False)
    reload_config()


@pytest.fixture
def tmp_config(tmp_path):
    """Deterministic Config rooted at tmp_path."""
    return make_config(tmp_path)


def skip_unless_env(var_name):
    """Skip test unless environment variable is set."""
    return pytest.mark.skipif(
        not os.environ.get(var_name),
        reason=f"{var_name} not set",
    )
