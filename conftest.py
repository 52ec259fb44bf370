"""
Root-level shared test fixtures.

Inherited by the sync engine suites under vaultkube/ and the top-level
tests/ directory.
"""

from __future__ import annotations

import os

import pytest


@pytest.fixture
def clean_env(monkeypatch):
    """Remove vaultkube env vars that leak between tests."""
    for key in list(os.environ):
        if key.startswith("VAULTKUBE_"):
            monkeypatch.delenv(key, raising=False)
    for key in ["BW_SESSION", "KUBECONFIG"]:
        monkeypatch.delenv(key, raising=False)
