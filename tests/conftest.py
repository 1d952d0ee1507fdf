"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _clean_txnsync_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep TXNSYNC_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("TXNSYNC_"):
            monkeypatch.delenv(name, raising=False)
