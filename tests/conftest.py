"""Shared test configuration."""

from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep INBOXSYNC_* variables from the host out of every test."""
    for name in list(os.environ):
        if name.startswith("INBOXSYNC_"):
            monkeypatch.delenv(name, raising=False)
