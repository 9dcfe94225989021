"""Global pytest configuration and fixtures."""

import os

import pytest

from mcpbridge.core.settings.settings import get_settings


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Keep process-wide settings independent of the developer's environment."""
    for key in list(os.environ):
        if key.startswith("MCPBRIDGE_"):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
