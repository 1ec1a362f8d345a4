"""
Shared fixtures for the tunnel-proxy test suite.
"""

import pytest

from core import config_manager


@pytest.fixture
def app_home(tmp_path, monkeypatch):
    """App data dir redirected to a temp directory."""
    monkeypatch.setenv(config_manager.APP_DATA_ENV, str(tmp_path))
    monkeypatch.setattr(config_manager, '_config_instance', None)
    return tmp_path
