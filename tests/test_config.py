"""
Tests for daemon settings and port resolution.
"""

import pytest
from pydantic import ValidationError

from zyper_daemon.core.config import Settings
from zyper_daemon.main import resolve_port
from zyper_daemon.store import InstanceStore, configure_node


def test_settings_defaults(monkeypatch):
    """Test defaults without any environment."""
    monkeypatch.delenv("ZYPER_PORT", raising=False)

    settings = Settings(_env_file=None)

    assert settings.port is None
    assert settings.console_history == 1000
    assert settings.replay_count == 50
    assert settings.restart_settle_seconds == 2.0
    assert settings.cors_origins_list == ["*"]


def test_settings_from_environment(monkeypatch):
    """Test ZYPER_-prefixed overrides."""
    monkeypatch.setenv("ZYPER_PORT", "9000")
    monkeypatch.setenv("ZYPER_NODE_KEY", "abc")
    monkeypatch.setenv("ZYPER_CORS_ORIGINS", "https://panel.example, https://admin.example")

    settings = Settings(_env_file=None)

    assert settings.port == 9000
    assert settings.node_key == "abc"
    assert settings.cors_origins_list == ["https://panel.example", "https://admin.example"]


def test_invalid_log_format_fails():
    """Test that only json and console renderers are accepted."""
    with pytest.raises(ValidationError):
        Settings(_env_file=None, log_format="xml")


def test_port_falls_back_to_node_document(settings):
    """Test port resolution order: environment, document, default."""
    assert resolve_port(settings) == 8080

    store = InstanceStore(settings.config_path)
    configure_node(store, "https://panel.example", "panel-key", port=8443)
    assert resolve_port(settings) == 8443

    assert resolve_port(settings.model_copy(update={"port": 7000})) == 7000
