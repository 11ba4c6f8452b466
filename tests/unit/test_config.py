"""Unit tests for server configuration.

Tests configuration loading, validation, defaults and environment overrides.
"""

from pathlib import Path

import pytest

from teamcall.config import (
    CallsConfig,
    HealthConfig,
    ServerConfig,
    WebSocketConfig,
)

REPO_CONFIG = Path(__file__).parent.parent.parent / "configs" / "teamcall.yaml"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TEAMCALL_HOST",
        "TEAMCALL_PORT",
        "TEAMCALL_LOG_LEVEL",
        "TEAMCALL_PENDING_CALL_TTL_S",
    ):
        monkeypatch.delenv(name, raising=False)


def test_websocket_config_defaults() -> None:
    """Test WebSocket configuration defaults."""
    config = WebSocketConfig()
    assert config.host == "0.0.0.0"  # noqa: S104
    assert config.port == 3001
    assert config.max_connections == 1000
    assert config.max_message_bytes == 64 * 1024
    assert config.ping_interval_s == 20.0


def test_websocket_config_validation() -> None:
    """Test WebSocket configuration validation."""
    assert WebSocketConfig(port=0).port == 0

    with pytest.raises(ValueError):
        WebSocketConfig(port=70000)

    with pytest.raises(ValueError):
        WebSocketConfig(max_connections=0)


def test_calls_config_validation() -> None:
    assert CallsConfig().pending_call_ttl_s == 120.0

    with pytest.raises(ValueError):
        CallsConfig(pending_call_ttl_s=1.0)


def test_log_level_is_normalized() -> None:
    assert ServerConfig(log_level="debug").log_level == "DEBUG"

    with pytest.raises(ValueError, match="log_level"):
        ServerConfig(log_level="chatty")


def test_health_port_follows_websocket_port() -> None:
    config = ServerConfig()
    assert config.health_port == 3002

    config = ServerConfig.model_validate({"transport": {"websocket": {"port": 0}}})
    assert config.health_port == 0

    config = ServerConfig(health=HealthConfig(port=9100))
    assert config.health_port == 9100


def test_load_repository_config() -> None:
    """Test the shipped YAML file loads."""
    config = ServerConfig.from_yaml(REPO_CONFIG)

    assert config.transport.websocket.port == 3001
    assert config.security.pin_connection_identity is True
    assert config.calls.sweep_interval_s == 15.0


def test_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "server.yaml"
    path.write_text(
        "transport:\n"
        "  websocket:\n"
        "    host: 127.0.0.1\n"
        "    port: 4000\n"
        "calls:\n"
        "  pending_call_ttl_s: 30\n"
        "log_level: warning\n"
    )

    config = ServerConfig.from_yaml(path)

    assert config.transport.websocket.host == "127.0.0.1"
    assert config.transport.websocket.port == 4000
    assert config.calls.pending_call_ttl_s == 30.0
    assert config.log_level == "WARNING"


def test_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "server.yaml"
    path.write_text("log_level: INFO\n")
    monkeypatch.setenv("TEAMCALL_HOST", "10.0.0.5")
    monkeypatch.setenv("TEAMCALL_PORT", "5555")
    monkeypatch.setenv("TEAMCALL_LOG_LEVEL", "error")
    monkeypatch.setenv("TEAMCALL_PENDING_CALL_TTL_S", "45")

    config = ServerConfig.from_yaml(path)

    assert config.transport.websocket.host == "10.0.0.5"
    assert config.transport.websocket.port == 5555
    assert config.log_level == "ERROR"
    assert config.calls.pending_call_ttl_s == 45.0


def test_from_yaml_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        ServerConfig.from_yaml(tmp_path / "missing.yaml")


def test_from_yaml_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "server.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ValueError, match="mapping"):
        ServerConfig.from_yaml(path)


def test_from_yaml_with_defaults(tmp_path: Path) -> None:
    config = ServerConfig.from_yaml_with_defaults(tmp_path / "missing.yaml")

    assert config == ServerConfig()
