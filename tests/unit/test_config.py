"""Tests for configuration loading."""

import json

import pytest

from shellbridge.config import ClientConfig, PtyPolicy, ServerConfig
from shellbridge.errors import ConfigError
from shellbridge.protocol import ClientType
from shellbridge.version import SemVer


ENV_VARS = [
    "PORT", "APP_VERSION", "VITE_APP_VERSION", "SHELLBRIDGE_HOST", "SHELLBRIDGE_PORT", "SHELLBRIDGE_VERSION",
    "SHELLBRIDGE_PTY_POLICY", "SHELLBRIDGE_CWD", "SHELLBRIDGE_SHELL",
    "SHELLBRIDGE_IDLE_TIMEOUT", "SHELLBRIDGE_ENV", "SHELLBRIDGE_URL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_server_defaults():
    config = ServerConfig.load()
    assert config.port == 8999
    assert config.pty_policy is PtyPolicy.SHARED
    assert config.idle_timeout is None
    assert config.auto_respawn is True
    assert config.traffic.input is False


def test_port_from_env(monkeypatch):
    monkeypatch.setenv("PORT", "9100")
    assert ServerConfig.load().port == 9100
    monkeypatch.setenv("SHELLBRIDGE_PORT", "9200")
    assert ServerConfig.load().port == 9200


def test_version_from_env(monkeypatch):
    monkeypatch.setenv("APP_VERSION", "2.4.1")
    assert ServerConfig.load().semver == SemVer(2, 4, 1)


def test_vite_app_version_from_env(monkeypatch):
    monkeypatch.setenv("VITE_APP_VERSION", "3.1.4")
    assert ServerConfig.load().semver == SemVer(3, 1, 4)
    assert ClientConfig.load().semver == SemVer(3, 1, 4)


def test_app_version_wins_over_vite_app_version(monkeypatch):
    monkeypatch.setenv("VITE_APP_VERSION", "3.1.4")
    monkeypatch.setenv("APP_VERSION", "2.4.1")
    assert ClientConfig.load().semver == SemVer(2, 4, 1)


def test_malformed_version_normalizes_to_zero():
    assert ServerConfig(version="banana").semver == SemVer(0, 0, 0)


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "bridge.json"
    path.write_text(json.dumps({"port": 7000, "pty_policy": "per_connection", "cwd": "/tmp"}))
    monkeypatch.setenv("SHELLBRIDGE_PORT", "7001")
    config = ServerConfig.load(str(path))
    assert config.port == 7001
    assert config.pty_policy is PtyPolicy.PER_CONNECTION
    assert config.cwd == "/tmp"


def test_development_mode_enables_tracing(monkeypatch):
    monkeypatch.setenv("SHELLBRIDGE_ENV", "development")
    traffic = ServerConfig.load().traffic
    assert traffic.input and traffic.output and traffic.resize and traffic.websocket


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        ServerConfig.load(str(tmp_path / "nope.json"))


def test_bad_json_is_config_error(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{port:")
    with pytest.raises(ConfigError, match="invalid JSON"):
        ServerConfig.load(str(path))


def test_invalid_value_is_config_error(monkeypatch):
    monkeypatch.setenv("SHELLBRIDGE_PTY_POLICY", "everyone")
    with pytest.raises(ConfigError):
        ServerConfig.load()


def test_client_defaults():
    config = ClientConfig.load()
    assert config.url == "ws://localhost:8999/"
    assert config.client_type is ClientType.ELECTRON
    assert (config.max_attempts, config.base_delay, config.max_delay) == (5, 1.0, 10.0)
    assert config.resize_window == pytest.approx(0.1)


def test_client_url_from_env(monkeypatch):
    monkeypatch.setenv("SHELLBRIDGE_URL", "ws://build-box:9000/")
    assert ClientConfig.load().url == "ws://build-box:9000/"
