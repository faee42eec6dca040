"""
Tests for configuration loading: YAML file, environment overrides, validation.
"""
import pytest

from devplanner.config import Config
from devplanner.constants import DEFAULT_PORT, DEFAULT_WS_PORT
from devplanner.errors import ConfigError

ENV_VARS = ("DEVPLANNER_WORKSPACE", "PORT", "WS_PORT", "WEBSOCKET_HEARTBEAT_ENABLED", "DEVPLANNER_LOG_LEVEL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = Config.load()
    assert cfg.port == DEFAULT_PORT
    assert cfg.ws_port == DEFAULT_WS_PORT
    assert cfg.heartbeat_enabled is False
    assert cfg.move_window_ms == 500


def test_yaml_file_ignores_unknown_keys(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("workspace: /srv/planner\nport: 9000\nmove_window_ms: 250\nsomething_else: 1\n")
    cfg = Config.load(str(path))
    assert cfg.workspace == "/srv/planner"
    assert cfg.port == 9000
    assert cfg.move_window_ms == 250


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("workspace: /from/file\nport: 9000\n")
    monkeypatch.setenv("DEVPLANNER_WORKSPACE", str(tmp_path))
    monkeypatch.setenv("PORT", "9100")
    monkeypatch.setenv("WS_PORT", "9101")
    monkeypatch.setenv("WEBSOCKET_HEARTBEAT_ENABLED", "true")
    monkeypatch.setenv("DEVPLANNER_LOG_LEVEL", "debug")

    cfg = Config.load(str(path))
    assert cfg.workspace == str(tmp_path)
    assert (cfg.port, cfg.ws_port) == (9100, 9101)
    assert cfg.heartbeat_enabled is True
    assert cfg.log_level == "DEBUG"
    cfg.validate()


def test_heartbeat_requires_literal_true(monkeypatch):
    monkeypatch.setenv("WEBSOCKET_HEARTBEAT_ENABLED", "1")
    assert Config.load().heartbeat_enabled is False


@pytest.mark.parametrize("raw", ["abc", "0", "70000"])
def test_bad_port_falls_back(monkeypatch, raw):
    monkeypatch.setenv("PORT", raw)
    assert Config.load().port == DEFAULT_PORT


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError):
        Config.load(str(tmp_path / "absent.yaml"))


def test_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("port: [unclosed\n")
    with pytest.raises(ConfigError):
        Config.load(str(path))


def test_non_mapping_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        Config.load(str(path))


def test_validate(tmp_path):
    with pytest.raises(ConfigError):
        Config().validate()
    with pytest.raises(ConfigError):
        Config(workspace=str(tmp_path / "missing")).validate()
    with pytest.raises(ConfigError):
        Config(workspace=str(tmp_path), log_level="LOUD").validate()
    with pytest.raises(ConfigError):
        Config(workspace=str(tmp_path), move_window_ms=-1).validate()
    Config(workspace=str(tmp_path)).validate()


def test_workspace_path_expands_user(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert Config(workspace="~/planner").workspace_path == tmp_path.resolve() / "planner"
