"""
Tests for config loading: YAML over defaults, ${VAR} resolution.
"""

import pytest

from switchboard import config


@pytest.fixture(autouse=True)
def fresh_config():
    config.reset_config()
    yield
    config.reset_config()


def test_yaml_is_layered_over_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("loop:\n  max_iterations: 4\nmcp:\n  tool_timeout: 5\n")

    cfg = config.load_config(path)

    assert cfg["loop"]["max_iterations"] == 4
    assert cfg["loop"]["system_prompt"] == ""
    assert cfg["mcp"]["tool_timeout"] == 5
    assert cfg["mcp"]["protocol_version"] == "2025-06-18"
    assert cfg["sampling"]["default_model"] == "deepseek/deepseek-v3.2"


def test_env_vars_are_resolved(tmp_path, monkeypatch):
    monkeypatch.setenv("SB_TEST_KEY", "sk-123")
    monkeypatch.delenv("SB_MISSING", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        "backend:\n  api_key: ${SB_TEST_KEY}\n"
        "mcp:\n  servers:\n    - name: docs\n      url: https://d.example/mcp\n"
        "      headers:\n        X-Key: prefix-${SB_MISSING}\n"
    )

    cfg = config.load_config(path)

    assert cfg["backend"]["api_key"] == "sk-123"
    assert cfg["mcp"]["servers"][0]["headers"]["X-Key"] == "prefix-"


def test_defaults_are_not_mutated(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("oauth:\n  callback_port: 9999\n")
    config.load_config(path)
    assert config.DEFAULTS["oauth"]["callback_port"] == 8765


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        config.load_config(tmp_path / "nope.yaml")


def test_get_config_caches(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("loop:\n  max_iterations: 2\n")
    loaded = config.load_config(path)
    assert config.get_config() is loaded
