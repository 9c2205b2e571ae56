from __future__ import annotations

import json

import pytest

from orderdesk.app.config import ApiSettings, get_api_settings, load_config


def test_defaults_without_file() -> None:
    cfg = load_config(None)
    assert cfg.SERVER_PORT == cfg.server["port"]
    assert cfg.DATABASE_URL == cfg.database["url"]
    with pytest.raises(AttributeError):
        cfg.missing_key


def test_flat_keys_from_json_reach_sections(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"DATABASE_URL": "sqlite:///x.db", "SERVER_PORT": 9000}))
    cfg = load_config(str(path))
    assert cfg.database["url"] == "sqlite:///x.db"
    assert cfg.server["port"] == 9000


def test_nested_sections_from_yaml_reach_flat_keys(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("api:\n  url: https://orders.example.test\n  retries: 0\nserver:\n  debug: true\n")
    cfg = load_config(str(path))
    assert cfg.ORDERDESK_API_URL == "https://orders.example.test"
    assert cfg.ORDERDESK_API_RETRIES == 0
    assert cfg.DEBUG is True
    # untouched keys keep their defaults
    assert cfg.api["timeout"] == cfg.ORDERDESK_API_TIMEOUT


def test_api_settings_from_toml(tmp_path) -> None:
    path = tmp_path / "config.toml"
    path.write_text('[api]\nurl = "https://orders.example.test"\ntoken = "abc"\ntimeout = 12\nretries = 0\n')
    settings = get_api_settings(str(path))
    assert settings == ApiSettings(base_url="https://orders.example.test", token="abc", timeout=12.0, retries=0)


def test_missing_file_is_ignored(tmp_path) -> None:
    cfg = load_config(str(tmp_path / "absent.json"))
    assert "DATABASE_URL" in cfg


def test_unsupported_format(tmp_path) -> None:
    path = tmp_path / "config.ini"
    path.write_text("[api]\nurl=x\n")
    with pytest.raises(RuntimeError):
        load_config(str(path))


def test_unknown_extension_is_read_as_json(tmp_path) -> None:
    path = tmp_path / "orderdesk.conf"
    path.write_text(json.dumps({"server": {"port": 7700}}))
    cfg = load_config(str(path))
    assert cfg.SERVER_PORT == 7700
