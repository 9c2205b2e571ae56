from __future__ import annotations

import pytest
from flask import Flask

import run


def test_parse_args_defaults(monkeypatch):
    monkeypatch.setattr(run, "DEFAULT_CONFIG", run.ROOT / "missing-config.json")
    args = run.parse_args([])
    assert args.host is None
    assert args.port is None
    assert args.debug is False
    assert args.log_level is None
    assert args.config is None


def test_main_uses_arguments_over_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text("{}")

    created_app = Flask("test_app")
    created_app.config.update(SERVER_HOST="127.0.0.1", SERVER_PORT=7600, DEBUG=False)
    received = {}

    def fake_create_app(config: str | None):
        received["config"] = config
        return created_app

    def fake_run(self, host, port, debug):
        received["run"] = {"host": host, "port": port, "debug": debug}

    monkeypatch.setattr(run, "create_app", fake_create_app)
    monkeypatch.setattr(Flask, "run", fake_run, raising=False)

    run.main(["--config", str(config_path), "--host", "0.0.0.0", "--port", "6000", "--debug"])

    assert received["config"] == str(config_path)
    assert received["run"] == {"host": "0.0.0.0", "port": 6000, "debug": True}


def test_main_falls_back_to_config(monkeypatch):
    created_app = Flask("test_app")
    created_app.config.update(SERVER_HOST="127.0.0.1", SERVER_PORT="7601", DEBUG=True)
    received = {}

    monkeypatch.setattr(run, "create_app", lambda config: created_app)
    monkeypatch.setattr(
        Flask,
        "run",
        lambda self, host, port, debug: received.update(host=host, port=port, debug=debug),
        raising=False,
    )

    run.main([])

    assert received == {"host": "127.0.0.1", "port": 7601, "debug": True}


@pytest.mark.parametrize("name, expected", [("debug", 10), ("nonsense", 20), (None, 20)])
def test_configure_logging_levels(monkeypatch, name, expected):
    seen = {}
    monkeypatch.setattr(run.logging, "basicConfig", lambda **kwargs: seen.update(kwargs))
    run.configure_logging(name)
    assert seen["level"] == expected
