from __future__ import annotations

import os
import json
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class AttrDict(dict):
    """Dict with attribute access (x.y)."""
    def __getattr__(self, name: str):
        try:
            return self[name]
        except KeyError as e:
            raise AttributeError(name) from e
    def __setattr__(self, name: str, value: Any) -> None:
        self[name] = value
    def __delattr__(self, name: str) -> None:
        del self[name]


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


# ------------------------------------------------------------------
# DEFAULT_CONFIG carries flat UPPERCASE keys (Flask app.config) and
# nested sections; _ensure_compat_keys keeps the two in step.
# ------------------------------------------------------------------
DEFAULT_CONFIG: AttrDict = AttrDict({
    # Flat ---------------------------------
    "ORDERDESK_API_URL": os.getenv("ORDERDESK_API_URL", "http://localhost:8000"),
    "ORDERDESK_API_TOKEN": os.getenv("ORDERDESK_API_TOKEN"),
    "ORDERDESK_API_TIMEOUT": float(os.getenv("ORDERDESK_API_TIMEOUT", "30")),
    "ORDERDESK_API_RETRIES": int(os.getenv("ORDERDESK_API_RETRIES", "3")),
    "DATABASE_URL": os.getenv("DATABASE_URL", "sqlite:///./data/orderdesk.db"),
    "DATABASE_ECHO": _env_flag("DATABASE_ECHO", "false"),
    "SERVER_HOST": os.getenv("SERVER_HOST", "0.0.0.0"),
    "SERVER_PORT": int(os.getenv("SERVER_PORT", "7600")),
    "DEBUG": _env_flag("DEBUG", "false"),
    "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
    # Nested -------------------------------
    "api": {
        "url": os.getenv("ORDERDESK_API_URL", "http://localhost:8000"),
        "token": os.getenv("ORDERDESK_API_TOKEN"),
        "timeout": float(os.getenv("ORDERDESK_API_TIMEOUT", "30")),
        "retries": int(os.getenv("ORDERDESK_API_RETRIES", "3")),
    },
    "server": {
        "host": os.getenv("SERVER_HOST", "0.0.0.0"),
        "port": int(os.getenv("SERVER_PORT", "7600")),
        "debug": _env_flag("DEBUG", "false"),
    },
    "database": {
        "url": os.getenv("DATABASE_URL", "sqlite:///./data/orderdesk.db"),
        "echo": _env_flag("DATABASE_ECHO", "false"),
    },
})


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if ext == ".json":
        return json.loads(text)
    if ext in {".yml", ".yaml"}:
        return yaml.safe_load(text) or {}
    if ext == ".toml":
        return tomllib.loads(text)
    # Fallback: try JSON
    try:
        return json.loads(text)
    except ValueError as e:
        raise RuntimeError(f"Unsupported config format for {path}. {e}") from e


def _deep_merge(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


_SECTION_KEYS = {
    "api": {
        "url": "ORDERDESK_API_URL",
        "token": "ORDERDESK_API_TOKEN",
        "timeout": "ORDERDESK_API_TIMEOUT",
        "retries": "ORDERDESK_API_RETRIES",
    },
    "database": {"url": "DATABASE_URL", "echo": "DATABASE_ECHO"},
    "server": {"host": "SERVER_HOST", "port": "SERVER_PORT", "debug": "DEBUG"},
}


def _ensure_compat_keys(cfg: Dict[str, Any], overridden: Optional[Dict[str, Any]] = None) -> None:
    """Keep flat and nested keys in sync.

    A value set by the config file wins over the environment default on the
    other side; ``overridden`` is the file's raw content.
    """
    overridden = overridden or {}
    for section, keys in _SECTION_KEYS.items():
        nested = cfg.setdefault(section, {})
        from_file = overridden.get(section) or {}
        for nested_key, flat_key in keys.items():
            if nested_key in from_file:
                cfg[flat_key] = nested[nested_key]
            elif flat_key in overridden:
                nested[nested_key] = cfg[flat_key]
            else:
                cfg.setdefault(flat_key, nested.get(nested_key))
                nested.setdefault(nested_key, cfg.get(flat_key))


def load_config(config_path: Optional[str] = None) -> AttrDict:
    """Config used by run.py, the app factory and the API client.
    - Start from DEFAULT_CONFIG
    - If a config file is provided, deep-merge it on top
    - Ensure both flat and nested keys are present
    - Return an AttrDict for dict+attribute access
    """
    base = {k: (v.copy() if isinstance(v, dict) else v) for k, v in DEFAULT_CONFIG.items()}
    from_file: Dict[str, Any] = {}
    if config_path:
        p = Path(config_path)
        if p.exists():
            from_file = _read_config_file(p) or {}
            _deep_merge(base, from_file)
    _ensure_compat_keys(base, from_file)
    return AttrDict(base)


@dataclass(frozen=True)
class ApiSettings:
    base_url: str = "http://localhost:8000"
    token: Optional[str] = None
    timeout: float = 30.0
    retries: int = 3
    backoff: float = 0.5


def get_api_settings(config_path: Optional[str] = None) -> ApiSettings:
    cfg = load_config(config_path)
    api = cfg.get("api", {})
    return ApiSettings(
        base_url=str(api.get("url") or "http://localhost:8000"),
        token=api.get("token") or None,
        timeout=float(api.get("timeout") or 30.0),
        retries=int(api.get("retries") if api.get("retries") is not None else 3),
    )
