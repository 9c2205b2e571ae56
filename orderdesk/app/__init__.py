from __future__ import annotations

from typing import Optional

from flask import Flask

from .client import OrderApiClient


def create_app(config_path: str | None = None, client: Optional[OrderApiClient] = None) -> Flask:
    """Application factory used by tests and runtime."""
    from .api import CLIENT_EXTENSION, register_api
    from .config import ApiSettings, load_config
    from .database import init_db

    config = load_config(config_path)
    app = Flask(__name__, static_folder=None)
    app.config.update(config)

    if client is None:
        api_cfg = config.get("api", {})
        client = OrderApiClient(
            ApiSettings(
                base_url=str(api_cfg.get("url")),
                token=api_cfg.get("token") or None,
                timeout=float(api_cfg.get("timeout") or 30.0),
                retries=int(api_cfg.get("retries") or 0),
            )
        )
    app.extensions[CLIENT_EXTENSION] = client

    init_db(app)
    register_api(app)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
