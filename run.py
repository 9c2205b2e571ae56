from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from orderdesk.app import create_app

DEFAULT_CONFIG = ROOT / "config.json"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Order Desk local API")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG if DEFAULT_CONFIG.exists() else None,
        help=(
            "Optional path to a JSON/YAML/TOML config file (defaults to config.json when "
            "present, otherwise environment variables and built-in defaults)"
        ),
    )
    parser.add_argument("--host", default=None, help="Host interface to bind (default: SERVER_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (default: SERVER_PORT)")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable Flask debug mode (includes auto-reload)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level name (default: LOG_LEVEL or INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level_name: str | None) -> None:
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    config_arg: Path | None = args.config
    config_path = str(config_arg) if config_arg else None

    app = create_app(config_path)
    configure_logging(args.log_level or app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL"))

    host = args.host or app.config.get("SERVER_HOST", "0.0.0.0")
    port = args.port or int(app.config.get("SERVER_PORT", 7600))
    debug = args.debug or bool(app.config.get("DEBUG"))
    logging.getLogger(__name__).info("Starting Order Desk API on %s:%s", host, port)
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    main()
