from __future__ import annotations

import argparse
import dataclasses
import logging
import sys

from aiohttp import web

from .api import create_app
from .config import load_config_from_env

LOG_LEVELS = ("debug", "info", "warning", "error")


def _run_serve(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config_from_env()
    except ValueError as exc:
        print(f"campuscash: {exc}", file=sys.stderr)
        return 2
    overrides = {}
    if args.ping_interval is not None:
        overrides["ping_interval_s"] = args.ping_interval
    if args.db is not None:
        overrides["db_path"] = args.db
    config = dataclasses.replace(config, **overrides)
    app = create_app(config=config)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="campuscash", description="CampusCash messaging service")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the messaging HTTP/websocket server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=None,
        help="Seconds between websocket heartbeat pings (0 disables)",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database; in-memory if omitted")
    serve_parser.add_argument("--log-level", choices=LOG_LEVELS, default="info", help="Logging verbosity")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return _run_serve(args)
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
