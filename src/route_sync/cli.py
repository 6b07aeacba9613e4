"""Command-line entry point for route-sync."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Mapping, Sequence

from .config import load_config
from .ledger import LedgerIOError, ProgressLedger
from .orchestrator import format_clock
from .version import APP_VERSION

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the route-sync CLI."""

    # Accepted before or after the subcommand; SUPPRESS keeps a subcommand default
    # from overwriting a value given at the top level.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--log-level",
        default=argparse.SUPPRESS,
        help="Logging level (default: INFO).",
    )

    parser = argparse.ArgumentParser(
        prog="route-sync",
        description="Relay recorded route footage to a Telegram chat in size-bounded chunks.",
        parents=[common],
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.set_defaults(log_level="INFO")
    subcommands = parser.add_subparsers(dest="command", required=True)

    serve = subcommands.add_parser(
        "serve", help="Run the pipeline and the operator API.", parents=[common]
    )
    serve.add_argument("--host", default="0.0.0.0", help="Interface to bind (default: 0.0.0.0).")
    serve.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000).")

    status = subcommands.add_parser(
        "status", help="Print per-route progress from the ledger.", parents=[common]
    )
    status.add_argument(
        "--json",
        action="store_true",
        help="Emit the raw ledger document as JSON for scripting.",
    )
    return parser


def _format_camera(camera: str, entry: Mapping[str, Any]) -> str:
    telegram = entry.get("telegram")
    uploaded = telegram.get("uploaded_until") if isinstance(telegram, Mapping) else None
    parts = [
        f"downloaded {entry.get('downloaded_at') or '-'}",
        f"processed {entry.get('processed_at') or '-'}",
        f"uploaded {format_clock(uploaded) if isinstance(uploaded, (int, float)) else '-'}",
    ]
    return f"   {camera}: " + ", ".join(parts)


def print_status(document: Mapping[str, Any]) -> None:
    routes = document.get("routes", {})
    if not routes:
        print("No routes recorded.")
        return
    for route_id in sorted(routes):
        route = routes[route_id]
        print(route_id)
        cameras = route.get("cameras", {}) if isinstance(route, Mapping) else {}
        if not cameras:
            print("   -")
        for camera in sorted(cameras):
            entry = cameras[camera]
            if isinstance(entry, Mapping):
                print(_format_camera(camera, entry))


def run(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=str(args.log_level).upper(), format=LOG_FORMAT)

    try:
        config = load_config()
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    if args.command == "status":
        try:
            document = ProgressLedger(config.ledger_path).snapshot()
        except LedgerIOError as exc:
            print(str(exc), file=sys.stderr)
            return 1
        if args.json:
            print(json.dumps(document, indent=2, sort_keys=True))
        else:
            print_status(document)
        return 0

    import uvicorn

    from .app import create_app

    uvicorn.run(
        create_app(config),
        host=args.host,
        port=args.port,
        log_level=str(args.log_level).lower(),
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``route-sync`` console script."""

    return run(argv)


__all__ = ["build_parser", "main", "print_status", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
