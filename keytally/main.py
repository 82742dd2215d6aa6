from __future__ import annotations

import argparse
import json
import logging
import os
import sys

import uvicorn

from keytally.config_manager import ConfigManager
from keytally.state_store import StateStore
from keytally.sync_engine import SyncEngine


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def _serve(_args: argparse.Namespace) -> int:
    host = os.getenv("KEYTALLY_HOST", "0.0.0.0")
    port = int(os.getenv("KEYTALLY_PORT", "8080"))
    uvicorn.run("keytally.web_admin:app", host=host, port=port, reload=False)
    return 0


def _sync(args: argparse.Namespace) -> int:
    config_manager = ConfigManager(os.getenv("KEYTALLY_CONFIG_PATH", "config.yaml"))
    state_store = StateStore(os.getenv("KEYTALLY_STATE_PATH", "data/state.db"))
    engine = SyncEngine(config_manager, state_store)
    report = engine.run_once(args.token, trigger="cli")
    print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    return 0 if report.ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="keytally", description="Track calendar time by keyword.")
    parser.add_argument("--log-level", default=None, help="Override the configured log level.")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve.set_defaults(handler=_serve)

    sync = subparsers.add_parser("sync", help="Run one tracking sync pass and print the report.")
    sync.add_argument("--token", default=None, help="Google access token; defaults to the configured one.")
    sync.set_defaults(handler=_sync)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    level = args.log_level
    if level is None:
        level = ConfigManager(os.getenv("KEYTALLY_CONFIG_PATH", "config.yaml")).load().logging.level
    configure_logging(level)
    handler = getattr(args, "handler", _serve)
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
