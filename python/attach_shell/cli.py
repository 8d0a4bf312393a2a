"""attach-shell CLI entry point."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from pathlib import Path
from typing import List

from .client import ClientConfig, ShellClient
from .discovery import DiscoveryError
from .server import ShellConfig, disable, listen

LOG = logging.getLogger("attach_shell.cli")

DEFAULT_SHELL_DIR = os.environ.get("ATTACH_SHELL_DIR", ".attach-shell")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Attach a Python shell to a running process")
    parser.add_argument("--dir", type=Path, default=Path(DEFAULT_SHELL_DIR), help="Shell directory holding info.json")
    parser.add_argument("--log-level", default=os.environ.get("ATTACH_SHELL_LOG", "INFO"), help="Logging level (default INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run a demo host process with the shell enabled")
    serve.add_argument("--host", default=ShellConfig.host, help="Listen host")
    serve.add_argument("--handshake-timeout", type=float, default=ShellConfig.handshake_timeout, help="Handshake deadline (seconds)")
    serve.add_argument("--no-history", action="store_true", help="Do not persist shell history")

    attach = sub.add_parser("attach", help="Open an interactive shell")
    attach.add_argument("--retries", type=int, default=ClientConfig.max_retries, help="Connect attempts before giving up")

    evaluate = sub.add_parser("eval", help="Evaluate one command and print the JSON reply")
    evaluate.add_argument("source", help="Python source to evaluate")
    evaluate.add_argument("--filename", help="Filename reported in tracebacks")

    sub.add_parser("disable", help="Mark the shell as disabled")
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    if args.command == "serve":
        return _serve(args)
    if args.command == "attach":
        client = ShellClient(args.dir, ClientConfig(max_retries=args.retries))
        try:
            return client.attach()
        except KeyboardInterrupt:
            print()
            return 0
    if args.command == "eval":
        return _evaluate(args)
    if args.command == "disable":
        disable(args.dir)
        return 0
    parser.error(f"unknown command {args.command}")
    return 2


def _serve(args: argparse.Namespace) -> int:
    config = ShellConfig(
        host=args.host,
        handshake_timeout=args.handshake_timeout,
        persist_history=not args.no_history,
    )
    server = listen(args.dir, config=config)
    print(f"[attach-shell] listening on {config.host}:{server.port} (record {args.dir / 'info.json'})")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        print("\n[attach-shell] shutting down")
    finally:
        server.close()
        disable(args.dir)
    return 0


def _evaluate(args: argparse.Namespace) -> int:
    client = ShellClient(args.dir)
    try:
        reply = client.evaluate_and_exit(args.source, filename=args.filename)
    except (DiscoveryError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(reply))
    return int(reply.get("code", 0) or 0)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
