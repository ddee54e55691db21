"""Command line entry point.

    psquery broker [--frontend ENDPOINT] [--backend ENDPOINT]
    psquery query SERVICE EVENT [JSON] [--timeout MS] [--transport NAME]
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from . import config
from . import json
from .broker import Broker
from .errors import QueryError
from .session import Bus
from .transport import backends, create


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="psquery")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging; repeat for debug output.")
    sub = parser.add_subparsers(dest="command", required=True)

    broker_p = sub.add_parser("broker", help="Run the ZeroMQ forwarding broker.")
    broker_p.add_argument("--frontend", help="Endpoint publishers connect to.")
    broker_p.add_argument("--backend", help="Endpoint subscribers connect to.")

    query_p = sub.add_parser("query", help="Issue one query and print the reply.")
    query_p.add_argument("service")
    query_p.add_argument("event")
    query_p.add_argument("payload", nargs="?", default="null", help="JSON payload (default: null).")
    query_p.add_argument("--timeout", type=float, help="Timeout in milliseconds.")
    query_p.add_argument("--transport", choices=backends, help="Transport backend.")

    return parser


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = getattr(logging, config.settings().log_level, logging.WARNING)

    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def run_broker(args: argparse.Namespace) -> int:
    broker = Broker(args.frontend, args.backend)
    broker.start()

    try:
        while broker.thread.is_alive():
            broker.thread.join(1)
    except KeyboardInterrupt:
        pass
    finally:
        broker.stop()

    return 0


def run_query(args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as exc:
        print(f"psquery: payload is not valid JSON: {exc}", file=sys.stderr)
        return 2

    bus = Bus(create(args.transport), timeout=args.timeout)

    try:
        result = bus.query(args.service, args.event, payload)
    except QueryError as exc:
        print(f"psquery: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1
    finally:
        bus.close()

    print(json.dumps(result).decode())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    if args.command == "broker":
        return run_broker(args)
    if args.command == "query":
        return run_query(args)

    raise RuntimeError(f"Unknown command: {args.command}")
