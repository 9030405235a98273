"""CLI entry point for redline."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
import time
from typing import Sequence

from redline.client import Client
from redline.config.loader import DEFAULT_CONFIG_PATH, apply_overrides, initialize_config, load_config
from redline.config.schema import AppConfig
from redline.console import Console
from redline.core.errors import ExitCode, RedlineError
from redline.core.logging import configure_logging
from redline.protocol.render import render
from redline.services.base import parse_endpoint
from redline.services.pool import ConnectionPool


def _add_connection_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--host", type=str, default=None)
    parser.add_argument("-p", "--port", type=int, default=None)
    parser.add_argument("-a", "--auth", type=str, default=None, help="Password sent with AUTH after connecting")
    parser.add_argument("-t", "--keepalive", type=float, default=None, help="Keepalive interval in seconds, 0 disables")
    parser.add_argument("-d", "--db", type=int, default=None, help="Database index selected after connecting")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="redline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create starter config")
    init_parser.add_argument("--config", type=Path, default=Path("./config/redline.yml"))
    init_parser.add_argument("--force", action="store_true")

    exec_parser = subparsers.add_parser("exec", help="Run one command and print the response")
    _add_connection_arguments(exec_parser)
    exec_parser.add_argument(
        "--raw",
        action="store_true",
        help="Print every response, including bare OK/PONG acknowledgements",
    )
    exec_parser.add_argument("words", nargs="+", metavar="COMMAND")

    console_parser = subparsers.add_parser("console", help="Interactive console")
    _add_connection_arguments(console_parser)

    pool_parser = subparsers.add_parser("pool", help="Serve a local endpoint backed by a connection pool")
    _add_connection_arguments(pool_parser)
    pool_parser.add_argument("-n", "--pool-size", type=int, default=None)
    pool_parser.add_argument(
        "--once",
        action="store_true",
        help="Start the pool, print status, then stop immediately",
    )
    pool_parser.add_argument(
        "endpoint",
        nargs="?",
        default=None,
        help="TCP port on 127.0.0.1, or a Unix socket path",
    )
    return parser


def _load(args: argparse.Namespace) -> AppConfig:
    config = load_config(args.config)
    config = apply_overrides(
        config,
        "connection",
        host=args.host,
        port=args.port,
        auth=args.auth,
        database=args.db,
        keepalive_seconds=args.keepalive,
    )
    configure_logging(config.logging)
    return config


def _stdout_is_tty() -> bool:
    isatty = getattr(sys.stdout, "isatty", None)
    return bool(isatty and isatty())


def cmd_init(config_path: Path, force: bool) -> int:
    initialize_config(config_path, force=force)
    print(f"wrote config: {config_path}")
    return 0


def cmd_exec(config: AppConfig, command: str, raw: bool = False) -> int:
    interactive = _stdout_is_tty()
    client = Client(config.connection)
    try:
        client.connect()
        reply = client.execute(command)
    except RedlineError as exc:
        print(str(exc), file=sys.stderr)
        return int(exc.exit_code)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return int(ExitCode.SERVER_ERROR)
    finally:
        client.close()
    code = render(
        reply,
        sys.stdout,
        sys.stderr,
        suppress_acks=not raw and not interactive,
        pretty=interactive and not raw,
    )
    return int(code)


def cmd_console(config: AppConfig) -> int:
    client = Client(config.connection)
    try:
        client.connect()
    except RedlineError as exc:
        # the console retries on the first command
        print(str(exc), file=sys.stderr)
    console = Console(client)
    try:
        return console.run()
    finally:
        client.close()


def cmd_pool(config: AppConfig, endpoint: str | None, once: bool = False) -> int:
    target = endpoint or config.pool.listen
    if not target:
        print("pool needs an ENDPOINT argument or pool.listen in the config", file=sys.stderr)
        return 2
    pool = ConnectionPool(config.connection, config.pool)
    try:
        pool.start(parse_endpoint(target))
    except OSError as exc:
        print(f"cannot listen on {target}: {exc}", file=sys.stderr)
        return 1
    try:
        print(json.dumps(pool.status(), indent=2))
        if once:
            return 0
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        return 0
    finally:
        pool.stop()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args.config, args.force)

    try:
        config = _load(args)
        if args.command == "pool" and args.pool_size is not None:
            config = apply_overrides(config, "pool", size=args.pool_size)
    except (FileNotFoundError, ValueError) as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2

    if args.command == "exec":
        return cmd_exec(config, " ".join(args.words), raw=args.raw)
    if args.command == "console":
        return cmd_console(config)
    if args.command == "pool":
        try:
            return cmd_pool(config, args.endpoint, once=args.once)
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 2
    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
