"""Command-line entry point wiring config, session and operations together."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .config import load_config
from .connections import ConnectionManager
from .errors import ConfigurationError
from .models import ExportFormat
from .operations import OperationResult, Operations

LOG = logging.getLogger(__name__)


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pgstream", description=__doc__)
    parser.add_argument(
        "--read-only",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Run every statement inside a read-only transaction (default: on)",
    )
    parser.add_argument("--pool-size", type=int, default=None, help="Connection pool size")
    parser.add_argument("--auto-connect", action="store_true", help="Connect before running 'info'")
    parser.add_argument("--log-level", default="WARNING", help="Logging level written to stderr")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("info", help="Print service and connection status")

    query = commands.add_parser("query", help="Run a statement and print its rows")
    query.add_argument("sql")
    query.add_argument("params", nargs="*", help="Positional parameters ($1, $2, ...)")

    export = commands.add_parser("export", help="Stream a statement's rows into a file")
    export.add_argument("sql")
    export.add_argument("params", nargs="*", help="Positional parameters ($1, $2, ...)")
    export.add_argument("--output", "-o", default=None, help="Destination path (generated if omitted)")
    export.add_argument(
        "--format",
        choices=[fmt.value for fmt in ExportFormat],
        default=ExportFormat.JSONL.value,
    )
    export.add_argument(
        "--force",
        action="store_true",
        help="Buffer statements that cannot be streamed instead of failing",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> OperationResult:
    config = load_config()
    if args.pool_size is not None:
        config = config.model_copy(update={"pool_size": args.pool_size})
    manager = ConnectionManager(config)
    manager.set_readonly_mode(args.read_only)
    operations = Operations(manager, config=config)
    try:
        if args.command == "info":
            if args.auto_connect:
                await operations.connect()
            return await operations.service_info()
        connected = await operations.connect()
        if not connected.success:
            return connected
        if args.command == "query":
            return await operations.query(args.sql, args.params)
        return await operations.export(
            args.sql,
            args.params,
            file_path=args.output,
            format=args.format,
            force_save_to_file=args.force,
        )
    finally:
        await manager.shutdown()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        result = asyncio.run(run(args))
    except ConfigurationError as exc:
        result = OperationResult.failure(exc)
    print(result.to_json())
    return 0 if result.success else 1


__all__ = ["main", "parse_args", "run"]
