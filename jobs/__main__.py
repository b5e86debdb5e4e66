"""Command-line entrypoint for the P2P price monitor."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys

from jobs.config import (
    DEFAULT_PAYMENT_METHODS,
    PAYMENT_METHODS,
    PaymentMethod,
    get_payment_method,
    load_settings,
    parse_payment_methods,
)
from jobs.watch import main as run_watch
from pipelines.acquire import acquire_price
from pipelines.errors import InvalidParameter, PriceAcquisitionError
from pipelines.model import TradeDirection
from storage.db import PriceHistoryStore, connect, storage_key_for
from storage.exports import export_daily_prices

logger = logging.getLogger(__name__)


def _format_payment_method(method: PaymentMethod) -> str:
    return f"{method.key}: {method.label}"


def _resolve_payment_methods_from_cli(raw: str | None) -> tuple[str, ...]:
    if raw is None:
        return DEFAULT_PAYMENT_METHODS
    keys = parse_payment_methods(raw)
    unknown = [key for key in keys if get_payment_method(key) is None]
    if unknown:
        # the upstream accepts keys outside the catalogue, so only warn
        logger.warning("Unknown payment methods: %s", ", ".join(unknown))
    return keys


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--trade-direction",
        default=TradeDirection.BUY.value,
        help="BUY or SELL (default BUY)",
    )
    parser.add_argument(
        "--log-level",
        help="Override LOG_LEVEL for this invocation (e.g. DEBUG, INFO)",
    )


def _history(direction: TradeDirection, fmt: str, output: str | None) -> int:
    settings = load_settings()
    conn = connect(settings.db_path)
    try:
        store = PriceHistoryStore(
            conn,
            direction,
            storage_key=storage_key_for(direction, asset=settings.asset, fiat=settings.fiat),
            retention_days=settings.retention_days,
        )
        prices = store.load()
        if fmt == "json":
            print(json.dumps([entry.model_dump() for entry in prices], indent=2))
            return 0
        if not output:
            raise SystemExit(f"--output is required for format '{fmt}'")
        dest = export_daily_prices(conn, prices, output, fmt=fmt)
        print(f"Wrote {len(prices)} daily prices to {dest}")
        return 0
    finally:
        conn.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="P2P price monitor")
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser(
        "watch", help="Poll the price on a fixed cadence and keep the local history fresh"
    )
    _add_common_arguments(watch_parser)
    watch_parser.add_argument(
        "--payment-methods",
        help="Comma-separated payment method keys (default Banesco,PagoMovil; '' for any)",
    )
    watch_parser.add_argument(
        "--interval", type=float, help="Override P2P_POLL_INTERVAL_SECONDS for this run"
    )
    watch_parser.add_argument(
        "--max-cycles", type=int, help="Stop after reporting this many poll periods"
    )

    fetch_parser = subparsers.add_parser("fetch-once", help="Acquire one aggregated price")
    _add_common_arguments(fetch_parser)
    fetch_parser.add_argument("--payment-methods", help="Comma-separated payment method keys")

    history_parser = subparsers.add_parser("history", help="Show or export the daily series")
    _add_common_arguments(history_parser)
    history_parser.add_argument("--format", choices=("json", "csv", "parquet"), default="json")
    history_parser.add_argument("--output", help="Destination file for csv/parquet exports")

    subparsers.add_parser("list-payment-methods", help="Show known payment method keys")

    args = parser.parse_args(argv)

    if args.command == "list-payment-methods":
        for method in PAYMENT_METHODS:
            print(_format_payment_method(method))
        return 0

    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    try:
        direction = TradeDirection.parse(args.trade_direction)
    except InvalidParameter as exc:
        parser.error(str(exc))

    if args.command == "watch":
        if args.interval is not None:
            os.environ["P2P_POLL_INTERVAL_SECONDS"] = str(args.interval)
        methods = _resolve_payment_methods_from_cli(args.payment_methods)
        return run_watch(direction, methods, max_cycles=args.max_cycles)

    if args.command == "fetch-once":
        methods = parse_payment_methods(args.payment_methods)
        try:
            point = asyncio.run(acquire_price(direction, methods))
        except PriceAcquisitionError as exc:
            print(f"No price available: {exc}", file=sys.stderr)
            return 1
        print(json.dumps(point.to_wire()))
        return 0

    if args.command == "history":
        return _history(direction, args.format, args.output)

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
