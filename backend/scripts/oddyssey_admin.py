"""Operator entry point: run the engine or fire a single admin trigger."""

import argparse
import json
import sys
from datetime import date
from typing import Any

from loguru import logger

from app.core.config import get_settings
from app.core.errors import EngineError, LedgerError, ProviderError, StartupConfigInvalid
from pipelines.admin import AdminTriggers
from pipelines.context import EngineContext
from pipelines.engine import run_engine


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Oddyssey daily cycle engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the engine until SIGINT/SIGTERM")
    subparsers.add_parser("fetch-fixtures", help="Force-fetch the 7-day fixture window")

    select = subparsers.add_parser("select", help="Force-select matches and open the cycle for a date")
    select.add_argument("--date", type=_parse_date, required=True, help="Cycle date (YYYY-MM-DD, UTC)")
    select.add_argument(
        "--dry-run",
        action="store_true",
        help="Only run the match selector; nothing is written and the ledger is not called",
    )

    fetch_results = subparsers.add_parser("fetch-results", help="Force-fetch results for one cycle")
    fetch_results.add_argument("--cycle", type=int, required=True)

    resolve = subparsers.add_parser("resolve", help="Gate, stage and submit the resolution of one cycle")
    resolve.add_argument("--cycle", type=int, required=True)

    evaluate = subparsers.add_parser("evaluate", help="Evaluate (or verify) the slips of one cycle")
    evaluate.add_argument("--cycle", type=int, required=True)

    cancel = subparsers.add_parser("cancel", help="Cancel an OPEN cycle that has no slips")
    cancel.add_argument("--cycle", type=int, required=True)
    cancel.add_argument("--reason", required=True)

    subparsers.add_parser("index-slips", help="Record SlipPlaced events since the stored block cursor")
    subparsers.add_parser("monitor", help="Run the cycle health check once")
    return parser.parse_args(argv)


def dispatch(triggers: AdminTriggers, args: argparse.Namespace) -> dict[str, Any]:
    if args.command == "fetch-fixtures":
        return triggers.fetch_fixtures()
    if args.command == "select":
        return triggers.select(args.date, dry_run=args.dry_run)
    if args.command == "fetch-results":
        return triggers.fetch_results(args.cycle)
    if args.command == "resolve":
        return triggers.resolve(args.cycle)
    if args.command == "evaluate":
        return triggers.evaluate(args.cycle)
    if args.command == "cancel":
        return triggers.cancel(args.cycle, args.reason)
    if args.command == "index-slips":
        return triggers.index_slips()
    if args.command == "monitor":
        return triggers.monitor()
    raise ValueError(f"unknown command {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()

    try:
        if args.command == "run":
            run_engine(EngineContext.build(settings))
            return 0
        settings.validate_runtime(require_ledger=False, require_provider=False)
        context = EngineContext.build(settings)
    except StartupConfigInvalid as exc:
        logger.error("Invalid configuration: {}", exc)
        return 2

    try:
        result = dispatch(AdminTriggers(context), args)
    except (EngineError, ProviderError, LedgerError) as exc:
        logger.error("{} failed: {} ({})", args.command, exc.kind.value, exc)
        print(json.dumps({"error": exc.kind.value, "message": str(exc)}, indent=2))
        return 1
    finally:
        context.close()

    print(json.dumps(result, indent=2, sort_keys=True, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
