"""
Command-line entry point for the Recurring Ledger scheduler.

    python -m app.main --init-db          create tables and seed currencies
    python -m app.main --once             run a single tick and print the report
    python -m app.main --once --as-of 2025-03-01T00:00:00Z
    python -m app.main                    tick forever until SIGINT/SIGTERM

Configuration comes from the environment / .env (see recurring_ledger.config).
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime
from typing import Optional

import structlog

from recurring_ledger.config import get_settings, validate_all_settings
from recurring_ledger.models.scheduling import RunOutcome
from recurring_ledger.scheduler import AppComponents, create_app_components
from recurring_ledger.services.storage import init_db


logger = structlog.get_logger()


def _parse_instant(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not an ISO-8601 timestamp: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recurring-ledger",
        description="Materialize due recurring transactions into the ledger.",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="create missing tables and seed the default currencies, then continue",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single tick and exit",
    )
    parser.add_argument(
        "--as-of",
        type=_parse_instant,
        default=None,
        help="logical 'now' for --once (ISO-8601, naive means UTC)",
    )
    parser.add_argument(
        "--no-audit-storage",
        action="store_true",
        help="only log audit events locally",
    )
    return parser


async def _run_forever(components: AppComponents) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, components.scheduler.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still interrupts
            pass
    await components.scheduler.run_forever()


async def run(args: argparse.Namespace) -> int:
    components = create_app_components(use_audit_storage=not args.no_audit_storage)

    if args.init_db:
        init_db(components.engine)

    try:
        if args.once:
            report = await components.scheduler.tick(args.as_of)
            print(json.dumps(report.summary(), indent=2))
            return 0 if all(r.outcome != RunOutcome.FAILED for r in report.results) else 1

        await _run_forever(components)
        return 0
    finally:
        components.engine.dispose()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=logging.INFO)

    checks = validate_all_settings()
    invalid = {name: value for name, value in checks.items() if name.endswith("_error")}
    if invalid:
        for name, error in invalid.items():
            logger.error("invalid_settings", section=name.removesuffix("_error"), error=error)
        return 2

    logging.getLogger().setLevel(get_settings().app.log_level)

    if args.as_of is not None and not args.once:
        build_parser().error("--as-of requires --once")

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
