"""Command line entry point running one bounded billing batch.

Usage::

    python -m vmconsole.jobs snapshots [--date YYYY-MM-DD]
    python -m vmconsole.jobs invoices [--date YYYY-MM-DD]
    python -m vmconsole.jobs subscriptions [--date YYYY-MM-DD]
"""
from __future__ import annotations

import argparse
import logging
import os
from datetime import date
from typing import Optional, Sequence

from dotenv import load_dotenv

from .app.schemas.billing import BatchOutcome, BatchRunResult
from .app.services.billing import BillingOperations, build_billing_operations
from .config import load_billing_config
from .db import create_connection

logger = logging.getLogger(__name__)

JOB_COMMANDS = ("snapshots", "invoices", "subscriptions")


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, expected YYYY-MM-DD") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmconsole.jobs", description="Run a billing batch job once.")
    parser.add_argument("job", choices=JOB_COMMANDS)
    parser.add_argument("--date", dest="run_date", type=_parse_date, default=None, help="Run as of this day")
    return parser


def run_job(operations: BillingOperations, job: str, run_date: Optional[date] = None) -> BatchRunResult:
    if job == "snapshots":
        return operations.trigger_daily_snapshots(run_date)
    if job == "invoices":
        return operations.trigger_monthly_invoices(run_date)
    if job == "subscriptions":
        return operations.trigger_subscription_charges(run_date)
    raise ValueError(f"Unknown job: {job}")


def _build_operations() -> BillingOperations:
    config = load_billing_config()
    return build_billing_operations(config, conn_factory=lambda: create_connection(config.database))


def main(argv: Optional[Sequence[str]] = None, *, operations: Optional[BillingOperations] = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    args = build_parser().parse_args(argv)

    try:
        result = run_job(operations or _build_operations(), args.job, args.run_date)
    except Exception:
        logger.exception("Billing job %s did not complete", args.job)
        return 1

    for message in result.errors:
        logger.warning(message)
    print(f"{result.job}: {result.outcome.value} processed={result.processed} failed={result.failed}")
    return 0 if result.succeeded or result.outcome == BatchOutcome.ALREADY_RUNNING else 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
