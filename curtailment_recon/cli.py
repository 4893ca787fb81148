"""
Curtailment reconciler command line.

Usage:
    # Completeness of the calculation store
    curtailment-recon status
    curtailment-recon status --date 2025-03-31

    # Reconcile one date (re-fetching its records first)
    curtailment-recon reconcile 2025-03-31 --reingest

    # Reconcile a range, resuming the previous run for the same range
    curtailment-recon range 2025-01-01 2025-03-31 --batch-size 5

    # Only the dates with missing calculations
    curtailment-recon range 2025-01-01 2025-03-31 --only-missing

    # Recompute one farm in one settlement period
    curtailment-recon spot-fix 2025-04-03 12 T_NNGAO-2 --refetch

    # Compare sampled periods against the settlement API
    curtailment-recon verify 2025-05-08
"""

import argparse
import asyncio
import sys
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import structlog

from curtailment_recon import __version__
from curtailment_recon.core.config import get_settings
from curtailment_recon.core.database import close_db, get_session_factory, init_db
from curtailment_recon.core.exceptions import ConfigurationError, ReconcilerError
from curtailment_recon.core.logging import configure_logging
from curtailment_recon.schemas.reconciliation import (
    DateResult,
    RangeReport,
    ReconciliationStatus,
    SpotFixResult,
    VerificationResult,
)
from curtailment_recon.services.difficulty_provider import (
    DatabaseDifficultyProvider,
    StaticDifficultyProvider,
    set_difficulty,
)
from curtailment_recon.services.elexon_client import ElexonClient
from curtailment_recon.services.reconciliation import ReconciliationService

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_FATAL = 2


def parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def parse_decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Invalid number '{value}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="curtailment-recon",
        description=f"{get_settings().PROJECT_NAME}: reconcile curtailment records, bitcoin calculations and summaries",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", type=str, default=None, help="Override LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")

    commands = parser.add_subparsers(dest="command", required=True)

    status = commands.add_parser("status", help="Show calculation completeness")
    status.add_argument("--date", type=parse_date, help="Restrict to one date (YYYY-MM-DD)")

    reconcile = commands.add_parser("reconcile", help="Reconcile a single date")
    reconcile.add_argument("date", type=parse_date, help="Settlement date (YYYY-MM-DD)")
    reconcile.add_argument("--force", action="store_true", help="Recompute every calculation")
    reconcile.add_argument("--reingest", action="store_true", help="Re-fetch records from the API first")
    reconcile.add_argument(
        "--difficulty",
        type=parse_decimal,
        help="Use this difficulty instead of the stored one",
    )

    range_ = commands.add_parser("range", help="Reconcile a date range")
    range_.add_argument("start", type=parse_date, help="Start date (YYYY-MM-DD)")
    range_.add_argument("end", type=parse_date, help="End date (YYYY-MM-DD)")
    range_.add_argument("--batch-size", type=int, default=None, help="Dates processed concurrently")
    range_.add_argument("--force", action="store_true", help="Recompute every calculation")
    range_.add_argument("--reingest", action="store_true", help="Re-fetch records from the API first")
    range_.add_argument("--no-resume", action="store_true", help="Ignore the previous run's checkpoint")
    range_.add_argument(
        "--only-missing",
        action="store_true",
        help="Only dates whose calculations are incomplete",
    )

    spot_fix = commands.add_parser("spot-fix", help="Recompute one (date, period, farm) key")
    spot_fix.add_argument("date", type=parse_date, help="Settlement date (YYYY-MM-DD)")
    spot_fix.add_argument("period", type=int, help="Settlement period")
    spot_fix.add_argument("farm_id", type=str, help="BM Unit ID, e.g. T_NNGAO-2")
    spot_fix.add_argument("--refetch", action="store_true", help="Re-fetch the period from the API first")

    verify = commands.add_parser("verify", help="Compare sampled periods against the API")
    verify.add_argument("date", type=parse_date, help="Settlement date (YYYY-MM-DD)")

    set_diff = commands.add_parser("set-difficulty", help="Record the network difficulty from a date")
    set_diff.add_argument("date", type=parse_date, help="Date the difficulty takes effect")
    set_diff.add_argument("value", type=parse_decimal, help="Network difficulty")

    commands.add_parser("init-db", help="Create all tables")

    return parser


def print_status(status: ReconciliationStatus) -> None:
    print("\n" + "=" * 60)
    print("RECONCILIATION STATUS" + (f" {status.date}" if status.date else ""))
    print("=" * 60)
    print(f"Eligible records:      {status.total_records:,}")
    print(f"Expected calculations: {status.expected_calculations:,}")
    print(f"Calculations:          {status.total_calculations:,}")
    print(f"Missing:               {status.missing_count:,}")
    print(f"Completion:            {status.completion_percentage:.2f}%")
    if status.by_model:
        print("-" * 60)
        for model, count in sorted(status.by_model.items()):
            print(f"  {model:<20} {count:,}")
    print("=" * 60)


def print_date_result(result: DateResult) -> None:
    print("\n" + "=" * 60)
    print(f"RECONCILE {result.date}: {result.status.value.upper()}")
    print("=" * 60)
    if result.records_ingested is not None:
        print(f"Records ingested:      {result.records_ingested:,}")
    print(f"Records processed:     {result.records_processed:,}")
    print(f"Calculations written:  {result.calculations_written:,}")
    print(f"Calculations removed:  {result.calculations_removed:,}")
    print(f"Bitcoin (written):     {result.bitcoin_mined}")
    print(f"Attempts:              {result.attempts}")
    if result.error:
        print(f"Error:                 {result.error}")
    _print_skipped(result.skipped)
    print("=" * 60)


def print_range_report(report: RangeReport) -> None:
    print("\n" + "=" * 60)
    print("RANGE RECONCILIATION COMPLETE")
    print("=" * 60)
    print(f"Run:                   {report.run_key}")
    print(f"Date range:            {report.start_date} to {report.end_date}")
    print(f"Succeeded:             {len(report.succeeded)}")
    print(f"  after retry:         {len(report.retried)}")
    print(f"Failed:                {len(report.failed)}")
    print(f"Skipped (done before): {len(report.skipped)}")
    print("-" * 60)
    print(f"Records processed:     {report.records_processed:,}")
    print(f"Calculations written:  {report.calculations_written:,}")
    if report.completion_percentage is not None:
        print(f"Completion:            {report.completion_percentage:.2f}%")
    if report.incomplete_without_failures:
        print("Warning: no date failed but calculations are still missing for this range")

    if report.retried:
        print("\nRetried dates:")
        for d in report.retried:
            print(f"  - {d}")

    if report.failed:
        print("\nFailed dates:")
        for result in report.results:
            if result.date in report.failed:
                print(f"  - {result.date}: {result.error}")

    skipped = [item for result in report.results for item in result.skipped]
    _print_skipped(skipped)
    print("=" * 60)


def print_spot_fix(fix: SpotFixResult) -> None:
    print("\n" + "=" * 60)
    print(f"SPOT FIX {fix.date} period {fix.settlement_period} {fix.farm_id}")
    print("=" * 60)
    print(f"Record found:          {'yes' if fix.record_found else 'no'}")
    print(f"Re-fetched:            {'yes' if fix.refetched else 'no'}")
    for model, bitcoin in sorted(fix.calculations.items()):
        value = "removed" if bitcoin is None else f"{bitcoin:.8f}"
        print(f"  {model:<20} {value}")
    _print_skipped(fix.skipped)
    print("=" * 60)


def print_verification(result: VerificationResult) -> None:
    print("\n" + "=" * 60)
    print(f"VERIFY {result.date}")
    print("=" * 60)
    print(f"{'Period':>6} {'API MWh':>12} {'DB MWh':>12} {'API GBP':>12} {'DB GBP':>12}")
    for p in result.periods:
        flag = " *" if p.settlement_period in result.mismatched_periods else ""
        print(
            f"{p.settlement_period:>6} {p.api_volume:>12.2f} {p.db_volume:>12.2f} "
            f"{p.api_payment:>12.2f} {p.db_payment:>12.2f}{flag}"
        )
    print("-" * 60)
    if result.needs_reprocessing:
        print(f"Needs reprocessing: periods {result.mismatched_periods}")
    else:
        print("Store matches the API for all sampled periods")
    print("=" * 60)


def _print_skipped(skipped) -> None:
    if not skipped:
        return
    print("\nSkipped (data errors):")
    for item in skipped:
        where = " ".join(
            str(part) for part in (item.settlement_period, item.farm_id, item.miner_model) if part is not None
        )
        print(f"  - {where}: {item.reason}")


async def run_command(args: argparse.Namespace) -> int:
    """Execute a parsed command and return the exit code."""
    if args.command == "init-db":
        await init_db()
        print("Database tables created")
        return EXIT_OK

    session_factory = get_session_factory()

    if args.command == "set-difficulty":
        async with session_factory() as db:
            await set_difficulty(db, args.date, args.value)
        print(f"Difficulty from {args.date}: {args.value}")
        return EXIT_OK

    if getattr(args, "difficulty", None) is not None:
        difficulty_provider = StaticDifficultyProvider(args.difficulty)
    else:
        difficulty_provider = DatabaseDifficultyProvider(session_factory)

    needs_source = (
        getattr(args, "reingest", False)
        or getattr(args, "refetch", False)
        or args.command == "verify"
    )
    service = ReconciliationService(
        session_factory,
        difficulty_provider,
        source=ElexonClient() if needs_source else None,
    )

    if args.command == "status":
        print_status(await service.status(args.date))
        return EXIT_OK

    if args.command == "reconcile":
        result = await service.reconcile_date(args.date, force=args.force, reingest=args.reingest)
        print_date_result(result)
        return EXIT_FAILURES if result.error else EXIT_OK

    if args.command == "range":
        report = await service.reconcile_range(
            args.start,
            args.end,
            batch_size=args.batch_size,
            force=args.force,
            reingest=args.reingest,
            resume=not args.no_resume,
            only_missing=args.only_missing,
        )
        print_range_report(report)
        return EXIT_FAILURES if report.failed else EXIT_OK

    if args.command == "spot-fix":
        fix = await service.spot_fix(args.date, args.period, args.farm_id, refetch=args.refetch)
        print_spot_fix(fix)
        return EXIT_FAILURES if fix.skipped else EXIT_OK

    if args.command == "verify":
        verification = await service.verify(args.date)
        print_verification(verification)
        return EXIT_FAILURES if verification.needs_reprocessing else EXIT_OK

    raise ValueError(f"Unknown command {args.command}")


async def _main(args: argparse.Namespace) -> int:
    try:
        return await run_command(args)
    finally:
        await close_db()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(args.log_level or settings.LOG_LEVEL, json_logs=args.json_logs or settings.LOG_JSON)

    if getattr(args, "start", None) and args.start > args.end:
        parser.error("Start date must be before or equal to end date")

    try:
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        logger.warning("Interrupted; completed dates are checkpointed")
        return EXIT_FAILURES
    except ConfigurationError as e:
        logger.error("Configuration error", error=e.message)
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_FATAL
    except (ReconcilerError, ValueError) as e:
        logger.error("Command failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
