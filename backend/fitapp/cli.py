"""Subscription maintenance commands for operators.

Usage (from ``backend/``):
    python -m fitapp.cli sweep [--dry-run]
    python -m fitapp.cli cleanup [--dry-run] [--retention-days N]
    python -m fitapp.cli fix-flags [--dry-run]
    python -m fitapp.cli fix-period-end [--dry-run] [--plan 3-month]
    python -m fitapp.cli backfill-status [--dry-run]

Exit status is 0 on success, 1 on failure and 130 when interrupted.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import asdict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fitapp.billing.plans import PAID_PLANS
from fitapp.database import async_session_factory, engine
from fitapp.services.maintenance import (
    MaintenanceReport,
    backfill_statuses,
    fix_period_ends,
    purge_canceled,
    reconcile_active_flags,
    run_subscription_maintenance,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fitapp.cli", description="Subscription maintenance")
    commands = parser.add_subparsers(dest="command", required=True)

    sweep = commands.add_parser("sweep", help="Run the full maintenance pass once")
    sweep.add_argument("--dry-run", action="store_true", help="Report without writing")

    cleanup = commands.add_parser("cleanup", help="Delete old canceled subscriptions")
    cleanup.add_argument("--dry-run", action="store_true", help="Report without writing")
    cleanup.add_argument(
        "--retention-days", type=int, default=None, help="Override CANCELED_RETENTION_DAYS"
    )

    fix_flags = commands.add_parser("fix-flags", help="Re-derive projections from subscription rows")
    fix_flags.add_argument("--dry-run", action="store_true", help="Report without writing")

    fix_period = commands.add_parser("fix-period-end", help="Recompute period ends from plan duration")
    fix_period.add_argument("--dry-run", action="store_true", help="Report without writing")
    fix_period.add_argument(
        "--plan", choices=[tag.value for tag in PAID_PLANS], default=None, help="Only this plan"
    )

    backfill = commands.add_parser("backfill-status", help="Fill in missing subscription statuses")
    backfill.add_argument("--dry-run", action="store_true", help="Report without writing")
    return parser


async def run_command(
    args: argparse.Namespace,
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
) -> dict:
    """Execute one parsed command; returns a summary of what changed."""
    async with session_factory() as db:
        if args.command == "sweep":
            report = await run_subscription_maintenance(db, dry_run=args.dry_run)
            return asdict(report)
        if args.command == "cleanup":
            report = await purge_canceled(
                db,
                retention_days=args.retention_days,
                dry_run=args.dry_run,
                report=MaintenanceReport(dry_run=args.dry_run),
            )
            return {"purged": report.purged, "dry_run": args.dry_run}
        if args.command == "fix-flags":
            fixed = await reconcile_active_flags(db, dry_run=args.dry_run)
        elif args.command == "fix-period-end":
            fixed = await fix_period_ends(db, plan=args.plan, dry_run=args.dry_run)
        elif args.command == "backfill-status":
            fixed = await backfill_statuses(db, dry_run=args.dry_run)
        else:
            raise ValueError(f"Unknown command: {args.command}")
        return {"updated": fixed, "dry_run": args.dry_run}


async def _main(args: argparse.Namespace) -> dict:
    try:
        return await run_command(args)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        summary = asyncio.run(_main(args))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    except Exception as e:
        logger.error("%s failed: %s", args.command, e, exc_info=True)
        return 1

    prefix = "[dry run] " if args.dry_run else ""
    print(f"{prefix}{args.command}: " + ", ".join(f"{k}={v}" for k, v in summary.items() if k != "dry_run"))
    return 0


if __name__ == "__main__":
    sys.exit(main())
