# coding: utf-8
"""
Weekly Billing Cron Job - charges last week's performance fees.

Refuses to run unless BILLING_ENABLED=true; --dry-run only reports what
would be charged and works either way.

Run: python -m src.tasks.weekly_billing [--dry-run]

Crontab (Sunday 23:59):
    59 23 * * 0 cd /path && .venv/bin/python -m src.tasks.weekly_billing
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from loguru import logger

from config.config import BILLING_ENABLED
from config.logging import setup_logging
from config.sentry import init_sentry
from src.database.engine import dispose_engine, get_session_maker
from src.services.charge_orchestrator import ChargeOrchestrator
from src.services.payment_gateway import StripeGateway
from src.services.period_calculator import billing_timezone
from src.services.weekly_billing import run_weekly_billing


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Charge weekly performance fees")
    parser.add_argument("--dry-run", action="store_true", help="Report fees without charging")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    """
    Main cron job entry point
    """
    args = parse_args(argv)
    setup_logging("weekly_billing")
    init_sentry()

    if not BILLING_ENABLED and not args.dry_run:
        logger.warning("BILLING_ENABLED is not true - refusing to charge. Use --dry-run to preview.")
        return 0

    logger.info("=" * 80)
    logger.info(f"Weekly Billing Cron Job - Starting{' (DRY RUN)' if args.dry_run else ''}")
    logger.info("=" * 80)

    session_maker = get_session_maker()
    orchestrator = ChargeOrchestrator(session_maker, StripeGateway(), billing_tz=billing_timezone())

    try:
        summary = await run_weekly_billing(orchestrator, session_maker, dry_run=args.dry_run)

        logger.info("=" * 80)
        logger.info("Weekly Billing Cron Job - Results:")
        logger.info(f"  - Week: {summary.week.label}")
        logger.info(f"  - Billable users: {summary.users}")
        for status, count in sorted(summary.counts.items()):
            logger.info(f"  - {status}: {count}")
        logger.info(f"  - Total charged: ${summary.total_charged}")
        logger.info("=" * 80)

    except Exception as e:
        logger.exception(f"Error in weekly billing cron job: {e}")
        raise
    finally:
        await dispose_engine()

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
