# coding: utf-8
"""
Brokerage Sync Cron Job - pulls the brokerage gain/loss ledger.

Inserts positions we never saw, fills missing P&L and overwrites local P&L
that drifted from the brokerage beyond the configured tolerance.

Run: python -m src.tasks.brokerage_sync [--dry-run] [--fix-missing] [--user-id=N]

Crontab (daily 06:00):
    0 6 * * * cd /path && .venv/bin/python -m src.tasks.brokerage_sync
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from loguru import logger

from config.logging import setup_logging
from config.sentry import init_sentry
from src.database.engine import dispose_engine, get_session_maker
from src.services.brokerage_client import TradierClient
from src.services.brokerage_reconciler import BrokerageReconciler


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync closed positions from the brokerage")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and compare without writing")
    parser.add_argument(
        "--fix-missing", action="store_true", help="Also fill P&L for closed trades that have none"
    )
    parser.add_argument("--user-id", type=int, default=None, help="Only sync this user")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    """
    Main cron job entry point

    Returns:
        Process exit code: 1 when any user failed to sync
    """
    args = parse_args(argv)
    setup_logging("brokerage_sync")
    init_sentry()

    logger.info("=" * 80)
    logger.info(f"Brokerage Sync Cron Job - Starting{' (DRY RUN)' if args.dry_run else ''}")
    logger.info("=" * 80)

    reconciler = BrokerageReconciler(get_session_maker(), TradierClient())

    try:
        summary = await reconciler.run_sync(user_id=args.user_id, dry_run=args.dry_run)

        logger.info("=" * 80)
        logger.info("Brokerage Sync Cron Job - Results:")
        logger.info(f"  - Users processed: {summary.users_processed}")
        logger.info(f"  - Users failed: {summary.users_failed}")
        logger.info(f"  - Trades synced: {summary.trades_synced}")
        logger.info(f"  - Errors: {summary.errors}")
        logger.info(f"  - Combined P&L: ${summary.total_pnl:.2f}")
        for stats in summary.users:
            logger.info(
                f"  - User {stats.user_id}: +{stats.inserted} new, {stats.filled} filled, "
                f"{stats.overwritten} overwritten, {stats.skipped} unchanged"
                + (f", error: {stats.error}" if stats.error else "")
            )

        if args.fix_missing:
            fixed = await reconciler.fix_missing_pnl(dry_run=args.dry_run, user_id=args.user_id)
            logger.info(
                f"  - Missing P&L: {fixed.found} found, {fixed.fixed_from_brokerage} from brokerage, "
                f"{fixed.calculated} calculated, {fixed.unresolved} unresolved"
            )
        logger.info("=" * 80)

    except Exception as e:
        logger.exception(f"Error in brokerage sync cron job: {e}")
        raise
    finally:
        await dispose_engine()

    return 0 if summary.success else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
