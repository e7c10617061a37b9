"""
Billing Scheduler

APScheduler jobs for the billing pipeline:
- Weekly billing: Sunday 23:59 (billing timezone)
- Brokerage sync: daily 06:00 (billing timezone), before billing reads trades
- Auto-retry of failed periods: Wednesday 12:00, only when AUTO_RETRY_FAILED=true
"""

from datetime import tzinfo
from typing import Optional

from loguru import logger
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import (
    AUTO_RETRY_FAILED,
    BILLING_CRON_DAY_OF_WEEK,
    BILLING_CRON_HOUR,
    BILLING_CRON_MINUTE,
    BILLING_ENABLED,
    RETRY_CRON_DAY_OF_WEEK,
    RETRY_CRON_HOUR,
    SYNC_CRON_HOUR,
    SYNC_CRON_MINUTE,
)
from src.services.brokerage_reconciler import BrokerageReconciler
from src.services.charge_orchestrator import ChargeOrchestrator
from src.services.period_calculator import billing_timezone
from src.services.weekly_billing import retry_failed_periods, run_weekly_billing


class BillingScheduler:
    """
    APScheduler for billing jobs.

    Jobs:
    - weekly_billing: charge last week's fees
    - brokerage_sync: pull the brokerage gain/loss ledger
    - auto_retry_failed: re-attempt failed periods (opt-in)
    """

    def __init__(
        self,
        orchestrator: ChargeOrchestrator,
        reconciler: BrokerageReconciler,
        session_maker: async_sessionmaker[AsyncSession],
        billing_tz: Optional[tzinfo] = None,
        billing_enabled: bool = BILLING_ENABLED,
        auto_retry: bool = AUTO_RETRY_FAILED,
    ):
        self.orchestrator = orchestrator
        self.reconciler = reconciler
        self.session_maker = session_maker
        self.billing_tz = billing_tz or billing_timezone()
        self.billing_enabled = billing_enabled
        self.auto_retry = auto_retry
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start the scheduler."""
        if self._running:
            logger.warning("Billing scheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone=self.billing_tz)

        # 1. Weekly billing: Sunday 23:59
        self.scheduler.add_job(
            self._job_weekly_billing,
            CronTrigger(
                day_of_week=BILLING_CRON_DAY_OF_WEEK,
                hour=BILLING_CRON_HOUR,
                minute=BILLING_CRON_MINUTE,
                timezone=self.billing_tz,
            ),
            id="weekly_billing",
            name="Weekly Performance Fee Billing",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        # 2. Brokerage sync: daily 06:00
        self.scheduler.add_job(
            self._job_brokerage_sync,
            CronTrigger(hour=SYNC_CRON_HOUR, minute=SYNC_CRON_MINUTE, timezone=self.billing_tz),
            id="brokerage_sync",
            name="Brokerage Gain/Loss Sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        # 3. Auto-retry: opt-in
        if self.auto_retry:
            self.scheduler.add_job(
                self._job_auto_retry,
                CronTrigger(
                    day_of_week=RETRY_CRON_DAY_OF_WEEK,
                    hour=RETRY_CRON_HOUR,
                    minute=0,
                    timezone=self.billing_tz,
                ),
                id="auto_retry_failed",
                name="Auto-retry Failed Billing Periods",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        self.scheduler.start()
        self._running = True

        logger.info(
            f"Billing scheduler started: billing {BILLING_CRON_DAY_OF_WEEK} "
            f"{BILLING_CRON_HOUR:02d}:{BILLING_CRON_MINUTE:02d}, "
            f"sync daily {SYNC_CRON_HOUR:02d}:{SYNC_CRON_MINUTE:02d} ({self.billing_tz}), "
            f"auto-retry {'on' if self.auto_retry else 'off'}"
        )

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Billing scheduler stopped")

    async def trigger_billing_now(self, dry_run: bool = False) -> dict:
        """Manual weekly billing run."""
        logger.info(f"Manual weekly billing triggered{' (dry run)' if dry_run else ''}")
        return await self._job_weekly_billing(dry_run=dry_run)

    async def trigger_sync_now(self, dry_run: bool = False) -> dict:
        """Manual brokerage sync."""
        logger.info("Manual brokerage sync triggered")
        return await self._job_brokerage_sync(dry_run=dry_run)

    async def trigger_retry_now(self) -> dict:
        """Manual auto-retry pass, regardless of AUTO_RETRY_FAILED."""
        logger.info("Manual auto-retry triggered")
        return await self._job_auto_retry()

    async def _job_weekly_billing(self, dry_run: bool = False) -> dict:
        """Job: weekly billing."""
        if not self.billing_enabled and not dry_run:
            logger.warning("BILLING_ENABLED is false, skipping weekly billing")
            return {"skipped": True, "reason": "disabled"}
        try:
            summary = await run_weekly_billing(self.orchestrator, self.session_maker, dry_run=dry_run)
            return summary.to_dict()
        except Exception as e:
            logger.exception(f"Weekly billing job failed: {e}")
            return {"error": str(e)}

    async def _job_brokerage_sync(self, dry_run: bool = False) -> dict:
        """Job: brokerage sync."""
        try:
            summary = await self.reconciler.run_sync(dry_run=dry_run)
            return {
                "success": summary.success,
                "users_processed": summary.users_processed,
                "trades_synced": summary.trades_synced,
                "errors": summary.errors,
            }
        except Exception as e:
            logger.exception(f"Brokerage sync job failed: {e}")
            return {"error": str(e)}

    async def _job_auto_retry(self) -> dict:
        """Job: retry failed periods."""
        if not self.billing_enabled:
            logger.warning("BILLING_ENABLED is false, skipping auto-retry")
            return {"skipped": True, "reason": "disabled"}
        try:
            summary = await retry_failed_periods(self.orchestrator, self.session_maker)
            return summary.to_dict()
        except Exception as e:
            logger.exception(f"Auto-retry job failed: {e}")
            return {"error": str(e)}
