"""
Weekly billing batch

Charges every billable user for the week that just ended, a few users at a
time. Each user is isolated: one failure is counted and the batch moves on.

Automatic retry of failed weeks is a separate operation and only runs when
AUTO_RETRY_FAILED is switched on.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import BILLING_CONCURRENCY, AUTO_RETRY_MAX_ATTEMPTS
from src.core.enums import BillingPeriodStatus, ChargeStatus
from src.database import billing_store, crud
from src.services.charge_orchestrator import ChargeOrchestrator, ChargeResult
from src.services.period_calculator import BillingWeek, get_last_week_dates


@dataclass
class BatchSummary:
    week: Optional[BillingWeek] = None
    dry_run: bool = False
    users: int = 0
    counts: Counter = field(default_factory=Counter)
    total_charged: Decimal = Decimal("0.00")
    results: List[ChargeResult] = field(default_factory=list)
    previews: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, result: ChargeResult) -> None:
        self.results.append(result)
        self.counts[result.status.value] += 1
        if result.status == ChargeStatus.CHARGED and result.fee_amount is not None:
            self.total_charged += result.fee_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week": self.week.to_dict() if self.week else None,
            "dry_run": self.dry_run,
            "users": self.users,
            "counts": dict(self.counts),
            "total_charged": str(self.total_charged),
        }


async def _run_bounded(coros, concurrency: int) -> List[ChargeResult]:
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run(coro):
        async with semaphore:
            return await coro

    return await asyncio.gather(*(run(coro) for coro in coros))


async def run_weekly_billing(
    orchestrator: ChargeOrchestrator,
    session_maker: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
    concurrency: int = BILLING_CONCURRENCY,
    dry_run: bool = False,
) -> BatchSummary:
    """
    Bill every user with billing enabled and a default payment method

    Args:
        now: Reference time; the week before it is billed
        concurrency: Max users charged at the same time
        dry_run: Only report what would be charged
    """
    week = get_last_week_dates(now, orchestrator.billing_tz)
    summary = BatchSummary(week=week, dry_run=dry_run)

    async with session_maker() as session:
        user_ids = [user.id for user in await crud.get_billable_users(session)]
    summary.users = len(user_ids)

    logger.info(f"Weekly billing for {week.label}: {len(user_ids)} billable users{' (dry run)' if dry_run else ''}")
    if not user_ids:
        return summary

    if dry_run:
        for user_id in user_ids:
            status = await orchestrator.get_billing_status(user_id, now=now)
            summary.previews.append(status)
            summary.counts["would_charge" if status["can_charge"] else "would_skip"] += 1
            logger.info(
                f"[DRY RUN] User {user_id}: P&L ${status['total_pnl']} over {status['trade_count']} trades, "
                f"fee ${status['fee_amount']}, can charge: {status['can_charge']}"
            )
        return summary

    results = await _run_bounded(
        (orchestrator.charge_weekly_fee(user_id, now=now, triggered_by="scheduler") for user_id in user_ids),
        concurrency,
    )
    for result in results:
        summary.add(result)
        if result.status in (ChargeStatus.FAILED, ChargeStatus.ERROR):
            logger.warning(f"User {result.user_id}: {result.status.value} - {result.error}")

    logger.info(
        f"Weekly billing for {week.label} finished: {dict(summary.counts)}, "
        f"charged ${summary.total_charged}"
    )
    return summary


async def retry_failed_periods(
    orchestrator: ChargeOrchestrator,
    session_maker: async_sessionmaker[AsyncSession],
    max_attempts: int = AUTO_RETRY_MAX_ATTEMPTS,
    concurrency: int = BILLING_CONCURRENCY,
) -> BatchSummary:
    """
    Re-attempt failed periods that have not used up their attempts
    """
    summary = BatchSummary()

    async with session_maker() as session:
        periods = await billing_store.list_unpaid_periods(
            session, statuses=(BillingPeriodStatus.FAILED,), max_attempts=max_attempts
        )
        period_ids = [period.id for period in periods]
    summary.users = len({period.user_id for period in periods})

    logger.info(f"Auto-retry: {len(period_ids)} failed periods under {max_attempts} attempts")
    if not period_ids:
        return summary

    results = await _run_bounded(
        (orchestrator.retry_failed_period(period_id, triggered_by="auto_retry") for period_id in period_ids),
        concurrency,
    )
    for result in results:
        summary.add(result)

    logger.info(f"Auto-retry finished: {dict(summary.counts)}, charged ${summary.total_charged}")
    return summary
