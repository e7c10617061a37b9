"""
Billing period store

Persistence and state machine for BillingPeriod and Payment rows.

    pending -> paid | failed | waived
    failed  -> pending (retry on the same row) | paid (late webhook) | waived
    paid, waived -> terminal

UNIQUE(user_id, week_start, week_end) is the ordering primitive between
concurrent billers: the loser of the insert race gets PeriodConflictError
before any gateway call is made.

Helpers flush; the caller commits.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import BillingPeriodStatus, PaymentStatus
from src.core.exceptions import InvalidTransitionError, PeriodConflictError
from src.database.models import BillingPeriod, Payment
from src.utils.dates import utcnow, ensure_utc

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[BillingPeriodStatus, frozenset] = {
    BillingPeriodStatus.PENDING: frozenset(
        {BillingPeriodStatus.PAID, BillingPeriodStatus.FAILED, BillingPeriodStatus.WAIVED}
    ),
    BillingPeriodStatus.FAILED: frozenset(
        {BillingPeriodStatus.PENDING, BillingPeriodStatus.PAID, BillingPeriodStatus.WAIVED}
    ),
    BillingPeriodStatus.PAID: frozenset(),
    BillingPeriodStatus.WAIVED: frozenset(),
}

ACTIVE_STATUSES = (BillingPeriodStatus.PAID.value, BillingPeriodStatus.PENDING.value)

PAYMENT_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "gateway_payment_intent_id",
        "gateway_charge_id",
        "payment_method_id",
        "failure_reason",
        "receipt_url",
        "amount_refunded",
    }
)


def can_transition(current: str, target: str) -> bool:
    return BillingPeriodStatus(target) in ALLOWED_TRANSITIONS[BillingPeriodStatus(current)]


def _transition(period: BillingPeriod, target: BillingPeriodStatus) -> None:
    if not can_transition(period.status, target):
        raise InvalidTransitionError(period.status, target.value, billing_period_id=period.id)
    period.status = target.value


# ===========================
# BILLING PERIODS
# ===========================


async def get_period(session: AsyncSession, period_id: int) -> Optional[BillingPeriod]:
    return await session.get(BillingPeriod, period_id, populate_existing=True)


async def get_period_for_week(
    session: AsyncSession, user_id: int, week_start: date, week_end: date
) -> Optional[BillingPeriod]:
    stmt = select(BillingPeriod).where(
        BillingPeriod.user_id == user_id,
        BillingPeriod.week_start == week_start,
        BillingPeriod.week_end == week_end,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_active_period(
    session: AsyncSession, user_id: int, week_start: date, week_end: date
) -> Optional[BillingPeriod]:
    """Period for the week that blocks a new charge (paid or pending)"""
    stmt = select(BillingPeriod).where(
        BillingPeriod.user_id == user_id,
        BillingPeriod.week_start == week_start,
        BillingPeriod.week_end == week_end,
        BillingPeriod.status.in_(ACTIVE_STATUSES),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_pending_period(
    session: AsyncSession,
    user_id: int,
    week_start: date,
    week_end: date,
    total_pnl: Decimal,
    trade_count: int,
    fee_percentage: Decimal,
    fee_amount: Decimal,
) -> BillingPeriod:
    """
    Insert a pending period for the week

    Raises:
        PeriodConflictError: a row for (user, week) already exists. The
            session is rolled back, so anything uncommitted is lost.
    """
    period = BillingPeriod(
        user_id=user_id,
        week_start=week_start,
        week_end=week_end,
        total_pnl=total_pnl,
        trade_count=trade_count,
        fee_percentage=fee_percentage,
        fee_amount=fee_amount,
        status=BillingPeriodStatus.PENDING.value,
        attempt_count=0,
    )
    session.add(period)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        existing = await get_period_for_week(session, user_id, week_start, week_end)
        logger.info(
            f"Billing period insert lost race for user {user_id} week {week_start}..{week_end}"
        )
        raise PeriodConflictError(
            f"Billing period already exists for {week_start} to {week_end}",
            billing_period_id=existing.id if existing else None,
            status=existing.status if existing else None,
        )
    return period


async def mark_period_paid(
    session: AsyncSession,
    period: BillingPeriod,
    payment_intent_id: Optional[str] = None,
    charge_id: Optional[str] = None,
    paid_at: Optional[datetime] = None,
) -> BillingPeriod:
    _transition(period, BillingPeriodStatus.PAID)
    period.paid_at = paid_at or utcnow()
    if payment_intent_id:
        period.gateway_payment_intent_id = payment_intent_id
    if charge_id:
        period.gateway_charge_id = charge_id
    await session.flush()
    return period


async def mark_period_failed(
    session: AsyncSession,
    period: BillingPeriod,
    payment_intent_id: Optional[str] = None,
    attempted_at: Optional[datetime] = None,
) -> BillingPeriod:
    """pending -> failed; counts the attempt"""
    _transition(period, BillingPeriodStatus.FAILED)
    period.attempt_count = (period.attempt_count or 0) + 1
    period.last_attempt_at = attempted_at or utcnow()
    if payment_intent_id:
        period.gateway_payment_intent_id = payment_intent_id
    await session.flush()
    return period


async def set_period_payment_intent(
    session: AsyncSession, period: BillingPeriod, payment_intent_id: str
) -> None:
    period.gateway_payment_intent_id = payment_intent_id
    await session.flush()


async def begin_retry(session: AsyncSession, period_id: int) -> BillingPeriod:
    """
    Compare-and-set failed -> pending on the existing row

    Only one caller can win; everybody else gets PeriodConflictError
    (or InvalidTransitionError for terminal periods).
    """
    stmt = (
        update(BillingPeriod)
        .where(
            BillingPeriod.id == period_id,
            BillingPeriod.status == BillingPeriodStatus.FAILED.value,
        )
        .values(
            status=BillingPeriodStatus.PENDING.value,
            last_attempt_at=utcnow(),
            # Late events for the previous attempt's intent no longer match the period
            gateway_payment_intent_id=None,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)

    period = await get_period(session, period_id)
    if result.rowcount == 1 and period is not None:
        await session.flush()
        return period

    if period is None:
        raise PeriodConflictError(f"Billing period {period_id} not found", billing_period_id=period_id)
    if BillingPeriodStatus(period.status) in (BillingPeriodStatus.PAID, BillingPeriodStatus.WAIVED):
        raise InvalidTransitionError(period.status, BillingPeriodStatus.PENDING.value, period_id)
    raise PeriodConflictError(
        f"Billing period {period_id} is already {period.status}",
        billing_period_id=period_id,
        status=period.status,
    )


async def waive_period(session: AsyncSession, period: BillingPeriod) -> BillingPeriod:
    _transition(period, BillingPeriodStatus.WAIVED)
    await session.flush()
    return period


async def list_periods(session: AsyncSession, user_id: int, limit: int = 10) -> List[BillingPeriod]:
    """Most recent weeks first"""
    stmt = (
        select(BillingPeriod)
        .where(BillingPeriod.user_id == user_id)
        .order_by(BillingPeriod.week_start.desc(), BillingPeriod.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_unpaid_periods(
    session: AsyncSession,
    user_id: Optional[int] = None,
    statuses: Sequence[BillingPeriodStatus] = (BillingPeriodStatus.FAILED,),
    max_attempts: Optional[int] = None,
) -> List[BillingPeriod]:
    """
    Periods still owed

    Args:
        max_attempts: Skip periods that already failed this many times
    """
    stmt = select(BillingPeriod).where(
        BillingPeriod.status.in_([BillingPeriodStatus(s).value for s in statuses])
    )
    if user_id is not None:
        stmt = stmt.where(BillingPeriod.user_id == user_id)
    if max_attempts is not None:
        stmt = stmt.where(BillingPeriod.attempt_count < max_attempts)
    stmt = stmt.order_by(BillingPeriod.week_start, BillingPeriod.id)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_billing_summary(session: AsyncSession, user_id: int) -> Dict[str, Any]:
    """
    Totals per status for one user

    Returns:
        Dict with total_paid, total_outstanding, periods_by_status, last_paid_at
    """
    stmt = (
        select(
            BillingPeriod.status,
            func.count(BillingPeriod.id),
            func.coalesce(func.sum(BillingPeriod.fee_amount), 0),
        )
        .where(BillingPeriod.user_id == user_id)
        .group_by(BillingPeriod.status)
    )
    result = await session.execute(stmt)

    periods_by_status: Dict[str, int] = {}
    fees_by_status: Dict[str, Decimal] = {}
    for status, count, fee_total in result.all():
        periods_by_status[status] = count
        fees_by_status[status] = Decimal(str(fee_total)).quantize(Decimal("0.01"))

    last_paid = await session.execute(
        select(func.max(BillingPeriod.paid_at)).where(BillingPeriod.user_id == user_id)
    )

    zero = Decimal("0.00")
    return {
        "total_paid": fees_by_status.get(BillingPeriodStatus.PAID.value, zero),
        "total_outstanding": fees_by_status.get(BillingPeriodStatus.PENDING.value, zero)
        + fees_by_status.get(BillingPeriodStatus.FAILED.value, zero),
        "periods_by_status": periods_by_status,
        "last_paid_at": ensure_utc(last_paid.scalar()),
    }


# ===========================
# PAYMENTS
# ===========================


async def create_payment(
    session: AsyncSession,
    user_id: int,
    billing_period_id: int,
    amount: Decimal,
    currency: str,
    status: PaymentStatus = PaymentStatus.PENDING,
    payment_intent_id: Optional[str] = None,
    payment_method_id: Optional[str] = None,
    failure_reason: Optional[str] = None,
) -> Payment:
    payment = Payment(
        user_id=user_id,
        billing_period_id=billing_period_id,
        amount=amount,
        currency=currency,
        status=PaymentStatus(status).value,
        gateway_payment_intent_id=payment_intent_id,
        payment_method_id=payment_method_id,
        failure_reason=failure_reason,
    )
    session.add(payment)
    await session.flush()
    return payment


async def update_payment(session: AsyncSession, payment: Payment, **fields: Any) -> Payment:
    """Update whitelisted payment fields (see PAYMENT_UPDATABLE_FIELDS)"""
    unknown = set(fields) - PAYMENT_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable on Payment: {', '.join(sorted(unknown))}")
    for name, value in fields.items():
        if name == "status":
            value = PaymentStatus(value).value
        setattr(payment, name, value)
    await session.flush()
    return payment


async def get_payment(session: AsyncSession, payment_id: int) -> Optional[Payment]:
    return await session.get(Payment, payment_id)


async def get_payment_by_intent(session: AsyncSession, payment_intent_id: str) -> Optional[Payment]:
    stmt = select(Payment).where(Payment.gateway_payment_intent_id == payment_intent_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_succeeded_payment(session: AsyncSession, billing_period_id: int) -> Optional[Payment]:
    stmt = select(Payment).where(
        Payment.billing_period_id == billing_period_id,
        Payment.status == PaymentStatus.SUCCEEDED.value,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_payments_for_period(session: AsyncSession, billing_period_id: int) -> List[Payment]:
    stmt = select(Payment).where(Payment.billing_period_id == billing_period_id).order_by(Payment.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_user_payments(session: AsyncSession, user_id: int, limit: int = 20) -> List[Payment]:
    stmt = (
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
