"""
CRUD operations for Meridian Fee Billing

Async database operations using SQLAlchemy 2.0.

Write helpers only add/flush: the caller owns the transaction and decides
when to commit, so a state change and its audit event land together.
Updates go through explicit per-entity field sets; anything else raises.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import select, func, exists
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import TradeStatus
from src.core.exceptions import ValidationError
from src.database.models import (
    User,
    BrokerageCredential,
    Trade,
    TradePnlAdjustment,
    PaymentMethod,
    SyncStatus,
)
from src.utils.dates import utcnow

logger = logging.getLogger(__name__)


USER_UPDATABLE_FIELDS = frozenset({"username", "email", "billing_enabled", "gateway_customer_id"})

TRADE_UPDATABLE_FIELDS = frozenset(
    {"exit_price", "exit_date", "pnl", "pnl_percent", "pnl_source", "status", "notes"}
)


def _apply_updates(entity: Any, allowed: frozenset, fields: dict) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(
            f"Fields not updatable on {type(entity).__name__}: {', '.join(sorted(unknown))}"
        )
    for name, value in fields.items():
        setattr(entity, name, value)


# ===========================
# USER OPERATIONS
# ===========================


async def get_user(session: AsyncSession, user_id: int) -> Optional[User]:
    """
    Get user by ID

    Args:
        session: Database session
        user_id: Internal user ID

    Returns:
        User model or None
    """
    return await session.get(User, user_id)


async def create_user(
    session: AsyncSession,
    username: str,
    email: Optional[str] = None,
    is_admin: bool = False,
    billing_enabled: bool = False,
    gateway_customer_id: Optional[str] = None,
) -> User:
    """
    Create new user

    Returns:
        Created User model (flushed, ID assigned)
    """
    user = User(
        username=username,
        email=email,
        is_admin=is_admin,
        billing_enabled=billing_enabled,
        gateway_customer_id=gateway_customer_id,
    )
    session.add(user)
    await session.flush()

    logger.info(f"User created: {user.id} ({username})")
    return user


async def update_user(session: AsyncSession, user: User, **fields: Any) -> User:
    """Update whitelisted user fields (see USER_UPDATABLE_FIELDS)"""
    _apply_updates(user, USER_UPDATABLE_FIELDS, fields)
    await session.flush()
    return user


async def get_billable_users(session: AsyncSession) -> List[User]:
    """
    Users the weekly batch should charge

    Billing enabled, gateway customer set and a default payment method on file.
    """
    has_default_method = exists().where(
        PaymentMethod.user_id == User.id,
        PaymentMethod.is_default.is_(True),
    )
    stmt = (
        select(User)
        .where(
            User.billing_enabled.is_(True),
            User.gateway_customer_id.is_not(None),
            has_default_method,
        )
        .order_by(User.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ===========================
# BROKERAGE CREDENTIALS
# ===========================


async def add_brokerage_credential(
    session: AsyncSession,
    user_id: int,
    account_number: str,
    access_token: str,
    platform: str = "tradier",
) -> BrokerageCredential:
    credential = BrokerageCredential(
        user_id=user_id,
        platform=platform,
        account_number=account_number,
        access_token=access_token,
        is_active=True,
    )
    session.add(credential)
    await session.flush()
    return credential


async def get_active_credentials(
    session: AsyncSession,
    user_id: Optional[int] = None,
    platform: str = "tradier",
) -> List[BrokerageCredential]:
    """
    Active brokerage credentials, optionally for one user

    Returns:
        Credentials ordered by user ID
    """
    stmt = select(BrokerageCredential).where(
        BrokerageCredential.is_active.is_(True),
        BrokerageCredential.platform == platform,
    )
    if user_id is not None:
        stmt = stmt.where(BrokerageCredential.user_id == user_id)
    stmt = stmt.order_by(BrokerageCredential.user_id)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def mark_credential_synced(
    session: AsyncSession, credential_id: int, synced_at: Optional[datetime] = None
) -> None:
    credential = await session.get(BrokerageCredential, credential_id)
    if credential is None:
        return
    credential.last_synced_at = synced_at or utcnow()
    credential.last_error = None
    await session.flush()


async def mark_credential_error(session: AsyncSession, credential_id: int, error: str) -> None:
    credential = await session.get(BrokerageCredential, credential_id)
    if credential is None:
        return
    credential.last_error = error[:1000]
    await session.flush()


# ===========================
# TRADE LEDGER
# ===========================


async def create_trade(session: AsyncSession, **fields: Any) -> Trade:
    """
    Insert a trade

    Raises IntegrityError on flush when external_position_id already exists;
    callers doing idempotent imports handle that.
    """
    trade = Trade(**fields)
    session.add(trade)
    await session.flush()
    return trade


async def get_trade(session: AsyncSession, trade_id: int) -> Optional[Trade]:
    return await session.get(Trade, trade_id)


async def get_trade_by_external_id(
    session: AsyncSession, external_position_id: str
) -> Optional[Trade]:
    stmt = select(Trade).where(Trade.external_position_id == external_position_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def update_trade(session: AsyncSession, trade: Trade, **fields: Any) -> Trade:
    """Update whitelisted trade fields (see TRADE_UPDATABLE_FIELDS)"""
    _apply_updates(trade, TRADE_UPDATABLE_FIELDS, fields)
    await session.flush()
    return trade


async def get_closed_trades_in_range(
    session: AsyncSession,
    user_id: int,
    start: datetime,
    end: datetime,
) -> List[Trade]:
    """
    Closed trades whose entry date lies in [start, end)

    Args:
        start: Inclusive lower bound (UTC)
        end: Exclusive upper bound (UTC)
    """
    stmt = (
        select(Trade)
        .where(
            Trade.user_id == user_id,
            Trade.status == TradeStatus.CLOSED.value,
            Trade.entry_date >= start,
            Trade.entry_date < end,
        )
        .order_by(Trade.entry_date)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_trades_missing_pnl(
    session: AsyncSession, user_id: Optional[int] = None
) -> List[Trade]:
    """Closed trades with an exit price but no stored P&L"""
    stmt = select(Trade).where(
        Trade.status == TradeStatus.CLOSED.value,
        Trade.exit_price.is_not(None),
        Trade.pnl.is_(None),
    )
    if user_id is not None:
        stmt = stmt.where(Trade.user_id == user_id)
    stmt = stmt.order_by(Trade.user_id, Trade.entry_date)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def record_pnl_adjustment(
    session: AsyncSession,
    trade: Trade,
    new_pnl: Decimal,
    new_source: str,
    reason: str,
) -> TradePnlAdjustment:
    """Keep the value being overwritten before the trade is changed"""
    adjustment = TradePnlAdjustment(
        trade_id=trade.id,
        previous_pnl=trade.pnl,
        new_pnl=new_pnl,
        previous_source=trade.pnl_source,
        new_source=new_source,
        reason=reason,
    )
    session.add(adjustment)
    await session.flush()
    return adjustment


async def get_pnl_adjustments(session: AsyncSession, trade_id: int) -> List[TradePnlAdjustment]:
    stmt = (
        select(TradePnlAdjustment)
        .where(TradePnlAdjustment.trade_id == trade_id)
        .order_by(TradePnlAdjustment.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ===========================
# PAYMENT METHODS
# ===========================


async def get_payment_methods(session: AsyncSession, user_id: int) -> List[PaymentMethod]:
    stmt = (
        select(PaymentMethod)
        .where(PaymentMethod.user_id == user_id)
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_default_payment_method(
    session: AsyncSession, user_id: int
) -> Optional[PaymentMethod]:
    stmt = select(PaymentMethod).where(
        PaymentMethod.user_id == user_id,
        PaymentMethod.is_default.is_(True),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_payment_method_by_gateway_id(
    session: AsyncSession, gateway_payment_method_id: str
) -> Optional[PaymentMethod]:
    stmt = select(PaymentMethod).where(
        PaymentMethod.gateway_payment_method_id == gateway_payment_method_id
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def add_payment_method(
    session: AsyncSession,
    user_id: int,
    gateway_customer_id: str,
    gateway_payment_method_id: str,
    card_brand: Optional[str] = None,
    card_last4: Optional[str] = None,
    card_exp_month: Optional[int] = None,
    card_exp_year: Optional[int] = None,
    billing_email: Optional[str] = None,
    payment_method_type: str = "card",
    make_default: bool = True,
) -> PaymentMethod:
    """
    Store a payment method

    When make_default is set the previous default is demoted first, in its own
    flush, so the one-default-per-user index never sees two defaults.
    """
    if make_default:
        current = await get_default_payment_method(session, user_id)
        if current is not None:
            current.is_default = False
            await session.flush()

    method = PaymentMethod(
        user_id=user_id,
        gateway_customer_id=gateway_customer_id,
        gateway_payment_method_id=gateway_payment_method_id,
        payment_method_type=payment_method_type,
        card_brand=card_brand,
        card_last4=card_last4,
        card_exp_month=card_exp_month,
        card_exp_year=card_exp_year,
        billing_email=billing_email,
        is_default=make_default,
    )
    session.add(method)
    await session.flush()

    logger.info(f"Payment method stored for user {user_id}: {card_brand} ****{card_last4}")
    return method


async def delete_payment_method(session: AsyncSession, method: PaymentMethod) -> None:
    """
    Remove a payment method, promoting the most recent remaining one to default
    """
    user_id = method.user_id
    was_default = method.is_default
    await session.delete(method)
    await session.flush()

    if was_default:
        remaining = await get_payment_methods(session, user_id)
        if remaining:
            remaining[0].is_default = True
            await session.flush()


async def count_payment_methods(session: AsyncSession, user_id: int) -> int:
    stmt = select(func.count(PaymentMethod.id)).where(PaymentMethod.user_id == user_id)
    result = await session.execute(stmt)
    return result.scalar() or 0


# ===========================
# SYNC STATUS
# ===========================


async def upsert_sync_status(
    session: AsyncSession,
    sync_type: str,
    success: bool,
    users_processed: int = 0,
    trades_synced: int = 0,
    errors: int = 0,
    total_pnl: Decimal = Decimal("0"),
) -> SyncStatus:
    status = await session.get(SyncStatus, sync_type)
    if status is None:
        status = SyncStatus(sync_type=sync_type)
        session.add(status)

    status.success = success
    status.users_processed = users_processed
    status.trades_synced = trades_synced
    status.errors = errors
    status.total_pnl = total_pnl
    status.synced_at = utcnow()

    await session.flush()
    return status


async def get_sync_status(session: AsyncSession, sync_type: str) -> Optional[SyncStatus]:
    return await session.get(SyncStatus, sync_type)
