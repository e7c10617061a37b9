"""
P&L aggregation for billing

The brokerage gain/loss ledger is the source of truth for a trade's P&L.
When a closed trade has no stored value yet, the price formula below is the
fallback. Both the weekly aggregation and the reconciler use this one
formula so that billed numbers and stored numbers never drift apart.
"""

from dataclasses import dataclass
from datetime import tzinfo
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import AssetClass, PnlSource, TradeDirection
from src.core.exceptions import ValidationError
from src.database import crud
from src.database.models import Trade
from src.services.period_calculator import BillingWeek, week_bounds, is_billable_day

CENT = Decimal("0.01")

# validate_stored_pnl(): allowed drift between stored and recomputed P&L
RELATIVE_TOLERANCE = Decimal("0.10")
ABSOLUTE_TOLERANCE = Decimal("1.00")


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_trade_pnl(
    entry_price: Any,
    exit_price: Any,
    quantity: Any,
    direction: Any,
    asset_class: Any = AssetClass.STOCK,
) -> Optional[Decimal]:
    """
    Price-based P&L

    LONG/CALL: (exit - entry) * qty * multiplier
    SHORT/PUT: (entry - exit) * qty * multiplier
    Multiplier is 100 for options and futures, 1 otherwise.

    Returns:
        P&L rounded to cents, or None when there is no (non-zero) exit
        price or the direction is unknown
    """
    entry = to_decimal(entry_price)
    exit_ = to_decimal(exit_price)
    qty = to_decimal(quantity)
    side = direction if isinstance(direction, TradeDirection) else TradeDirection.parse(direction)

    if exit_ is None or exit_ == 0 or entry is None or qty is None or side is None:
        return None

    multiplier = AssetClass.multiplier(asset_class)
    price_diff = exit_ - entry if side.profits_on_rise else entry - exit_
    return quantize_money(price_diff * qty * multiplier)


def calculate_trade_pnl_percent(
    entry_price: Any,
    exit_price: Any,
    direction: Any,
) -> Optional[Decimal]:
    """Return on entry price in percent, None when undefined"""
    entry = to_decimal(entry_price)
    exit_ = to_decimal(exit_price)
    side = direction if isinstance(direction, TradeDirection) else TradeDirection.parse(direction)

    if exit_ is None or exit_ == 0 or entry is None or entry == 0 or side is None:
        return None

    price_diff = exit_ - entry if side.profits_on_rise else entry - exit_
    return quantize_money(price_diff / entry * 100)


def resolve_trade_pnl(trade: Trade) -> Optional[Decimal]:
    """Stored P&L when present, otherwise the price formula"""
    if trade.pnl is not None:
        return to_decimal(trade.pnl)
    return calculate_trade_pnl(
        trade.entry_price, trade.exit_price, trade.quantity, trade.direction, trade.asset_class
    )


def validate_stored_pnl(trade: Trade) -> Optional[str]:
    """
    Sanity-check a stored P&L against the formula

    Returns:
        Description of the mismatch, or None when consistent / not checkable
    """
    if trade.pnl is None:
        return None

    expected = calculate_trade_pnl(
        trade.entry_price, trade.exit_price, trade.quantity, trade.direction, trade.asset_class
    )
    if expected is None:
        return None

    stored = to_decimal(trade.pnl)
    tolerance = abs(expected) * RELATIVE_TOLERANCE + ABSOLUTE_TOLERANCE
    if abs(stored - expected) > tolerance:
        return (
            f"Trade {trade.id} ({trade.symbol}) stored P&L {stored} "
            f"differs from calculated {expected}"
        )
    return None


@dataclass(frozen=True)
class WeeklyPnl:
    total_pnl: Decimal
    trade_count: int


class PnlAggregator:
    """
    Sums a user's realised P&L over a billing week

    Trades count when they are closed, have a resolvable P&L and were
    entered Monday to Friday within the week (billing timezone).
    """

    def __init__(self, billing_tz: Optional[tzinfo] = None):
        self.billing_tz = billing_tz

    async def calculate_weekly_pnl(
        self, session: AsyncSession, user_id: int, week: BillingWeek
    ) -> WeeklyPnl:
        if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
            raise ValidationError(f"Invalid user id: {user_id!r}")

        start, end = week_bounds(week, self.billing_tz)
        trades = await crud.get_closed_trades_in_range(session, user_id, start, end)

        total = Decimal("0")
        count = 0
        for trade in trades:
            if not is_billable_day(trade.entry_date, self.billing_tz):
                continue

            pnl = resolve_trade_pnl(trade)
            if pnl is None:
                continue

            # Brokerage values are authoritative, only local ones are checked
            mismatch = None
            if trade.pnl_source != PnlSource.BROKERAGE.value:
                mismatch = validate_stored_pnl(trade)
            if mismatch:
                logger.warning(mismatch)

            total += pnl
            count += 1

        result = WeeklyPnl(total_pnl=quantize_money(total), trade_count=count)
        logger.debug(
            f"Weekly P&L user={user_id} week={week.label}: ${result.total_pnl} over {count} trades"
        )
        return result
