"""
Billing audit log

Append-only record of every billing state transition. Rows are written in
the same transaction as the change they describe; the ORM refuses updates
and deletes on BillingEvent.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import BillingEventType
from src.database.models import BillingEvent


def to_event_data(value: Any) -> Any:
    """Make a payload JSON-safe: Decimals and dates become strings"""
    if isinstance(value, dict):
        return {str(k): to_event_data(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_event_data(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


async def record_event(
    session: AsyncSession,
    user_id: int,
    event_type: BillingEventType,
    event_data: Optional[Dict[str, Any]] = None,
    billing_period_id: Optional[int] = None,
    external_event_id: Optional[str] = None,
) -> BillingEvent:
    """
    Append an audit row (flushed, not committed)

    A duplicate external_event_id raises IntegrityError on flush.
    """
    billing_event = BillingEvent(
        user_id=user_id,
        billing_period_id=billing_period_id,
        event_type=BillingEventType(event_type).value,
        event_data=to_event_data(event_data or {}),
        external_event_id=external_event_id,
    )
    session.add(billing_event)
    await session.flush()

    logger.debug(
        f"Billing event {billing_event.event_type} user={user_id} period={billing_period_id}"
    )
    return billing_event


async def has_processed_event(session: AsyncSession, external_event_id: str) -> bool:
    stmt = select(BillingEvent.id).where(BillingEvent.external_event_id == external_event_id)
    result = await session.execute(stmt)
    return result.first() is not None


async def list_events(
    session: AsyncSession,
    user_id: Optional[int] = None,
    billing_period_id: Optional[int] = None,
    event_type: Optional[BillingEventType] = None,
    limit: int = 100,
) -> List[BillingEvent]:
    """Events in insertion order, optionally filtered"""
    stmt = select(BillingEvent)
    if user_id is not None:
        stmt = stmt.where(BillingEvent.user_id == user_id)
    if billing_period_id is not None:
        stmt = stmt.where(BillingEvent.billing_period_id == billing_period_id)
    if event_type is not None:
        stmt = stmt.where(BillingEvent.event_type == BillingEventType(event_type).value)
    stmt = stmt.order_by(BillingEvent.id).limit(limit)

    result = await session.execute(stmt)
    return list(result.scalars().all())
