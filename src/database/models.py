"""
Database models for Meridian Fee Billing

SQLAlchemy 2.0 models with full type hints
"""

from datetime import datetime, date, UTC
from typing import Optional, Any
from decimal import Decimal

from sqlalchemy import (
    String,
    Text,
    Integer,
    Boolean,
    DateTime,
    Date,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Numeric,
    Index,
    JSON,
    event,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from src.core.enums import (
    TradeDirection,
    AssetClass,
    TradeStatus,
    PnlSource,
    BillingPeriodStatus,
    PaymentStatus,
    BillingEventType,
)


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_values(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


__all__ = [
    "Base",
    "User",
    "BrokerageCredential",
    "Trade",
    "TradePnlAdjustment",
    "BillingPeriod",
    "Payment",
    "PaymentMethod",
    "BillingEvent",
    "SyncStatus",
    "TradeDirection",
    "AssetClass",
    "TradeStatus",
    "PnlSource",
    "BillingPeriodStatus",
    "PaymentStatus",
    "BillingEventType",
]


# ===========================
# USERS & CREDENTIALS
# ===========================


class User(Base):
    """
    User model

    Tracks:
    - Identity (issued by the external auth service)
    - Billing enrolment flag
    - Payment gateway customer reference
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    username: Mapped[str] = mapped_column(String(255), nullable=False, comment="Display name")

    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    billing_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True,
        comment="Weekly performance fee is charged only when enabled",
    )

    gateway_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Payment gateway customer ID (cus_...)",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username}, billing_enabled={self.billing_enabled})>"


class BrokerageCredential(Base):
    """
    Brokerage API access for one user

    The token is issued and decrypted by the external credential store;
    this table only tells the reconciler which account to pull and when
    it was last synced.
    """

    __tablename__ = "brokerage_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_brokerage_credentials_user_platform"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    platform: Mapped[str] = mapped_column(String(50), default="tradier", nullable=False)

    account_number: Mapped[str] = mapped_column(String(64), nullable=False)

    access_token: Mapped[str] = mapped_column(Text, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last successful gain/loss sync",
    )

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<BrokerageCredential(user_id={self.user_id}, platform={self.platform}, account={self.account_number})>"


# ===========================
# TRADE LEDGER
# ===========================


class Trade(Base):
    """
    One brokerage position lifecycle

    P&L is only defined for closed trades with an exit price. It is either
    taken from the brokerage gain/loss ledger (authoritative), derived from
    prices (fallback) or entered manually - see pnl_source.
    """

    __tablename__ = "trades"
    __table_args__ = (
        Index("ix_trades_user_entry_date", "user_id", "entry_date"),
        CheckConstraint(_in_values("status", TradeStatus), name="ck_trades_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    symbol: Mapped[str] = mapped_column(String(32), nullable=False)

    direction: Mapped[str] = mapped_column(
        String(10), nullable=False, comment="LONG, SHORT, CALL, PUT"
    )

    asset_class: Mapped[str] = mapped_column(
        String(20),
        default=AssetClass.STOCK.value,
        nullable=False,
        comment="stock, option, future, crypto",
    )

    strike: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    expiry: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    entry_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    exit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("1"))

    entry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    exit_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    pnl: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    pnl_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    pnl_source: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="brokerage, calculated, manual",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=TradeStatus.CLOSED.value,
        nullable=False,
        index=True,
    )

    external_position_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        comment="Stable brokerage position identifier used for idempotent import",
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<Trade(id={self.id}, user_id={self.user_id}, symbol={self.symbol}, "
            f"direction={self.direction}, pnl={self.pnl}, status={self.status})>"
        )


class TradePnlAdjustment(Base):
    """
    Audit trail of every P&L overwrite done by the brokerage reconciler

    Keeps the value we had before the brokerage value replaced it.
    """

    __tablename__ = "trade_pnl_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    trade_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("trades.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    previous_pnl: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    new_pnl: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    previous_source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_source: Mapped[str] = mapped_column(String(20), nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


# ===========================
# BILLING
# ===========================


class BillingPeriod(Base):
    """
    One (user, week) performance fee obligation

    UNIQUE(user_id, week_start, week_end) is the only thing that stops a
    user from being billed twice for the same week. A retry after failure
    reuses this row and bumps attempt_count.
    """

    __tablename__ = "billing_periods"
    __table_args__ = (
        UniqueConstraint("user_id", "week_start", "week_end", name="uq_billing_periods_user_week"),
        Index("ix_billing_periods_week", "week_start", "week_end"),
        CheckConstraint(_in_values("status", BillingPeriodStatus), name="ck_billing_periods_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    week_start: Mapped[date] = mapped_column(Date, nullable=False, comment="Monday")
    week_end: Mapped[date] = mapped_column(Date, nullable=False, comment="Friday")

    total_pnl: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    trade_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    fee_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("10.00"), nullable=False
    )
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=BillingPeriodStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, paid, failed, waived",
    )

    attempt_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Number of failed charge attempts"
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    gateway_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<BillingPeriod(id={self.id}, user_id={self.user_id}, "
            f"week={self.week_start}..{self.week_end}, status={self.status}, fee=${self.fee_amount})>"
        )


class Payment(Base):
    """
    One money movement attempt for a billing period

    At most one succeeded payment per period (partial unique index).
    """

    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payments_one_succeeded_per_period",
            "billing_period_id",
            unique=True,
            postgresql_where=text("status = 'succeeded'"),
            sqlite_where=text("status = 'succeeded'"),
        ),
        CheckConstraint(_in_values("status", PaymentStatus), name="ck_payments_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    billing_period_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("billing_periods.id", ondelete="CASCADE"),
        index=True,
        nullable=True,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="usd", nullable=False)

    gateway_payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        comment="PaymentIntent ID (pi_...). Null when the gateway never answered.",
    )
    gateway_charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        index=True,
        comment="pending, succeeded, failed, refunded",
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    receipt_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    amount_refunded: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, period={self.billing_period_id}, status={self.status}, amount=${self.amount})>"


class PaymentMethod(Base):
    """
    Saved payment instrument (card) at the payment gateway

    At most one default per user (partial unique index).
    """

    __tablename__ = "payment_methods"
    __table_args__ = (
        Index(
            "uq_payment_methods_one_default_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_default = true"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    gateway_customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    gateway_payment_method_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, comment="pm_..."
    )

    payment_method_type: Mapped[str] = mapped_column(String(30), default="card", nullable=False)
    card_brand: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    card_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    card_exp_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    card_exp_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    billing_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<PaymentMethod(user_id={self.user_id}, brand={self.card_brand}, last4={self.card_last4}, default={self.is_default})>"


class BillingEvent(Base):
    """
    Immutable audit row for every billing state transition

    Retained for multi-year compliance. external_event_id carries the
    gateway webhook event ID and is unique, which makes webhook handling
    idempotent even when two deliveries race.
    """

    __tablename__ = "billing_events"
    __table_args__ = (
        CheckConstraint(_in_values("event_type", BillingEventType), name="ck_billing_events_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    billing_period_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("billing_periods.id", ondelete="CASCADE"),
        index=True,
        nullable=True,
    )

    event_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)

    event_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    external_event_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
        comment="Gateway webhook event ID (evt_...)",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<BillingEvent(id={self.id}, user_id={self.user_id}, type={self.event_type})>"


@event.listens_for(BillingEvent, "before_update")
def _billing_event_is_immutable(mapper, connection, target):
    raise RuntimeError("billing_events is append-only")


@event.listens_for(BillingEvent, "before_delete")
def _billing_event_is_undeletable(mapper, connection, target):
    raise RuntimeError("billing_events is append-only")


# ===========================
# MONITORING
# ===========================


class SyncStatus(Base):
    """
    Last result of each background sync job, for monitoring/alerting
    """

    __tablename__ = "sync_status"

    sync_type: Mapped[str] = mapped_column(String(50), primary_key=True)

    success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    users_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    trades_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_pnl: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)

    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<SyncStatus(type={self.sync_type}, success={self.success}, synced_at={self.synced_at})>"


# Additional indexes documentation:
# BillingPeriod:
# - billing_periods(user_id, week_start, week_end) (unique)
# - billing_periods.status (index)
# Payment:
# - payments.gateway_payment_intent_id (unique)
# - payments(billing_period_id) WHERE status = 'succeeded' (unique)
# PaymentMethod:
# - payment_methods.gateway_payment_method_id (unique)
# - payment_methods(user_id) WHERE is_default (unique)
# BillingEvent:
# - billing_events.external_event_id (unique)
# Trade:
# - trades.external_position_id (unique)
# - trades(user_id, entry_date)
