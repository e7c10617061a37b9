"""
Core Enums - shared types for the billing and reconciliation pipeline.

Defines:
- TradeDirection / AssetClass / TradeStatus / PnlSource: trade ledger
- BillingPeriodStatus: weekly fee obligation lifecycle
- PaymentStatus: one money movement attempt
- BillingEventType: audit log entries
- ChargeStatus: outcome codes returned by the charge orchestrator
"""

from enum import Enum


class TradeDirection(str, Enum):
    """Trade direction.

    LONG/CALL profit when exit > entry, SHORT/PUT profit when exit < entry.
    """

    LONG = "LONG"
    SHORT = "SHORT"
    CALL = "CALL"
    PUT = "PUT"

    @classmethod
    def parse(cls, value: str | None) -> "TradeDirection | None":
        """Case-insensitive lookup, None for unknown values."""
        if not value:
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None

    @property
    def profits_on_rise(self) -> bool:
        return self in (TradeDirection.LONG, TradeDirection.CALL)


class AssetClass(str, Enum):
    """Asset class of a trade. Drives the contract multiplier."""

    STOCK = "stock"
    OPTION = "option"
    FUTURE = "future"
    CRYPTO = "crypto"

    @classmethod
    def multiplier(cls, asset_class: "AssetClass | str | None") -> int:
        """100 for options/futures, 1 otherwise."""
        value = asset_class.value if isinstance(asset_class, AssetClass) else asset_class
        return 100 if value in (cls.OPTION.value, cls.FUTURE.value) else 1


class TradeStatus(str, Enum):
    """Trade lifecycle (soft states only, trades are never deleted)"""

    OPEN = "open"
    CLOSED = "closed"
    STOPPED = "stopped"


class PnlSource(str, Enum):
    """Where a trade's stored P&L came from"""

    BROKERAGE = "brokerage"  # Brokerage gain/loss ledger (authoritative)
    CALCULATED = "calculated"  # Derived locally from prices, not brokerage-confirmed
    MANUAL = "manual"  # Entered with the trade


class BillingPeriodStatus(str, Enum):
    """Weekly fee obligation lifecycle.

    pending -> paid | failed | waived
    failed  -> pending (new attempt on the same row) | paid (webhook) | waived
    paid, waived -> terminal
    """

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    WAIVED = "waived"

    @classmethod
    def blocks_new_charge(cls, status: "BillingPeriodStatus | str") -> bool:
        """A period in one of these states must not be charged again."""
        return cls(status) in (cls.PAID, cls.PENDING)


class PaymentStatus(str, Enum):
    """Payment attempt status"""

    PENDING = "pending"  # Created at the gateway, outcome unknown
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class BillingEventType(str, Enum):
    """Audit log event types"""

    PERIOD_CREATED = "period_created"
    CHARGE_ATTEMPTED = "charge_attempted"
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    REFUND_ISSUED = "refund_issued"
    PERIOD_WAIVED = "period_waived"
    PAYMENT_METHOD_ADDED = "payment_method_added"
    PAYMENT_METHOD_REMOVED = "payment_method_removed"
    BILLING_ENABLED = "billing_enabled"
    BILLING_DISABLED = "billing_disabled"


class ChargeStatus(str, Enum):
    """Outcome of a charge request, returned to callers instead of raising"""

    CHARGED = "charged"  # Gateway confirmed synchronously
    PROCESSING = "processing"  # Outcome pending, webhook will converge
    FAILED = "failed"  # Declined / gateway error / timeout
    NO_FEE_DUE = "no_fee_due"  # Flat or losing week
    CONFLICT = "conflict"  # Period already paid or pending
    PRECONDITION_FAILED = "precondition_failed"  # No customer / payment method
    INVALID = "invalid"  # Malformed input
    ERROR = "error"  # Unexpected internal error
