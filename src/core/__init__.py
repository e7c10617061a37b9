"""
Core module - shared enums and exceptions for the billing pipeline.
"""

from src.core.enums import (
    TradeDirection,
    AssetClass,
    TradeStatus,
    PnlSource,
    BillingPeriodStatus,
    PaymentStatus,
    BillingEventType,
    ChargeStatus,
)
from src.core.exceptions import (
    BillingError,
    ValidationError,
    PeriodConflictError,
    PreconditionError,
    InvalidTransitionError,
    GatewayError,
    GatewayTimeoutError,
    BrokerageAPIError,
    WebhookVerificationError,
    WebhookTimestampError,
)

__all__ = [
    "TradeDirection",
    "AssetClass",
    "TradeStatus",
    "PnlSource",
    "BillingPeriodStatus",
    "PaymentStatus",
    "BillingEventType",
    "ChargeStatus",
    "BillingError",
    "ValidationError",
    "PeriodConflictError",
    "PreconditionError",
    "InvalidTransitionError",
    "GatewayError",
    "GatewayTimeoutError",
    "BrokerageAPIError",
    "WebhookVerificationError",
    "WebhookTimestampError",
]
