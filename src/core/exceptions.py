"""
Error taxonomy for the billing pipeline.

Categories:
1. ValidationError - malformed input, rejected before any side effect
2. PeriodConflictError - the week is already paid/pending
3. PreconditionError - no payment method on file, no fee due
4. InvalidTransitionError - illegal billing period state change
5. GatewayError - declined charge, expired card, network timeout
6. BrokerageAPIError - brokerage ledger fetch failed
7. WebhookVerificationError - bad signature or stale timestamp

Validation/conflict/precondition errors are turned into structured results
by the charge orchestrator. Gateway errors become failed Payment rows.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for all billing pipeline errors"""

    code: str = "billing_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class ValidationError(BillingError):
    code = "validation_error"


class PeriodConflictError(BillingError):
    """A billing period for this (user, week) already exists in a blocking state"""

    code = "conflict"

    def __init__(self, message: str, billing_period_id: Optional[int] = None, status: Optional[str] = None):
        super().__init__(message, billing_period_id=billing_period_id, status=status)
        self.billing_period_id = billing_period_id
        self.status = status


class PreconditionError(BillingError):
    code = "precondition_failed"


class InvalidTransitionError(BillingError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str, billing_period_id: Optional[int] = None):
        super().__init__(
            f"Illegal billing period transition {current} -> {target}",
            current=current,
            target=target,
            billing_period_id=billing_period_id,
        )
        self.current = current
        self.target = target


class GatewayError(BillingError):
    """Payment gateway rejected the request or could not be reached"""

    code = "gateway_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        decline_code: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ):
        super().__init__(
            message,
            status_code=status_code,
            error_code=error_code,
            decline_code=decline_code,
            payment_intent_id=payment_intent_id,
        )
        self.status_code = status_code
        self.error_code = error_code
        self.decline_code = decline_code
        self.payment_intent_id = payment_intent_id


class GatewayTimeoutError(GatewayError):
    """No answer within the configured timeout. Never treated as success."""

    code = "gateway_timeout"


class BrokerageAPIError(BillingError):
    code = "brokerage_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.status_code = status_code

    @property
    def is_auth_error(self) -> bool:
        return self.status_code == 401


class WebhookVerificationError(BillingError):
    code = "invalid_signature"


class WebhookTimestampError(WebhookVerificationError):
    """Signature timestamp outside the tolerance window (possible replay)"""

    code = "invalid_timestamp"
