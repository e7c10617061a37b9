"""
Payment gateway webhook reconciler

Converges Payment and BillingPeriod rows with what the gateway reports
asynchronously:

- payment_intent.succeeded      -> Payment succeeded, period paid
- payment_intent.payment_failed -> Payment failed, period failed (if still pending)
- charge.refunded               -> refund amount recorded; Payment refunded once fully refunded,
                                   period stays paid

Signature and timestamp are checked before anything else. Each gateway
event ID is recorded once in billing_events together with the state change
(same transaction), so redeliveries are no-ops. A succeeded or refunded
Payment and a paid period are never downgraded.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.enums import BillingEventType, BillingPeriodStatus, PaymentStatus
from src.database import billing_store
from src.database.models import Payment
from src.services.audit_log import has_processed_event, record_event
from src.services.payment_gateway import StripeGateway, WebhookEvent, from_minor_units

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
CHARGE_REFUNDED = "charge.refunded"

FINAL_PAYMENT_STATUSES = (PaymentStatus.SUCCEEDED.value, PaymentStatus.REFUNDED.value)


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    received: bool = True
    duplicate: bool = False
    handled: bool = False
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"received": self.received}
        if self.duplicate:
            data["duplicate"] = True
        return data


def _ref_id(value: Any) -> Optional[str]:
    """Expanded object or bare ID"""
    if isinstance(value, dict):
        return value.get("id")
    return value


class WebhookReconciler:
    """
    Applies verified gateway events to local billing state
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], gateway: StripeGateway):
        self.session_maker = session_maker
        self.gateway = gateway
        self._handlers = {
            PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            PAYMENT_FAILED: self._handle_payment_failed,
            CHARGE_REFUNDED: self._handle_charge_refunded,
        }

    async def handle(self, payload: bytes, signature_header: str) -> WebhookResult:
        """
        Verify, de-duplicate and apply one webhook delivery

        Raises:
            WebhookVerificationError: Bad signature or malformed payload
            WebhookTimestampError: Timestamp outside tolerance
        """
        event = self.gateway.construct_event(payload, signature_header)
        return await self.apply_event(event)

    async def apply_event(self, event: WebhookEvent) -> WebhookResult:
        result = WebhookResult(event_id=event.id, event_type=event.type)

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug(f"Ignoring webhook {event.id} of type {event.type}")
            result.detail = "ignored"
            return result

        async with self.session_maker() as session:
            if await has_processed_event(session, event.id):
                logger.info(f"Duplicate webhook {event.id} ({event.type})")
                result.duplicate = True
                return result

            try:
                result.detail = await handler(session, event)
                await session.commit()
            except IntegrityError:
                # A concurrent delivery of the same event committed first
                await session.rollback()
                logger.info(f"Duplicate webhook {event.id} ({event.type}) lost the insert race")
                result.duplicate = True
                return result

        result.handled = result.detail != "payment not found"
        logger.info(f"Webhook {event.id} ({event.type}): {result.detail}")
        return result

    # ===========================
    # HANDLERS
    # ===========================

    async def _locate_payment(
        self, session: AsyncSession, payment_intent_id: Optional[str], intent: Dict[str, Any]
    ) -> Optional[Payment]:
        """
        Payment for the intent; falls back to the billing_period_id metadata
        when the process died between creating the intent and storing it
        """
        if not payment_intent_id:
            return None

        payment = await billing_store.get_payment_by_intent(session, payment_intent_id)
        if payment is not None:
            return payment

        period_ref = (intent.get("metadata") or {}).get("billing_period_id")
        if not period_ref or not str(period_ref).isdigit():
            return None

        period = await billing_store.get_period(session, int(period_ref))
        if period is None:
            return None

        logger.warning(
            f"No payment row for intent {payment_intent_id}; recovering it from period {period.id} metadata"
        )
        return await billing_store.create_payment(
            session,
            user_id=period.user_id,
            billing_period_id=period.id,
            amount=from_minor_units(intent.get("amount")),
            currency=intent.get("currency") or "usd",
            status=PaymentStatus.PENDING,
            payment_intent_id=payment_intent_id,
            payment_method_id=_ref_id(intent.get("payment_method")),
        )

    async def _handle_payment_succeeded(self, session: AsyncSession, event: WebhookEvent) -> str:
        intent = event.data_object
        intent_id = intent.get("id")
        payment = await self._locate_payment(session, intent_id, intent)
        if payment is None:
            return "payment not found"

        charge_id = _ref_id(intent.get("latest_charge"))
        detail = "payment succeeded"
        duplicate_charge = False

        if payment.billing_period_id is not None:
            other = await billing_store.get_succeeded_payment(session, payment.billing_period_id)
            if other is not None and other.id != payment.id:
                duplicate_charge = True

        if duplicate_charge:
            logger.error(
                f"Intent {intent_id} succeeded but period {payment.billing_period_id} "
                f"was already paid by payment {other.id} - refund required"
            )
            await billing_store.update_payment(
                session,
                payment,
                gateway_charge_id=charge_id or payment.gateway_charge_id,
                failure_reason="Duplicate successful charge for an already paid period; refund required",
            )
            detail = "duplicate charge"
        elif payment.status not in FINAL_PAYMENT_STATUSES:
            await billing_store.update_payment(
                session,
                payment,
                status=PaymentStatus.SUCCEEDED,
                gateway_charge_id=charge_id or payment.gateway_charge_id,
                failure_reason=None,
            )
        else:
            detail = f"payment already {payment.status}"

        if payment.billing_period_id is not None and not duplicate_charge:
            period = await billing_store.get_period(session, payment.billing_period_id)
            if period.status == BillingPeriodStatus.WAIVED.value:
                logger.warning(f"Payment {payment.id} succeeded for waived period {period.id}")
            elif period.status != BillingPeriodStatus.PAID.value:
                await billing_store.mark_period_paid(
                    session, period, payment_intent_id=intent_id, charge_id=charge_id
                )
                detail = "period paid"

        await record_event(
            session,
            payment.user_id,
            BillingEventType.CHARGE_SUCCEEDED,
            {
                "payment_intent_id": intent_id,
                "charge_id": charge_id,
                "amount": from_minor_units(intent.get("amount_received") or intent.get("amount")),
                "source": "webhook",
                "duplicate_charge": duplicate_charge,
            },
            billing_period_id=payment.billing_period_id,
            external_event_id=event.id,
        )
        return detail

    async def _handle_payment_failed(self, session: AsyncSession, event: WebhookEvent) -> str:
        intent = event.data_object
        intent_id = intent.get("id")
        payment = await self._locate_payment(session, intent_id, intent)
        if payment is None:
            return "payment not found"

        last_error = intent.get("last_payment_error") or {}
        failure_reason = last_error.get("message") or last_error.get("code") or "payment_failed"
        detail = "payment failed"

        if payment.status in FINAL_PAYMENT_STATUSES:
            detail = f"payment already {payment.status}, not downgraded"
        else:
            await billing_store.update_payment(
                session, payment, status=PaymentStatus.FAILED, failure_reason=failure_reason
            )

        if payment.billing_period_id is not None:
            period = await billing_store.get_period(session, payment.billing_period_id)
            if period.gateway_payment_intent_id != intent_id:
                # Failure of an earlier attempt; the current one may still succeed
                logger.info(
                    f"Intent {intent_id} failed but period {period.id} is on attempt "
                    f"{period.gateway_payment_intent_id or '(starting)'}; period left {period.status}"
                )
                detail = "stale attempt"
            elif period.status == BillingPeriodStatus.PENDING.value:
                await billing_store.mark_period_failed(session, period, payment_intent_id=intent_id)
                detail = "period failed"

        await record_event(
            session,
            payment.user_id,
            BillingEventType.CHARGE_FAILED,
            {
                "payment_intent_id": intent_id,
                "failure_reason": failure_reason,
                "decline_code": last_error.get("decline_code"),
                "source": "webhook",
            },
            billing_period_id=payment.billing_period_id,
            external_event_id=event.id,
        )
        return detail

    async def _handle_charge_refunded(self, session: AsyncSession, event: WebhookEvent) -> str:
        charge = event.data_object
        intent_id = _ref_id(charge.get("payment_intent"))
        if not intent_id:
            return "payment not found"

        payment = await billing_store.get_payment_by_intent(session, intent_id)
        if payment is None:
            return "payment not found"

        amount_refunded: Decimal = from_minor_units(charge.get("amount_refunded"))
        fields: Dict[str, Any] = {
            "amount_refunded": amount_refunded,
            "gateway_charge_id": payment.gateway_charge_id or charge.get("id"),
        }
        if payment.status not in FINAL_PAYMENT_STATUSES:
            logger.warning(
                f"Refund of {amount_refunded} reported for payment {payment.id} in status {payment.status}; "
                "status left unchanged"
            )
            detail = f"refund recorded, payment {payment.status}"
        elif charge.get("refunded") or amount_refunded >= payment.amount:
            fields["status"] = PaymentStatus.REFUNDED
            detail = "payment refunded"
        else:
            detail = "partial refund recorded"
        await billing_store.update_payment(session, payment, **fields)

        await record_event(
            session,
            payment.user_id,
            BillingEventType.REFUND_ISSUED,
            {
                "payment_intent_id": intent_id,
                "charge_id": charge.get("id"),
                "amount_refunded": amount_refunded,
                "full_refund": fields.get("status") == PaymentStatus.REFUNDED,
                "source": "webhook",
            },
            billing_period_id=payment.billing_period_id,
            external_event_id=event.id,
        )
        return detail
