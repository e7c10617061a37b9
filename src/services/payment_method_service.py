"""
Payment methods, billing enrolment and refunds

Saving the first card enables billing for the user; removing the last one
disables it. Each change is written to the audit log in the same
transaction as the row change.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.enums import BillingEventType, PaymentStatus
from src.core.exceptions import PreconditionError, ValidationError
from src.database import billing_store, crud
from src.database.models import PaymentMethod, User
from src.services.audit_log import record_event
from src.services.payment_gateway import StripeGateway


class PaymentMethodService:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession], gateway: StripeGateway):
        self.session_maker = session_maker
        self.gateway = gateway

    async def _get_user(self, session: AsyncSession, user_id: int) -> User:
        user = await crud.get_user(session, user_id)
        if user is None:
            raise ValidationError(f"User {user_id} not found")
        return user

    async def ensure_customer(self, user_id: int) -> str:
        """Gateway customer ID for the user, created on first use"""
        async with self.session_maker() as session:
            user = await self._get_user(session, user_id)
            if user.gateway_customer_id:
                return user.gateway_customer_id

            customer_id = await self.gateway.create_customer(
                email=user.email,
                name=user.username,
                metadata={"user_id": str(user.id)},
            )
            await crud.update_user(session, user, gateway_customer_id=customer_id)
            await session.commit()

        logger.info(f"User {user_id} linked to gateway customer {customer_id}")
        return customer_id

    async def create_setup_intent(self, user_id: int) -> Dict[str, str]:
        """Start the client-side card form; the card is saved afterwards via save_payment_method"""
        customer_id = await self.ensure_customer(user_id)
        setup_intent = await self.gateway.create_setup_intent(customer_id)
        return {"client_secret": setup_intent["client_secret"], "customer_id": customer_id}

    async def list_payment_methods(self, user_id: int) -> List[PaymentMethod]:
        async with self.session_maker() as session:
            return await crud.get_payment_methods(session, user_id)

    async def save_payment_method(
        self, user_id: int, gateway_payment_method_id: str, make_default: bool = True
    ) -> PaymentMethod:
        """
        Attach a card collected by the gateway's client-side flow and store it
        """
        if not gateway_payment_method_id or not gateway_payment_method_id.startswith("pm_"):
            raise ValidationError("Invalid payment method id")

        customer_id = await self.ensure_customer(user_id)

        async with self.session_maker() as session:
            existing = await crud.get_payment_method_by_gateway_id(session, gateway_payment_method_id)
            if existing is not None:
                if existing.user_id != user_id:
                    raise ValidationError("Payment method belongs to another user")
                return existing

        card = await self.gateway.attach_payment_method(gateway_payment_method_id, customer_id)
        if make_default:
            await self.gateway.set_default_payment_method(customer_id, gateway_payment_method_id)

        async with self.session_maker() as session:
            user = await self._get_user(session, user_id)
            method = await crud.add_payment_method(
                session,
                user_id=user_id,
                gateway_customer_id=customer_id,
                gateway_payment_method_id=gateway_payment_method_id,
                payment_method_type=card.type,
                card_brand=card.brand,
                card_last4=card.last4,
                card_exp_month=card.exp_month,
                card_exp_year=card.exp_year,
                billing_email=card.billing_email or user.email,
                make_default=make_default,
            )
            await record_event(
                session,
                user_id,
                BillingEventType.PAYMENT_METHOD_ADDED,
                {
                    "payment_method_id": gateway_payment_method_id,
                    "card_brand": card.brand,
                    "card_last4": card.last4,
                    "is_default": make_default,
                },
            )
            if not user.billing_enabled:
                await crud.update_user(session, user, billing_enabled=True)
                await record_event(
                    session, user_id, BillingEventType.BILLING_ENABLED, {"reason": "payment_method_added"}
                )
            await session.commit()

        logger.info(f"Payment method {card.brand} ****{card.last4} saved for user {user_id}")
        return method

    async def remove_payment_method(self, user_id: int, payment_method_id: int) -> None:
        """
        Detach and delete one of the user's cards; billing is disabled when
        none remain
        """
        async with self.session_maker() as session:
            method = await session.get(PaymentMethod, payment_method_id)
            if method is None or method.user_id != user_id:
                raise ValidationError(f"Payment method {payment_method_id} not found")
            gateway_id = method.gateway_payment_method_id

        await self.gateway.detach_payment_method(gateway_id)

        async with self.session_maker() as session:
            method = await session.get(PaymentMethod, payment_method_id)
            if method is not None:
                await crud.delete_payment_method(session, method)

            await record_event(
                session,
                user_id,
                BillingEventType.PAYMENT_METHOD_REMOVED,
                {"payment_method_id": gateway_id},
            )

            user = await self._get_user(session, user_id)
            if user.billing_enabled and await crud.count_payment_methods(session, user_id) == 0:
                await crud.update_user(session, user, billing_enabled=False)
                await record_event(
                    session, user_id, BillingEventType.BILLING_DISABLED, {"reason": "no_payment_method"}
                )
            await session.commit()

        logger.info(f"Payment method {gateway_id} removed for user {user_id}")

    async def set_billing_enabled(self, user_id: int, enabled: bool, actor: str = "admin") -> User:
        async with self.session_maker() as session:
            user = await self._get_user(session, user_id)
            if user.billing_enabled == enabled:
                return user

            if enabled and await crud.get_default_payment_method(session, user_id) is None:
                raise PreconditionError(f"User {user_id} has no default payment method")

            await crud.update_user(session, user, billing_enabled=enabled)
            await record_event(
                session,
                user_id,
                BillingEventType.BILLING_ENABLED if enabled else BillingEventType.BILLING_DISABLED,
                {"actor": actor},
            )
            await session.commit()

        logger.info(f"Billing {'enabled' if enabled else 'disabled'} for user {user_id} by {actor}")
        return user

    async def refund_payment(
        self, payment_id: int, amount: Optional[Decimal] = None, admin: str = "admin"
    ) -> Dict[str, Any]:
        """
        Ask the gateway to refund a succeeded payment

        A full refund flips the Payment row to refunded when the
        charge.refunded webhook arrives; partial refunds only record the
        refunded amount.

        Raises:
            ValidationError: Unknown payment or amount out of range
            PreconditionError: Payment has not succeeded
            GatewayError: Gateway rejected the refund
        """
        async with self.session_maker() as session:
            payment = await billing_store.get_payment(session, payment_id)
            if payment is None:
                raise ValidationError(f"Payment {payment_id} not found")
            if payment.status != PaymentStatus.SUCCEEDED.value or not payment.gateway_payment_intent_id:
                raise PreconditionError(f"Payment {payment_id} is {payment.status}, only succeeded payments can be refunded")
            if amount is not None and (amount <= 0 or amount > payment.amount):
                raise ValidationError(f"Refund amount must be between 0.01 and {payment.amount}")
            intent_id = payment.gateway_payment_intent_id

        refund = await self.gateway.refund(
            intent_id,
            amount=amount,
            idempotency_key=f"refund-payment-{payment_id}-{amount if amount is not None else 'full'}",
        )
        logger.info(f"Refund of payment {payment_id} requested by {admin}: {refund.get('id')}")
        return {
            "refund_id": refund.get("id"),
            "status": refund.get("status"),
            "payment_id": payment_id,
            "payment_intent_id": intent_id,
        }
