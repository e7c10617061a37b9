"""
Charge orchestrator

Bills one user for one week, exactly once:

1. compute the week and its P&L (no fee on a flat or losing week)
2. check payment method and any existing period for the week
3. insert the pending BillingPeriod (the unique constraint decides races)
4. log the attempt
5. create the PaymentIntent, store a pending Payment, confirm off-session
6. apply the outcome: paid, failed, or left pending for the webhook

Every step commits before the next external call, so a crash at any point
leaves a row that either the webhook or an admin retry can finish.
Public methods never raise: errors come back as a ChargeResult.
"""

from dataclasses import dataclass
from datetime import datetime, tzinfo
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import FEE_PERCENTAGE, BILLING_CURRENCY
from config.sentry import set_billing_context
from src.core.enums import BillingEventType, BillingPeriodStatus, ChargeStatus, PaymentStatus
from src.core.exceptions import (
    GatewayError,
    GatewayTimeoutError,
    InvalidTransitionError,
    PeriodConflictError,
    PreconditionError,
    ValidationError,
)
from src.database import billing_store, crud
from src.database.models import BillingPeriod
from src.services.audit_log import record_event
from src.services.payment_gateway import PaymentIntentResult, StripeGateway
from src.services.period_calculator import BillingWeek, get_last_week_dates
from src.services.pnl_aggregator import PnlAggregator


def calculate_fee(total_pnl: Decimal, fee_percentage: Decimal) -> Decimal:
    """Fee in dollars, rounded half-up to cents. Zero for non-positive P&L."""
    if total_pnl <= 0:
        return Decimal("0.00")
    return (total_pnl * fee_percentage / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def validate_user_id(user_id: Any) -> int:
    if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
        raise ValidationError(f"Invalid user id: {user_id!r}")
    return user_id


@dataclass
class ChargeResult:
    success: bool
    status: ChargeStatus
    user_id: Optional[int] = None
    billing_period_id: Optional[int] = None
    fee_amount: Optional[Decimal] = None
    payment_intent_id: Optional[str] = None
    error: Optional[str] = None
    week: Optional[BillingWeek] = None
    total_pnl: Optional[Decimal] = None
    trade_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "user_id": self.user_id,
            "billing_period_id": self.billing_period_id,
            "fee_amount": str(self.fee_amount) if self.fee_amount is not None else None,
            "payment_intent_id": self.payment_intent_id,
            "error": self.error,
            "week_start": self.week.week_start.isoformat() if self.week else None,
            "week_end": self.week.week_end.isoformat() if self.week else None,
            "total_pnl": str(self.total_pnl) if self.total_pnl is not None else None,
            "trade_count": self.trade_count,
        }


@dataclass
class _ChargeContext:
    """Snapshot of everything the gateway phase needs, detached from any session"""

    user_id: int
    billing_period_id: int
    attempt: int
    week: BillingWeek
    total_pnl: Decimal
    trade_count: int
    fee_percentage: Decimal
    fee_amount: Decimal
    customer_id: str
    payment_method_id: str
    triggered_by: str

    @classmethod
    def build(cls, period: BillingPeriod, customer_id: str, payment_method_id: str, triggered_by: str):
        return cls(
            user_id=period.user_id,
            billing_period_id=period.id,
            attempt=(period.attempt_count or 0) + 1,
            week=BillingWeek(period.week_start, period.week_end),
            total_pnl=period.total_pnl,
            trade_count=period.trade_count,
            fee_percentage=period.fee_percentage,
            fee_amount=period.fee_amount,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            triggered_by=triggered_by,
        )

    @property
    def idempotency_key(self) -> str:
        return f"billing-period-{self.billing_period_id}-attempt-{self.attempt}"

    def result(self, status: ChargeStatus, **kwargs: Any) -> ChargeResult:
        return ChargeResult(
            success=status == ChargeStatus.CHARGED,
            status=status,
            user_id=self.user_id,
            billing_period_id=self.billing_period_id,
            fee_amount=self.fee_amount,
            week=self.week,
            total_pnl=self.total_pnl,
            trade_count=self.trade_count,
            **kwargs,
        )


class ChargeOrchestrator:
    """
    Drives one weekly charge per (user, week) through the gateway
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        gateway: StripeGateway,
        fee_percentage: Decimal = FEE_PERCENTAGE,
        billing_tz: Optional[tzinfo] = None,
        currency: str = BILLING_CURRENCY,
    ):
        self.session_maker = session_maker
        self.gateway = gateway
        self.fee_percentage = fee_percentage
        self.billing_tz = billing_tz
        self.currency = currency
        self.aggregator = PnlAggregator(billing_tz)

    # ===========================
    # PUBLIC OPERATIONS
    # ===========================

    async def charge_weekly_fee(
        self,
        user_id: int,
        now: Optional[datetime] = None,
        triggered_by: str = "scheduler",
    ) -> ChargeResult:
        """
        Charge the performance fee for the week before "now"

        Returns:
            ChargeResult (never raises)
        """
        week: Optional[BillingWeek] = None
        try:
            validate_user_id(user_id)
            set_billing_context(user_id)
            week = get_last_week_dates(now, self.billing_tz)
            return await self._charge_weekly_fee(user_id, week, triggered_by)
        except ValidationError as e:
            return ChargeResult(
                False,
                ChargeStatus.INVALID,
                user_id=user_id if isinstance(user_id, int) else None,
                error=e.message,
                week=week,
            )
        except PreconditionError as e:
            logger.info(f"User {user_id}: {e.message}")
            return ChargeResult(False, ChargeStatus.PRECONDITION_FAILED, user_id=user_id, error=e.message, week=week)
        except (PeriodConflictError, InvalidTransitionError) as e:
            logger.info(f"User {user_id}: {e.message}")
            return ChargeResult(
                False,
                ChargeStatus.CONFLICT,
                user_id=user_id,
                billing_period_id=e.context.get("billing_period_id"),
                error=e.message,
                week=week,
            )
        except Exception as e:
            logger.exception(f"Unexpected error charging user {user_id}: {e}")
            return ChargeResult(False, ChargeStatus.ERROR, user_id=user_id, error=str(e), week=week)

    async def retry_failed_period(self, period_id: int, triggered_by: str = "admin") -> ChargeResult:
        """
        Explicit re-attempt of a failed period on the same row

        The failed -> pending flip is a compare-and-set, so two concurrent
        retries cannot both reach the gateway.
        """
        try:
            async with self.session_maker() as session:
                period = await billing_store.get_period(session, period_id)
                if period is None:
                    raise ValidationError(f"Billing period {period_id} not found")
                if period.status != BillingPeriodStatus.FAILED.value:
                    raise PeriodConflictError(
                        f"Billing period {period_id} is {period.status}, only failed periods can be retried",
                        billing_period_id=period_id,
                        status=period.status,
                    )

                set_billing_context(period.user_id, period_id)
                customer_id, method_id = await self._require_payment_method(session, period.user_id)

                period = await billing_store.begin_retry(session, period_id)
                ctx = _ChargeContext.build(period, customer_id, method_id, triggered_by)
                await session.commit()

            logger.info(f"Retrying billing period {period_id} (attempt {ctx.attempt}) by {triggered_by}")
            return await self._attempt_charge(ctx)

        except ValidationError as e:
            return ChargeResult(False, ChargeStatus.INVALID, billing_period_id=period_id, error=e.message)
        except PreconditionError as e:
            return ChargeResult(False, ChargeStatus.PRECONDITION_FAILED, billing_period_id=period_id, error=e.message)
        except (PeriodConflictError, InvalidTransitionError) as e:
            return ChargeResult(False, ChargeStatus.CONFLICT, billing_period_id=period_id, error=e.message)
        except Exception as e:
            logger.exception(f"Unexpected error retrying billing period {period_id}: {e}")
            return ChargeResult(False, ChargeStatus.ERROR, billing_period_id=period_id, error=str(e))

    async def waive_period(self, period_id: int, reason: str, admin: str) -> BillingPeriod:
        """
        Administrative override: the period is closed without collecting

        Raises:
            ValidationError: Unknown period or empty reason
            InvalidTransitionError: Period is already paid or waived
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to waive a billing period")

        async with self.session_maker() as session:
            period = await billing_store.get_period(session, period_id)
            if period is None:
                raise ValidationError(f"Billing period {period_id} not found")

            previous_status = period.status
            await billing_store.waive_period(session, period)
            await record_event(
                session,
                period.user_id,
                BillingEventType.PERIOD_WAIVED,
                {
                    "reason": reason.strip(),
                    "admin": admin,
                    "previous_status": previous_status,
                    "fee_amount": period.fee_amount,
                },
                billing_period_id=period.id,
            )
            await session.commit()

        logger.info(f"Billing period {period_id} waived by {admin}: {reason}")
        return period

    async def get_billing_status(self, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Admin view of a user's current billing week

        Raises:
            ValidationError: Invalid or unknown user
        """
        validate_user_id(user_id)
        week = get_last_week_dates(now, self.billing_tz)

        async with self.session_maker() as session:
            user = await crud.get_user(session, user_id)
            if user is None:
                raise ValidationError(f"User {user_id} not found")

            pnl = await self.aggregator.calculate_weekly_pnl(session, user_id, week)
            method = await crud.get_default_payment_method(session, user_id)
            existing = await billing_store.get_period_for_week(
                session, user_id, week.week_start, week.week_end
            )
            history = await billing_store.list_periods(session, user_id, limit=5)

            charge_history = []
            for period in history:
                payment = await billing_store.get_succeeded_payment(session, period.id)
                charge_history.append(
                    {
                        "id": period.id,
                        "week_start": period.week_start.isoformat(),
                        "week_end": period.week_end.isoformat(),
                        "total_pnl": str(period.total_pnl),
                        "fee_amount": str(period.fee_amount),
                        "status": period.status,
                        "attempt_count": period.attempt_count,
                        "paid_at": period.paid_at.isoformat() if period.paid_at else None,
                        "gateway_charge_id": payment.gateway_charge_id if payment else None,
                    }
                )

        has_payment_method = bool(user.gateway_customer_id and method)
        fee_amount = calculate_fee(pnl.total_pnl, self.fee_percentage)
        can_charge = (
            has_payment_method
            and pnl.total_pnl > 0
            and (existing is None or existing.status == BillingPeriodStatus.FAILED.value)
        )

        return {
            "user_id": user_id,
            "week_start": week.week_start.isoformat(),
            "week_end": week.week_end.isoformat(),
            "total_pnl": str(pnl.total_pnl),
            "trade_count": pnl.trade_count,
            "fee_percentage": str(self.fee_percentage),
            "fee_amount": str(fee_amount),
            "billing_enabled": user.billing_enabled,
            "has_payment_method": has_payment_method,
            "payment_method": (
                {"brand": method.card_brand, "last4": method.card_last4} if has_payment_method else None
            ),
            "existing_charge": (
                {
                    "id": existing.id,
                    "status": existing.status,
                    "attempt_count": existing.attempt_count,
                    "paid_at": existing.paid_at.isoformat() if existing.paid_at else None,
                    "payment_intent_id": existing.gateway_payment_intent_id,
                }
                if existing
                else None
            ),
            "can_charge": can_charge,
            "charge_history": charge_history,
        }

    # ===========================
    # INTERNALS
    # ===========================

    async def _require_payment_method(self, session: AsyncSession, user_id: int) -> tuple[str, str]:
        user = await crud.get_user(session, user_id)
        if user is None:
            raise ValidationError(f"User {user_id} not found")

        method = await crud.get_default_payment_method(session, user_id)
        if not user.gateway_customer_id or method is None:
            raise PreconditionError(f"User {user_id} does not have a saved payment method")
        return user.gateway_customer_id, method.gateway_payment_method_id

    async def _charge_weekly_fee(self, user_id: int, week: BillingWeek, triggered_by: str) -> ChargeResult:
        async with self.session_maker() as session:
            if await crud.get_user(session, user_id) is None:
                raise ValidationError(f"User {user_id} not found")

            pnl = await self.aggregator.calculate_weekly_pnl(session, user_id, week)
            if pnl.total_pnl <= 0:
                logger.info(f"User {user_id}: no fee due for {week.label} (P&L ${pnl.total_pnl})")
                return ChargeResult(
                    False,
                    ChargeStatus.NO_FEE_DUE,
                    user_id=user_id,
                    fee_amount=Decimal("0.00"),
                    week=week,
                    total_pnl=pnl.total_pnl,
                    trade_count=pnl.trade_count,
                    error="No fee due on zero or negative P&L",
                )

            customer_id, method_id = await self._require_payment_method(session, user_id)

            blocking = await billing_store.find_active_period(session, user_id, week.week_start, week.week_end)
            existing = None
            if blocking is None:
                existing = await billing_store.get_period_for_week(
                    session, user_id, week.week_start, week.week_end
                )
                # Waived weeks are closed for good
                if existing is not None and existing.status != BillingPeriodStatus.FAILED.value:
                    blocking = existing
            if blocking is not None:
                raise PeriodConflictError(
                    f"Already {'charged' if blocking.status == BillingPeriodStatus.PAID.value else blocking.status} "
                    f"for {week.label}",
                    billing_period_id=blocking.id,
                    status=blocking.status,
                )

            if existing is not None:
                # A failed week is re-attempted on its own row, with its original amounts
                period = await billing_store.begin_retry(session, existing.id)
            else:
                fee_amount = calculate_fee(pnl.total_pnl, self.fee_percentage)
                period = await billing_store.create_pending_period(
                    session,
                    user_id=user_id,
                    week_start=week.week_start,
                    week_end=week.week_end,
                    total_pnl=pnl.total_pnl,
                    trade_count=pnl.trade_count,
                    fee_percentage=self.fee_percentage,
                    fee_amount=fee_amount,
                )
                await record_event(
                    session,
                    user_id,
                    BillingEventType.PERIOD_CREATED,
                    {
                        "week_start": week.week_start,
                        "week_end": week.week_end,
                        "total_pnl": pnl.total_pnl,
                        "trade_count": pnl.trade_count,
                        "fee_percentage": self.fee_percentage,
                        "fee_amount": fee_amount,
                        "triggered_by": triggered_by,
                    },
                    billing_period_id=period.id,
                )

            ctx = _ChargeContext.build(period, customer_id, method_id, triggered_by)
            await session.commit()

        set_billing_context(user_id, ctx.billing_period_id)
        logger.info(
            f"Charging user {user_id} ${ctx.fee_amount} for {week.label} "
            f"(P&L ${ctx.total_pnl}, period {ctx.billing_period_id}, attempt {ctx.attempt})"
        )
        return await self._attempt_charge(ctx)

    async def _attempt_charge(self, ctx: _ChargeContext) -> ChargeResult:
        async with self.session_maker() as session:
            await record_event(
                session,
                ctx.user_id,
                BillingEventType.CHARGE_ATTEMPTED,
                {
                    "attempt": ctx.attempt,
                    "total_pnl": ctx.total_pnl,
                    "fee_amount": ctx.fee_amount,
                    "trade_count": ctx.trade_count,
                    "triggered_by": ctx.triggered_by,
                },
                billing_period_id=ctx.billing_period_id,
            )
            await session.commit()

        try:
            intent = await self.gateway.create_payment_intent(
                amount=ctx.fee_amount,
                currency=self.currency,
                customer_id=ctx.customer_id,
                payment_method_id=ctx.payment_method_id,
                description=f"Performance fee - Week {ctx.week.week_start} to {ctx.week.week_end}",
                metadata={
                    "user_id": str(ctx.user_id),
                    "billing_period_id": str(ctx.billing_period_id),
                    "week_start": ctx.week.week_start.isoformat(),
                    "week_end": ctx.week.week_end.isoformat(),
                    "total_pnl": str(ctx.total_pnl),
                    "fee_percentage": str(ctx.fee_percentage),
                    "attempt": str(ctx.attempt),
                    "triggered_by": ctx.triggered_by,
                },
                idempotency_key=ctx.idempotency_key,
            )
        except GatewayError as e:
            return await self._record_failure(ctx, e.payment_intent_id, self._failure_reason(e), e.decline_code)
        except Exception as e:
            logger.exception(f"Unexpected error creating payment intent for period {ctx.billing_period_id}: {e}")
            return await self._record_failure(ctx, None, f"Unexpected gateway error: {e!r}")

        async with self.session_maker() as session:
            await billing_store.create_payment(
                session,
                user_id=ctx.user_id,
                billing_period_id=ctx.billing_period_id,
                amount=ctx.fee_amount,
                currency=self.currency,
                status=PaymentStatus.PENDING,
                payment_intent_id=intent.id,
                payment_method_id=ctx.payment_method_id,
            )
            period = await billing_store.get_period(session, ctx.billing_period_id)
            await billing_store.set_period_payment_intent(session, period, intent.id)
            await session.commit()

        try:
            confirmed = await self.gateway.confirm_payment_intent(intent.id, ctx.idempotency_key)
        except GatewayError as e:
            return await self._record_failure(ctx, intent.id, self._failure_reason(e), e.decline_code)
        except Exception as e:
            logger.exception(f"Unexpected error confirming payment intent {intent.id}: {e}")
            return await self._record_failure(ctx, intent.id, f"Unexpected gateway error: {e!r}")

        if confirmed.succeeded:
            return await self._record_success(ctx, confirmed)

        if confirmed.is_pending:
            logger.info(
                f"Payment intent {confirmed.id} is {confirmed.status}; period {ctx.billing_period_id} "
                f"stays pending until the webhook arrives"
            )
            return ctx.result(ChargeStatus.PROCESSING, payment_intent_id=confirmed.id)

        reason = confirmed.failure_message or f"Payment intent ended in status {confirmed.status}"
        return await self._record_failure(ctx, confirmed.id, reason, confirmed.decline_code)

    @staticmethod
    def _failure_reason(error: GatewayError) -> str:
        if isinstance(error, GatewayTimeoutError):
            return f"Gateway timeout: {error.message}"
        if error.decline_code:
            return f"{error.message} ({error.decline_code})"
        return error.message

    async def _record_success(self, ctx: _ChargeContext, intent: PaymentIntentResult) -> ChargeResult:
        try:
            async with self.session_maker() as session:
                payment = await billing_store.get_payment_by_intent(session, intent.id)
                if payment.status != PaymentStatus.SUCCEEDED.value:
                    await billing_store.update_payment(
                        session,
                        payment,
                        status=PaymentStatus.SUCCEEDED,
                        gateway_charge_id=intent.charge_id,
                        receipt_url=intent.receipt_url,
                        failure_reason=None,
                    )

                period = await billing_store.get_period(session, ctx.billing_period_id)
                if period.status != BillingPeriodStatus.PAID.value:
                    await billing_store.mark_period_paid(
                        session, period, payment_intent_id=intent.id, charge_id=intent.charge_id
                    )

                await record_event(
                    session,
                    ctx.user_id,
                    BillingEventType.CHARGE_SUCCEEDED,
                    {
                        "payment_intent_id": intent.id,
                        "charge_id": intent.charge_id,
                        "amount": ctx.fee_amount,
                        "attempt": ctx.attempt,
                        "triggered_by": ctx.triggered_by,
                    },
                    billing_period_id=ctx.billing_period_id,
                )
                await session.commit()
        except IntegrityError:
            # Another payment for this period already succeeded: the customer was charged twice
            logger.error(
                f"Second successful charge {intent.id} for billing period {ctx.billing_period_id} "
                f"(user {ctx.user_id}) - refund required"
            )
            async with self.session_maker() as session:
                payment = await billing_store.get_payment_by_intent(session, intent.id)
                await billing_store.update_payment(
                    session,
                    payment,
                    gateway_charge_id=intent.charge_id,
                    failure_reason="Duplicate successful charge for an already paid period; refund required",
                )
                await session.commit()
            return ctx.result(
                ChargeStatus.ERROR,
                payment_intent_id=intent.id,
                error="Billing period was already paid by another payment",
            )

        logger.info(f"Charged user {ctx.user_id} ${ctx.fee_amount} (intent {intent.id})")
        return ctx.result(ChargeStatus.CHARGED, payment_intent_id=intent.id)

    async def _record_failure(
        self,
        ctx: _ChargeContext,
        payment_intent_id: Optional[str],
        reason: str,
        decline_code: Optional[str] = None,
    ) -> ChargeResult:
        async with self.session_maker() as session:
            payment = None
            if payment_intent_id:
                payment = await billing_store.get_payment_by_intent(session, payment_intent_id)

            if payment is None:
                await billing_store.create_payment(
                    session,
                    user_id=ctx.user_id,
                    billing_period_id=ctx.billing_period_id,
                    amount=ctx.fee_amount,
                    currency=self.currency,
                    status=PaymentStatus.FAILED,
                    payment_intent_id=payment_intent_id,
                    payment_method_id=ctx.payment_method_id,
                    failure_reason=reason,
                )
            elif payment.status == PaymentStatus.PENDING.value:
                await billing_store.update_payment(
                    session, payment, status=PaymentStatus.FAILED, failure_reason=reason
                )

            period = await billing_store.get_period(session, ctx.billing_period_id)
            if period.status == BillingPeriodStatus.PAID.value:
                # The webhook got there first with a success
                await session.commit()
                logger.info(f"Billing period {period.id} already paid via webhook, ignoring late failure")
                return ctx.result(ChargeStatus.CHARGED, payment_intent_id=payment_intent_id)

            if period.status == BillingPeriodStatus.PENDING.value:
                await billing_store.mark_period_failed(session, period, payment_intent_id=payment_intent_id)

            await record_event(
                session,
                ctx.user_id,
                BillingEventType.CHARGE_FAILED,
                {
                    "error": reason,
                    "decline_code": decline_code,
                    "payment_intent_id": payment_intent_id,
                    "amount": ctx.fee_amount,
                    "attempt": ctx.attempt,
                    "triggered_by": ctx.triggered_by,
                },
                billing_period_id=ctx.billing_period_id,
            )
            await session.commit()

        logger.warning(
            f"Charge failed for user {ctx.user_id}, period {ctx.billing_period_id} "
            f"(attempt {ctx.attempt}): {reason}"
        )
        return ctx.result(ChargeStatus.FAILED, payment_intent_id=payment_intent_id, error=reason)
