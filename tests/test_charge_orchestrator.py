"""
Tests for the weekly charge flow: fee, exactly-once, failures, retries, waivers
"""

from datetime import datetime, UTC
from decimal import Decimal
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
from aiohttp import web

from src.core.enums import BillingEventType, BillingPeriodStatus, ChargeStatus, PaymentStatus
from src.core.exceptions import GatewayError, GatewayTimeoutError, InvalidTransitionError, ValidationError
from src.database import billing_store, crud
from src.services.audit_log import list_events
from src.services.charge_orchestrator import ChargeOrchestrator, calculate_fee
from src.services.payment_gateway import StripeGateway
from src.services.webhook_reconciler import WebhookReconciler

from conftest import BILLING_NOW, intent, make_event, sign_payload


@pytest.fixture
def orchestrator(session_maker, gateway):
    return ChargeOrchestrator(session_maker, gateway, fee_percentage=Decimal("10"), billing_tz=ZoneInfo("UTC"))


async def _period_and_payments(session_maker, period_id):
    async with session_maker() as session:
        period = await billing_store.get_period(session, period_id)
        payments = await billing_store.list_payments_for_period(session, period_id)
        return period, payments


async def _event_types(session_maker, period_id):
    async with session_maker() as session:
        return [e.event_type for e in await list_events(session, billing_period_id=period_id)]


class TestCalculateFee:
    @pytest.mark.parametrize(
        "pnl, expected",
        [
            ("800", "80.00"),
            ("1234.56", "123.46"),
            ("0.05", "0.01"),  # 0.005 rounds half up
            ("0", "0.00"),
            ("-200", "0.00"),
        ],
    )
    def test_fee(self, pnl, expected):
        assert calculate_fee(Decimal(pnl), Decimal("10")) == Decimal(expected)


class TestChargeWeeklyFee:
    async def test_profitable_week_is_charged(self, orchestrator, gateway, session_maker, user_factory, trade_factory):
        user = await user_factory()
        await trade_factory(user.id, "500")
        await trade_factory(user.id, "300", entry_date=datetime(2026, 10, 15, 15, 0, tzinfo=UTC))

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.success is True
        assert result.status == ChargeStatus.CHARGED
        assert result.fee_amount == Decimal("80.00")
        assert result.total_pnl == Decimal("800.00")
        assert result.trade_count == 2
        assert result.payment_intent_id == "pi_test_1"

        create_kwargs = gateway.create_payment_intent.call_args.kwargs
        assert create_kwargs["amount"] == Decimal("80.00")
        assert create_kwargs["customer_id"] == "cus_trader"
        assert create_kwargs["payment_method_id"] == "pm_trader"
        assert create_kwargs["idempotency_key"] == f"billing-period-{result.billing_period_id}-attempt-1"
        assert create_kwargs["metadata"]["billing_period_id"] == str(result.billing_period_id)
        assert create_kwargs["metadata"]["week_start"] == "2026-10-12"
        gateway.confirm_payment_intent.assert_awaited_once_with("pi_test_1", create_kwargs["idempotency_key"])

        period, payments = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.PAID.value
        assert period.fee_amount == Decimal("80.00")
        assert period.total_pnl == Decimal("800.00")
        assert period.paid_at is not None
        assert period.gateway_charge_id == "ch_test_1"
        assert len(payments) == 1
        assert payments[0].status == PaymentStatus.SUCCEEDED.value
        assert payments[0].gateway_payment_intent_id == "pi_test_1"

        assert await _event_types(session_maker, period.id) == [
            "period_created",
            "charge_attempted",
            "charge_succeeded",
        ]

    async def test_losing_week_creates_nothing(self, orchestrator, gateway, session_maker, user_factory, trade_factory):
        user = await user_factory()
        await trade_factory(user.id, "-200")

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.success is False
        assert result.status == ChargeStatus.NO_FEE_DUE
        assert result.fee_amount == Decimal("0.00")
        gateway.create_payment_intent.assert_not_awaited()

        async with session_maker() as session:
            assert await billing_store.list_periods(session, user.id) == []

    async def test_flat_week_creates_nothing(self, orchestrator, gateway, user_factory):
        user = await user_factory()

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.NO_FEE_DUE
        gateway.create_payment_intent.assert_not_awaited()

    async def test_no_payment_method(self, orchestrator, gateway, session_maker, user_factory, trade_factory):
        user = await user_factory(with_payment_method=False)
        await trade_factory(user.id, "800")

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.PRECONDITION_FAILED
        gateway.create_payment_intent.assert_not_awaited()
        async with session_maker() as session:
            assert await billing_store.list_periods(session, user.id) == []

    @pytest.mark.parametrize("user_id", [0, -1, "1", None])
    async def test_invalid_user_id(self, orchestrator, gateway, user_id):
        result = await orchestrator.charge_weekly_fee(user_id, now=BILLING_NOW)

        assert result.status == ChargeStatus.INVALID
        gateway.create_payment_intent.assert_not_awaited()

    async def test_unknown_user(self, orchestrator):
        result = await orchestrator.charge_weekly_fee(4242, now=BILLING_NOW)

        assert result.status == ChargeStatus.INVALID
        assert "not found" in result.error

    async def test_second_charge_for_same_week_conflicts(self, orchestrator, gateway, user_factory, trade_factory):
        user = await user_factory()
        await trade_factory(user.id, "800")

        first = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)
        second = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert first.status == ChargeStatus.CHARGED
        assert second.status == ChargeStatus.CONFLICT
        assert second.billing_period_id == first.billing_period_id
        assert "Already charged" in second.error
        assert gateway.create_payment_intent.await_count == 1

    async def test_any_time_during_the_following_week_bills_the_same_week(
        self, orchestrator, gateway, user_factory, trade_factory
    ):
        user = await user_factory()
        await trade_factory(user.id, "800")

        first = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)
        later = await orchestrator.charge_weekly_fee(user.id, now=datetime(2026, 10, 21, 12, 0, tzinfo=UTC))

        assert later.status == ChargeStatus.CONFLICT
        assert later.billing_period_id == first.billing_period_id

    async def test_insert_race_loser_never_reaches_gateway(
        self, orchestrator, gateway, session_maker, user_factory, trade_factory, monkeypatch
    ):
        """Both billers pass the existence check; the unique constraint picks one"""
        user = await user_factory()
        await trade_factory(user.id, "800")

        gateway.confirm_payment_intent.return_value = intent(status="processing")
        winner = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)
        assert winner.status == ChargeStatus.PROCESSING

        monkeypatch.setattr(billing_store, "get_period_for_week", AsyncMock(return_value=None))
        loser = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert loser.status == ChargeStatus.CONFLICT
        assert gateway.create_payment_intent.await_count == 1

        monkeypatch.undo()
        async with session_maker() as session:
            periods = await billing_store.list_periods(session, user.id)
        assert len(periods) == 1

    async def test_users_are_billed_independently(self, orchestrator, gateway, user_factory, trade_factory):
        alice = await user_factory(username="alice")
        bob = await user_factory(username="bob")
        await trade_factory(alice.id, "800")
        await trade_factory(bob.id, "100")

        gateway.create_payment_intent.side_effect = [
            intent("pi_alice", status="requires_confirmation"),
            intent("pi_bob", status="requires_confirmation", amount=1000),
        ]
        gateway.confirm_payment_intent.side_effect = [
            intent("pi_alice"),
            intent("pi_bob", amount=1000, charge_id="ch_bob"),
        ]

        a = await orchestrator.charge_weekly_fee(alice.id, now=BILLING_NOW)
        b = await orchestrator.charge_weekly_fee(bob.id, now=BILLING_NOW)

        assert (a.status, a.fee_amount) == (ChargeStatus.CHARGED, Decimal("80.00"))
        assert (b.status, b.fee_amount) == (ChargeStatus.CHARGED, Decimal("10.00"))
        assert a.billing_period_id != b.billing_period_id


class TestChargeFailures:
    async def test_declined_card(self, orchestrator, gateway, session_maker, user_factory, trade_factory):
        user = await user_factory()
        await trade_factory(user.id, "800")
        gateway.confirm_payment_intent.return_value = intent(
            status="requires_payment_method",
            failure_message="Your card was declined.",
            decline_code="card_declined",
        )

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.success is False
        assert result.status == ChargeStatus.FAILED
        assert result.error == "Your card was declined."

        period, payments = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.FAILED.value
        assert period.attempt_count == 1
        assert [p.status for p in payments] == [PaymentStatus.FAILED.value]
        assert payments[0].failure_reason == "Your card was declined."

        assert await _event_types(session_maker, period.id) == [
            "period_created",
            "charge_attempted",
            "charge_failed",
        ]

    async def test_gateway_rejects_intent_creation(self, orchestrator, gateway, session_maker, user_factory, trade_factory):
        user = await user_factory()
        await trade_factory(user.id, "800")
        gateway.create_payment_intent.side_effect = GatewayError(
            "Your card has expired.", status_code=402, error_code="card_declined", decline_code="expired_card"
        )

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.FAILED
        assert "expired_card" in result.error
        gateway.confirm_payment_intent.assert_not_awaited()

        period, payments = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.FAILED.value
        assert len(payments) == 1
        assert payments[0].gateway_payment_intent_id is None

    async def test_timeout_then_webhook_converges_to_paid(
        self, orchestrator, gateway, session_maker, user_factory, trade_factory
    ):
        user = await user_factory()
        await trade_factory(user.id, "800")
        gateway.create_payment_intent.side_effect = GatewayTimeoutError("Stripe request timed out")

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.FAILED
        assert result.error.startswith("Gateway timeout")
        period, payments = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.FAILED.value
        assert period.attempt_count == 1
        assert payments[0].status == PaymentStatus.FAILED.value

        # The intent was in fact created and later succeeded
        reconciler = WebhookReconciler(session_maker, gateway)
        event = make_event(
            "evt_late_success",
            "payment_intent.succeeded",
            {
                "id": "pi_late",
                "object": "payment_intent",
                "amount": 8000,
                "currency": "usd",
                "latest_charge": "ch_late",
                "metadata": {"billing_period_id": str(result.billing_period_id), "user_id": str(user.id)},
            },
        )
        await reconciler.handle(*sign_payload(event))

        period, payments = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.PAID.value
        assert period.gateway_charge_id == "ch_late"
        statuses = sorted((p.gateway_payment_intent_id or "", p.status) for p in payments)
        assert statuses == [("", "failed"), ("pi_late", "succeeded")]

    async def test_webhook_success_beats_late_confirm_error(
        self, orchestrator, gateway, session_maker, user_factory, trade_factory
    ):
        user = await user_factory()
        await trade_factory(user.id, "800")
        reconciler = WebhookReconciler(session_maker, gateway)

        async def confirm_after_webhook(intent_id, idempotency_key):
            event = make_event(
                "evt_fast",
                "payment_intent.succeeded",
                {"id": intent_id, "amount": 8000, "currency": "usd", "latest_charge": "ch_fast"},
            )
            await reconciler.handle(*sign_payload(event))
            raise GatewayTimeoutError("confirm timed out", payment_intent_id=intent_id)

        gateway.confirm_payment_intent.side_effect = confirm_after_webhook

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.CHARGED
        period, payments = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.PAID.value
        assert period.attempt_count == 0
        assert [p.status for p in payments] == [PaymentStatus.SUCCEEDED.value]

    async def test_pending_intent_leaves_period_pending(
        self, orchestrator, gateway, session_maker, user_factory, trade_factory
    ):
        user = await user_factory()
        await trade_factory(user.id, "800")
        gateway.confirm_payment_intent.return_value = intent(status="processing")

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.PROCESSING
        assert result.success is False
        period, payments = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.PENDING.value
        assert period.gateway_payment_intent_id == "pi_test_1"
        assert [p.status for p in payments] == [PaymentStatus.PENDING.value]

        again = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)
        assert again.status == ChargeStatus.CONFLICT
        assert again.billing_period_id == result.billing_period_id
        assert "Already pending" in again.error
        assert gateway.create_payment_intent.await_count == 1


class TestRetry:
    async def _failed_charge(self, orchestrator, gateway, user_factory, trade_factory):
        user = await user_factory()
        await trade_factory(user.id, "800")
        gateway.confirm_payment_intent.return_value = intent(
            status="requires_payment_method", failure_message="Insufficient funds"
        )
        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)
        assert result.status == ChargeStatus.FAILED

        gateway.create_payment_intent.return_value = intent("pi_test_2", status="requires_confirmation")
        gateway.confirm_payment_intent.return_value = intent("pi_test_2", charge_id="ch_test_2")
        return user, result

    async def test_rerun_retries_failed_period_with_original_amounts(
        self, orchestrator, gateway, session_maker, user_factory, trade_factory
    ):
        user, failed = await self._failed_charge(orchestrator, gateway, user_factory, trade_factory)
        # a late-synced trade does not change an already computed week
        await trade_factory(user.id, "1200")

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.CHARGED
        assert result.billing_period_id == failed.billing_period_id
        assert result.fee_amount == Decimal("80.00")
        assert gateway.create_payment_intent.call_args.kwargs["idempotency_key"] == (
            f"billing-period-{failed.billing_period_id}-attempt-2"
        )

        period, payments = await _period_and_payments(session_maker, failed.billing_period_id)
        assert period.status == BillingPeriodStatus.PAID.value
        assert period.attempt_count == 1
        assert [p.status for p in payments] == ["failed", "succeeded"]

    async def test_retry_failed_period(self, orchestrator, gateway, session_maker, user_factory, trade_factory):
        _, failed = await self._failed_charge(orchestrator, gateway, user_factory, trade_factory)

        result = await orchestrator.retry_failed_period(failed.billing_period_id, triggered_by="admin:ops")

        assert result.status == ChargeStatus.CHARGED
        assert result.payment_intent_id == "pi_test_2"
        period, _ = await _period_and_payments(session_maker, failed.billing_period_id)
        assert period.status == BillingPeriodStatus.PAID.value

        again = await orchestrator.retry_failed_period(failed.billing_period_id)
        assert again.status == ChargeStatus.CONFLICT

    async def test_retry_unknown_period(self, orchestrator):
        result = await orchestrator.retry_failed_period(9999)

        assert result.status == ChargeStatus.INVALID

    async def test_retry_without_payment_method(
        self, orchestrator, gateway, session_maker, user_factory, trade_factory
    ):
        user, failed = await self._failed_charge(orchestrator, gateway, user_factory, trade_factory)
        async with session_maker() as session:
            for method in await crud.get_payment_methods(session, user.id):
                await crud.delete_payment_method(session, method)
            await session.commit()

        result = await orchestrator.retry_failed_period(failed.billing_period_id)

        assert result.status == ChargeStatus.PRECONDITION_FAILED
        period, _ = await _period_and_payments(session_maker, failed.billing_period_id)
        assert period.status == BillingPeriodStatus.FAILED.value


class TestWaive:
    async def test_waive_failed_period(self, orchestrator, gateway, session_maker, user_factory, trade_factory):
        user = await user_factory()
        await trade_factory(user.id, "800")
        gateway.confirm_payment_intent.return_value = intent(status="canceled")
        failed = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        period = await orchestrator.waive_period(failed.billing_period_id, "Goodwill credit", admin="ops")

        assert period.status == BillingPeriodStatus.WAIVED.value
        async with session_maker() as session:
            events = await list_events(
                session, billing_period_id=period.id, event_type=BillingEventType.PERIOD_WAIVED
            )
        assert events[0].event_data["reason"] == "Goodwill credit"
        assert events[0].event_data["previous_status"] == "failed"

        retry = await orchestrator.retry_failed_period(period.id)
        assert retry.status == ChargeStatus.CONFLICT

        rerun = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)
        assert rerun.status == ChargeStatus.CONFLICT
        assert "Already waived" in rerun.error

    async def test_waive_requires_reason(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.waive_period(1, "  ", admin="ops")

    async def test_paid_period_cannot_be_waived(self, orchestrator, user_factory, trade_factory):
        user = await user_factory()
        await trade_factory(user.id, "800")
        paid = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.waive_period(paid.billing_period_id, "too late", admin="ops")


class TestBillingStatus:
    async def test_status_before_and_after_charge(self, orchestrator, user_factory, trade_factory):
        user = await user_factory()
        await trade_factory(user.id, "800")

        before = await orchestrator.get_billing_status(user.id, now=BILLING_NOW)

        assert before["week_start"] == "2026-10-12"
        assert before["week_end"] == "2026-10-16"
        assert before["total_pnl"] == "800.00"
        assert before["fee_amount"] == "80.00"
        assert before["has_payment_method"] is True
        assert before["payment_method"] == {"brand": "visa", "last4": "4242"}
        assert before["existing_charge"] is None
        assert before["can_charge"] is True

        await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)
        after = await orchestrator.get_billing_status(user.id, now=BILLING_NOW)

        assert after["existing_charge"]["status"] == "paid"
        assert after["can_charge"] is False
        assert after["charge_history"][0]["gateway_charge_id"] == "ch_test_1"

    async def test_unknown_user(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.get_billing_status(4242, now=BILLING_NOW)


class TestMalformedGatewayResponses:
    """Real StripeGateway against a local HTTP server returning broken bodies"""

    async def _charge_against(self, http_server, session_maker, routes):
        server = await http_server(routes)
        stripe = StripeGateway(
            secret_key="sk_test_1",
            webhook_secret="whsec_unused",
            api_base=str(server.make_url("/v1")),
            timeout_seconds=5,
        )
        return ChargeOrchestrator(session_maker, stripe, fee_percentage=Decimal("10"), billing_tz=ZoneInfo("UTC"))

    async def test_html_502_on_create_fails_the_period(self, http_server, session_maker, user_factory, trade_factory):
        async def bad_gateway(request):
            return web.Response(status=502, text="<html>Bad Gateway</html>", content_type="text/html")

        orchestrator = await self._charge_against(
            http_server, session_maker, [web.post("/v1/payment_intents", bad_gateway)]
        )
        user = await user_factory()
        await trade_factory(user.id, "800")

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.FAILED
        assert result.error == "Payment gateway error (502)"
        period, payments = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.FAILED.value
        assert period.attempt_count == 1
        assert [p.status for p in payments] == [PaymentStatus.FAILED.value]

    async def test_non_json_confirm_fails_the_created_payment(
        self, http_server, session_maker, user_factory, trade_factory
    ):
        async def create(request):
            return web.json_response({"id": "pi_http_1", "status": "requires_confirmation", "amount": 8000})

        async def confirm(request):
            return web.Response(status=200, text="upstream reset", content_type="text/plain")

        orchestrator = await self._charge_against(
            http_server,
            session_maker,
            [web.post("/v1/payment_intents", create), web.post("/v1/payment_intents/pi_http_1/confirm", confirm)],
        )
        user = await user_factory()
        await trade_factory(user.id, "800")

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.FAILED
        assert result.payment_intent_id == "pi_http_1"
        period, payments = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.FAILED.value
        assert len(payments) == 1
        assert payments[0].gateway_payment_intent_id == "pi_http_1"
        assert payments[0].status == PaymentStatus.FAILED.value

    async def test_intent_without_id_fails_the_period(self, http_server, session_maker, user_factory, trade_factory):
        async def create(request):
            return web.json_response({"object": "payment_intent", "status": "requires_confirmation"})

        orchestrator = await self._charge_against(
            http_server, session_maker, [web.post("/v1/payment_intents", create)]
        )
        user = await user_factory()
        await trade_factory(user.id, "800")

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.FAILED
        assert result.error.startswith("Malformed PaymentIntent")
        period, _ = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.FAILED.value

    async def test_unexpected_exception_from_gateway_is_a_failed_attempt(
        self, orchestrator, gateway, session_maker, user_factory, trade_factory
    ):
        user = await user_factory()
        await trade_factory(user.id, "800")
        gateway.confirm_payment_intent.side_effect = RuntimeError("decoder blew up")

        result = await orchestrator.charge_weekly_fee(user.id, now=BILLING_NOW)

        assert result.status == ChargeStatus.FAILED
        period, payments = await _period_and_payments(session_maker, result.billing_period_id)
        assert period.status == BillingPeriodStatus.FAILED.value
        assert payments[0].status == PaymentStatus.FAILED.value
        assert "decoder blew up" in payments[0].failure_reason
