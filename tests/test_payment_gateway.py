"""
Tests for the Stripe client helpers and webhook signature verification
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from src.core.exceptions import GatewayError, WebhookTimestampError, WebhookVerificationError
from src.services.payment_gateway import (
    CardDetails,
    PaymentIntentResult,
    StripeGateway,
    compute_signature,
    construct_event,
    encode_form,
    from_minor_units,
    parse_signature_header,
    to_minor_units,
)


SECRET = "whsec_unit"
NOW = 1_790_000_000


def _signed(body: dict, timestamp: int = NOW, secret: str = SECRET):
    payload = json.dumps(body).encode()
    return payload, f"t={timestamp},v1={compute_signature(payload, secret, timestamp)}"


EVENT = {"id": "evt_1", "type": "payment_intent.succeeded", "created": NOW, "data": {"object": {"id": "pi_1"}}}


class TestMinorUnits:
    @pytest.mark.parametrize(
        "amount, cents",
        [("80.00", 8000), ("0.01", 1), ("123.456", 12346), ("10", 1000)],
    )
    def test_to_minor_units(self, amount, cents):
        assert to_minor_units(Decimal(amount)) == cents

    def test_from_minor_units(self):
        assert from_minor_units(8000) == Decimal("80.00")
        assert from_minor_units(None) == Decimal("0.00")


class TestEncodeForm:
    def test_nested_structures(self):
        pairs = encode_form(
            {
                "amount": 8000,
                "metadata": {"user_id": "7", "billing_period_id": "3"},
                "expand": ["latest_charge"],
                "off_session": True,
                "description": None,
            }
        )

        assert pairs == [
            ("amount", "8000"),
            ("metadata[user_id]", "7"),
            ("metadata[billing_period_id]", "3"),
            ("expand[0]", "latest_charge"),
            ("off_session", "true"),
        ]

    def test_deep_nesting(self):
        assert encode_form({"invoice_settings": {"default_payment_method": "pm_1"}}) == [
            ("invoice_settings[default_payment_method]", "pm_1")
        ]


class TestSignature:
    def test_parse_header(self):
        timestamp, signatures = parse_signature_header("t=123,v1=abc,v0=old,v1=def")

        assert timestamp == 123
        assert signatures == ["abc", "def"]

    @pytest.mark.parametrize("header", ["", "v1=abc", "t=123", "t=abc,v1=def"])
    def test_parse_header_rejects_incomplete(self, header):
        with pytest.raises(WebhookVerificationError):
            parse_signature_header(header)

    def test_valid_event(self):
        payload, header = _signed(EVENT)

        event = construct_event(payload, header, SECRET, tolerance_seconds=300, now=NOW + 10)

        assert event.id == "evt_1"
        assert event.type == "payment_intent.succeeded"
        assert event.data_object == {"id": "pi_1"}

    def test_any_matching_v1_is_accepted(self):
        payload, header = _signed(EVENT)

        event = construct_event(payload, f"t={NOW},v1=deadbeef,{header.split(',')[1]}", SECRET, now=NOW)

        assert event.id == "evt_1"

    def test_wrong_secret(self):
        payload, header = _signed(EVENT, secret="whsec_other")

        with pytest.raises(WebhookVerificationError):
            construct_event(payload, header, SECRET, now=NOW)

    def test_timestamp_outside_tolerance(self):
        payload, header = _signed(EVENT)

        with pytest.raises(WebhookTimestampError):
            construct_event(payload, header, SECRET, tolerance_seconds=300, now=NOW + 301)

        with pytest.raises(WebhookTimestampError):
            construct_event(payload, header, SECRET, tolerance_seconds=300, now=NOW - 301)

    def test_missing_secret(self):
        payload, header = _signed(EVENT)

        with pytest.raises(WebhookVerificationError):
            construct_event(payload, header, "", now=NOW)

    def test_signed_but_malformed_payload(self):
        payload = b"not json"
        header = f"t={NOW},v1={compute_signature(payload, SECRET, NOW)}"

        with pytest.raises(WebhookVerificationError):
            construct_event(payload, header, SECRET, now=NOW)

    def test_signed_payload_without_type(self):
        payload, header = _signed({"id": "evt_1"})

        with pytest.raises(WebhookVerificationError):
            construct_event(payload, header, SECRET, now=NOW)


class TestApiObjects:
    def test_payment_intent_with_expanded_charge(self):
        result = PaymentIntentResult.from_api(
            {
                "id": "pi_1",
                "status": "succeeded",
                "amount": 8000,
                "currency": "usd",
                "latest_charge": {"id": "ch_1", "receipt_url": "https://pay.stripe.com/receipts/1"},
                "metadata": {"billing_period_id": "3"},
            }
        )

        assert result.succeeded
        assert not result.is_pending
        assert result.charge_id == "ch_1"
        assert result.receipt_url.endswith("/1")
        assert result.metadata == {"billing_period_id": "3"}

    def test_declined_payment_intent(self):
        result = PaymentIntentResult.from_api(
            {
                "id": "pi_2",
                "status": "requires_payment_method",
                "latest_charge": "ch_2",
                "last_payment_error": {"message": "Your card was declined.", "decline_code": "insufficient_funds"},
            }
        )

        assert result.failed
        assert result.charge_id == "ch_2"
        assert result.decline_code == "insufficient_funds"

    @pytest.mark.parametrize("status", ["processing", "requires_action", "requires_confirmation"])
    def test_pending_statuses(self, status):
        assert PaymentIntentResult(id="pi", status=status).is_pending

    def test_card_details(self):
        card = CardDetails.from_api(
            {
                "id": "pm_1",
                "type": "card",
                "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030},
                "billing_details": {"email": "t@example.com"},
            }
        )

        assert (card.brand, card.last4, card.exp_month, card.exp_year) == ("visa", "4242", 12, 2030)
        assert card.billing_email == "t@example.com"

    def test_error_from_response(self):
        error = StripeGateway._error_from_response(
            402,
            {
                "error": {
                    "message": "Your card was declined.",
                    "code": "card_declined",
                    "decline_code": "generic_decline",
                    "payment_intent": {"id": "pi_3"},
                }
            },
        )

        assert isinstance(error, GatewayError)
        assert error.status_code == 402
        assert error.decline_code == "generic_decline"
        assert error.payment_intent_id == "pi_3"

    def test_error_without_body(self):
        error = StripeGateway._error_from_response(500, None)

        assert error.message == "Payment gateway error (500)"


class TestGatewayRequests:
    @pytest.fixture
    def stripe(self):
        gw = StripeGateway(secret_key="sk_test_1", webhook_secret=SECRET, api_base="https://stripe.invalid/v1/")
        gw._request = AsyncMock()
        return gw

    async def test_create_payment_intent_sends_cents_and_scoped_key(self, stripe):
        stripe._request.return_value = {"id": "pi_1", "status": "requires_confirmation", "amount": 8000}

        result = await stripe.create_payment_intent(
            amount=Decimal("80.00"),
            currency="usd",
            customer_id="cus_1",
            payment_method_id="pm_1",
            description="Performance fee",
            metadata={"billing_period_id": "3"},
            idempotency_key="billing-period-3-attempt-1",
        )

        method, path, data = stripe._request.call_args.args
        assert (method, path) == ("POST", "/payment_intents")
        assert data["amount"] == 8000
        assert stripe._request.call_args.kwargs["idempotency_key"] == "billing-period-3-attempt-1-create"
        assert result.id == "pi_1"

    async def test_confirm_is_off_session(self, stripe):
        stripe._request.return_value = {"id": "pi_1", "status": "succeeded"}

        result = await stripe.confirm_payment_intent("pi_1", "billing-period-3-attempt-1")

        method, path, data = stripe._request.call_args.args
        assert path == "/payment_intents/pi_1/confirm"
        assert data["off_session"] is True
        assert stripe._request.call_args.kwargs["idempotency_key"] == "billing-period-3-attempt-1-confirm"
        assert result.succeeded

    async def test_partial_refund(self, stripe):
        stripe._request.return_value = {"id": "re_1", "status": "succeeded"}

        await stripe.refund("pi_1", amount=Decimal("30.00"), idempotency_key="refund-1")

        _, path, data = stripe._request.call_args.args
        assert path == "/refunds"
        assert data == {"payment_intent": "pi_1", "amount": 3000}

    async def test_setup_intent_is_for_off_session_use(self, stripe):
        stripe._request.return_value = {"id": "seti_1", "client_secret": "seti_1_secret", "status": "requires_payment_method"}

        result = await stripe.create_setup_intent("cus_1")

        _, path, data = stripe._request.call_args.args
        assert path == "/setup_intents"
        assert data["usage"] == "off_session"
        assert result == {"id": "seti_1", "client_secret": "seti_1_secret"}

    def test_api_base_trailing_slash(self, stripe):
        assert stripe.api_base == "https://stripe.invalid/v1"

    def test_headers(self, stripe):
        headers = stripe._headers("key-1")

        assert headers["Authorization"] == "Bearer sk_test_1"
        assert headers["Idempotency-Key"] == "key-1"
        assert "Idempotency-Key" not in stripe._headers()
