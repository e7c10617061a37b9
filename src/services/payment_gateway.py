# coding: utf-8
"""
Stripe payment gateway client

Talks to the Stripe REST API directly over aiohttp:
- Customers and saved payment methods
- Off-session PaymentIntents (create, then confirm)
- Refunds
- Webhook signature verification (HMAC-SHA256, timestamp tolerance)

API Documentation: https://stripe.com/docs/api

The client is constructed once at startup and injected into the services
that need it. Every call is bounded by GATEWAY_TIMEOUT_SECONDS; a timeout
raises GatewayTimeoutError and is never read as success.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config.config import (
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    STRIPE_API_BASE,
    GATEWAY_TIMEOUT_SECONDS,
    WEBHOOK_TOLERANCE_SECONDS,
)
from src.core.exceptions import (
    GatewayError,
    GatewayTimeoutError,
    WebhookVerificationError,
    WebhookTimestampError,
)


logger = logging.getLogger(__name__)

# PaymentIntent statuses where the outcome is not known yet
PENDING_INTENT_STATUSES = frozenset(
    {"processing", "requires_action", "requires_confirmation", "requires_capture"}
)
FAILED_INTENT_STATUSES = frozenset({"requires_payment_method", "canceled"})


def to_minor_units(amount: Decimal) -> int:
    """Dollars to cents"""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Optional[int]) -> Decimal:
    return (Decimal(int(amount or 0)) / 100).quantize(Decimal("0.01"))


def encode_form(data: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """
    Flatten nested params into Stripe's form encoding

    {"metadata": {"a": 1}} -> [("metadata[a]", "1")]
    """
    pairs: List[Tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, f"{name}[{index}]"))
                else:
                    pairs.append((f"{name}[{index}]", str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


@dataclass
class PaymentIntentResult:
    """What we keep from a PaymentIntent response"""

    id: str
    status: str
    amount: int = 0
    currency: str = "usd"
    charge_id: Optional[str] = None
    receipt_url: Optional[str] = None
    failure_message: Optional[str] = None
    decline_code: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PaymentIntentResult":
        charge = data.get("latest_charge")
        charge_id = charge.get("id") if isinstance(charge, dict) else charge
        receipt_url = charge.get("receipt_url") if isinstance(charge, dict) else None

        last_error = data.get("last_payment_error") or {}
        return cls(
            id=data["id"],
            status=data.get("status", ""),
            amount=int(data.get("amount") or 0),
            currency=data.get("currency", "usd"),
            charge_id=charge_id,
            receipt_url=receipt_url,
            failure_message=last_error.get("message"),
            decline_code=last_error.get("decline_code"),
            metadata=dict(data.get("metadata") or {}),
        )

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_INTENT_STATUSES

    @property
    def failed(self) -> bool:
        return self.status in FAILED_INTENT_STATUSES


@dataclass
class CardDetails:
    id: str
    type: str = "card"
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    billing_email: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CardDetails":
        card = data.get("card") or {}
        billing = data.get("billing_details") or {}
        return cls(
            id=data["id"],
            type=data.get("type", "card"),
            brand=card.get("brand"),
            last4=card.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
            billing_email=billing.get("email"),
        )


@dataclass
class WebhookEvent:
    id: str
    type: str
    created: int
    data_object: Dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WebhookEvent":
        try:
            return cls(
                id=payload["id"],
                type=payload["type"],
                created=int(payload.get("created") or 0),
                data_object=(payload.get("data") or {}).get("object") or {},
            )
        except (KeyError, TypeError) as e:
            raise WebhookVerificationError(f"Malformed webhook payload: {e}")


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over "{timestamp}.{payload}" as hex"""
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> Tuple[int, List[str]]:
    """
    Split "t=...,v1=...,v1=..." into (timestamp, [v1 signatures])
    """
    timestamp: Optional[int] = None
    signatures: List[str] = []

    for item in (header or "").split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookVerificationError("Invalid timestamp in signature header")
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookVerificationError("Unable to extract timestamp and signatures from header")
    return timestamp, signatures


def construct_event(
    payload: bytes,
    signature_header: str,
    secret: str,
    tolerance_seconds: int = WEBHOOK_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> WebhookEvent:
    """
    Verify a webhook delivery and parse it

    Raises:
        WebhookVerificationError: Missing/invalid signature or malformed body
        WebhookTimestampError: Signed timestamp outside the tolerance window
    """
    if not secret:
        raise WebhookVerificationError("Webhook secret is not configured")

    timestamp, signatures = parse_signature_header(signature_header)
    expected = compute_signature(payload, secret, timestamp)

    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookVerificationError("No signatures found matching the expected signature")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise WebhookTimestampError("Timestamp outside the tolerance zone")

    try:
        body = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookVerificationError(f"Invalid JSON payload: {e}")

    return WebhookEvent.from_payload(body)


class StripeGateway:
    """
    Stripe REST client

    Features:
    - Idempotency keys on money-moving calls
    - Bounded timeout on every request
    - Automatic retries on transport errors for read-only calls
    """

    def __init__(
        self,
        secret_key: str = STRIPE_SECRET_KEY,
        webhook_secret: str = STRIPE_WEBHOOK_SECRET,
        api_base: str = STRIPE_API_BASE,
        timeout_seconds: float = GATEWAY_TIMEOUT_SECONDS,
        webhook_tolerance_seconds: int = WEBHOOK_TOLERANCE_SECONDS,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.webhook_tolerance_seconds = webhook_tolerance_seconds

        if not self.secret_key:
            logger.warning("STRIPE_SECRET_KEY not configured - gateway calls will fail")

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.api_base}{path}"
        form = encode_form(data or {})

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(
                    method,
                    url,
                    data=form if method != "GET" else None,
                    params=form if method == "GET" else None,
                    headers=self._headers(idempotency_key),
                ) as response:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        # HTML error pages from a proxy in front of the API
                        body = None
                        if response.status < 400:
                            raise GatewayError(
                                f"Payment gateway returned a non-JSON body on {method} {path}",
                                status_code=response.status,
                            )
                    if response.status >= 400:
                        raise self._error_from_response(response.status, body)
                    if not isinstance(body, dict):
                        raise GatewayError(
                            f"Payment gateway returned an unexpected body on {method} {path}",
                            status_code=response.status,
                        )
                    return body
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(f"Payment gateway timed out on {method} {path}") from e
        except aiohttp.ClientError as e:
            raise GatewayError(f"Payment gateway unreachable on {method} {path}: {e!r}") from e

    @staticmethod
    def _error_from_response(status: int, body: Any) -> GatewayError:
        error = (body or {}).get("error", {}) if isinstance(body, dict) else {}
        intent = error.get("payment_intent") or {}
        return GatewayError(
            error.get("message") or f"Payment gateway error ({status})",
            status_code=status,
            error_code=error.get("code"),
            decline_code=error.get("decline_code"),
            payment_intent_id=intent.get("id") if isinstance(intent, dict) else None,
        )

    @staticmethod
    def _parse_intent(data: Dict[str, Any]) -> PaymentIntentResult:
        try:
            return PaymentIntentResult.from_api(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise GatewayError(f"Malformed PaymentIntent in gateway response: {e!r}") from e

    @retry(
        retry=retry_if_exception_type(GatewayTimeoutError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._request("GET", path, params)

    # ===========================
    # CUSTOMERS & PAYMENT METHODS
    # ===========================

    async def create_customer(
        self, email: Optional[str], name: str, metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Returns the new customer ID (cus_...)"""
        data = await self._request(
            "POST",
            "/customers",
            {"email": email, "name": name, "metadata": metadata or {}},
        )
        logger.info(f"Gateway customer created: {data['id']}")
        return data["id"]

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> CardDetails:
        data = await self._request(
            "POST", f"/payment_methods/{payment_method_id}/attach", {"customer": customer_id}
        )
        return CardDetails.from_api(data)

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        await self._request(
            "POST",
            f"/customers/{customer_id}",
            {"invoice_settings": {"default_payment_method": payment_method_id}},
        )

    async def retrieve_payment_method(self, payment_method_id: str) -> CardDetails:
        return CardDetails.from_api(await self._get(f"/payment_methods/{payment_method_id}"))

    async def detach_payment_method(self, payment_method_id: str) -> None:
        await self._request("POST", f"/payment_methods/{payment_method_id}/detach")

    async def create_setup_intent(self, customer_id: str) -> Dict[str, Any]:
        """
        SetupIntent for collecting a card client-side for later off-session use

        Returns {"id", "client_secret"}; only the client secret goes to the browser.
        """
        data = await self._request(
            "POST",
            "/setup_intents",
            {"customer": customer_id, "usage": "off_session", "payment_method_types": ["card"]},
        )
        return {"id": data["id"], "client_secret": data.get("client_secret")}

    # ===========================
    # CHARGES
    # ===========================

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        description: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntentResult:
        """
        Create an unconfirmed PaymentIntent

        The intent exists (and carries our metadata) before any money moves,
        so a confirm that times out can still be matched by webhook later.
        """
        data = await self._request(
            "POST",
            "/payment_intents",
            {
                "amount": to_minor_units(amount),
                "currency": currency,
                "customer": customer_id,
                "payment_method": payment_method_id,
                "description": description,
                "metadata": metadata,
                "expand": ["latest_charge"],
            },
            idempotency_key=f"{idempotency_key}-create",
        )
        return self._parse_intent(data)

    async def confirm_payment_intent(self, payment_intent_id: str, idempotency_key: str) -> PaymentIntentResult:
        """
        Confirm off-session

        Raises:
            GatewayError: Declined card (decline_code set) or API error
            GatewayTimeoutError: No answer in time, outcome unknown
        """
        data = await self._request(
            "POST",
            f"/payment_intents/{payment_intent_id}/confirm",
            {"off_session": True, "expand": ["latest_charge"]},
            idempotency_key=f"{idempotency_key}-confirm",
        )
        return self._parse_intent(data)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        data = await self._get(
            f"/payment_intents/{payment_intent_id}", {"expand": ["latest_charge"]}
        )
        return self._parse_intent(data)

    async def refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Refund a PaymentIntent, fully when amount is None

        Returns:
            Refund object (id, status, amount in cents)
        """
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        data = await self._request("POST", "/refunds", params, idempotency_key=idempotency_key)
        logger.info(f"Refund {data.get('id')} requested for {payment_intent_id}: {data.get('status')}")
        return data

    # ===========================
    # WEBHOOKS
    # ===========================

    def construct_event(self, payload: bytes, signature_header: str, now: Optional[float] = None) -> WebhookEvent:
        return construct_event(
            payload,
            signature_header,
            self.webhook_secret,
            tolerance_seconds=self.webhook_tolerance_seconds,
            now=now,
        )
