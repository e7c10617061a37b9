"""
Payment gateway webhook handler

Security:
- HMAC-SHA256 signature over the raw request body (Stripe-Signature header)
- Timestamp tolerance rejects replayed deliveries

A 2xx tells the gateway to stop redelivering, so verification failures get
400 and unexpected errors get 500 (the gateway retries those).
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from loguru import logger

from src.api.dependencies import get_webhook_reconciler
from src.core.exceptions import WebhookTimestampError, WebhookVerificationError
from src.services.webhook_reconciler import WebhookReconciler


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    """
    payment_intent.succeeded, payment_intent.payment_failed and
    charge.refunded events; anything else is acknowledged and ignored

    Returns:
        {"received": true} and "duplicate": true for redeliveries
    """
    if not stripe_signature:
        logger.error("Webhook without Stripe-Signature header")
        raise HTTPException(status_code=400, detail="Missing signature header")

    # Raw body, the signature covers the exact bytes
    payload = await request.body()

    try:
        result = await reconciler.handle(payload, stripe_signature)
    except WebhookTimestampError as e:
        logger.warning(f"Rejected stale webhook: {e.message}")
        raise HTTPException(status_code=400, detail="Timestamp outside tolerance")
    except WebhookVerificationError as e:
        logger.warning(f"Rejected webhook: {e.message}")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except Exception as e:
        logger.exception(f"Error processing webhook: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

    return result.to_dict()
