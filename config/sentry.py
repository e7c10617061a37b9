# coding: utf-8
"""
Sentry configuration for error monitoring of billing jobs and the API
"""
import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from loguru import logger

from config.config import SENTRY_DSN, ENVIRONMENT


# Header names that must never leave the process
_SENSITIVE_HEADERS = ("Authorization", "X-Admin-Key", "Stripe-Signature")


def init_sentry() -> None:
    """
    Initialize Sentry SDK for error monitoring

    Captures unhandled errors from the API, the weekly billing batch
    and the brokerage sync. Payment gateway and brokerage tokens are
    scrubbed from request headers before events are sent.
    """
    if not SENTRY_DSN:
        logger.warning("SENTRY_DSN not configured - error monitoring disabled")
        return

    try:
        sentry_sdk.init(
            dsn=SENTRY_DSN,
            environment=ENVIRONMENT,
            integrations=[
                AsyncioIntegration(),
                SqlalchemyIntegration(),
                AioHttpIntegration(),
            ],
            traces_sample_rate=0.1 if ENVIRONMENT == "production" else 1.0,
            sample_rate=1.0,
            attach_stacktrace=True,
            send_default_pii=False,
            max_breadcrumbs=50,
            before_send=before_send_hook,
        )

        logger.info(f"Sentry initialized successfully (Environment: {ENVIRONMENT})")

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def before_send_hook(event, hint):
    """
    Filter events before sending to Sentry

    Drops KeyboardInterrupt and filters auth/signature headers.
    """
    if 'exc_info' in hint:
        exc_type, exc_value, tb = hint['exc_info']

        if isinstance(exc_value, KeyboardInterrupt):
            return None

    if event.get('request'):
        headers = event['request'].get('headers', {})
        for name in _SENSITIVE_HEADERS:
            if name in headers:
                headers[name] = '[Filtered]'

    return event


def set_billing_context(user_id: int, billing_period_id: int | None = None):
    """
    Tag subsequent Sentry events with the user/period being billed
    """
    sentry_sdk.set_user({"id": str(user_id)})
    if billing_period_id is not None:
        sentry_sdk.set_tag("billing_period_id", str(billing_period_id))
