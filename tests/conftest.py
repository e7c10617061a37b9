"""
Pytest configuration and fixtures for Meridian billing tests
"""

import json
import time
from datetime import datetime, UTC
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import AssetClass, PnlSource, TradeStatus
from src.database import crud
from src.database.engine import build_engine, build_session_maker, drop_db, init_db
from src.services.payment_gateway import (
    CardDetails,
    PaymentIntentResult,
    StripeGateway,
    compute_signature,
)


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_SECRET = "whsec_test_secret"

UTC_TZ = ZoneInfo("UTC")

# Sunday night after the week of Mon 2026-10-12 .. Fri 2026-10-16
BILLING_NOW = datetime(2026, 10, 18, 23, 59, tzinfo=UTC)


@pytest.fixture(scope="function")
async def test_db_engine():
    """
    Create test database engine
    """
    engine = build_engine(TEST_DATABASE_URL)
    await init_db(engine)

    yield engine

    await drop_db(engine)
    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine):
    return build_session_maker(test_db_engine)


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


# ===========================
# FACTORIES
# ===========================


async def make_user(
    session: AsyncSession,
    username: str = "trader",
    with_payment_method: bool = True,
    billing_enabled: bool = True,
):
    """User with a gateway customer and a default card, committed"""
    user = await crud.create_user(
        session,
        username=username,
        email=f"{username}@example.com",
        billing_enabled=billing_enabled,
        gateway_customer_id=f"cus_{username}" if with_payment_method else None,
    )
    if with_payment_method:
        await crud.add_payment_method(
            session,
            user_id=user.id,
            gateway_customer_id=f"cus_{username}",
            gateway_payment_method_id=f"pm_{username}",
            card_brand="visa",
            card_last4="4242",
            card_exp_month=12,
            card_exp_year=2030,
        )
    await session.commit()
    return user


async def make_trade(
    session: AsyncSession,
    user_id: int,
    pnl,
    entry_date: datetime = datetime(2026, 10, 13, 14, 30, tzinfo=UTC),
    symbol: str = "AAPL",
    direction: str = "LONG",
    entry_price="100",
    exit_price="110",
    quantity="1",
    asset_class: str = AssetClass.STOCK.value,
    pnl_source: str = PnlSource.BROKERAGE.value,
    status: str = TradeStatus.CLOSED.value,
    **extra,
):
    trade = await crud.create_trade(
        session,
        user_id=user_id,
        symbol=symbol,
        direction=direction,
        asset_class=asset_class,
        entry_price=Decimal(str(entry_price)),
        exit_price=Decimal(str(exit_price)) if exit_price is not None else None,
        quantity=Decimal(str(quantity)),
        entry_date=entry_date,
        exit_date=extra.pop("exit_date", entry_date),
        pnl=Decimal(str(pnl)) if pnl is not None else None,
        pnl_source=pnl_source if pnl is not None else None,
        status=status,
        **extra,
    )
    await session.commit()
    return trade


@pytest.fixture
def user_factory(session_maker):
    async def factory(**kwargs):
        async with session_maker() as session:
            return await make_user(session, **kwargs)

    return factory


@pytest.fixture
def trade_factory(session_maker):
    async def factory(user_id: int, pnl, **kwargs):
        async with session_maker() as session:
            return await make_trade(session, user_id, pnl, **kwargs)

    return factory


# ===========================
# PAYMENT GATEWAY
# ===========================


def intent(intent_id: str = "pi_test_1", status: str = "succeeded", amount: int = 8000, **kwargs):
    return PaymentIntentResult(
        id=intent_id,
        status=status,
        amount=amount,
        charge_id=kwargs.pop("charge_id", "ch_test_1" if status == "succeeded" else None),
        **kwargs,
    )


@pytest.fixture
def gateway():
    """
    Real StripeGateway (webhook verification stays real) with the HTTP calls
    replaced by AsyncMocks
    """
    gw = StripeGateway(
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        api_base="https://stripe.invalid/v1",
    )
    gw.create_customer = AsyncMock(return_value="cus_new")
    gw.attach_payment_method = AsyncMock(
        return_value=CardDetails(id="pm_new", brand="mastercard", last4="4444", exp_month=1, exp_year=2031)
    )
    gw.set_default_payment_method = AsyncMock(return_value=None)
    gw.detach_payment_method = AsyncMock(return_value=None)
    gw.create_setup_intent = AsyncMock(return_value={"id": "seti_1", "client_secret": "seti_1_secret_abc"})
    gw.create_payment_intent = AsyncMock(return_value=intent(status="requires_confirmation"))
    gw.confirm_payment_intent = AsyncMock(return_value=intent())
    gw.refund = AsyncMock(return_value={"id": "re_test_1", "status": "succeeded"})
    return gw


def sign_payload(event: dict, secret: str = WEBHOOK_SECRET, timestamp: int = None):
    """Serialized event body plus a valid Stripe-Signature header"""
    payload = json.dumps(event).encode()
    ts = int(time.time()) if timestamp is None else timestamp
    return payload, f"t={ts},v1={compute_signature(payload, secret, ts)}"


def make_event(event_id: str, event_type: str, data_object: dict) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": data_object},
    }


# ===========================
# HTTP FAKES
# ===========================

@pytest.fixture
async def http_server():
    """
    Start a local aiohttp server for the given route table

    Used where the real clients must parse raw responses (HTML error pages,
    truncated bodies) rather than mocked return values.
    """
    servers = []

    async def start(routes: list) -> TestServer:
        app = web.Application()
        app.add_routes(routes)
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return server

    yield start

    for server in servers:
        await server.close()
