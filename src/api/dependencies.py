"""
Service dependencies

Services are built once in the application lifespan and stored on
app.state; routes pull them from there so tests can swap in their own.
"""

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.services.brokerage_reconciler import BrokerageReconciler
from src.services.charge_orchestrator import ChargeOrchestrator
from src.services.payment_method_service import PaymentMethodService
from src.services.webhook_reconciler import WebhookReconciler


def get_session_maker(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_maker


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.session_maker() as session:
        yield session


def get_orchestrator(request: Request) -> ChargeOrchestrator:
    return request.app.state.orchestrator


def get_webhook_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.webhook_reconciler


def get_payment_method_service(request: Request) -> PaymentMethodService:
    return request.app.state.payment_method_service


def get_brokerage_reconciler(request: Request) -> BrokerageReconciler:
    return request.app.state.brokerage_reconciler
