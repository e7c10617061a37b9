"""
Billing API for end users

- GET    /billing/history                  weekly fees and their status
- POST   /billing/setup-intent             client secret for the card form
- GET    /billing/payment-methods          saved cards
- POST   /billing/payment-methods          save a card collected client-side
- DELETE /billing/payment-methods/{id}     remove a card
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.auth import get_current_user_id
from src.api.dependencies import get_db, get_payment_method_service
from src.core.exceptions import GatewayError, ValidationError
from src.database import billing_store, crud
from src.database.models import PaymentMethod
from src.services.payment_method_service import PaymentMethodService


router = APIRouter(prefix="/billing", tags=["billing"])


class AddPaymentMethodRequest(BaseModel):
    """Payment method id returned by the gateway's client-side card form"""
    payment_method_id: str = Field(..., min_length=4, max_length=255)
    make_default: bool = True


def _serialize_method(method: PaymentMethod) -> Dict[str, Any]:
    return {
        "id": method.id,
        "type": method.payment_method_type,
        "brand": method.card_brand,
        "last4": method.card_last4,
        "exp_month": method.card_exp_month,
        "exp_year": method.card_exp_year,
        "is_default": method.is_default,
        "created_at": method.created_at.isoformat() if method.created_at else None,
    }


@router.get("/history")
async def get_billing_history(
    limit: int = Query(12, ge=1, le=52),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Weekly performance fees for the current user, most recent first
    """
    user = await crud.get_user(session, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    periods = await billing_store.list_periods(session, user_id, limit=limit)
    summary = await billing_store.get_billing_summary(session, user_id)

    return {
        "billing_enabled": user.billing_enabled,
        "total_paid": str(summary["total_paid"]),
        "total_outstanding": str(summary["total_outstanding"]),
        "periods": [
            {
                "id": period.id,
                "week_start": period.week_start.isoformat(),
                "week_end": period.week_end.isoformat(),
                "total_pnl": str(period.total_pnl),
                "trade_count": period.trade_count,
                "fee_percentage": str(period.fee_percentage),
                "fee_amount": str(period.fee_amount),
                "status": period.status,
                "paid_at": period.paid_at.isoformat() if period.paid_at else None,
            }
            for period in periods
        ],
    }


@router.post("/setup-intent")
async def create_setup_intent(
    user_id: int = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> Dict[str, Any]:
    """Client secret for the gateway's card form, creating the customer on first use"""
    try:
        return await service.create_setup_intent(user_id)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except GatewayError as e:
        logger.error(f"Setup intent failed for user {user_id}: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)


@router.get("/payment-methods")
async def list_payment_methods(
    user_id: int = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> Dict[str, List[Dict[str, Any]]]:
    methods = await service.list_payment_methods(user_id)
    return {"payment_methods": [_serialize_method(m) for m in methods]}


@router.post("/payment-methods", status_code=201)
async def add_payment_method(
    request: AddPaymentMethodRequest,
    user_id: int = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> Dict[str, Any]:
    """
    Attach a card to the user's gateway customer and store it

    Saving the first card turns billing on for the user.
    """
    try:
        method = await service.save_payment_method(
            user_id, request.payment_method_id, make_default=request.make_default
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except GatewayError as e:
        logger.warning(f"Gateway rejected payment method for user {user_id}: {e.message}")
        raise HTTPException(status_code=402, detail=e.message)

    return _serialize_method(method)


@router.delete("/payment-methods/{payment_method_id}")
async def remove_payment_method(
    payment_method_id: int,
    user_id: int = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> Dict[str, Any]:
    try:
        await service.remove_payment_method(user_id, payment_method_id)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except GatewayError as e:
        logger.warning(f"Gateway failed to detach payment method {payment_method_id}: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)

    return {"success": True}
