"""
Billing Admin API

Admin endpoints for inspecting a user's billing week, triggering and
retrying charges, waiving periods, issuing refunds and running the
brokerage sync on demand.

All endpoints require the X-Admin-Key header.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.auth import require_admin
from src.api.dependencies import (
    get_brokerage_reconciler,
    get_db,
    get_orchestrator,
    get_payment_method_service,
)
from src.core.enums import ChargeStatus
from src.core.exceptions import GatewayError, InvalidTransitionError, PreconditionError, ValidationError
from src.database import billing_store, crud
from src.services.brokerage_reconciler import BrokerageReconciler
from src.services.charge_orchestrator import ChargeOrchestrator, ChargeResult
from src.services.payment_method_service import PaymentMethodService


router = APIRouter(prefix="/admin/billing", tags=["admin-billing"])


# Charge outcome -> HTTP status
CHARGE_HTTP_STATUS = {
    ChargeStatus.CHARGED: 200,
    ChargeStatus.PROCESSING: 202,
    ChargeStatus.NO_FEE_DUE: 400,
    ChargeStatus.PRECONDITION_FAILED: 400,
    ChargeStatus.INVALID: 400,
    ChargeStatus.FAILED: 402,
    ChargeStatus.CONFLICT: 409,
    ChargeStatus.ERROR: 500,
}


# ===========================
# REQUEST/RESPONSE MODELS
# ===========================


class WaiveRequest(BaseModel):
    """Request model for waiving a billing period"""
    reason: str = Field(..., min_length=1, max_length=500)


class RefundRequest(BaseModel):
    """Request model for refunding a payment (full refund when amount is omitted)"""
    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)


class SyncRequest(BaseModel):
    """Request model for a manual brokerage sync"""
    user_id: Optional[int] = Field(None, gt=0)
    dry_run: bool = False
    fix_missing: bool = False


# ===========================
# HELPER FUNCTIONS
# ===========================


def _charge_response(result: ChargeResult) -> JSONResponse:
    return JSONResponse(status_code=CHARGE_HTTP_STATUS[result.status], content=result.to_dict())


# ===========================
# API ENDPOINTS
# ===========================


@router.get("/users/{user_id}")
async def get_user_billing_status(
    user_id: int,
    admin: str = Depends(require_admin),
    orchestrator: ChargeOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Current billing week for a user: P&L, fee, payment method, existing
    charge and the last few periods
    """
    if await crud.get_user(session, user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    status = await orchestrator.get_billing_status(user_id)
    summary = await billing_store.get_billing_summary(session, user_id)
    status["summary"] = {
        "total_paid": str(summary["total_paid"]),
        "total_outstanding": str(summary["total_outstanding"]),
        "periods_by_status": summary["periods_by_status"],
        "last_paid_at": summary["last_paid_at"].isoformat() if summary["last_paid_at"] else None,
    }
    return status


@router.post("/users/{user_id}/charge")
async def charge_user(
    user_id: int,
    admin: str = Depends(require_admin),
    orchestrator: ChargeOrchestrator = Depends(get_orchestrator),
    session: AsyncSession = Depends(get_db),
):
    """
    Charge last week's performance fee for one user

    Status codes:
        200 charged, 202 processing (webhook will finish), 400 no fee due /
        no payment method, 402 declined, 404 unknown user, 409 already
        charged or in progress
    """
    if await crud.get_user(session, user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    logger.info(f"Manual charge for user {user_id} requested by {admin}")
    result = await orchestrator.charge_weekly_fee(user_id, triggered_by=f"admin:{admin}")
    return _charge_response(result)


@router.post("/periods/{period_id}/retry")
async def retry_period(
    period_id: int,
    admin: str = Depends(require_admin),
    orchestrator: ChargeOrchestrator = Depends(get_orchestrator),
):
    """
    Re-attempt a failed billing period on the same row
    """
    logger.info(f"Retry of billing period {period_id} requested by {admin}")
    result = await orchestrator.retry_failed_period(period_id, triggered_by=f"admin:{admin}")
    if result.status == ChargeStatus.INVALID:
        raise HTTPException(status_code=404, detail=result.error)
    return _charge_response(result)


@router.post("/periods/{period_id}/waive")
async def waive_period(
    period_id: int,
    request: WaiveRequest,
    admin: str = Depends(require_admin),
    orchestrator: ChargeOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Close a pending or failed period without collecting
    """
    try:
        period = await orchestrator.waive_period(period_id, request.reason, admin)
    except ValidationError as e:
        status_code = 404 if "not found" in e.message else 400
        raise HTTPException(status_code=status_code, detail=e.message)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message)

    return {"success": True, "billing_period_id": period.id, "status": period.status}


@router.post("/payments/{payment_id}/refund")
async def refund_payment(
    payment_id: int,
    request: RefundRequest,
    admin: str = Depends(require_admin),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> Dict[str, Any]:
    """
    Refund a succeeded payment, fully or partially

    The refunded amount is recorded when the gateway's charge.refunded
    webhook arrives; a full refund also marks the payment refunded.
    """
    try:
        return await service.refund_payment(payment_id, amount=request.amount, admin=admin)
    except ValidationError as e:
        status_code = 404 if "not found" in e.message else 400
        raise HTTPException(status_code=status_code, detail=e.message)
    except PreconditionError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except GatewayError as e:
        logger.error(f"Refund of payment {payment_id} rejected by gateway: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)


@router.post("/sync")
async def run_brokerage_sync(
    request: SyncRequest,
    admin: str = Depends(require_admin),
    reconciler: BrokerageReconciler = Depends(get_brokerage_reconciler),
) -> Dict[str, Any]:
    """
    Pull the brokerage gain/loss ledger now instead of waiting for the cron
    """
    logger.info(f"Brokerage sync requested by {admin} (user={request.user_id}, dry_run={request.dry_run})")

    summary = await reconciler.run_sync(user_id=request.user_id, dry_run=request.dry_run)
    response: Dict[str, Any] = {
        "success": summary.success,
        "dry_run": summary.dry_run,
        "users_processed": summary.users_processed,
        "users_failed": summary.users_failed,
        "trades_synced": summary.trades_synced,
        "errors": summary.errors,
        "total_pnl": str(summary.total_pnl),
    }

    if request.fix_missing:
        fixed = await reconciler.fix_missing_pnl(dry_run=request.dry_run, user_id=request.user_id)
        response["fix_missing"] = {
            "found": fixed.found,
            "fixed_from_brokerage": fixed.fixed_from_brokerage,
            "calculated": fixed.calculated,
            "unresolved": fixed.unresolved,
            "errors": fixed.errors,
        }

    return response
