"""
FastAPI Router for the billing API
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db
from src.database.engine import check_connection

# Import sub-routers
from src.api.billing import router as billing_router
from src.api.billing_admin import router as billing_admin_router
from src.api.webhooks_stripe import router as stripe_webhook_router


# Main router
router = APIRouter()

# Include sub-routers (they carry their own prefixes)
router.include_router(billing_router)  # User billing history and payment methods
router.include_router(billing_admin_router)  # Admin charge/retry/waive/refund/sync
router.include_router(stripe_webhook_router)  # Payment gateway webhooks (public, signed)


@router.get("/health")
async def health(session: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    """Liveness plus database reachability"""
    database_ok = await check_connection(session.bind)
    return {"status": "ok" if database_ok else "degraded", "database": database_ok}
