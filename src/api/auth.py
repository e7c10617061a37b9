"""
Authentication dependencies for billing API endpoints

Users are authenticated by the upstream auth proxy, which forwards the
verified user id in the X-User-Id header. Admin endpoints are protected by a
shared key in the X-Admin-Key header.

Usage:
    @router.get("/me")
    async def me(user_id: int = Depends(get_current_user_id)):
        ...

    @router.post("/admin/thing")
    async def thing(admin: str = Depends(require_admin)):
        ...
"""

import hmac
from typing import Optional

from fastapi import Header, HTTPException
from loguru import logger

from config import config


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, description="User id set by the auth proxy")
) -> int:
    """
    Resolve the authenticated user id

    Raises:
        HTTPException 401: Header missing or not a positive integer
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")

    if not x_user_id.isdigit() or int(x_user_id) <= 0:
        logger.warning(f"Malformed X-User-Id header: {x_user_id[:16]!r}")
        raise HTTPException(status_code=401, detail="Not authenticated")

    return int(x_user_id)


async def require_admin(
    x_admin_key: Optional[str] = Header(None, description="Admin API key"),
    x_admin_user: Optional[str] = Header(None, description="Name recorded in the audit log"),
) -> str:
    """
    Verify the admin key and return the acting admin's name

    Raises:
        HTTPException 401: Key missing or invalid
        HTTPException 500: ADMIN_API_KEY not configured
    """
    if not x_admin_key:
        logger.warning("Admin key missing in request")
        raise HTTPException(status_code=401, detail="Missing admin key. Provide X-Admin-Key header.")

    if not config.ADMIN_API_KEY:
        logger.error("ADMIN_API_KEY not configured in .env")
        raise HTTPException(status_code=500, detail="Admin authentication not configured")

    if not hmac.compare_digest(x_admin_key.encode(), config.ADMIN_API_KEY.encode()):
        logger.warning(f"Invalid admin key attempt: {x_admin_key[:4]}...")
        raise HTTPException(status_code=401, detail="Invalid admin key")

    return x_admin_user or "admin"
