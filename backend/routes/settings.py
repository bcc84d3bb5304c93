"""Org settings routes: pricing constants and factory address."""
from fastapi import APIRouter, HTTPException, Depends
from typing import Dict, Any
import logging

from middleware import require_permission
from models import Permission
from services.settings_service import get_org_settings, update_org_settings, public_settings

logger = logging.getLogger(__name__)
router = APIRouter(tags=["settings"])


@router.get("/api/settings")
async def get_public_settings():
    """Pricing and factory info for the configurator (no auth)."""
    return public_settings(await get_org_settings())


@router.get("/api/admin/settings")
async def get_admin_settings(
    current_user: dict = Depends(require_permission(Permission.SETTINGS_EDIT)),
):
    return await get_org_settings()


@router.put("/api/admin/settings")
async def put_admin_settings(
    patch: Dict[str, Any],
    current_user: dict = Depends(require_permission(Permission.SETTINGS_EDIT)),
):
    try:
        return await update_org_settings(patch, current_user)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
