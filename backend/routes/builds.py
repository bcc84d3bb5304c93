"""
Builds Routes - configurator drafts and the buyer checkout flow.

All routes require authentication; builds are visible to their owner only
(admins use /api/admin/builds).
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
import logging

from database import database
from middleware import require_auth, require_permission
from models import Permission
from services import build_service
from services.errors import NotFoundError, ForbiddenError, RuleViolation
from services.model_catalog import find_model
from services.order_service import create_order_from_build
from services.pricing import calculate_total_purchase_price
from services.settings_service import get_org_settings
from utils.http_errors import to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/builds", tags=["builds"])
admin_router = APIRouter(prefix="/api/admin/builds", tags=["admin-builds"])

SERVICE_ERRORS = (NotFoundError, ForbiddenError, RuleViolation)


# ============================================
# MODELS
# ============================================

class CreateBuildRequest(BaseModel):
    model_slug: str
    model_name: Optional[str] = None
    base_price: Optional[float] = None
    selections: Dict[str, Any] = Field(default_factory=dict)
    financing: Dict[str, Any] = Field(default_factory=dict)
    buyer_info: Dict[str, Any] = Field(default_factory=dict)


class RenameRequest(BaseModel):
    name: Optional[str] = None


class StepRequest(BaseModel):
    step: Any = None


class PaymentMethodRequest(BaseModel):
    method: Optional[str] = None


class StatusRequest(BaseModel):
    status: str
    notes: Optional[str] = None


# ============================================
# BUILDS
# ============================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_build(
    request: CreateBuildRequest,
    current_user: dict = Depends(require_auth),
):
    """Start a new build from a catalog model. Unknown models fall back to the supplied price."""
    model = await find_model(request.model_slug)
    if not model and request.base_price is None:
        raise HTTPException(status_code=404, detail="Model not found")

    base_price = request.base_price
    if base_price is None:
        base_price = model.get("base_price") or 0

    build = await build_service.create_build(
        user_id=current_user["user_id"],
        model_slug=model["slug"] if model else request.model_slug,
        model_name=request.model_name or (model or {}).get("name"),
        base_price=base_price,
        selections=request.selections,
        financing=request.financing,
        buyer_info=request.buyer_info,
        option_catalog=(model or {}).get("options"),
    )
    return {"build": build}


@router.get("")
async def list_builds(current_user: dict = Depends(require_auth)):
    builds = await build_service.list_builds(current_user["user_id"])
    return {"builds": builds, "total": len(builds)}


@router.get("/{build_id}")
async def get_build(build_id: str, current_user: dict = Depends(require_auth)):
    try:
        build = await build_service.get_owned_build(build_id, current_user["user_id"])
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    return {"build": build}


@router.patch("/{build_id}")
async def update_build(
    build_id: str,
    patch: Dict[str, Any],
    current_user: dict = Depends(require_auth),
):
    try:
        build = await build_service.update_build(build_id, current_user["user_id"], patch)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    return {"build": build}


@router.delete("/{build_id}")
async def delete_build(build_id: str, current_user: dict = Depends(require_auth)):
    try:
        await build_service.delete_build(build_id, current_user["user_id"])
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    return {"success": True, "build_id": build_id}


@router.post("/{build_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_build(build_id: str, current_user: dict = Depends(require_auth)):
    try:
        build = await build_service.duplicate_build(build_id, current_user["user_id"])
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    return {"build": build}


@router.post("/{build_id}/rename")
async def rename_build(
    build_id: str,
    request: RenameRequest,
    current_user: dict = Depends(require_auth),
):
    try:
        build = await build_service.rename_build(build_id, current_user["user_id"], request.name)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    return {"build": build}


# ============================================
# CHECKOUT
# ============================================

@router.post("/{build_id}/checkout-step")
async def set_checkout_step(
    build_id: str,
    request: StepRequest,
    current_user: dict = Depends(require_auth),
):
    try:
        build = await build_service.set_checkout_step(build_id, current_user["user_id"], request.step)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    return {"build": build, "step": build.get("step")}


@router.post("/{build_id}/confirm")
async def confirm_build(build_id: str, current_user: dict = Depends(require_auth)):
    try:
        build = await build_service.confirm_build(build_id, current_user["user_id"])
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    return {"build": build}


@router.post("/{build_id}/payment-method")
async def set_payment_method(
    build_id: str,
    request: PaymentMethodRequest,
    current_user: dict = Depends(require_auth),
):
    try:
        build = await build_service.set_payment_method(build_id, current_user["user_id"], request.method)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    return {"build": build}


@router.post("/{build_id}/contract")
async def create_contract_order(build_id: str, current_user: dict = Depends(require_auth)):
    """Create the order that backs the purchase agreement (idempotent per build)."""
    try:
        build = await build_service.get_owned_build(build_id, current_user["user_id"])
        order = await create_order_from_build(build, current_user["user_id"])
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    return {"order": order, "build_id": build_id}


@router.get("/{build_id}/pricing")
async def get_purchase_price(build_id: str, current_user: dict = Depends(require_auth)):
    try:
        build = await build_service.get_owned_build(build_id, current_user["user_id"])
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    settings = await get_org_settings()
    return {"build_id": build_id, "pricing": calculate_total_purchase_price(build, settings)}


@router.post("/{build_id}/status")
async def update_build_status(
    build_id: str,
    request: StatusRequest,
    current_user: dict = Depends(require_auth),
):
    try:
        build = await build_service.update_build_status(build_id, current_user, request.status, request.notes)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e)
    return {"build": build}


# ============================================
# ADMIN
# ============================================

@admin_router.get("")
async def list_all_builds(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(require_permission(Permission.BUILDS_VIEW)),
):
    return await build_service.list_builds_admin(status, user_id, page, limit)


@admin_router.get("/{build_id}")
async def get_build_admin(
    build_id: str,
    current_user: dict = Depends(require_permission(Permission.BUILDS_VIEW)),
):
    db = database.get_db()
    build = await db.builds.find_one({"build_id": build_id}, {"_id": 0})
    if not build:
        raise HTTPException(status_code=404, detail="Build not found")
    intents: List[Dict[str, Any]] = await db.bank_transfer_intents.find(
        {"build_id": build_id}, {"_id": 0}
    ).to_list(10)
    return {"build": build, "bank_transfer_intents": intents}
