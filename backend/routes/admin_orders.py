"""
Admin Orders Routes
Order list, detail and workflow-checked updates for the back-office.
"""
from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
import logging

from middleware import require_permission
from models import Permission
from services.errors import NotFoundError, RuleViolation
from services.order_workflow import OrderStatus, get_allowed_transitions, PIPELINE_COLUMNS
from services.order_service import (
    get_order, get_pipeline_counts, list_orders_admin, update_order_admin, MAX_ADMIN_PAGE_SIZE
)
from utils.http_errors import to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/orders", tags=["admin-orders"])


# ============================================
# MODELS
# ============================================

class OrderUpdateRequest(BaseModel):
    status: Optional[str] = None
    reason: Optional[str] = None
    priority: Optional[str] = None
    notes: Optional[str] = None
    estimated_delivery_date: Optional[str] = None


# ============================================
# PIPELINE VIEW ENDPOINTS
# ============================================

@router.get("/pipeline/counts")
async def get_pipeline_status_counts(
    current_user: dict = Depends(require_permission(Permission.ORDERS_VIEW)),
):
    """Get count of orders in each status"""
    counts = await get_pipeline_counts()
    return {
        "counts": counts,
        "columns": [
            {"status": col["status"].value, "label": col["label"], "color": col["color"]}
            for col in PIPELINE_COLUMNS
        ],
    }


# ============================================
# LIST / DETAIL
# ============================================

@router.get("")
async def list_orders(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_ADMIN_PAGE_SIZE),
    sort: str = "created_at",
    order: str = Query("desc", pattern="^(asc|desc)$"),
    current_user: dict = Depends(require_permission(Permission.ORDERS_VIEW)),
):
    return await list_orders_admin(
        status=status,
        priority=priority,
        search=search,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
        sort=sort,
        order=order,
    )


@router.get("/{order_id}")
async def get_order_detail(
    order_id: str,
    current_user: dict = Depends(require_permission(Permission.ORDERS_VIEW)),
):
    order = await get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    try:
        allowed = [s.value for s in get_allowed_transitions(OrderStatus(order["status"]))]
    except ValueError:
        allowed = []
    return {"order": order, "allowed_transitions": allowed}


@router.patch("/{order_id}")
async def update_order(
    order_id: str,
    request: OrderUpdateRequest,
    current_user: dict = Depends(require_permission(Permission.ORDERS_EDIT)),
):
    """Status (checked against the workflow), priority, notes and estimated delivery."""
    try:
        order = await update_order_admin(order_id, request.model_dump(exclude_none=True), current_user)
    except (NotFoundError, RuleViolation) as e:
        raise to_http_exception(e)
    return {"order": order}
