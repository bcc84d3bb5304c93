"""
Admin customer intelligence routes: segmented customer list, summary,
per-customer journey and realtime activity.
"""
from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

from middleware import require_any_permission
from models import Permission
from services import customer_intelligence

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin-customers"])

customer_viewer = require_any_permission(Permission.USERS_VIEW, Permission.ANALYTICS_VIEW)


@router.get("/customers")
async def list_customers(
    search: Optional[str] = None,
    segment: Optional[str] = None,
    status: Optional[str] = None,
    engagement: Optional[str] = Query(None, pattern="^(high|medium|low)$"),
    sort_by: str = "last_activity",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(customer_viewer),
):
    filters = {"search": search, "segment": segment, "status": status, "engagement": engagement}
    return await customer_intelligence.list_customers(filters, sort_by, sort_order, page, limit)


@router.get("/customers/summary")
async def get_customer_summary(current_user: dict = Depends(customer_viewer)):
    return await customer_intelligence.customer_summary()


@router.get("/customers/{user_id}/journey")
async def get_customer_journey(user_id: str, current_user: dict = Depends(customer_viewer)):
    return await customer_intelligence.customer_journey(user_id)


@router.get("/realtime")
async def get_realtime_activity(current_user: dict = Depends(customer_viewer)):
    return await customer_intelligence.realtime_activity()
