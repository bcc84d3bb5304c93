"""
Analytics Dashboard API Routes

Business intelligence for the admin dashboard:
- Revenue and order metrics with period-over-period change
- Daily revenue series (business timezone, zero-filled)
- Per-model build/order performance
- Payment method and milestone financials
- Conversion funnel with cohorts and journey patterns
"""
from fastapi import APIRouter, HTTPException, Depends, Query
import logging

from middleware import require_permission
from models import Permission
from services import analytics_service
from services.conversion_funnel import analyze_funnel

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/analytics", tags=["admin-analytics"])

PERIOD_PATTERN = "^(today|yesterday|7d|30d|90d|ytd|all)$"


@router.get("/summary")
async def get_summary(
    period: str = Query("30d", pattern=PERIOD_PATTERN),
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    return await analytics_service.analytics_summary(period)


@router.get("/revenue/daily")
async def get_daily_revenue(
    period: str = Query("30d", pattern=PERIOD_PATTERN),
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    return await analytics_service.revenue_daily(period)


@router.get("/models")
async def get_model_performance(
    period: str = Query("30d", pattern=PERIOD_PATTERN),
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    return {"period": period, "models": await analytics_service.model_performance(period)}


@router.get("/financial")
async def get_financial_overview(
    period: str = Query("30d", pattern=PERIOD_PATTERN),
    current_user: dict = Depends(require_permission(Permission.FINANCIAL_VIEW)),
):
    return await analytics_service.financial_overview(period)


@router.get("/funnel")
async def get_funnel(
    days: int = Query(30, ge=1, le=365),
    cohort: str = Query("weekly"),
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    try:
        return await analyze_funnel(days, cohort)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
