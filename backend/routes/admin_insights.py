"""
Predictive insights routes: revenue forecast, seasonality and customer
lifetime value, computed on demand from order history.
"""
from fastapi import APIRouter, HTTPException, Depends, Query
import logging

from middleware import require_permission
from models import Permission
from services.predictive_engine import (
    InsufficientDataError,
    analyze_seasonality,
    calculate_clv,
    forecast_revenue,
    load_customer_transactions,
    load_daily_revenue,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/insights", tags=["admin-insights"])


def _insufficient(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"error_code": "INSUFFICIENT_DATA", "message": message})


@router.get("/forecast")
async def get_revenue_forecast(
    days: int = Query(90, ge=7, le=730),
    periods: int = Query(30, ge=1, le=365),
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    series = await load_daily_revenue(days)
    try:
        result = forecast_revenue(series, periods)
    except InsufficientDataError as e:
        raise _insufficient(str(e))
    result["history"] = series
    return result


@router.get("/seasonality")
async def get_seasonality(
    days: int = Query(365, ge=14, le=1095),
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    series = await load_daily_revenue(days)
    try:
        return analyze_seasonality(series)
    except InsufficientDataError as e:
        raise _insufficient(str(e))


@router.get("/clv")
async def get_customer_lifetime_value(
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    customers = await load_customer_transactions()
    if not customers:
        raise _insufficient("No customer transactions yet")
    return calculate_clv(customers)
