"""Business analytics over orders and builds.

Days are bucketed in the business timezone (America/Chicago), so "today" on the
dashboard matches the factory's calendar rather than UTC.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo
import logging

import pandas as pd

from database import database
from services.order_workflow import NON_REVENUE_STATES, OrderStatus

logger = logging.getLogger(__name__)

BUSINESS_TZ = ZoneInfo("America/Chicago")
PERIODS = ("today", "yesterday", "7d", "30d", "90d", "ytd", "all")
REVENUE_FILTER = {"status": {"$nin": [s.value for s in NON_REVENUE_STATES]}}


def get_date_range(period: str, now: Optional[datetime] = None) -> Tuple[Optional[datetime], datetime]:
    """(start, end) in UTC for a named period. start is None for "all"."""
    if period not in PERIODS:
        raise ValueError(f"Invalid period: {period}")
    now = now or datetime.now(timezone.utc)
    local_now = now.astimezone(BUSINESS_TZ)
    local_midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)

    if period == "today":
        return local_midnight.astimezone(timezone.utc), now
    if period == "yesterday":
        start = local_midnight - timedelta(days=1)
        return start.astimezone(timezone.utc), local_midnight.astimezone(timezone.utc)
    if period == "ytd":
        return local_midnight.replace(month=1, day=1).astimezone(timezone.utc), now
    if period == "all":
        return None, now
    return now - timedelta(days=int(period[:-1])), now


def previous_range(start: Optional[datetime], end: datetime) -> Optional[Tuple[datetime, datetime]]:
    if start is None:
        return None
    return start - (end - start), start


def percent_change(current: float, previous: float) -> float:
    if not previous:
        return 0.0
    return round((current - previous) / previous * 100, 2)


def trend(change: float) -> str:
    if change > 0:
        return "up"
    if change < 0:
        return "down"
    return "flat"


def daily_revenue_series(
    orders: List[Dict[str, Any]],
    start: Optional[datetime],
    end: datetime,
) -> List[Dict[str, Any]]:
    """Revenue and order count per business day, zero-filled across the range."""
    df = pd.DataFrame(
        [{"created_at": o.get("created_at"), "total": (o.get("pricing") or {}).get("total") or 0} for o in orders],
        columns=["created_at", "total"],
    )
    df = df[df["created_at"].notna()].copy()
    df["day"] = pd.to_datetime(df["created_at"], utc=True).dt.tz_convert(BUSINESS_TZ).dt.date

    first_day = start.astimezone(BUSINESS_TZ).date() if start else (df["day"].min() if not df.empty else end.astimezone(BUSINESS_TZ).date())
    last_day = end.astimezone(BUSINESS_TZ).date()
    days = pd.date_range(first_day, last_day, freq="D").date

    grouped = df.groupby("day").agg(revenue=("total", "sum"), orders=("total", "size"))
    grouped = grouped.reindex(days, fill_value=0)
    return [
        {"date": day.isoformat(), "revenue": round(float(row.revenue), 2), "orders": int(row.orders)}
        for day, row in grouped.iterrows()
    ]


def _created_filter(start: Optional[datetime], end: datetime) -> Dict[str, Any]:
    created: Dict[str, Any] = {"$lt": end}
    if start:
        created["$gte"] = start
    return {"created_at": created}


async def _revenue_stats(start: Optional[datetime], end: datetime) -> Dict[str, Any]:
    db = database.get_db()
    rows = await db.orders.aggregate([
        {"$match": {**_created_filter(start, end), **REVENUE_FILTER}},
        {"$group": {"_id": None, "revenue": {"$sum": "$pricing.total"}, "orders": {"$sum": 1}}},
    ]).to_list(1)
    revenue = rows[0]["revenue"] if rows else 0
    orders = rows[0]["orders"] if rows else 0
    return {"revenue": round(revenue, 2), "orders": orders, "aov": round(revenue / orders, 2) if orders else 0.0}


async def analytics_summary(period: str = "30d") -> Dict[str, Any]:
    db = database.get_db()
    start, end = get_date_range(period)
    current = await _revenue_stats(start, end)

    changes = {"revenue": 0.0, "orders": 0.0, "aov": 0.0}
    prev = previous_range(start, end)
    if prev:
        previous = await _revenue_stats(*prev)
        changes = {k: percent_change(current[k], previous[k]) for k in changes}

    status_rows = await db.orders.aggregate([
        {"$match": _created_filter(start, end)},
        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
    ]).to_list(None)
    status_breakdown = {r["_id"]: r["count"] for r in status_rows if r.get("_id")}
    all_orders = sum(status_breakdown.values())
    completed = status_breakdown.get(OrderStatus.COMPLETED.value, 0) + status_breakdown.get(OrderStatus.DELIVERED.value, 0)

    return {
        "period": period,
        "range": {"start": start, "end": end},
        "metrics": {
            "revenue": current["revenue"],
            "orders": current["orders"],
            "average_order_value": current["aov"],
            "completion_rate": round(completed / all_orders * 100, 2) if all_orders else 0.0,
        },
        "changes": {k: {"percent": v, "trend": trend(v)} for k, v in changes.items()},
        "status_breakdown": status_breakdown,
    }


async def revenue_daily(period: str = "30d") -> Dict[str, Any]:
    db = database.get_db()
    start, end = get_date_range(period)
    orders = await db.orders.find(
        {**_created_filter(start, end), **REVENUE_FILTER},
        {"_id": 0, "created_at": 1, "pricing.total": 1},
    ).to_list(None)
    series = daily_revenue_series(orders, start, end)
    return {"period": period, "timezone": str(BUSINESS_TZ), "series": series, "total": round(sum(d["revenue"] for d in series), 2)}


async def model_performance(period: str = "30d") -> List[Dict[str, Any]]:
    db = database.get_db()
    start, end = get_date_range(period)
    match = _created_filter(start, end)

    builds = await db.builds.aggregate([
        {"$match": match},
        {"$group": {"_id": "$model_slug", "name": {"$first": "$model_name"}, "builds": {"$sum": 1}}},
    ]).to_list(None)
    orders = await db.orders.aggregate([
        {"$match": {**match, **REVENUE_FILTER}},
        {"$group": {"_id": "$model.slug", "orders": {"$sum": 1}, "revenue": {"$sum": "$pricing.total"}}},
    ]).to_list(None)

    by_model: Dict[str, Dict[str, Any]] = {}
    for b in builds:
        by_model[b["_id"]] = {"model_slug": b["_id"], "name": b.get("name"), "builds": b["builds"], "orders": 0, "revenue": 0}
    for o in orders:
        row = by_model.setdefault(o["_id"], {"model_slug": o["_id"], "name": None, "builds": 0, "orders": 0, "revenue": 0})
        row["orders"], row["revenue"] = o["orders"], round(o["revenue"], 2)
    for row in by_model.values():
        row["conversion_rate"] = round(row["orders"] / row["builds"] * 100, 2) if row["builds"] else 0.0
    return sorted((r for r in by_model.values() if r["model_slug"]), key=lambda r: (r["orders"], r["builds"]), reverse=True)


async def financial_overview(period: str = "30d") -> Dict[str, Any]:
    db = database.get_db()
    start, end = get_date_range(period)

    by_method = await db.orders.aggregate([
        {"$match": {**_created_filter(start, end), **REVENUE_FILTER}},
        {"$group": {"_id": "$payment.method", "orders": {"$sum": 1}, "revenue": {"$sum": "$pricing.total"}}},
    ]).to_list(None)

    intents = await db.bank_transfer_intents.aggregate([
        {"$group": {"_id": {"milestone": "$milestone", "status": "$status"}, "count": {"$sum": 1}, "amount_cents": {"$sum": "$expected_amount_cents"}}},
    ]).to_list(None)
    milestones: Dict[str, Dict[str, int]] = {}
    for row in intents:
        m = milestones.setdefault(row["_id"]["milestone"], {"paid_cents": 0, "outstanding_cents": 0, "paid": 0, "outstanding": 0})
        key = "paid" if row["_id"]["status"] == "paid" else "outstanding"
        m[key] += row["count"]
        m[f"{key}_cents"] += row["amount_cents"]

    deposit_pipeline = await db.builds.aggregate([
        {"$match": {"payment.ready": True, "payment.deposit_paid": {"$ne": True}, "payment.full_paid": {"$ne": True}}},
        {"$group": {"_id": "$payment.method", "builds": {"$sum": 1}}},
    ]).to_list(None)

    return {
        "period": period,
        "revenue_by_method": {
            (r["_id"] or "unknown"): {"orders": r["orders"], "revenue": round(r["revenue"], 2)} for r in by_method
        },
        "milestones": milestones,
        "deposit_pipeline": {
            "awaiting_deposit": sum(r["builds"] for r in deposit_pipeline),
            "by_method": {(r["_id"] or "unknown"): r["builds"] for r in deposit_pipeline},
        },
    }
