"""
Customer Intelligence - who our visitors and buyers are, and how engaged.

Per-user aggregates are pulled from Mongo (profiles, sessions, builds, orders)
and joined with pandas into one profile row per user. Scoring and
classification are pure functions so they can be tested without a database.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from database import database
from services.order_workflow import NON_REVENUE_STATES
from models import BuildStatus

logger = logging.getLogger(__name__)

ACTIVE_WINDOW_DAYS = 30
REALTIME_WINDOW_MINUTES = 30
DATA_RETENTION_YEARS = 7
ACTIVE_BUILD_STATUSES = [BuildStatus.DRAFT.value, BuildStatus.CONFIGURED.value, BuildStatus.CONTRACT_PENDING.value]
SORTABLE_FIELDS = {"engagement_score", "total_spent", "total_orders", "total_builds", "total_sessions", "last_activity", "created_at"}
ENGAGEMENT_LEVELS = {"high": (70, 101), "medium": (40, 70), "low": (0, 40)}

PROFILE_COLUMNS = ["user_id", "first_name", "last_name", "email", "phone", "created_at"]
SESSION_COLUMNS = ["user_id", "total_sessions", "total_page_views", "avg_session_seconds", "first_session", "last_session"]
BUILD_COLUMNS = ["user_id", "total_builds", "active_builds", "last_build_at"]
ORDER_COLUMNS = ["user_id", "total_orders", "total_spent", "last_order_at"]
COUNT_COLUMNS = ["total_sessions", "total_page_views", "avg_session_seconds", "total_builds", "active_builds", "total_orders", "total_spent"]


# ============================================
# SCORING & CLASSIFICATION
# ============================================

def _utc(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts


def days_since(ts: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    ts = _utc(ts)
    if ts is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (now - ts).total_seconds() / 86400


def engagement_score(sessions: int, orders: int, builds: int, days_since_last: Optional[float]) -> int:
    score = min(sessions * 2, 30)
    score += min(orders * 20, 40)
    score += min(builds * 10, 20)
    if days_since_last is not None:
        if days_since_last <= 7:
            score += 10
        elif days_since_last <= 30:
            score += 5
    return min(score, 100)


def customer_status(orders: int, days_since_last: Optional[float]) -> str:
    recently_active = days_since_last is not None and days_since_last <= ACTIVE_WINDOW_DAYS
    if orders > 0:
        return "customer" if recently_active else "inactive_customer"
    return "active_prospect" if recently_active else "inactive_prospect"


def segment(total_spent: float, orders: int, sessions: int, days_since_last: Optional[float]) -> str:
    # No activity on record compares as "never", like a missing field in Mongo
    recent = days_since_last if days_since_last is not None else math.inf
    if total_spent >= 50000 and orders >= 2:
        return "VIP"
    if total_spent >= 25000 and recent <= 30:
        return "High Value Active"
    if orders >= 1:
        return "Customer"
    if sessions >= 3 and recent <= 7:
        return "Hot Prospect"
    if sessions >= 1 and recent <= 30:
        return "Warm Prospect"
    if days_since_last is not None and days_since_last >= 90:
        return "Dormant"
    return "New Visitor"


def risk_level(days_since_last: Optional[float]) -> str:
    if days_since_last is None:
        return "Active"
    if days_since_last >= 180:
        return "High"
    if days_since_last >= 90:
        return "Medium"
    if days_since_last >= 30:
        return "Low"
    return "Active"


def engagement_level(score: int) -> str:
    if score >= 70:
        return "high"
    if score >= 40:
        return "medium"
    return "low"


# ============================================
# PROFILE ASSEMBLY (pandas)
# ============================================

def _frame(rows: Iterable[Dict[str, Any]], columns: List[str]) -> pd.DataFrame:
    df = pd.DataFrame(list(rows), columns=columns)
    df = df[df["user_id"].notna()].drop_duplicates("user_id")
    return df.set_index("user_id")


def _py(value: Any) -> Any:
    """pandas scalars to plain JSON-friendly Python values."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, float) and math.isnan(value):
        return None
    if hasattr(value, "item"):
        return value.item()
    return value


def assemble_customer_profiles(
    profiles: List[Dict[str, Any]],
    session_stats: List[Dict[str, Any]],
    build_stats: List[Dict[str, Any]],
    order_stats: List[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Outer-join per-user aggregates into scored customer profiles."""
    now = now or datetime.now(timezone.utc)
    frames = [
        _frame(profiles, PROFILE_COLUMNS),
        _frame(session_stats, SESSION_COLUMNS),
        _frame(build_stats, BUILD_COLUMNS),
        _frame(order_stats, ORDER_COLUMNS),
    ]
    df = pd.concat(frames, axis=1, join="outer")
    if df.empty:
        return []

    df[COUNT_COLUMNS] = df[COUNT_COLUMNS].fillna(0)
    for col in ("created_at", "first_session", "last_session", "last_build_at", "last_order_at"):
        df[col] = pd.to_datetime(df[col], utc=True)
    df["last_activity"] = df[["last_session", "last_build_at", "last_order_at"]].max(axis=1)

    customers = []
    for user_id, row in df.iterrows():
        last_activity = _py(row["last_activity"])
        idle_days = days_since(last_activity, now)
        sessions, orders, builds = int(row["total_sessions"]), int(row["total_orders"]), int(row["total_builds"])
        spent = round(float(row["total_spent"]), 2)
        score = engagement_score(sessions, orders, builds, idle_days)
        created_at = _py(row["created_at"]) or _py(row["first_session"])

        customers.append({
            "user_id": user_id,
            "first_name": _py(row["first_name"]),
            "last_name": _py(row["last_name"]),
            "email": _py(row["email"]),
            "phone": _py(row["phone"]),
            "created_at": created_at,
            "last_activity": last_activity,
            "days_since_last_activity": round(idle_days, 1) if idle_days is not None else None,
            "total_sessions": sessions,
            "total_page_views": int(row["total_page_views"]),
            "avg_session_seconds": round(float(row["avg_session_seconds"]), 1),
            "total_builds": builds,
            "active_builds": int(row["active_builds"]),
            "total_orders": orders,
            "total_spent": spent,
            "engagement_score": score,
            "engagement_level": engagement_level(score),
            "status": customer_status(orders, idle_days),
            "segment": segment(spent, orders, sessions, idle_days),
            "risk_level": risk_level(idle_days),
            "data_retention_expiry": (
                created_at + timedelta(days=round(365.25 * DATA_RETENTION_YEARS))
                if created_at else None
            ),
        })
    return customers


def filter_customers(customers: List[Dict[str, Any]], filters: Dict[str, Any]) -> List[Dict[str, Any]]:
    result = customers
    search = (filters.get("search") or "").strip().lower()
    if search:
        result = [
            c for c in result
            if any(search in str(c.get(f) or "").lower() for f in ("first_name", "last_name", "email", "phone", "user_id"))
        ]
    if filters.get("segment"):
        result = [c for c in result if c["segment"] == filters["segment"]]
    if filters.get("status"):
        result = [c for c in result if c["status"] == filters["status"]]
    level = filters.get("engagement")
    if level in ENGAGEMENT_LEVELS:
        low, high = ENGAGEMENT_LEVELS[level]
        result = [c for c in result if low <= c["engagement_score"] < high]
    return result


def sort_and_paginate(
    customers: List[Dict[str, Any]],
    sort_by: str = "last_activity",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    sort_by = sort_by if sort_by in SORTABLE_FIELDS else "last_activity"
    reverse = sort_order != "asc"
    # Missing values always sort last
    present = [c for c in customers if c.get(sort_by) is not None]
    missing = [c for c in customers if c.get(sort_by) is None]
    ordered = sorted(present, key=lambda c: c[sort_by], reverse=reverse) + missing

    page, limit = max(1, page), max(1, min(limit, 200))
    total = len(ordered)
    start = (page - 1) * limit
    return {
        "customers": ordered[start:start + limit],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
            "has_next": start + limit < total,
            "has_prev": page > 1,
        },
    }


def summarize_customers(customers: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(customers)
    by_status: Dict[str, int] = {}
    by_segment: Dict[str, int] = {}
    for c in customers:
        by_status[c["status"]] = by_status.get(c["status"], 0) + 1
        by_segment[c["segment"]] = by_segment.get(c["segment"], 0) + 1

    buyers = [c for c in customers if c["total_orders"] > 0]
    repeat = [c for c in buyers if c["total_orders"] > 1]
    return {
        "total_customers": total,
        "by_status": by_status,
        "by_segment": by_segment,
        "conversion_rate": round(len(buyers) / total * 100, 2) if total else 0.0,
        "retention_rate": round(len(repeat) / len(buyers) * 100, 2) if buyers else 0.0,
        "avg_engagement_score": round(sum(c["engagement_score"] for c in customers) / total, 1) if total else 0.0,
        "total_revenue": round(sum(c["total_spent"] for c in customers), 2),
        "data_retention_years": DATA_RETENTION_YEARS,
    }


# ============================================
# DATABASE OPERATIONS
# ============================================

async def build_customer_profiles() -> List[Dict[str, Any]]:
    db = database.get_db()
    profiles = await db.user_profiles.find({}, {"_id": 0, **{c: 1 for c in PROFILE_COLUMNS}}).to_list(length=None)

    session_stats = await db.sessions.aggregate([
        {"$match": {"user_id": {"$ne": None}}},
        {"$group": {
            "_id": "$user_id",
            "total_sessions": {"$sum": 1},
            "total_page_views": {"$sum": "$page_views"},
            "avg_session_seconds": {"$avg": "$duration_seconds"},
            "first_session": {"$min": "$started_at"},
            "last_session": {"$max": "$last_activity"},
        }},
        {"$set": {"user_id": "$_id"}},
    ]).to_list(length=None)

    build_stats = await db.builds.aggregate([
        {"$group": {
            "_id": "$user_id",
            "total_builds": {"$sum": 1},
            "active_builds": {"$sum": {"$cond": [{"$in": ["$status", ACTIVE_BUILD_STATUSES]}, 1, 0]}},
            "last_build_at": {"$max": "$updated_at"},
        }},
        {"$set": {"user_id": "$_id"}},
    ]).to_list(length=None)

    order_stats = await db.orders.aggregate([
        {"$match": {"status": {"$nin": [s.value for s in NON_REVENUE_STATES]}}},
        {"$group": {
            "_id": "$user_id",
            "total_orders": {"$sum": 1},
            "total_spent": {"$sum": "$pricing.total"},
            "last_order_at": {"$max": "$created_at"},
        }},
        {"$set": {"user_id": "$_id"}},
    ]).to_list(length=None)

    return assemble_customer_profiles(profiles, session_stats, build_stats, order_stats)


async def list_customers(
    filters: Dict[str, Any],
    sort_by: str = "last_activity",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    customers = await build_customer_profiles()
    result = sort_and_paginate(filter_customers(customers, filters), sort_by, sort_order, page, limit)
    result["summary"] = summarize_customers(customers)
    return result


async def customer_summary() -> Dict[str, Any]:
    return summarize_customers(await build_customer_profiles())


async def customer_journey(user_id: str) -> Dict[str, Any]:
    """Chronological touchpoints for one user."""
    db = database.get_db()
    sessions = await db.sessions.find({"user_id": user_id}, {"_id": 0, "ip_hash": 0}).to_list(500)
    page_views = await db.page_views.find({"user_id": user_id}, {"_id": 0}).sort("timestamp", 1).to_list(1000)
    builds = await db.builds.find({"user_id": user_id}, {"_id": 0, "build_id": 1, "model_name": 1, "status": 1, "created_at": 1, "status_history": 1}).to_list(200)
    orders = await db.orders.find({"user_id": user_id}, {"_id": 0, "order_id": 1, "status": 1, "pricing.total": 1, "created_at": 1}).to_list(200)
    funnel = await db.funnel_conversions.find({"user_id": user_id}, {"_id": 0, "step": 1, "timestamp": 1}).to_list(1000)

    timeline: List[Dict[str, Any]] = []
    for s in sessions:
        timeline.append({
            "type": "session",
            "timestamp": s.get("started_at"),
            "detail": {k: s.get(k) for k in ("session_id", "device", "browser", "landing_page", "duration_seconds", "page_views")},
        })
    for v in page_views:
        timeline.append({"type": "page_view", "timestamp": v.get("timestamp"), "detail": {"path": v.get("path"), "title": v.get("title")}})
    for b in builds:
        timeline.append({"type": "build_created", "timestamp": b.get("created_at"), "detail": {"build_id": b["build_id"], "model": b.get("model_name")}})
        for h in b.get("status_history") or []:
            timeline.append({"type": "build_status", "timestamp": h.get("changed_at"), "detail": {"build_id": b["build_id"], "status": h.get("status")}})
    for o in orders:
        timeline.append({
            "type": "conversion",
            "timestamp": o.get("created_at"),
            "detail": {"order_id": o["order_id"], "status": o.get("status"), "total": (o.get("pricing") or {}).get("total")},
        })
    for f in funnel:
        timeline.append({"type": "funnel_step", "timestamp": f.get("timestamp"), "detail": {"step": f.get("step")}})

    timeline = [t for t in timeline if t["timestamp"] is not None]
    timeline.sort(key=lambda t: _utc(t["timestamp"]))

    first = timeline[0]["timestamp"] if timeline else None
    last = timeline[-1]["timestamp"] if timeline else None
    return {
        "user_id": user_id,
        "timeline": timeline,
        "summary": {
            "total_touchpoints": len(timeline),
            "conversion_events": sum(1 for t in timeline if t["type"] == "conversion"),
            "first_activity": first,
            "last_activity": last,
            "journey_days": round((_utc(last) - _utc(first)).total_seconds() / 86400, 1) if first and last else 0,
        },
    }


async def realtime_activity() -> Dict[str, Any]:
    db = database.get_db()
    since = datetime.now(timezone.utc) - timedelta(minutes=REALTIME_WINDOW_MINUTES)
    active = await db.sessions.find(
        {"is_active": True, "last_activity": {"$gte": since}},
        {"_id": 0, "ip_hash": 0},
    ).sort("last_activity", -1).to_list(500)

    top_pages = await db.page_views.aggregate([
        {"$match": {"timestamp": {"$gte": since}}},
        {"$group": {"_id": "$path", "views": {"$sum": 1}, "visitors": {"$addToSet": "$session_id"}}},
        {"$project": {"_id": 0, "path": "$_id", "views": 1, "visitors": {"$size": "$visitors"}}},
        {"$sort": {"views": -1}},
        {"$limit": 10},
    ]).to_list(10)

    authenticated = sum(1 for s in active if s.get("user_id"))
    return {
        "active_users": {"authenticated": authenticated, "anonymous": len(active) - authenticated, "total": len(active)},
        "sessions": [
            {k: s.get(k) for k in ("session_id", "user_id", "device", "browser", "os", "landing_page", "page_views", "started_at", "last_activity")}
            for s in active
        ],
        "top_pages": top_pages,
        "window_minutes": REALTIME_WINDOW_MINUTES,
    }
