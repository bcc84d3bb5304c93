from fastapi import APIRouter, HTTPException, Depends, Query
from typing import Optional, Dict, Any, List
from database import database
from middleware import admin_route_guard, require_permission
from models import AuditAction, Permission
from services.order_workflow import NON_REVENUE_STATES
from utils.audit import create_audit_log, get_audit_logs_for_resource
from datetime import datetime, timezone, timedelta
import logging
import re

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(admin_route_guard)])

ACTIVE_WINDOW_DAYS = 30
ACTIVITY_LIMIT = 50


@router.get("/stats")
async def get_admin_stats(
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    """Headline counts for the dashboard."""
    db = database.get_db()
    since = datetime.now(timezone.utc) - timedelta(days=ACTIVE_WINDOW_DAYS)

    total_users = await db.user_profiles.count_documents({})
    total_builds = await db.builds.count_documents({})
    total_orders = await db.orders.count_documents({})

    revenue_rows = await db.orders.aggregate([
        {"$match": {"status": {"$ne": "cancelled"}}},
        {"$group": {"_id": None, "revenue": {"$sum": "$pricing.total"}}},
    ]).to_list(1)
    revenue = revenue_rows[0]["revenue"] if revenue_rows else 0

    session_users = await db.sessions.distinct("user_id", {"last_activity": {"$gte": since}, "user_id": {"$ne": None}})
    build_users = await db.builds.distinct("user_id", {"updated_at": {"$gte": since}})
    active_users = {u for u in list(session_users) + list(build_users) if u}

    return {
        "users": total_users,
        "builds": total_builds,
        "orders": total_orders,
        "revenue": round(revenue or 0, 2),
        "conversion_rate": round(total_orders / total_builds * 100, 2) if total_builds else 0.0,
        "active_users": len(active_users),
        "active_window_days": ACTIVE_WINDOW_DAYS,
    }


def merge_activity(
    builds: List[Dict[str, Any]],
    orders: List[Dict[str, Any]],
    audits: List[Dict[str, Any]],
    limit: int = ACTIVITY_LIMIT,
) -> List[Dict[str, Any]]:
    """Newest-first feed across builds, orders and audit entries."""
    feed = []
    for b in builds:
        feed.append({
            "type": "build",
            "id": b.get("build_id"),
            "summary": f"{b.get('model_name') or b.get('model_slug')} build {b.get('status')}",
            "user_id": b.get("user_id"),
            "timestamp": b.get("updated_at"),
        })
    for o in orders:
        feed.append({
            "type": "order",
            "id": o.get("order_id"),
            "summary": f"Order {o.get('order_id')} {o.get('status')}",
            "user_id": o.get("user_id"),
            "timestamp": o.get("updated_at") or o.get("created_at"),
        })
    for a in audits:
        feed.append({
            "type": "audit",
            "id": a.get("audit_id"),
            "summary": f"{a.get('action')} {a.get('resource_type') or ''} {a.get('resource_id') or ''}".strip(),
            "user_id": a.get("actor_id"),
            "timestamp": a.get("timestamp"),
        })

    def _key(item):
        ts = item["timestamp"]
        if ts is None:
            return datetime.min.replace(tzinfo=timezone.utc)
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)

    feed.sort(key=_key, reverse=True)
    return feed[:limit]


@router.get("/activity")
async def get_recent_activity(
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    db = database.get_db()
    builds = await db.builds.find(
        {}, {"_id": 0, "build_id": 1, "model_name": 1, "model_slug": 1, "status": 1, "user_id": 1, "updated_at": 1}
    ).sort("updated_at", -1).to_list(ACTIVITY_LIMIT)
    orders = await db.orders.find(
        {}, {"_id": 0, "order_id": 1, "status": 1, "user_id": 1, "created_at": 1, "updated_at": 1}
    ).sort("updated_at", -1).to_list(ACTIVITY_LIMIT)
    audits = await db.audit_logs.find(
        {}, {"_id": 0, "audit_id": 1, "action": 1, "resource_type": 1, "resource_id": 1, "actor_id": 1, "timestamp": 1}
    ).sort("timestamp", -1).to_list(ACTIVITY_LIMIT)
    return {"activity": merge_activity(builds, orders, audits)}


@router.get("/users")
async def list_users(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(require_permission(Permission.USERS_VIEW)),
):
    """Profiles with their build and order counts."""
    db = database.get_db()
    query: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"email": pattern}, {"first_name": pattern}, {"last_name": pattern}]

    profiles = await db.user_profiles.find(query, {"_id": 0}).sort("created_at", -1).skip((page - 1) * limit).limit(limit).to_list(limit)
    total = await db.user_profiles.count_documents(query)
    user_ids = [p["user_id"] for p in profiles]

    build_counts = await db.builds.aggregate([
        {"$match": {"user_id": {"$in": user_ids}}},
        {"$group": {"_id": "$user_id", "count": {"$sum": 1}}},
    ]).to_list(None)
    order_counts = await db.orders.aggregate([
        {"$match": {"user_id": {"$in": user_ids}, "status": {"$nin": [s.value for s in NON_REVENUE_STATES]}}},
        {"$group": {"_id": "$user_id", "count": {"$sum": 1}, "spent": {"$sum": "$pricing.total"}}},
    ]).to_list(None)
    builds_by_user = {r["_id"]: r["count"] for r in build_counts}
    orders_by_user = {r["_id"]: r for r in order_counts}

    users = []
    for p in profiles:
        orders = orders_by_user.get(p["user_id"]) or {}
        users.append({
            **p,
            "build_count": builds_by_user.get(p["user_id"], 0),
            "order_count": orders.get("count", 0),
            "total_spent": round(orders.get("spent", 0) or 0, 2),
        })

    return {
        "users": users,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


@router.get("/audit/{resource_type}/{resource_id}")
async def get_resource_audit_trail(
    resource_type: str,
    resource_id: str,
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    """Audit history for one build, order, model or settings record."""
    logs = await get_audit_logs_for_resource(resource_type, resource_id, limit)
    return {"resource_type": resource_type, "resource_id": resource_id, "logs": logs}


@router.post("/jobs/{job_id}/run")
async def run_job_now(
    job_id: str,
    current_user: dict = Depends(require_permission(Permission.SYSTEM_ADMIN)),
):
    """Run a scheduler job immediately."""
    from job_runner import JOB_RUNNERS
    runner = JOB_RUNNERS.get(job_id)
    if not runner:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")

    result = await runner()
    await create_audit_log(
        action=AuditAction.ADMIN_JOB_RUN,
        actor_id=current_user["user_id"],
        actor_role=current_user["role"],
        resource_type="job",
        resource_id=job_id,
        metadata=result,
    )
    return result


@router.post("/jobs/close-stale-sessions")
async def close_stale_sessions_now(
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    from job_runner import run_close_stale_sessions
    result = await run_close_stale_sessions()
    await create_audit_log(
        action=AuditAction.ADMIN_JOB_RUN,
        actor_id=current_user["user_id"],
        actor_role=current_user["role"],
        resource_type="job",
        resource_id="close_stale_sessions",
        metadata=result,
    )
    return result
