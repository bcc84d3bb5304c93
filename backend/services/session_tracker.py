"""Session tracking - visitor sessions, page views and events.

Sessions are opened by the site on first load and closed on unload, or by the
close_stale_sessions job when the browser never says goodbye. Raw IPs are never
stored; only a SHA-256 hash.
"""
import hashlib
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from database import database
from services.errors import NotFoundError

logger = logging.getLogger(__name__)

STALE_SESSION_MINUTES = 30
MAX_PATH_LENGTH = 500
MAX_EVENT_TYPE_LENGTH = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    return f"sess_{uuid.uuid4().hex[:16]}"


def hash_ip(ip: Optional[str]) -> Optional[str]:
    if not ip:
        return None
    return hashlib.sha256(ip.strip().encode("utf-8")).hexdigest()


def parse_user_agent(user_agent: Optional[str]) -> Dict[str, str]:
    """Coarse device/browser/os classification from a User-Agent string."""
    if not user_agent:
        return {"device": "unknown", "browser": "unknown", "os": "unknown"}

    if re.search(r"iPad|Tablet", user_agent):
        device = "tablet"
    elif re.search(r"Mobile|Android|iPhone", user_agent):
        device = "mobile"
    else:
        device = "desktop"

    # Order matters: Edge and Chrome UAs both mention Safari
    if "Edg/" in user_agent or "Edge/" in user_agent:
        browser = "edge"
    elif "Firefox/" in user_agent:
        browser = "firefox"
    elif "Chrome/" in user_agent:
        browser = "chrome"
    elif "Safari/" in user_agent:
        browser = "safari"
    else:
        browser = "other"

    if re.search(r"iPhone|iPad|iOS", user_agent):
        os_name = "ios"
    elif "Android" in user_agent:
        os_name = "android"
    elif "Windows" in user_agent:
        os_name = "windows"
    elif "Mac OS X" in user_agent or "Macintosh" in user_agent:
        os_name = "macos"
    elif "Linux" in user_agent:
        os_name = "linux"
    else:
        os_name = "other"

    return {"device": device, "browser": browser, "os": os_name}


def activity_score(total_sessions: int, total_page_views: int, avg_session_seconds: float, first_seen: Optional[datetime]) -> int:
    """0-100 score from visit frequency, depth, session length and account age."""
    score = 0
    for threshold, points in ((50, 30), (20, 25), (10, 20), (5, 15), (1, 10)):
        if total_sessions >= threshold:
            score += points
            break
    for threshold, points in ((200, 25), (100, 20), (50, 15), (20, 10), (5, 5)):
        if total_page_views >= threshold:
            score += points
            break
    avg_minutes = (avg_session_seconds or 0) / 60
    for threshold, points in ((30, 25), (15, 20), (10, 15), (5, 10), (2, 5)):
        if avg_minutes >= threshold:
            score += points
            break
    if first_seen:
        if first_seen.tzinfo is None:
            first_seen = first_seen.replace(tzinfo=timezone.utc)
        age_days = (_now() - first_seen).days
        for threshold, points in ((365, 20), (180, 15), (90, 10), (30, 5)):
            if age_days >= threshold:
                score += points
                break
    return min(score, 100)


async def start_session(
    user_id: Optional[str],
    session_id: Optional[str] = None,
    user_agent: Optional[str] = None,
    ip: Optional[str] = None,
    referrer: Optional[str] = None,
    landing_page: Optional[str] = None,
) -> str:
    db = database.get_db()
    session_id = session_id or generate_session_id()
    now = _now()
    session = {
        "session_id": session_id,
        "user_id": user_id,
        "started_at": now,
        "ended_at": None,
        "last_activity": now,
        "duration_seconds": None,
        "is_active": True,
        "ip_hash": hash_ip(ip),
        "referrer": (referrer or None) and referrer[:MAX_PATH_LENGTH],
        "landing_page": (landing_page or None) and landing_page[:MAX_PATH_LENGTH],
        "page_views": 0,
        **parse_user_agent(user_agent),
    }
    try:
        await db.sessions.insert_one(session)
    except DuplicateKeyError:
        # Client re-sent an existing session id (e.g. after a reload)
        await db.sessions.update_one(
            {"session_id": session_id},
            {"$set": {"is_active": True, "last_activity": now, **({"user_id": user_id} if user_id else {})}},
        )
    logger.info(f"Session started: {session_id} user={user_id}")
    return session_id


async def end_session(session_id: str) -> int:
    db = database.get_db()
    session = await db.sessions.find_one({"session_id": session_id}, {"_id": 0})
    if not session:
        raise NotFoundError("Session not found")

    ended_at = _now()
    started_at = session["started_at"]
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    duration = max(0, int((ended_at - started_at).total_seconds()))

    await db.sessions.update_one(
        {"session_id": session_id},
        {"$set": {"ended_at": ended_at, "duration_seconds": duration, "is_active": False, "last_activity": ended_at}},
    )
    if session.get("user_id"):
        await update_user_analytics(session["user_id"])
    logger.info(f"Session ended: {session_id} duration={duration}s")
    return duration


async def track_page_view(
    session_id: str,
    user_id: Optional[str],
    path: str,
    title: Optional[str] = None,
    time_on_page: Optional[int] = None,
) -> str:
    db = database.get_db()
    now = _now()
    page_view_id = uuid.uuid4().hex
    await db.page_views.insert_one({
        "page_view_id": page_view_id,
        "session_id": session_id,
        "user_id": user_id,
        "path": (path or "/")[:MAX_PATH_LENGTH],
        "title": (title or "")[:MAX_PATH_LENGTH],
        "time_on_page": time_on_page,
        "timestamp": now,
    })
    await db.sessions.update_one(
        {"session_id": session_id},
        {"$inc": {"page_views": 1}, "$set": {"last_activity": now}},
    )
    return page_view_id


async def update_page_time(page_view_id: str, seconds: int) -> bool:
    db = database.get_db()
    result = await db.page_views.update_one(
        {"page_view_id": page_view_id},
        {"$set": {"time_on_page": max(0, int(seconds))}},
    )
    return result.matched_count > 0


async def track_event(
    session_id: Optional[str],
    user_id: Optional[str],
    event_type: str,
    properties: Optional[Dict[str, Any]] = None,
) -> str:
    db = database.get_db()
    event_id = uuid.uuid4().hex
    now = _now()
    await db.analytics_events.insert_one({
        "event_id": event_id,
        "session_id": session_id,
        "user_id": user_id,
        "event_type": event_type[:MAX_EVENT_TYPE_LENGTH],
        "properties": properties or {},
        "timestamp": now,
    })
    if session_id:
        await db.sessions.update_one({"session_id": session_id}, {"$set": {"last_activity": now}})
    return event_id


async def update_user_analytics(user_id: str) -> Dict[str, Any]:
    """Recompute the per-user aggregate row from sessions and page views."""
    db = database.get_db()
    stats = await db.sessions.aggregate([
        {"$match": {"user_id": user_id}},
        {"$group": {
            "_id": None,
            "total_sessions": {"$sum": 1},
            "total_time_seconds": {"$sum": {"$ifNull": ["$duration_seconds", 0]}},
            "total_page_views": {"$sum": "$page_views"},
            "first_seen": {"$min": "$started_at"},
            "last_seen": {"$max": "$last_activity"},
        }},
    ]).to_list(length=1)
    row = stats[0] if stats else {}
    page_view_count = await db.page_views.count_documents({"user_id": user_id})

    total_sessions = row.get("total_sessions", 0)
    total_time = row.get("total_time_seconds", 0)
    avg_session = round(total_time / total_sessions, 1) if total_sessions else 0
    total_page_views = max(row.get("total_page_views", 0), page_view_count)

    analytics = {
        "user_id": user_id,
        "total_sessions": total_sessions,
        "total_page_views": total_page_views,
        "total_time_seconds": total_time,
        "avg_session_seconds": avg_session,
        "first_seen": row.get("first_seen"),
        "last_seen": row.get("last_seen"),
        "activity_score": activity_score(total_sessions, total_page_views, avg_session, row.get("first_seen")),
        "updated_at": _now(),
    }
    await db.user_analytics.replace_one({"user_id": user_id}, analytics, upsert=True)
    return analytics


async def get_user_analytics(user_id: str) -> Dict[str, Any]:
    db = database.get_db()
    analytics = await db.user_analytics.find_one({"user_id": user_id}, {"_id": 0})
    if not analytics:
        analytics = await update_user_analytics(user_id)
    recent_sessions = await db.sessions.find({"user_id": user_id}, {"_id": 0, "ip_hash": 0}).sort("started_at", -1).to_list(20)
    return {"analytics": analytics, "recent_sessions": recent_sessions}


async def close_stale_sessions(timeout_minutes: int = STALE_SESSION_MINUTES) -> int:
    """Close active sessions with no activity for timeout_minutes. Returns count closed."""
    db = database.get_db()
    cutoff = _now() - timedelta(minutes=timeout_minutes)
    stale = await db.sessions.find(
        {"is_active": True, "last_activity": {"$lt": cutoff}},
        {"_id": 0, "session_id": 1, "user_id": 1, "started_at": 1, "last_activity": 1},
    ).to_list(length=5000)

    users = set()
    for session in stale:
        started_at, last_activity = session["started_at"], session["last_activity"]
        duration = max(0, int((last_activity - started_at).total_seconds()))
        await db.sessions.update_one(
            {"session_id": session["session_id"], "is_active": True},
            {"$set": {"is_active": False, "ended_at": last_activity, "duration_seconds": duration, "closed_by": "timeout"}},
        )
        if session.get("user_id"):
            users.add(session["user_id"])

    for user_id in users:
        await update_user_analytics(user_id)

    if stale:
        logger.info(f"Closed {len(stale)} stale sessions")
    return len(stale)
