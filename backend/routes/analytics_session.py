"""
Analytics ingestion routes - sessions, page views, events and funnel steps.

Called from the public site, so auth is optional and every call is rate
limited per client IP.
"""
from fastapi import APIRouter, HTTPException, Depends, Request, status
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
import logging

from middleware import optional_user, require_permission
from models import Permission
from services import session_tracker
from services.conversion_funnel import track_conversion
from services.errors import NotFoundError
from utils.http_errors import to_http_exception
from utils.rate_limiter import client_ip, rate_limiter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/analytics", tags=["analytics"])

RATE_LIMIT_PER_MINUTE = 120


# ============================================
# MODELS
# ============================================

class SessionStartRequest(BaseModel):
    session_id: Optional[str] = None
    referrer: Optional[str] = None
    landing_page: Optional[str] = None


class SessionEndRequest(BaseModel):
    session_id: str


class PageViewRequest(BaseModel):
    session_id: str
    path: str
    title: Optional[str] = None
    time_on_page: Optional[int] = None


class PageTimeRequest(BaseModel):
    page_view_id: str
    seconds: int = Field(ge=0)


class EventRequest(BaseModel):
    event_type: str = Field(min_length=1)
    session_id: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)


class FunnelStepRequest(BaseModel):
    step: str
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================
# HELPERS
# ============================================

async def enforce_rate_limit(request: Request) -> None:
    allowed, error_msg = await rate_limiter.check_rate_limit(
        key=f"analytics_{client_ip(request)}",
        max_attempts=RATE_LIMIT_PER_MINUTE,
        window_seconds=60,
    )
    if not allowed:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=error_msg)


def _user_id(user: Optional[dict]) -> Optional[str]:
    return user["user_id"] if user else None


# ============================================
# INGESTION
# ============================================

@router.post("/session/start", dependencies=[Depends(enforce_rate_limit)])
async def start_session(
    body: SessionStartRequest,
    request: Request,
    user: Optional[dict] = Depends(optional_user),
):
    session_id = await session_tracker.start_session(
        user_id=_user_id(user),
        session_id=body.session_id,
        user_agent=request.headers.get("User-Agent"),
        ip=client_ip(request),
        referrer=body.referrer,
        landing_page=body.landing_page,
    )
    return {"session_id": session_id}


@router.post("/session/end", dependencies=[Depends(enforce_rate_limit)])
async def end_session(body: SessionEndRequest):
    try:
        duration = await session_tracker.end_session(body.session_id)
    except NotFoundError as e:
        raise to_http_exception(e)
    return {"session_id": body.session_id, "duration_seconds": duration}


@router.post("/pageview", dependencies=[Depends(enforce_rate_limit)])
async def track_page_view(body: PageViewRequest, user: Optional[dict] = Depends(optional_user)):
    page_view_id = await session_tracker.track_page_view(
        body.session_id, _user_id(user), body.path, body.title, body.time_on_page
    )
    return {"page_view_id": page_view_id}


@router.post("/page-time", dependencies=[Depends(enforce_rate_limit)])
async def update_page_time(body: PageTimeRequest):
    updated = await session_tracker.update_page_time(body.page_view_id, body.seconds)
    if not updated:
        raise HTTPException(status_code=404, detail="Page view not found")
    return {"updated": True}


@router.post("/event", dependencies=[Depends(enforce_rate_limit)])
async def track_event(body: EventRequest, user: Optional[dict] = Depends(optional_user)):
    event_id = await session_tracker.track_event(body.session_id, _user_id(user), body.event_type, body.properties)
    return {"event_id": event_id}


@router.post("/funnel", dependencies=[Depends(enforce_rate_limit)])
async def track_funnel_step(body: FunnelStepRequest, user: Optional[dict] = Depends(optional_user)):
    if not user and not body.session_id:
        raise HTTPException(status_code=400, detail="session_id is required for anonymous visitors")
    try:
        return await track_conversion(_user_id(user), body.session_id, body.step, body.metadata)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ============================================
# READ
# ============================================

@router.get("/user/{user_id}")
async def get_user_analytics(
    user_id: str,
    current_user: dict = Depends(require_permission(Permission.ANALYTICS_VIEW)),
):
    return await session_tracker.get_user_analytics(user_id)
