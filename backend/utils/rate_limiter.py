"""Sliding-window rate limiting for the public analytics ingestion endpoints."""
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, Optional
import logging
import os

from fastapi import Request

logger = logging.getLogger(__name__)


def trusted_proxy_hops() -> int:
    """Number of reverse proxies in front of the API that append to X-Forwarded-For."""
    try:
        return max(0, int(os.getenv("TRUSTED_PROXY_HOPS", "1")))
    except (TypeError, ValueError):
        return 1


def client_ip(request: Request, hops: Optional[int] = None) -> str:
    """
    Client address as seen by the outermost trusted proxy.

    Each proxy appends the peer it received the request from, so the entry
    `hops` places from the right is the last one a trusted proxy wrote.
    Anything left of it is client-supplied and ignored.
    """
    hops = trusted_proxy_hops() if hops is None else hops
    forwarded = request.headers.get("X-Forwarded-For")
    if hops and forwarded:
        parts = [p.strip() for p in forwarded.split(",") if p.strip()]
        if parts:
            return parts[-hops] if len(parts) >= hops else parts[0]
    return request.client.host if request.client else "unknown"


class RateLimiter:
    def __init__(self):
        # In-memory, per process; keys with no hits in the window are dropped
        self.attempts: Dict[str, Deque[datetime]] = {}
        self._last_sweep = datetime.now(timezone.utc)

    def _sweep(self, now: datetime, window: timedelta) -> None:
        stale = [key for key, hits in self.attempts.items() if not hits or now - hits[-1] >= window]
        for key in stale:
            del self.attempts[key]
        self._last_sweep = now

    async def check_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window_seconds: int
    ) -> tuple[bool, Optional[str]]:
        """
        Record a hit for key unless it already has max_attempts in the window.

        Returns:
            (allowed: bool, error_message: Optional[str])
        """
        now = datetime.now(timezone.utc)
        window = timedelta(seconds=window_seconds)
        if now - self._last_sweep >= window:
            self._sweep(now, window)

        hits = self.attempts.setdefault(key, deque())
        while hits and now - hits[0] >= window:
            hits.popleft()

        if len(hits) >= max_attempts:
            wait_seconds = max(int((hits[0] + window - now).total_seconds()), 1)
            logger.warning("Rate limit exceeded for %s", key)
            return False, f"Rate limit exceeded. Try again in {wait_seconds} seconds"

        hits.append(now)
        return True, None

    def reset(self):
        self.attempts.clear()
        self._last_sweep = datetime.now(timezone.utc)


rate_limiter = RateLimiter()
