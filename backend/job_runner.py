"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and admin (manual run).
Each run_* returns a dict with "message" (and optionally "count") for admin toast.
"""
import logging

logger = logging.getLogger(__name__)


async def run_close_stale_sessions():
    try:
        from services.session_tracker import close_stale_sessions, STALE_SESSION_MINUTES
        count = await close_stale_sessions(STALE_SESSION_MINUTES)
        logger.info(f"Stale session job completed: {count} sessions closed")
        return {"message": f"Closed {count} stale sessions", "count": count}
    except Exception as e:
        logger.error(f"Stale session job failed: {e}")
        raise


# Map scheduler job id -> run function (for admin manual run)
JOB_RUNNERS = {
    "close_stale_sessions": run_close_stale_sessions,
}
