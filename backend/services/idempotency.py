"""Client idempotency keys for payment mutations.

A key is claimed by inserting it into idempotency_keys (unique index, 24h TTL).
A second request with the same key does not run the operation again.
"""
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional
import logging

from pymongo.errors import DuplicateKeyError

from database import database

logger = logging.getLogger(__name__)

IDEMPOTENT_REPLAY = {"idempotent": True}


async def run_idempotent(
    key: Optional[str],
    scope: str,
    handler: Callable[[], Awaitable[Dict[str, Any]]],
) -> Dict[str, Any]:
    if not key:
        return await handler()

    db = database.get_db()
    scoped_key = f"{scope}:{key}"
    try:
        await db.idempotency_keys.insert_one({"key": scoped_key, "created_at": datetime.now(timezone.utc)})
    except DuplicateKeyError:
        logger.info(f"Idempotent replay for {scoped_key} - skipping")
        return dict(IDEMPOTENT_REPLAY)

    try:
        return await handler()
    except Exception:
        # Release the key so the client can retry a failed attempt
        await db.idempotency_keys.delete_one({"key": scoped_key})
        raise
