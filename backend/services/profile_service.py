"""Customer profiles and address book, used to pre-fill checkout buyer info."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid
import logging

from database import database
from services.errors import NotFoundError

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("first_name", "last_name", "phone", "email")
ADDRESS_FIELDS = ("address", "city", "state", "zip")


def empty_profile(user_id: str) -> Dict[str, Any]:
    return {"user_id": user_id, "first_name": None, "last_name": None, "phone": None, "email": None, "addresses": []}


async def get_profile(user_id: str) -> Dict[str, Any]:
    db = database.get_db()
    profile = await db.user_profiles.find_one({"user_id": user_id}, {"_id": 0})
    return profile or empty_profile(user_id)


async def update_profile(user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    db = database.get_db()
    now = datetime.now(timezone.utc)
    updates = {k: data[k] for k in PROFILE_FIELDS if data.get(k) is not None}
    updates["updated_at"] = now
    await db.user_profiles.update_one(
        {"user_id": user_id},
        {"$set": updates, "$setOnInsert": {"user_id": user_id, "created_at": now, "addresses": []}},
        upsert=True,
    )
    return await get_profile(user_id)


def merge_address(addresses: List[Dict[str, Any]], address: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Add or update an address; the first one and any explicit primary become primary."""
    addresses = [dict(a) for a in addresses]
    is_primary = address.get("is_primary")
    if is_primary is None:
        is_primary = not addresses

    entry = {k: address.get(k) for k in ADDRESS_FIELDS}
    entry["label"] = address.get("label") or "Home"
    entry["is_primary"] = bool(is_primary)

    match = next(
        (a for a in addresses if all((a.get(k) or "") == (entry.get(k) or "") for k in ADDRESS_FIELDS)),
        None,
    )
    if match:
        match.update(entry)
        target = match
    else:
        entry["address_id"] = f"addr_{uuid.uuid4().hex[:10]}"
        entry["added_at"] = datetime.now(timezone.utc)
        addresses.append(entry)
        target = entry

    if target["is_primary"]:
        for a in addresses:
            if a is not target:
                a["is_primary"] = False
    return addresses


async def _save_addresses(user_id: str, addresses: List[Dict[str, Any]]) -> Dict[str, Any]:
    db = database.get_db()
    now = datetime.now(timezone.utc)
    await db.user_profiles.update_one(
        {"user_id": user_id},
        {"$set": {"addresses": addresses, "updated_at": now}, "$setOnInsert": {"user_id": user_id, "created_at": now}},
        upsert=True,
    )
    return await get_profile(user_id)


async def add_address(user_id: str, address: Dict[str, Any]) -> Dict[str, Any]:
    profile = await get_profile(user_id)
    return await _save_addresses(user_id, merge_address(profile.get("addresses") or [], address))


async def set_primary_address(user_id: str, address_id: str) -> Dict[str, Any]:
    profile = await get_profile(user_id)
    addresses = profile.get("addresses") or []
    if not any(a.get("address_id") == address_id for a in addresses):
        raise NotFoundError("Address not found")
    for a in addresses:
        a["is_primary"] = a.get("address_id") == address_id
    return await _save_addresses(user_id, addresses)


def primary_address(profile: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    addresses = profile.get("addresses") or []
    return next((a for a in addresses if a.get("is_primary")), addresses[0] if addresses else None)


def autofill_buyer_info(profile: Dict[str, Any], fallback_email: Optional[str] = None) -> Dict[str, Any]:
    address = primary_address(profile) or {}
    info = {k: profile.get(k) for k in PROFILE_FIELDS}
    if not info.get("email"):
        info["email"] = fallback_email
    info.update({k: address.get(k) for k in ADDRESS_FIELDS})
    return info
