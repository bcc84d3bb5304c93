"""Org-level business settings (factory location and pricing constants).

A single document with key "org" holds overrides; anything missing falls back
to the defaults below so pricing never breaks on an empty database.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import copy
import logging

from database import database
from models import AuditAction
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

ORG_SETTINGS_KEY = "org"

DEFAULT_ORG_SETTINGS: Dict[str, Any] = {
    "factory": {
        "name": "Champion Homes of Mansfield, TX",
        "address": "606 S 2nd Ave, Mansfield, TX 76063",
    },
    "pricing": {
        "deposit_percent": 25.0,
        "tax_rate_percent": 6.25,
        "delivery_rate_per_mile": 12.5,
        "delivery_minimum": 1500.0,
        "title_fee_default": 500.0,
        "setup_fee_default": 3000.0,
    },
}

MAX_FACTORY_NAME = 200
MAX_FACTORY_ADDRESS = 500


def merge_settings(stored: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Overlay stored values on the defaults, section by section."""
    merged = copy.deepcopy(DEFAULT_ORG_SETTINGS)
    if not stored:
        return merged
    for section in ("factory", "pricing"):
        values = stored.get(section) or {}
        for key, value in values.items():
            if value is not None:
                merged[section][key] = value
    if stored.get("updated_at"):
        merged["updated_at"] = stored["updated_at"]
    return merged


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return number


def sanitize_settings_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Keep known fields only; truncate strings and coerce pricing values to floats."""
    clean: Dict[str, Any] = {}

    factory = patch.get("factory") or {}
    if isinstance(factory, dict):
        if isinstance(factory.get("name"), str):
            clean["factory.name"] = factory["name"].strip()[:MAX_FACTORY_NAME]
        if isinstance(factory.get("address"), str):
            clean["factory.address"] = factory["address"].strip()[:MAX_FACTORY_ADDRESS]

    pricing = patch.get("pricing") or {}
    if isinstance(pricing, dict):
        for key in DEFAULT_ORG_SETTINGS["pricing"]:
            if key in pricing:
                number = _to_number(pricing[key])
                if number is not None and number >= 0:
                    clean[f"pricing.{key}"] = number

    return clean


async def get_org_settings() -> Dict[str, Any]:
    db = database.get_db()
    stored = await db.settings.find_one({"key": ORG_SETTINGS_KEY}, {"_id": 0})
    return merge_settings(stored)


async def update_org_settings(patch: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
    db = database.get_db()
    updates = sanitize_settings_patch(patch)
    if not updates:
        raise ValueError("No valid settings supplied")

    before = await get_org_settings()
    updates["updated_at"] = datetime.now(timezone.utc)
    updates["updated_by"] = actor.get("user_id")

    await db.settings.update_one(
        {"key": ORG_SETTINGS_KEY},
        {"$set": updates, "$setOnInsert": {"key": ORG_SETTINGS_KEY}},
        upsert=True,
    )
    after = await get_org_settings()

    await create_audit_log(
        action=AuditAction.SETTINGS_UPDATED,
        actor_id=actor.get("user_id"),
        actor_role=actor.get("role"),
        resource_type="settings",
        resource_id=ORG_SETTINGS_KEY,
        before_state=before.get("pricing"),
        after_state=after.get("pricing"),
        metadata={"fields": sorted(k for k in updates if k not in ("updated_at", "updated_by"))},
    )
    logger.info("Org settings updated by %s", actor.get("user_id"))
    return after


def public_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    return {"factory": settings["factory"], "pricing": settings["pricing"]}
