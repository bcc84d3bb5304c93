"""Home model catalog: lookup by code/slug, admin edits and image management."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import re
import logging

from database import database
from models import AuditAction
from services.errors import NotFoundError, RuleViolation
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

MODEL_CODE_RE = re.compile(r"^[A-Za-z]{2,3}-\d{2,3}[A-Za-z]*$")
SLUG_RE = re.compile(r"^[a-z0-9-]+$")

MAX_NAME = 200
MAX_DESCRIPTION = 5000
MAX_FEATURES = 100
MAX_FEATURE_LENGTH = 300

SPEC_STRING_FIELDS = ("width", "length", "height", "weight")
SPEC_NUMBER_FIELDS = ("square_feet", "bedrooms", "bathrooms")


def is_model_code(value: Optional[str]) -> bool:
    return bool(value) and bool(MODEL_CODE_RE.match(value.strip()))


def is_slug(value: Optional[str]) -> bool:
    return bool(value) and bool(SLUG_RE.match(value.strip()))


def slugify_name(name: Optional[str]) -> str:
    slug = (name or "").lower()
    slug = re.sub(r"^the\s+", "", slug)
    slug = re.sub(r"[^a-z0-9\s-]", "", slug).strip()
    return re.sub(r"\s+", "-", slug)


async def find_model(identifier: str) -> Optional[Dict[str, Any]]:
    """Resolve by model code (case-insensitive), then slug, then model_id."""
    if not identifier:
        return None
    db = database.get_db()
    raw = identifier.strip()

    if is_model_code(raw):
        model = await db.models.find_one({"code": raw.upper()}, {"_id": 0})
        if model:
            return model
        model = await db.models.find_one(
            {"code": {"$regex": f"^{re.escape(raw)}$", "$options": "i"}}, {"_id": 0}
        )
        if model:
            return model

    if is_slug(raw.lower()):
        model = await db.models.find_one({"slug": raw.lower()}, {"_id": 0})
        if model:
            return model

    return await db.models.find_one({"model_id": raw}, {"_id": 0})


async def list_models() -> List[Dict[str, Any]]:
    db = database.get_db()
    return await db.models.find({}, {"_id": 0}).sort("name", 1).to_list(500)


def sanitize_model_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}

    name = patch.get("name")
    if isinstance(name, str) and name.strip():
        updates["name"] = name.strip()[:MAX_NAME]
        updates["slug"] = slugify_name(updates["name"])

    price = patch.get("base_price")
    if price is not None:
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
            raise RuleViolation("INVALID_PRICE", "base_price must be a non-negative number")
        updates["base_price"] = float(price)

    description = patch.get("description")
    if isinstance(description, str):
        updates["description"] = description[:MAX_DESCRIPTION]

    features = patch.get("features")
    if isinstance(features, list):
        updates["features"] = [str(f)[:MAX_FEATURE_LENGTH] for f in features[:MAX_FEATURES]]

    specs = patch.get("specs")
    if isinstance(specs, dict):
        for key in SPEC_STRING_FIELDS:
            if isinstance(specs.get(key), str):
                updates[f"specs.{key}"] = specs[key]
        for key in SPEC_NUMBER_FIELDS:
            value = specs.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                updates[f"specs.{key}"] = value

    return updates


async def _require_model(identifier: str) -> Dict[str, Any]:
    model = await find_model(identifier)
    if not model:
        raise NotFoundError("Model not found")
    return model


async def update_model(identifier: str, patch: Dict[str, Any], actor: Dict[str, Any]) -> Dict[str, Any]:
    db = database.get_db()
    model = await _require_model(identifier)
    updates = sanitize_model_patch(patch)
    if not updates:
        raise RuleViolation("NO_CHANGES", "No valid fields supplied")

    updates["updated_at"] = datetime.now(timezone.utc)
    updates["updated_by"] = actor.get("user_id")
    await db.models.update_one({"model_id": model["model_id"]}, {"$set": updates})

    await create_audit_log(
        action=AuditAction.MODEL_UPDATED,
        actor_id=actor.get("user_id"),
        actor_role=actor.get("role"),
        resource_type="model",
        resource_id=model["model_id"],
        metadata={"fields": sorted(k for k in updates if k not in ("updated_at", "updated_by"))},
    )
    return await db.models.find_one({"model_id": model["model_id"]}, {"_id": 0})


async def add_images(identifier: str, images: List[Dict[str, Any]], actor: Dict[str, Any]) -> Dict[str, Any]:
    if not images:
        raise RuleViolation("INVALID_IMAGES", "At least one image is required")
    clean = []
    for img in images:
        url = str(img.get("url") or "")
        if not url.startswith("http"):
            raise RuleViolation("INVALID_IMAGE_URL", "Invalid image URL provided")
        clean.append({
            "public_id": str(img.get("public_id") or url),
            "url": url,
            "alt": str(img.get("alt") or ""),
            "is_primary": False,
        })

    db = database.get_db()
    model = await _require_model(identifier)
    if not model.get("images"):
        clean[0]["is_primary"] = True
    await db.models.update_one(
        {"model_id": model["model_id"]},
        {
            "$push": {"images": {"$each": clean}},
            "$set": {"updated_at": datetime.now(timezone.utc), "updated_by": actor.get("user_id")},
        },
    )
    return await db.models.find_one({"model_id": model["model_id"]}, {"_id": 0})


def arrange_images(
    images: List[Dict[str, Any]],
    set_primary: Optional[str] = None,
    order: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    """Reorder by public_id (unknown ids dropped) and/or flag a new primary image."""
    result = [dict(img) for img in images]
    if order:
        by_id = {img["public_id"]: img for img in result}
        reordered = [by_id[pid] for pid in order if pid in by_id]
        if reordered:
            result = reordered
    if set_primary:
        for img in result:
            img["is_primary"] = img["public_id"] == set_primary
    return result


async def update_images(
    identifier: str,
    actor: Dict[str, Any],
    set_primary: Optional[str] = None,
    order: Optional[List[str]] = None,
) -> Dict[str, Any]:
    db = database.get_db()
    model = await _require_model(identifier)
    images = arrange_images(model.get("images") or [], set_primary, order)
    await db.models.update_one(
        {"model_id": model["model_id"]},
        {"$set": {"images": images, "updated_at": datetime.now(timezone.utc), "updated_by": actor.get("user_id")}},
    )
    return await db.models.find_one({"model_id": model["model_id"]}, {"_id": 0})


async def remove_image(identifier: str, public_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
    db = database.get_db()
    model = await _require_model(identifier)
    if not any(img.get("public_id") == public_id for img in model.get("images") or []):
        raise NotFoundError("Image not found")
    await db.models.update_one(
        {"model_id": model["model_id"]},
        {
            "$pull": {"images": {"public_id": public_id}},
            "$set": {"updated_at": datetime.now(timezone.utc), "updated_by": actor.get("user_id")},
        },
    )
    return await db.models.find_one({"model_id": model["model_id"]}, {"_id": 0})
