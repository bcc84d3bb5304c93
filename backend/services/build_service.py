"""
Build Service - configurator drafts and the checkout flow.

A build is a user's saved home configuration. It carries its own pricing
estimate, buyer info, financing choice, contract state and payment
sub-document, and moves through checkout steps 1-8:

  1 model   2 options   3 pricing   4 buyer info
  5 review  6 payment   7 contract  8 confirmation

Gates: step >= 4 needs complete buyer info, step >= 6 needs a payment method,
step >= 7 needs a signed contract.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import copy
import uuid
import logging

from database import database
from models import AuditAction, BuildStatus, ContractStatus, IntentStatus, MilestoneType, PaymentMethod, PaymentPlanType
from services.delivery_service import DeliveryQuoteError, build_delivery_address, quote_delivery
from services.errors import ForbiddenError, NotFoundError, RuleViolation
from services.pricing import reprice
from utils.audit import SYSTEM_ACTOR, SYSTEM_ROLE, create_audit_log

logger = logging.getLogger(__name__)

MIN_STEP = 1
MAX_STEP = 8
BUYER_INFO_STEP = 4
PAYMENT_METHOD_STEP = 6
CONTRACT_STEP = 7
REVIEW_STEP = 5

MAX_BUILD_NAME = 200

REQUIRED_BUYER_FIELDS = ("first_name", "last_name", "email")

PATCHABLE_FIELDS = {
    "status", "step", "primary", "model_slug", "model_name",
    "buyer_info", "financing", "selections",
}


def generate_build_id() -> str:
    return f"BLD-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# PURE RULES
# ============================================

def checkout_step_error(build: Dict[str, Any], step: int) -> Optional[RuleViolation]:
    """Return the first gate the build fails for the target step, or None."""
    if not isinstance(step, int) or isinstance(step, bool) or step < MIN_STEP or step > MAX_STEP:
        return RuleViolation("INVALID_STEP", f"Step must be between {MIN_STEP} and {MAX_STEP}")

    if step >= BUYER_INFO_STEP:
        buyer = build.get("buyer_info") or {}
        missing = [f for f in REQUIRED_BUYER_FIELDS if not (buyer.get(f) or "").strip()]
        if missing or not build_delivery_address(buyer):
            return RuleViolation("INCOMPLETE_BUYER", "Buyer name, email and address are required")

    if step >= PAYMENT_METHOD_STEP:
        if not (build.get("financing") or {}).get("method"):
            return RuleViolation("MISSING_PAYMENT_METHOD", "Select a payment method first")

    if step >= CONTRACT_STEP:
        if (build.get("contract") or {}).get("status") != ContractStatus.SIGNED.value:
            return RuleViolation("CONTRACT_NOT_SIGNED", "The purchase agreement must be signed first")

    return None


def sanitize_build_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    clean: Dict[str, Any] = {}
    for key, value in patch.items():
        if key not in PATCHABLE_FIELDS or value is None:
            continue
        if key == "status":
            clean[key] = str(value)
        elif key == "step":
            try:
                clean[key] = int(value)
            except (TypeError, ValueError):
                raise RuleViolation("INVALID_STEP", f"Step must be between {MIN_STEP} and {MAX_STEP}")
        elif key == "primary":
            clean[key] = bool(value)
        elif key in ("model_slug", "model_name"):
            clean[key] = str(value)
        elif isinstance(value, dict):
            clean[key] = dict(value)
    return clean


def assert_owner(build: Optional[Dict[str, Any]], user_id: str) -> Dict[str, Any]:
    if not build:
        raise NotFoundError("Build not found")
    if build.get("user_id") != user_id:
        raise ForbiddenError("Not your build")
    return build


def _delivery_from_pricing(pricing: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not pricing or pricing.get("delivery") is None:
        return None
    return {
        "fee": pricing.get("delivery"),
        "miles": pricing.get("delivery_miles"),
        "rate": pricing.get("delivery_rate"),
        "minimum": pricing.get("delivery_minimum"),
    }


# ============================================
# CRUD
# ============================================

async def create_build(
    user_id: str,
    model_slug: str,
    model_name: Optional[str],
    base_price: float,
    selections: Optional[Dict[str, Any]] = None,
    financing: Optional[Dict[str, Any]] = None,
    buyer_info: Optional[Dict[str, Any]] = None,
    option_catalog: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    db = database.get_db()
    selections = selections or {}
    financing = financing or {}
    now = _now()

    build_selections = {
        "base_price": float(base_price or 0),
        "options": list(selections.get("options") or []),
        "notes": selections.get("notes") if isinstance(selections.get("notes"), str) else None,
    }
    build = {
        "build_id": generate_build_id(),
        "user_id": user_id,
        "model_slug": model_slug,
        "model_name": model_name or model_slug,
        "status": BuildStatus.DRAFT.value,
        "step": MIN_STEP,
        "version": 1,
        "primary": False,
        "selections": build_selections,
        "pricing": reprice(build_selections),
        "financing": {
            "method": financing.get("method"),
            "lender": financing.get("lender"),
            "preapproval_id": financing.get("preapproval_id"),
            "est_monthly": float(financing["est_monthly"]) if financing.get("est_monthly") else None,
        },
        "buyer_info": dict(buyer_info or {}),
        "contract": {"status": ContractStatus.NONE.value, "envelope_id": None, "signed_at": None},
        "payment": {},
        "option_catalog": option_catalog or [],
        "status_history": [],
        "order_id": None,
        "created_at": now,
        "updated_at": now,
    }
    await db.builds.insert_one(build)
    build.pop("_id", None)
    logger.info(f"Build created: {build['build_id']} user={user_id} model={model_slug}")
    return build


async def get_build(build_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.builds.find_one({"build_id": build_id}, {"_id": 0})


async def get_owned_build(build_id: str, user_id: str) -> Dict[str, Any]:
    return assert_owner(await get_build(build_id), user_id)


async def list_builds(user_id: str) -> List[Dict[str, Any]]:
    db = database.get_db()
    cursor = db.builds.find({"user_id": user_id}, {"_id": 0}).sort("updated_at", -1)
    return await cursor.to_list(500)


async def update_build(build_id: str, user_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a sanitized patch, refresh the delivery quote if the address changed, reprice."""
    db = database.get_db()
    existing = await get_owned_build(build_id, user_id)
    updates = sanitize_build_patch(patch)

    selections = copy.deepcopy(existing.get("selections") or {})
    if "selections" in updates:
        incoming = updates["selections"]
        if incoming.get("base_price") is not None:
            try:
                incoming["base_price"] = float(incoming["base_price"])
            except (TypeError, ValueError):
                raise RuleViolation("INVALID_PRICE", "base_price must be a number")
        else:
            incoming.pop("base_price", None)
        selections.update(incoming)
        if not selections.get("base_price"):
            selections["base_price"] = (existing.get("selections") or {}).get("base_price", 0)
        updates["selections"] = selections

    delivery = _delivery_from_pricing(existing.get("pricing") or {})
    if "buyer_info" in updates:
        address = build_delivery_address(updates["buyer_info"])
        if address:
            try:
                delivery = await quote_delivery(address)
            except DeliveryQuoteError as e:
                logger.warning(f"Delivery quote failed for build {build_id}: {e}")

    updates["pricing"] = reprice(selections, delivery)
    updates["updated_at"] = _now()

    await db.builds.update_one({"build_id": build_id}, {"$set": updates})

    if updates.get("primary") is True:
        await db.builds.update_many(
            {"user_id": user_id, "build_id": {"$ne": build_id}},
            {"$set": {"primary": False}},
        )

    return await get_build(build_id)


async def duplicate_build(build_id: str, user_id: str) -> Dict[str, Any]:
    db = database.get_db()
    original = await get_owned_build(build_id, user_id)
    version = int(original.get("version") or 1) + 1
    base_name = original.get("model_name") or original.get("model_slug") or "Build"
    now = _now()

    duplicate = copy.deepcopy(original)
    duplicate.update({
        "build_id": generate_build_id(),
        "version": version,
        "status": BuildStatus.DRAFT.value,
        "step": MIN_STEP,
        "primary": False,
        "model_name": f"{base_name} (v{version})",
        "contract": {"status": ContractStatus.NONE.value, "envelope_id": None, "signed_at": None},
        "payment": {},
        "status_history": [],
        "order_id": None,
        "duplicated_from": build_id,
        "created_at": now,
        "updated_at": now,
    })
    await db.builds.insert_one(duplicate)
    duplicate.pop("_id", None)
    logger.info(f"Build duplicated: {build_id} -> {duplicate['build_id']}")
    return duplicate


async def delete_build(build_id: str, user_id: str) -> None:
    db = database.get_db()
    await get_owned_build(build_id, user_id)
    await db.builds.delete_one({"build_id": build_id})
    await create_audit_log(
        action=AuditAction.BUILD_DELETED,
        actor_id=user_id,
        resource_type="build",
        resource_id=build_id,
    )


async def rename_build(build_id: str, user_id: str, name: Any) -> Dict[str, Any]:
    db = database.get_db()
    clean = (name or "").strip() if isinstance(name, str) else ""
    if not clean:
        raise RuleViolation("INVALID_NAME", "Name is required")
    await get_owned_build(build_id, user_id)
    await db.builds.update_one(
        {"build_id": build_id},
        {"$set": {"model_name": clean[:MAX_BUILD_NAME], "updated_at": _now()}},
    )
    return await get_build(build_id)


# ============================================
# CHECKOUT
# ============================================

async def set_checkout_step(build_id: str, user_id: str, step: Any) -> Dict[str, Any]:
    db = database.get_db()
    build = await get_owned_build(build_id, user_id)
    error = checkout_step_error(build, step)
    if error:
        raise error
    await db.builds.update_one(
        {"build_id": build_id},
        {"$set": {"step": step, "updated_at": _now()}},
    )
    return await get_build(build_id)


async def confirm_build(build_id: str, user_id: str) -> Dict[str, Any]:
    """Buyer confirmed the review step and signed the agreement."""
    db = database.get_db()
    await get_owned_build(build_id, user_id)
    now = _now()
    await db.builds.update_one(
        {"build_id": build_id},
        {
            "$set": {
                "step": REVIEW_STEP,
                "status": BuildStatus.CONTRACT_SIGNED.value,
                "contract.status": ContractStatus.SIGNED.value,
                "contract.signed_at": now,
                "updated_at": now,
            },
            "$push": {"status_history": {
                "status": BuildStatus.CONTRACT_SIGNED.value,
                "changed_at": now,
                "changed_by": user_id,
                "notes": "Confirmed by buyer",
            }},
        },
    )
    logger.info(f"Build confirmed: {build_id}")
    return await get_build(build_id)


async def set_payment_method(build_id: str, user_id: str, method: Optional[str]) -> Dict[str, Any]:
    if not method:
        raise RuleViolation("MISSING_METHOD", "Payment method is required")
    try:
        method_value = PaymentMethod(method).value
    except ValueError:
        raise RuleViolation("INVALID_METHOD", f"Unsupported payment method: {method}")

    db = database.get_db()
    await get_owned_build(build_id, user_id)
    await db.builds.update_one(
        {"build_id": build_id},
        {"$set": {
            "financing.method": method_value,
            "payment.method": method_value,
            "updated_at": _now(),
        }},
    )
    return await get_build(build_id)


# ============================================
# LIFECYCLE
# ============================================

async def update_build_status(
    build_id: str,
    user: Dict[str, Any],
    new_status: str,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Move a build through its production/delivery lifecycle (admin or owner)."""
    try:
        status_value = BuildStatus(new_status).value
    except ValueError:
        raise RuleViolation("INVALID_STATUS", f"Invalid status: {new_status}")

    db = database.get_db()
    build = await get_build(build_id)
    if not build:
        raise NotFoundError("Build not found")
    if not user.get("is_admin") and build.get("user_id") != user["user_id"]:
        raise ForbiddenError("Not your build")

    now = _now()
    updates: Dict[str, Any] = {"status": status_value, "updated_at": now}
    if status_value == BuildStatus.FACTORY_COMPLETE.value:
        updates["factory_completed_at"] = now
    elif status_value == BuildStatus.DELIVERED.value:
        updates["delivered_at"] = now

    await db.builds.update_one(
        {"build_id": build_id},
        {
            "$set": updates,
            "$push": {"status_history": {
                "status": status_value,
                "changed_at": now,
                "changed_by": user["user_id"],
                "notes": notes,
            }},
        },
    )

    activated = 0
    if status_value == BuildStatus.FACTORY_COMPLETE.value:
        activated = await activate_final_milestone(build)

    await create_audit_log(
        action=AuditAction.BUILD_STATUS_CHANGED,
        actor_id=user["user_id"],
        actor_role=user.get("role"),
        resource_type="build",
        resource_id=build_id,
        before_state={"status": build.get("status")},
        after_state={"status": status_value},
        metadata={"notes": notes, "final_milestone_activated": bool(activated)},
    )
    logger.info(f"Build {build_id} status {build.get('status')} -> {status_value}")
    return await get_build(build_id)


async def activate_final_milestone(build: Dict[str, Any]) -> int:
    """Factory completion opens the final bank-transfer payment for deposit plans."""
    payment = build.get("payment") or {}
    plan = payment.get("plan") or {}
    if payment.get("method") != PaymentMethod.BANK_TRANSFER.value:
        return 0
    if plan.get("type", PaymentPlanType.DEPOSIT.value) != PaymentPlanType.DEPOSIT.value:
        return 0

    db = database.get_db()
    result = await db.bank_transfer_intents.update_one(
        {
            "build_id": build["build_id"],
            "milestone": MilestoneType.FINAL.value,
            "status": IntentStatus.PENDING_CONTRACT.value,
        },
        {"$set": {"status": IntentStatus.AWAITING_ACTIVATION.value, "activated_at": _now()}},
    )
    if result.modified_count:
        await create_audit_log(
            action=AuditAction.MILESTONE_ACTIVATED,
            actor_id=SYSTEM_ACTOR,
            actor_role=SYSTEM_ROLE,
            resource_type="build",
            resource_id=build["build_id"],
            metadata={"milestone": MilestoneType.FINAL.value},
        )
        logger.info(f"Final milestone activated for build {build['build_id']}")
    return result.modified_count


# ============================================
# ADMIN
# ============================================

async def list_builds_admin(
    status_filter: Optional[str] = None,
    user_id: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    db = database.get_db()
    query: Dict[str, Any] = {}
    if status_filter:
        query["status"] = status_filter
    if user_id:
        query["user_id"] = user_id

    limit = max(1, min(limit, 200))
    page = max(1, page)
    skip = (page - 1) * limit

    builds = await db.builds.find(
        query, {"_id": 0, "option_catalog": 0}
    ).sort("updated_at", -1).skip(skip).limit(limit).to_list(limit)
    total = await db.builds.count_documents(query)

    distribution = await db.builds.aggregate([
        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
    ]).to_list(50)

    return {
        "builds": builds,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
        "status_distribution": {d["_id"]: d["count"] for d in distribution if d.get("_id")},
    }
