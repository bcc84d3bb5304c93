"""
Order Service - Business Logic Layer
Orders are created from a build when the buyer reaches the contract step and
are then managed by admins through the workflow in services.order_workflow.
"""
import re
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, List, Any
from database import database
from models import AuditAction, BuildStatus, OrderPriority
from services.errors import ForbiddenError, NotFoundError, RuleViolation
from services.order_workflow import (
    OrderStatus, is_valid_transition, get_allowed_transitions, PIPELINE_COLUMNS
)
from services.pricing import calculate_total_purchase_price, compute_milestones
from services.delivery_service import build_delivery_address
from services.settings_service import get_org_settings
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

MAX_ADMIN_PAGE_SIZE = 200
SORTABLE_FIELDS = {"created_at", "updated_at", "pricing.total", "status", "priority"}


def generate_order_id() -> str:
    """Generate unique order ID: ORD-YYYY-XXXXXX"""
    year = datetime.now(timezone.utc).strftime("%Y")
    short_uuid = uuid.uuid4().hex[:6].upper()
    return f"ORD-{year}-{short_uuid}"


def build_order_document(build: Dict[str, Any], settings: Dict[str, Any]) -> Dict[str, Any]:
    """Snapshot a build into a new draft order."""
    now = datetime.now(timezone.utc)
    price = calculate_total_purchase_price(build, settings)
    payment = build.get("payment") or {}
    plan = payment.get("plan") or {"type": "deposit", "percent": settings["pricing"]["deposit_percent"]}
    milestones = compute_milestones(price["total"], plan, settings["pricing"]["deposit_percent"])
    deposit = milestones[0]["amount"] if milestones[0]["milestone"] == "deposit" else 0
    buyer = build.get("buyer_info") or {}
    build_pricing = build.get("pricing") or {}

    return {
        "order_id": generate_order_id(),
        "build_id": build["build_id"],
        "user_id": build["user_id"],
        "status": OrderStatus.DRAFT.value,
        "priority": OrderPriority.NORMAL.value,
        "model": {"slug": build.get("model_slug"), "name": build.get("model_name")},
        "selections": [
            {"code": o.get("code"), "name": o.get("name"), "price": o.get("price", 0), "quantity": o.get("quantity", 1)}
            for o in (build.get("selections") or {}).get("options") or []
        ],
        "pricing": {**price, "deposit": deposit},
        "buyer": {
            "first_name": buyer.get("first_name"),
            "last_name": buyer.get("last_name"),
            "email": buyer.get("email"),
            "phone": buyer.get("phone"),
        },
        "delivery": {
            "address": build_delivery_address(buyer),
            "miles": build_pricing.get("delivery_miles"),
            "estimated_date": None,
        },
        "payment": {"method": payment.get("method") or (build.get("financing") or {}).get("method"), "plan": plan},
        "notes": None,
        "timeline": [{"status": OrderStatus.DRAFT.value, "at": now, "note": "Order created from build"}],
        "created_at": now,
        "updated_at": now,
    }


async def create_order_from_build(build: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    """Create (or return the existing) order for a build and mark the contract pending."""
    db = database.get_db()
    if build.get("user_id") != user_id:
        raise ForbiddenError("Not your build")

    if build.get("order_id"):
        existing = await get_order(build["order_id"])
        if existing:
            return existing

    settings = await get_org_settings()
    order = build_order_document(build, settings)
    await db.orders.insert_one(order)
    order.pop("_id", None)

    now = datetime.now(timezone.utc)
    await db.builds.update_one(
        {"build_id": build["build_id"]},
        {
            "$set": {"order_id": order["order_id"], "status": BuildStatus.CONTRACT_PENDING.value, "updated_at": now},
            "$push": {"status_history": {
                "status": BuildStatus.CONTRACT_PENDING.value,
                "changed_at": now,
                "changed_by": user_id,
                "notes": f"Order {order['order_id']} created",
            }},
        },
    )

    await create_audit_log(
        action=AuditAction.ORDER_CREATED,
        actor_id=user_id,
        resource_type="order",
        resource_id=order["order_id"],
        build_id=build["build_id"],
        metadata={"build_id": build["build_id"], "total": order["pricing"]["total"]},
    )
    logger.info(f"Order created: {order['order_id']} from build {build['build_id']}")
    return order


async def get_order(order_id: str) -> Optional[Dict]:
    """Get order by ID"""
    db = database.get_db()
    return await db.orders.find_one({"order_id": order_id}, {"_id": 0})


async def get_order_for_user(order_id: str, user_id: str) -> Dict:
    order = await get_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    if order.get("user_id") != user_id:
        raise ForbiddenError("Not your order")
    return order


async def list_orders_for_user(user_id: str) -> List[Dict]:
    db = database.get_db()
    cursor = db.orders.find({"user_id": user_id}, {"_id": 0}).sort("created_at", -1)
    return await cursor.to_list(length=200)


def build_admin_query(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if priority:
        query["priority"] = priority
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [
            {"order_id": pattern},
            {"buyer.first_name": pattern},
            {"buyer.last_name": pattern},
            {"buyer.email": pattern},
        ]
    if date_from or date_to:
        created: Dict[str, Any] = {}
        if date_from:
            created["$gte"] = date_from
        if date_to:
            created["$lte"] = date_to
        query["created_at"] = created
    return query


async def list_orders_admin(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = 50,
    sort: str = "created_at",
    order: str = "desc",
) -> Dict[str, Any]:
    """Filtered, paginated order listing with status/priority distributions."""
    db = database.get_db()
    query = build_admin_query(status, priority, search, date_from, date_to)

    limit = max(1, min(limit, MAX_ADMIN_PAGE_SIZE))
    page = max(1, page)
    sort_field = sort if sort in SORTABLE_FIELDS else "created_at"
    direction = 1 if order == "asc" else -1

    cursor = db.orders.find(query, {"_id": 0}).sort(sort_field, direction).skip((page - 1) * limit).limit(limit)
    orders = await cursor.to_list(length=limit)
    total = await db.orders.count_documents(query)

    status_dist = await db.orders.aggregate([
        {"$match": query},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "value": {"$sum": "$pricing.total"}}},
    ]).to_list(length=None)
    priority_dist = await db.orders.aggregate([
        {"$match": query},
        {"$group": {"_id": "$priority", "count": {"$sum": 1}}},
    ]).to_list(length=None)

    return {
        "orders": orders,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
            "has_next": page * limit < total,
            "has_prev": page > 1,
        },
        "distributions": {
            "status": {d["_id"]: {"count": d["count"], "value": d.get("value", 0)} for d in status_dist if d.get("_id")},
            "priority": {d["_id"]: d["count"] for d in priority_dist if d.get("_id")},
        },
    }


async def get_pipeline_counts() -> Dict[str, int]:
    """Get count of orders in each pipeline column"""
    db = database.get_db()
    results = await db.orders.aggregate([
        {"$group": {"_id": "$status", "count": {"$sum": 1}}}
    ]).to_list(length=None)

    counts = {col["status"].value: 0 for col in PIPELINE_COLUMNS}
    for result in results:
        if result["_id"] in counts:
            counts[result["_id"]] = result["count"]
    return counts


async def update_order_admin(order_id: str, patch: Dict[str, Any], actor: Dict[str, Any]) -> Dict:
    """
    Admin order update: status (workflow-checked), priority, notes, estimated delivery.
    Raises RuleViolation for invalid transitions/values, NotFoundError if missing.
    """
    db = database.get_db()
    order = await get_order(order_id)
    if not order:
        raise NotFoundError("Order not found")

    now = datetime.now(timezone.utc)
    update_fields: Dict[str, Any] = {}
    timeline_entries: List[Dict[str, Any]] = []
    actor_label = actor.get("email") or actor.get("user_id")

    new_status = patch.get("status")
    if new_status and new_status != order["status"]:
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise RuleViolation("INVALID_STATUS", f"Invalid status: {new_status}")
        current = OrderStatus(order["status"])
        if not is_valid_transition(current, target):
            raise RuleViolation(
                "INVALID_TRANSITION",
                f"Invalid transition: {current.value} → {target.value}. "
                f"Allowed: {[s.value for s in get_allowed_transitions(current)]}",
            )
        update_fields["status"] = target.value
        if target == OrderStatus.DELIVERED:
            update_fields["delivered_at"] = now
        elif target == OrderStatus.COMPLETED:
            update_fields["completed_at"] = now
        elif target == OrderStatus.CANCELLED:
            update_fields["cancelled_at"] = now
        timeline_entries.append({"status": target.value, "at": now, "note": patch.get("reason"), "by": actor_label})

    priority = patch.get("priority")
    if priority:
        try:
            update_fields["priority"] = OrderPriority(priority).value
        except ValueError:
            raise RuleViolation("INVALID_PRIORITY", f"Invalid priority: {priority}")

    if patch.get("notes") is not None:
        update_fields["notes"] = str(patch["notes"])[:5000]
    if patch.get("estimated_delivery_date") is not None:
        update_fields["delivery.estimated_date"] = patch["estimated_delivery_date"]
        timeline_entries.append({"status": order["status"], "at": now, "note": "Estimated delivery updated", "by": actor_label})

    if not update_fields:
        raise RuleViolation("NO_CHANGES", "No valid fields supplied")

    update_fields["updated_at"] = now
    update: Dict[str, Any] = {"$set": update_fields}
    if timeline_entries:
        update["$push"] = {"timeline": {"$each": timeline_entries}}
    await db.orders.update_one({"order_id": order_id}, update)

    await create_audit_log(
        action=AuditAction.ORDER_STATUS_CHANGED if "status" in update_fields else AuditAction.ORDER_UPDATED,
        actor_id=actor.get("user_id"),
        actor_role=actor.get("role"),
        resource_type="order",
        resource_id=order_id,
        build_id=order.get("build_id"),
        before_state={k: order.get(k) for k in ("status", "priority", "notes")},
        after_state={k: update_fields.get(k, order.get(k)) for k in ("status", "priority", "notes")},
    )
    if "status" in update_fields:
        logger.info(f"Order {order_id} transitioned: {order['status']} → {update_fields['status']}")

    return await get_order(order_id)
