"""
Audit trail for builds, orders and admin changes.

Build and order entries carry build_id/order_id correlation fields, so a
build's trail also shows the order it became and an order's trail shows
the payment events recorded against its build.
"""
from database import database
from models import AuditLog, AuditAction, AdminRole, CUSTOMER_ROLE
from typing import Optional, Dict, Any, List, Union
import logging

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
SYSTEM_ROLE = "SYSTEM"
KNOWN_ROLES = {r.value for r in AdminRole} | {CUSTOMER_ROLE, SYSTEM_ROLE}

# Bookkeeping fields that change on every write
VOLATILE_FIELDS = {"_id", "updated_at"}

CORRELATED_RESOURCES = ("build", "order")


def flatten_state(state: Optional[Dict[str, Any]], prefix: str = "") -> Dict[str, Any]:
    """Nested documents become dotted keys (payment.status, contract.status)."""
    flat: Dict[str, Any] = {}
    for key, value in (state or {}).items():
        if key in VOLATILE_FIELDS:
            continue
        path = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            flat.update(flatten_state(value, f"{path}."))
        else:
            flat[path] = value
    return flat


def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.

    Nested fields are compared by dotted path. Returns a dict with:
    - added: paths that exist in after but not in before
    - removed: paths that exist in before but not in after
    - changed: paths that exist in both but have different values
    """
    before_flat = flatten_state(before)
    after_flat = flatten_state(after)
    if not before_flat and not after_flat:
        return {}

    diff: Dict[str, Dict[str, Any]] = {"added": {}, "removed": {}, "changed": {}}
    for path in sorted(set(before_flat) | set(after_flat)):
        if path not in before_flat:
            diff["added"][path] = after_flat[path]
        elif path not in after_flat:
            diff["removed"][path] = before_flat[path]
        elif before_flat[path] != after_flat[path]:
            diff["changed"][path] = {"from": before_flat[path], "to": after_flat[path]}

    return {k: v for k, v in diff.items() if v}


def normalize_actor_role(role: Union[AdminRole, str, None]) -> Optional[str]:
    if role is None:
        return None
    value = role.value if isinstance(role, AdminRole) else str(role)
    if value not in KNOWN_ROLES:
        logger.warning("Audit entry with unknown actor role %s", value)
    return value


async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    actor_role: Union[AdminRole, str, None] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    build_id: Optional[str] = None,
    order_id: Optional[str] = None,
    auto_diff: bool = True
) -> str:
    """Create an audit log entry with optional automatic diff calculation.

    Args:
        action: The audit action type
        actor_id: ID of the user performing the action (SYSTEM_ACTOR for webhooks/jobs)
        actor_role: Admin role, "customer", or SYSTEM_ROLE
        resource_type: 'build', 'order', 'model', 'settings', 'job' or 'data_export'
        resource_id: ID of the audited record
        before_state: State before the change
        after_state: State after the change
        metadata: Additional metadata
        build_id: Build the entry belongs to (defaults to resource_id for builds)
        order_id: Order the entry belongs to (defaults to resource_id for orders)
        auto_diff: If True, automatically calculate and store diff
    """
    if resource_type == "build" and build_id is None:
        build_id = resource_id
    if resource_type == "order" and order_id is None:
        order_id = resource_id
    role = normalize_actor_role(actor_role)
    if role == SYSTEM_ROLE and not actor_id:
        actor_id = SYSTEM_ACTOR

    try:
        db = database.get_db()

        diff = None
        if auto_diff and before_state and after_state:
            diff = calculate_diff(before_state, after_state)

        enriched_metadata = metadata.copy() if metadata else {}
        if diff:
            enriched_metadata["diff"] = diff
            enriched_metadata["changes_count"] = sum(len(v) for v in diff.values())

        audit_log = AuditLog(
            action=action,
            actor_id=actor_id,
            actor_role=role,
            resource_type=resource_type,
            resource_id=resource_id,
            build_id=build_id,
            order_id=order_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
        )

        await db.audit_logs.insert_one(audit_log.model_dump())
        logger.info(
            "Audit log created: %s %s %s%s", action.value, resource_type, resource_id,
            f" ({enriched_metadata['changes_count']} changes)" if diff else "",
        )
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""


def resource_query(resource_type: str, resource_id: str) -> Dict[str, Any]:
    direct = {"resource_type": resource_type, "resource_id": resource_id}
    if resource_type in CORRELATED_RESOURCES:
        return {"$or": [direct, {f"{resource_type}_id": resource_id}]}
    return direct


async def get_audit_logs_for_resource(
    resource_type: str,
    resource_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Newest-first trail for a resource, including correlated build/order entries."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find(
            resource_query(resource_type, resource_id),
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for resource: {e}")
        return []
