"""
Payment Service - milestone payments for builds.

Three methods, chosen per build:
- card:          PaymentIntent for the first milestone, confirmed client-side
- ach_debit:     saved bank account (Financial Connections), debited off-session
                 when the buyer confirms the contract
- bank_transfer: buyer-initiated ACH/wire; each milestone is a bank transfer
                 intent, invoiced through Stripe once it becomes payable

Deposit plans produce a deposit and a final milestone; full plans a single one.
The final bank-transfer milestone only opens at factory completion
(see build_service.activate_final_milestone).
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import os
import re
import uuid
import logging

from pydantic import ValidationError

from database import database
from models import (
    AuditAction, ContractStatus, IntentStatus, MilestoneType, PaymentMethod, PaymentPlanType,
    PaymentPlan, PayerInfo, TransferCommitments, TransferType,
)
from services.build_service import get_owned_build, get_build
from services.errors import NotFoundError, ForbiddenError, RuleViolation
from services.pricing import calculate_total_purchase_price, compute_milestones, to_cents
from services.settings_service import get_org_settings
from services.stripe_service import stripe_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")

PAYER_REQUIRED_FIELDS = ("full_legal_name", "email", "phone", "preferred_transfer_type")
BILLING_ADDRESS_FIELDS = ("street", "city", "state", "zip")


def generate_intent_id() -> str:
    return f"BTI-{uuid.uuid4().hex[:10].upper()}"


def reference_code(build_id: str, milestone: str) -> str:
    return f"FF-{build_id[-8:].upper()}-{milestone.upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# VALIDATION (pure)
# ============================================

def parse_plan(plan: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalize a payment plan; deposit percents must fall strictly between 0 and 100."""
    try:
        parsed = PaymentPlan.model_validate(plan or {})
    except ValidationError:
        raise RuleViolation("INVALID_PLAN", "Plan type must be deposit or full")
    if parsed.type == PaymentPlanType.DEPOSIT and parsed.percent is not None and not 0 < parsed.percent < 100:
        raise RuleViolation("INVALID_PLAN", "Deposit percent must be between 0 and 100")
    return parsed.model_dump(mode="json")


def validate_payer_info(payer_info: Dict[str, Any], commitments: Dict[str, Any], plan_type: str) -> None:
    """Raise RuleViolation for the first invalid bank-transfer field."""
    payer_info = payer_info or {}
    commitments = commitments or {}

    for field in PAYER_REQUIRED_FIELDS:
        if not str(payer_info.get(field) or "").strip():
            raise RuleViolation("MISSING_FIELD", f"{field.replace('_', ' ')} is required")

    if not EMAIL_RE.match(str(payer_info["email"]).strip()):
        raise RuleViolation("INVALID_EMAIL", "Please enter a valid email address")

    try:
        TransferType(str(payer_info["preferred_transfer_type"]).strip())
    except ValueError:
        raise RuleViolation("INVALID_TRANSFER_TYPE", "Preferred transfer type must be ach or wire")

    address = payer_info.get("billing_address")
    if not isinstance(address, dict):
        address = {}
    for field in BILLING_ADDRESS_FIELDS:
        if not str(address.get(field) or "").strip():
            raise RuleViolation("MISSING_FIELD", f"Billing address {field} is required")
    if not ZIP_RE.match(str(address["zip"]).strip()):
        raise RuleViolation("INVALID_ZIP", "Please enter a valid ZIP code")

    if not commitments.get("customer_initiated") or not commitments.get("funds_clearing"):
        raise RuleViolation("MISSING_COMMITMENTS", "All required commitments must be acknowledged")
    if plan_type == PaymentPlanType.DEPOSIT.value and not commitments.get("storage_fees_acknowledged"):
        raise RuleViolation("MISSING_COMMITMENTS", "Storage fees acknowledgment is required for deposit payments")


def build_intent_documents(
    build: Dict[str, Any],
    milestones: List[Dict[str, Any]],
    payer_info: Dict[str, Any],
    commitments: Dict[str, Any],
    user_id: str,
) -> List[Dict[str, Any]]:
    now = _now()
    return [
        {
            "intent_id": generate_intent_id(),
            "build_id": build["build_id"],
            "user_id": build["user_id"],
            "milestone": m["milestone"],
            "expected_amount_cents": to_cents(m["amount"]),
            "status": IntentStatus.PENDING_CONTRACT.value,
            "reference_code": reference_code(build["build_id"], m["milestone"]),
            "payer_info": payer_info,
            "commitments": commitments,
            "stripe_invoice_id": None,
            "hosted_invoice_url": None,
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
        }
        for m in milestones
    ]


async def _contract_milestones(build: Dict[str, Any], plan: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    settings = await get_org_settings()
    price = calculate_total_purchase_price(build, settings)
    return compute_milestones(price["total"], plan, settings["pricing"]["deposit_percent"])


# ============================================
# OPERATIONS
# ============================================

async def mark_ready(build_id: str, user_id: str, plan: Optional[Dict[str, Any]], method: Optional[str]) -> Dict[str, Any]:
    if not build_id or not plan or not method:
        raise RuleViolation("MISSING_FIELDS", "build_id, plan and method are required")
    try:
        method_value = PaymentMethod(method).value
    except ValueError:
        raise RuleViolation("INVALID_METHOD", f"Unsupported payment method: {method}")
    plan = parse_plan(plan)

    db = database.get_db()
    build = await get_build(build_id)
    if not build:
        raise NotFoundError("Build not found")
    if build.get("user_id") != user_id:
        raise ForbiddenError("Access denied")

    now = _now()
    updates = {
        "payment.plan": plan,
        "payment.method": method_value,
        "payment.ready": True,
        "payment.status": "ready",
        "payment.updated_at": now,
        "updated_at": now,
    }
    if method_value == PaymentMethod.ACH_DEBIT.value:
        updates["payment.mandate_accepted_at"] = now

    await db.builds.update_one({"build_id": build_id}, {"$set": updates})
    await create_audit_log(
        action=AuditAction.PAYMENT_READY,
        actor_id=user_id,
        resource_type="build",
        resource_id=build_id,
        metadata={"method": method_value, "plan": plan},
    )
    return {"success": True, "build_id": build_id, "method": method_value, "plan": plan}


async def setup_card(build_id: str, user_id: str) -> Dict[str, Any]:
    """Create the PaymentIntent for the first card milestone."""
    db = database.get_db()
    build = await get_owned_build(build_id, user_id)
    payment = build.get("payment") or {}
    plan = payment.get("plan") or {"type": PaymentPlanType.DEPOSIT.value, "percent": 25}

    milestone = (await _contract_milestones(build, plan))[0]
    amount_cents = to_cents(milestone["amount"])
    customer_id = await stripe_service.get_or_create_customer(build)
    intent = await stripe_service.create_payment_intent(
        customer_id,
        amount_cents,
        metadata={"build_id": build_id, "user_id": user_id, "milestone": milestone["milestone"]},
        description=f"{build.get('model_name') or 'Tiny home'} - {milestone['milestone']} payment",
    )

    await db.builds.update_one(
        {"build_id": build_id},
        {"$set": {
            "payment.stripe_customer_id": customer_id,
            "payment.payment_intent_id": intent["id"],
            "payment.plan": plan,
            "payment.method": PaymentMethod.CARD.value,
            "payment.amount_cents": amount_cents,
            "payment.status": "setup_complete",
            "updated_at": _now(),
        }},
    )
    logger.info(f"Card payment intent {intent['id']} created for build {build_id} ({amount_cents} cents)")
    return {
        "client_secret": intent["client_secret"],
        "payment_intent_id": intent["id"],
        "amount_cents": amount_cents,
        "milestone": milestone["milestone"],
    }


async def setup_ach(build_id: str, user_id: str) -> Dict[str, Any]:
    db = database.get_db()
    build = await get_owned_build(build_id, user_id)
    customer_id = await stripe_service.get_or_create_customer(build)
    setup_intent = await stripe_service.create_ach_setup_intent(
        customer_id, metadata={"build_id": build_id, "user_id": user_id}
    )
    await db.builds.update_one(
        {"build_id": build_id},
        {"$set": {"payment.stripe_customer_id": customer_id, "updated_at": _now()}},
    )
    return {"client_secret": setup_intent["client_secret"], "customer_id": customer_id}


async def save_ach_method(
    build_id: str,
    user_id: str,
    payment_method_id: Optional[str],
    financial_connections_account_id: Optional[str] = None,
) -> Dict[str, Any]:
    if not payment_method_id:
        raise RuleViolation("MISSING_FIELDS", "payment_method_id is required")

    db = database.get_db()
    build = await get_owned_build(build_id, user_id)
    customer_id = await stripe_service.get_or_create_customer(build)
    method = await stripe_service.attach_payment_method(customer_id, payment_method_id)

    await db.builds.update_one(
        {"build_id": build_id},
        {"$set": {
            "payment.stripe_customer_id": customer_id,
            "payment.method": PaymentMethod.ACH_DEBIT.value,
            "payment.saved_payment_method_id": method["id"],
            "payment.financial_connections": {
                "account_id": financial_connections_account_id,
                "bank_name": method.get("bank_name"),
                "last4": method.get("last4"),
                "linked_at": _now(),
            },
            "updated_at": _now(),
        }},
    )
    return {"success": True, "payment_method_id": method["id"], "bank_name": method.get("bank_name"), "last4": method.get("last4")}


async def create_bank_transfer_intents(
    build_id: str,
    user_id: str,
    plan: Optional[Dict[str, Any]],
    payer_info: Dict[str, Any],
    commitments: Dict[str, Any],
) -> Dict[str, Any]:
    if not build_id or not plan or not payer_info:
        raise RuleViolation("MISSING_FIELDS", "build_id, plan and payer_info are required")
    plan = parse_plan(plan)
    validate_payer_info(payer_info, commitments, plan["type"])
    try:
        payer_info = PayerInfo.model_validate(payer_info).model_dump(mode="json")
        commitments = TransferCommitments.model_validate(commitments or {}).model_dump()
    except ValidationError as e:
        raise RuleViolation("INVALID_PAYER_INFO", f"Invalid bank transfer details: {e.errors()[0]['msg']}")

    db = database.get_db()
    build = await get_build(build_id)
    if not build:
        raise NotFoundError("Build not found")
    if build.get("user_id") != user_id:
        raise ForbiddenError("Access denied")

    milestones = await _contract_milestones(build, plan)
    intents = build_intent_documents(build, milestones, payer_info, commitments, user_id)

    await db.bank_transfer_intents.delete_many({"build_id": build_id})
    await db.bank_transfer_intents.insert_many(intents)

    now = _now()
    await db.builds.update_one(
        {"build_id": build_id},
        {"$set": {
            "payment.method": PaymentMethod.BANK_TRANSFER.value,
            "payment.plan": plan,
            "payment.payer_info": payer_info,
            "payment.commitments": commitments,
            "payment.ready": True,
            "payment.status": "ready",
            "updated_at": now,
        }},
    )
    await create_audit_log(
        action=AuditAction.BANK_TRANSFER_INTENTS_CREATED,
        actor_id=user_id,
        resource_type="build",
        resource_id=build_id,
        metadata={"milestones": [i["milestone"] for i in intents]},
    )
    return {
        "success": True,
        "intents": [
            {k: i[k] for k in ("intent_id", "milestone", "expected_amount_cents", "status", "reference_code")}
            for i in intents
        ],
    }


async def list_bank_transfer_intents(build_id: str, user_id: str) -> List[Dict[str, Any]]:
    db = database.get_db()
    await get_owned_build(build_id, user_id)
    return await db.bank_transfer_intents.find({"build_id": build_id}, {"_id": 0}).sort("created_at", 1).to_list(10)


def beneficiary_details() -> Dict[str, Optional[str]]:
    return {
        "beneficiary": os.getenv("BANK_BENEFICIARY_NAME", "Firefly Tiny Homes"),
        "bank_name": os.getenv("BANK_NAME"),
        "routing_number": os.getenv("BANK_ROUTING_NUMBER"),
        "account_number": os.getenv("BANK_ACCOUNT_NUMBER"),
    }


async def bank_transfer_instructions(build_id: str, user_id: str, milestone: Optional[str] = None) -> Dict[str, Any]:
    """
    Wiring/ACH instructions for a build.

    Without a milestone: beneficiary details plus every intent's reference code.
    With a milestone: the payable milestone is invoiced through Stripe (once) and
    the hosted invoice link is returned.
    """
    db = database.get_db()
    build = await get_owned_build(build_id, user_id)

    if milestone is None:
        intents = await db.bank_transfer_intents.find({"build_id": build_id}, {"_id": 0}).sort("created_at", 1).to_list(10)
        return {
            **beneficiary_details(),
            "intents": [
                {k: i.get(k) for k in ("milestone", "expected_amount_cents", "status", "reference_code", "hosted_invoice_url")}
                for i in intents
            ],
        }

    try:
        milestone_value = MilestoneType(milestone).value
    except ValueError:
        raise RuleViolation("INVALID_MILESTONE", f"Invalid milestone: {milestone}")

    if (build.get("contract") or {}).get("status") != ContractStatus.SIGNED.value:
        raise RuleViolation("CONTRACT_NOT_SIGNED", "Contract must be signed before bank transfer instructions can be generated")

    intent = await db.bank_transfer_intents.find_one({"build_id": build_id, "milestone": milestone_value}, {"_id": 0})
    if not intent:
        raise NotFoundError("Bank transfer intent not found for this milestone")
    if intent["status"] == IntentStatus.PENDING_CONTRACT.value and milestone_value == MilestoneType.FINAL.value:
        raise RuleViolation("MILESTONE_NOT_ACTIVE", "The final payment opens when your home is factory complete")

    if not intent.get("stripe_invoice_id"):
        customer_id = await stripe_service.get_or_create_customer(build)
        invoice = await stripe_service.create_milestone_invoice(
            customer_id,
            intent["expected_amount_cents"],
            description=f"{build.get('model_name') or 'Tiny home'} - {milestone_value} payment ({intent['reference_code']})",
            metadata={"build_id": build_id, "user_id": user_id, "milestone": milestone_value, "intent_id": intent["intent_id"]},
        )
        intent.update({
            "stripe_invoice_id": invoice["id"],
            "hosted_invoice_url": invoice.get("hosted_invoice_url"),
            "status": IntentStatus.AWAITING_FUNDS.value,
        })
        await db.bank_transfer_intents.update_one(
            {"intent_id": intent["intent_id"]},
            {"$set": {
                "stripe_invoice_id": invoice["id"],
                "hosted_invoice_url": invoice.get("hosted_invoice_url"),
                "status": IntentStatus.AWAITING_FUNDS.value,
                "updated_at": _now(),
            }},
        )
        await db.builds.update_one({"build_id": build_id}, {"$set": {"payment.stripe_customer_id": customer_id}})

    return {
        **beneficiary_details(),
        "milestone": milestone_value,
        "amount_cents": intent["expected_amount_cents"],
        "status": intent["status"],
        "reference_code": intent["reference_code"],
        "hosted_invoice_url": intent.get("hosted_invoice_url"),
    }


async def collect_at_confirmation(build_id: str, user_id: str) -> Dict[str, Any]:
    """Collect the first milestone once the buyer confirms the contract."""
    db = database.get_db()
    build = await get_owned_build(build_id, user_id)
    payment = build.get("payment") or {}
    if not payment.get("ready"):
        raise RuleViolation("PAYMENT_NOT_READY", "Payment not ready for collection")

    method = payment.get("method")
    now = _now()

    if method == PaymentMethod.ACH_DEBIT.value:
        if not payment.get("saved_payment_method_id"):
            raise RuleViolation("NO_SAVED_METHOD", "Link a bank account first")
        milestone = (await _contract_milestones(build, payment.get("plan")))[0]
        customer_id = await stripe_service.get_or_create_customer(build)
        intent = await stripe_service.charge_off_session(
            customer_id,
            payment["saved_payment_method_id"],
            to_cents(milestone["amount"]),
            metadata={"build_id": build_id, "user_id": user_id, "milestone": milestone["milestone"]},
        )
        status = "failed" if intent["status"] in ("requires_payment_method", "canceled") else "succeeded"
        await db.builds.update_one(
            {"build_id": build_id},
            {"$set": {
                "payment.status": status,
                "payment.payment_intent_id": intent["id"],
                "payment.collected_at": now,
                "updated_at": now,
            }},
        )
        message = (
            "Payment submitted. Bank debits can take a few business days to clear."
            if status == "succeeded" else
            "Payment failed. Please try again or contact support."
        )
    elif method == PaymentMethod.BANK_TRANSFER.value:
        status = IntentStatus.AWAITING_FUNDS.value
        await db.bank_transfer_intents.update_many(
            {
                "build_id": build_id,
                "milestone": {"$in": [MilestoneType.DEPOSIT.value, MilestoneType.FULL.value]},
                "status": IntentStatus.PENDING_CONTRACT.value,
            },
            {"$set": {"status": status, "updated_at": now}},
        )
        await db.builds.update_one(
            {"build_id": build_id},
            {"$set": {"payment.status": status, "updated_at": now}},
        )
        message = "Waiting for your bank transfer. We'll update your order when funds arrive."
    elif method == PaymentMethod.CARD.value:
        if not payment.get("payment_intent_id"):
            raise RuleViolation("NO_PAYMENT_INTENT", "Card payment has not been set up")
        intent = await stripe_service.confirm_payment_intent(payment["payment_intent_id"])
        status = intent["status"]
        await db.builds.update_one(
            {"build_id": build_id},
            {"$set": {"payment.status": status, "payment.collected_at": now, "updated_at": now}},
        )
        message = "Card payment processed." if status == "succeeded" else "Card payment is pending."
    else:
        raise RuleViolation("UNSUPPORTED_METHOD", "Unsupported payment method")

    await create_audit_log(
        action=AuditAction.PAYMENT_COLLECTED,
        actor_id=user_id,
        resource_type="build",
        resource_id=build_id,
        metadata={"method": method, "status": status},
    )
    logger.info(f"Collect at confirmation build={build_id} method={method} status={status}")
    return {"success": True, "status": status, "message": message}
