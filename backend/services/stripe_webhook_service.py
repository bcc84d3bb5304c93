"""Stripe Webhook Service - build payment events with idempotency.

Key Principles:
1. Idempotency: every event is processed exactly once (stripe_events.event_id is unique)
2. Signature verification: events must be signed when a webhook secret is configured
3. Metadata routing: builds and intents are found via build_id/intent_id metadata
4. Audit logging: every processed event is logged

Events Handled:
- payment_intent.succeeded / payment_intent.payment_failed (card + ACH debit)
- treasury.inbound_transfer.succeeded / treasury.inbound_transfer.failed
- invoice.payment_succeeded / invoice.payment_failed (bank transfer milestones)
"""
import json
import stripe
import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, Tuple
from pymongo.errors import DuplicateKeyError
from database import database
from models import AuditAction, IntentStatus, MilestoneType, PaymentPlanType
from utils.audit import SYSTEM_ROLE, create_audit_log

logger = logging.getLogger(__name__)

MILESTONE_FLAGS = {
    MilestoneType.DEPOSIT.value: "deposit_paid",
    MilestoneType.FINAL.value: "final_paid",
    MilestoneType.FULL.value: "full_paid",
}

# A PROCESSING record older than this is treated as abandoned by a crashed worker
STALE_PROCESSING = timedelta(minutes=10)


# Webhook secret: support test vs live. If STRIPE_WEBHOOK_SECRET is set, use it; else choose by key prefix.
def _get_webhook_secret() -> str:
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
    if key.startswith("sk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if key.startswith("sk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


def is_paid_in_full(payment: Dict[str, Any]) -> bool:
    """All milestones of the build's plan have been paid."""
    plan_type = (payment.get("plan") or {}).get("type")
    if plan_type == PaymentPlanType.FULL.value:
        return bool(payment.get("full_paid"))
    if plan_type == PaymentPlanType.DEPOSIT.value:
        return bool(payment.get("deposit_paid") and payment.get("final_paid"))
    return False


def is_retryable(record: Dict[str, Any], now: datetime) -> bool:
    """FAILED events retry; PROCESSING events only once they look abandoned."""
    status = record.get("status")
    if status == "FAILED":
        return True
    if status != "PROCESSING":
        return False
    started = record.get("created")
    if not isinstance(started, datetime):
        return False
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return now - started > STALE_PROCESSING


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StripeWebhookService:
    """Stripe webhook handler for build payments."""

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str]
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details)
        """
        # Step 1: Verify signature
        webhook_secret = _get_webhook_secret()
        try:
            if webhook_secret:
                event = stripe.Webhook.construct_event(payload, signature, webhook_secret)
            else:
                # Development mode - parse without verification
                event = stripe.Event.construct_from(json.loads(payload), stripe.api_key)
                logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return False, "Invalid signature", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        event_id = event.get("id")
        event_type = event.get("type")
        logger.info("WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s", event_id, event_type, event.get("livemode"))

        # Step 2: Idempotency check (PROCESSED and in-flight PROCESSING events are skipped)
        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id})
        if existing and not is_retryable(existing, _now()):
            logger.info(f"Event {event_id} already {str(existing.get('status')).lower()} - skipping")
            return True, "Already processed", {"event_id": event_id}

        # Step 3: Record event; a retryable record is reclaimed with compare-and-set
        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": _now(),
            "processed_at": None,
            "status": "PROCESSING",
            "error": None,
            "raw_minimal": self._extract_safe_data(event),
        }
        if existing:
            claimed = await db.stripe_events.update_one(
                {"event_id": event_id, "status": existing.get("status"), "created": existing.get("created")},
                {"$set": event_record},
            )
            if not claimed.modified_count:
                logger.info(f"Event {event_id} retry already claimed - skipping")
                return True, "Already processed", {"event_id": event_id}
        else:
            try:
                await db.stripe_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                return True, "Already processed", {"event_id": event_id}

        # Step 4: Process event
        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.error("WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s", event_id, event_type, str(e))
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {"status": "FAILED", "processed_at": _now(), "error": str(e)}}
            )
            return False, "Webhook handler failed", {"error": str(e), "event_id": event_id}

        await db.stripe_events.update_one(
            {"event_id": event_id},
            {"$set": {"status": "PROCESSED", "processed_at": _now(), "related_build_id": result.get("build_id")}}
        )
        if result.get("handled"):
            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_PROCESSED,
                actor_role=SYSTEM_ROLE,
                resource_type="build",
                resource_id=result.get("build_id"),
                metadata={"event_id": event_id, "event_type": event_type},
            )
        logger.info("WEBHOOK_PROCESSED_OK event_id=%s event_type=%s build_id=%s", event_id, event_type, result.get("build_id"))
        return True, "Processed", result

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = (event.get("data") or {}).get("object") or {}

        handlers = {
            "payment_intent.succeeded": self._handle_payment_intent_succeeded,
            "payment_intent.payment_failed": self._handle_payment_intent_failed,
            "treasury.inbound_transfer.succeeded": self._handle_inbound_transfer_succeeded,
            "treasury.inbound_transfer.failed": self._handle_inbound_transfer_failed,
            "invoice.payment_succeeded": self._handle_invoice_payment_succeeded,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _handle_payment_intent_succeeded(self, intent: Dict) -> Dict:
        metadata = intent.get("metadata") or {}
        build_id = metadata.get("build_id")
        if not build_id:
            return {"handled": False, "reason": "no build_id"}

        now = _now()
        await database.get_db().builds.update_one(
            {"build_id": build_id},
            {"$set": {
                "payment.status": "succeeded",
                "payment.payment_intent_id": intent.get("id"),
                "payment.paid_at": now,
                "updated_at": now,
            }}
        )
        milestone = metadata.get("milestone")
        if milestone in MILESTONE_FLAGS:
            await self._mark_milestone_paid(build_id, milestone)

        logger.info(f"Payment succeeded for build: {build_id}")
        return {"handled": True, "build_id": build_id, "milestone": milestone}

    async def _handle_payment_intent_failed(self, intent: Dict) -> Dict:
        build_id = (intent.get("metadata") or {}).get("build_id")
        if not build_id:
            return {"handled": False, "reason": "no build_id"}

        last_error = (intent.get("last_payment_error") or {}).get("message") or "Payment failed"
        now = _now()
        await database.get_db().builds.update_one(
            {"build_id": build_id},
            {"$set": {
                "payment.status": "failed",
                "payment.payment_intent_id": intent.get("id"),
                "payment.last_error": last_error,
                "payment.failed_at": now,
                "updated_at": now,
            }}
        )
        logger.warning(f"Payment failed for build: {build_id} ({last_error})")
        return {"handled": True, "build_id": build_id}

    async def _find_intent(self, metadata: Dict[str, Any]) -> Optional[Dict]:
        db = database.get_db()
        if metadata.get("intent_id"):
            return await db.bank_transfer_intents.find_one({"intent_id": metadata["intent_id"]}, {"_id": 0})
        if metadata.get("build_id") and metadata.get("milestone"):
            return await db.bank_transfer_intents.find_one(
                {"build_id": metadata["build_id"], "milestone": metadata["milestone"]}, {"_id": 0}
            )
        return None

    async def _handle_inbound_transfer_succeeded(self, transfer: Dict) -> Dict:
        intent = await self._find_intent(transfer.get("metadata") or {})
        if not intent:
            return {"handled": False, "reason": "no matching intent"}

        await self._set_intent_paid(intent, transfer.get("amount"), {"transfer_id": transfer.get("id")})
        logger.info(f"Bank transfer succeeded for build: {intent['build_id']} ({intent['milestone']})")
        return {"handled": True, "build_id": intent["build_id"], "milestone": intent["milestone"]}

    async def _handle_inbound_transfer_failed(self, transfer: Dict) -> Dict:
        intent = await self._find_intent(transfer.get("metadata") or {})
        if not intent:
            return {"handled": False, "reason": "no matching intent"}

        await self._set_intent_failed(intent, "Bank transfer failed", {"transfer_id": transfer.get("id")})
        return {"handled": True, "build_id": intent["build_id"], "milestone": intent["milestone"]}

    async def _handle_invoice_payment_succeeded(self, invoice: Dict) -> Dict:
        metadata = invoice.get("metadata") or {}
        if not metadata.get("build_id") or not metadata.get("milestone"):
            logger.info(f"Invoice payment succeeded but missing required metadata: {invoice.get('id')}")
            return {"handled": False, "reason": "missing metadata"}

        intent = await self._find_intent(metadata)
        if not intent:
            return {"handled": False, "reason": "no matching intent"}

        await self._set_intent_paid(intent, invoice.get("amount_paid"), {"stripe_invoice_id": invoice.get("id")})
        logger.info(f"Invoice payment succeeded: {invoice.get('id')} for build {intent['build_id']}, milestone {intent['milestone']}")
        return {"handled": True, "build_id": intent["build_id"], "milestone": intent["milestone"]}

    async def _handle_invoice_payment_failed(self, invoice: Dict) -> Dict:
        metadata = invoice.get("metadata") or {}
        if not metadata.get("build_id") or not metadata.get("milestone"):
            logger.info(f"Invoice payment failed but missing required metadata: {invoice.get('id')}")
            return {"handled": False, "reason": "missing metadata"}

        intent = await self._find_intent(metadata)
        if not intent:
            return {"handled": False, "reason": "no matching intent"}

        await self._set_intent_failed(intent, "Payment failed", {"stripe_invoice_id": invoice.get("id")})
        return {"handled": True, "build_id": intent["build_id"], "milestone": intent["milestone"]}

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _set_intent_paid(self, intent: Dict, amount_cents: Optional[int], extra: Dict[str, Any]) -> None:
        now = _now()
        await database.get_db().bank_transfer_intents.update_one(
            {"intent_id": intent["intent_id"]},
            {"$set": {
                "status": IntentStatus.PAID.value,
                "paid_amount_cents": amount_cents,
                "paid_at": now,
                "updated_at": now,
                **extra,
            }}
        )
        await self._mark_milestone_paid(intent["build_id"], intent["milestone"])

    async def _set_intent_failed(self, intent: Dict, message: str, extra: Dict[str, Any]) -> None:
        now = _now()
        await database.get_db().bank_transfer_intents.update_one(
            {"intent_id": intent["intent_id"]},
            {"$set": {
                "status": IntentStatus.PAYMENT_FAILED.value,
                "last_error": message,
                "failed_at": now,
                "updated_at": now,
                **extra,
            }}
        )
        logger.warning(f"Intent {intent['intent_id']} payment failed: {message}")

    async def _mark_milestone_paid(self, build_id: str, milestone: str) -> None:
        """Set the milestone flag and promote the build to paid_in_full when nothing is outstanding."""
        db = database.get_db()
        flag = MILESTONE_FLAGS[milestone]
        now = _now()
        await db.builds.update_one(
            {"build_id": build_id},
            {"$set": {
                f"payment.{flag}": True,
                f"payment.{flag}_at": now,
                "payment.last_payment_at": now,
                "updated_at": now,
            }}
        )

        build = await db.builds.find_one({"build_id": build_id}, {"_id": 0, "payment": 1, "order_id": 1})
        paid_in_full = bool(build) and is_paid_in_full(build.get("payment") or {})
        if paid_in_full:
            await db.builds.update_one(
                {"build_id": build_id},
                {"$set": {"payment.status": "paid_in_full", "payment.fully_paid_at": now}}
            )
            logger.info(f"Build {build_id} is now fully paid")

        await create_audit_log(
            action=AuditAction.MILESTONE_PAID,
            actor_role=SYSTEM_ROLE,
            resource_type="build",
            resource_id=build_id,
            order_id=(build or {}).get("order_id"),
            metadata={"milestone": milestone, "paid_in_full": paid_in_full},
        )

    def _extract_safe_data(self, event: Dict) -> Dict:
        """Extract safe subset of event data for logging (no secrets)."""
        obj = (event.get("data") or {}).get("object") or {}
        return {
            "id": event.get("id"),
            "type": event.get("type"),
            "created": event.get("created"),
            "object_id": obj.get("id"),
            "object_type": obj.get("object"),
        }


stripe_webhook_service = StripeWebhookService()
