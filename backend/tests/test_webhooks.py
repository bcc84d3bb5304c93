"""
Stripe webhooks: signature handling, event idempotency, milestone bookkeeping.
"""
import json
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from models import AuditAction
from services.stripe_webhook_service import StripeWebhookService, is_paid_in_full, is_retryable
from conftest import mock_collection


class TestPaidInFull:
    def test_full_plan(self):
        assert is_paid_in_full({"plan": {"type": "full"}, "full_paid": True})
        assert not is_paid_in_full({"plan": {"type": "full"}})

    def test_deposit_plan_needs_both_milestones(self):
        assert not is_paid_in_full({"plan": {"type": "deposit"}, "deposit_paid": True})
        assert is_paid_in_full({"plan": {"type": "deposit"}, "deposit_paid": True, "final_paid": True})

    def test_no_plan(self):
        assert not is_paid_in_full({"deposit_paid": True, "final_paid": True})


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "livemode": False, "data": {"object": obj}}


def _db(existing_event=None, build_payment=None, intent=None):
    db = MagicMock()
    db.stripe_events = mock_collection(find_one=existing_event)
    db.builds = mock_collection(find_one={"payment": build_payment or {}})
    db.bank_transfer_intents = mock_collection(find_one=intent)
    return db


@pytest.fixture
def signed(monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")


@pytest.mark.asyncio
async def test_already_processed_event_is_skipped(signed):
    db = _db(existing_event={"event_id": "evt_1", "status": "PROCESSED"})
    event = _event("payment_intent.succeeded", {"id": "pi_1", "metadata": {"build_id": "BLD-1"}})
    with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", return_value=event), \
         patch("services.stripe_webhook_service.database.get_db", return_value=db):
        success, message, _ = await StripeWebhookService().process_webhook(b"{}", "sig")
    assert success is True
    assert message == "Already processed"
    db.builds.update_one.assert_not_called()


@pytest.mark.asyncio
async def test_card_deposit_success_marks_milestone(signed):
    db = _db(build_payment={"plan": {"type": "deposit"}, "deposit_paid": True})
    event = _event("payment_intent.succeeded", {"id": "pi_1", "metadata": {"build_id": "BLD-1", "milestone": "deposit"}})
    with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", return_value=event), \
         patch("services.stripe_webhook_service.database.get_db", return_value=db), \
         patch("services.stripe_webhook_service.create_audit_log", new_callable=AsyncMock) as audit:
        success, message, details = await StripeWebhookService().process_webhook(b"{}", "sig")

    assert (success, message) == (True, "Processed")
    assert details["build_id"] == "BLD-1"
    set_fields = [c[0][1]["$set"] for c in db.builds.update_one.call_args_list]
    assert set_fields[0]["payment.status"] == "succeeded"
    assert set_fields[1]["payment.deposit_paid"] is True
    # final milestone still outstanding
    assert not any(s.get("payment.status") == "paid_in_full" for s in set_fields)
    db.stripe_events.insert_one.assert_awaited_once()
    actions = [c.kwargs["action"] for c in audit.await_args_list]
    assert actions == [AuditAction.MILESTONE_PAID, AuditAction.STRIPE_EVENT_PROCESSED]
    assert audit.await_args_list[0].kwargs["metadata"] == {"milestone": "deposit", "paid_in_full": False}


@pytest.mark.asyncio
async def test_final_invoice_payment_completes_build():
    intent = {"intent_id": "BTI-1", "build_id": "BLD-1", "milestone": "final"}
    db = _db(intent=intent, build_payment={"plan": {"type": "deposit"}, "deposit_paid": True, "final_paid": True})
    invoice = {"id": "in_1", "amount_paid": 7500150, "metadata": {"build_id": "BLD-1", "milestone": "final", "intent_id": "BTI-1"}}
    with patch("services.stripe_webhook_service.database.get_db", return_value=db), \
         patch("services.stripe_webhook_service.create_audit_log", new_callable=AsyncMock) as audit:
        result = await StripeWebhookService()._handle_event(_event("invoice.payment_succeeded", invoice))

    assert result == {"handled": True, "build_id": "BLD-1", "milestone": "final"}
    intent_update = db.bank_transfer_intents.update_one.call_args[0][1]["$set"]
    assert intent_update["status"] == "paid"
    assert intent_update["paid_amount_cents"] == 7500150
    last_build_update = db.builds.update_one.call_args[0][1]["$set"]
    assert last_build_update["payment.status"] == "paid_in_full"
    assert audit.await_args.kwargs["metadata"] == {"milestone": "final", "paid_in_full": True}


@pytest.mark.asyncio
async def test_invoice_without_metadata_is_ignored():
    result = await StripeWebhookService()._handle_event(_event("invoice.payment_failed", {"id": "in_1"}))
    assert result["handled"] is False


@pytest.mark.asyncio
async def test_unhandled_event_type():
    result = await StripeWebhookService()._handle_event(_event("customer.created", {"id": "cus_1"}))
    assert result == {"handled": False, "event_type": "customer.created"}


@pytest.mark.asyncio
async def test_handler_failure_records_failed_event(signed):
    db = _db()
    event = _event("payment_intent.succeeded", {"id": "pi_1", "metadata": {"build_id": "BLD-1"}})
    db.builds.update_one = AsyncMock(side_effect=RuntimeError("db down"))
    with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", return_value=event), \
         patch("services.stripe_webhook_service.database.get_db", return_value=db):
        success, message, details = await StripeWebhookService().process_webhook(b"{}", "sig")
    assert success is False
    assert message == "Webhook handler failed"
    failed = db.stripe_events.update_one.call_args[0][1]["$set"]
    assert failed["status"] == "FAILED"


class TestRetryable:
    NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)

    def test_failed_event_retries(self):
        assert is_retryable({"status": "FAILED"}, self.NOW)

    def test_processed_event_never_retries(self):
        assert not is_retryable({"status": "PROCESSED", "created": self.NOW - timedelta(days=1)}, self.NOW)

    def test_in_flight_event_is_left_alone(self):
        assert not is_retryable({"status": "PROCESSING", "created": self.NOW - timedelta(minutes=2)}, self.NOW)

    def test_abandoned_event_retries(self):
        started = (self.NOW - timedelta(minutes=30)).replace(tzinfo=None)
        assert is_retryable({"status": "PROCESSING", "created": started}, self.NOW)


@pytest.mark.asyncio
async def test_in_flight_event_is_skipped(signed):
    db = _db(existing_event={"event_id": "evt_1", "status": "PROCESSING", "created": datetime.now(timezone.utc)})
    event = _event("payment_intent.succeeded", {"id": "pi_1", "metadata": {"build_id": "BLD-1"}})
    with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", return_value=event), \
         patch("services.stripe_webhook_service.database.get_db", return_value=db):
        success, message, _ = await StripeWebhookService().process_webhook(b"{}", "sig")
    assert (success, message) == (True, "Already processed")
    db.stripe_events.update_one.assert_not_called()
    db.builds.update_one.assert_not_called()


@pytest.mark.asyncio
async def test_failed_event_is_reclaimed_and_reprocessed(signed):
    failed_at = datetime(2026, 6, 1, tzinfo=timezone.utc)
    db = _db(existing_event={"event_id": "evt_1", "status": "FAILED", "created": failed_at})
    db.stripe_events.update_one = AsyncMock(return_value=MagicMock(modified_count=1))
    event = _event("payment_intent.payment_failed", {"id": "pi_1", "metadata": {"build_id": "BLD-1"}})
    with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", return_value=event), \
         patch("services.stripe_webhook_service.database.get_db", return_value=db), \
         patch("services.stripe_webhook_service.create_audit_log", new_callable=AsyncMock):
        success, message, _ = await StripeWebhookService().process_webhook(b"{}", "sig")
    assert (success, message) == (True, "Processed")
    claim_filter, claim_update = db.stripe_events.update_one.call_args_list[0][0]
    assert claim_filter == {"event_id": "evt_1", "status": "FAILED", "created": failed_at}
    assert claim_update["$set"]["status"] == "PROCESSING"
    assert db.builds.update_one.call_args[0][1]["$set"]["payment.status"] == "failed"


@pytest.mark.asyncio
async def test_lost_retry_claim_is_skipped(signed):
    db = _db(existing_event={"event_id": "evt_1", "status": "FAILED"})
    db.stripe_events.update_one = AsyncMock(return_value=MagicMock(modified_count=0))
    event = _event("payment_intent.succeeded", {"id": "pi_1", "metadata": {"build_id": "BLD-1"}})
    with patch("services.stripe_webhook_service.stripe.Webhook.construct_event", return_value=event), \
         patch("services.stripe_webhook_service.database.get_db", return_value=db):
        success, message, _ = await StripeWebhookService().process_webhook(b"{}", "sig")
    assert (success, message) == (True, "Already processed")
    db.builds.update_one.assert_not_called()


@pytest.mark.asyncio
async def test_inbound_transfer_success_pays_intent():
    intent = {"intent_id": "BTI-1", "build_id": "BLD-1", "milestone": "deposit"}
    db = _db(intent=intent, build_payment={"plan": {"type": "deposit"}, "deposit_paid": True})
    transfer = {"id": "ibt_1", "amount": 2500050, "metadata": {"intent_id": "BTI-1"}}
    with patch("services.stripe_webhook_service.database.get_db", return_value=db), \
         patch("services.stripe_webhook_service.create_audit_log", new_callable=AsyncMock):
        result = await StripeWebhookService()._handle_event(_event("treasury.inbound_transfer.succeeded", transfer))

    assert result == {"handled": True, "build_id": "BLD-1", "milestone": "deposit"}
    db.bank_transfer_intents.find_one.assert_awaited_once_with({"intent_id": "BTI-1"}, {"_id": 0})
    intent_update = db.bank_transfer_intents.update_one.call_args[0][1]["$set"]
    assert intent_update["status"] == "paid"
    assert intent_update["paid_amount_cents"] == 2500050
    assert intent_update["transfer_id"] == "ibt_1"
    assert db.builds.update_one.call_args[0][1]["$set"]["payment.deposit_paid"] is True


@pytest.mark.asyncio
async def test_inbound_transfer_failure_marks_intent_failed():
    intent = {"intent_id": "BTI-1", "build_id": "BLD-1", "milestone": "final"}
    db = _db(intent=intent)
    transfer = {"id": "ibt_2", "metadata": {"build_id": "BLD-1", "milestone": "final"}}
    with patch("services.stripe_webhook_service.database.get_db", return_value=db):
        result = await StripeWebhookService()._handle_event(_event("treasury.inbound_transfer.failed", transfer))

    assert result["handled"] is True
    db.bank_transfer_intents.find_one.assert_awaited_once_with({"build_id": "BLD-1", "milestone": "final"}, {"_id": 0})
    intent_update = db.bank_transfer_intents.update_one.call_args[0][1]["$set"]
    assert intent_update["status"] == "payment_failed"
    assert intent_update["last_error"] == "Bank transfer failed"
    db.builds.update_one.assert_not_called()


@pytest.mark.asyncio
async def test_inbound_transfer_without_intent_is_ignored():
    db = _db(intent=None)
    with patch("services.stripe_webhook_service.database.get_db", return_value=db):
        result = await StripeWebhookService()._handle_event(
            _event("treasury.inbound_transfer.succeeded", {"id": "ibt_3", "metadata": {}})
        )
    assert result == {"handled": False, "reason": "no matching intent"}


# ============================================
# Routes
# ============================================

@pytest.mark.parametrize("path", ["/api/webhooks/stripe", "/api/webhook/stripe"])
def test_bad_signature_is_rejected(client, signed, path):
    payload = json.dumps(_event("payment_intent.succeeded", {"id": "pi_1"}))
    resp = client.post(path, content=payload, headers={"Stripe-Signature": "t=1,v1=bad"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid signature"


def test_handler_failure_is_acknowledged(client):
    with patch(
        "routes.webhooks.stripe_webhook_service.process_webhook",
        new_callable=AsyncMock,
        return_value=(False, "Webhook handler failed", {"error": "boom"}),
    ):
        resp = client.post("/api/webhooks/stripe", content=b"{}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "error"
