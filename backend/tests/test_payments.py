"""
Payments: bank-transfer payer validation, intent documents, readiness rules,
idempotency keys and the payment routes.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from pymongo.errors import DuplicateKeyError

from services import payment_service
from services.errors import ForbiddenError, RuleViolation
from services.idempotency import run_idempotent
from services.payment_service import build_intent_documents, parse_plan, reference_code, validate_payer_info
from conftest import mock_collection

PAYER = {
    "full_legal_name": "Ada Lovelace",
    "email": "ada@example.com",
    "phone": "555-0100",
    "preferred_transfer_type": "wire",
    "billing_address": {"street": "12 Oak St", "city": "Waco", "state": "TX", "zip": "76701"},
}
COMMITMENTS = {"customer_initiated": True, "funds_clearing": True, "storage_fees_acknowledged": True}


def _error_code(payer, commitments=COMMITMENTS, plan_type="deposit"):
    with pytest.raises(RuleViolation) as exc:
        validate_payer_info(payer, commitments, plan_type)
    return exc.value.error_code


class TestPayerValidation:
    def test_valid_payer_passes(self):
        validate_payer_info(PAYER, COMMITMENTS, "deposit")

    def test_missing_required_field(self):
        assert _error_code({**PAYER, "phone": "  "}) == "MISSING_FIELD"

    def test_invalid_email(self):
        assert _error_code({**PAYER, "email": "not-an-email"}) == "INVALID_EMAIL"

    def test_missing_billing_city(self):
        address = {**PAYER["billing_address"], "city": ""}
        assert _error_code({**PAYER, "billing_address": address}) == "MISSING_FIELD"

    @pytest.mark.parametrize("zip_code", ["7670", "76701-12", "ABCDE"])
    def test_invalid_zip(self, zip_code):
        address = {**PAYER["billing_address"], "zip": zip_code}
        assert _error_code({**PAYER, "billing_address": address}) == "INVALID_ZIP"

    def test_zip_plus_four_accepted(self):
        address = {**PAYER["billing_address"], "zip": "76701-1234"}
        validate_payer_info({**PAYER, "billing_address": address}, COMMITMENTS, "deposit")

    def test_deposit_requires_storage_acknowledgement(self):
        commitments = {"customer_initiated": True, "funds_clearing": True}
        assert _error_code(PAYER, commitments, "deposit") == "MISSING_COMMITMENTS"
        validate_payer_info(PAYER, commitments, "full")

    @pytest.mark.parametrize("transfer_type", ["check", "cash", "WIRE "])
    def test_unknown_transfer_type(self, transfer_type):
        assert _error_code({**PAYER, "preferred_transfer_type": transfer_type}) == "INVALID_TRANSFER_TYPE"

    def test_billing_address_must_be_an_object(self):
        assert _error_code({**PAYER, "billing_address": "12 Oak St"}) == "MISSING_FIELD"


class TestParsePlan:
    def test_defaults_to_deposit(self):
        assert parse_plan({}) == {"type": "deposit", "percent": None}

    def test_full_plan_ignores_percent(self):
        assert parse_plan({"type": "full", "percent": 150})["type"] == "full"

    @pytest.mark.parametrize("plan", [
        {"type": "deposit", "percent": 150},
        {"type": "deposit", "percent": 0},
        {"type": "deposit", "percent": -5},
        {"type": "monthly"},
        {"type": "deposit", "percent": "a lot"},
        "deposit",
    ])
    def test_invalid_plans(self, plan):
        with pytest.raises(RuleViolation) as exc:
            parse_plan(plan)
        assert exc.value.error_code == "INVALID_PLAN"


def test_reference_code_uses_build_suffix():
    assert reference_code("BLD-abcdef123456", "deposit") == "FF-EF123456-DEPOSIT"


def test_intent_documents_start_pending_contract():
    build = {"build_id": "BLD-ABCDEF123456", "user_id": "user_123"}
    milestones = [
        {"milestone": "deposit", "amount": 25000.5, "percent": 25},
        {"milestone": "final", "amount": 75001.5, "percent": 75},
    ]
    intents = build_intent_documents(build, milestones, PAYER, COMMITMENTS, "user_123")
    assert [i["expected_amount_cents"] for i in intents] == [2500050, 7500150]
    assert {i["status"] for i in intents} == {"pending_contract"}
    assert intents[1]["reference_code"] == "FF-EF123456-FINAL"
    assert intents[0]["intent_id"] != intents[1]["intent_id"]


@pytest.mark.asyncio
async def test_mark_ready_requires_fields():
    with pytest.raises(RuleViolation) as exc:
        await payment_service.mark_ready("BLD-1", "user_123", None, "card")
    assert exc.value.error_code == "MISSING_FIELDS"


@pytest.mark.asyncio
async def test_mark_ready_rejects_other_users_build():
    with patch("services.payment_service.get_build", new_callable=AsyncMock,
               return_value={"build_id": "BLD-1", "user_id": "other"}):
        with pytest.raises(ForbiddenError):
            await payment_service.mark_ready("BLD-1", "user_123", {"type": "full"}, "card")


@pytest.mark.asyncio
async def test_mark_ready_ach_records_mandate():
    db = MagicMock()
    db.builds = mock_collection()
    with patch("services.payment_service.database.get_db", return_value=db), \
         patch("services.payment_service.get_build", new_callable=AsyncMock,
               return_value={"build_id": "BLD-1", "user_id": "user_123"}), \
         patch("services.payment_service.create_audit_log", new_callable=AsyncMock):
        result = await payment_service.mark_ready("BLD-1", "user_123", {"type": "deposit"}, "ach_debit")
    assert result["method"] == "ach_debit"
    updates = db.builds.update_one.call_args[0][1]["$set"]
    assert updates["payment.ready"] is True
    assert "payment.mandate_accepted_at" in updates


@pytest.mark.asyncio
async def test_collect_requires_ready_payment():
    with patch("services.payment_service.get_owned_build", new_callable=AsyncMock,
               return_value={"build_id": "BLD-1", "user_id": "user_123", "payment": {}}):
        with pytest.raises(RuleViolation) as exc:
            await payment_service.collect_at_confirmation("BLD-1", "user_123")
    assert exc.value.error_code == "PAYMENT_NOT_READY"


# ============================================
# Idempotency
# ============================================

@pytest.mark.asyncio
async def test_no_key_always_runs_handler():
    handler = AsyncMock(return_value={"ok": True})
    assert await run_idempotent(None, "collect", handler) == {"ok": True}
    handler.assert_awaited_once()


@pytest.mark.asyncio
async def test_repeated_key_is_replayed_without_running():
    db = MagicMock()
    db.idempotency_keys = mock_collection()
    db.idempotency_keys.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))
    handler = AsyncMock()
    with patch("services.idempotency.database.get_db", return_value=db):
        result = await run_idempotent("key-1", "collect:BLD-1", handler)
    assert result == {"idempotent": True}
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_handler_releases_key():
    db = MagicMock()
    db.idempotency_keys = mock_collection()
    handler = AsyncMock(side_effect=RuleViolation("PAYMENT_NOT_READY"))
    with patch("services.idempotency.database.get_db", return_value=db):
        with pytest.raises(RuleViolation):
            await run_idempotent("key-1", "collect:BLD-1", handler)
    db.idempotency_keys.delete_one.assert_awaited_once_with({"key": "collect:BLD-1:key-1"})


# ============================================
# Routes
# ============================================

def test_mark_ready_route_maps_rule_violation(client, customer_headers):
    resp = client.post("/api/payments/mark-ready", json={"build_id": "BLD-1"}, headers=customer_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"]["error_code"] == "MISSING_FIELDS"


def test_bank_transfer_intents_validate_before_db(client, customer_headers):
    body = {"build_id": "BLD-1", "plan": {"type": "deposit"}, "payer_info": {**PAYER, "email": "bad"}, "commitments": COMMITMENTS}
    resp = client.post("/api/payments/bank-transfer-intents", json=body, headers=customer_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"]["error_code"] == "INVALID_EMAIL"


def test_payments_require_auth(client):
    assert client.post("/api/payments/setup-card", json={"build_id": "BLD-1"}).status_code == 401


def test_replayed_collect_does_not_charge_again(client, customer_headers):
    db = MagicMock()
    db.idempotency_keys = mock_collection()
    db.idempotency_keys.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))
    with patch("services.idempotency.database.get_db", return_value=db), \
         patch("services.payment_service.collect_at_confirmation", new_callable=AsyncMock) as collect:
        resp = client.post(
            "/api/payments/collect",
            json={"build_id": "BLD-1"},
            headers={**customer_headers, "Idempotency-Key": "confirm-1"},
        )
    assert resp.status_code == 200
    assert resp.json() == {"idempotent": True}
    collect.assert_not_awaited()
    assert db.idempotency_keys.insert_one.call_args[0][0]["key"] == "collect:BLD-1:confirm-1"


def test_first_keyed_request_runs_operation(client, customer_headers):
    db = MagicMock()
    db.idempotency_keys = mock_collection()
    with patch("services.idempotency.database.get_db", return_value=db), \
         patch("services.payment_service.mark_ready", new_callable=AsyncMock,
               return_value={"success": True, "build_id": "BLD-1"}) as mark_ready:
        resp = client.post(
            "/api/payments/mark-ready",
            json={"build_id": "BLD-1", "plan": {"type": "full"}, "method": "card"},
            headers={**customer_headers, "Idempotency-Key": "ready-1"},
        )
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    mark_ready.assert_awaited_once_with("BLD-1", "user_123", {"type": "full"}, "card")
    assert db.idempotency_keys.insert_one.call_args[0][0]["key"] == "mark-ready:BLD-1:ready-1"


def test_out_of_range_deposit_percent_is_400(client, customer_headers):
    body = {"build_id": "BLD-1", "plan": {"type": "deposit", "percent": 150}, "payer_info": PAYER, "commitments": COMMITMENTS}
    resp = client.post("/api/payments/bank-transfer-intents", json=body, headers=customer_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"]["error_code"] == "INVALID_PLAN"


def test_unknown_transfer_type_is_400(client, customer_headers):
    payer = {**PAYER, "preferred_transfer_type": "check"}
    body = {"build_id": "BLD-1", "plan": {"type": "full"}, "payer_info": payer, "commitments": COMMITMENTS}
    resp = client.post("/api/payments/bank-transfer-intents", json=body, headers=customer_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"]["error_code"] == "INVALID_TRANSFER_TYPE"


@pytest.mark.asyncio
async def test_bank_transfer_intents_store_normalized_payer():
    db = MagicMock()
    db.builds = mock_collection()
    db.bank_transfer_intents = mock_collection()
    db.bank_transfer_intents.delete_many = AsyncMock()
    db.bank_transfer_intents.insert_many = AsyncMock()
    milestones = [{"milestone": "full", "amount": 100000.0, "percent": 100.0}]
    payer = {**PAYER, "ssn": "000-00-0000"}
    with patch("services.payment_service.database.get_db", return_value=db), \
         patch("services.payment_service.get_build", new_callable=AsyncMock,
               return_value={"build_id": "BLD-1", "user_id": "user_123"}), \
         patch("services.payment_service._contract_milestones", new_callable=AsyncMock, return_value=milestones), \
         patch("services.payment_service.create_audit_log", new_callable=AsyncMock):
        result = await payment_service.create_bank_transfer_intents(
            "BLD-1", "user_123", {"type": "full"}, payer, {"customer_initiated": True, "funds_clearing": "true"}
        )
    assert [i["milestone"] for i in result["intents"]] == ["full"]
    stored = db.builds.update_one.call_args[0][1]["$set"]
    assert "ssn" not in stored["payment.payer_info"]
    assert stored["payment.payer_info"]["preferred_transfer_type"] == "wire"
    assert stored["payment.commitments"] == {
        "customer_initiated": True, "funds_clearing": True, "storage_fees_acknowledged": False,
    }
    assert stored["payment.plan"] == {"type": "full", "percent": None}


@pytest.mark.asyncio
async def test_unparseable_commitment_is_rule_violation():
    commitments = {**COMMITMENTS, "funds_clearing": "maybe"}
    with pytest.raises(RuleViolation) as exc:
        await payment_service.create_bank_transfer_intents("BLD-1", "user_123", {"type": "full"}, PAYER, commitments)
    assert exc.value.error_code == "INVALID_PAYER_INFO"
