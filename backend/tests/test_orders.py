"""
Orders: workflow transitions, order snapshots from builds, admin updates and routes.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from services import order_service
from services.errors import ForbiddenError, NotFoundError, RuleViolation
from services.order_service import build_admin_query, build_order_document
from services.order_workflow import (
    ALLOWED_TRANSITIONS,
    OrderStatus,
    PIPELINE_COLUMNS,
    get_allowed_transitions,
    is_terminal_state,
    is_valid_transition,
)
from services.settings_service import DEFAULT_ORG_SETTINGS
from conftest import auth_headers, mock_collection, mock_cursor


class TestWorkflow:
    def test_every_status_has_transition_entry_and_column(self):
        assert set(ALLOWED_TRANSITIONS) == set(OrderStatus)
        assert {c["status"] for c in PIPELINE_COLUMNS} == set(OrderStatus)

    @pytest.mark.parametrize("from_status,to_status", [
        (OrderStatus.DRAFT, OrderStatus.QUOTE),
        (OrderStatus.CONFIRMED, OrderStatus.PRODUCTION),
        (OrderStatus.PRODUCTION, OrderStatus.DELAYED),
        (OrderStatus.DELAYED, OrderStatus.PRODUCTION),
        (OrderStatus.DELIVERED, OrderStatus.RETURNED),
    ])
    def test_valid_transitions(self, from_status, to_status):
        assert is_valid_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        (OrderStatus.DRAFT, OrderStatus.DELIVERED),
        (OrderStatus.QUOTE, OrderStatus.PRODUCTION),
        (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
        (OrderStatus.COMPLETED, OrderStatus.PRODUCTION),
    ])
    def test_invalid_transitions(self, from_status, to_status):
        assert not is_valid_transition(from_status, to_status)

    def test_terminal_states_have_no_exits(self):
        for status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED):
            assert is_terminal_state(status)
            assert get_allowed_transitions(status) == []
        assert not is_terminal_state(OrderStatus.DELIVERED)


def _build():
    return {
        "build_id": "BLD-1",
        "user_id": "user_123",
        "model_slug": "the-magnolia",
        "model_name": "The Magnolia",
        "selections": {"base_price": 70000, "options": [{"code": "PORCH", "name": "Porch", "price": 8500}]},
        "pricing": {"delivery": 2000, "delivery_miles": 140.0},
        "buyer_info": {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com",
                       "address": "12 Oak St", "city": "Waco", "state": "TX", "zip": "76701"},
        "financing": {"method": "card"},
        "payment": {},
    }


def test_order_document_snapshots_build():
    order = build_order_document(_build(), DEFAULT_ORG_SETTINGS)
    assert order["order_id"].startswith("ORD-")
    assert order["status"] == "draft"
    assert order["priority"] == "normal"
    assert order["selections"][0] == {"code": "PORCH", "name": "Porch", "price": 8500, "quantity": 1}
    assert order["delivery"]["address"] == "12 Oak St, Waco, TX, 76701"
    assert order["payment"]["method"] == "card"
    assert order["pricing"]["deposit"] == round(order["pricing"]["total"] * 0.25, 2)


@pytest.mark.asyncio
async def test_existing_order_returned_for_build():
    build = {**_build(), "order_id": "ORD-2026-AAAAAA"}
    existing = {"order_id": "ORD-2026-AAAAAA", "user_id": "user_123"}
    db = MagicMock()
    db.orders = mock_collection(find_one=existing)
    with patch("services.order_service.database.get_db", return_value=db):
        order = await order_service.create_order_from_build(build, "user_123")
    assert order == existing
    db.orders.insert_one.assert_not_called()


@pytest.mark.asyncio
async def test_order_for_other_users_build_forbidden():
    with pytest.raises(ForbiddenError):
        await order_service.create_order_from_build(_build(), "someone_else")


@pytest.mark.asyncio
async def test_create_order_marks_build_contract_pending():
    db = MagicMock()
    db.orders = mock_collection()
    db.builds = mock_collection()
    with patch("services.order_service.database.get_db", return_value=db), \
         patch("services.order_service.get_org_settings", new_callable=AsyncMock, return_value=DEFAULT_ORG_SETTINGS), \
         patch("services.order_service.create_audit_log", new_callable=AsyncMock):
        order = await order_service.create_order_from_build(_build(), "user_123")
    update = db.builds.update_one.call_args[0][1]
    assert update["$set"]["order_id"] == order["order_id"]
    assert update["$set"]["status"] == "contract_pending"


def test_admin_query_escapes_search_and_bounds_dates():
    query = build_admin_query(status="draft", search="a.b", date_from="2026-01-01")
    assert query["status"] == "draft"
    assert query["$or"][0]["order_id"]["$regex"] == r"a\.b"
    assert query["created_at"] == {"$gte": "2026-01-01"}


class TestAdminUpdate:
    async def _update(self, order, patch_body):
        db = MagicMock()
        db.orders = mock_collection(find_one=order)
        with patch("services.order_service.database.get_db", return_value=db), \
             patch("services.order_service.create_audit_log", new_callable=AsyncMock):
            await order_service.update_order_admin("ORD-1", patch_body, {"user_id": "admin_1", "role": "admin"})
        return db

    @pytest.mark.asyncio
    async def test_invalid_transition_rejected(self):
        with pytest.raises(RuleViolation) as exc:
            await self._update({"order_id": "ORD-1", "status": "draft"}, {"status": "delivered"})
        assert exc.value.error_code == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_valid_transition_appends_timeline(self):
        db = await self._update({"order_id": "ORD-1", "status": "ready"}, {"status": "delivered", "reason": "Set on site"})
        update = db.orders.update_one.call_args[0][1]
        assert update["$set"]["status"] == "delivered"
        assert "delivered_at" in update["$set"]
        assert update["$push"]["timeline"]["$each"][0]["note"] == "Set on site"

    @pytest.mark.asyncio
    async def test_bad_priority_rejected(self):
        with pytest.raises(RuleViolation) as exc:
            await self._update({"order_id": "ORD-1", "status": "draft"}, {"priority": "asap"})
        assert exc.value.error_code == "INVALID_PRIORITY"

    @pytest.mark.asyncio
    async def test_empty_patch_rejected(self):
        with pytest.raises(RuleViolation) as exc:
            await self._update({"order_id": "ORD-1", "status": "draft"}, {"status": "draft"})
        assert exc.value.error_code == "NO_CHANGES"

    @pytest.mark.asyncio
    async def test_missing_order(self):
        with pytest.raises(NotFoundError):
            await self._update(None, {"status": "quote"})


# ============================================
# Routes
# ============================================

def test_admin_order_detail_lists_allowed_transitions(client, admin_headers):
    order = {"order_id": "ORD-1", "status": "production"}
    with patch("routes.admin_orders.get_order", new_callable=AsyncMock, return_value=order):
        resp = client.get("/api/admin/orders/ORD-1", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["allowed_transitions"] == ["ready", "delayed", "cancelled"]


def test_staff_cannot_edit_orders(client):
    headers = auth_headers(user_id="staff_1", role="staff")
    resp = client.patch("/api/admin/orders/ORD-1", json={"status": "quote"}, headers=headers)
    assert resp.status_code == 403


def test_admin_patch_invalid_transition_is_400(client, admin_headers):
    db = MagicMock()
    db.orders = mock_collection(find_one={"order_id": "ORD-1", "status": "completed"})
    with patch("services.order_service.database.get_db", return_value=db):
        resp = client.patch("/api/admin/orders/ORD-1", json={"status": "production"}, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"]["error_code"] == "INVALID_TRANSITION"


def test_customer_order_reports_closed_state(client, customer_headers):
    order = {"order_id": "ORD-1", "user_id": "user_123", "status": "completed"}
    with patch("services.order_service.get_order", new_callable=AsyncMock, return_value=order):
        resp = client.get("/api/orders/ORD-1", headers=customer_headers)
    assert resp.status_code == 200
    assert resp.json()["is_closed"] is True


def test_customer_cannot_see_other_order(client, customer_headers):
    order = {"order_id": "ORD-1", "user_id": "other", "status": "draft"}
    with patch("services.order_service.get_order", new_callable=AsyncMock, return_value=order):
        resp = client.get("/api/orders/ORD-1", headers=customer_headers)
    assert resp.status_code == 403


def test_pipeline_counts_zero_fill_every_column(client, viewer_headers):
    db = MagicMock()
    db.orders.aggregate.return_value = mock_cursor([
        {"_id": "draft", "count": 3},
        {"_id": "production", "count": 2},
        {"_id": "legacy_status", "count": 9},
    ])
    with patch("services.order_service.database.get_db", return_value=db):
        resp = client.get("/api/admin/orders/pipeline/counts", headers=viewer_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["counts"]["draft"] == 3
    assert body["counts"]["production"] == 2
    assert body["counts"]["cancelled"] == 0
    assert "legacy_status" not in body["counts"]
    assert [c["status"] for c in body["columns"]] == list(body["counts"])
    assert body["columns"][0] == {"status": "draft", "label": "Draft", "color": "gray"}


def test_pipeline_counts_need_orders_view(client):
    headers = auth_headers(user_id="buyer_9", role="customer")
    assert client.get("/api/admin/orders/pipeline/counts", headers=headers).status_code == 403
