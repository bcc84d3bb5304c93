"""
Admin data export: flattening, redaction and the JSON/CSV/XLSX renderers.
"""
import io
import json
import zipfile
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from openpyxl import load_workbook

from services.errors import RuleViolation
from services.export_service import (
    build_export_query,
    collect_columns,
    flatten_document,
    format_csv,
    format_csv_bundle,
    format_json,
    format_xlsx,
    render_export,
    validate_export_request,
)
from conftest import mock_collection, mock_cursor

CREATED = datetime(2026, 5, 4, 15, 30, tzinfo=timezone.utc)


def _build():
    return {
        "build_id": "BLD-1",
        "created_at": CREATED,
        "buyer_info": {"email": "ada@example.com", "zip": "78701"},
        "selections": {"options": [{"id": "porch-covered"}]},
        "payment": {"method": "card", "saved_payment_method_id": "pm_secret", "payer_info": {"billing_address": "x", "email": "p@example.com"}},
        "ip_hash": "abc",
    }


class TestFlatten:
    def test_nested_keys_become_dotted_columns(self):
        flat = flatten_document(_build())
        assert flat["buyer_info.email"] == "ada@example.com"
        assert flat["created_at"] == "2026-05-04T15:30:00+00:00"
        assert flat["selections.options"] == '[{"id": "porch-covered"}]'
        assert flat["payment.payer_info.email"] == "p@example.com"

    def test_sensitive_fields_are_redacted(self):
        flat = flatten_document(_build())
        assert "ip_hash" not in flat
        assert "payment.saved_payment_method_id" not in flat
        assert "payment.payer_info.billing_address" not in flat

    def test_intent_billing_address_is_redacted(self):
        intent = {
            "intent_id": "BTI-1",
            "payer_info": {"email": "p@example.com", "billing_address": {"street": "12 Oak St", "zip": "76701"}},
        }
        flat = flatten_document(intent)
        assert flat["payer_info.email"] == "p@example.com"
        assert not any(key.startswith("payer_info.billing_address") for key in flat)
        exported = json.loads(format_json({"bank_transfer_intents": [intent]}))["bank_transfer_intents"][0]
        assert exported["payer_info"] == {"email": "p@example.com"}

    def test_columns_in_first_seen_order(self):
        assert collect_columns([{"a": 1, "b": 2}, {"c": 3, "a": 4}]) == ["a", "b", "c"]


class TestValidation:
    @pytest.mark.parametrize("collections,fmt,code", [
        ([], "json", "NO_COLLECTIONS"),
        (["builds", "secrets"], "json", "INVALID_COLLECTION"),
        (["builds"], "pdf", "INVALID_FORMAT"),
    ])
    def test_rejected(self, collections, fmt, code):
        with pytest.raises(RuleViolation) as exc:
            validate_export_request(collections, fmt)
        assert exc.value.error_code == code

    def test_query_filters(self):
        query = build_export_query({"date_from": "2026-01-01", "date_to": "2026-02-01T00:00:00Z", "status": "paid"}, "started_at")
        assert query["started_at"]["$gte"] == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert query["started_at"]["$lte"] == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert query["status"] == "paid"
        assert build_export_query(None) == {}

    def test_bad_date(self):
        with pytest.raises(RuleViolation) as exc:
            build_export_query({"date_from": "last tuesday"})
        assert exc.value.error_code == "INVALID_DATE"


class TestFormats:
    def test_json_keeps_nesting_but_redacts(self):
        payload = json.loads(format_json({"builds": [_build()]}))
        build = payload["builds"][0]
        assert build["buyer_info"] == {"email": "ada@example.com", "zip": "78701"}
        assert build["created_at"] == "2026-05-04T15:30:00+00:00"
        assert "ip_hash" not in build
        assert "saved_payment_method_id" not in build["payment"]
        assert build["payment"]["payer_info"] == {"email": "p@example.com"}

    def test_csv(self):
        lines = format_csv([{"order_id": "ORD-1", "pricing": {"total": 10}}, {"order_id": "ORD-2", "status": "paid"}]).splitlines()
        assert lines[0] == "order_id,pricing.total,status"
        assert lines[1] == "ORD-1,10,"
        assert lines[2] == "ORD-2,,paid"

    def test_empty_csv(self):
        assert format_csv([]) == "No data available\n"

    def test_single_collection_csv_is_plain(self):
        content, media_type, ext = format_csv_bundle({"orders": [{"order_id": "ORD-1"}]})
        assert (media_type, ext) == ("text/csv", "csv")
        assert content.decode().startswith("order_id")

    def test_multiple_collections_are_zipped(self):
        content, media_type, ext = format_csv_bundle({"orders": [{"order_id": "ORD-1"}], "sessions": []})
        assert (media_type, ext) == ("application/zip", "zip")
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            assert sorted(archive.namelist()) == ["orders.csv", "sessions.csv"]
            assert archive.read("sessions.csv").decode() == "No data available\n"

    def test_xlsx_has_a_sheet_per_collection(self):
        wb = load_workbook(io.BytesIO(format_xlsx({"builds": [_build()], "orders": []})))
        assert wb.sheetnames == ["builds", "orders"]
        headers = [c.value for c in wb["builds"][1]]
        assert "buyer_info.email" in headers
        assert "ip_hash" not in headers
        assert wb["orders"]["A1"].value == "No data available"

    def test_render_defaults_to_json(self):
        _, media_type, ext = render_export({"builds": []}, "json")
        assert (media_type, ext) == ("application/json", "json")


# ============================================
# Routes
# ============================================

def test_export_requires_data_permission(client, viewer_headers):
    resp = client.post("/api/admin/export", json={"collections": ["builds"]}, headers=viewer_headers)
    assert resp.status_code == 403


def test_export_rejects_unknown_collection(client, admin_headers):
    resp = client.post("/api/admin/export", json={"collections": ["users_passwords"]}, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.json()["detail"]["error_code"] == "INVALID_COLLECTION"


def test_export_json_download(client, admin_headers):
    db = MagicMock()
    builds = mock_collection()
    builds.find.return_value = mock_cursor([{"build_id": "BLD-1", "ip_hash": "abc"}])
    db.__getitem__.return_value = builds
    db.data_exports = mock_collection()
    with patch("services.export_service.database.get_db", return_value=db), \
         patch("services.export_service.create_audit_log", new_callable=AsyncMock) as audit:
        resp = client.post("/api/admin/export", json={"collections": ["builds"], "format": "json"}, headers=admin_headers)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/json")
    assert "attachment; filename=firefly_export_" in resp.headers["content-disposition"]
    assert resp.headers["x-export-id"].startswith("EXP-")
    assert resp.json() == {"builds": [{"build_id": "BLD-1"}]}
    record = db.data_exports.insert_one.call_args[0][0]
    assert record["row_counts"] == {"builds": 1}
    audit.assert_awaited_once()
