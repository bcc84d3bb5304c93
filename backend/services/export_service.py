"""
Data export - admin downloads of raw collections as JSON, CSV or Excel.

Nested documents are flattened into dotted columns for CSV/XLSX
(e.g. buyer_info.email). A multi-collection CSV export is a zip with one
file per collection; XLSX uses one sheet per collection.
"""
import csv
import io
import json
import logging
import uuid
import zipfile
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from openpyxl import Workbook
from openpyxl.styles import Font, Alignment, PatternFill
from openpyxl.utils import get_column_letter

from database import database
from models import AuditAction
from services.errors import RuleViolation
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

EXPORTABLE_COLLECTIONS = (
    "builds",
    "orders",
    "user_profiles",
    "sessions",
    "page_views",
    "analytics_events",
    "bank_transfer_intents",
)
EXPORT_FORMATS = ("json", "csv", "xlsx")
MAX_ROWS_PER_COLLECTION = 50000
# Collections without created_at are filtered on their own timestamp
DATE_FIELDS = {"sessions": "started_at", "page_views": "timestamp", "analytics_events": "timestamp"}
# Never leave the database, even for admins
REDACTED_FIELDS = {
    "ip_hash",
    "payment.saved_payment_method_id",
    "payment.payer_info.billing_address",
    # bank_transfer_intents keep payer details at the top level
    "payer_info.billing_address",
}


def generate_export_id() -> str:
    return f"EXP-{uuid.uuid4().hex[:10].upper()}"


def _scalar(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return json.dumps(value, default=str)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def flatten_document(doc: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """{"a": {"b": 1}} -> {"a.b": 1}. Lists are kept as JSON strings."""
    flat: Dict[str, Any] = {}
    for key, value in doc.items():
        path = f"{prefix}{key}"
        if path in REDACTED_FIELDS:
            continue
        if isinstance(value, dict):
            flat.update(flatten_document(value, f"{path}."))
        else:
            flat[path] = _scalar(value)
    return flat


def collect_columns(rows: List[Dict[str, Any]]) -> List[str]:
    """Union of keys in first-seen order."""
    columns: Dict[str, None] = {}
    for row in rows:
        for key in row:
            columns.setdefault(key, None)
    return list(columns)


def validate_export_request(collections: List[str], fmt: str) -> None:
    if not collections:
        raise RuleViolation("NO_COLLECTIONS", "Select at least one collection to export")
    unknown = [c for c in collections if c not in EXPORTABLE_COLLECTIONS]
    if unknown:
        raise RuleViolation("INVALID_COLLECTION", f"Unknown collection(s): {', '.join(unknown)}")
    if fmt not in EXPORT_FORMATS:
        raise RuleViolation("INVALID_FORMAT", f"Format must be one of: {', '.join(EXPORT_FORMATS)}")


# ============================================
# Formatters
# ============================================

def format_json(data: Dict[str, List[Dict[str, Any]]]) -> bytes:
    payload = {name: [_strip_redacted(doc) for doc in docs] for name, docs in data.items()}
    return json.dumps(payload, indent=2, default=_json_default).encode("utf-8")


def _json_default(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _strip_redacted(doc: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    clean = {}
    for key, value in doc.items():
        path = f"{prefix}{key}"
        if path in REDACTED_FIELDS:
            continue
        clean[key] = _strip_redacted(value, f"{path}.") if isinstance(value, dict) else value
    return clean


def format_csv(docs: List[Dict[str, Any]]) -> str:
    output = io.StringIO()
    rows = [flatten_document(d) for d in docs]
    if not rows:
        output.write("No data available\n")
        return output.getvalue()

    writer = csv.DictWriter(output, fieldnames=collect_columns(rows), restval="")
    writer.writeheader()
    writer.writerows(rows)
    return output.getvalue()


def format_csv_bundle(data: Dict[str, List[Dict[str, Any]]]) -> Tuple[bytes, str, str]:
    """(content, media_type, extension). One collection is plain CSV; several are zipped."""
    if len(data) == 1:
        (docs,) = data.values()
        return format_csv(docs).encode("utf-8"), "text/csv", "csv"

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, docs in data.items():
            archive.writestr(f"{name}.csv", format_csv(docs))
    return buffer.getvalue(), "application/zip", "zip"


def format_xlsx(data: Dict[str, List[Dict[str, Any]]]) -> bytes:
    output = io.BytesIO()
    wb = Workbook()
    wb.remove(wb.active)

    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color="2F4F2F", end_color="2F4F2F", fill_type="solid")
    header_alignment = Alignment(horizontal="center", vertical="center")

    for name, docs in data.items():
        ws = wb.create_sheet(title=name[:31])
        rows = [flatten_document(d) for d in docs]
        if not rows:
            ws["A1"] = "No data available"
            continue

        headers = collect_columns(rows)
        for col_idx, header in enumerate(headers, 1):
            cell = ws.cell(row=1, column=col_idx, value=header)
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = header_alignment

        widths = [len(h) for h in headers]
        for row_idx, row in enumerate(rows, 2):
            for col_idx, header in enumerate(headers, 1):
                value = row.get(header)
                ws.cell(row=row_idx, column=col_idx, value=value)
                if value is not None:
                    widths[col_idx - 1] = max(widths[col_idx - 1], len(str(value)))

        for col_idx, width in enumerate(widths, 1):
            ws.column_dimensions[get_column_letter(col_idx)].width = min(width + 2, 50)
        ws.freeze_panes = "A2"

    wb.save(output)
    return output.getvalue()


def render_export(data: Dict[str, List[Dict[str, Any]]], fmt: str) -> Tuple[bytes, str, str]:
    if fmt == "xlsx":
        return format_xlsx(data), "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "xlsx"
    if fmt == "csv":
        return format_csv_bundle(data)
    return format_json(data), "application/json", "json"


# ============================================
# Export
# ============================================

def _parse_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise RuleViolation("INVALID_DATE", f"Invalid date filter: {value}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_export_query(filters: Optional[Dict[str, Any]], date_field: str = "created_at") -> Dict[str, Any]:
    """Supported filters: date_from/date_to (on the collection's date field), status, user_id."""
    filters = filters or {}
    query: Dict[str, Any] = {}
    created: Dict[str, Any] = {}
    if filters.get("date_from"):
        created["$gte"] = _parse_date(filters["date_from"])
    if filters.get("date_to"):
        created["$lte"] = _parse_date(filters["date_to"])
    if created:
        query[date_field] = created
    if filters.get("status"):
        query["status"] = filters["status"]
    if filters.get("user_id"):
        query["user_id"] = filters["user_id"]
    return query


async def export_collections(
    collections: List[str],
    fmt: str,
    filters: Optional[Dict[str, Any]],
    actor: Dict[str, Any],
) -> Dict[str, Any]:
    """Fetch, render and record an export. Returns content plus response metadata."""
    validate_export_request(collections, fmt)
    db = database.get_db()

    data: Dict[str, List[Dict[str, Any]]] = {}
    for name in dict.fromkeys(collections):
        query = build_export_query(filters, DATE_FIELDS.get(name, "created_at"))
        data[name] = await db[name].find(query, {"_id": 0}).to_list(length=MAX_ROWS_PER_COLLECTION)

    content, media_type, extension = render_export(data, fmt)
    export_id = generate_export_id()
    stamp = datetime.now(timezone.utc)
    filename = f"firefly_export_{stamp.strftime('%Y%m%d_%H%M%S')}.{extension}"
    counts = {name: len(docs) for name, docs in data.items()}

    await db.data_exports.insert_one({
        "export_id": export_id,
        "collections": list(data),
        "format": fmt,
        "filters": filters or {},
        "row_counts": counts,
        "size_bytes": len(content),
        "requested_by": actor.get("user_id"),
        "created_at": stamp,
    })
    await create_audit_log(
        action=AuditAction.DATA_EXPORTED,
        actor_id=actor.get("user_id"),
        actor_role=actor.get("role"),
        resource_type="data_export",
        resource_id=export_id,
        metadata={"collections": list(data), "format": fmt, "row_counts": counts},
    )
    logger.info(f"Data export {export_id} by {actor.get('email')}: {counts} as {fmt}")

    return {"content": content, "media_type": media_type, "filename": filename, "export_id": export_id}
