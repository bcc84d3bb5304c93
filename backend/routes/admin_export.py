"""
Admin data export - download raw collections as JSON, CSV or Excel.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
import logging

from database import database
from middleware import require_permission
from models import Permission
from services.errors import RuleViolation
from services.export_service import EXPORTABLE_COLLECTIONS, EXPORT_FORMATS, export_collections
from utils.http_errors import to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/export", tags=["admin-export"])


class ExportRequest(BaseModel):
    collections: List[str]
    format: str = "json"
    filters: Dict[str, Any] = Field(default_factory=dict)


@router.get("/collections")
async def list_exportable(
    current_user: dict = Depends(require_permission(Permission.DATA_EXPORT)),
):
    return {"collections": list(EXPORTABLE_COLLECTIONS), "formats": list(EXPORT_FORMATS)}


@router.post("")
async def export_data(
    request: ExportRequest,
    current_user: dict = Depends(require_permission(Permission.DATA_EXPORT)),
):
    try:
        result = await export_collections(request.collections, request.format, request.filters, current_user)
    except RuleViolation as e:
        raise to_http_exception(e)

    return StreamingResponse(
        iter([result["content"]]),
        media_type=result["media_type"],
        headers={
            "Content-Disposition": f"attachment; filename={result['filename']}",
            "X-Export-Id": result["export_id"],
        },
    )


@router.get("/history")
async def export_history(
    limit: Optional[int] = 50,
    current_user: dict = Depends(require_permission(Permission.DATA_EXPORT)),
):
    db = database.get_db()
    exports = await db.data_exports.find({}, {"_id": 0}).sort("created_at", -1).to_list(min(limit or 50, 200))
    return {"exports": exports}
