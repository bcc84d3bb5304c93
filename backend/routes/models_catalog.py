"""Model catalog routes. Reads are public; edits require models:edit."""
from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import Optional, Dict, Any, List
import logging

from middleware import require_permission
from models import Permission
from services import model_catalog
from services.errors import NotFoundError, RuleViolation
from utils.http_errors import to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/models", tags=["models"])


class ImageItem(BaseModel):
    url: str
    public_id: Optional[str] = None
    alt: Optional[str] = None


class AddImagesRequest(BaseModel):
    images: List[ImageItem]


class ArrangeImagesRequest(BaseModel):
    set_primary: Optional[str] = None
    order: Optional[List[str]] = None


@router.get("")
async def list_models():
    models = await model_catalog.list_models()
    return {"models": models, "total": len(models)}


@router.get("/{identifier}")
async def get_model(identifier: str):
    model = await model_catalog.find_model(identifier)
    if not model:
        raise HTTPException(status_code=404, detail="Model not found")
    return {"model": model}


@router.patch("/{identifier}")
async def update_model(
    identifier: str,
    patch: Dict[str, Any],
    current_user: dict = Depends(require_permission(Permission.MODELS_EDIT)),
):
    try:
        model = await model_catalog.update_model(identifier, patch, current_user)
    except (NotFoundError, RuleViolation) as e:
        raise to_http_exception(e)
    logger.info(f"Model {identifier} updated by {current_user['email']}")
    return {"model": model}


@router.post("/{identifier}/images")
async def add_images(
    identifier: str,
    request: AddImagesRequest,
    current_user: dict = Depends(require_permission(Permission.MODELS_EDIT)),
):
    try:
        model = await model_catalog.add_images(
            identifier, [img.model_dump() for img in request.images], current_user
        )
    except (NotFoundError, RuleViolation) as e:
        raise to_http_exception(e)
    return {"model": model}


@router.patch("/{identifier}/images")
async def arrange_images(
    identifier: str,
    request: ArrangeImagesRequest,
    current_user: dict = Depends(require_permission(Permission.MODELS_EDIT)),
):
    try:
        model = await model_catalog.update_images(
            identifier, current_user, set_primary=request.set_primary, order=request.order
        )
    except NotFoundError as e:
        raise to_http_exception(e)
    return {"model": model}


@router.delete("/{identifier}/images/{public_id:path}")
async def remove_image(
    identifier: str,
    public_id: str,
    current_user: dict = Depends(require_permission(Permission.MODELS_EDIT)),
):
    try:
        model = await model_catalog.remove_image(identifier, public_id, current_user)
    except NotFoundError as e:
        raise to_http_exception(e)
    return {"model": model}
