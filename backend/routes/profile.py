"""User Profile Routes
Buyers keep their contact details and saved addresses here so checkout can
pre-fill the buyer info step.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
import logging

from middleware import require_auth
from services import profile_service
from services.errors import NotFoundError
from utils.http_errors import to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/profile", tags=["profile"])


class UpdateProfileRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class AddressRequest(BaseModel):
    address: str
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    label: Optional[str] = None
    is_primary: Optional[bool] = None


@router.get("/me")
async def get_my_profile(current_user: dict = Depends(require_auth)):
    return await profile_service.get_profile(current_user["user_id"])


@router.put("/me")
async def update_my_profile(
    request: UpdateProfileRequest,
    current_user: dict = Depends(require_auth),
):
    profile = await profile_service.update_profile(current_user["user_id"], request.model_dump())
    logger.info(f"Profile updated for user {current_user['user_id']}")
    return profile


@router.post("/addresses")
async def add_address(
    request: AddressRequest,
    current_user: dict = Depends(require_auth),
):
    return await profile_service.add_address(current_user["user_id"], request.model_dump())


@router.post("/addresses/{address_id}/primary")
async def set_primary_address(address_id: str, current_user: dict = Depends(require_auth)):
    try:
        return await profile_service.set_primary_address(current_user["user_id"], address_id)
    except NotFoundError as e:
        raise to_http_exception(e)


@router.get("/autofill")
async def autofill(current_user: dict = Depends(require_auth)):
    """Buyer-info shaped data for the checkout form."""
    profile = await profile_service.get_profile(current_user["user_id"])
    return {"buyer_info": profile_service.autofill_buyer_info(profile, current_user.get("email"))}
