"""Delivery quote routes."""
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional
import logging

from services.delivery_service import DeliveryQuoteError, quote_delivery

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/delivery", tags=["delivery"])


class QuoteRequest(BaseModel):
    address: Optional[str] = None


async def _quote(address: Optional[str]):
    if not address or not address.strip():
        raise HTTPException(status_code=400, detail="Address is required")
    try:
        return await quote_delivery(address.strip())
    except DeliveryQuoteError as e:
        logger.warning(f"Delivery quote failed for '{address}': {e}")
        raise HTTPException(status_code=502, detail=f"Delivery quote unavailable: {e}")


@router.get("/quote")
async def get_quote(address: Optional[str] = None):
    return await _quote(address)


@router.post("/quote")
async def post_quote(request: QuoteRequest):
    return await _quote(request.address)
