"""Payment Routes - milestone payments for builds (card, ACH debit, bank transfer).

Mutations that move money accept an Idempotency-Key header; a repeated key
returns {"idempotent": true} without re-running the operation.
"""
from fastapi import APIRouter, HTTPException, Depends, Header
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
import logging

import stripe

from middleware import require_auth
from services import payment_service
from services.errors import NotFoundError, ForbiddenError, RuleViolation
from services.idempotency import run_idempotent
from services.stripe_service import StripeNotConfiguredError
from utils.http_errors import to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payments", tags=["payments"])


# ============================================
# MODELS
# ============================================

class MarkReadyRequest(BaseModel):
    build_id: Optional[str] = None
    plan: Optional[Dict[str, Any]] = None
    method: Optional[str] = None


class BuildRequest(BaseModel):
    build_id: str


class SaveAchRequest(BaseModel):
    build_id: str
    payment_method_id: Optional[str] = None
    financial_connections_account_id: Optional[str] = None


class BankTransferIntentsRequest(BaseModel):
    build_id: Optional[str] = None
    plan: Optional[Dict[str, Any]] = None
    payer_info: Dict[str, Any] = Field(default_factory=dict)
    commitments: Dict[str, Any] = Field(default_factory=dict)


async def _call(operation, *args, **kwargs):
    """Run a payment operation, mapping service and Stripe errors onto HTTP errors."""
    try:
        return await operation(*args, **kwargs)
    except (NotFoundError, ForbiddenError, RuleViolation) as e:
        raise to_http_exception(e)
    except StripeNotConfiguredError as e:
        logger.warning(f"Payment attempted without Stripe configured: {e}")
        raise HTTPException(status_code=503, detail="Payments are not configured")
    except stripe.StripeError as e:
        logger.error(f"Stripe error in {operation.__name__}: {e}")
        raise HTTPException(status_code=502, detail=getattr(e, "user_message", None) or "Payment provider error")


# ============================================
# ENDPOINTS
# ============================================

@router.post("/mark-ready")
async def mark_ready(
    request: MarkReadyRequest,
    current_user: dict = Depends(require_auth),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    return await run_idempotent(
        idempotency_key,
        f"mark-ready:{request.build_id}",
        lambda: _call(payment_service.mark_ready, request.build_id, current_user["user_id"], request.plan, request.method),
    )


@router.post("/setup-card")
async def setup_card(request: BuildRequest, current_user: dict = Depends(require_auth)):
    return await _call(payment_service.setup_card, request.build_id, current_user["user_id"])


@router.post("/setup-ach")
async def setup_ach(request: BuildRequest, current_user: dict = Depends(require_auth)):
    return await _call(payment_service.setup_ach, request.build_id, current_user["user_id"])


@router.post("/save-ach-method")
async def save_ach_method(request: SaveAchRequest, current_user: dict = Depends(require_auth)):
    return await _call(
        payment_service.save_ach_method,
        request.build_id,
        current_user["user_id"],
        request.payment_method_id,
        request.financial_connections_account_id,
    )


@router.post("/bank-transfer-intents")
async def create_bank_transfer_intents(
    request: BankTransferIntentsRequest,
    current_user: dict = Depends(require_auth),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    return await run_idempotent(
        idempotency_key,
        f"bank-transfer-intents:{request.build_id}",
        lambda: _call(
            payment_service.create_bank_transfer_intents,
            request.build_id,
            current_user["user_id"],
            request.plan,
            request.payer_info,
            request.commitments,
        ),
    )


@router.get("/bank-transfer-intents")
async def list_bank_transfer_intents(build_id: str, current_user: dict = Depends(require_auth)):
    intents = await _call(payment_service.list_bank_transfer_intents, build_id, current_user["user_id"])
    return {"intents": intents}


@router.get("/bank-transfer-instructions")
async def bank_transfer_instructions(
    build_id: str,
    milestone: Optional[str] = None,
    current_user: dict = Depends(require_auth),
):
    """Beneficiary details and reference codes; with a milestone, the payable invoice for it."""
    return await _call(payment_service.bank_transfer_instructions, build_id, current_user["user_id"], milestone)


@router.post("/collect")
async def collect_at_confirmation(
    request: BuildRequest,
    current_user: dict = Depends(require_auth),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    return await run_idempotent(
        idempotency_key,
        f"collect:{request.build_id}",
        lambda: _call(payment_service.collect_at_confirmation, request.build_id, current_user["user_id"]),
    )
