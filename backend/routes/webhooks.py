"""Webhook Routes - Stripe payment events.

POST /api/webhooks/stripe - Stripe webhook endpoint
POST /api/webhook/stripe  - alias (dashboard may be configured with this URL)

Signature or payload failures return 400 so misconfigured senders notice.
Handler failures are logged and acknowledged with 200; the event is stored
as FAILED and a redelivery of the same event id is processed again.
"""
from fastapi import APIRouter, HTTPException, Request, Header, status
from services.stripe_webhook_service import stripe_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])

REJECTED_MESSAGES = {"Invalid signature", "Invalid payload"}


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None):
    payload = await request.body()

    success, message, details = await stripe_webhook_service.process_webhook(
        payload=payload,
        signature=stripe_signature or ""
    )

    if success:
        return {"status": "received", "message": message, "details": details}

    if message in REJECTED_MESSAGES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)

    logger.error(f"Webhook processing failed: {message} {details}")
    return {"status": "error", "message": message}


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/webhook/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    return await _handle_stripe_webhook(request, stripe_signature)
