"""Stripe Service - thin wrapper over the Stripe SDK for build payments.

Handles:
- Customer creation per build buyer
- PaymentIntents for card deposits/full payments
- SetupIntents and saved bank accounts for ACH debit
- Off-session ACH charges at contract confirmation

Every Stripe object carries build_id/user_id metadata so webhooks can find
the build again.
"""
import stripe
import os
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

CURRENCY = "usd"


class StripeNotConfiguredError(RuntimeError):
    """No Stripe secret key in the environment."""


def stripe_mode() -> str:
    key = (stripe.api_key or "").strip()
    if not key:
        return "unknown"
    return "test" if key.startswith("sk_test_") else "live"


class StripeService:
    """Stripe payment operations for builds."""

    def _require_key(self):
        if not (stripe.api_key or "").strip():
            raise StripeNotConfiguredError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set. Configure env and restart.")

    async def get_or_create_customer(self, build: Dict[str, Any]) -> str:
        self._require_key()
        existing = (build.get("payment") or {}).get("stripe_customer_id")
        if existing:
            return existing

        buyer = build.get("buyer_info") or {}
        name = " ".join(p for p in (buyer.get("first_name"), buyer.get("last_name")) if p) or None
        customer = stripe.Customer.create(
            email=buyer.get("email"),
            name=name,
            metadata={"build_id": build["build_id"], "user_id": build["user_id"]},
        )
        logger.info(f"Stripe customer created for build {build['build_id']}")
        return customer.id

    async def create_payment_intent(
        self,
        customer_id: str,
        amount_cents: int,
        metadata: Dict[str, str],
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._require_key()
        intent = stripe.PaymentIntent.create(
            amount=amount_cents,
            currency=CURRENCY,
            customer=customer_id,
            automatic_payment_methods={"enabled": True},
            setup_future_usage="off_session",
            description=description,
            metadata=metadata,
        )
        return {"id": intent.id, "client_secret": intent.client_secret, "status": intent.status}

    async def create_ach_setup_intent(self, customer_id: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        self._require_key()
        setup_intent = stripe.SetupIntent.create(
            customer=customer_id,
            payment_method_types=["us_bank_account"],
            usage="off_session",
            payment_method_options={
                "us_bank_account": {
                    "financial_connections": {"permissions": ["payment_method", "balances"]},
                    "verification_method": "automatic",
                }
            },
            metadata=metadata,
        )
        return {"id": setup_intent.id, "client_secret": setup_intent.client_secret}

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> Dict[str, Any]:
        self._require_key()
        try:
            method = stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
        except stripe.InvalidRequestError as e:
            # Already attached to this customer
            if "already been attached" not in str(e):
                raise
            method = stripe.PaymentMethod.retrieve(payment_method_id)
        bank = getattr(method, "us_bank_account", None)
        return {
            "id": method.id,
            "type": method.type,
            "bank_name": getattr(bank, "bank_name", None) if bank else None,
            "last4": getattr(bank, "last4", None) if bank else None,
        }

    async def charge_off_session(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        """Confirm an ACH debit against a saved, mandate-backed bank account."""
        self._require_key()
        intent = stripe.PaymentIntent.create(
            amount=amount_cents,
            currency=CURRENCY,
            customer=customer_id,
            payment_method=payment_method_id,
            payment_method_types=["us_bank_account"],
            confirm=True,
            off_session=True,
            metadata=metadata,
        )
        return {"id": intent.id, "status": intent.status}

    async def create_milestone_invoice(
        self,
        customer_id: str,
        amount_cents: int,
        description: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        """Finalized invoice payable by bank transfer (customer balance funding)."""
        self._require_key()
        invoice = stripe.Invoice.create(
            customer=customer_id,
            collection_method="send_invoice",
            days_until_due=30,
            payment_settings={
                "payment_method_types": ["customer_balance", "us_bank_account"],
                "payment_method_options": {
                    "customer_balance": {
                        "funding_type": "bank_transfer",
                        "bank_transfer": {"type": "us_bank_transfer"},
                    }
                },
            },
            metadata=metadata,
        )
        stripe.InvoiceItem.create(
            customer=customer_id,
            invoice=invoice.id,
            amount=amount_cents,
            currency=CURRENCY,
            description=description,
        )
        invoice = stripe.Invoice.finalize_invoice(invoice.id)
        logger.info(f"Milestone invoice {invoice.id} finalized ({amount_cents} cents)")
        return {"id": invoice.id, "hosted_invoice_url": invoice.hosted_invoice_url, "status": invoice.status}

    async def confirm_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        self._require_key()
        intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        if intent.status == "requires_confirmation":
            intent = stripe.PaymentIntent.confirm(payment_intent_id)
        return {"id": intent.id, "status": intent.status}


stripe_service = StripeService()
