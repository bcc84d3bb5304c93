"""
Build pricing.

Two calculations live here:
- reprice(): the configurator estimate stored on every build (flat sales tax
  from SALES_TAX_RATE, fixed delivery/setup defaults until a quote exists).
- calculate_total_purchase_price(): the contract price, driven by org settings
  (title fee, setup fee, tax percent).
Payment milestones are always derived from the contract price.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional
import os

from models import MilestoneType, PaymentPlanType
from services.errors import RuleViolation

DEFAULT_DELIVERY_ESTIMATE = 2000
DEFAULT_SETUP_ESTIMATE = 500
DEFAULT_SALES_TAX_RATE = 0.0825


def sales_tax_rate() -> float:
    try:
        return float(os.getenv("SALES_TAX_RATE", DEFAULT_SALES_TAX_RATE))
    except ValueError:
        return DEFAULT_SALES_TAX_RATE


def round_to_cents(amount: float) -> float:
    return float(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def to_cents(amount: float) -> int:
    return int(Decimal(str(amount)).scaleb(2).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _num(value: Any, default: float = 0) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def options_total(options: Optional[Iterable[Dict[str, Any]]]) -> float:
    total = 0.0
    for opt in options or []:
        qty = opt.get("quantity")
        total += _num(opt.get("price")) * (_num(qty, 1) if qty is not None else 1)
    return total


def reprice(selections: Dict[str, Any], delivery: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Configurator estimate for a build."""
    selections = selections or {}
    base = _num(selections.get("base_price"))
    options = options_total(selections.get("options"))

    delivery_fee = DEFAULT_DELIVERY_ESTIMATE
    if delivery and delivery.get("fee") is not None:
        delivery_fee = _num(delivery["fee"], DEFAULT_DELIVERY_ESTIMATE)

    setup = DEFAULT_SETUP_ESTIMATE
    subtotal = base + options + delivery_fee + setup
    tax = round(subtotal * sales_tax_rate())

    pricing = {
        "base": base,
        "options": options,
        "delivery": delivery_fee,
        "setup": setup,
        "subtotal": subtotal,
        "tax": tax,
        "total": subtotal + tax,
    }
    if delivery:
        for src, dst in (("miles", "delivery_miles"), ("rate", "delivery_rate"), ("minimum", "delivery_minimum")):
            if delivery.get(src) is not None:
                pricing[dst] = delivery[src]
    return pricing


def calculate_total_purchase_price(build: Dict[str, Any], settings: Dict[str, Any]) -> Dict[str, Any]:
    """Contract price: base + options + delivery + title + setup, taxed at the org rate."""
    pricing_cfg = settings.get("pricing", {})
    current = build.get("pricing") or {}
    selections = build.get("selections") or {}

    base = _num(selections.get("base_price"), _num(current.get("base")))
    options = options_total(selections.get("options"))
    delivery = _num(current.get("delivery"))
    title = _num(current.get("title"), _num(pricing_cfg.get("title_fee_default"), 500))
    setup = _num(pricing_cfg.get("setup_fee_default"), 3000)

    subtotal = base + options + delivery + title + setup
    tax_rate = _num(pricing_cfg.get("tax_rate_percent"), 6.25) / 100
    tax = round_to_cents(subtotal * tax_rate)

    return {
        "base": base,
        "options": options,
        "delivery": delivery,
        "title": title,
        "setup": setup,
        "subtotal": round_to_cents(subtotal),
        "tax_rate_percent": round_to_cents(tax_rate * 100),
        "tax": tax,
        "total": round_to_cents(subtotal + tax),
    }


def compute_milestones(total: float, plan: Optional[Dict[str, Any]], default_percent: float = 25.0) -> List[Dict[str, Any]]:
    """Split a contract total into deposit/final or a single full milestone."""
    plan = plan or {}
    plan_type = plan.get("type") or PaymentPlanType.DEPOSIT.value
    total = round_to_cents(_num(total))

    if plan_type == PaymentPlanType.FULL.value:
        return [{"milestone": MilestoneType.FULL.value, "amount": total, "percent": 100.0}]

    percent = _num(plan.get("percent"), default_percent)
    if percent <= 0 or percent >= 100:
        raise RuleViolation("INVALID_PLAN", "Deposit percent must be between 0 and 100")
    deposit = round_to_cents(total * percent / 100)
    return [
        {"milestone": MilestoneType.DEPOSIT.value, "amount": deposit, "percent": percent},
        {"milestone": MilestoneType.FINAL.value, "amount": round_to_cents(total - deposit), "percent": round(100 - percent, 4)},
    ]
