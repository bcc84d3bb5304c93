"""
Order Workflow State Machine
Defines the order states, allowed transitions and pipeline columns for the
admin back-office. This is the single source of truth for order status changes.
"""
from enum import Enum
from typing import List, Dict, Set


class OrderStatus(str, Enum):
    DRAFT = "draft"                 # Created from a build at contract time
    QUOTE = "quote"                 # Priced, awaiting buyer commitment
    CONFIRMED = "confirmed"         # Contract signed, deposit arranged
    PRODUCTION = "production"       # At the factory
    DELAYED = "delayed"             # Production or logistics hold
    READY = "ready"                 # Factory complete, ready to ship
    DELIVERED = "delivered"         # Set on site
    RETURNED = "returned"           # Sent back for rework
    COMPLETED = "completed"         # Closed out
    CANCELLED = "cancelled"


# Valid state transitions - whitelist approach
ALLOWED_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.DRAFT: [OrderStatus.QUOTE, OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
    OrderStatus.QUOTE: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [OrderStatus.PRODUCTION, OrderStatus.CANCELLED],
    OrderStatus.PRODUCTION: [OrderStatus.READY, OrderStatus.DELAYED, OrderStatus.CANCELLED],
    OrderStatus.READY: [OrderStatus.DELIVERED, OrderStatus.CANCELLED],
    OrderStatus.DELIVERED: [OrderStatus.COMPLETED, OrderStatus.RETURNED],
    OrderStatus.DELAYED: [OrderStatus.PRODUCTION, OrderStatus.CANCELLED],
    OrderStatus.RETURNED: [OrderStatus.PRODUCTION, OrderStatus.CANCELLED],
    # Terminal states
    OrderStatus.COMPLETED: [],
    OrderStatus.CANCELLED: [],
}


TERMINAL_STATES: Set[OrderStatus] = {
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
}


# Statuses excluded from revenue figures
NON_REVENUE_STATES: Set[OrderStatus] = {
    OrderStatus.CANCELLED,
    OrderStatus.DRAFT,
}


def is_valid_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    """Check if a state transition is valid"""
    if from_status not in ALLOWED_TRANSITIONS:
        return False
    return to_status in ALLOWED_TRANSITIONS[from_status]


def is_terminal_state(status: OrderStatus) -> bool:
    """Check if a status is terminal (no further transitions)"""
    return status in TERMINAL_STATES


def get_allowed_transitions(status: OrderStatus) -> List[OrderStatus]:
    """Get list of valid next states from current status"""
    return ALLOWED_TRANSITIONS.get(status, [])


# Pipeline columns for admin dashboard (in display order)
PIPELINE_COLUMNS: List[Dict] = [
    {"status": OrderStatus.DRAFT, "label": "Draft", "color": "gray"},
    {"status": OrderStatus.QUOTE, "label": "Quote", "color": "blue"},
    {"status": OrderStatus.CONFIRMED, "label": "Confirmed", "color": "purple"},
    {"status": OrderStatus.PRODUCTION, "label": "Production", "color": "yellow"},
    {"status": OrderStatus.DELAYED, "label": "Delayed", "color": "orange"},
    {"status": OrderStatus.READY, "label": "Ready", "color": "teal"},
    {"status": OrderStatus.DELIVERED, "label": "Delivered", "color": "cyan"},
    {"status": OrderStatus.RETURNED, "label": "Returned", "color": "pink"},
    {"status": OrderStatus.COMPLETED, "label": "Completed", "color": "green"},
    {"status": OrderStatus.CANCELLED, "label": "Cancelled", "color": "red"},
]
