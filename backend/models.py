from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class BuildStatus(str, Enum):
    DRAFT = "draft"
    CONFIGURED = "configured"
    CONTRACT_PENDING = "contract_pending"
    CONTRACT_SIGNED = "contract_signed"
    PAYMENT_PENDING = "payment_pending"
    IN_PRODUCTION = "in_production"
    FACTORY_COMPLETE = "factory_complete"
    READY_FOR_DELIVERY = "ready_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

class ContractStatus(str, Enum):
    NONE = "none"
    SENT = "sent"
    SIGNED = "signed"

class PaymentMethod(str, Enum):
    CARD = "card"
    ACH_DEBIT = "ach_debit"
    BANK_TRANSFER = "bank_transfer"

class PaymentPlanType(str, Enum):
    DEPOSIT = "deposit"
    FULL = "full"

class MilestoneType(str, Enum):
    DEPOSIT = "deposit"
    FINAL = "final"
    FULL = "full"

class IntentStatus(str, Enum):
    PENDING_CONTRACT = "pending_contract"
    AWAITING_ACTIVATION = "awaiting_activation"
    AWAITING_FUNDS = "awaiting_funds"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"

class TransferType(str, Enum):
    ACH = "ach"
    WIRE = "wire"

class OrderPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

class AdminRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    VIEWER = "viewer"

CUSTOMER_ROLE = "customer"

class Permission(str, Enum):
    USERS_VIEW = "users:view"
    USERS_EDIT = "users:edit"
    USERS_DELETE = "users:delete"
    BUILDS_VIEW = "builds:view"
    BUILDS_EDIT = "builds:edit"
    ORDERS_VIEW = "orders:view"
    ORDERS_EDIT = "orders:edit"
    MODELS_EDIT = "models:edit"
    ANALYTICS_VIEW = "analytics:view"
    FINANCIAL_VIEW = "financial:view"
    SETTINGS_EDIT = "settings:edit"
    DATA_EXPORT = "data:export"
    SYSTEM_ADMIN = "system:admin"

class AuditAction(str, Enum):
    # Builds
    BUILD_STATUS_CHANGED = "BUILD_STATUS_CHANGED"
    BUILD_DELETED = "BUILD_DELETED"

    # Orders
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_UPDATED = "ORDER_UPDATED"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"

    # Payments
    PAYMENT_READY = "PAYMENT_READY"
    PAYMENT_COLLECTED = "PAYMENT_COLLECTED"
    BANK_TRANSFER_INTENTS_CREATED = "BANK_TRANSFER_INTENTS_CREATED"
    MILESTONE_ACTIVATED = "MILESTONE_ACTIVATED"
    MILESTONE_PAID = "MILESTONE_PAID"
    STRIPE_EVENT_PROCESSED = "STRIPE_EVENT_PROCESSED"

    # Catalog & settings
    MODEL_UPDATED = "MODEL_UPDATED"
    SETTINGS_UPDATED = "SETTINGS_UPDATED"

    # Admin
    DATA_EXPORTED = "DATA_EXPORTED"
    ADMIN_JOB_RUN = "ADMIN_JOB_RUN"

# ============================================================================
# DATA MODELS
# ============================================================================

class PaymentPlan(BaseModel):
    type: PaymentPlanType = PaymentPlanType.DEPOSIT
    percent: Optional[float] = None

class BillingAddress(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None

class PayerInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_legal_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    preferred_transfer_type: Optional[TransferType] = None
    billing_address: BillingAddress = BillingAddress()

class TransferCommitments(BaseModel):
    customer_initiated: bool = False
    funds_clearing: bool = False
    storage_fees_acknowledged: bool = False

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    build_id: Optional[str] = None
    order_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
