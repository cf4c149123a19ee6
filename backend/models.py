from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any, List, Literal
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MODERATOR = "moderator"
    PROJECT_OWNER = "project_owner"
    CONTRACTOR = "contractor"

ADMIN_ROLES = frozenset({UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.MODERATOR})

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    NONE = "none"

class PlanType(str, Enum):
    BASIC = "basic"
    PRO = "pro"

class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

class OfferStatus(str, Enum):
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

class ReportStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"

class ProjectStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"

# Fields owned by the entitlement layer on a profile document.
ENTITLEMENT_FIELDS = frozenset({
    "stripe_customer_id",
    "stripe_subscription_id",
    "subscription_status",
    "plan_type",
    "offer_count_this_month",
    "subscription_current_period_end",
    "last_stripe_event_at",
})

# ============================================================================
# REQUEST MODELS
# ============================================================================

class CamelModel(BaseModel):
    """Accepts camelCase from the web client, snake_case from Python callers."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

class CheckoutRequest(CamelModel):
    plan_type: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY

class OfferSubmitRequest(CamelModel):
    project_id: Optional[str] = None
    owner_id: Optional[str] = None
    price_chf: Optional[float] = Field(default=None, ge=0)
    content: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)
    project_title: Optional[str] = None

class OfferActionRequest(CamelModel):
    action: Literal["accept", "reject"]
    offer_id: Optional[str] = None
    chat_id: Optional[str] = None

# ============================================================================
# STORED DOCUMENTS
# ============================================================================

class SecurityEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    actor_id: Optional[str] = None
    target_user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    severity: Severity = Severity.INFO
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class Offer(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: str
    contractor_id: str
    owner_id: str
    price_chf: Optional[float] = None
    content: str
    attachments: List[str] = Field(default_factory=list)
    status: OfferStatus = OfferStatus.SUBMITTED.value
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class Chat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: str
    owner_id: str
    contractor_id: str
    project_title: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    chat_id: str
    sender_id: str
    message: str
    attachments: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class FeatureFlag(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    enabled: bool = False
    description: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
