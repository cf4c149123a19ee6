"""Quota Enforcement - may this contractor submit another offer this billing cycle?"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from models import UserRole, SubscriptionStatus
from services.plan_registry import plan_registry
from utils.errors import AuthError

logger = logging.getLogger(__name__)

ROLE_MISMATCH = "role_mismatch"
SUBSCRIPTION_REQUIRED = "subscription_required"
OFFER_LIMIT_REACHED = "offer_limit_reached"


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    limit: Optional[int] = None
    used: Optional[int] = None

    def to_error(self) -> AuthError:
        extra = {}
        if self.reason == OFFER_LIMIT_REACHED:
            extra = {"limit": self.limit, "used": self.used}
        return AuthError(self.message, code=self.reason, status_code=403, extra=extra)


def offer_limit_reached(limit: int, used: int) -> QuotaDecision:
    return QuotaDecision(
        allowed=False,
        reason=OFFER_LIMIT_REACHED,
        message=f"Offer limit of {limit} reached for this billing cycle.",
        limit=limit,
        used=used,
    )


def can_submit_offer(user: Dict[str, Any]) -> QuotaDecision:
    """Checks run in order: role, subscription status, plan, monthly limit."""
    if user.get("role") != UserRole.CONTRACTOR.value:
        return QuotaDecision(False, ROLE_MISMATCH, "Only contractors can submit offers.")

    if user.get("subscription_status") != SubscriptionStatus.ACTIVE.value:
        return QuotaDecision(False, SUBSCRIPTION_REQUIRED, "An active subscription is required to submit offers.")

    plan = plan_registry.get_plan(user.get("plan_type"))
    if not plan:
        return QuotaDecision(False, SUBSCRIPTION_REQUIRED, "An active subscription is required to submit offers.")

    used = user.get("offer_count_this_month") or 0
    if plan.monthly_offer_limit is not None and used >= plan.monthly_offer_limit:
        logger.info("QUOTA_DENIED user_id=%s plan=%s used=%s", user.get("id"), plan.type.value, used)
        return offer_limit_reached(plan.monthly_offer_limit, used)

    return QuotaDecision(True, limit=plan.monthly_offer_limit, used=used)
