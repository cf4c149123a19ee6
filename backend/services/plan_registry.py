"""Plan Registry - single source of truth for subscription plans.

Authoritative for:
- Plan codes and their monthly offer quota
- CHF list prices
- Stripe price ID mappings (monthly + yearly), read from the environment

Rules:
1. Plan type is derived from the subscription item's price_id ONLY
2. A runtime settings override wins over the environment only when non-empty
3. planType is non-null only while the subscription status is active

Plan Structure:
- basic: 10 offers per billing cycle, CHF 79/mo
- pro: unlimited offers, CHF 149/mo
"""
from dataclasses import dataclass
from typing import Dict, Optional, Any
import os
import logging

from models import PlanType, BillingCycle, SubscriptionStatus
from services.settings_service import settings_service

logger = logging.getLogger(__name__)


# ============================================================================
# PLAN DEFINITIONS
# ============================================================================
@dataclass(frozen=True)
class Plan:
    type: PlanType
    name: str
    monthly_offer_limit: Optional[int]
    price_chf: int
    monthly_price_env: str
    yearly_price_env: str

    @property
    def monthly_price_id(self) -> str:
        return (os.getenv(self.monthly_price_env) or "").strip()

    @property
    def yearly_price_id(self) -> str:
        return (os.getenv(self.yearly_price_env) or "").strip()

    def price_id(self, cycle: BillingCycle) -> str:
        return self.yearly_price_id if cycle == BillingCycle.YEARLY else self.monthly_price_id

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_offer_limit is None


PLAN_DEFINITIONS: Dict[PlanType, Plan] = {
    PlanType.BASIC: Plan(
        type=PlanType.BASIC,
        name="Basic",
        monthly_offer_limit=10,
        price_chf=79,
        monthly_price_env="STRIPE_PRICE_BASIC",
        yearly_price_env="STRIPE_PRICE_BASIC_YEARLY",
    ),
    PlanType.PRO: Plan(
        type=PlanType.PRO,
        name="Pro",
        monthly_offer_limit=None,
        price_chf=149,
        monthly_price_env="STRIPE_PRICE_PRO",
        yearly_price_env="STRIPE_PRICE_PRO_YEARLY",
    ),
}


# ============================================================================
# STRIPE STATUS -> INTERNAL STATUS
# ============================================================================
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.NONE,
    "incomplete_expired": SubscriptionStatus.NONE,
}


def map_stripe_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    """Unknown or missing statuses map to none."""
    return STRIPE_STATUS_MAP.get((stripe_status or "").lower(), SubscriptionStatus.NONE)


class PlanRegistryService:
    """Plan lookups in both directions: plan -> price id, price id -> plan."""

    def get_plan(self, plan_type: Any) -> Optional[Plan]:
        """Accepts a PlanType or its string value; unknown values return None."""
        try:
            return PLAN_DEFINITIONS.get(PlanType(plan_type))
        except ValueError:
            return None

    def get_all_plans(self) -> Dict[PlanType, Plan]:
        return PLAN_DEFINITIONS

    async def resolve_price_id(self, plan_type: PlanType, cycle: BillingCycle = BillingCycle.MONTHLY) -> str:
        """Price id for checkout. Empty string when neither settings nor env provide one."""
        plan = self.get_plan(plan_type)
        if not plan:
            return ""
        overrides = await settings_service.get_price_overrides()
        runtime_value = overrides.get(plan.type.value, {}).get(cycle.value)
        if runtime_value:
            return runtime_value
        return plan.price_id(cycle)

    def resolve_plan_by_price_id(
        self,
        price_id: Optional[str],
        overrides: Optional[Dict[str, Dict[str, str]]] = None,
    ) -> Optional[Plan]:
        """Registry (environment) lookup first, then the given runtime overrides."""
        if not price_id:
            return None
        for plan in PLAN_DEFINITIONS.values():
            if price_id in (plan.monthly_price_id, plan.yearly_price_id):
                return plan
        for plan_value, cycles in (overrides or {}).items():
            if price_id in cycles.values():
                plan = self.get_plan(plan_value)
                if plan:
                    return plan
        return None

    async def resolve_plan_for_price(self, price_id: Optional[str]) -> Optional[Plan]:
        """Like resolve_plan_by_price_id, loading runtime overrides only when needed."""
        plan = self.resolve_plan_by_price_id(price_id)
        if plan or not price_id:
            return plan
        overrides = await settings_service.get_price_overrides()
        plan = self.resolve_plan_by_price_id(price_id, overrides)
        if not plan:
            logger.warning("No plan mapped for Stripe price_id=%s", price_id)
        return plan

    async def get_pricing(self) -> Dict[str, Any]:
        """Public pricing table; exposes whether a price is configured, never the id itself."""
        plans = []
        for plan in PLAN_DEFINITIONS.values():
            configured = {}
            for cycle in BillingCycle:
                configured[cycle.value] = bool(await self.resolve_price_id(plan.type, cycle))
            plans.append({
                "planType": plan.type.value,
                "name": plan.name,
                "priceChf": plan.price_chf,
                "monthlyOfferLimit": plan.monthly_offer_limit,
                "configured": configured,
            })
        discount = await settings_service.get_discount_config()
        return {
            "currency": "CHF",
            "plans": plans,
            "discount": {"enabled": discount["enabled"], "percentOff": discount["percentOff"]},
        }


plan_registry = PlanRegistryService()
