"""Billing Routes - Stripe checkout, billing portal and public pricing.

Endpoints:
- POST /api/stripe/create-checkout - Checkout session for a contractor plan ({planType, billingCycle?})
- POST /api/stripe/create-portal - Stripe billing portal session
- GET /api/stripe/pricing - Plans, CHF prices and whether each price is configured
- GET /api/stripe/subscription - Caller's current entitlement
"""
from fastapi import APIRouter, Depends
from models import CheckoutRequest
from services.stripe_service import stripe_service
from services.plan_registry import plan_registry
from middleware import require_auth
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/stripe", tags=["billing"])


@router.post("/create-checkout")
async def create_checkout(body: CheckoutRequest, user: dict = Depends(require_auth)):
    """Create a Stripe checkout session. Entitlements change only when the webhook confirms payment."""
    return await stripe_service.create_checkout_session(user, body.plan_type, body.billing_cycle)


@router.post("/create-portal")
async def create_portal(user: dict = Depends(require_auth)):
    return await stripe_service.create_portal_session(user)


@router.get("/pricing")
async def get_pricing():
    return await plan_registry.get_pricing()


@router.get("/subscription")
async def get_subscription(user: dict = Depends(require_auth)):
    plan = plan_registry.get_plan(user.get("plan_type"))
    period_end = user.get("subscription_current_period_end")
    return {
        "subscriptionStatus": user.get("subscription_status") or "none",
        "planType": plan.type.value if plan else None,
        "offerCountThisMonth": user.get("offer_count_this_month") or 0,
        "monthlyOfferLimit": plan.monthly_offer_limit if plan else None,
        "subscriptionCurrentPeriodEnd": period_end.isoformat() if hasattr(period_end, "isoformat") else period_end,
        "hasStripeCustomer": bool(user.get("stripe_customer_id")),
    }
