"""Stripe Service - checkout, billing portal and the Stripe calls admin actions need.

This service handles:
- Creating checkout sessions for new contractor subscriptions
- Lazily creating the Stripe customer for a profile
- Billing portal access
- Subscription listing (admin force-sync) and coupon creation (default discount)

Key Principles:
- Price ids come from plan_registry (runtime settings override, then env)
- Session metadata carries userId and planType for webhook tracing
- Checkout only seeds Stripe; entitlements change when the webhook arrives
"""
import stripe
import os
import logging
from typing import Optional, Dict, Any, List

from models import UserRole, BillingCycle
from services.entitlement_store import entitlement_store
from services.plan_registry import plan_registry
from services.settings_service import settings_service
from utils.errors import AuthError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

# Initialize Stripe (no placeholder default; missing key fails at checkout with clear error)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

PAYMENT_METHOD_TYPES = ["card", "paypal"]


def get_app_url() -> str:
    return (os.getenv("APP_URL") or "http://localhost:8080").rstrip("/")


def _upstream(action: str, e: "stripe.StripeError") -> UpstreamError:
    """Invalid requests are the caller's problem (400); anything else is ours (500)."""
    status_code = 400 if isinstance(e, stripe.InvalidRequestError) else 500
    return UpstreamError(
        getattr(e, "user_message", None) or str(e),
        code=f"Failed to {action}",
        status_code=status_code,
    )


class StripeService:
    """Stripe billing operations service."""

    async def create_checkout_session(
        self,
        user: Dict[str, Any],
        plan_type: str,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
    ) -> Dict[str, Any]:
        """
        Create a Stripe checkout session for a contractor subscription.

        Args:
            user: Caller's profile document
            plan_type: "basic" or "pro"
            billing_cycle: monthly (default) or yearly

        Returns:
            Dict with url and sessionId
        """
        if user.get("role") != UserRole.CONTRACTOR.value:
            raise AuthError.forbidden("Only contractors can subscribe")

        plan = plan_registry.get_plan(plan_type)
        if not plan:
            raise ValidationError("Invalid plan type. Use 'basic' or 'pro'.", code="invalid_plan_type")

        price_id = await plan_registry.resolve_price_id(plan.type, billing_cycle)
        if not price_id:
            logger.error("No Stripe price configured for plan=%s cycle=%s", plan.type.value, billing_cycle.value)
            raise ValidationError(
                f"No price configured for {plan.type.value} ({billing_cycle.value})",
                code="plan_not_configured",
            )

        customer_id = await self.ensure_customer(user)
        app_url = get_app_url()
        session_params = {
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": f"{app_url}/de/dashboard/subscription?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{app_url}/de/dashboard/subscription?canceled=true",
            "metadata": {"userId": user["id"], "planType": plan.type.value},
            "subscription_data": {"metadata": {"userId": user["id"], "planType": plan.type.value}},
        }

        discount = await settings_service.get_discount_config()
        if discount["enabled"]:
            session_params["discounts"] = [{"coupon": discount["couponId"]}]
        else:
            session_params["allow_promotion_codes"] = True

        try:
            try:
                session = stripe.checkout.Session.create(
                    payment_method_types=PAYMENT_METHOD_TYPES, **session_params
                )
            except stripe.InvalidRequestError as e:
                # Account without PayPal enabled: let Stripe pick the methods
                if "payment_method_types" not in str(e):
                    raise
                logger.warning("PayPal not available for checkout, retrying with default methods: %s", e)
                session = stripe.checkout.Session.create(**session_params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout error for user {user['id']}: {e}")
            raise _upstream("create checkout session", e) from e

        logger.info(
            "Checkout session created user_id=%s plan=%s cycle=%s session_id=%s",
            user["id"], plan.type.value, billing_cycle.value, session.id,
        )
        return {"url": session.url, "sessionId": session.id}

    async def ensure_customer(self, user: Dict[str, Any]) -> str:
        """Existing Stripe customer id, or a new customer persisted on the profile."""
        if user.get("stripe_customer_id"):
            return user["stripe_customer_id"]

        try:
            customer = stripe.Customer.create(
                email=user.get("email"),
                name=user.get("name"),
                metadata={"userId": user["id"], "role": user.get("role")},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe customer create error for user {user['id']}: {e}")
            raise _upstream("create customer", e) from e

        await entitlement_store.update_by_user_id(user["id"], {"stripe_customer_id": customer.id})
        user["stripe_customer_id"] = customer.id
        logger.info("Stripe customer %s created for user %s", customer.id, user["id"])
        return customer.id

    async def create_portal_session(self, user: Dict[str, Any]) -> Dict[str, Any]:
        customer_id = user.get("stripe_customer_id")
        if not customer_id:
            raise ValidationError(code="No subscription found")
        try:
            portal_session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=f"{get_app_url()}/de/dashboard/subscription",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe portal error for user {user['id']}: {e}")
            raise _upstream("create billing portal session", e) from e

        logger.info(f"Billing portal session created for user {user['id']}")
        return {"url": portal_session.url}

    def list_subscriptions(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Customer's subscriptions, newest first, as plain dicts."""
        try:
            result = stripe.Subscription.list(customer=customer_id, status="all", limit=limit)
        except stripe.StripeError as e:
            logger.error(f"Stripe subscription list error for customer {customer_id}: {e}")
            raise _upstream("list subscriptions", e) from e
        data = result.get("data", []) if isinstance(result, dict) else result.data
        return [s.to_dict() if hasattr(s, "to_dict") else s for s in data]

    def create_percent_coupon(self, percent_off: float) -> str:
        try:
            coupon = stripe.Coupon.create(
                percent_off=percent_off,
                duration="forever",
                name=f"Default subscription discount {percent_off:g}%",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe coupon create error: {e}")
            raise _upstream("create coupon", e) from e
        return coupon.id


stripe_service = StripeService()
