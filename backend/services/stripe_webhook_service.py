"""Stripe Webhook Service - reconciles entitlements with Stripe's view of a subscription.

Key Principles:
1. Signature verification fails closed: no secret or a bad signature changes nothing
2. Absolute writes: every handler sets Stripe's current values, so redelivery is harmless
3. Ordering guard: an event older than the last applied one is skipped
4. Plan derivation: plan comes from the subscription item's price_id only
5. Failures surface as 500 so Stripe redelivers

Events Handled:
- checkout.session.completed (mode=subscription)
- customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_failed
"""
import stripe
import os
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from models import SubscriptionStatus, Severity
from services.entitlement_store import entitlement_store
from services.plan_registry import plan_registry, map_stripe_status
from utils.audit import log_security_event
from utils.errors import NotFound, ServiceError, SignatureInvalid, ValidationError

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
_stripe_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
stripe.api_key = _stripe_key


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _plain(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain dict; dicts pass through."""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return None


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    """Item-level period end (current API versions), falling back to the subscription's."""
    ts = _first_item(subscription).get("current_period_end") or subscription.get("current_period_end")
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def _price_id(subscription: Dict[str, Any]) -> Optional[str]:
    return _object_id(_first_item(subscription).get("price"))


class StripeWebhookService:
    """Verifies Stripe deliveries and maps them onto entitlement transitions."""

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify, parse and apply one delivery. Returns the body Stripe receives on success."""
        webhook_secret = _get_webhook_secret()
        if not webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set - rejecting webhook")
            raise ServiceError(code="Webhook secret not configured", status_code=500)
        if not signature:
            raise SignatureInvalid(code="Missing stripe-signature header")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            logger.error("Webhook payload is not valid UTF-8: %s", e)
            raise SignatureInvalid() from e

        try:
            stripe.WebhookSignature.verify_header(
                body, signature, webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            raise SignatureInvalid() from e

        try:
            event = json.loads(body)
        except ValueError as e:
            raise ValidationError("Invalid payload") from e

        event_id = event.get("id")
        event_type = event.get("type")
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s created=%s livemode=%s",
            event_id, event_type, event.get("created"), event.get("livemode"),
        )

        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.exception(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, e,
            )
            raise ServiceError(code="Webhook handler failed", status_code=500) from e

        logger.info("WEBHOOK_PROCESSED_OK event_id=%s event_type=%s result=%s", event_id, event_type, result)
        return {"received": True}

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = (event.get("data") or {}).get("object") or {}

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_failed": self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _handle_checkout_completed(self, session: Dict, event: Dict) -> Dict:
        """New subscription paid: active, plan from the price, fresh quota."""
        if session.get("mode") != "subscription":
            logger.info("Ignoring checkout mode: %s", session.get("mode"))
            return {"handled": False, "mode": session.get("mode")}

        customer_id = _object_id(session.get("customer"))
        subscription_id = _object_id(session.get("subscription"))
        if not customer_id or not subscription_id:
            logger.warning("Checkout session %s missing customer or subscription", session.get("id"))
            return {"handled": False, "reason": "missing_ids"}

        subscription = _plain(stripe.Subscription.retrieve(subscription_id))
        plan = await plan_registry.resolve_plan_for_price(_price_id(subscription))

        changes = {
            "subscription_status": SubscriptionStatus.ACTIVE.value,
            "plan_type": plan.type.value if plan else None,
            "subscription_current_period_end": _period_end(subscription),
            "offer_count_this_month": 0,
            "stripe_subscription_id": subscription_id,
        }
        user_id = (session.get("metadata") or {}).get("userId")
        return await self._apply(customer_id, changes, event, fallback_user_id=user_id)

    async def _handle_subscription_updated(self, subscription: Dict, event: Dict) -> Dict:
        """Renewals, plan switches and dunning: mirror Stripe's status."""
        customer_id = _object_id(subscription.get("customer"))
        if not customer_id:
            return {"handled": False, "reason": "missing_customer"}

        status = map_stripe_status(subscription.get("status"))
        changes: Dict[str, Any] = {
            "subscription_status": status.value,
            "plan_type": None,
            "subscription_current_period_end": _period_end(subscription),
            "stripe_subscription_id": subscription.get("id"),
        }
        if status == SubscriptionStatus.ACTIVE:
            plan = await plan_registry.resolve_plan_for_price(_price_id(subscription))
            changes["plan_type"] = plan.type.value if plan else None
            changes["offer_count_this_month"] = 0
        return await self._apply(customer_id, changes, event)

    async def _handle_subscription_deleted(self, subscription: Dict, event: Dict) -> Dict:
        customer_id = _object_id(subscription.get("customer"))
        if not customer_id:
            return {"handled": False, "reason": "missing_customer"}
        changes = {
            "subscription_status": SubscriptionStatus.CANCELED.value,
            "plan_type": None,
            "subscription_current_period_end": None,
            "stripe_subscription_id": None,
        }
        return await self._apply(customer_id, changes, event)

    async def _handle_payment_failed(self, invoice: Dict, event: Dict) -> Dict:
        """Dunning: period end stays; the plan is cleared until Stripe reports active again."""
        customer_id = _object_id(invoice.get("customer"))
        if not customer_id:
            return {"handled": False, "reason": "missing_customer"}
        changes = {"subscription_status": SubscriptionStatus.PAST_DUE.value, "plan_type": None}
        return await self._apply(customer_id, changes, event)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _apply(
        self,
        customer_id: str,
        changes: Dict[str, Any],
        event: Dict,
        fallback_user_id: Optional[str] = None,
    ) -> Dict:
        """Write ``changes`` for the customer, guarded by the event's ``created``."""
        event_type = event.get("type")
        created = event.get("created")
        try:
            profile = await entitlement_store.get_by_customer_id(customer_id)
        except NotFound:
            if not fallback_user_id:
                # Acknowledged without retry
                logger.warning("WEBHOOK_UNKNOWN_CUSTOMER customer_id=%s event_type=%s", customer_id, event_type)
                return {"handled": False, "reason": "unknown_customer"}
            try:
                await entitlement_store.update_by_user_id(fallback_user_id, {"stripe_customer_id": customer_id})
            except NotFound:
                logger.warning("WEBHOOK_UNKNOWN_USER user_id=%s customer_id=%s", fallback_user_id, customer_id)
                return {"handled": False, "reason": "unknown_user"}
            logger.info("Linked Stripe customer %s to user %s from checkout metadata", customer_id, fallback_user_id)
            profile = {"id": fallback_user_id}

        applied = await entitlement_store.update_by_customer_id(customer_id, changes, event_created=created)
        if not applied:
            return {"handled": False, "reason": "stale_event", "user_id": profile.get("id")}

        await log_security_event(
            event_type=f"stripe_{event_type.replace('.', '_')}",
            severity=Severity.INFO,
            target_user_id=profile.get("id"),
            details={
                "eventId": event.get("id"),
                "customerId": customer_id,
                "changes": changes,
            },
        )
        logger.info(
            "ENTITLEMENT_UPDATED user_id=%s customer_id=%s status=%s plan=%s",
            profile.get("id"), customer_id,
            changes.get("subscription_status"), changes.get("plan_type"),
        )
        return {"handled": True, "user_id": profile.get("id")}


stripe_webhook_service = StripeWebhookService()
