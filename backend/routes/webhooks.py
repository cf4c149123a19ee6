"""Webhook Routes - Stripe webhook delivery.

POST /api/stripe/webhook - raw body + Stripe-Signature header
    200 {"received": true}  processed, ignored, or stale
    400                     missing/invalid signature or unparseable body
    500                     secret not configured or processing failed (Stripe retries)
"""
from fastapi import APIRouter, Request, Header
from services.stripe_webhook_service import stripe_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks. The body must be read raw for signature verification."""
    payload = await request.body()
    return await stripe_webhook_service.process_webhook(payload=payload, signature=stripe_signature)
