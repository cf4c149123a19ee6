"""Offer Routes - contractor offer submission, quota-gated, and the owner's decision.

POST /api/offers/submit
    {projectId, ownerId, priceChf, content, attachments?}
    -> {success, offerId, chatId, offerCountThisMonth, limit}
    403 {error: role_mismatch | subscription_required | offer_limit_reached, message, limit?, used?}

POST /api/offers/action
    {action: accept | reject, offerId, chatId?} -> {success, status}
    403 when the caller does not own the offer, 400 unless the offer is still submitted
"""
from fastapi import APIRouter, Depends
from models import OfferActionRequest, OfferSubmitRequest
from middleware import require_auth
from services.offer_service import offer_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/offers", tags=["offers"])


@router.post("/submit")
async def submit_offer(body: OfferSubmitRequest, user: dict = Depends(require_auth)):
    return await offer_service.submit_offer(user, body)


@router.post("/action")
async def offer_action(body: OfferActionRequest, user: dict = Depends(require_auth)):
    return await offer_service.act_on_offer(user, body)
