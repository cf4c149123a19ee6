"""Offer submission (quota check, counter increment, then the offer and chat writes)
and the project owner's accept/reject decision.

The counter is incremented before the offer is stored, so a failed offer
write leaves the counter one higher than the number of stored offers.
"""
from datetime import datetime, timezone
from typing import Any, Dict
import logging

from pymongo.errors import PyMongoError

from database import database
from models import OfferActionRequest, OfferStatus, OfferSubmitRequest, Offer, Chat, ChatMessage
from services.entitlement_store import entitlement_store
from services.plan_registry import plan_registry
from services.quota_service import can_submit_offer, offer_limit_reached
from utils.errors import AuthError, NotFound, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


class OfferService:

    async def submit_offer(self, user: Dict[str, Any], body: OfferSubmitRequest) -> Dict[str, Any]:
        decision = can_submit_offer(user)
        if not decision.allowed:
            raise decision.to_error()

        content = (body.content or "").strip()
        if not body.project_id or not body.owner_id or not content:
            raise ValidationError("projectId, ownerId and content are required")

        limit = plan_registry.get_plan(user["plan_type"]).monthly_offer_limit
        new_count = await entitlement_store.atomic_increment_offer_count(user["id"], limit=limit)
        if new_count is None:
            # Another submission took the last slot after the check above
            raise offer_limit_reached(limit, limit).to_error()

        try:
            db = database.get_db()
            offer = Offer(
                project_id=body.project_id,
                contractor_id=user["id"],
                owner_id=body.owner_id,
                price_chf=body.price_chf,
                content=content,
                attachments=body.attachments,
            )
            await db.offers.insert_one(offer.model_dump())

            chat_id = await self._get_or_create_chat(db, body, user["id"])
            message = ChatMessage(
                chat_id=chat_id,
                sender_id=user["id"],
                message=content,
                attachments=body.attachments,
            )
            await db.chat_messages.insert_one(message.model_dump())
        except PyMongoError as e:
            logger.error(
                "OFFER_WRITE_FAILED_AFTER_INCREMENT user_id=%s project_id=%s count=%s error=%s",
                user["id"], body.project_id, new_count, e,
            )
            raise PersistenceError("offer write failed") from e

        logger.info(
            "OFFER_SUBMITTED offer_id=%s user_id=%s project_id=%s count=%s limit=%s",
            offer.id, user["id"], body.project_id, new_count, limit,
        )
        return {
            "success": True,
            "offerId": offer.id,
            "chatId": chat_id,
            "offerCountThisMonth": new_count,
            "limit": limit,
        }

    async def act_on_offer(self, user: Dict[str, Any], body: OfferActionRequest) -> Dict[str, Any]:
        """Owner accepts or rejects a submitted offer and posts the outcome to the chat."""
        if not body.offer_id:
            raise ValidationError(code="action and offerId are required")

        db = database.get_db()
        offer = await db.offers.find_one({"id": body.offer_id}, {"_id": 0})
        if not offer:
            raise NotFound(code="Offer not found")
        if user["id"] != offer.get("owner_id"):
            raise AuthError.forbidden("Only the project owner can accept/reject this offer")

        status = OfferStatus.ACCEPTED if body.action == "accept" else OfferStatus.REJECTED
        result = await db.offers.update_one(
            {"id": offer["id"], "status": OfferStatus.SUBMITTED.value},
            {"$set": {"status": status.value, "updated_at": datetime.now(timezone.utc)}},
        )
        if not result.matched_count:
            raise ValidationError(code="Only submitted offers can be accepted/rejected")

        chat_id = body.chat_id
        if not chat_id:
            chat = await db.chats.find_one(
                {
                    "project_id": offer.get("project_id"),
                    "owner_id": offer["owner_id"],
                    "contractor_id": offer.get("contractor_id"),
                },
                {"_id": 0, "id": 1},
            )
            chat_id = (chat or {}).get("id")
        if chat_id:
            message = ChatMessage(
                chat_id=chat_id,
                sender_id=user["id"],
                message=f"Offer {status.value}: CHF {float(offer.get('price_chf') or 0):.2f}",
            )
            await db.chat_messages.insert_one(message.model_dump())

        logger.info("OFFER_%s offer_id=%s owner_id=%s chat_id=%s", status.value.upper(), offer["id"], user["id"], chat_id)
        return {"success": True, "status": status.value}

    async def _get_or_create_chat(self, db, body: OfferSubmitRequest, contractor_id: str) -> str:
        key = {"project_id": body.project_id, "owner_id": body.owner_id, "contractor_id": contractor_id}
        existing = await db.chats.find_one(key, {"_id": 0, "id": 1})
        if existing:
            await db.chats.update_one({"id": existing["id"]}, {"$set": {"updated_at": datetime.now(timezone.utc)}})
            return existing["id"]

        title = body.project_title
        if not title:
            project = await db.projects.find_one({"id": body.project_id}, {"_id": 0, "title": 1})
            title = (project or {}).get("title")
        chat = Chat(**key, project_title=title)
        await db.chats.insert_one(chat.model_dump())
        return chat.id


offer_service = OfferService()
