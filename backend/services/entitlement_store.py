"""Entitlement Store - atomic reads and writes of the billing fields on a profile.

All writers (webhooks, quota engine, admin actions) go through here and use
single-document ``$set`` / ``$inc`` updates; nobody read-modify-writes a
counter in Python.
"""
from functools import wraps
from typing import Any, Dict, Optional
import logging

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import database
from models import ENTITLEMENT_FIELDS
from utils.errors import NotFound, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

ENTITLEMENT_PROJECTION = {"_id": 0, "id": 1, "role": 1, "email": 1, **{f: 1 for f in ENTITLEMENT_FIELDS}}


def _store_call(fn):
    """Translate driver failures into PersistenceError, logging the context."""
    @wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except PyMongoError as e:
            logger.error("ENTITLEMENT_STORE_FAILED op=%s args=%s error=%s", fn.__name__, args[1:], e)
            raise PersistenceError(f"{fn.__name__} failed") from e
    return wrapper


def _check_fields(partial: Dict[str, Any]) -> None:
    unknown = set(partial) - ENTITLEMENT_FIELDS
    if unknown:
        raise ValidationError(f"Not entitlement fields: {sorted(unknown)}")


class EntitlementStore:

    @_store_call
    async def get_by_user_id(self, user_id: str) -> Dict[str, Any]:
        db = database.get_db()
        doc = await db.profiles.find_one({"id": user_id}, ENTITLEMENT_PROJECTION)
        if not doc:
            raise NotFound(f"No profile for user {user_id}")
        return doc

    @_store_call
    async def get_by_customer_id(self, customer_id: str) -> Dict[str, Any]:
        db = database.get_db()
        doc = await db.profiles.find_one({"stripe_customer_id": customer_id}, ENTITLEMENT_PROJECTION)
        if not doc:
            raise NotFound(f"No profile for customer {customer_id}")
        return doc

    @_store_call
    async def update_by_user_id(self, user_id: str, partial: Dict[str, Any]) -> None:
        _check_fields(partial)
        db = database.get_db()
        result = await db.profiles.update_one({"id": user_id}, {"$set": partial})
        if result.matched_count == 0:
            raise NotFound(f"No profile for user {user_id}")

    @_store_call
    async def update_by_customer_id(
        self,
        customer_id: str,
        partial: Dict[str, Any],
        event_created: Optional[int] = None,
    ) -> bool:
        """Apply ``partial`` to the customer's profile.

        With ``event_created`` (the Stripe event's Unix timestamp) the write
        only lands when no newer event has been applied already; the
        timestamp is recorded alongside. Returns False for such a stale event.
        """
        _check_fields(partial)
        db = database.get_db()
        query: Dict[str, Any] = {"stripe_customer_id": customer_id}
        update = dict(partial)
        if event_created is not None:
            query["$or"] = [
                {"last_stripe_event_at": None},
                {"last_stripe_event_at": {"$lte": event_created}},
            ]
            update["last_stripe_event_at"] = event_created

        result = await db.profiles.update_one(query, {"$set": update})
        if result.matched_count:
            return True

        exists = await db.profiles.find_one({"stripe_customer_id": customer_id}, {"_id": 0, "id": 1})
        if not exists:
            raise NotFound(f"No profile for customer {customer_id}")
        logger.info(
            "ENTITLEMENT_STALE_EVENT_SKIPPED customer_id=%s event_created=%s",
            customer_id, event_created,
        )
        return False

    @_store_call
    async def atomic_increment_offer_count(self, user_id: str, limit: Optional[int] = None) -> Optional[int]:
        """Server-side ``$inc``; returns the counter value after the increment.

        With ``limit`` the increment only happens while the counter is below
        it, and None is returned when the cap was already reached.
        """
        db = database.get_db()
        # $inc fails on an explicit null and $lt never matches a missing field
        await db.profiles.update_one(
            {"id": user_id, "offer_count_this_month": None},
            {"$set": {"offer_count_this_month": 0}},
        )
        query: Dict[str, Any] = {"id": user_id}
        if limit is not None:
            query["offer_count_this_month"] = {"$lt": limit}
        doc = await db.profiles.find_one_and_update(
            query,
            {"$inc": {"offer_count_this_month": 1}},
            projection={"_id": 0, "offer_count_this_month": 1},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            return doc["offer_count_this_month"]
        if limit is not None and await db.profiles.find_one({"id": user_id}, {"_id": 0, "id": 1}):
            return None
        raise NotFound(f"No profile for user {user_id}")


entitlement_store = EntitlementStore()
