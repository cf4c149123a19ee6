"""Rate limit buckets and idempotency keys for the admin mutation guard.

Two interchangeable stores with the same key schemes (``ip:route`` for
buckets, ``userId:route:key`` for idempotency):

- MemoryGuardStore: process-local dicts; correct for a single instance
- MongoGuardStore: shared across instances via atomic MongoDB updates,
  expired documents removed by TTL indexes

ADMIN_GUARD_BACKEND=mongo selects the shared store.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Tuple
import logging
import math
import os
import time

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def retry_after_seconds(reset_at: float, now: float) -> int:
    """Whole seconds until the bucket resets, never less than 1."""
    return max(1, math.ceil(reset_at - now))


class MemoryGuardStore:
    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self.buckets: Dict[str, Dict[str, float]] = {}
        self.idempotency_keys: Dict[str, float] = {}

    async def hit(self, key: str, max_requests: int, window_seconds: int) -> Tuple[bool, int]:
        """
        Count one request against the bucket.

        Returns:
            (allowed, retry_after_seconds) - retry_after is 0 when allowed
        """
        now = self.clock()
        bucket = self.buckets.get(key)
        if not bucket or bucket["reset_at"] <= now:
            bucket = {"count": 0, "reset_at": now + window_seconds}
            self.buckets[key] = bucket

        if bucket["count"] >= max_requests:
            return False, retry_after_seconds(bucket["reset_at"], now)

        bucket["count"] += 1
        return True, 0

    async def claim_idempotency_key(self, key: str, ttl_seconds: int) -> bool:
        """True on first use of ``key`` within the TTL, False for a duplicate."""
        now = self.clock()
        expires_at = self.idempotency_keys.get(key)
        if expires_at and expires_at > now:
            return False
        self.idempotency_keys[key] = now + ttl_seconds
        return True

    async def sweep(self) -> int:
        now = self.clock()
        stale_buckets = [k for k, b in self.buckets.items() if b["reset_at"] <= now]
        stale_keys = [k for k, exp in self.idempotency_keys.items() if exp <= now]
        for k in stale_buckets:
            del self.buckets[k]
        for k in stale_keys:
            del self.idempotency_keys[k]
        return len(stale_buckets) + len(stale_keys)

    def reset(self):
        self.buckets.clear()
        self.idempotency_keys.clear()


def _aware(value: datetime) -> datetime:
    # motor returns naive UTC datetimes unless the client is tz_aware
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class MongoGuardStore:
    MAX_ATTEMPTS = 3

    def __init__(self, clock: Clock = time.time):
        self.clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    async def hit(self, key: str, max_requests: int, window_seconds: int) -> Tuple[bool, int]:
        db = database.get_db()
        for _ in range(self.MAX_ATTEMPTS):
            now = self._now()
            # Live window with room left
            doc = await db.admin_rate_limits.find_one_and_update(
                {"_id": key, "reset_at": {"$gt": now}, "count": {"$lt": max_requests}},
                {"$inc": {"count": 1}},
                return_document=ReturnDocument.AFTER,
            )
            if doc:
                return True, 0

            # No bucket yet, or the window has passed: start a new one
            reset_at = now + timedelta(seconds=window_seconds)
            try:
                await db.admin_rate_limits.find_one_and_update(
                    {"_id": key, "reset_at": {"$lte": now}},
                    {"$set": {"count": 1, "reset_at": reset_at, "expires_at": reset_at}},
                    upsert=True,
                )
                return True, 0
            except DuplicateKeyError:
                pass

            existing = await db.admin_rate_limits.find_one({"_id": key})
            if existing and existing["count"] >= max_requests and _aware(existing["reset_at"]) > now:
                return False, retry_after_seconds(_aware(existing["reset_at"]).timestamp(), now.timestamp())

        logger.warning("Rate limit bucket %s contended, rejecting request", key)
        return False, 1

    async def claim_idempotency_key(self, key: str, ttl_seconds: int) -> bool:
        db = database.get_db()
        now = self._now()
        expires_at = now + timedelta(seconds=ttl_seconds)
        try:
            await db.admin_idempotency_keys.insert_one({"_id": key, "expires_at": expires_at})
            return True
        except DuplicateKeyError:
            # TTL removal runs about once a minute; an expired record may still be present
            result = await db.admin_idempotency_keys.update_one(
                {"_id": key, "expires_at": {"$lte": now}},
                {"$set": {"expires_at": expires_at}},
            )
            return result.modified_count == 1

    async def sweep(self) -> int:
        db = database.get_db()
        now = self._now()
        buckets = await db.admin_rate_limits.delete_many({"expires_at": {"$lte": now}})
        keys = await db.admin_idempotency_keys.delete_many({"expires_at": {"$lte": now}})
        return buckets.deleted_count + keys.deleted_count

    def reset(self):
        pass


def create_guard_store():
    backend = (os.getenv("ADMIN_GUARD_BACKEND") or "memory").strip().lower()
    if backend == "mongo":
        logger.info("Admin guard using shared MongoDB store")
        return MongoGuardStore()
    return MemoryGuardStore()


guard_store = create_guard_store()
