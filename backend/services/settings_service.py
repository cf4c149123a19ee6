"""Runtime settings - operator-configured JSON values stored under string keys.

Every reader returns a safe default when the key is absent or its value has
the wrong shape, so a bad settings row can never break checkout, webhooks or
authentication.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from database import database

logger = logging.getLogger(__name__)

PRICE_IDS_KEY = "stripe_price_ids"
DISCOUNT_CONFIG_KEY = "subscription_discount_config"
MAINTENANCE_BANNER_KEY = "maintenance_banner"
FORCE_LOGOUT_KEY = "session_force_logout_at"


class SettingsService:

    async def get_setting(self, key: str, default: Any = None) -> Any:
        db = database.get_db()
        doc = await db.settings.find_one({"key": key}, {"_id": 0})
        if not doc or "value" not in doc:
            return default
        return doc["value"]

    async def upsert_setting(self, key: str, value: Any, updated_by: Optional[str] = None) -> Dict[str, Any]:
        db = database.get_db()
        doc = {
            "key": key,
            "value": value,
            "updated_by": updated_by,
            "updated_at": datetime.now(timezone.utc),
        }
        await db.settings.update_one({"key": key}, {"$set": doc}, upsert=True)
        logger.info("SETTING_UPSERTED key=%s by=%s", key, updated_by)
        return doc

    async def delete_setting(self, key: str) -> bool:
        db = database.get_db()
        result = await db.settings.delete_one({"key": key})
        logger.info("SETTING_DELETED key=%s deleted=%s", key, result.deleted_count)
        return result.deleted_count > 0

    async def list_settings(self) -> List[Dict[str, Any]]:
        db = database.get_db()
        return await db.settings.find({}, {"_id": 0}).sort("key", 1).to_list(500)

    # =========================================================================
    # Typed readers
    # =========================================================================

    async def get_price_overrides(self) -> Dict[str, Dict[str, str]]:
        """``{plan: {cycle: price_id}}`` with empty and non-string entries dropped."""
        raw = await self.get_setting(PRICE_IDS_KEY, {})
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed %s setting", PRICE_IDS_KEY)
            return {}
        overrides: Dict[str, Dict[str, str]] = {}
        for plan, cycles in raw.items():
            if not isinstance(cycles, dict):
                continue
            clean = {
                cycle: price_id.strip()
                for cycle, price_id in cycles.items()
                if isinstance(price_id, str) and price_id.strip()
            }
            if clean:
                overrides[plan] = clean
        return overrides

    async def get_discount_config(self) -> Dict[str, Any]:
        raw = await self.get_setting(DISCOUNT_CONFIG_KEY, {})
        config = {"enabled": False, "percentOff": 0, "couponId": None}
        if not isinstance(raw, dict):
            return config
        percent = raw.get("percentOff")
        coupon = raw.get("couponId")
        if isinstance(percent, (int, float)) and 0 < percent <= 100 and isinstance(coupon, str) and coupon:
            config.update(enabled=bool(raw.get("enabled")), percentOff=percent, couponId=coupon)
        return config

    async def get_maintenance_banner(self) -> Dict[str, Any]:
        raw = await self.get_setting(MAINTENANCE_BANNER_KEY, {})
        if not isinstance(raw, dict):
            return {"enabled": False, "message": ""}
        message = raw.get("message")
        return {
            "enabled": bool(raw.get("enabled")),
            "message": message if isinstance(message, str) else "",
        }

    async def get_force_logout_at(self) -> Optional[datetime]:
        """Tokens issued before this instant are rejected."""
        raw = await self.get_setting(FORCE_LOGOUT_KEY, {})
        value = raw.get("timestamp") if isinstance(raw, dict) else None
        if not isinstance(value, str):
            return None
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            logger.warning("Ignoring malformed %s timestamp: %s", FORCE_LOGOUT_KEY, value)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed


settings_service = SettingsService()
