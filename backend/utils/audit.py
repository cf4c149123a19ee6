from database import database
from models import SecurityEvent, Severity
from typing import Optional, Dict, Any
import hashlib
import json
import logging

logger = logging.getLogger(__name__)

CHECKSUM_FIELD = "_checksum"

def canonical_json(details: Dict[str, Any]) -> str:
    """Stable serialization: sorted keys, no whitespace, non-JSON values via str()."""
    return json.dumps(details, sort_keys=True, separators=(",", ":"), default=str)

def compute_checksum(details: Dict[str, Any]) -> str:
    """sha256 over the canonical JSON of ``details`` without its checksum field."""
    body = {k: v for k, v in (details or {}).items() if k != CHECKSUM_FIELD}
    return hashlib.sha256(canonical_json(body).encode("utf-8")).hexdigest()

def verify_checksum(details: Optional[Dict[str, Any]]) -> bool:
    """True when the stored checksum still matches the stored details."""
    if not details or not details.get(CHECKSUM_FIELD):
        return False
    return details[CHECKSUM_FIELD] == compute_checksum(details)

async def log_security_event(
    event_type: str,
    severity: Severity = Severity.INFO,
    actor_id: Optional[str] = None,
    target_user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> str:
    """Append a tamper-evident security event.

    Args:
        event_type: e.g. ``admin_user_ban`` or ``stripe_subscription_updated``
        severity: info for system transitions, warning for moderation,
            critical for destructive or platform-wide actions
        actor_id: profile id of the admin, None for Stripe-driven events
        target_user_id: affected profile, if any
        details: JSON payload; a ``_checksum`` of it is stored alongside
        ip_address / user_agent: request origin

    Returns the event id, or "" when the insert failed.
    """
    try:
        db = database.get_db()

        # Round-trip so the stored details are exactly what was hashed
        payload = json.loads(canonical_json(details or {}))
        payload[CHECKSUM_FIELD] = compute_checksum(payload)

        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            actor_id=actor_id,
            target_user_id=target_user_id,
            details=payload,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        doc = event.model_dump(mode="json")
        doc["created_at"] = event.created_at
        await db.security_events.insert_one(doc)
        logger.info(f"Security event logged: {event_type} ({severity.value})")
        return event.id
    except Exception as e:
        logger.error(f"Failed to log security event {event_type}: {e}")
        # Never fail the main operation due to audit log failure
        return ""
