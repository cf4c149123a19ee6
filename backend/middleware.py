from fastapi import Request
from typing import Optional
import logging
from auth import decode_access_token
from database import database
from services.settings_service import settings_service
from utils.errors import AuthError

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Resolve the bearer token to the caller's profile document.

    Returns None for a missing, invalid or expired token, for a token whose
    subject has no profile, and for a token issued before the last forced
    logout.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ", 1)[1].strip()
    payload = decode_access_token(token)
    if not payload or not payload.get("sub"):
        return None

    force_logout_at = await settings_service.get_force_logout_at()
    issued_at = payload.get("iat")
    if force_logout_at and (not isinstance(issued_at, (int, float)) or issued_at < int(force_logout_at.timestamp())):
        logger.info("Rejected token issued before forced logout sub=%s", payload.get("sub"))
        return None

    db = database.get_db()
    profile = await db.profiles.find_one({"id": payload["sub"]}, {"_id": 0})
    if not profile:
        return None
    if payload.get("impersonated_by"):
        profile["impersonated_by"] = payload["impersonated_by"]
    return profile

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise AuthError()
    return user

