"""Admin Mutation Guard - the gates every privileged endpoint passes through.

Order matters and is fixed:
1. Rate limit per (client ip, route path)
2. Authentication, role, account not banned or soft-deleted
3. Idempotency key for anything that is not GET/HEAD

Routes declare it as a dependency:

    @router.post("/users-action")
    async def users_action(body: ..., ctx: AdminContext = Depends(admin_guard())):
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import logging
import os
import re

from fastapi import Request

from database import database
from middleware import get_current_user
from models import ADMIN_ROLES, Severity, UserRole
from utils.audit import log_security_event
from utils.errors import AuthError, ConflictError, RateLimited, ValidationError
from utils.rate_limiter import guard_store

logger = logging.getLogger(__name__)

ADMIN_RATE_LIMIT_MAX = int(os.getenv("ADMIN_RATE_LIMIT_MAX", "120"))
ADMIN_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("ADMIN_RATE_LIMIT_WINDOW_SECONDS", "60"))
IDEMPOTENCY_TTL_SECONDS = 10 * 60
IDEMPOTENCY_HEADER = "X-Idempotency-Key"
IDEMPOTENCY_KEY_MIN, IDEMPOTENCY_KEY_MAX = 8, 128
SAFE_METHODS = frozenset({"GET", "HEAD"})

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.I)


@dataclass
class AdminContext:
    user: Dict[str, Any]
    ip_address: str
    user_agent: Optional[str]
    route: str

    @property
    def user_id(self) -> str:
        return self.user["id"]

    @property
    def role(self) -> UserRole:
        return UserRole(self.user["role"])

    async def audit(
        self,
        event_type: str,
        severity: Severity = Severity.WARNING,
        target_user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        return await log_security_event(
            event_type=event_type,
            severity=severity,
            actor_id=self.user_id,
            target_user_id=target_user_id,
            details=details,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )


def get_request_ip(request: Request) -> str:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def admin_guard(allowed_roles: Iterable[UserRole] = ADMIN_ROLES):
    """Build the FastAPI dependency for a route open to ``allowed_roles``."""
    allowed = {role.value for role in allowed_roles}

    async def dependency(request: Request) -> AdminContext:
        ip = get_request_ip(request)
        route = request.url.path

        admitted, retry_after = await guard_store.hit(
            f"{ip}:{route}", ADMIN_RATE_LIMIT_MAX, ADMIN_RATE_LIMIT_WINDOW_SECONDS
        )
        if not admitted:
            logger.warning("ADMIN_RATE_LIMITED ip=%s route=%s retry_after=%s", ip, route, retry_after)
            raise RateLimited("Too many admin requests. Please retry shortly.", retry_after)

        user = await get_current_user(request)
        if not user:
            raise AuthError()
        if user.get("role") not in allowed:
            logger.warning("ADMIN_FORBIDDEN user_id=%s role=%s route=%s", user.get("id"), user.get("role"), route)
            raise AuthError.forbidden()
        if user.get("is_banned") or user.get("deleted_at"):
            raise AuthError.forbidden("Admin account disabled")

        if request.method.upper() not in SAFE_METHODS:
            key = (request.headers.get(IDEMPOTENCY_HEADER) or "").strip()
            if not key:
                raise ValidationError(code=f"Missing {IDEMPOTENCY_HEADER} header")
            if not IDEMPOTENCY_KEY_MIN <= len(key) <= IDEMPOTENCY_KEY_MAX:
                raise ValidationError(code="Invalid idempotency key")
            if not await guard_store.claim_idempotency_key(f"{user['id']}:{route}:{key}", IDEMPOTENCY_TTL_SECONDS):
                logger.info("ADMIN_DUPLICATE_MUTATION user_id=%s route=%s", user["id"], route)
                raise ConflictError(code="Duplicate admin mutation request")

        return AdminContext(
            user=user,
            ip_address=ip,
            user_agent=request.headers.get("user-agent"),
            route=route,
        )

    return dependency


# =========================================================================
# Helpers shared by admin actions and lists
# =========================================================================

async def assert_no_super_admin_targets(user_ids: List[str]) -> None:
    """Reject the whole batch when any target holds the top role."""
    db = database.get_db()
    protected = await db.profiles.count_documents(
        {"id": {"$in": list(user_ids)}, "role": UserRole.SUPER_ADMIN.value}
    )
    if protected:
        raise AuthError.forbidden("Super admin accounts are untouchable")


def validate_ids(ids: Iterable[str], label: str = "ids") -> List[str]:
    clean = []
    for value in ids:
        if not isinstance(value, str) or not UUID_RE.match(value):
            raise ValidationError(f"Invalid {label}: {value!r}", code="invalid_id")
        clean.append(value)
    if not clean:
        raise ValidationError(f"No {label} given", code="invalid_id")
    return list(dict.fromkeys(clean))


def parse_pagination(page: Optional[int], page_size: Optional[int]) -> Dict[str, int]:
    page = max(1, page or 1)
    page_size = page_size or DEFAULT_PAGE_SIZE
    page_size = min(MAX_PAGE_SIZE, max(1, page_size))
    return {"page": page, "page_size": page_size, "skip": (page - 1) * page_size}


def sanitize_text(value: Optional[str], max_length: int = 500) -> str:
    """Trim, drop control characters, cap length."""
    if not isinstance(value, str):
        return ""
    cleaned = "".join(ch for ch in value if ch.isprintable() or ch in "\n\t")
    return cleaned.strip()[:max_length]


def reset_guard_state():
    """Clear process-local buckets and keys (tests)."""
    guard_store.reset()
