"""Admin Routes - moderation, subscription and platform controls.

Every endpoint runs behind admin_guard (rate limit, auth + role, and an
X-Idempotency-Key on mutations). Lists share one shape:
``{page, pageSize, total, rows}`` with page >= 1 and 1 <= pageSize <= 100.

Endpoints:
- GET  /api/admin/users-list, offers-list, reports-list, subscriptions-list, projects-list
- GET  /api/admin/conversations-list, feature-flags-list, security-events-list, settings-list
- GET  /api/admin/security-state, alerts, health
- POST /api/admin/users-action, subscriptions-action, subscription-promos-action
- POST /api/admin/settings-action, security-action, reports-action
- POST /api/admin/projects-action, offers-action, conversations-action, feature-flags-action
"""
import asyncio
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
import logging

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse

from database import database
from models import PlanType, Severity, SubscriptionStatus, UserRole
from services import admin_actions
from services.admin_guard import AdminContext, admin_guard, parse_pagination
from services.plan_registry import plan_registry
from services.settings_service import settings_service
from utils.audit import verify_checksum
from utils.rate_limiter import guard_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"])

ALL_ADMINS = [UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.MODERATOR]
SENIOR_ADMINS = [UserRole.SUPER_ADMIN, UserRole.ADMIN]
SUPER_ADMIN_ONLY = [UserRole.SUPER_ADMIN]

USER_META_PROJECTION = {"_id": 0, "id": 1, "email": 1, "name": 1, "role": 1}


# =============================================================================
# Helpers
# =============================================================================

async def fetch_user_meta(user_ids: Iterable[Optional[str]]) -> Dict[str, Dict[str, Any]]:
    ids = sorted({uid for uid in user_ids if uid})
    if not ids:
        return {}
    db = database.get_db()
    rows = await db.profiles.find({"id": {"$in": ids}}, USER_META_PROJECTION).to_list(len(ids))
    return {row["id"]: row for row in rows}


async def paginate(collection, query: Dict[str, Any], page: int, page_size: int, sort_field: str = "created_at"):
    paging = parse_pagination(page, page_size)
    total, rows = await asyncio.gather(
        collection.count_documents(query),
        collection.find(query, {"_id": 0})
        .sort(sort_field, -1)
        .skip(paging["skip"])
        .limit(paging["page_size"])
        .to_list(paging["page_size"]),
    )
    return {"page": paging["page"], "pageSize": paging["page_size"], "total": total, "rows": rows}


def _contains(q: Optional[str]) -> Optional[Dict[str, str]]:
    q = (q or "").strip()
    if not q:
        return None
    return {"$regex": re.escape(q[:100]), "$options": "i"}


# =============================================================================
# Lists
# =============================================================================

@router.get("/users-list")
async def users_list(
    page: int = 1,
    page_size: int = Query(20, alias="pageSize"),
    q: Optional[str] = None,
    role: Optional[UserRole] = None,
    ctx: AdminContext = Depends(admin_guard(ALL_ADMINS)),
):
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role.value
    pattern = _contains(q)
    if pattern:
        query["$or"] = [{"email": pattern}, {"name": pattern}]
    return await paginate(database.get_db().profiles, query, page, page_size)


@router.get("/offers-list")
async def offers_list(
    page: int = 1,
    page_size: int = Query(20, alias="pageSize"),
    status: Optional[str] = None,
    ctx: AdminContext = Depends(admin_guard(ALL_ADMINS)),
):
    query = {"status": status} if status else {}
    result = await paginate(database.get_db().offers, query, page, page_size)
    contractors, owners = await asyncio.gather(
        fetch_user_meta(r.get("contractor_id") for r in result["rows"]),
        fetch_user_meta(r.get("owner_id") for r in result["rows"]),
    )
    for row in result["rows"]:
        row["contractor"] = contractors.get(row.get("contractor_id"))
        row["owner"] = owners.get(row.get("owner_id"))
    return result


@router.get("/reports-list")
async def reports_list(
    page: int = 1,
    page_size: int = Query(20, alias="pageSize"),
    status: Optional[str] = None,
    ctx: AdminContext = Depends(admin_guard(ALL_ADMINS)),
):
    query = {"status": status} if status else {}
    result = await paginate(database.get_db().reports, query, page, page_size)
    meta = await fetch_user_meta(
        [r.get("reporter_id") for r in result["rows"]]
        + [r.get("target_id") for r in result["rows"] if r.get("target_type") == "user"]
    )
    for row in result["rows"]:
        row["reporter"] = meta.get(row.get("reporter_id"))
        if row.get("target_type") == "user":
            row["targetUser"] = meta.get(row.get("target_id"))
    return result


@router.get("/subscriptions-list")
async def subscriptions_list(
    page: int = 1,
    page_size: int = Query(20, alias="pageSize"),
    status: Optional[SubscriptionStatus] = None,
    ctx: AdminContext = Depends(admin_guard(SENIOR_ADMINS)),
):
    db = database.get_db()
    query: Dict[str, Any] = {"role": UserRole.CONTRACTOR.value}
    query["subscription_status"] = status.value if status else {"$ne": SubscriptionStatus.NONE.value}
    result = await paginate(db.profiles, query, page, page_size)

    contractors = {"role": UserRole.CONTRACTOR.value}
    active_basic, active_pro, past_due, canceled = await asyncio.gather(
        db.profiles.count_documents({**contractors, "subscription_status": "active", "plan_type": PlanType.BASIC.value}),
        db.profiles.count_documents({**contractors, "subscription_status": "active", "plan_type": PlanType.PRO.value}),
        db.profiles.count_documents({**contractors, "subscription_status": "past_due"}),
        db.profiles.count_documents({**contractors, "subscription_status": "canceled"}),
    )
    plans = plan_registry.get_all_plans()
    result["summary"] = {
        "activeBasic": active_basic,
        "activePro": active_pro,
        "pastDue": past_due,
        "canceled": canceled,
        "mrrChf": active_basic * plans[PlanType.BASIC].price_chf + active_pro * plans[PlanType.PRO].price_chf,
    }
    return result


@router.get("/projects-list")
async def projects_list(
    page: int = 1,
    page_size: int = Query(20, alias="pageSize"),
    status: Optional[str] = None,
    q: Optional[str] = None,
    ctx: AdminContext = Depends(admin_guard(ALL_ADMINS)),
):
    query: Dict[str, Any] = {"status": status} if status else {}
    pattern = _contains(q)
    if pattern:
        query["$or"] = [{"title": pattern}, {"category": pattern}, {"service": pattern}]
    result = await paginate(database.get_db().projects, query, page, page_size)
    owners = await fetch_user_meta(r.get("owner_id") for r in result["rows"])
    for row in result["rows"]:
        row["owner"] = owners.get(row.get("owner_id"))
    return result


@router.get("/conversations-list")
async def conversations_list(
    page: int = 1,
    page_size: int = Query(20, alias="pageSize"),
    ctx: AdminContext = Depends(admin_guard(ALL_ADMINS)),
):
    db = database.get_db()
    result = await paginate(db.chats, {}, page, page_size, sort_field="updated_at")
    chat_ids = [row["id"] for row in result["rows"]]
    messages, people = await asyncio.gather(
        db.chat_messages.find({"chat_id": {"$in": chat_ids}}, {"_id": 0, "chat_id": 1, "created_at": 1})
        .to_list(None),
        fetch_user_meta(
            [r.get("owner_id") for r in result["rows"]] + [r.get("contractor_id") for r in result["rows"]]
        ),
    )
    counts: Dict[str, int] = {}
    last_at: Dict[str, datetime] = {}
    for message in messages:
        chat_id = message["chat_id"]
        counts[chat_id] = counts.get(chat_id, 0) + 1
        created = message.get("created_at")
        if created and (chat_id not in last_at or created > last_at[chat_id]):
            last_at[chat_id] = created
    for row in result["rows"]:
        row["owner"] = people.get(row.get("owner_id"))
        row["contractor"] = people.get(row.get("contractor_id"))
        row["messageCount"] = counts.get(row["id"], 0)
        row["lastMessageAt"] = last_at.get(row["id"])
    return result


@router.get("/feature-flags-list")
async def feature_flags_list(ctx: AdminContext = Depends(admin_guard(ALL_ADMINS))):
    rows = await database.get_db().feature_flags.find({}, {"_id": 0}).sort("name", 1).to_list(None)
    return {"page": 1, "pageSize": len(rows), "total": len(rows), "rows": rows}


@router.get("/security-events-list")
async def security_events_list(
    page: int = 1,
    page_size: int = Query(20, alias="pageSize"),
    severity: Optional[Severity] = None,
    event_type: Optional[str] = Query(None, alias="eventType"),
    q: Optional[str] = None,
    ctx: AdminContext = Depends(admin_guard(SENIOR_ADMINS)),
):
    query: Dict[str, Any] = {}
    if severity:
        query["severity"] = severity.value
    if event_type:
        query["event_type"] = event_type
    elif _contains(q):
        query["event_type"] = _contains(q)
    result = await paginate(database.get_db().security_events, query, page, page_size)
    for row in result["rows"]:
        row["checksumValid"] = verify_checksum(row.get("details"))
    return result


@router.get("/settings-list")
async def settings_list(ctx: AdminContext = Depends(admin_guard(SENIOR_ADMINS))):
    rows = await settings_service.list_settings()
    return {"page": 1, "pageSize": len(rows), "total": len(rows), "rows": rows}


@router.get("/security-state")
async def security_state(ctx: AdminContext = Depends(admin_guard(SENIOR_ADMINS))):
    banner, force_logout_at = await asyncio.gather(
        settings_service.get_maintenance_banner(),
        settings_service.get_force_logout_at(),
    )
    return {
        "maintenanceBanner": banner,
        "forceLogoutAt": force_logout_at.isoformat() if force_logout_at else None,
        "guardStore": type(guard_store).__name__,
    }


@router.get("/alerts")
async def alerts(
    window_minutes: int = Query(60, alias="windowMinutes"),
    critical_threshold: int = Query(10, alias="criticalThreshold"),
    warning_threshold: int = Query(30, alias="warningThreshold"),
    ctx: AdminContext = Depends(admin_guard(SENIOR_ADMINS)),
):
    minutes = max(5, min(180, window_minutes))
    critical_threshold = max(1, min(100, critical_threshold))
    warning_threshold = max(1, min(500, warning_threshold))
    since = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    db = database.get_db()
    critical_count, warning_count = await asyncio.gather(
        db.security_events.count_documents({"severity": Severity.CRITICAL.value, "created_at": {"$gte": since}}),
        db.security_events.count_documents({"severity": Severity.WARNING.value, "created_at": {"$gte": since}}),
    )
    found: List[Dict[str, str]] = []
    if critical_count >= critical_threshold:
        found.append({
            "level": "critical",
            "title": "Critical security spike",
            "details": f"{critical_count} critical events in last {minutes} minutes",
        })
    if warning_count >= warning_threshold:
        found.append({
            "level": "warning",
            "title": "Warning-level anomaly",
            "details": f"{warning_count} warning events in last {minutes} minutes",
        })
    return {
        "windowMinutes": minutes,
        "metrics": {"criticalCount": critical_count, "warningCount": warning_count},
        "alerts": found,
    }


@router.get("/health")
async def health(ctx: AdminContext = Depends(admin_guard(ALL_ADMINS))):
    started = time.monotonic()
    db_ok = await database.ping()
    body: Dict[str, Any] = {"checks": {"dbConnection": db_ok}, "timestamp": datetime.now(timezone.utc).isoformat()}
    if db_ok:
        db = database.get_db()
        profiles, projects = await asyncio.gather(
            db.profiles.count_documents({}),
            db.projects.count_documents({}),
        )
        body["sampledCounts"] = {"profiles": profiles, "projects": projects}
    body["status"] = "ok" if db_ok else "degraded"
    body["latencyMs"] = int((time.monotonic() - started) * 1000)
    if not db_ok:
        return JSONResponse(status_code=500, content=body)
    return body


# =============================================================================
# Actions
# =============================================================================

@router.post("/users-action")
async def users_action(
    body: admin_actions.UsersActionRequest = Body(...),
    ctx: AdminContext = Depends(admin_guard(ALL_ADMINS)),
):
    return await admin_actions.run_users_action(ctx, body)


@router.post("/subscriptions-action")
async def subscriptions_action(
    body: admin_actions.SubscriptionsActionRequest = Body(...),
    ctx: AdminContext = Depends(admin_guard(SENIOR_ADMINS)),
):
    return await admin_actions.run_subscriptions_action(ctx, body)


@router.post("/subscription-promos-action")
async def subscription_promos_action(
    body: admin_actions.SetDefaultDiscountAction,
    ctx: AdminContext = Depends(admin_guard(SUPER_ADMIN_ONLY)),
):
    return await admin_actions.run_promos_action(ctx, body)


@router.post("/settings-action")
async def settings_action(
    body: admin_actions.SettingsActionRequest = Body(...),
    ctx: AdminContext = Depends(admin_guard(SENIOR_ADMINS)),
):
    return await admin_actions.run_settings_action(ctx, body)


@router.post("/security-action")
async def security_action(
    body: admin_actions.SecurityActionRequest = Body(...),
    ctx: AdminContext = Depends(admin_guard(SENIOR_ADMINS)),
):
    return await admin_actions.run_security_action(ctx, body)


@router.post("/reports-action")
async def reports_action(
    body: admin_actions.ReportsActionRequest = Body(...),
    ctx: AdminContext = Depends(admin_guard(ALL_ADMINS)),
):
    return await admin_actions.run_reports_action(ctx, body)


@router.post("/projects-action")
async def projects_action(
    body: admin_actions.ProjectsActionRequest,
    ctx: AdminContext = Depends(admin_guard(ALL_ADMINS)),
):
    return await admin_actions.run_projects_action(ctx, body)


@router.post("/offers-action")
async def offers_action(
    body: admin_actions.OffersActionRequest,
    ctx: AdminContext = Depends(admin_guard(ALL_ADMINS)),
):
    return await admin_actions.run_offers_action(ctx, body)


@router.post("/conversations-action")
async def conversations_action(
    body: admin_actions.ConversationsActionRequest = Body(...),
    ctx: AdminContext = Depends(admin_guard(ALL_ADMINS)),
):
    return await admin_actions.run_conversations_action(ctx, body)


@router.post("/feature-flags-action")
async def feature_flags_action(
    body: admin_actions.FeatureFlagsActionRequest = Body(...),
    ctx: AdminContext = Depends(admin_guard(SENIOR_ADMINS)),
):
    return await admin_actions.run_feature_flags_action(ctx, body)
