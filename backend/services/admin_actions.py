"""Admin actions - one tagged union of payloads per resource, dispatched through handler tables.

Each request body carries an ``action`` literal that selects both its payload
model (pydantic discriminated union) and its handler. Adding an action means
adding a payload class, a handler and a table entry; FastAPI rejects unknown
actions before any handler runs.

Resources and who may act on them:
- users: all admin roles (moderators cannot change_role / set_subscription)
- subscriptions, settings, security: super_admin, admin
- subscription-promos: super_admin
- reports, projects, offers, conversations: all admin roles
- feature-flags: super_admin, admin
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union
import logging
import re

from pydantic import Field, field_validator, model_validator

from auth import create_impersonation_token
from database import database
from models import (
    CamelModel, FeatureFlag, OfferStatus, PlanType, ProjectStatus, ReportStatus, Severity,
    SubscriptionStatus, UserRole,
)
from services.admin_guard import AdminContext, assert_no_super_admin_targets, sanitize_text, validate_ids
from services.entitlement_store import entitlement_store
from services.plan_registry import plan_registry, map_stripe_status
from services.settings_service import (
    settings_service, DISCOUNT_CONFIG_KEY, FORCE_LOGOUT_KEY, MAINTENANCE_BANNER_KEY,
)
from services.stripe_service import stripe_service
from utils.errors import AuthError, ConflictError, NotFound, ValidationError

logger = logging.getLogger(__name__)

MAX_BATCH = 100
SETTING_KEY_RE = re.compile(r"^[a-z0-9._-]+$")
SYNCABLE_STRIPE_STATUSES = ("active", "trialing", "past_due")

Handler = Callable[[AdminContext, Any], Awaitable[Dict[str, Any]]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Batch(CamelModel):
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def clean_reason(cls, value):
        return sanitize_text(value) or None


# ============================================================================
# USERS
# ============================================================================

class UserFlagAction(_Batch):
    action: Literal["ban", "unban", "verify", "unverify", "soft_delete"]
    user_ids: List[str] = Field(min_length=1, max_length=MAX_BATCH)

class ChangeRoleAction(_Batch):
    action: Literal["change_role"]
    user_ids: List[str] = Field(min_length=1, max_length=MAX_BATCH)
    role: UserRole

class SetSubscriptionAction(_Batch):
    action: Literal["set_subscription"]
    user_ids: List[str] = Field(min_length=1, max_length=MAX_BATCH)
    subscription_status: SubscriptionStatus
    plan_type: Optional[PlanType] = None
    reset_offer_count: bool = False

    @model_validator(mode="after")
    def plan_requires_active(self):
        if self.subscription_status != SubscriptionStatus.ACTIVE:
            self.plan_type = None
        return self

class ImpersonateAction(_Batch):
    action: Literal["impersonate"]
    user_id: str

UsersActionRequest = Annotated[
    Union[UserFlagAction, ChangeRoleAction, SetSubscriptionAction, ImpersonateAction],
    Field(discriminator="action"),
]

FLAG_UPDATES: Dict[str, Callable[[Optional[str]], Dict[str, Any]]] = {
    "ban": lambda reason: {"is_banned": True, "banned_at": _now(), "ban_reason": reason},
    "unban": lambda reason: {"is_banned": False, "banned_at": None, "ban_reason": None},
    "verify": lambda reason: {"is_verified": True},
    "unverify": lambda reason: {"is_verified": False},
    "soft_delete": lambda reason: {"deleted_at": _now(), "is_banned": True},
}

MODERATOR_BLOCKED_USER_ACTIONS = frozenset({"change_role", "set_subscription"})


async def _user_flags(ctx: AdminContext, body: UserFlagAction) -> Dict[str, Any]:
    ids = validate_ids(body.user_ids, "userIds")
    await assert_no_super_admin_targets(ids)
    db = database.get_db()
    result = await db.profiles.update_many({"id": {"$in": ids}}, {"$set": FLAG_UPDATES[body.action](body.reason)})
    return {"updated": result.modified_count, "userIds": ids}


async def _change_role(ctx: AdminContext, body: ChangeRoleAction) -> Dict[str, Any]:
    ids = validate_ids(body.user_ids, "userIds")
    await assert_no_super_admin_targets(ids)
    if body.role == UserRole.SUPER_ADMIN:
        raise AuthError.forbidden("Super admin role cannot be granted")
    db = database.get_db()
    result = await db.profiles.update_many({"id": {"$in": ids}}, {"$set": {"role": body.role.value}})
    return {"updated": result.modified_count, "userIds": ids, "role": body.role.value}


async def _set_subscription(ctx: AdminContext, body: SetSubscriptionAction) -> Dict[str, Any]:
    ids = validate_ids(body.user_ids, "userIds")
    await assert_no_super_admin_targets(ids)
    changes: Dict[str, Any] = {
        "subscription_status": body.subscription_status.value,
        "plan_type": body.plan_type.value if body.plan_type else None,
    }
    if body.reset_offer_count:
        changes["offer_count_this_month"] = 0
    if body.subscription_status != SubscriptionStatus.ACTIVE:
        changes["subscription_current_period_end"] = None
    db = database.get_db()
    if await db.profiles.count_documents({"id": {"$in": ids}}) != len(ids):
        raise NotFound("User not found")
    await asyncio.gather(*(entitlement_store.update_by_user_id(uid, changes) for uid in ids))
    return {"updated": len(ids), "userIds": ids, "changes": changes}


async def _impersonate(ctx: AdminContext, body: ImpersonateAction) -> Dict[str, Any]:
    (target_id,) = validate_ids([body.user_id], "userId")
    await assert_no_super_admin_targets([target_id])
    db = database.get_db()
    if not await db.profiles.find_one({"id": target_id}, {"_id": 0, "id": 1}):
        raise NotFound("User not found")
    issued = create_impersonation_token(target_id, ctx.user_id)
    return {"userIds": [target_id], "token": issued["token"], "expiresAt": issued["expiresAt"]}


USER_HANDLERS: Dict[str, Handler] = {
    "ban": _user_flags,
    "unban": _user_flags,
    "verify": _user_flags,
    "unverify": _user_flags,
    "soft_delete": _user_flags,
    "change_role": _change_role,
    "set_subscription": _set_subscription,
    "impersonate": _impersonate,
}


async def run_users_action(ctx: AdminContext, body) -> Dict[str, Any]:
    if ctx.role == UserRole.MODERATOR and body.action in MODERATOR_BLOCKED_USER_ACTIONS:
        raise AuthError.forbidden("Moderators cannot perform this action")
    result = await USER_HANDLERS[body.action](ctx, body)
    ids = result.pop("userIds")
    audit_details = {"action": body.action, "userIds": ids, "reason": body.reason}
    audit_details.update({k: v for k, v in result.items() if k != "token"})
    await ctx.audit(
        f"admin_user_{body.action}",
        Severity.WARNING,
        target_user_id=ids[0] if len(ids) == 1 else None,
        details=audit_details,
    )
    return {"success": True, **result}


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

class ForceSyncAction(_Batch):
    action: Literal["force_sync"]
    user_id: str

class ExtendAction(_Batch):
    action: Literal["extend"]
    user_id: str
    extra_days: int = Field(default=30, ge=1, le=3650)

class RevokeAction(_Batch):
    action: Literal["revoke"]
    user_id: str

SubscriptionsActionRequest = Annotated[
    Union[ForceSyncAction, ExtendAction, RevokeAction],
    Field(discriminator="action"),
]


async def _force_sync(ctx: AdminContext, profile: Dict[str, Any], body: ForceSyncAction) -> Dict[str, Any]:
    customer_id = profile.get("stripe_customer_id")
    if not customer_id:
        raise ValidationError("User has no Stripe customer", code="no_stripe_customer")

    subscriptions = stripe_service.list_subscriptions(customer_id)
    current = next((s for s in subscriptions if s.get("status") in SYNCABLE_STRIPE_STATUSES), None)
    if not current:
        return {
            "subscription_status": SubscriptionStatus.NONE.value,
            "plan_type": None,
            "subscription_current_period_end": None,
            "stripe_subscription_id": None,
        }

    status = map_stripe_status(current.get("status"))
    items = (current.get("items") or {}).get("data") or [{}]
    price = items[0].get("price")
    price_id = price.get("id") if isinstance(price, dict) else price
    plan = await plan_registry.resolve_plan_for_price(price_id) if status == SubscriptionStatus.ACTIVE else None
    period_end = items[0].get("current_period_end") or current.get("current_period_end")
    return {
        "subscription_status": status.value,
        "plan_type": plan.type.value if plan else None,
        "subscription_current_period_end": datetime.fromtimestamp(period_end, tz=timezone.utc) if period_end else None,
        "stripe_subscription_id": current.get("id"),
    }


async def _extend(ctx: AdminContext, profile: Dict[str, Any], body: ExtendAction) -> Dict[str, Any]:
    current_end = profile.get("subscription_current_period_end")
    if isinstance(current_end, datetime) and current_end.tzinfo is None:
        current_end = current_end.replace(tzinfo=timezone.utc)
    base = current_end if isinstance(current_end, datetime) else _now()
    status = profile.get("subscription_status") or SubscriptionStatus.NONE.value
    changes = {"subscription_current_period_end": base + timedelta(days=body.extra_days)}
    if status == SubscriptionStatus.NONE.value:
        changes["subscription_status"] = SubscriptionStatus.ACTIVE.value
    return changes


async def _revoke(ctx: AdminContext, profile: Dict[str, Any], body: RevokeAction) -> Dict[str, Any]:
    return {
        "subscription_status": SubscriptionStatus.CANCELED.value,
        "plan_type": None,
        "subscription_current_period_end": None,
    }


SUBSCRIPTION_HANDLERS = {
    "force_sync": _force_sync,
    "extend": _extend,
    "revoke": _revoke,
}


async def run_subscriptions_action(ctx: AdminContext, body) -> Dict[str, Any]:
    (user_id,) = validate_ids([body.user_id], "userId")
    profile = await entitlement_store.get_by_user_id(user_id)
    changes = await SUBSCRIPTION_HANDLERS[body.action](ctx, profile, body)
    await entitlement_store.update_by_user_id(user_id, changes)
    await ctx.audit(
        f"admin_subscription_{body.action}",
        Severity.WARNING,
        target_user_id=user_id,
        details={"action": body.action, "changes": changes, "reason": body.reason},
    )
    return {"success": True, "changes": changes}


# ============================================================================
# SUBSCRIPTION PROMOS
# ============================================================================

class SetDefaultDiscountAction(CamelModel):
    action: Literal["set_default_discount"]
    percent_off: float = Field(ge=0, le=100)


async def run_promos_action(ctx: AdminContext, body: SetDefaultDiscountAction) -> Dict[str, Any]:
    if body.percent_off == 0:
        config = {"enabled": False, "percentOff": 0, "couponId": None}
    else:
        coupon_id = stripe_service.create_percent_coupon(body.percent_off)
        config = {"enabled": True, "percentOff": body.percent_off, "couponId": coupon_id}
    config["updatedAt"] = _now().isoformat()
    await settings_service.upsert_setting(DISCOUNT_CONFIG_KEY, config, updated_by=ctx.user_id)
    await ctx.audit("admin_subscription_default_discount", Severity.CRITICAL, details=config)
    return {"success": True, "config": config}


# ============================================================================
# SETTINGS
# ============================================================================

def clean_setting_key(value: str) -> str:
    key = (value or "").strip().lower()[:80]
    if not key or not SETTING_KEY_RE.match(key):
        raise ValidationError("Setting keys may contain a-z, 0-9, '.', '_' and '-'", code="invalid_setting_key")
    return key

class UpsertSettingAction(CamelModel):
    action: Literal["upsert"]
    key: str
    value: Any = None

class DeleteSettingAction(CamelModel):
    action: Literal["delete"]
    key: str

SettingsActionRequest = Annotated[Union[UpsertSettingAction, DeleteSettingAction], Field(discriminator="action")]


async def _upsert_setting(ctx: AdminContext, key: str, body: UpsertSettingAction) -> Dict[str, Any]:
    await settings_service.upsert_setting(key, body.value, updated_by=ctx.user_id)
    return {"key": key, "value": body.value}


async def _delete_setting(ctx: AdminContext, key: str, body: DeleteSettingAction) -> Dict[str, Any]:
    if not await settings_service.delete_setting(key):
        raise NotFound("Setting not found")
    return {"key": key}


SETTING_HANDLERS = {"upsert": _upsert_setting, "delete": _delete_setting}


async def run_settings_action(ctx: AdminContext, body) -> Dict[str, Any]:
    key = clean_setting_key(body.key)
    details = await SETTING_HANDLERS[body.action](ctx, key, body)
    await ctx.audit(f"admin_setting_{body.action}", Severity.CRITICAL, details=details)
    return {"success": True, **details}


# ============================================================================
# SECURITY
# ============================================================================

class ForceLogoutAllAction(CamelModel):
    action: Literal["force_logout_all"]

class ForceLogoutUserAction(CamelModel):
    action: Literal["force_logout_user"]
    user_id: str

class MaintenanceModeAction(CamelModel):
    action: Literal["maintenance_mode"]
    enabled: bool
    message: Optional[str] = None

SecurityActionRequest = Annotated[
    Union[ForceLogoutAllAction, ForceLogoutUserAction, MaintenanceModeAction],
    Field(discriminator="action"),
]


async def _force_logout_all(ctx: AdminContext, body: ForceLogoutAllAction) -> Dict[str, Any]:
    value = {"timestamp": _now().isoformat()}
    await settings_service.upsert_setting(FORCE_LOGOUT_KEY, value, updated_by=ctx.user_id)
    return value


async def _force_logout_user(ctx: AdminContext, body: ForceLogoutUserAction) -> Dict[str, Any]:
    (user_id,) = validate_ids([body.user_id], "userId")
    await assert_no_super_admin_targets([user_id])
    db = database.get_db()
    result = await db.profiles.update_one(
        {"id": user_id},
        {"$set": {"is_banned": True, "banned_at": _now(), "ban_reason": "force_logout"}},
    )
    if result.matched_count == 0:
        raise NotFound("User not found")
    return {"userId": user_id}


async def _maintenance_mode(ctx: AdminContext, body: MaintenanceModeAction) -> Dict[str, Any]:
    value = {"enabled": body.enabled, "message": sanitize_text(body.message, 300)}
    await settings_service.upsert_setting(MAINTENANCE_BANNER_KEY, value, updated_by=ctx.user_id)
    return value


SECURITY_HANDLERS = {
    "force_logout_all": _force_logout_all,
    "force_logout_user": _force_logout_user,
    "maintenance_mode": _maintenance_mode,
}


async def run_security_action(ctx: AdminContext, body) -> Dict[str, Any]:
    details = await SECURITY_HANDLERS[body.action](ctx, body)
    await ctx.audit(
        f"admin_security_{body.action}",
        Severity.CRITICAL,
        target_user_id=details.get("userId"),
        details={"action": body.action, **details},
    )
    return {"success": True, **details}


# ============================================================================
# REPORTS
# ============================================================================

class _ReportBatch(_Batch):
    report_id: Optional[str] = None
    report_ids: List[str] = Field(default_factory=list, max_length=MAX_BATCH)

    @model_validator(mode="after")
    def collect_report_ids(self):
        if not self.report_ids and self.report_id:
            self.report_ids = [self.report_id]
        return self

class ReportStatusAction(_ReportBatch):
    action: Literal["resolve", "reopen"]

class RemoveTargetAction(_ReportBatch):
    action: Literal["remove_target"]

ReportsActionRequest = Annotated[Union[ReportStatusAction, RemoveTargetAction], Field(discriminator="action")]

# Report target_type -> collection the reported item lives in
REMOVABLE_CONTENT = {"project": "projects", "message": "chat_messages", "chat_message": "chat_messages"}


async def _set_report_status(ctx: AdminContext, body: ReportStatusAction) -> Dict[str, Any]:
    ids = validate_ids(body.report_ids, "reportIds")
    resolving = body.action == "resolve"
    status = ReportStatus.RESOLVED if resolving else ReportStatus.OPEN
    db = database.get_db()
    result = await db.reports.update_many(
        {"id": {"$in": ids}},
        {"$set": {
            "status": status.value,
            "resolved_by": ctx.user_id if resolving else None,
            "resolved_at": _now() if resolving else None,
            "updated_at": _now(),
        }},
    )
    return {"reportIds": ids, "updated": result.modified_count}


async def _remove_target(ctx: AdminContext, body: RemoveTargetAction) -> Dict[str, Any]:
    ids = validate_ids(body.report_ids, "reportIds")
    db = database.get_db()
    reports = await db.reports.find(
        {"id": {"$in": ids}}, {"_id": 0, "id": 1, "target_type": 1, "target_id": 1}
    ).to_list(len(ids))
    if not reports:
        raise NotFound("Report not found")

    unsupported = sorted({
        str(r.get("target_type")) for r in reports
        if r.get("target_type") != "user" and r.get("target_type") not in REMOVABLE_CONTENT
    })
    if unsupported:
        raise ValidationError(f"Unsupported report target: {', '.join(unsupported)}", code="invalid_report_target")
    user_targets = [r["target_id"] for r in reports if r.get("target_type") == "user"]
    if user_targets:
        await assert_no_super_admin_targets(user_targets)

    for report in reports:
        target_type, target_id = report["target_type"], report.get("target_id")
        if target_type == "user":
            await db.profiles.update_one(
                {"id": target_id},
                {"$set": {"is_banned": True, "banned_at": _now(), "deleted_at": _now(), "ban_reason": "report"}},
            )
        else:
            await db[REMOVABLE_CONTENT[target_type]].delete_one({"id": target_id})

    found = [r["id"] for r in reports]
    await db.reports.update_many(
        {"id": {"$in": found}},
        {"$set": {"status": ReportStatus.RESOLVED.value, "resolved_by": ctx.user_id,
                  "resolved_at": _now(), "updated_at": _now()}},
    )
    return {
        "reportIds": found,
        "targets": [{"type": r["target_type"], "id": r.get("target_id")} for r in reports],
        "userIds": user_targets,
    }


REPORT_HANDLERS = {"resolve": _set_report_status, "reopen": _set_report_status, "remove_target": _remove_target}


async def run_reports_action(ctx: AdminContext, body) -> Dict[str, Any]:
    details = await REPORT_HANDLERS[body.action](ctx, body)
    severity = Severity.CRITICAL if body.action == "remove_target" else Severity.WARNING
    user_ids = details.pop("userIds", [])
    await ctx.audit(
        f"admin_report_{body.action}",
        severity,
        target_user_id=user_ids[0] if len(user_ids) == 1 else None,
        details={"action": body.action, "reason": body.reason, "userIds": user_ids, **details},
    )
    return {"success": True, **details}


# ============================================================================
# PROJECTS / OFFERS
# ============================================================================

class ProjectsActionRequest(_Batch):
    action: Literal["close", "reopen", "delete"]
    project_ids: List[str] = Field(min_length=1, max_length=MAX_BATCH)

class OffersActionRequest(_Batch):
    action: Literal["accept", "reject", "delete"]
    offer_ids: List[str] = Field(min_length=1, max_length=MAX_BATCH)

PROJECT_STATUS = {"close": ProjectStatus.CLOSED, "reopen": ProjectStatus.OPEN}
OFFER_STATUS = {"accept": OfferStatus.ACCEPTED, "reject": OfferStatus.REJECTED}


async def _bulk_status_or_delete(collection, ids: List[str], action: str, statuses: Dict[str, Any]) -> int:
    if action == "delete":
        result = await collection.delete_many({"id": {"$in": ids}})
        return result.deleted_count
    result = await collection.update_many(
        {"id": {"$in": ids}},
        {"$set": {"status": statuses[action].value, "updated_at": _now()}},
    )
    return result.modified_count


async def run_projects_action(ctx: AdminContext, body: ProjectsActionRequest) -> Dict[str, Any]:
    ids = validate_ids(body.project_ids, "projectIds")
    db = database.get_db()
    changed = await _bulk_status_or_delete(db.projects, ids, body.action, PROJECT_STATUS)
    await ctx.audit(
        f"admin_project_{body.action}",
        Severity.WARNING,
        details={"action": body.action, "projectIds": ids, "changed": changed, "reason": body.reason},
    )
    return {"success": True, "changed": changed}


async def run_offers_action(ctx: AdminContext, body: OffersActionRequest) -> Dict[str, Any]:
    ids = validate_ids(body.offer_ids, "offerIds")
    db = database.get_db()
    changed = await _bulk_status_or_delete(db.offers, ids, body.action, OFFER_STATUS)
    await ctx.audit(
        f"admin_offer_{body.action}",
        Severity.WARNING,
        details={"action": body.action, "offerIds": ids, "changed": changed, "reason": body.reason},
    )
    return {"success": True, "changed": changed}


# ============================================================================
# CONVERSATIONS
# ============================================================================

class ChatAction(_Batch):
    action: Literal["delete_chat", "clear_messages"]
    chat_id: str

class BlockAction(_Batch):
    action: Literal["block_user", "unblock_user"]
    blocker_id: str
    blocked_id: str

ConversationsActionRequest = Annotated[Union[ChatAction, BlockAction], Field(discriminator="action")]


async def _delete_chat(ctx: AdminContext, body: ChatAction) -> Dict[str, Any]:
    (chat_id,) = validate_ids([body.chat_id], "chatId")
    db = database.get_db()
    messages = await db.chat_messages.delete_many({"chat_id": chat_id})
    chats = await db.chats.delete_one({"id": chat_id})
    if not chats.deleted_count and not messages.deleted_count:
        raise NotFound(code="Chat not found")
    return {"chatId": chat_id, "messagesDeleted": messages.deleted_count}


async def _clear_messages(ctx: AdminContext, body: ChatAction) -> Dict[str, Any]:
    (chat_id,) = validate_ids([body.chat_id], "chatId")
    db = database.get_db()
    messages = await db.chat_messages.delete_many({"chat_id": chat_id})
    return {"chatId": chat_id, "messagesDeleted": messages.deleted_count}


async def _block(ctx: AdminContext, body: BlockAction) -> Dict[str, Any]:
    blocker_id, blocked_id = validate_ids([body.blocker_id], "blockerId") + validate_ids([body.blocked_id], "blockedId")
    pair = {"blocker_id": blocker_id, "blocked_id": blocked_id}
    db = database.get_db()
    if body.action == "block_user":
        await db.blocked_users.update_one(
            pair,
            {"$setOnInsert": {"blocked_by": ctx.user_id, "created_at": _now()}},
            upsert=True,
        )
    else:
        await db.blocked_users.delete_one(pair)
    return {"blockerId": blocker_id, "blockedId": blocked_id}


CONVERSATION_HANDLERS: Dict[str, Handler] = {
    "delete_chat": _delete_chat,
    "clear_messages": _clear_messages,
    "block_user": _block,
    "unblock_user": _block,
}


async def run_conversations_action(ctx: AdminContext, body) -> Dict[str, Any]:
    details = await CONVERSATION_HANDLERS[body.action](ctx, body)
    await ctx.audit(
        f"admin_conversation_{body.action}",
        Severity.WARNING,
        target_user_id=details.get("blockedId"),
        details={"action": body.action, "reason": body.reason, **details},
    )
    return {"success": True, **details}


# ============================================================================
# FEATURE FLAGS
# ============================================================================

class _NamedFlag(CamelModel):
    name: str
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def clean_name(cls, value):
        name = re.sub(r"\s+", "_", sanitize_text(value, 64).lower())
        if not name:
            raise ValueError("Missing name")
        return name

    @field_validator("description")
    @classmethod
    def clean_description(cls, value):
        return sanitize_text(value, 300) or None

class ToggleFlagAction(CamelModel):
    action: Literal["toggle"]
    id: str
    enabled: bool

class UpdateFlagAction(_NamedFlag):
    action: Literal["update"]
    id: str

class CreateFlagAction(_NamedFlag):
    action: Literal["create"]
    enabled: bool = False

class DeleteFlagAction(CamelModel):
    action: Literal["delete"]
    id: str

FeatureFlagsActionRequest = Annotated[
    Union[ToggleFlagAction, UpdateFlagAction, CreateFlagAction, DeleteFlagAction],
    Field(discriminator="action"),
]


async def _assert_flag_name_free(db, name: str, flag_id: Optional[str] = None) -> None:
    query: Dict[str, Any] = {"name": name}
    if flag_id:
        query["id"] = {"$ne": flag_id}
    if await db.feature_flags.find_one(query, {"_id": 0, "id": 1}):
        raise ConflictError(code="Feature flag already exists")


async def _update_flag(ctx: AdminContext, body) -> Dict[str, Any]:
    (flag_id,) = validate_ids([body.id], "id")
    db = database.get_db()
    if body.action == "toggle":
        changes = {"enabled": body.enabled}
    else:
        await _assert_flag_name_free(db, body.name, flag_id)
        changes = {"name": body.name, "description": body.description}
    result = await db.feature_flags.update_one(
        {"id": flag_id},
        {"$set": {**changes, "updated_by": ctx.user_id, "updated_at": _now()}},
    )
    if not result.matched_count:
        raise NotFound(code="Feature flag not found")
    return {"id": flag_id, **changes}


async def _create_flag(ctx: AdminContext, body: CreateFlagAction) -> Dict[str, Any]:
    db = database.get_db()
    await _assert_flag_name_free(db, body.name)
    flag = FeatureFlag(name=body.name, enabled=body.enabled, description=body.description, updated_by=ctx.user_id)
    await db.feature_flags.insert_one(flag.model_dump())
    return {"id": flag.id, "name": flag.name, "enabled": flag.enabled}


async def _delete_flag(ctx: AdminContext, body: DeleteFlagAction) -> Dict[str, Any]:
    (flag_id,) = validate_ids([body.id], "id")
    result = await database.get_db().feature_flags.delete_one({"id": flag_id})
    if not result.deleted_count:
        raise NotFound(code="Feature flag not found")
    return {"id": flag_id}


FEATURE_FLAG_HANDLERS: Dict[str, Handler] = {
    "toggle": _update_flag,
    "update": _update_flag,
    "create": _create_flag,
    "delete": _delete_flag,
}


async def run_feature_flags_action(ctx: AdminContext, body) -> Dict[str, Any]:
    details = await FEATURE_FLAG_HANDLERS[body.action](ctx, body)
    await ctx.audit(
        f"admin_feature_flag_{body.action}",
        Severity.WARNING,
        details={"action": body.action, **details},
    )
    return {"success": True, **details}
