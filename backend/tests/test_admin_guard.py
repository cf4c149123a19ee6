"""
Admin mutation guard: rate limit, auth/role gates and idempotency keys,
plus both guard stores driven by a controllable clock.
"""
import uuid

import pytest

from utils.rate_limiter import MemoryGuardStore, MongoGuardStore, retry_after_seconds


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


# =============================================================================
# Gates through the HTTP surface
# =============================================================================

def test_121st_request_in_window_is_rate_limited(client, fake_db, make_profile, auth_headers):
    admin = make_profile(role="admin")
    headers = auth_headers(admin)

    for _ in range(120):
        assert client.get("/api/admin/users-list", headers=headers).status_code == 200

    response = client.get("/api/admin/users-list", headers=headers)
    assert response.status_code == 429
    assert response.json() == {"error": "Too many admin requests. Please retry shortly."}
    assert int(response.headers["Retry-After"]) >= 1

    # Buckets are per route
    assert client.get("/api/admin/reports-list", headers=headers).status_code == 200


def test_rate_limit_is_per_client_ip(client, fake_db, make_profile, auth_headers, monkeypatch):
    monkeypatch.setattr("services.admin_guard.ADMIN_RATE_LIMIT_MAX", 2)
    admin = make_profile(role="admin")
    first_ip = {**auth_headers(admin), "X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
    second_ip = {**auth_headers(admin), "X-Forwarded-For": "198.51.100.2"}

    assert client.get("/api/admin/users-list", headers=first_ip).status_code == 200
    assert client.get("/api/admin/users-list", headers=first_ip).status_code == 200
    assert client.get("/api/admin/users-list", headers=first_ip).status_code == 429
    assert client.get("/api/admin/users-list", headers=second_ip).status_code == 200


def test_rate_limit_applies_before_authentication(client, fake_db, monkeypatch):
    monkeypatch.setattr("services.admin_guard.ADMIN_RATE_LIMIT_MAX", 1)
    assert client.get("/api/admin/users-list").status_code == 401
    assert client.get("/api/admin/users-list").status_code == 429


def test_unauthenticated_request(client, fake_db):
    response = client.get("/api/admin/users-list", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_non_admin_role_is_forbidden(client, fake_db, make_profile, auth_headers):
    contractor = make_profile(role="contractor")
    response = client.get("/api/admin/users-list", headers=auth_headers(contractor))
    assert response.status_code == 403
    assert response.json() == {"error": "Forbidden"}


def test_moderator_cannot_open_senior_routes(client, fake_db, make_profile, auth_headers):
    moderator = make_profile(role="moderator")
    assert client.get("/api/admin/users-list", headers=auth_headers(moderator)).status_code == 200
    assert client.get("/api/admin/subscriptions-list", headers=auth_headers(moderator)).status_code == 403
    assert client.get("/api/admin/settings-list", headers=auth_headers(moderator)).status_code == 403


@pytest.mark.parametrize("flags", [{"is_banned": True}, {"deleted_at": "2026-01-01T00:00:00+00:00"}])
def test_disabled_admin_is_forbidden(client, fake_db, make_profile, auth_headers, flags):
    admin = make_profile(role="super_admin", **flags)
    response = client.get("/api/admin/users-list", headers=auth_headers(admin))
    assert response.status_code == 403
    assert response.json() == {"error": "Admin account disabled"}


def test_mutation_without_idempotency_key(client, fake_db, make_profile, auth_headers):
    admin = make_profile(role="admin")
    target = make_profile()

    response = client.post(
        "/api/admin/users-action",
        json={"action": "ban", "userIds": [target["id"]]},
        headers=auth_headers(admin),
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Missing X-Idempotency-Key header"}
    assert fake_db.profiles.docs[1]["is_banned"] is False


@pytest.mark.parametrize("key", ["short", "k" * 129])
def test_idempotency_key_length_is_checked(client, fake_db, make_profile, admin_headers, key):
    admin = make_profile(role="admin")
    target = make_profile()

    response = client.post(
        "/api/admin/users-action",
        json={"action": "ban", "userIds": [target["id"]]},
        headers=admin_headers(admin, key=key),
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid idempotency key"}


def test_reused_idempotency_key_is_rejected_without_side_effects(client, fake_db, make_profile, admin_headers):
    admin = make_profile(role="admin")
    first, second = make_profile(), make_profile()
    key = uuid.uuid4().hex

    response = client.post(
        "/api/admin/users-action",
        json={"action": "ban", "userIds": [first["id"]]},
        headers=admin_headers(admin, key=key),
    )
    assert response.status_code == 200

    response = client.post(
        "/api/admin/users-action",
        json={"action": "ban", "userIds": [second["id"]]},
        headers=admin_headers(admin, key=key),
    )
    assert response.status_code == 409
    assert response.json() == {"error": "Duplicate admin mutation request"}

    banned = {p["id"] for p in fake_db.profiles.docs if p.get("is_banned")}
    assert banned == {first["id"]}
    assert [e["event_type"] for e in fake_db.security_events.docs] == ["admin_user_ban"]


def test_same_key_on_another_route_is_independent(client, fake_db, make_profile, admin_headers):
    admin = make_profile(role="admin")
    target = make_profile()
    fake_db.projects.seed({"id": str(uuid.uuid4()), "status": "open"})
    key = uuid.uuid4().hex

    assert client.post(
        "/api/admin/users-action",
        json={"action": "verify", "userIds": [target["id"]]},
        headers=admin_headers(admin, key=key),
    ).status_code == 200
    assert client.post(
        "/api/admin/projects-action",
        json={"action": "close", "projectIds": [fake_db.projects.docs[0]["id"]]},
        headers=admin_headers(admin, key=key),
    ).status_code == 200


def test_guard_runs_before_body_validation(client, fake_db, make_profile, auth_headers):
    admin = make_profile(role="admin")
    response = client.post("/api/admin/users-action", json={"action": "explode"}, headers=auth_headers(admin))
    assert response.status_code == 400
    assert response.json() == {"error": "Missing X-Idempotency-Key header"}


def test_unknown_action_is_validation_error(client, fake_db, make_profile, admin_headers):
    admin = make_profile(role="admin")
    response = client.post("/api/admin/users-action", json={"action": "explode"}, headers=admin_headers(admin))
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


# =============================================================================
# Stores
# =============================================================================

def test_retry_after_is_never_below_one_second():
    assert retry_after_seconds(100.2, 100.0) == 1
    assert retry_after_seconds(100.0, 100.0) == 1
    assert retry_after_seconds(130.5, 100.0) == 31


@pytest.mark.asyncio
async def test_memory_store_window_resets():
    clock = Clock()
    store = MemoryGuardStore(clock=clock)

    assert await store.hit("ip:/route", 2, 60) == (True, 0)
    assert await store.hit("ip:/route", 2, 60) == (True, 0)
    clock.now += 15.5
    assert await store.hit("ip:/route", 2, 60) == (False, 45)
    # Rejected requests do not extend or grow the bucket
    assert store.buckets["ip:/route"]["count"] == 2

    clock.now += 45
    assert await store.hit("ip:/route", 2, 60) == (True, 0)


@pytest.mark.asyncio
async def test_memory_store_idempotency_ttl_and_sweep():
    clock = Clock()
    store = MemoryGuardStore(clock=clock)

    assert await store.claim_idempotency_key("u:/r:key", 600)
    assert not await store.claim_idempotency_key("u:/r:key", 600)
    clock.now += 601
    assert await store.claim_idempotency_key("u:/r:key", 600)

    await store.hit("ip:/route", 5, 60)
    clock.now += 700
    assert await store.sweep() == 2
    assert store.buckets == {}
    assert store.idempotency_keys == {}


@pytest.mark.asyncio
async def test_mongo_store_counts_within_window(fake_db):
    clock = Clock()
    store = MongoGuardStore(clock=clock)

    assert await store.hit("ip:/route", 2, 60) == (True, 0)
    assert await store.hit("ip:/route", 2, 60) == (True, 0)
    clock.now += 20
    assert await store.hit("ip:/route", 2, 60) == (False, 40)
    assert fake_db.admin_rate_limits.docs[0]["count"] == 2

    clock.now += 41
    assert await store.hit("ip:/route", 2, 60) == (True, 0)
    assert fake_db.admin_rate_limits.docs[0]["count"] == 1


@pytest.mark.asyncio
async def test_mongo_store_idempotency_claims(fake_db):
    clock = Clock()
    store = MongoGuardStore(clock=clock)

    assert await store.claim_idempotency_key("u:/r:key", 600)
    assert not await store.claim_idempotency_key("u:/r:key", 600)
    clock.now += 600
    # Expired record still present until TTL removal; the claim takes it over
    assert await store.claim_idempotency_key("u:/r:key", 600)
    assert not await store.claim_idempotency_key("u:/r:key", 600)


@pytest.mark.asyncio
async def test_mongo_store_sweep_removes_expired(fake_db):
    clock = Clock()
    store = MongoGuardStore(clock=clock)
    await store.hit("ip:/a", 5, 60)
    await store.claim_idempotency_key("u:/r:key", 600)

    clock.now += 120
    assert await store.sweep() == 1
    clock.now += 600
    assert await store.sweep() == 1
    assert fake_db.admin_rate_limits.docs == []
    assert fake_db.admin_idempotency_keys.docs == []


@pytest.mark.asyncio
async def test_guard_sweep_job(fake_db):
    from job_runner import run_guard_sweep
    from utils.rate_limiter import guard_store

    await guard_store.hit("ip:/route", 5, 60)
    result = await run_guard_sweep()
    assert result["count"] == 0
    assert "message" in result
