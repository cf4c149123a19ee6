"""
Quota enforcement and offer submission.

Decision order is role -> subscription -> plan -> monthly limit; a denied
submission writes nothing, an allowed one increments the counter once.
"""
import uuid

import pytest

from services.quota_service import (
    OFFER_LIMIT_REACHED, ROLE_MISMATCH, SUBSCRIPTION_REQUIRED, can_submit_offer,
)


def _contractor(**fields):
    user = {"id": "c-1", "role": "contractor", "subscription_status": "active", "plan_type": "basic",
            "offer_count_this_month": 0}
    user.update(fields)
    return user


class TestCanSubmitOffer:

    def test_basic_below_limit_is_allowed(self):
        decision = can_submit_offer(_contractor(offer_count_this_month=9))
        assert decision.allowed
        assert decision.limit == 10
        assert decision.used == 9

    def test_basic_at_limit_is_denied(self):
        decision = can_submit_offer(_contractor(offer_count_this_month=10))
        assert not decision.allowed
        assert decision.reason == OFFER_LIMIT_REACHED
        assert decision.limit == 10
        assert decision.used == 10

    def test_pro_is_unlimited(self):
        decision = can_submit_offer(_contractor(plan_type="pro", offer_count_this_month=5000))
        assert decision.allowed
        assert decision.limit is None

    def test_role_checked_before_subscription(self):
        decision = can_submit_offer(_contractor(role="project_owner", subscription_status="none"))
        assert decision.reason == ROLE_MISMATCH

    @pytest.mark.parametrize("status", ["past_due", "canceled", "none", None])
    def test_inactive_subscription_is_denied(self, status):
        decision = can_submit_offer(_contractor(subscription_status=status, offer_count_this_month=0))
        assert decision.reason == SUBSCRIPTION_REQUIRED

    def test_active_without_known_plan_is_denied(self):
        assert can_submit_offer(_contractor(plan_type=None)).reason == SUBSCRIPTION_REQUIRED
        assert can_submit_offer(_contractor(plan_type="gold")).reason == SUBSCRIPTION_REQUIRED

    def test_missing_counter_counts_as_zero(self):
        user = _contractor()
        del user["offer_count_this_month"]
        assert can_submit_offer(user).allowed

    def test_limit_error_body(self):
        error = can_submit_offer(_contractor(offer_count_this_month=10)).to_error()
        assert error.status_code == 403
        assert error.to_body() == {
            "error": "offer_limit_reached",
            "message": "Offer limit of 10 reached for this billing cycle.",
            "limit": 10,
            "used": 10,
        }


def _offer_body(**fields):
    body = {
        "projectId": str(uuid.uuid4()),
        "ownerId": str(uuid.uuid4()),
        "priceChf": 1200,
        "content": "We can start next Monday.",
    }
    body.update(fields)
    return body


class TestSubmitOfferRoute:

    def test_ninth_to_tenth_offer_then_limit(self, client, fake_db, make_profile, auth_headers):
        user = make_profile(subscription_status="active", plan_type="basic", offer_count_this_month=9)
        fake_db.projects.seed({"id": "p-1", "title": "Kitchen renovation"})

        response = client.post("/api/offers/submit", json=_offer_body(projectId="p-1"), headers=auth_headers(user))
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["offerCountThisMonth"] == 10
        assert data["limit"] == 10

        offer = fake_db.offers.docs[0]
        assert offer["id"] == data["offerId"]
        assert offer["contractor_id"] == user["id"]
        assert offer["status"] == "submitted"
        chat = fake_db.chats.docs[0]
        assert chat["id"] == data["chatId"]
        assert chat["project_title"] == "Kitchen renovation"
        assert fake_db.chat_messages.docs[0]["chat_id"] == chat["id"]

        response = client.post("/api/offers/submit", json=_offer_body(projectId="p-1"), headers=auth_headers(user))
        assert response.status_code == 403
        assert response.json() == {
            "error": "offer_limit_reached",
            "message": "Offer limit of 10 reached for this billing cycle.",
            "limit": 10,
            "used": 10,
        }
        assert len(fake_db.offers.docs) == 1
        assert fake_db.profiles.docs[0]["offer_count_this_month"] == 10

    def test_same_project_and_owner_reuse_chat(self, client, fake_db, make_profile, auth_headers):
        user = make_profile(subscription_status="active", plan_type="pro", offer_count_this_month=40)
        body = _offer_body(projectTitle="Roof repair")

        first = client.post("/api/offers/submit", json=body, headers=auth_headers(user)).json()
        second = client.post("/api/offers/submit", json=body, headers=auth_headers(user)).json()

        assert first["chatId"] == second["chatId"]
        assert second["offerCountThisMonth"] == 42
        assert second["limit"] is None
        assert len(fake_db.chats.docs) == 1
        assert len(fake_db.chat_messages.docs) == 2

    def test_past_due_contractor_is_denied_without_writes(self, client, fake_db, make_profile, auth_headers):
        user = make_profile(subscription_status="past_due", plan_type="basic", offer_count_this_month=2)

        response = client.post("/api/offers/submit", json=_offer_body(), headers=auth_headers(user))

        assert response.status_code == 403
        assert response.json()["error"] == "subscription_required"
        assert fake_db.offers.docs == []
        assert fake_db.profiles.docs[0]["offer_count_this_month"] == 2

    def test_project_owner_cannot_submit(self, client, fake_db, make_profile, auth_headers):
        owner = make_profile(role="project_owner")
        response = client.post("/api/offers/submit", json=_offer_body(), headers=auth_headers(owner))
        assert response.status_code == 403
        assert response.json()["error"] == "role_mismatch"

    def test_missing_fields_do_not_consume_quota(self, client, fake_db, make_profile, auth_headers):
        user = make_profile(subscription_status="active", plan_type="basic", offer_count_this_month=3)
        response = client.post("/api/offers/submit", json=_offer_body(content="   "), headers=auth_headers(user))
        assert response.status_code == 400
        assert fake_db.profiles.docs[0]["offer_count_this_month"] == 3

    def test_negative_price_is_validation_error(self, client, fake_db, make_profile, auth_headers):
        user = make_profile(subscription_status="active", plan_type="basic")
        response = client.post("/api/offers/submit", json=_offer_body(priceChf=-5), headers=auth_headers(user))
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_requires_authentication(self, client, fake_db):
        response = client.post("/api/offers/submit", json=_offer_body())
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}


class TestOfferDecision:

    @pytest.fixture
    def submitted(self, client, fake_db, make_profile, auth_headers):
        owner = make_profile(role="project_owner")
        contractor = make_profile(subscription_status="active", plan_type="basic")
        data = client.post(
            "/api/offers/submit",
            json=_offer_body(ownerId=owner["id"], priceChf=1250.5),
            headers=auth_headers(contractor),
        ).json()
        return {"owner": owner, "contractor": contractor, **data}

    def test_owner_accepts_offer_and_chat_is_told(self, client, fake_db, auth_headers, submitted):
        response = client.post(
            "/api/offers/action",
            json={"action": "accept", "offerId": submitted["offerId"]},
            headers=auth_headers(submitted["owner"]),
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "status": "accepted"}
        assert fake_db.offers.docs[0]["status"] == "accepted"
        note = fake_db.chat_messages.docs[-1]
        assert note["chat_id"] == submitted["chatId"]
        assert note["sender_id"] == submitted["owner"]["id"]
        assert note["message"] == "Offer accepted: CHF 1250.50"

    def test_owner_rejects_offer_in_given_chat(self, client, fake_db, auth_headers, submitted):
        response = client.post(
            "/api/offers/action",
            json={"action": "reject", "offerId": submitted["offerId"], "chatId": submitted["chatId"]},
            headers=auth_headers(submitted["owner"]),
        )

        assert response.json() == {"success": True, "status": "rejected"}
        assert fake_db.chat_messages.docs[-1]["message"] == "Offer rejected: CHF 1250.50"

    def test_only_the_owner_decides(self, client, fake_db, auth_headers, submitted):
        response = client.post(
            "/api/offers/action",
            json={"action": "accept", "offerId": submitted["offerId"]},
            headers=auth_headers(submitted["contractor"]),
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Only the project owner can accept/reject this offer"}
        assert fake_db.offers.docs[0]["status"] == "submitted"

    def test_decided_offer_cannot_be_decided_again(self, client, fake_db, auth_headers, submitted):
        body = {"action": "accept", "offerId": submitted["offerId"]}
        headers = auth_headers(submitted["owner"])
        assert client.post("/api/offers/action", json=body, headers=headers).status_code == 200
        messages = len(fake_db.chat_messages.docs)

        response = client.post("/api/offers/action", json={**body, "action": "reject"}, headers=headers)

        assert response.status_code == 400
        assert response.json() == {"error": "Only submitted offers can be accepted/rejected"}
        assert fake_db.offers.docs[0]["status"] == "accepted"
        assert len(fake_db.chat_messages.docs) == messages

    def test_unknown_offer_and_missing_id(self, client, fake_db, make_profile, auth_headers):
        owner = make_profile(role="project_owner")
        headers = auth_headers(owner)

        missing = client.post("/api/offers/action", json={"action": "accept", "offerId": "nope"}, headers=headers)
        assert missing.status_code == 404
        assert missing.json() == {"error": "Offer not found"}

        no_id = client.post("/api/offers/action", json={"action": "accept"}, headers=headers)
        assert no_id.status_code == 400
        assert no_id.json() == {"error": "action and offerId are required"}

        bad_action = client.post("/api/offers/action", json={"action": "counter", "offerId": "x"}, headers=headers)
        assert bad_action.status_code == 400
        assert bad_action.json()["error"] == "validation_error"
