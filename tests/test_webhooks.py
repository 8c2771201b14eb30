"""
Reveniu webhook reconciliation.

Covers:
- Each lifecycle event and its effect on subscription, profile and payments
- Replays (store-level idempotence and cache de-duplication)
- Shared-secret header verification
"""

from datetime import datetime

import httpx
import pytest

from app import config
from app.domain.billing import subscription_service
from app.domain.billing.reveniu_service import ReveniuService
from app.domain.billing.router import get_subscription_service
from app.domain.billing.subscription_service import SubscriptionService
from app.main import app as fastapi_app
from app.models import Payment, Profile, Subscription, SubscriptionStatus

URL = "/webhooks/reveniu"

ACTIVE = SubscriptionStatus.ACTIVE.value
EXPIRED = SubscriptionStatus.EXPIRED.value
CANCELLED = SubscriptionStatus.CANCELLED.value
TRIAL = SubscriptionStatus.TRIAL.value


def event(name, user_id="u1", **data):
    payload = {"subscription_id": 5150, "subscription_external_id": user_id}
    payload.update(data)
    return {"event": name, "data": payload}


def profile_status(db, user_id="u1"):
    db.expire_all()
    return db.get(Profile, user_id).subscription_status


@pytest.fixture()
def profile(make_profile):
    return make_profile("u1")


class TestEndpoint:
    def test_get_answers_ok(self, client):
        assert client.get(URL).json() == {"status": "ok"}

    def test_unknown_event_is_ignored(self, client, profile):
        response = client.post(URL, json=event("subscription_paused"))
        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "event": "subscription_paused"}

    def test_invalid_json_is_400(self, client):
        response = client.post(
            URL, content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_missing_user_is_400(self, client):
        payload = {"event": "subscription_activated", "data": {"subscription_id": 1}}
        assert client.post(URL, json=payload).status_code == 400

    def test_unknown_profile_is_404(self, client):
        response = client.post(URL, json=event("subscription_activated", user_id="ghost"))
        assert response.status_code == 404


class TestWebhookSecret:
    def test_wrong_secret_is_rejected(self, client, profile, monkeypatch):
        monkeypatch.setattr(config, "REVENIU_WEBHOOK_SECRET", "whsec_live")
        response = client.post(
            URL,
            json=event("subscription_activated"),
            headers={"Reveniu-Secret-Key": "whsec_guess"},
        )
        assert response.status_code == 401

    def test_missing_secret_header_is_rejected(self, client, profile, monkeypatch):
        monkeypatch.setattr(config, "REVENIU_WEBHOOK_SECRET", "whsec_live")
        assert client.post(URL, json=event("subscription_activated")).status_code == 401

    def test_matching_secret_is_accepted(self, client, profile, monkeypatch):
        monkeypatch.setattr(config, "REVENIU_WEBHOOK_SECRET", "whsec_live")
        response = client.post(
            URL,
            json=event("subscription_activated"),
            headers={"Reveniu-Secret-Key": "whsec_live"},
        )
        assert response.status_code == 200


class TestActivation:
    def test_activation_upserts_active_subscription(self, client, db, profile):
        response = client.post(URL, json=event("subscription_activated"))

        assert response.json() == {
            "status": "processed",
            "event": "subscription_activated",
            "userId": "u1",
        }
        row = db.query(Subscription).one()
        assert row.status == ACTIVE
        assert row.reveniu_id == "5150"
        assert profile_status(db) == ACTIVE

    def test_activation_links_known_plan(self, client, db, profile, make_plan):
        plan = make_plan()
        client.post(URL, json=event("subscription_activated"))
        assert db.query(Subscription).one().plan_id == plan.id

    def test_replay_leaves_a_single_row(self, client, db, profile):
        client.post(URL, json=event("subscription_activated"))
        client.post(URL, json=event("subscription_activated"))
        assert db.query(Subscription).filter_by(user_id="u1").count() == 1

    def test_user_is_notified_in_background(self, client, profile, monkeypatch):
        sent = []

        async def capture(**kwargs):
            sent.append(kwargs)
            return {"email": {"success": True}}

        monkeypatch.setattr(
            subscription_service, "send_subscription_activated_notification", capture
        )

        client.post(URL, json=event("subscription_activated"))

        [kwargs] = sent
        assert kwargs["email"] == "pro@example.com"
        assert isinstance(kwargs["renewal_date"], datetime)

    def test_notification_failure_keeps_activation(self, client, db, profile, monkeypatch):
        async def broken(**kwargs):
            raise TimeoutError("resend timed out")

        monkeypatch.setattr(
            subscription_service, "send_subscription_activated_notification", broken
        )

        response = client.post(URL, json=event("subscription_activated"))

        assert response.status_code == 200
        assert profile_status(db) == ACTIVE


class TestDeduplication:
    def test_same_delivery_is_processed_once(self, client, profile, fake_redis):
        first = client.post(URL, json=event("subscription_activated"))
        second = client.post(URL, json=event("subscription_activated"))

        assert first.json()["status"] == "processed"
        assert second.json() == {"status": "already_processed"}
        assert len(fake_redis.store) == 1
        [key] = fake_redis.store
        assert key.startswith("webhook_processed:reveniu:")

    def test_failed_delivery_can_be_retried(self, client, make_profile, fake_redis):
        payload = event("subscription_activated", user_id="late")

        assert client.post(URL, json=payload).status_code == 404
        assert fake_redis.store == {}

        make_profile("late")
        assert client.post(URL, json=payload).json()["status"] == "processed"

    def test_distinct_payloads_are_both_processed(self, client, profile, fake_redis):
        client.post(URL, json=event("subscription_activated"))
        response = client.post(URL, json=event("subscription_renewal_cancelled"))
        assert response.json()["status"] == "processed"


class TestPayments:
    def test_payment_succeeded_renews_and_records(self, client, db, profile):
        payload = event(
            "subscription_payment_succeeded",
            amount=8500,
            buy_order="bo-001",
            issued_on="2025-03-01T13:00:00Z",
        )

        response = client.post(URL, json=payload)

        assert response.json()["status"] == "processed"
        payment = db.query(Payment).one()
        assert payment.reveniu_payment_id == "bo-001"
        assert payment.amount == 8500
        assert payment.status == "approved"
        assert payment.payment_date == datetime(2025, 3, 1, 13, 0)
        assert db.query(Subscription).one().status == ACTIVE
        assert profile_status(db) == ACTIVE

    def test_replayed_payment_is_recorded_once(self, client, db, profile):
        payload = event("subscription_payment_succeeded", amount=8500, buy_order="bo-001")
        client.post(URL, json=payload)
        client.post(URL, json=payload)
        assert db.query(Payment).count() == 1

    @pytest.mark.parametrize("amount,expected", [("8500.00", 8500), ("8500", 8500), ("n/a", 0)])
    def test_amount_strings_are_parsed(self, client, db, profile, amount, expected):
        response = client.post(
            URL, json=event("subscription_payment_succeeded", amount=amount, buy_order="bo-002")
        )

        assert response.status_code == 200
        assert db.query(Payment).one().amount == expected

    def test_in_recovery_records_without_status_change(self, client, db, profile):
        response = client.post(
            URL,
            json=event(
                "subscription_payment_in_recovery", buy_order="bo-002", gateway_response="REJECTED"
            ),
        )

        assert response.status_code == 200
        assert db.query(Payment).one().status == "in_recovery"
        assert db.query(Subscription).count() == 0
        assert profile_status(db) == TRIAL

    def test_recovered_payment_is_upgraded(self, client, db, profile):
        client.post(URL, json=event("subscription_payment_in_recovery", buy_order="bo-003"))
        client.post(
            URL, json=event("subscription_payment_succeeded", amount=8500, buy_order="bo-003")
        )

        payment = db.query(Payment).one()
        assert payment.status == "approved"
        assert payment.amount == 8500

    def test_late_recovery_never_downgrades(self, client, db, profile):
        client.post(
            URL, json=event("subscription_payment_succeeded", amount=8500, buy_order="bo-004")
        )
        client.post(URL, json=event("subscription_payment_in_recovery", buy_order="bo-004"))

        assert db.query(Payment).one().status == "approved"


class TestCancellation:
    def test_renewal_cancelled_keeps_profile_access(self, client, db, profile):
        client.post(URL, json=event("subscription_activated"))

        client.post(URL, json=event("subscription_renewal_cancelled", cancelled_by="user"))

        assert db.query(Subscription).one().status == CANCELLED
        assert profile_status(db) == ACTIVE

    def test_deactivated_expires_profile(self, client, db, profile):
        client.post(URL, json=event("subscription_activated"))

        client.post(URL, json=event("subscription_deactivated"))

        row = db.query(Subscription).one()
        assert row.status == CANCELLED
        assert profile_status(db) == EXPIRED

    def test_deactivation_survives_the_consistency_sweep(self, client, db, profile):
        client.post(URL, json=event("subscription_activated"))
        client.post(URL, json=event("subscription_deactivated"))

        result = subscription_service.SubscriptionService(db).sync_profile_statuses()

        assert result["corrected"] == 0
        assert profile_status(db) == EXPIRED

    def test_deactivation_without_subscription_row(self, client, db, make_profile):
        make_profile("u1", status=ACTIVE)

        response = client.post(URL, json=event("subscription_deactivated"))

        assert response.status_code == 200
        assert profile_status(db) == EXPIRED


class TestProviderLookup:
    @pytest.fixture()
    def provider_answers(self, db):
        def _install(handler):
            provider = ReveniuService(
                api_secret="sk_test",
                api_url="https://integration.reveniu.test",
                app_url="https://agenda.example",
                transport=httpx.MockTransport(handler),
            )
            fastapi_app.dependency_overrides[get_subscription_service] = (
                lambda: SubscriptionService(db, provider=provider)
            )

        return _install

    def test_metadata_user_wins_over_external_id(self, client, db, make_profile, provider_answers):
        make_profile("u2")
        provider_answers(
            lambda request: httpx.Response(200, json={"id": 5150, "metadata": {"user_id": "u2"}})
        )

        response = client.post(URL, json=event("subscription_activated", user_id="u1"))

        assert response.json()["userId"] == "u2"
        assert profile_status(db, "u2") == ACTIVE

    @pytest.mark.parametrize(
        "reply",
        [
            lambda request: httpx.Response(200, content=b"<html>maintenance</html>"),
            lambda request: httpx.Response(503),
        ],
        ids=["non_json_body", "server_error"],
    )
    def test_provider_failure_falls_back_to_external_id(
        self, client, db, profile, provider_answers, reply
    ):
        provider_answers(reply)

        response = client.post(URL, json=event("subscription_activated"))

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert profile_status(db) == ACTIVE

    def test_payment_survives_provider_failure(self, client, db, profile, provider_answers):
        provider_answers(lambda request: httpx.Response(200, content=b"not json"))

        response = client.post(
            URL, json=event("subscription_payment_succeeded", amount=8500, buy_order="bo-003")
        )

        assert response.status_code == 200
        assert db.query(Payment).one().reveniu_payment_id == "bo-003"
        assert profile_status(db) == ACTIVE
