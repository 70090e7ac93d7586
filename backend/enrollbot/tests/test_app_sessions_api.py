"""
Route tests for the desktop client API and the Stripe webhook.

The app under test mounts the real routers with the database dependency
pointed at the per-test SQLite engine and the response signer pointed at a
throwaway Ed25519 key.
"""

import base64
import hashlib
import hmac
import json
import time

import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from enrollbot.api.routes import app_sessions, health, webhooks_stripe
from enrollbot.database.session import get_db_session
from enrollbot.models.launch_session import LaunchSession
from enrollbot.models.session_termination import SessionTermination
from enrollbot.models.user import User
from enrollbot.platform.response_signing import ResponseSigner, get_response_signer
from enrollbot.services.purchase_ledger import PurchaseLedger

WEBHOOK_SECRET = "whsec_test_secret"

DEVICE_BODY = {
    "core_count": 8,
    "cpu_speed": 3200,
    "system_arch": "x86_64",
    "os": "Windows",
    "name": "dorm-desktop",
    "target_courses": [{"course_id": "CSC108", "section": "LEC0101"}],
}


@pytest.fixture(scope="module")
def signing_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture
def app(session_factory, signing_key):
    app = FastAPI()
    app.include_router(health.router)
    app.include_router(app_sessions.router)
    app.include_router(webhooks_stripe.router)

    def _override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = _override_db
    app.dependency_overrides[get_response_signer] = lambda: ResponseSigner(signing_key)
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def alice(make_user):
    return make_user("alice", credits=2, authentication_key="alice-key")


def _auth(username="alice", key="alice-key"):
    return {"X-Enrollbot-User": username, "X-Enrollbot-Key": key}


def _sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def _verify_status(signing_key, body: dict, username: str = "alice") -> None:
    data = body["data"]
    assert data["username"] == username
    assert data["status"] == "Success"
    assert data["reason"] == "OK"
    message = f"{data['username']},{data['status']},{data['reason']},{data['response_timestamp']}"
    signing_key.public_key().verify(base64.b64decode(body["signature"]), message.encode("utf-8"))


def _start(client) -> int:
    response = client.post("/api/app/sessions", json=DEVICE_BODY, headers=_auth())
    return response.json()["data"]["session_id"]


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestAuthentication:

    def test_missing_headers_rejected(self, client, alice):
        assert client.get("/api/app/entitlement").status_code == 401

    def test_wrong_key_rejected(self, client, alice):
        response = client.get("/api/app/entitlement", headers=_auth(key="nope"))
        assert response.status_code == 401

    def test_unknown_user_rejected(self, client):
        response = client.get("/api/app/entitlement", headers=_auth(username="ghost"))
        assert response.status_code == 401


class TestSessionRoutes:

    def test_entitlement(self, client, alice):
        response = client.get("/api/app/entitlement", headers=_auth())

        assert response.status_code == 200
        assert response.json() == {
            "username": "alice",
            "grant_level": "Full",
            "current_credits": 2,
            "demo_available": True,
        }

    def test_full_lifecycle(self, client, alice, db_session, signing_key):
        started = client.post("/api/app/sessions", json=DEVICE_BODY, headers=_auth())
        assert started.status_code == 201
        data = started.json()["data"]
        assert data["username"] == "alice"
        assert data["grant_level"] == "Full"
        assert data["courses"] == [{"course_id": "CSC108", "section": "LEC0101"}]
        session_id = data["session_id"]

        ping = client.post(f"/api/app/sessions/{session_id}/ping", json={}, headers=_auth())
        assert ping.status_code == 200
        _verify_status(signing_key, ping.json())

        registered = client.post(
            f"/api/app/sessions/{session_id}/registrations",
            json={"course_id": "CSC108", "section": "LEC0101"},
            headers=_auth(),
        )
        assert registered.status_code == 200
        _verify_status(signing_key, registered.json())

        stopped = client.post(
            f"/api/app/sessions/{session_id}/stop",
            json={"did_finish": True, "reason": "done", "avg_cycle_time": 2.5},
            headers=_auth(),
        )
        assert stopped.status_code == 200
        _verify_status(signing_key, stopped.json())

        db_session.expire_all()
        assert db_session.get(User, "alice").current_credits == 1
        record = db_session.get(SessionTermination, session_id)
        assert record.unknown_crash is False
        assert record.avg_cycle_time == pytest.approx(2.5)

    def test_stop_records_unknown_crash(self, client, alice, db_session):
        session_id = _start(client)

        response = client.post(
            f"/api/app/sessions/{session_id}/stop",
            json={"did_finish": False, "unknown_crash": True, "reason": "recovered after crash"},
            headers=_auth(),
        )

        assert response.status_code == 200
        db_session.expire_all()
        record = db_session.get(SessionTermination, session_id)
        assert record.unknown_crash is True
        assert record.did_finish is False
        assert record.reason == "recovered after crash"

    def test_future_dated_ping_rejected(self, client, alice, db_session):
        session_id = _start(client)
        launched = db_session.get(LaunchSession, session_id).last_heartbeat_at

        response = client.post(
            f"/api/app/sessions/{session_id}/ping",
            json={"timestamp": int(time.time()) + 365 * 24 * 3600},
            headers=_auth(),
        )

        assert response.status_code == 400
        db_session.expire_all()
        assert db_session.get(LaunchSession, session_id).last_heartbeat_at == launched

    def test_lagging_client_ping_accepted(self, client, alice):
        session_id = _start(client)

        response = client.post(
            f"/api/app/sessions/{session_id}/ping",
            json={"timestamp": int(time.time()) - 600},
            headers=_auth(),
        )

        assert response.status_code == 200

    def test_second_launch_conflicts(self, client, alice):
        client.post("/api/app/sessions", json=DEVICE_BODY, headers=_auth())

        response = client.post(
            "/api/app/sessions",
            json={**DEVICE_BODY, "os": "macOS"},
            headers=_auth(),
        )

        assert response.status_code == 409
        assert "active session running on your Windows device" in response.json()["detail"]

    def test_ended_session_is_gone(self, client, alice):
        session_id = _start(client)
        client.post(f"/api/app/sessions/{session_id}/stop", json={"did_finish": False}, headers=_auth())

        ping = client.post(f"/api/app/sessions/{session_id}/ping", json={}, headers=_auth())
        stop = client.post(f"/api/app/sessions/{session_id}/stop", json={"did_finish": False}, headers=_auth())
        registration = client.post(
            f"/api/app/sessions/{session_id}/registrations",
            json={"course_id": "CSC108", "section": "LEC0101"},
            headers=_auth(),
        )

        assert ping.status_code == 410
        assert stop.status_code == 410
        assert registration.status_code == 410

    def test_cannot_touch_another_users_session(self, client, alice, make_user):
        make_user("mallory", authentication_key="mallory-key")
        session_id = _start(client)

        response = client.post(
            f"/api/app/sessions/{session_id}/stop",
            json={"did_finish": False},
            headers=_auth("mallory", "mallory-key"),
        )

        assert response.status_code == 410
        still_alive = client.post(f"/api/app/sessions/{session_id}/ping", json={}, headers=_auth())
        assert still_alive.status_code == 200

    def test_invalid_body_rejected(self, client, alice):
        response = client.post("/api/app/sessions", json={"os": "Windows"}, headers=_auth())
        assert response.status_code == 422


class TestSignedResponses:

    def test_start_permission_is_signed(self, client, alice, signing_key):
        body = client.post("/api/app/sessions", json=DEVICE_BODY, headers=_auth()).json()
        data = body["data"]

        message = f"{data['username']},{data['grant_level']},{data['session_id']},{data['response_timestamp']}"
        signing_key.public_key().verify(base64.b64decode(body["signature"]), message.encode("utf-8"))
        assert abs(data["response_timestamp"] - int(time.time())) < 60

    def test_altered_grant_fails_verification(self, client, alice, signing_key):
        body = client.post("/api/app/sessions", json=DEVICE_BODY, headers=_auth()).json()
        data = body["data"]

        forged = f"{data['username']},Demo,{data['session_id']},{data['response_timestamp']}"
        with pytest.raises(InvalidSignature):
            signing_key.public_key().verify(base64.b64decode(body["signature"]), forged.encode("utf-8"))

    def test_other_key_does_not_verify(self, client, alice):
        session_id = _start(client)
        body = client.post(f"/api/app/sessions/{session_id}/ping", json={}, headers=_auth()).json()

        with pytest.raises(InvalidSignature):
            _verify_status(Ed25519PrivateKey.generate(), body)

    def test_unconfigured_signer_starts_nothing(self, app, client, alice, db_session):
        def _unconfigured():
            raise HTTPException(status_code=503, detail="Response signing not configured")

        app.dependency_overrides[get_response_signer] = _unconfigured

        response = client.post("/api/app/sessions", json=DEVICE_BODY, headers=_auth())

        assert response.status_code == 503
        assert db_session.query(LaunchSession).count() == 0


class TestStripeWebhookRoute:

    @pytest.fixture(autouse=True)
    def _secret(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

    def _completed(self, checkout_id="cs_test_1"):
        return json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": checkout_id,
                "object": "checkout.session",
                "payment_status": "paid",
                "amount_total": 900,
            }},
        })

    def test_signed_event_credits_user(self, client, alice, db_session, clock):
        PurchaseLedger(db_session, clock=clock).open("alice", 4, 9.0, "cs_test_1")
        payload = self._completed()

        response = client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": _sign(payload), "content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["received"] is True
        db_session.expire_all()
        assert db_session.get(User, "alice").current_credits == 6

    def test_bad_signature_rejected(self, client, alice):
        payload = self._completed()

        response = client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": _sign(payload, secret="whsec_other")},
        )

        assert response.status_code == 400

    def test_missing_signature_rejected(self, client):
        response = client.post("/api/webhooks/stripe", content=self._completed())
        assert response.status_code == 400

    def test_unknown_checkout_still_acknowledged(self, client):
        payload = self._completed("cs_unknown")

        response = client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": _sign(payload)},
        )

        assert response.status_code == 200

    def test_unconfigured_secret_returns_503(self, client, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
        payload = self._completed()

        response = client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": _sign(payload)},
        )

        assert response.status_code == 503
