"""Integration tests for the HTTP API on the in-memory runtime.

Tests the complete flow including:
- Access request submission and admin review
- Invitation lookup and registration
- Session creation, heartbeat, rotation and logout
- Interview scheduling and access
- Admin role management and maintenance
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from hiq import app as app_module
from hiq.service.runtime import get_runtime
from hiq.storage.documents import ACCESS_REQUESTS, USERS

ADMIN_EMAIL = "owner@hireiq.example"
SESSION = "X-Session-Token"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def runtime():
    return get_runtime()


def _bearer(runtime, email, *, verified=True, password="secret-pass"):
    user = runtime.provider.create_user(email, password, email_verified=verified)
    token = runtime.provider.issue_token(user.uid)
    return user, {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(runtime):
    _, headers = _bearer(runtime, ADMIN_EMAIL)
    return headers


def _session_headers(client, headers):
    response = client.post("/v1/sessions", json={"device": "laptop"}, headers=headers)
    assert response.status_code == 201
    return {SESSION: response.json()["data"]["session_token"]}


class TestAccessFlow:
    def test_request_approve_register(self, client, runtime, admin_headers):
        refused = client.post(
            "/v1/access-requests", json={"email": "alice@gmail.com", "work_domain": "gmail.com"}
        )
        assert refused.status_code == 400
        assert refused.json()["error"]["code"] == "validation_error"

        created = client.post(
            "/v1/access-requests",
            json={"email": "alice@acme.com", "work_domain": "acme.com", "team_size": "5"},
        )
        assert created.status_code == 201
        assert created.headers["X-RateLimit-Limit"] == "10"
        request = created.json()["data"]
        assert request["status"] == "pending"

        pending = client.get("/v1/admin/access-requests", headers=admin_headers)
        assert [item["id"] for item in pending.json()["data"]["items"]] == [request["id"]]

        approved = client.post(
            f"/v1/admin/access-requests/{request['id']}/approve", headers=admin_headers
        )
        assert approved.status_code == 200
        assert approved.json()["data"]["status"] == "approved"
        again = client.post(
            f"/v1/admin/access-requests/{request['id']}/approve", headers=admin_headers
        )
        assert again.json()["error"]["code"] == "invalid_state"

        token = runtime.store.get(ACCESS_REQUESTS, request["id"])["registration_token"]
        invitation = client.get(f"/v1/auth/registration/{token}")
        assert invitation.json()["data"] == {"email": "alice@acme.com"}

        mismatch = client.post(
            "/v1/auth/register",
            json={"token": token, "email": "bob@acme.com", "password": "Correct-Horse-9"},
        )
        assert mismatch.status_code == 400

        registered = client.post(
            "/v1/auth/register",
            json={
                "token": token,
                "email": "alice@acme.com",
                "password": "Correct-Horse-9",
                "display_name": "Alice",
            },
        )
        assert registered.status_code == 201
        user = registered.json()["data"]
        assert user["role"] == "interviewer"
        assert user["email_verified"] is True

        reused = client.post(
            "/v1/auth/register",
            json={"token": token, "email": "alice@acme.com", "password": "Correct-Horse-9"},
        )
        assert reused.json()["error"]["code"] == "token_used"

        id_token = runtime.provider.sign_in_with_password("alice@acme.com", "Correct-Horse-9")
        me = client.get("/v1/me", headers={"Authorization": f"Bearer {id_token}"})
        assert me.json()["data"]["uid"] == user["uid"]
        assert me.json()["data"]["is_admin"] is False

    def test_reject(self, client, admin_headers):
        created = client.post(
            "/v1/access-requests", json={"email": "carol@acme.com", "work_domain": "acme.com"}
        ).json()["data"]
        rejected = client.post(
            f"/v1/admin/access-requests/{created['id']}/reject",
            json={"reason": "not a fit"},
            headers=admin_headers,
        )
        assert rejected.json()["data"]["rejection_reason"] == "not a fit"
        listing = client.get(
            "/v1/admin/access-requests", params={"status": "rejected"}, headers=admin_headers
        )
        assert len(listing.json()["data"]["items"]) == 1

    def test_admin_routes_require_admin(self, client, runtime):
        _, headers = _bearer(runtime, "dev@acme.com")
        assert client.get("/v1/admin/access-requests", headers=headers).status_code == 403
        assert client.get("/v1/admin/access-requests").status_code == 401

    def test_unknown_invitation(self, client):
        response = client.get("/v1/auth/registration/does-not-exist")
        assert response.status_code == 404

    def test_access_request_rate_limit(self, client):
        for _ in range(10):
            client.post(
                "/v1/access-requests", json={"email": "x@gmail.com", "work_domain": "gmail.com"}
            )
        limited = client.post(
            "/v1/access-requests", json={"email": "x@gmail.com", "work_domain": "gmail.com"}
        )
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"
        assert limited.json()["error"]["details"]["retry_after"] > 0

    def test_forwarded_for_does_not_reset_registration_limit(self, client):
        statuses = [
            client.get(
                "/v1/auth/registration/missing-token",
                headers={"X-Forwarded-For": f"203.0.113.{i}"},
            ).status_code
            for i in range(8)
        ]
        assert statuses == [404] * 5 + [429] * 3

    def test_malformed_body_is_400(self, client):
        response = client.post("/v1/access-requests", json={"email": "not-an-email"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestSessions:
    def test_lifecycle(self, client, runtime):
        user, headers = _bearer(runtime, "lead@acme.com")
        session = _session_headers(client, {**headers, "User-Agent": "pytest-agent"})

        current = client.get("/v1/sessions/current", headers=session)
        assert current.status_code == 200
        assert current.json()["data"]["user_id"] == user.uid
        assert current.json()["data"]["inactivity_warning_sent"] is False

        other = _session_headers(client, headers)
        listing = client.get("/v1/sessions", headers=session).json()["data"]["items"]
        assert len(listing) == 2
        assert [item["current"] for item in listing].count(True) == 1

        rotated = client.post("/v1/sessions/refresh", headers=session)
        assert rotated.status_code == 200
        new_session = {SESSION: rotated.json()["data"]["session_token"]}
        assert client.get("/v1/sessions/current", headers=session).status_code == 401
        assert client.get("/v1/sessions/current", headers=new_session).status_code == 200

        client.post("/v1/sessions/logout", headers=other)
        assert client.get("/v1/sessions/current", headers=other).status_code == 401

        terminated = client.post("/v1/sessions/logout-all", headers=headers)
        assert terminated.json()["data"] == {"terminated": 1}
        assert client.get("/v1/sessions/current", headers=new_session).status_code == 401

    def test_missing_session_header(self, client):
        response = client.get("/v1/sessions/current")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_session_requires_identity(self, client):
        assert client.post("/v1/sessions", json={}).status_code == 401
        bad = client.post("/v1/sessions", json={}, headers={"Authorization": "Bearer nope"})
        assert bad.status_code == 401


class TestInterviews:
    def _schedule(self, client, headers, minutes_ahead=5):
        date = datetime.now(timezone.utc) + timedelta(minutes=minutes_ahead)
        return client.post(
            "/v1/interviews",
            json={
                "candidate_name": "Sam Rivera",
                "candidate_email": "sam@example.org",
                "date": date.isoformat(),
                "type": "system_design",
                "level": "senior",
            },
            headers=headers,
        )

    def test_schedule_and_join(self, client, runtime):
        lead, lead_headers = _bearer(runtime, "lead@acme.com")
        _, candidate_headers = _bearer(runtime, "sam@example.org", verified=False)
        _, stranger_headers = _bearer(runtime, "eve@acme.com")

        created = self._schedule(client, lead_headers)
        assert created.status_code == 201
        interview = created.json()["data"]
        assert interview["interviewer_id"] == lead.uid

        listing = client.get("/v1/interviews", headers=lead_headers).json()["data"]["items"]
        assert [item["id"] for item in listing] == [interview["id"]]

        public = client.get(f"/v1/public/interviews/{interview['session_id']}").json()["data"]
        assert "interviewer_id" not in public

        access = client.post(f"/v1/interviews/{interview['id']}/access", headers=candidate_headers)
        assert access.json()["data"]["access_type"] == "candidate"

        denied = client.post(f"/v1/interviews/{interview['id']}/access", headers=stranger_headers)
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"

        started = client.post(f"/v1/interviews/{interview['id']}/start", headers=lead_headers)
        assert started.json()["data"]["interview"]["status"] == "in_progress"

        completed = client.post(
            f"/v1/interviews/{interview['id']}/complete", headers=candidate_headers
        )
        assert completed.json()["data"]["status"] == "completed"

    def test_outside_window(self, client, runtime):
        _, headers = _bearer(runtime, "lead@acme.com")
        interview = self._schedule(client, headers, minutes_ahead=120).json()["data"]
        response = client.post(f"/v1/interviews/{interview['id']}/access", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "out_of_window"

    def test_unverified_interviewer_cannot_schedule(self, client, runtime):
        _, headers = _bearer(runtime, "lead@acme.com", verified=False)
        response = self._schedule(client, headers)
        assert response.status_code == 403

    def test_cancel(self, client, runtime):
        _, headers = _bearer(runtime, "lead@acme.com")
        interview = self._schedule(client, headers, minutes_ahead=600).json()["data"]
        cancelled = client.post(f"/v1/interviews/{interview['id']}/cancel", headers=headers)
        assert cancelled.json()["data"]["status"] == "cancelled"
        public = client.get(f"/v1/public/interviews/{interview['session_id']}")
        assert public.status_code == 404


class TestAdmin:
    def test_role_update_needs_capability(self, client, runtime, admin_headers):
        target, _ = _bearer(runtime, "lead@acme.com")
        body = {"role": "moderator"}

        denied = client.put(f"/v1/admin/users/{target.uid}/role", json=body, headers=admin_headers)
        assert denied.status_code == 403
        assert denied.json()["error"]["details"]["missing"] == ["manage_users"]

        admin = runtime.provider.get_user_by_email(ADMIN_EMAIL)
        runtime.store.set(USERS, admin.uid, {"capabilities": ["manage_users"]}, merge=True)
        updated = client.put(f"/v1/admin/users/{target.uid}/role", json=body, headers=admin_headers)
        assert updated.status_code == 200
        assert updated.json()["data"]["role"] == "moderator"

        fetched = client.get(f"/v1/admin/users/{target.uid}", headers=admin_headers)
        assert fetched.json()["data"]["role"] == "moderator"

    def test_invalid_role(self, client, runtime, admin_headers):
        admin = runtime.provider.get_user_by_email(ADMIN_EMAIL)
        runtime.store.set(USERS, admin.uid, {"capabilities": ["manage_users"]})
        response = client.put("/v1/admin/users/x/role", json={"role": "root"}, headers=admin_headers)
        assert response.status_code == 400

    def test_analytics_and_sweep(self, client, runtime, admin_headers):
        _, headers = _bearer(runtime, "lead@acme.com")
        _session_headers(client, headers)
        stats = client.get("/v1/admin/sessions/analytics", headers=admin_headers).json()["data"]
        assert stats["active_sessions"] == 1
        sweep = client.post("/v1/admin/maintenance/sweep", headers=admin_headers).json()["data"]
        assert sweep == {"sessions": 0, "registration_tokens": 0, "session_tokens": 0}

    def test_me_reports_admin(self, client, admin_headers):
        assert client.get("/v1/me", headers=admin_headers).json()["data"]["is_admin"] is True


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["type"] == "memory"
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "X-Request-ID" in response.headers
