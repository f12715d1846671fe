"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> dependency injection
-> AuthService -> stores -> response model serialization -> exception
handlers. The recording sender in conftest exposes the codes a real user
would receive by SMS.

Fixtures used (from conftest.py):
  - api_client: (client, service, sender) -- fresh stores and cookie jar per test
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import PASSWORD, PHONE

REGISTER_BODY = {
    "email": "ada@example.com",
    "password": PASSWORD,
    "display_name": "Ada",
    "preferred_role": "idea-creator",
    "verification_method": "phone",
    "phone_number": PHONE,
}


def _signup(client: TestClient, sender) -> dict:
    """Register and confirm; returns the confirm response body. Leaves the cookie set."""
    resp = client.post("/api/v1/auth/register", json=REGISTER_BODY)
    assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
    request_id = resp.json()["verification"]["request_id"]
    resp = client.post("/api/v1/auth/verification/confirm", json={"request_id": request_id, "code": sender.last_code})
    assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
    return resp.json()


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestRegisterAndConfirm:
    def test_register_returns_masked_challenge(self, api_client):
        client, _service, sender = api_client
        resp = client.post("/api/v1/auth/register", json=REGISTER_BODY)
        assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
        data = resp.json()
        assert data["status"] == "verification_required"
        assert data["verification"]["masked_destination"] == "***-***-1212"
        assert data["verification"]["attempts_remaining"] == 5
        assert sender.last_code not in resp.text, "Code must never be echoed"
        assert PHONE not in resp.text, "Raw destination must never be echoed"
        assert "set-cookie" not in resp.headers

    def test_confirm_authenticates_and_sets_cookie(self, api_client):
        client, service, sender = api_client
        data = _signup(client, sender)
        assert data["status"] == "authenticated"
        assert data["user"]["phone_verified"] is True
        assert data["user"]["pending_verification_method"] is None
        assert "password_hash" not in data["user"]
        assert client.cookies.get(service.settings.session_cookie_name)

    def test_wrong_code_returns_400_with_attempts(self, api_client):
        client, _service, sender = api_client
        request_id = client.post("/api/v1/auth/register", json=REGISTER_BODY).json()["verification"]["request_id"]
        resp = client.post(
            "/api/v1/auth/verification/confirm",
            json={"request_id": request_id, "code": _wrong(sender.last_code)},
        )
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "invalid_code"
        assert error["verification"]["attempts_remaining"] == 4

    def test_exhausted_challenge_is_429_then_410(self, api_client):
        client, _service, sender = api_client
        request_id = client.post("/api/v1/auth/register", json=REGISTER_BODY).json()["verification"]["request_id"]
        wrong = {"request_id": request_id, "code": _wrong(sender.last_code)}
        for _ in range(4):
            client.post("/api/v1/auth/verification/confirm", json=wrong)
        resp = client.post("/api/v1/auth/verification/confirm", json=wrong)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "attempts_exhausted"
        resp = client.post("/api/v1/auth/verification/confirm", json={"request_id": request_id, "code": sender.last_code})
        assert resp.status_code == 410
        assert resp.json()["error"]["code"] == "expired"

    def test_duplicate_active_email_is_409(self, api_client):
        client, _service, sender = api_client
        _signup(client, sender)
        resp = client.post("/api/v1/auth/register", json=REGISTER_BODY)
        assert resp.status_code == 409

    def test_invalid_body_is_400_before_any_store(self, api_client):
        client, service, _sender = api_client
        resp = client.post("/api/v1/auth/register", json={**REGISTER_BODY, "email": "not-an-email", "password": "short"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
        assert service.registrations.get_by_email("ada@example.com") is None


class TestVerificationRoutes:
    def test_lookup_and_bad_uuid(self, api_client):
        client, _service, _sender = api_client
        request_id = client.post("/api/v1/auth/register", json=REGISTER_BODY).json()["verification"]["request_id"]
        resp = client.get(f"/api/v1/auth/verification/{request_id}")
        assert resp.status_code == 200
        assert resp.json()["verification"]["request_id"] == request_id

        assert client.get("/api/v1/auth/verification/not-a-uuid").status_code == 400
        missing = client.get("/api/v1/auth/verification/00000000-0000-4000-8000-000000000000")
        assert missing.status_code == 404

    def test_resend_before_cooldown_is_429_with_retry_after(self, api_client):
        client, _service, _sender = api_client
        request_id = client.post("/api/v1/auth/register", json=REGISTER_BODY).json()["verification"]["request_id"]
        resp = client.post("/api/v1/auth/verification/request", json={"request_id": request_id})
        assert resp.status_code == 429
        error = resp.json()["error"]
        assert error["code"] == "resend_cooldown"
        assert error["retry_after_seconds"] == 60
        assert resp.headers["Retry-After"] == "60"
        assert error["verification"]["request_id"] == request_id

    def test_resend_after_cooldown_sends_new_code(self, api_client, clock):
        client, _service, sender = api_client
        request_id = client.post("/api/v1/auth/register", json=REGISTER_BODY).json()["verification"]["request_id"]
        clock.advance(60)
        resp = client.post("/api/v1/auth/verification/request", json={"request_id": request_id})
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert len(sender.sent) == 2

    def test_start_requires_auth(self, api_client):
        client, _service, _sender = api_client
        resp = client.post("/api/v1/auth/verification/start", json={"method": "phone"})
        assert resp.status_code == 401

    def test_start_for_account_issues_challenge(self, api_client):
        client, _service, sender = api_client
        _signup(client, sender)
        resp = client.post("/api/v1/auth/verification/start", json={"method": "phone", "phone_number": "+15555550000"})
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert resp.json()["status"] == "verification_required"
        assert resp.json()["verification"]["masked_destination"] == "***-***-0000"
        assert sender.sent[-1][0] == "+15555550000"


class TestSessionRoutes:
    def test_me_is_null_when_anonymous(self, api_client):
        client, _service, _sender = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json() == {"user": None}

    def test_cookie_and_bearer_both_authenticate(self, api_client):
        client, _service, sender = api_client
        token = _signup(client, sender)["token"]
        assert client.get("/api/v1/auth/me").json()["user"]["email"] == "ada@example.com"

        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.json()["user"]["email"] == "ada@example.com"

    def test_logout_destroys_session(self, api_client):
        client, _service, sender = api_client
        token = _signup(client, sender)["token"]
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.json() == {"user": None}

    def test_login_bad_credentials_is_401(self, api_client):
        client, _service, sender = api_client
        _signup(client, sender)
        resp = client.post("/api/v1/auth/login", json={"email": "ada@example.com", "password": "wrong-password"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_login_sets_no_store(self, api_client):
        client, _service, sender = api_client
        _signup(client, sender)
        resp = client.post("/api/v1/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["status"] == "authenticated"
        assert resp.headers["Cache-Control"] == "no-store"


class TestProfileRoutes:
    def test_put_me_requires_auth(self, api_client):
        client, _service, _sender = api_client
        assert client.put("/api/v1/auth/me", json={"bio": "x"}).status_code == 401

    def test_put_me_patch_semantics(self, api_client):
        client, _service, sender = api_client
        _signup(client, sender)
        assert client.put("/api/v1/auth/me", json={"bio": "builder"}).json()["user"]["bio"] == "builder"
        data = client.put("/api/v1/auth/me", json={"display_name": "Ada L."}).json()
        assert data["user"]["bio"] == "builder"
        assert client.put("/api/v1/auth/me", json={"bio": None}).json()["user"]["bio"] is None

    def test_role_change_without_confirmation_is_403(self, api_client):
        client, _service, sender = api_client
        _signup(client, sender)
        resp = client.put("/api/v1/auth/me", json={"preferred_role": "developer"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "role_change_unconfirmed"

    def test_role_change_during_cooldown_is_429(self, api_client):
        client, _service, sender = api_client
        _signup(client, sender)
        resp = client.put("/api/v1/auth/me", json={"preferred_role": "developer", "confirm_role_change": True})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "role_change_cooldown"

    def test_phone_change_returns_challenge(self, api_client):
        client, _service, sender = api_client
        _signup(client, sender)
        resp = client.put("/api/v1/auth/me", json={"phone_number": "+15555550000"})
        data = resp.json()
        assert data["user"]["phone_verified"] is False
        assert data["verification"]["masked_destination"] == "***-***-0000"

    def test_delete_me_revokes_token_and_frees_email(self, api_client):
        client, _service, sender = api_client
        token = _signup(client, sender)["token"]
        resp = client.delete("/api/v1/auth/me")
        assert resp.status_code == 204
        client.cookies.clear()
        resp = client.put("/api/v1/auth/me", json={"bio": "x"}, headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert client.post("/api/v1/auth/register", json=REGISTER_BODY).status_code == 201
