"""Integration tests for the /auth HTTP surface.

Each test gets a fresh runtime (memory store, in-process rate limits). The
client address is varied through X-Forwarded-For where a test would
otherwise trip the per-IP limits.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from estate_auth import app as app_module
from estate_auth.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "Tr0ub4dor&Kx"
NEW_PASSWORD = "Zephyr!Moon47"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _ip(address: str) -> dict:
    return {"X-Forwarded-For": address}


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _signup(client, email="owner@example.com", ip="198.51.100.1", **extra):
    body = {"email": email, "password": PASSWORD, "name": "Owner Person", **extra}
    response = client.post("/auth/signup", json=body, headers=_ip(ip))
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestSignup:
    def test_signup_returns_camel_case_payload(self, client):
        response = client.post(
            "/auth/signup",
            json={"email": "Owner@Example.com", "password": PASSWORD, "name": "Owner Person"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert set(body["data"]) == {"accessToken", "refreshToken", "user"}
        user = body["data"]["user"]
        assert user["email"] == "owner@example.com"
        assert user["role"] == "buyer"
        assert user["availableRoles"] == ["buyer"]
        assert "passwordHash" not in user

    def test_agent_signup_reports_trial(self, client):
        data = _signup(client, role="agent")

        trial = data["user"]["trial"]
        assert trial["status"] == "active"
        assert trial["daysRemaining"] == 7
        assert data["user"]["listingsLimit"] == 10

    def test_weak_password_lists_violations(self, client):
        response = client.post(
            "/auth/signup",
            json={"email": "jane@example.com", "password": "Jane12345!", "name": "Jane"},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert "password must not contain your name or email" in error["details"]["violations"]

    def test_malformed_email_rejected(self, client):
        response = client.post(
            "/auth/signup",
            json={"email": "not-an-email", "password": PASSWORD, "name": "Owner"},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"] == "invalid request"
        assert error["details"][0]["field"] == "email"

    def test_duplicate_email_rejected(self, client):
        _signup(client)

        response = client.post(
            "/auth/signup",
            json={"email": "owner@example.com", "password": PASSWORD, "name": "Other"},
            headers=_ip("198.51.100.2"),
        )

        assert response.status_code == 400
        assert "already exists" in response.json()["error"]["message"]

    def test_fourth_signup_from_one_ip_rate_limited(self, client):
        for index in range(3):
            _signup(client, f"user{index}@example.com", ip="198.51.100.77")

        response = client.post(
            "/auth/signup",
            json={"email": "user9@example.com", "password": PASSWORD, "name": "Owner"},
            headers=_ip("198.51.100.77"),
        )

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "7200"
        assert response.json()["error"]["code"] == "rate_limited"


class TestLogin:
    def test_login_success(self, client):
        _signup(client)

        response = client.post(
            "/auth/login", json={"email": "owner@example.com", "password": PASSWORD}
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "owner@example.com"

    def test_login_by_phone(self, client):
        _signup(client, phone="+15550100")

        response = client.post("/auth/login", json={"phone": "+15550100", "password": PASSWORD})

        assert response.status_code == 200

    def test_login_requires_identifier(self, client):
        response = client.post("/auth/login", json={"password": PASSWORD})

        assert response.status_code == 400

    def test_wrong_password_is_generic(self, client):
        _signup(client)

        response = client.post(
            "/auth/login", json={"email": "owner@example.com", "password": "Wrong!Pass9x"}
        )

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "invalid credentials",
            "details": None,
        }

    def test_sixth_attempt_from_ip_returns_429(self, client):
        for index in range(5):
            response = client.post(
                "/auth/login",
                json={"email": f"ghost{index}@example.com", "password": PASSWORD},
                headers=_ip("203.0.113.9"),
            )
            assert response.status_code == 401

        response = client.post(
            "/auth/login",
            json={"email": "ghost9@example.com", "password": PASSWORD},
            headers=_ip("203.0.113.9"),
        )

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "1800"


class TestLockout:
    @pytest.fixture(autouse=True)
    def relaxed_account_limit(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_LOGIN_ACCOUNT", "100/15m:60m")
        reset_runtime_for_tests()

    def test_locked_account_returns_423_even_with_correct_password(self, client):
        _signup(client)
        for index in range(5):
            response = client.post(
                "/auth/login",
                json={"email": "owner@example.com", "password": "Wrong!Pass9x"},
                headers=_ip(f"203.0.113.{index}"),
            )
            assert response.status_code == 401

        response = client.post(
            "/auth/login",
            json={"email": "owner@example.com", "password": PASSWORD},
            headers=_ip("203.0.113.50"),
        )

        assert response.status_code == 423
        error = response.json()["error"]
        assert error["code"] == "locked"
        assert error["details"] == {"remaining_minutes": 30}


class TestTokens:
    def test_refresh_rotates_and_rejects_reuse(self, client):
        data = _signup(client)

        first = client.post("/auth/refresh-token", json={"refreshToken": data["refreshToken"]})
        reuse = client.post("/auth/refresh-token", json={"refreshToken": data["refreshToken"]})

        assert first.status_code == 200
        assert first.json()["data"]["refreshToken"] != data["refreshToken"]
        assert reuse.status_code == 401
        assert reuse.json()["error"]["message"] == "invalid refresh token"

    def test_access_token_cannot_refresh(self, client):
        data = _signup(client)

        response = client.post("/auth/refresh-token", json={"refreshToken": data["accessToken"]})

        assert response.status_code == 401

    def test_me_requires_bearer(self, client):
        assert client.get("/auth/me").status_code == 401
        assert client.get("/auth/me", headers=_bearer("garbage")).status_code == 401

    def test_me_returns_profile(self, client):
        data = _signup(client)

        response = client.get("/auth/me", headers=_bearer(data["accessToken"]))

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "owner@example.com"

    def test_refresh_token_is_not_a_bearer(self, client):
        data = _signup(client)

        assert client.get("/auth/me", headers=_bearer(data["refreshToken"])).status_code == 401


class TestSessions:
    def test_logout_revokes_refresh_token(self, client):
        data = _signup(client)

        response = client.post(
            "/auth/logout",
            json={"refreshToken": data["refreshToken"]},
            headers=_bearer(data["accessToken"]),
        )

        assert response.status_code == 200
        refresh = client.post("/auth/refresh-token", json={"refreshToken": data["refreshToken"]})
        assert refresh.status_code == 401

    def test_logout_all_and_session_listing(self, client):
        data = _signup(client)
        client.post("/auth/login", json={"email": "owner@example.com", "password": PASSWORD})

        listed = client.get("/auth/sessions", headers=_bearer(data["accessToken"]))
        assert len(listed.json()["data"]["sessions"]) == 2

        response = client.post("/auth/logout-all", headers=_bearer(data["accessToken"]))
        assert response.status_code == 200
        listed = client.get("/auth/sessions", headers=_bearer(data["accessToken"]))
        assert listed.json()["data"]["sessions"] == []


class TestPasswordFlows:
    def test_change_password_invalidates_old_access_token(self, client, monkeypatch):
        data = _signup(client)
        runtime = get_runtime()
        original = runtime.auth._clock
        # Move the service clock forward so the new password postdates the token
        monkeypatch.setattr(runtime.auth, "_clock", lambda: original() + timedelta(seconds=5))

        response = client.post(
            "/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": NEW_PASSWORD},
            headers=_bearer(data["accessToken"]),
        )

        assert response.status_code == 200
        assert client.get("/auth/me", headers=_bearer(data["accessToken"])).status_code == 401

    def test_reset_request_is_generic(self, client):
        _signup(client)

        known = client.post("/auth/request-password-reset", json={"email": "owner@example.com"})
        unknown = client.post("/auth/request-password-reset", json={"email": "nobody@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_password_with_emailed_token(self, client, monkeypatch):
        _signup(client)
        runtime = get_runtime()
        sent = {}

        def _capture(to_email, token):
            sent["token"] = token
            return True

        monkeypatch.setattr(runtime.notifier, "send_password_reset", _capture)
        client.post("/auth/request-password-reset", json={"email": "owner@example.com"})

        response = client.post(
            "/auth/reset-password", json={"token": sent["token"], "newPassword": NEW_PASSWORD}
        )

        assert response.status_code == 200
        login = client.post(
            "/auth/login", json={"email": "owner@example.com", "password": NEW_PASSWORD}
        )
        assert login.status_code == 200

    def test_reset_with_bad_token(self, client):
        response = client.post(
            "/auth/reset-password", json={"token": "deadbeef", "newPassword": NEW_PASSWORD}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid or expired reset token"


class TestSwitchRole:
    def test_switch_to_agent(self, client):
        data = _signup(client)

        response = client.post(
            "/auth/switch-role", json={"role": "agent"}, headers=_bearer(data["accessToken"])
        )

        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["role"] == "agent"
        assert user["activeRole"] == "agent"
        assert user["trial"]["status"] == "active"

    def test_switch_to_admin_rejected(self, client):
        data = _signup(client)

        response = client.post(
            "/auth/switch-role", json={"role": "admin"}, headers=_bearer(data["accessToken"])
        )

        assert response.status_code == 400


class TestAppPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["rate_limit"]["backend"] == "memory"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_auth_responses_are_not_cached(self, client):
        response = client.post("/auth/login", json={"email": "a@example.com", "password": "x"})

        assert response.headers["Cache-Control"] == "no-store"

    def test_unexpected_error_is_masked(self, monkeypatch):
        runtime = get_runtime()

        async def _explode(*args, **kwargs):
            raise RuntimeError("database password is hunter2")

        monkeypatch.setattr(runtime.auth, "login", _explode)
        client = TestClient(app_module.app, raise_server_exceptions=False)

        response = client.post(
            "/auth/login", json={"email": "owner@example.com", "password": PASSWORD}
        )

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
