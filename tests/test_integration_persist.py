"""Integration tests for persistent login over HTTP.

Tests the complete flow including:
- Credential login issuing the persistent cookie
- Session loss recovered through the cookie, with rotation
- Logout and logout everywhere
- Theft detection across two clients
- Admin grant management
"""

import pytest
from fastapi.testclient import TestClient

from persistlogin import app as app_module
from persistlogin.service.cookies import CookieCodec
from persistlogin.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "TestPassword123!"


def _create_user(username, roles=()):
    runtime = get_runtime()
    user = runtime.store.create_user(username, roles=set(roles))
    runtime.identity.save_password(user.id, PASSWORD)
    return user


def _login(client, username, remember=False):
    return client.post(
        "/v1/auth/login",
        json={"username": username, "password": PASSWORD, "remember": remember},
    )


def _drop_session(client):
    client.cookies.delete(get_runtime().settings.session_cookie_name)


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def alice():
    return _create_user("alice", roles={"editor"})


class TestLoginFlow:
    """Tests for credential login."""

    def test_login_issues_persistent_cookie(self, client, alice):
        response = _login(client, "alice")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["user_id"] == alice.id
        assert data["data"]["persistent"] is False
        payload = CookieCodec.decode(client.cookies.get("persist"))
        assert payload.user_id == alice.id
        assert get_runtime().store.count_grants() == 1

    def test_persistent_cookie_attributes(self, client, alice):
        response = _login(client, "alice")
        header = next(
            h for h in response.headers.get_list("set-cookie") if h.startswith("persist=")
        )
        assert "Max-Age=604800" in header
        assert "HttpOnly" in header
        assert "Path=/" in header
        assert "Secure" not in header

    def test_invalid_credentials(self, client, alice):
        response = client.post(
            "/v1/auth/login",
            json={"username": "alice", "password": "wrong", "remember": True},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert client.cookies.get("persist") is None

    def test_me_requires_identity(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["status"] == "error"

    def test_manual_mode_requires_remember(self, client, alice, monkeypatch):
        monkeypatch.setenv("PERSIST_AUTOMATIC", "false")
        reset_runtime_for_tests()
        _create_user("bob")

        assert _login(client, "bob").status_code == 200
        assert client.cookies.get("persist") is None

        assert _login(client, "bob", remember=True).status_code == 200
        assert client.cookies.get("persist") is not None


class TestPersistentLogin:
    """Tests for recovering a lost session through the cookie."""

    def test_cookie_restores_identity_and_rotates(self, client, alice):
        _login(client, "alice")
        first = CookieCodec.decode(client.cookies.get("persist"))
        _drop_session(client)

        response = client.get("/v1/auth/me")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["username"] == "alice"
        assert data["persistent"] is True
        second = CookieCodec.decode(client.cookies.get("persist"))
        assert second.series_id == first.series_id
        assert second.public_key != first.public_key
        assert get_runtime().store.count_grants() == 1

    def test_session_cookie_wins_over_persistent_cookie(self, client, alice):
        _login(client, "alice")
        before = client.cookies.get("persist")
        response = client.get("/v1/auth/me")
        assert response.json()["data"]["persistent"] is False
        assert client.cookies.get("persist") == before

    def test_copied_cookie_revokes_everything(self, alice):
        victim = TestClient(app_module.app)
        thief = TestClient(app_module.app)
        _login(victim, "alice")
        _login(TestClient(app_module.app), "alice")
        thief.cookies.set("persist", victim.cookies.get("persist"))

        # The victim's browser uses the cookie first and gets a rotated one
        _drop_session(victim)
        assert victim.get("/v1/auth/me").status_code == 200

        assert thief.get("/v1/auth/me").status_code == 401
        assert get_runtime().store.list_user_grants(alice.id) == []

        _drop_session(victim)
        assert victim.get("/v1/auth/me").status_code == 401

    def test_stale_cookie_is_cleared(self, client, alice):
        client.cookies.set("persist", CookieCodec.encode(alice.id, "unknown", "key"))
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert any(
            h.startswith("persist=") and "Max-Age=0" in h
            for h in response.headers.get_list("set-cookie")
        )


class TestLogout:
    """Tests for logout and logout everywhere."""

    def test_logout_removes_grant_and_cookie(self, client, alice):
        _login(client, "alice")

        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert client.cookies.get("persist") is None
        assert get_runtime().store.count_grants() == 0
        assert client.get("/v1/auth/me").status_code == 401

    def test_logout_keeps_other_devices(self, alice):
        laptop = TestClient(app_module.app)
        phone = TestClient(app_module.app)
        _login(laptop, "alice")
        _login(phone, "alice")

        laptop.post("/v1/auth/logout")

        assert get_runtime().store.count_grants() == 1
        _drop_session(phone)
        assert phone.get("/v1/auth/me").status_code == 200

    def test_logout_everywhere_revokes_all_devices(self, alice):
        laptop = TestClient(app_module.app)
        phone = TestClient(app_module.app)
        _login(laptop, "alice")
        _login(phone, "alice")

        response = laptop.post("/v1/auth/logout-everywhere")

        assert response.status_code == 200
        assert response.json()["data"]["revoked_logins"] == 2
        _drop_session(phone)
        assert phone.get("/v1/auth/me").status_code == 401

    def test_logout_everywhere_requires_identity(self, client):
        assert client.post("/v1/auth/logout-everywhere").status_code == 401


class TestAdmin:
    """Tests for admin grant management."""

    def test_non_admin_forbidden(self, client, alice):
        _login(client, "alice")
        response = client.get("/v1/admin/persistent-logins")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_counts_and_clears(self, client, alice):
        _create_user("root", roles={"admin"})
        _login(TestClient(app_module.app), "alice")
        _login(client, "root")

        stats = client.get("/v1/admin/persistent-logins")
        assert stats.status_code == 200
        assert stats.json()["data"]["total"] == 2

        cleared = client.delete("/v1/admin/persistent-logins")
        assert cleared.json()["data"]["removed"] == 2
        assert get_runtime().store.count_grants() == 0


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.parametrize(
    "cookie",
    [b"persist=\xb2:series:key", b"persist=" + b"9" * 5000 + b":a:b"],
)
def test_unparseable_cookie_is_ignored(client, cookie):
    response = client.get("/healthz", headers={"cookie": cookie})
    assert response.status_code == 200
    assert client.get("/v1/auth/me", headers={"cookie": cookie}).status_code == 401


class TestSessionRenewal:
    """Tests that a login never keeps the session id the client presented."""

    def test_planted_session_is_not_authenticated(self, alice):
        attacker = TestClient(app_module.app)
        attacker.post("/v1/auth/logout")
        planted = attacker.cookies.get("session_id")
        assert planted

        response = TestClient(app_module.app).post(
            "/v1/auth/login",
            json={"username": "alice", "password": PASSWORD},
            headers={"cookie": f"session_id={planted}"},
        )

        assert response.status_code == 200
        assert response.cookies.get("session_id") not in (None, planted)
        assert attacker.get("/v1/auth/me").status_code == 401

    def test_cookie_login_issues_new_session(self, client, alice):
        _login(client, "alice")
        before = client.cookies.get("session_id")
        persist = client.cookies.get("persist")

        response = TestClient(app_module.app).get(
            "/v1/auth/me",
            headers={"cookie": f"session_id=unknown-session; persist={persist}"},
        )

        assert response.status_code == 200
        assert response.cookies.get("session_id") not in (None, before, "unknown-session")
