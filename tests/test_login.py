"""
Tests for the login gate: credentials, rate limiting, open access,
logout and temporary admin access.
"""

import pytest

from conftest import login
from rate_limit import RateLimiter

JSON = {"Accept": "application/json"}


class Clock:
    def __init__(self, now: float = 5000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def protected(settings):
    settings.auth_password = "hunter22"
    return settings


class TestLogin:

    def test_login_page(self, protected, make_client):
        with make_client() as client:
            resp = client.get("/auth/login")
        assert resp.status_code == 200
        assert "<form" in resp.text

    def test_correct_credentials(self, protected, make_client):
        with make_client() as client:
            resp = login(client)
            assert resp.status_code == 303
            assert resp.headers["location"] == "/setup"
            me = client.get("/auth/me", headers=JSON).json()
        assert me["user"]["login"] == "admin"

    @pytest.mark.parametrize("username,password", [
        ("admin", "wrong"),
        ("root", "hunter22"),
        ("", "hunter22"),
        ("admin", ""),
    ])
    def test_bad_credentials(self, protected, make_client, username, password):
        with make_client() as client:
            resp = login(client, username, password)
            assert resp.status_code == 303
            assert resp.headers["location"].startswith("/auth/login?error=")
            assert client.get("/auth/me", headers=JSON).status_code == 401

    def test_rate_limit_then_window_elapses(self, protected, make_client):
        clock = Clock()
        with make_client() as client:
            client.app.state.wrapper.login_limiter = RateLimiter(900, 10, clock=clock)

            for _ in range(10):
                assert login(client, password="wrong").status_code == 303

            blocked = login(client, password="wrong")
            assert blocked.status_code == 429
            assert blocked.headers["retry-after"] == "900"

            # even the right password waits out the window
            assert login(client).status_code == 429

            clock.now += 900
            resp = login(client)
            assert resp.status_code == 303
            assert resp.headers["location"] == "/setup"

    def test_rotating_forwarded_for_does_not_reset_limit(self, protected, make_client):
        with make_client() as client:
            codes = [
                client.post(
                    "/auth/login",
                    data={"username": "admin", "password": "wrong"},
                    headers={"X-Forwarded-For": f"198.51.100.{i}"},
                    follow_redirects=False,
                ).status_code
                for i in range(11)
            ]
        assert codes[:10] == [303] * 10
        assert codes[10] == 429

    def test_success_clears_failures(self, protected, make_client):
        with make_client() as client:
            for _ in range(9):
                login(client, password="wrong")
            assert login(client).status_code == 303
            for _ in range(9):
                login(client, password="wrong")
            assert login(client).status_code == 303

    def test_logout(self, protected, make_client):
        with make_client() as client:
            login(client)
            resp = client.get("/auth/logout", follow_redirects=False)
            assert resp.status_code == 302
            assert client.get("/auth/me", headers=JSON).status_code == 401
            assert client.get("/setup", follow_redirects=False).headers["location"] == "/auth/login"


class TestOpenAccess:

    def test_any_username_gets_a_session(self, settings, make_client):
        with make_client() as client:
            resp = login(client, username="whoever", password="")
            assert resp.status_code == 303
            me = client.get("/auth/me", headers=JSON).json()
        assert me["user"]["id"] == "open-access"
        assert me["user"]["login"] == "whoever"

    def test_setup_reachable_without_login(self, settings, make_client):
        with make_client() as client:
            assert client.get("/setup").status_code == 200


class TestTempLogin:

    def test_disabled_by_default(self, protected, make_client):
        with make_client() as client:
            resp = client.post("/auth/temp-login", data={"token": "x"}, headers={"Accept": "application/json"})
            status = client.get("/auth/temp-login/status").json()
        assert resp.status_code == 403
        assert status["enabled"] is False

    def test_valid_token_grants_admin_session(self, protected, make_client):
        protected.temp_bypass_token = "break-glass-token"
        protected.temp_bypass_expires_at = "2999-01-01T00:00:00Z"
        with make_client() as client:
            bad = client.post("/auth/temp-login", data={"token": "nope"}, headers={"Accept": "application/json"})
            assert bad.status_code == 401

            good = client.post("/auth/temp-login", data={"token": "break-glass-token"}, follow_redirects=False)
            assert good.status_code == 303
            assert client.get("/auth/me", headers=JSON).json()["user"]["id"] == "temp-admin"

    def test_expired_token_is_disabled(self, protected, make_client):
        protected.temp_bypass_token = "break-glass-token"
        protected.temp_bypass_expires_at = "2020-01-01T00:00:00Z"
        with make_client() as client:
            resp = client.post("/auth/temp-login", data={"token": "break-glass-token"},
                               headers={"Accept": "application/json"})
            status = client.get("/auth/temp-login/status").json()
        assert resp.status_code == 403
        assert status["expired"] is True
