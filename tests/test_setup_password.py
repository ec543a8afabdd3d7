"""
Tests for the optional setup password and its reset flow.
"""

import json
import stat

import httpx
import pytest

from setup_password import ResetTokenStore, check_password_hash, hash_password, validate_new_password

JSON = {"Accept": "application/json"}


@pytest.fixture
def gated(settings):
    settings.setup_password_required = True
    return settings


def create_password(client, password="correct horse", confirm=None):
    return client.post(
        "/setup/save-password",
        data={"password": password, "confirm": password if confirm is None else confirm},
        follow_redirects=False,
    )


def verify(client, password):
    return client.post("/setup/verify-password", data={"password": password}, follow_redirects=False)


class TestPasswordHashing:

    def test_hash_roundtrip(self):
        stored = hash_password("correct horse")
        assert stored.startswith("pbkdf2_sha256$")
        assert check_password_hash("correct horse", stored)
        assert not check_password_hash("wrong horse", stored)
        assert not check_password_hash("correct horse", "garbage")

    def test_validation(self):
        assert validate_new_password("short", "short") == "Password must be at least 8 characters"
        assert validate_new_password("long enough", "different") == "Passwords do not match"
        assert validate_new_password("long enough", "long enough") is None


class TestSetupPasswordGate:

    def test_not_enabled_by_default(self, settings, make_client):
        with make_client() as client:
            assert client.get("/setup", follow_redirects=False).status_code == 200

    def test_first_visit_creates_password(self, gated, make_client):
        with make_client() as client:
            resp = client.get("/setup", follow_redirects=False)
            assert resp.headers["location"] == "/setup/create-password"

            api = client.get("/setup/api/status")
            assert api.status_code == 401
            assert api.json()["error"]["code"] == "SETUP_PASSWORD_NOT_CONFIGURED"

            short = create_password(client, "short")
            assert short.headers["location"].startswith("/setup/create-password?error=")

            mismatch = create_password(client, "correct horse", "correct horsf")
            assert "error=" in mismatch.headers["location"]

            created = create_password(client)
            assert created.status_code == 303
            assert created.headers["location"] == "/setup"
            assert client.get("/setup", follow_redirects=False).status_code == 200

        stored = (gated.state_dir / "setup.password")
        assert stat.S_IMODE(stored.stat().st_mode) == 0o600
        assert "correct horse" not in stored.read_text()

    def test_second_create_is_refused(self, gated, make_client):
        with make_client() as client:
            create_password(client)
            again = create_password(client, "another password")
            assert again.headers["location"] == "/setup/password-prompt"
            assert client.get("/setup/create-password", follow_redirects=False).headers["location"] \
                == "/setup/password-prompt"

    def test_new_session_must_verify(self, gated, make_client):
        with make_client() as client:
            create_password(client)
            client.cookies.clear()

            resp = client.get("/setup", follow_redirects=False)
            assert resp.headers["location"] == "/setup/password-prompt"
            api = client.get("/setup/api/status")
            assert api.json()["error"]["code"] == "SETUP_PASSWORD_REQUIRED"

            wrong = verify(client, "nope")
            assert wrong.headers["location"].startswith("/setup/password-prompt?error=")
            assert client.get("/setup", follow_redirects=False).status_code == 302

            ok = verify(client, "correct horse")
            assert ok.headers["location"] == "/setup"
            assert client.get("/setup", follow_redirects=False).status_code == 200

    def test_env_password(self, settings, make_client):
        settings.setup_password = "from-the-env"
        with make_client() as client:
            assert client.get("/setup/create-password", follow_redirects=False).headers["location"] \
                == "/setup/password-prompt"
            assert verify(client, "from-the-env").headers["location"] == "/setup"
            assert client.get("/setup", follow_redirects=False).status_code == 200

    def test_verify_is_rate_limited(self, gated, make_client):
        with make_client() as client:
            create_password(client)
            client.cookies.clear()
            for _ in range(5):
                verify(client, "wrong")
            blocked = verify(client, "correct horse")
            assert "Too%20many%20attempts" in blocked.headers["location"]
            assert client.get("/setup", follow_redirects=False).status_code == 302

    def test_login_gate_still_applies(self, gated, make_client):
        gated.auth_password = "hunter22"
        with make_client() as client:
            resp = client.get("/setup", follow_redirects=False)
        assert resp.headers["location"] == "/auth/login"


class TestResetFlow:

    def test_no_delivery_channel(self, gated, make_client):
        with make_client() as client:
            resp = client.post("/setup/request-reset", data={"email": "a@example.com"}, follow_redirects=False)
        assert "Email%20service%20not%20configured" in resp.headers["location"]

    def test_console_reset_is_single_use(self, gated, make_client, capsys):
        gated.reset_console_mode = True
        with make_client() as client:
            create_password(client)
            client.cookies.clear()

            resp = client.post("/setup/request-reset", data={"email": "Admin@Example.com"}, follow_redirects=False)
            assert resp.headers["location"].startswith("/setup/forgot-password?message=")

            store = client.app.state.wrapper.reset_tokens
            (token, entry), = store._tokens.items()
            assert entry.email == "admin@example.com"
            assert f"/setup/reset-password?token={token}" in capsys.readouterr().out

            assert client.get(f"/setup/reset-password?token={token}").status_code == 200

            done = client.post(
                "/setup/confirm-reset",
                data={"token": token, "password": "brand new pass", "confirm": "brand new pass"},
                follow_redirects=False,
            )
            assert done.headers["location"].startswith("/setup/password-prompt?message=")

            reused = client.post(
                "/setup/confirm-reset",
                data={"token": token, "password": "another pass", "confirm": "another pass"},
                follow_redirects=False,
            )
            assert reused.headers["location"].startswith("/setup/forgot-password?error=")

            assert verify(client, "correct horse").headers["location"].startswith("/setup/password-prompt?error=")
            assert verify(client, "brand new pass").headers["location"] == "/setup"

    def test_invalid_token_redirects(self, gated, make_client):
        with make_client() as client:
            missing = client.get("/setup/reset-password", follow_redirects=False)
            unknown = client.get("/setup/reset-password?token=deadbeef", follow_redirects=False)
        assert "Invalid%20or%20missing" in missing.headers["location"]
        assert "expired" in unknown.headers["location"]

    def test_webhook_delivery(self, gated, make_client):
        gated.reset_webhook_url = "http://mailer.internal/send"
        sent = []

        def mailer(request: httpx.Request) -> httpx.Response:
            sent.append(json.loads(request.content))
            return httpx.Response(202)

        with make_client() as client:
            client.app.state.wrapper.http = httpx.AsyncClient(transport=httpx.MockTransport(mailer))
            resp = client.post("/setup/request-reset", data={"email": "ops@example.com"}, follow_redirects=False)

        assert "Check%20your%20email" in resp.headers["location"]
        assert sent[0]["to"] == "ops@example.com"
        assert "/setup/reset-password?token=" in sent[0]["resetUrl"]

    def test_webhook_failure_still_generic(self, gated, make_client):
        gated.reset_webhook_url = "http://mailer.internal/send"
        with make_client() as client:
            client.app.state.wrapper.http = httpx.AsyncClient(
                transport=httpx.MockTransport(lambda r: httpx.Response(500)))
            resp = client.post("/setup/request-reset", data={"email": "ops@example.com"}, follow_redirects=False)
        assert "Check%20your%20email" in resp.headers["location"]


class TestResetTokenStore:

    def test_expiry_and_persistence(self, settings):
        now = [1000.0]
        store = ResetTokenStore(settings, ttl=3600, clock=lambda: now[0])
        token = store.issue("a@example.com")

        reloaded = ResetTokenStore(settings, ttl=3600, clock=lambda: now[0])
        assert reloaded.lookup(token.token).email == "a@example.com"
        path = settings.state_dir / "reset-tokens.json"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

        now[0] += 3601
        assert store.lookup(token.token) is None
        assert store.redeem(token.token) is None

    def test_purge(self, settings):
        now = [0.0]
        store = ResetTokenStore(settings, ttl=10, clock=lambda: now[0])
        store.issue("a@example.com")
        store.issue("b@example.com")
        now[0] = 11
        assert store.purge_expired() == 2
