"""
Tests for credentials, sessions, rate limiting and settings.
"""

import stat

import credentials
import settings as settings_module
from credentials import Credentials, TempBypass, credentials_match, resolve_persisted_secret
from rate_limit import RateLimiter
from sessions import SESSION_COOKIE, SessionStore, SessionUser
from settings import Settings


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCredentialResolution:

    def test_env_value_wins(self, tmp_path):
        secret = resolve_persisted_secret("from-env", tmp_path / "gateway.token")
        assert secret.value == "from-env"
        assert secret.source == "env"
        assert not (tmp_path / "gateway.token").exists()

    def test_generated_secret_is_persisted_privately_and_reused(self, tmp_path):
        path = tmp_path / "state" / "gateway.token"
        first = resolve_persisted_secret(None, path)
        assert first.source == "generated"
        assert len(first.value) == 64
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

        second = resolve_persisted_secret("", path)
        assert second.source == "persisted"
        assert second.value == first.value

    def test_load_sets_gateway_token_on_settings(self, settings):
        creds = Credentials.load(settings)
        assert settings.gateway_token == creds.gateway_token.value
        assert creds.open_access
        assert (settings.state_dir / "session.secret").exists()

    def test_login_secret_only_from_env(self, settings):
        settings.auth_password = "hunter22"
        creds = Credentials.load(settings)
        assert creds.login.kind == "password"
        assert not creds.open_access
        assert creds.verify_login(settings, "admin", "hunter22")
        assert not creds.verify_login(settings, "admin", "wrong")


class TestConstantTimeMatch:

    def test_either_part_wrong_fails(self):
        assert credentials_match("admin", "pw", "admin", "pw")
        assert not credentials_match("admin", "nope", "admin", "pw")
        assert not credentials_match("root", "pw", "admin", "pw")
        assert not credentials_match("", "", "admin", "pw")

    def test_both_parts_always_compared(self, monkeypatch):
        calls = []
        real = credentials.constant_time_equals

        def counting(provided, expected):
            calls.append((provided, expected))
            return real(provided, expected)

        monkeypatch.setattr(credentials, "constant_time_equals", counting)

        assert not credentials_match("root", "pw", "admin", "pw")
        assert len(calls) == 2
        calls.clear()
        assert not credentials_match("admin", "bad", "admin", "pw")
        assert len(calls) == 2


class TestTempBypass:

    def test_disabled_without_token(self, settings):
        bypass = TempBypass(settings)
        assert not bypass.enabled
        assert not bypass.verify("anything")
        assert bypass.status()["configured"] is False

    def test_expiry(self, settings):
        from datetime import datetime, timezone

        settings.temp_bypass_token = "emergency-token"
        settings.temp_bypass_expires_at = "2026-01-01T00:00:00Z"
        before = TempBypass(settings, clock=lambda: datetime(2025, 12, 31, 23, 0, tzinfo=timezone.utc))
        after = TempBypass(settings, clock=lambda: datetime(2026, 1, 1, 1, 0, tzinfo=timezone.utc))

        assert before.enabled and before.verify("emergency-token")
        assert before.status()["expiresInSeconds"] == 3600
        assert not after.enabled and after.expired
        assert not after.verify("emergency-token")


class TestSessionStore:

    def test_cookie_roundtrip(self):
        store = SessionStore("secret")
        session = store.create(SessionUser(id="u1", login="admin", display_name="admin"))
        loaded = store.load(store.cookie_value(session))
        assert loaded is session
        assert loaded.authenticated

    def test_tampered_cookie_rejected(self):
        store = SessionStore("secret")
        session = store.create()
        cookie = store.cookie_value(session)
        assert store.load(cookie[:-2] + "xx") is None
        assert SessionStore("other-secret").load(cookie) is None

    def test_ttl_expiry_and_refresh(self):
        clock = Clock()
        store = SessionStore("secret", ttl=100, clock=clock)
        session = store.create()
        cookie = store.cookie_value(session)

        clock.now += 50
        assert store.load(cookie).last_seen_at == clock.now

        clock.now += 60
        assert store.load(cookie) is None
        assert len(store) == 0

    def test_destroy_and_purge(self):
        clock = Clock()
        store = SessionStore("secret", ttl=100, clock=clock)
        keep = store.create()
        gone = store.create()
        store.destroy(gone.session_id)
        assert store.load(store.cookie_value(gone)) is None

        clock.now += 200
        assert store.purge_expired() == 1
        assert store.load(store.cookie_value(keep)) is None

    def test_expired_sessions_swept_on_create(self):
        clock = Clock()
        store = SessionStore("secret", ttl=100, clock=clock)
        for _ in range(50):
            store.create()
        assert len(store) == 50

        clock.now += 101
        fresh = store.create()
        assert len(store) == 1
        assert store.load(store.cookie_value(fresh)) is fresh

    def test_load_from_cookie_header(self):
        store = SessionStore("secret")
        session = store.create(SessionUser(id="u1", login="admin", display_name="admin"))
        header = f"theme=dark; {SESSION_COOKIE}={store.cookie_value(session)}"
        assert store.load_from_cookie_header(header) is session
        assert store.load_from_cookie_header("theme=dark") is None
        assert store.load_from_cookie_header(None) is None


class TestRateLimiter:

    def test_blocks_after_max_attempts(self):
        clock = Clock()
        limiter = RateLimiter(window_seconds=900, max_attempts=3, clock=clock)
        for _ in range(3):
            assert limiter.check("1.2.3.4").allowed
            limiter.record_failure("1.2.3.4")

        clock.now += 100
        decision = limiter.check("1.2.3.4")
        assert not decision.allowed
        assert decision.retry_after == 800
        assert limiter.check("5.6.7.8").allowed

    def test_window_elapses(self):
        clock = Clock()
        limiter = RateLimiter(window_seconds=900, max_attempts=1, clock=clock)
        limiter.record_failure("k")
        assert not limiter.check("k").allowed
        clock.now += 900
        decision = limiter.check("k")
        assert decision.allowed
        assert decision.remaining == 1

    def test_reset(self):
        limiter = RateLimiter(window_seconds=900, max_attempts=1)
        limiter.record_failure("k")
        limiter.reset("k")
        assert limiter.check("k").allowed

    def test_check_does_not_track_clients(self):
        limiter = RateLimiter(window_seconds=900, max_attempts=3)
        for i in range(100):
            assert limiter.check(f"10.0.0.{i}").allowed
        assert len(limiter) == 0

    def test_expired_buckets_are_dropped(self):
        clock = Clock()
        limiter = RateLimiter(window_seconds=900, max_attempts=3, clock=clock)
        for i in range(50):
            limiter.record_failure(f"10.0.0.{i}")
        assert len(limiter) == 50

        clock.now += 900
        limiter.record_failure("192.0.2.1")
        assert len(limiter) == 1

        clock.now += 900
        assert limiter.check("192.0.2.1").allowed
        assert len(limiter) == 0


class TestSettings:

    def test_defaults(self, tmp_path):
        s = Settings.from_env({"HOME": str(tmp_path), "OPENCLAW_STATE_DIR": str(tmp_path / "state")})
        assert s.port == 8080
        assert s.workspace_dir == tmp_path / "state" / "workspace"
        assert s.config_path == tmp_path / "state" / "openclaw.json"
        assert s.gateway_target == "http://127.0.0.1:18789"
        assert s.auth_password == ""
        assert s.forwarded_allow_ips == "127.0.0.1"

    def test_public_port_beats_platform_port(self):
        s = Settings.from_env({"PORT": "3000", "OPENCLAW_PUBLIC_PORT": "8080", "OPENCLAW_STATE_DIR": "/tmp/x"})
        assert s.port == 8080

    def test_deprecated_alias_warns_once(self, capsys, monkeypatch):
        monkeypatch.setattr(settings_module, "_warned_deprecated", set())
        env = {"CLAWDBOT_STATE_DIR": "/tmp/legacy-state"}
        first = Settings.from_env(env)
        Settings.from_env(env)
        out = capsys.readouterr().out
        assert first.state_dir.as_posix() == "/tmp/legacy-state"
        assert out.count("CLAWDBOT_STATE_DIR is deprecated") == 1

    def test_primary_wins_over_alias(self, capsys, monkeypatch):
        monkeypatch.setattr(settings_module, "_warned_deprecated", set())
        s = Settings.from_env({"OPENCLAW_STATE_DIR": "/tmp/new", "CLAWDBOT_STATE_DIR": "/tmp/old"})
        assert s.state_dir.as_posix() == "/tmp/new"
        assert "deprecated" not in capsys.readouterr().out

    def test_child_env_overrides(self, settings):
        settings.gateway_token = "tok"
        env = settings.child_env()
        assert env["OPENCLAW_STATE_DIR"] == str(settings.state_dir)
        assert env["OPENCLAW_WORKSPACE_DIR"] == str(settings.workspace_dir)
        assert env["OPENCLAW_GATEWAY_TOKEN"] == "tok"
