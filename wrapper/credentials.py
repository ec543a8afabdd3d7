"""
Credential resolution.

Secrets come from the environment when set; otherwise they are generated once
and persisted under the state directory (mode 0600) so restarts reuse them.
"""

import hashlib
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from settings import Settings

SESSION_SECRET_FILE = "session.secret"
GATEWAY_TOKEN_FILE = "gateway.token"


@dataclass(frozen=True)
class CredentialSecret:
    kind: str  # "password" | "token"
    value: str
    source: str  # "env" | "persisted" | "generated"


def write_private(path: Path, content: str):
    """Write a file readable only by the wrapper user."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    os.chmod(path, 0o600)


def resolve_persisted_secret(env_value: Optional[str], path: Path, kind: str = "token") -> CredentialSecret:
    """Env value, else previously persisted value, else a freshly generated one."""
    if env_value and env_value.strip():
        return CredentialSecret(kind, env_value.strip(), "env")

    try:
        existing = path.read_text().strip()
        if existing:
            return CredentialSecret(kind, existing, "persisted")
    except OSError:
        pass  # first run

    generated = secrets.token_hex(32)
    try:
        write_private(path, generated)
    except OSError as e:
        # Still usable for this process, just not stable across restarts.
        print(f"[credentials] could not persist {path.name}: {e}", flush=True)
    return CredentialSecret(kind, generated, "generated")


def _digest(value: str) -> bytes:
    return hashlib.sha256(value.encode("utf-8")).digest()


def constant_time_equals(provided: str, expected: str) -> bool:
    """Compare fixed-length digests so neither content nor length leaks through timing."""
    return secrets.compare_digest(_digest(provided), _digest(expected))


def credentials_match(username: str, password: str, expected_username: str, expected_password: str) -> bool:
    # Both comparisons always run; no short-circuit on the username.
    user_ok = constant_time_equals(username, expected_username)
    pass_ok = constant_time_equals(password, expected_password)
    return user_ok & pass_ok


@dataclass
class Credentials:
    login: Optional[CredentialSecret]
    session_secret: CredentialSecret
    gateway_token: CredentialSecret

    @classmethod
    def load(cls, settings: Settings) -> "Credentials":
        login = CredentialSecret("password", settings.auth_password, "env") if settings.auth_password else None
        session_secret = resolve_persisted_secret(
            settings.session_secret, settings.state_dir / SESSION_SECRET_FILE,
        )
        gateway_token = resolve_persisted_secret(
            settings.gateway_token, settings.state_dir / GATEWAY_TOKEN_FILE,
        )
        # The CLI and gateway read the token from the environment as well.
        settings.gateway_token = gateway_token.value
        return cls(login=login, session_secret=session_secret, gateway_token=gateway_token)

    @property
    def open_access(self) -> bool:
        return self.login is None

    def verify_login(self, settings: Settings, username: str, password: str) -> bool:
        if self.login is None:
            return True
        return credentials_match(username, password, settings.auth_username, self.login.value)


def _parse_expiry(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        print(f"[credentials] ignoring unparseable TEMP_ADMIN_BYPASS_EXPIRES_AT={value!r}", flush=True)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class TempBypass:
    """Emergency admin token, optionally time-boxed by TEMP_ADMIN_BYPASS_EXPIRES_AT."""

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.token = settings.temp_bypass_token
        self.expires_at = _parse_expiry(settings.temp_bypass_expires_at)
        self.raw_expires_at = settings.temp_bypass_expires_at or None
        self.window_ms = settings.temp_bypass_window_ms
        self.max_attempts = settings.temp_bypass_max_attempts
        self._clock = clock

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self._clock() > self.expires_at

    @property
    def enabled(self) -> bool:
        return bool(self.token) and not self.expired

    def verify(self, token: str) -> bool:
        if not self.enabled or not token:
            return False
        return constant_time_equals(token, self.token)

    def status(self) -> dict:
        expires_in = None
        if self.expires_at is not None:
            expires_in = max(0, int((self.expires_at - self._clock()).total_seconds()))
        return {
            "configured": bool(self.token),
            "enabled": self.enabled,
            "expired": self.expired,
            "expiresAt": self.raw_expires_at,
            "expiresInSeconds": expires_in,
            "rateLimitWindowMs": self.window_ms,
            "rateLimitMaxAttempts": self.max_attempts,
        }
