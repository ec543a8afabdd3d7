"""
Secondary password for the /setup management surface.

Independent of the login gate. The password comes from SETUP_PASSWORD or is
created through the UI on first visit and persisted (hashed) as
setup.password. Forgotten passwords are reset with a single-use token
delivered by webhook or logged to the console.
"""

import hashlib
import html
import json
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import httpx

from credentials import constant_time_equals, write_private
from settings import Settings

PASSWORD_FILE = "setup.password"
RESET_TOKENS_FILE = "reset-tokens.json"
RESET_TOKEN_TTL = 60 * 60  # 1 hour
MIN_PASSWORD_LENGTH = 8
PBKDF2_ITERATIONS = 200_000

# Paths under /setup that stay reachable without the setup password.
PUBLIC_SETUP_PATHS = {
    "/setup/healthz",
    "/setup/password-prompt",
    "/setup/verify-password",
    "/setup/create-password",
    "/setup/save-password",
    "/setup/forgot-password",
    "/setup/request-reset",
    "/setup/reset-password",
    "/setup/confirm-reset",
}


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def check_password_hash(password: str, stored: str) -> bool:
    try:
        scheme, iterations, salt, expected = stored.split("$")
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), int(iterations))
    except ValueError:
        return False
    return scheme == "pbkdf2_sha256" and secrets.compare_digest(digest.hex(), expected)


def validate_new_password(password: str, confirm: str) -> Optional[str]:
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if password != confirm:
        return "Passwords do not match"
    return None


class SetupPassword:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.path = settings.state_dir / PASSWORD_FILE

    @property
    def enabled(self) -> bool:
        """The gate is active once any setup password exists or one is demanded."""
        return bool(self.settings.setup_password) or self.path.exists() or self.settings.setup_password_required

    def is_configured(self) -> bool:
        return bool(self.settings.setup_password) or self.path.exists()

    def save(self, password: str):
        write_private(self.path, hash_password(password))
        print("[setup] setup password saved", flush=True)

    def verify(self, password: str) -> bool:
        if self.settings.setup_password:
            return constant_time_equals(password, self.settings.setup_password)
        try:
            stored = self.path.read_text().strip()
        except OSError:
            return False
        return check_password_hash(password, stored)


# ----------------------------------------------------------------------
# Reset tokens
# ----------------------------------------------------------------------

@dataclass
class ResetToken:
    token: str
    email: str
    expires_at: float


class ResetTokenStore:
    """Single-use reset tokens persisted in reset-tokens.json (mode 0600)."""

    def __init__(self, settings: Settings, ttl: int = RESET_TOKEN_TTL, clock: Callable[[], float] = time.time):
        self.path = settings.state_dir / RESET_TOKENS_FILE
        self.ttl = ttl
        self._clock = clock
        self._tokens = self._load()

    def _load(self) -> dict[str, ResetToken]:
        try:
            raw = json.loads(self.path.read_text())
            return {t: ResetToken(token=t, email=v["email"], expires_at=v["expires_at"]) for t, v in raw.items()}
        except FileNotFoundError:
            return {}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            print(f"[reset] ignoring unreadable {self.path.name}: {e}", flush=True)
            return {}

    def _save(self):
        data = {t.token: {"email": t.email, "expires_at": t.expires_at} for t in self._tokens.values()}
        try:
            write_private(self.path, json.dumps(data, indent=2))
        except OSError as e:
            print(f"[reset] could not persist reset tokens: {e}", flush=True)

    def issue(self, email: str) -> ResetToken:
        self.purge_expired()
        token = ResetToken(token=secrets.token_hex(32), email=email, expires_at=self._clock() + self.ttl)
        self._tokens[token.token] = token
        self._save()
        return token

    def lookup(self, token: str) -> Optional[ResetToken]:
        """The live token, or None. Expired tokens are dropped on sight."""
        entry = self._tokens.get(token)
        if entry is None:
            return None
        if entry.expires_at < self._clock():
            del self._tokens[token]
            self._save()
            return None
        return entry

    def redeem(self, token: str) -> Optional[ResetToken]:
        entry = self.lookup(token)
        if entry is not None:
            del self._tokens[token]
            self._save()
        return entry

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [t for t, entry in self._tokens.items() if entry.expires_at < now]
        for t in expired:
            del self._tokens[t]
        if expired:
            self._save()
        return len(expired)


# ----------------------------------------------------------------------
# Delivery channels
# ----------------------------------------------------------------------

class ResetChannel(Protocol):
    async def deliver(self, token: ResetToken, reset_url: str) -> str: ...


class WebhookChannel:
    """POSTs the reset link to an email-sending webhook."""

    def __init__(self, url: str, client: httpx.AsyncClient):
        self.url = url
        self.client = client

    async def deliver(self, token: ResetToken, reset_url: str) -> str:
        payload = {
            "to": token.email,
            "subject": "Password Reset Request - OpenClaw Setup",
            "html": (
                "<h2>Password Reset Request</h2>"
                f'<p>Click to reset: <a href="{html.escape(reset_url)}">Reset Password</a></p>'
                "<p>This link expires in 1 hour.</p>"
            ),
            "resetUrl": reset_url,
            "expiresAt": int(token.expires_at * 1000),
        }
        try:
            resp = await self.client.post(self.url, json=payload, timeout=10.0)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            # The user still gets the generic message; the link is not leaked to them.
            print(f"[reset] webhook send error: {e}", flush=True)
        return "Reset link sent. Check your email."


class ConsoleChannel:
    async def deliver(self, token: ResetToken, reset_url: str) -> str:
        print(f"\n[reset] PASSWORD RESET LINK FOR {token.email}:\n{reset_url}\n", flush=True)
        return "Reset link logged to console. Contact your administrator."


def reset_channel(settings: Settings, client: httpx.AsyncClient) -> Optional[ResetChannel]:
    if settings.reset_webhook_url:
        return WebhookChannel(settings.reset_webhook_url, client)
    if settings.reset_console_mode:
        return ConsoleChannel()
    return None
