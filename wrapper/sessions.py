"""
Server-side session store.

The browser only holds a signed session id (itsdangerous); user state stays
in process memory and expires after the TTL.
"""

import secrets
import time
from dataclasses import dataclass
from http.cookies import CookieError, SimpleCookie
from typing import Callable, Optional

from itsdangerous import BadSignature, SignatureExpired, TimestampSigner

SESSION_COOKIE = "clawgate_session"
SESSION_TTL = 30 * 24 * 60 * 60  # 30 days
PURGE_INTERVAL = 60.0


@dataclass
class SessionUser:
    id: str
    login: str
    display_name: str

    def to_dict(self) -> dict:
        return {"id": self.id, "login": self.login, "name": self.display_name}


@dataclass
class Session:
    session_id: str
    created_at: float
    last_seen_at: float
    user: Optional[SessionUser] = None
    setup_password_verified: bool = False

    @property
    def authenticated(self) -> bool:
        return self.user is not None


class SessionStore:
    def __init__(self, secret: str, ttl: int = SESSION_TTL, clock: Callable[[], float] = time.time):
        self._signer = TimestampSigner(secret, salt="clawgate.session")
        self._sessions: dict[str, Session] = {}
        self.ttl = ttl
        self._clock = clock
        self._last_purge = clock()

    def __len__(self):
        return len(self._sessions)

    def create(self, user: Optional[SessionUser] = None) -> Session:
        now = self._clock()
        self._purge_if_due(now)
        session = Session(session_id=secrets.token_hex(32), created_at=now, last_seen_at=now, user=user)
        self._sessions[session.session_id] = session
        return session

    def cookie_value(self, session: Session) -> str:
        return self._signer.sign(session.session_id).decode()

    def load(self, cookie_value: Optional[str]) -> Optional[Session]:
        """Resolve a signed cookie to its live session, refreshing last_seen_at."""
        if not cookie_value:
            return None
        try:
            session_id = self._signer.unsign(cookie_value, max_age=self.ttl).decode()
        except (BadSignature, SignatureExpired):
            return None

        now = self._clock()
        self._purge_if_due(now)
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if now - session.created_at > self.ttl:
            self._sessions.pop(session_id, None)
            return None
        session.last_seen_at = now
        return session

    def load_from_cookie_header(self, raw_cookie: Optional[str]) -> Optional[Session]:
        """Parse a raw Cookie header (WebSocket handshakes never reach the HTTP middleware)."""
        if not raw_cookie:
            return None
        jar = SimpleCookie()
        try:
            jar.load(raw_cookie)
        except CookieError:
            return None
        morsel = jar.get(SESSION_COOKIE)
        return self.load(morsel.value) if morsel else None

    def destroy(self, session_id: str):
        self._sessions.pop(session_id, None)

    def _purge_if_due(self, now: float):
        if now - self._last_purge >= PURGE_INTERVAL:
            self.purge_expired()

    def purge_expired(self) -> int:
        now = self._last_purge = self._clock()
        expired = [sid for sid, s in self._sessions.items() if now - s.created_at > self.ttl]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)
