"""
Authentication for WebSocket upgrades.

HTTP middleware never sees upgrade requests, and browsers cannot attach
custom headers to the handshake, so the session cookie is checked here
before any route runs. Rejected sockets are closed before accept: the
server answers the handshake with 403 and no 101 is ever sent.
"""

from errors import WrapperError

POLICY_VIOLATION = 1008


class WebSocketAuthGate:
    def __init__(self, app, wrapper):
        self.app = app
        self.wrapper = wrapper

    async def __call__(self, scope, receive, send):
        if scope["type"] != "websocket":
            await self.app(scope, receive, send)
            return

        reason = await self._rejection_reason(scope)
        if reason:
            client = scope.get("client") or ("unknown", 0)
            print(f"[ws] rejected upgrade {scope.get('path', '')} from {client[0]}: {reason}", flush=True)
            message = await receive()
            if message["type"] == "websocket.connect":
                await send({"type": "websocket.close", "code": POLICY_VIOLATION})
            return

        await self.app(scope, receive, send)

    async def _rejection_reason(self, scope) -> str:
        wrapper = self.wrapper
        if not wrapper.settings.is_configured():
            return "not configured"

        if not wrapper.credentials.open_access:
            headers = dict(scope.get("headers") or [])
            raw_cookie = headers.get(b"cookie", b"").decode("latin-1")
            session = wrapper.sessions.load_from_cookie_header(raw_cookie)
            if session is None or not session.authenticated:
                return "no authenticated session"

        try:
            await wrapper.supervisor.ensure_running()
        except WrapperError as e:
            return f"gateway unavailable ({e})"
        return ""
