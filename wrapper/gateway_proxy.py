"""
Reverse proxy to the loopback gateway.

HTTP is streamed both ways with httpx; WebSocket traffic is bridged to an
upstream `websockets` client connection. The browser never sees the internal
token: every forwarded request gets the wrapper's Authorization header.
"""

import asyncio
from typing import Optional

import httpx
import websockets
import websockets.exceptions
from fastapi import Request, WebSocket
from fastapi.responses import StreamingResponse
from starlette.websockets import WebSocketDisconnect

from errors import GatewayUnavailable
from settings import Settings

HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Handshake headers the websocket client generates itself.
WS_SKIP_HEADERS = HOP_BY_HOP | {
    "host",
    "authorization",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "content-length",
}


def map_upstream_error(exc: httpx.HTTPError) -> GatewayUnavailable:
    """Translate a transport failure into the status the browser should see."""
    if isinstance(exc, httpx.TimeoutException):
        return GatewayUnavailable(
            "The gateway took too long to respond.",
            status=504, title="Gateway Timeout", code="GATEWAY_TIMEOUT",
        )
    if isinstance(exc, httpx.ConnectError):
        return GatewayUnavailable(
            "The gateway is not responding. It may be starting up.",
            status=503, title="Service Unavailable", code="GATEWAY_STARTING",
        )
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return GatewayUnavailable(
            "The connection to the gateway was reset.",
            status=502, title="Connection Reset", code="GATEWAY_CONNECTION_RESET",
        )
    return GatewayUnavailable(f"Proxy error: {exc}", status=502, title="Bad Gateway")


class GatewayProxy:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.client = httpx.AsyncClient(
            base_url=settings.gateway_target,
            timeout=httpx.Timeout(settings.proxy_timeout),
            transport=transport,
        )

    async def aclose(self):
        await self.client.aclose()

    def _upstream_headers(self, request: Request) -> dict[str, str]:
        headers = {
            k: v for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP and k.lower() not in {"host", "authorization"}
        }
        headers["authorization"] = f"Bearer {self.settings.gateway_token}"

        peer = request.client.host if request.client else ""
        prior = request.headers.get("x-forwarded-for")
        if peer:
            headers["x-forwarded-for"] = f"{prior}, {peer}" if prior else peer
        headers.setdefault("x-forwarded-proto", request.url.scheme)
        if request.headers.get("host"):
            headers.setdefault("x-forwarded-host", request.headers["host"])
        return headers

    async def forward(self, request: Request) -> StreamingResponse:
        """Stream one request to the gateway and its response back."""
        path = request.url.path
        if request.url.query:
            path += f"?{request.url.query}"

        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        upstream_request = self.client.build_request(
            request.method,
            path,
            headers=self._upstream_headers(request),
            content=request.stream() if has_body else None,
        )

        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            print(f"[proxy] {request.method} {request.url.path} failed: {type(e).__name__}: {e}", flush=True)
            raise map_upstream_error(e) from e

        async def body():
            # Closing here also covers the client hanging up mid-stream.
            try:
                async for chunk in upstream.aiter_raw():
                    yield chunk
            except httpx.HTTPError as e:
                print(f"[proxy] stream from gateway aborted: {e}", flush=True)
            finally:
                await upstream.aclose()

        response = StreamingResponse(body(), status_code=upstream.status_code)
        for key, value in upstream.headers.multi_items():
            if key.lower() not in HOP_BY_HOP:
                response.headers.append(key, value)
        return response

    # ------------------------------------------------------------------
    # WebSocket
    # ------------------------------------------------------------------

    def websocket_url(self, websocket: WebSocket) -> str:
        url = f"ws://{self.settings.internal_host}:{self.settings.internal_port}{websocket.url.path}"
        if websocket.url.query:
            url += f"?{websocket.url.query}"
        return url

    async def forward_websocket(self, websocket: WebSocket):
        """Bridge an already-authorised client socket to the gateway.

        The upstream connection is opened before accepting the client so a
        dead gateway surfaces as a rejected handshake, not an open-then-closed
        socket.
        """
        headers = [
            (k, v) for k, v in websocket.headers.items()
            if k.lower() not in WS_SKIP_HEADERS
        ]
        headers.append(("Authorization", f"Bearer {self.settings.gateway_token}"))
        subprotocols = websocket.scope.get("subprotocols") or None

        try:
            upstream = await websockets.connect(
                self.websocket_url(websocket),
                additional_headers=headers,
                subprotocols=subprotocols,
                open_timeout=self.settings.proxy_timeout,
                max_size=None,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            print(f"[ws] upstream connect failed: {e}", flush=True)
            await websocket.close(code=1011)
            return

        await websocket.accept(subprotocol=upstream.subprotocol)

        async def client_to_gateway():
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
                elif message.get("text") is not None:
                    await upstream.send(message["text"])

        async def gateway_to_client():
            async for message in upstream:
                if isinstance(message, bytes):
                    await websocket.send_bytes(message)
                else:
                    await websocket.send_text(message)

        tasks = [
            asyncio.create_task(client_to_gateway()),
            asyncio.create_task(gateway_to_client()),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc and not isinstance(exc, (WebSocketDisconnect, websockets.exceptions.ConnectionClosed)):
                    print(f"[ws] proxy error: {exc}", flush=True)
        finally:
            for task in tasks:
                task.cancel()
            await upstream.close()
            try:
                await websocket.close()
            except RuntimeError:
                pass  # already closed by the client
