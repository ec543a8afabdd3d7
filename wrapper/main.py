#!/usr/bin/env python3
"""
clawgate: supervising reverse proxy for an OpenClaw gateway

Responsibilities:
- Login gate (session cookie) in front of everything except health checks
- Optional setup password for the /setup management surface
- One-time onboarding through the OpenClaw CLI
- Gateway process supervision (lazy start, crash restarts with backoff)
- HTTP + WebSocket proxy to the loopback gateway
- Debug console, raw config editor, backup export/import

Usage:
    python3 -m uvicorn main:create_app --factory --host 0.0.0.0 --port 8080
or simply `python3 main.py`, which also installs the fatal-error hook and honours
FORWARDED_ALLOW_IPS for X-Forwarded-For.
"""

import asyncio
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

import httpx
import uvicorn
from fastapi import FastAPI, Form, Request, WebSocket
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from pydantic import BaseModel

import backup
import pages
from audit import AuditLog
from cli import ClawCli, CommandExecutor
from console import ALLOWED_COMMANDS, ConsoleRequest, run_console_command
from credentials import Credentials, TempBypass, write_private
from errors import (
    AuthenticationRequired,
    GatewayUnavailable,
    InternalError,
    PreconditionFailed,
    RateLimited,
    WrapperError,
)
from gateway_proxy import GatewayProxy
from onboarding import PROVIDER_SECRET_FLAGS, SECRETLESS_AUTH_CHOICES, OnboardPayload, Onboarder, preflight
from rate_limit import RateLimiter, client_key
from scrub import Scrubber
from sessions import SESSION_COOKIE, SESSION_TTL, Session, SessionStore, SessionUser
from settings import Settings
from setup_password import (
    PUBLIC_SETUP_PATHS,
    ResetTokenStore,
    SetupPassword,
    reset_channel,
    validate_new_password,
)
from supervisor import GatewayState, GatewaySupervisor
from ws_gate import WebSocketAuthGate

LOGIN_WINDOW_SECONDS = 15 * 60
LOGIN_MAX_ATTEMPTS = 10
SETUP_PASSWORD_MAX_ATTEMPTS = 5
MAX_CONFIG_BYTES = 500_000
SHUTDOWN_TIMEOUT = 10.0

PUBLIC_PATHS = {
    "/healthz",
    "/setup/healthz",
    "/auth/login",
    "/auth/temp-login",
    "/auth/temp-login/status",
} | PUBLIC_SETUP_PATHS

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


class ConfigPayload(BaseModel):
    content: str = ""


class PairingRequest(BaseModel):
    channel: str = ""
    code: str = ""


class Wrapper:
    """Everything long-lived the request handlers share. One per app."""

    def __init__(
        self,
        settings: Settings,
        cli: Optional[CommandExecutor] = None,
        supervisor: Optional[GatewaySupervisor] = None,
        proxy_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.credentials = Credentials.load(settings)
        self.sessions = SessionStore(self.credentials.session_secret.value)
        self.audit = AuditLog(settings.audit_path)
        self.scrubber = Scrubber(settings.redaction_rules_path)
        self.cli = cli or ClawCli(settings)
        self.supervisor = supervisor or GatewaySupervisor(settings)
        self.proxy = GatewayProxy(settings, transport=proxy_transport)
        self.onboarder = Onboarder(settings, self.cli, self.supervisor, self.scrubber, self.audit)
        self.setup_password = SetupPassword(settings)
        self.reset_tokens = ResetTokenStore(settings)
        self.temp_bypass = TempBypass(settings)
        self.http = httpx.AsyncClient(timeout=httpx.Timeout(10.0))

        self.login_limiter = RateLimiter(LOGIN_WINDOW_SECONDS, LOGIN_MAX_ATTEMPTS)
        self.setup_password_limiter = RateLimiter(LOGIN_WINDOW_SECONDS, SETUP_PASSWORD_MAX_ATTEMPTS)
        self.bypass_limiter = RateLimiter(settings.temp_bypass_window_ms / 1000, settings.temp_bypass_max_attempts)

    async def aclose(self):
        await self.proxy.aclose()
        await self.http.aclose()


def log_startup(settings: Settings, credentials: Credentials):
    print(f"[wrapper] listening on :{settings.port}", flush=True)
    print(f"[wrapper] state dir: {settings.state_dir}", flush=True)
    print(f"[wrapper] workspace dir: {settings.workspace_dir}", flush=True)
    print(f"[wrapper] gateway token: {'(set)' if settings.gateway_token else '(missing)'} "
          f"[{credentials.gateway_token.source}]", flush=True)
    print(f"[wrapper] gateway target: {settings.gateway_target}", flush=True)
    if not credentials.open_access:
        print(f"[wrapper] auth: username/password (username={settings.auth_username})", flush=True)
        return
    print("[wrapper] ================================================", flush=True)
    print("[wrapper] WARNING: Authentication not configured!", flush=True)
    print("[wrapper] Set AUTH_PASSWORD (and optionally AUTH_USERNAME)", flush=True)
    print("[wrapper] in your environment variables to protect this instance.", flush=True)
    print("[wrapper] Open Access mode: anyone can access /setup", flush=True)
    print("[wrapper] ================================================", flush=True)


def wants_json(request: Request) -> bool:
    return request.url.path.startswith("/setup/api/") or "application/json" in request.headers.get("accept", "")


def error_response(request: Request, exc: WrapperError) -> Response:
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    if wants_json(request):
        return JSONResponse(exc.to_dict(), status_code=exc.status, headers=headers)
    return HTMLResponse(
        pages.error_page(exc.status, exc.title, exc.message, exc.action or None),
        status_code=exc.status,
        headers=headers,
    )


def redirect(url: str, **params: str) -> RedirectResponse:
    if params:
        url += "?" + "&".join(f"{k}={quote(v)}" for k, v in params.items())
    return RedirectResponse(url, status_code=303)


def create_app(
    settings: Optional[Settings] = None,
    *,
    cli: Optional[CommandExecutor] = None,
    supervisor: Optional[GatewaySupervisor] = None,
    proxy_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    wrapper = Wrapper(settings, cli=cli, supervisor=supervisor, proxy_transport=proxy_transport)

    app = FastAPI(title="clawgate", version="1.0.0", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.wrapper = wrapper
    app.add_middleware(WebSocketAuthGate, wrapper=wrapper)

    def session_of(request: Request) -> Optional[Session]:
        return getattr(request.state, "session", None)

    def set_session_cookie(response: Response, session: Session):
        response.set_cookie(
            key=SESSION_COOKIE,
            value=wrapper.sessions.cookie_value(session),
            httponly=True,
            samesite="lax",
            secure=settings.cookie_secure,
            path="/",
            max_age=SESSION_TTL,
        )

    def ensure_session(request: Request) -> tuple[Session, bool]:
        """The request's session, creating an anonymous one if needed. Second item: newly created."""
        session = session_of(request)
        if session is not None:
            return session, False
        return wrapper.sessions.create(), True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @app.on_event("startup")
    async def startup():
        log_startup(settings, wrapper.credentials)

    @app.on_event("shutdown")
    async def shutdown():
        print("[wrapper] shutting down", flush=True)
        try:
            await asyncio.wait_for(wrapper.supervisor.shutdown(), timeout=SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            print("[wrapper] graceful shutdown timed out, killing gateway", flush=True)
            wrapper.supervisor.kill_now()
        await wrapper.aclose()
        print("[wrapper] Graceful shutdown complete", flush=True)

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    @app.exception_handler(WrapperError)
    async def handle_wrapper_error(request: Request, exc: WrapperError):
        return error_response(request, exc)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        print(f"[wrapper] unhandled error on {request.method} {request.url.path}: {exc}", flush=True)
        traceback.print_exc()
        details = None if settings.production else {"error": f"{type(exc).__name__}: {exc}"}
        return error_response(request, InternalError(details=details))

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    @app.middleware("http")
    async def gate(request: Request, call_next):
        path = request.url.path
        session = wrapper.sessions.load(request.cookies.get(SESSION_COOKIE))
        request.state.session = session

        if path in PUBLIC_PATHS:
            return await call_next(request)

        if not wrapper.credentials.open_access and not (session and session.authenticated):
            return error_response(request, AuthenticationRequired()) if wants_json(request) \
                else RedirectResponse("/auth/login", status_code=302)

        if (path == "/setup" or path.startswith("/setup/")) and wrapper.setup_password.enabled:
            if not wrapper.setup_password.is_configured():
                if wants_json(request):
                    return error_response(request, AuthenticationRequired(
                        "Setup password not yet configured. Visit /setup to create one.",
                        code="SETUP_PASSWORD_NOT_CONFIGURED",
                    ))
                return RedirectResponse("/setup/create-password", status_code=302)
            if not (session and session.setup_password_verified):
                if wants_json(request):
                    return error_response(request, AuthenticationRequired(
                        "Setup password required", code="SETUP_PASSWORD_REQUIRED",
                        action="Enter the setup password at /setup/password-prompt.",
                    ))
                return RedirectResponse("/setup/password-prompt", status_code=302)

        return await call_next(request)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/setup/healthz")
    async def setup_healthz():
        return {"ok": True}

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    @app.get("/auth/login", response_class=HTMLResponse)
    async def login_form(request: Request, error: str = ""):
        session = session_of(request)
        if session and session.authenticated:
            return RedirectResponse("/", status_code=302)
        return HTMLResponse(pages.login_page(error, open_access=wrapper.credentials.open_access))

    @app.post("/auth/login")
    async def login(request: Request, username: str = Form(""), password: str = Form("")):
        key = client_key(request)
        decision = wrapper.login_limiter.check(key)
        if not decision.allowed:
            wrapper.audit.record("login_rate_limited", client=key, retry_after=decision.retry_after)
            raise RateLimited(decision.retry_after, "Too many login attempts. Please try again later.")

        username = username.strip()
        if not username or (not password and not wrapper.credentials.open_access):
            wrapper.login_limiter.record_failure(key)
            return redirect("/auth/login", error="Username and password are required")

        if wrapper.credentials.open_access:
            print(f"[auth] WARNING: open-access login for {username!r} (AUTH_PASSWORD is not set)", flush=True)
            user = SessionUser(id="open-access", login=username, display_name="Open Access User")
        elif wrapper.credentials.verify_login(settings, username, password):
            user = SessionUser(id=os.urandom(8).hex(), login=username, display_name=username)
        else:
            wrapper.login_limiter.record_failure(key)
            wrapper.audit.record("login_failed", client=key, username=username)
            return redirect("/auth/login", error="Invalid username or password")

        wrapper.login_limiter.reset(key)
        wrapper.sessions.purge_expired()
        previous = session_of(request)
        if previous is not None:
            wrapper.sessions.destroy(previous.session_id)
        session = wrapper.sessions.create(user)
        if previous is not None:
            session.setup_password_verified = previous.setup_password_verified
        wrapper.audit.record("login", client=key, user=user.login, open_access=wrapper.credentials.open_access)

        response = redirect("/setup")
        set_session_cookie(response, session)
        return response

    @app.get("/auth/logout")
    async def logout(request: Request):
        session = session_of(request)
        if session is not None:
            wrapper.sessions.destroy(session.session_id)
        response = RedirectResponse("/auth/login", status_code=302)
        response.delete_cookie(SESSION_COOKIE, path="/")
        return response

    @app.get("/auth/me")
    async def me(request: Request):
        session = session_of(request)
        if session is None or not session.authenticated:
            raise AuthenticationRequired()
        return {"user": session.user.to_dict()}

    @app.post("/auth/temp-login")
    async def temp_login(request: Request, token: str = Form("")):
        bypass = wrapper.temp_bypass
        if not bypass.enabled:
            raise WrapperError(
                "Temporary admin access is not enabled.", code="TEMP_BYPASS_DISABLED", status=403,
                action="Set TEMP_ADMIN_BYPASS_TOKEN (and an expiry) to enable it.",
            )

        key = client_key(request)
        decision = wrapper.bypass_limiter.check(key)
        if not decision.allowed:
            wrapper.audit.record("temp_login_rate_limited", client=key)
            raise RateLimited(decision.retry_after)

        if not bypass.verify(token.strip()):
            wrapper.bypass_limiter.record_failure(key)
            wrapper.audit.record("temp_login_failed", client=key)
            raise AuthenticationRequired("Invalid temporary admin token", code="TEMP_BYPASS_INVALID")

        wrapper.bypass_limiter.reset(key)
        session = wrapper.sessions.create(SessionUser(id="temp-admin", login="temp-admin", display_name="Temporary Admin"))
        session.setup_password_verified = True
        wrapper.audit.record("temp_login", client=key)
        print("[auth] WARNING: temporary admin bypass token used", flush=True)

        response = redirect("/setup")
        set_session_cookie(response, session)
        return response

    @app.get("/auth/temp-login/status")
    async def temp_login_status():
        return wrapper.temp_bypass.status()

    # ------------------------------------------------------------------
    # Setup password
    # ------------------------------------------------------------------

    def verified_redirect(request: Request, target: str = "/setup") -> RedirectResponse:
        session, created = ensure_session(request)
        session.setup_password_verified = True
        response = redirect(target)
        if created:
            set_session_cookie(response, session)
        return response

    @app.get("/setup/create-password", response_class=HTMLResponse)
    async def create_password_form(error: str = ""):
        if wrapper.setup_password.is_configured():
            return RedirectResponse("/setup/password-prompt", status_code=302)
        return HTMLResponse(pages.create_password_page(error), headers={"Cache-Control": "no-store, max-age=0"})

    @app.post("/setup/save-password")
    async def save_password(request: Request, password: str = Form(""), confirm: str = Form("")):
        if wrapper.setup_password.is_configured():
            return redirect("/setup/password-prompt")
        problem = validate_new_password(password, confirm)
        if problem:
            return redirect("/setup/create-password", error=problem)
        try:
            wrapper.setup_password.save(password)
        except OSError as e:
            print(f"[setup] could not save setup password: {e}", flush=True)
            return redirect("/setup/create-password", error="Failed to save password. Check server logs.")
        wrapper.audit.record("setup_password_created", client=client_key(request))
        return verified_redirect(request)

    @app.get("/setup/password-prompt", response_class=HTMLResponse)
    async def password_prompt(error: str = "", message: str = ""):
        return HTMLResponse(pages.password_prompt_page(error, message), headers={"Cache-Control": "no-store, max-age=0"})

    @app.post("/setup/verify-password")
    async def verify_password(request: Request, password: str = Form("")):
        key = client_key(request)
        if not wrapper.setup_password_limiter.check(key).allowed:
            wrapper.audit.record("setup_password_rate_limited", client=key)
            return redirect("/setup/password-prompt", error="Too many attempts. Please try again later.")
        if not wrapper.setup_password.verify(password):
            wrapper.setup_password_limiter.record_failure(key)
            wrapper.audit.record("setup_password_failed", client=key)
            return redirect("/setup/password-prompt", error="Incorrect password")
        wrapper.setup_password_limiter.reset(key)
        return verified_redirect(request)

    @app.get("/setup/forgot-password", response_class=HTMLResponse)
    async def forgot_password(error: str = "", message: str = ""):
        return HTMLResponse(pages.forgot_password_page(error, message), headers={"Cache-Control": "no-store, max-age=0"})

    @app.post("/setup/request-reset")
    async def request_reset(request: Request, email: str = Form("")):
        email = email.strip().lower()
        if not email:
            return redirect("/setup/forgot-password", error="Email is required")

        channel = reset_channel(settings, wrapper.http)
        if channel is None:
            return redirect("/setup/forgot-password", error="Email service not configured. Contact your administrator.")

        token = wrapper.reset_tokens.issue(email)
        reset_url = f"{str(request.base_url).rstrip('/')}/setup/reset-password?token={quote(token.token)}"
        message = await channel.deliver(token, reset_url)
        wrapper.audit.record("setup_password_reset_requested", client=client_key(request))
        return redirect("/setup/forgot-password", message=message)

    @app.get("/setup/reset-password", response_class=HTMLResponse)
    async def reset_password_form(token: str = "", error: str = ""):
        token = token.strip()
        if not token:
            return redirect("/setup/forgot-password", error="Invalid or missing reset token")
        if wrapper.reset_tokens.lookup(token) is None:
            return redirect("/setup/forgot-password", error="Reset link has expired. Please request a new one.")
        return HTMLResponse(pages.reset_password_page(token, error), headers={"Cache-Control": "no-store, max-age=0"})

    @app.post("/setup/confirm-reset")
    async def confirm_reset(request: Request, token: str = Form(""), password: str = Form(""), confirm: str = Form("")):
        token = token.strip()
        if wrapper.reset_tokens.lookup(token) is None:
            return redirect("/setup/forgot-password", error="Reset link has expired")
        if settings.setup_password:
            return redirect("/setup/forgot-password", error="SETUP_PASSWORD is set in the environment; change it there.")
        problem = validate_new_password(password, confirm)
        if problem:
            return redirect("/setup/reset-password", token=token, error=problem)
        try:
            wrapper.setup_password.save(password)
        except OSError as e:
            print(f"[reset] error saving password: {e}", flush=True)
            return redirect("/setup/reset-password", token=token, error="Failed to reset password. Please try again.")
        wrapper.reset_tokens.redeem(token)
        wrapper.audit.record("setup_password_reset", client=client_key(request))
        return redirect(
            "/setup/password-prompt",
            message="Password reset successfully. Please log in with your new password.",
        )

    # ------------------------------------------------------------------
    # Setup UI + API
    # ------------------------------------------------------------------

    @app.get("/setup", response_class=HTMLResponse)
    async def setup_ui():
        choices = sorted(set(PROVIDER_SECRET_FLAGS) | SECRETLESS_AUTH_CHOICES | {"token"})
        return HTMLResponse(
            pages.setup_page(settings.ui_version, choices, sorted(ALLOWED_COMMANDS)),
            headers={"Cache-Control": "no-store, max-age=0"},
        )

    @app.get("/setup/api/status")
    async def setup_status():
        version = await wrapper.cli.run(["--version"], timeout=settings.command_timeout)
        return {
            "configured": settings.is_configured(),
            "state": wrapper.onboarder.state,
            "openclawVersion": version.output.strip(),
            "gateway": wrapper.supervisor.status(),
            "uiVersion": settings.ui_version,
        }

    @app.post("/setup/api/preflight")
    async def setup_preflight(payload: OnboardPayload):
        return preflight(payload, settings).to_dict()

    @app.post("/setup/api/run")
    async def setup_run(payload: OnboardPayload):
        try:
            outcome = await wrapper.onboarder.run(payload)
        except WrapperError:
            raise
        except Exception as e:
            print(f"[/setup/api/run] error: {e}", flush=True)
            traceback.print_exc()
            raise InternalError(details=None if settings.production else {"error": wrapper.scrubber.scrub(str(e))}) from e
        return outcome.to_dict()

    @app.get("/setup/api/debug")
    async def setup_debug():
        version = await wrapper.cli.run(["--version"], timeout=settings.command_timeout)
        channels_help = await wrapper.cli.run(["channels", "add", "--help"], timeout=settings.command_timeout)
        return {
            "wrapper": {
                "python": sys.version.split()[0],
                "port": settings.port,
                "stateDir": str(settings.state_dir),
                "workspaceDir": str(settings.workspace_dir),
                "configPath": str(settings.config_path),
                "gatewayTokenSource": wrapper.credentials.gateway_token.source,
                "uiVersion": settings.ui_version,
            },
            "openclaw": {
                "entry": settings.openclaw_entry,
                "node": settings.openclaw_node,
                "version": version.output.strip(),
                "channelsAddHelpIncludesTelegram": "telegram" in channels_help.output,
            },
            "gateway": wrapper.supervisor.status(),
            "audit": wrapper.scrubber.scrub_dict(wrapper.audit.tail(20)),
        }

    @app.get("/setup/api/gateway")
    async def setup_gateway():
        return {"configured": settings.is_configured(), **wrapper.supervisor.status()}

    @app.post("/setup/api/console/run")
    async def console_run(body: ConsoleRequest):
        status, result = await run_console_command(
            body, wrapper.cli, wrapper.supervisor, wrapper.scrubber, timeout=settings.command_timeout,
        )
        wrapper.audit.record("console_command", cmd=body.cmd.strip(), ok=result["ok"])
        return JSONResponse(result, status_code=status)

    @app.get("/setup/api/config/raw")
    async def config_raw():
        path = settings.config_path
        exists = path.exists()
        return {"ok": True, "path": str(path), "exists": exists, "content": path.read_text() if exists else ""}

    @app.post("/setup/api/config/raw")
    async def config_raw_save(body: ConfigPayload):
        if len(body.content) > MAX_CONFIG_BYTES:
            raise WrapperError("Config too large", code="CONFIG_TOO_LARGE", status=413,
                               action=f"Keep the config under {MAX_CONFIG_BYTES} bytes.")

        path = settings.config_path
        settings.state_dir.mkdir(parents=True, exist_ok=True)
        result = {"ok": True, "path": str(path)}
        if path.exists():
            stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
            backup_path = path.with_name(f"{path.name}.bak-{stamp}")
            write_private(backup_path, path.read_text())
            result["backup"] = str(backup_path)
        write_private(path, body.content)
        wrapper.audit.record("config_written", path=str(path), bytes=len(body.content))

        if settings.is_configured():
            try:
                await wrapper.supervisor.restart()
                result["restarted"] = True
            except WrapperError as e:
                result["restarted"] = False
                result["restartError"] = e.message
        return result

    @app.post("/setup/api/pairing/approve")
    async def pairing_approve(body: PairingRequest):
        channel, code = body.channel.strip(), body.code.strip()
        if not channel or not code:
            raise PreconditionFailed("Missing channel or code", code="MISSING_ARGUMENT",
                                     action="Provide both the channel and the pairing code.")
        result = await wrapper.cli.run(["pairing", "approve", channel, code], timeout=settings.command_timeout)
        wrapper.audit.record("pairing_approved", channel=channel, ok=result.ok)
        return JSONResponse(
            {"ok": result.ok, "output": wrapper.scrubber.scrub(result.output)},
            status_code=200 if result.ok else 500,
        )

    @app.post("/setup/api/reset")
    async def setup_reset():
        await wrapper.onboarder.reset()
        return PlainTextResponse("OK - deleted config file. You can rerun setup now.")

    @app.get("/setup/export")
    async def export_backup():
        data = await asyncio.to_thread(backup.export_archive, settings)
        stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        wrapper.audit.record("backup_exported", bytes=len(data))
        return Response(
            data,
            media_type="application/gzip",
            headers={"Content-Disposition": f'attachment; filename="openclaw-backup-{stamp}.tar.gz"'},
        )

    @app.post("/setup/import")
    async def import_backup(request: Request):
        root = settings.data_root
        if not (backup.is_under_dir(settings.state_dir, root) and backup.is_under_dir(settings.workspace_dir, root)):
            return PlainTextResponse(
                f"Import is only supported when OPENCLAW_STATE_DIR and OPENCLAW_WORKSPACE_DIR are under {root}.\n",
                status_code=400,
            )

        chunks, total = [], 0
        async for chunk in request.stream():
            total += len(chunk)
            if total > backup.MAX_IMPORT_BYTES:
                return PlainTextResponse("payload too large\n", status_code=413)
            chunks.append(chunk)
        data = b"".join(chunks)
        if not data:
            return PlainTextResponse("Empty body\n", status_code=400)

        try:
            tar, members = await asyncio.to_thread(backup.read_archive, settings, data)
        except backup.ImportRejected as e:
            return PlainTextResponse(f"{e}\n", status_code=400)

        # Don't restore underneath a running gateway.
        await wrapper.supervisor.stop()
        start_error = None
        try:
            names = await asyncio.to_thread(backup.extract_members, settings, tar, members)
        finally:
            if settings.is_configured():
                try:
                    await wrapper.supervisor.restart()
                except WrapperError as e:
                    start_error = e.message
                    print(f"[import] gateway did not start after import: {e.message}", flush=True)
        wrapper.audit.record("backup_imported", members=len(names))

        if start_error:
            return PlainTextResponse(f"OK - imported backup into {root}, but the gateway did not start: {start_error}\n")
        return PlainTextResponse(f"OK - imported backup into {root} and restarted gateway.\n")

    # ------------------------------------------------------------------
    # Proxy (must be registered last)
    # ------------------------------------------------------------------

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request, path: str):
        if not settings.is_configured():
            return RedirectResponse("/setup", status_code=302)

        gateway = wrapper.supervisor
        if gateway.state == GatewayState.CRASHED:
            recovering = gateway.kick()
            if wants_json(request):
                raise GatewayUnavailable(
                    "The gateway is restarting." if recovering
                    else "The gateway crashed repeatedly. Run gateway.restart from the setup console.",
                    status=503, title="Service Unavailable",
                    code="GATEWAY_RESTARTING" if recovering else "GATEWAY_RESTARTS_EXHAUSTED",
                )
            page = pages.starting_page() if recovering else pages.restart_required_page()
            return HTMLResponse(page, status_code=503)

        await gateway.ensure_running()
        return await wrapper.proxy.forward(request)

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        await wrapper.proxy.forward_websocket(websocket)

    return app


def run():
    settings = Settings.from_env()
    app = create_app(settings)
    supervisor = app.state.wrapper.supervisor

    def fatal(exc_type, exc, tb):
        print("[wrapper] FATAL: Uncaught exception - application in undefined state", flush=True)
        traceback.print_exception(exc_type, exc, tb)
        supervisor.kill_now()
        os._exit(1)

    sys.excepthook = fatal

    config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=settings.port,
        timeout_graceful_shutdown=int(SHUTDOWN_TIMEOUT),
        proxy_headers=True,
        forwarded_allow_ips=settings.forwarded_allow_ips,
    )
    server = uvicorn.Server(config)

    def loop_exception(loop, context):
        print(f"[wrapper] unhandled async error: {context.get('message')}: {context.get('exception')}", flush=True)

    async def serve():
        asyncio.get_running_loop().set_exception_handler(loop_exception)
        await server.serve()

    try:
        asyncio.run(serve())
    except BaseException:
        supervisor.kill_now()
        raise


if __name__ == "__main__":
    run()
