"""
Gateway process supervision.

Owns the single OpenClaw gateway child process: lazy start, readiness
polling, crash detection with bounded exponential-backoff restarts, and
graceful stop. Nothing else in the wrapper spawns or kills the gateway.

The gateway is bound to loopback and only reachable through the wrapper
proxy; it authenticates the wrapper with the shared internal token.
"""

import asyncio
import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx

from errors import GatewayNotConfigured, GatewayUnavailable
from settings import Settings

# Default Control UI base path first, then legacy, then root.
PROBE_PATHS = ("/openclaw", "/clawdbot", "/")
PROBE_INTERVAL = 0.25
STOP_GRACE_SECONDS = 3.0
AUTO_RESTART_READY_TIMEOUT = 10.0


class GatewayState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    CRASHED = "crashed"


def enforce_loopback_config(config_path: Path, port: int) -> bool:
    """Force token auth, loopback bind and the internal port in the gateway config.

    Returns True when the file had to be rewritten. OpenClaw 2026.2.4+ rejects
    "none" as an auth mode, so token mode with the wrapper's token is kept.
    """
    cfg = json.loads(config_path.read_text())
    if not isinstance(cfg, dict):
        raise ValueError("gateway config is not a JSON object")

    gateway = cfg.get("gateway")
    if not isinstance(gateway, dict):
        gateway = cfg["gateway"] = {}
    dirty = False

    if gateway.get("authMode") != "token":
        gateway["authMode"] = "token"
        dirty = True

    # Older config format nests the mode under gateway.auth.
    auth = gateway.get("auth")
    if isinstance(auth, dict) and auth.get("mode") and auth["mode"] != "token":
        auth["mode"] = "token"
        dirty = True

    if gateway.get("bind") != "loopback":
        gateway["bind"] = "loopback"
        dirty = True
    if gateway.get("port") != port:
        gateway["port"] = port
        dirty = True

    if dirty:
        config_path.write_text(json.dumps(cfg, indent=2))
    return dirty


class GatewaySupervisor:
    def __init__(
        self,
        settings: Settings,
        launcher: Optional[Callable[[], Awaitable]] = None,
        probe: Optional[Callable[[float], Awaitable[bool]]] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.settings = settings
        self._launch = launcher or self._spawn_gateway
        self._probe = probe or self.wait_for_ready
        self._sleep = sleep

        self.state = GatewayState.STOPPED
        self.proc = None
        self.started_at: Optional[datetime] = None
        self.restart_attempts = 0
        self.restarts_exhausted = False
        self.last_exit_code: Optional[int] = None
        self.shutting_down = False

        self._spawn_lock = asyncio.Lock()
        self._starting: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._watchers: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Process handle
    # ------------------------------------------------------------------

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc is not None else None

    def _alive(self) -> bool:
        return self.proc is not None and self.proc.returncode is None

    @property
    def restart_pending(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "pid": self.pid,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "restartAttempts": self.restart_attempts,
            "maxRestartAttempts": self.settings.max_restart_attempts,
            "restartsExhausted": self.restarts_exhausted,
            "restartPending": self.restart_pending,
            "lastExitCode": self.last_exit_code,
        }

    async def _spawn_gateway(self):
        args = [
            "gateway", "run",
            "--bind", "loopback",
            "--port", str(self.settings.internal_port),
            "--auth", "token",
            "--token", self.settings.gateway_token,
        ]
        # stdout/stderr inherit the wrapper's so gateway logs land in the platform log.
        return await asyncio.create_subprocess_exec(
            *self.settings.claw_args(args),
            env=self.settings.child_env(),
        )

    async def wait_for_ready(self, timeout: float) -> bool:
        """Poll the gateway until any HTTP response comes back.

        A 401/404 still proves the port is open and the process is serving.
        """
        headers = {}
        if self.settings.gateway_token:
            headers["Authorization"] = f"Bearer {self.settings.gateway_token}"

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        async with httpx.AsyncClient(timeout=httpx.Timeout(2.0)) as client:
            while loop.time() < deadline:
                for path in PROBE_PATHS:
                    try:
                        await client.get(f"{self.settings.gateway_target}{path}", headers=headers)
                        return True
                    except httpx.HTTPError:
                        continue
                await self._sleep(PROBE_INTERVAL)
        return False

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self):
        """Spawn the gateway if no live process exists."""
        async with self._spawn_lock:
            if self._alive():
                return
            if not self.settings.is_configured():
                raise GatewayNotConfigured()

            self.settings.state_dir.mkdir(parents=True, exist_ok=True)
            self.settings.workspace_dir.mkdir(parents=True, exist_ok=True)

            try:
                if enforce_loopback_config(self.settings.config_path, self.settings.internal_port):
                    print(
                        f"[gateway] patched gateway config: auth=token, bind=loopback, "
                        f"port={self.settings.internal_port}",
                        flush=True,
                    )
            except (OSError, ValueError) as e:
                print(f"[gateway] could not patch gateway config: {e}", flush=True)

            try:
                proc = await self._launch()
            except OSError as e:
                print(f"[gateway] spawn error: {e}", flush=True)
                if isinstance(e, FileNotFoundError):
                    print("[gateway] Binary not found. Check OPENCLAW_NODE and OPENCLAW_ENTRY paths.", flush=True)
                elif isinstance(e, PermissionError):
                    print("[gateway] Permission denied. Check file permissions.", flush=True)
                self.state = GatewayState.CRASHED
                raise GatewayUnavailable(
                    f"Gateway failed to spawn: {e}", status=503, title="Service Unavailable",
                ) from e

            self.proc = proc
            self.started_at = datetime.now(timezone.utc)
            self.last_exit_code = None
            print(f"[gateway] started pid={proc.pid}", flush=True)

            watcher = asyncio.create_task(self._watch(proc))
            self._watchers.add(watcher)
            watcher.add_done_callback(self._watchers.discard)

    async def _watch(self, proc):
        code = await proc.wait()
        if proc is not self.proc:
            return  # stopped on purpose
        print(f"[gateway] exited code={code}", flush=True)
        self.proc = None
        self.last_exit_code = code
        self.state = GatewayState.CRASHED
        if not self.shutting_down:
            self.schedule_restart()

    async def _terminate(self, proc, grace: float = STOP_GRACE_SECONDS):
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            print("[gateway] Gateway didn't exit gracefully, sending SIGKILL", flush=True)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    async def _terminate_current(self, grace: float = STOP_GRACE_SECONDS):
        # Clearing the handle first tells the exit watcher this stop is intentional.
        proc, self.proc = self.proc, None
        if proc is not None:
            await self._terminate(proc, grace)

    async def stop(self):
        self._cancel_pending_restart()
        await self._settle_start()
        await self._terminate_current()
        self.state = GatewayState.STOPPED

    async def shutdown(self, grace: float = STOP_GRACE_SECONDS):
        """Stop for good: no more auto-restarts."""
        self.shutting_down = True
        self._cancel_pending_restart()
        if self.proc is not None:
            print("[wrapper] Terminating gateway process...", flush=True)
        await self._terminate_current(grace)
        self.state = GatewayState.STOPPED

    def kill_now(self):
        """Best-effort SIGKILL for fatal paths where nothing else can be trusted."""
        proc = self.proc
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def ensure_running(self, manual: bool = False):
        """Make sure the gateway is up and answering before anything is trusted to it.

        Concurrent callers share one in-flight start. Raises GatewayNotConfigured
        or GatewayUnavailable.
        """
        if not self.settings.is_configured():
            raise GatewayNotConfigured()

        if self._alive() and self._starting is None:
            if await self._probe(self.settings.warm_check_timeout):
                self.state = GatewayState.READY
                if manual:
                    self._reset_attempts()
                return
            print("[gateway] process exists but not responding, restarting...", flush=True)
            await self._terminate_current()
            await self._sleep(0.5)

        # Cold starts can be slow on small containers.
        await self._join_start(self.settings.cold_start_timeout, GatewayState.STOPPED)
        if manual:
            self._reset_attempts()

    async def _join_start(self, timeout: float, failed_state: GatewayState):
        """Await the one in-flight start, beginning it if nobody has."""
        if self._starting is None:
            self._starting = asyncio.create_task(self._start_and_wait(timeout, failed_state))
        await asyncio.shield(self._starting)

    async def _start_and_wait(self, timeout: float, failed_state: GatewayState):
        try:
            self.state = GatewayState.STARTING
            try:
                await self.start()
            except GatewayNotConfigured:
                self.state = GatewayState.STOPPED
                raise
            if not await self._probe(timeout):
                await self._terminate_current()
                self.state = failed_state
                raise GatewayUnavailable(
                    "Gateway did not become ready in time", status=503, title="Service Unavailable",
                )
            self.state = GatewayState.READY
        finally:
            self._starting = None

    async def _settle_start(self):
        starting = self._starting
        if starting is None:
            return
        try:
            await asyncio.shield(starting)
        except (GatewayUnavailable, GatewayNotConfigured) as e:
            print(f"[gateway] in-flight start ended before stop: {e}", flush=True)

    async def restart(self):
        """Manual restart (console, config edits). Resets the crash counter on success."""
        print("[gateway] restart requested", flush=True)
        await self.stop()
        # Give the old process a moment to release the port.
        await self._sleep(0.75)
        await self.ensure_running(manual=True)

    def _reset_attempts(self):
        self.restart_attempts = 0
        self.restarts_exhausted = False

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    def _cancel_pending_restart(self):
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def schedule_restart(self):
        """Schedule one restart with exponential backoff; replaces any pending one."""
        self._cancel_pending_restart()

        max_attempts = self.settings.max_restart_attempts
        if self.restart_attempts >= max_attempts:
            self.restarts_exhausted = True
            self.state = GatewayState.CRASHED
            print(
                f"[gateway] Max restart attempts ({max_attempts}) exceeded. Manual intervention required.",
                flush=True,
            )
            return

        delay = self.settings.restart_base_delay * (2 ** self.restart_attempts)
        self.restart_attempts += 1
        print(
            f"[gateway] Scheduling restart attempt {self.restart_attempts}/{max_attempts} in {delay:g}s",
            flush=True,
        )
        self._restart_task = asyncio.create_task(self._delayed_restart(delay))

    async def _delayed_restart(self, delay: float):
        await self._sleep(delay)
        print(
            f"[gateway] Auto-restart attempt {self.restart_attempts}/{self.settings.max_restart_attempts}",
            flush=True,
        )
        if self._starting is None and self._alive():
            # Someone else brought it back during the backoff.
            print("[gateway] Already running again", flush=True)
            self.restart_attempts = 0
            return
        try:
            await self._join_start(AUTO_RESTART_READY_TIMEOUT, GatewayState.CRASHED)
        except (GatewayUnavailable, GatewayNotConfigured) as e:
            print(f"[gateway] Auto-restart failed: {e}", flush=True)
            self.schedule_restart()
            return
        print("[gateway] Successfully restarted", flush=True)
        self.restart_attempts = 0

    def kick(self) -> bool:
        """Request recovery after a crash, honouring the pending backoff timer.

        Returns False when restarts are exhausted and only a manual restart helps.
        """
        if self.restarts_exhausted:
            return False
        if not self.restart_pending and self._starting is None and not self._alive():
            self.schedule_restart()
        return True
