"""
Shared fakes for wrapper tests.

The OpenClaw CLI and gateway process are replaced by in-memory fakes; the
gateway's HTTP side is an httpx.MockTransport.
"""

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from cli import CommandResult
from main import create_app
from settings import Settings
from supervisor import GatewaySupervisor


class FakeProcess:
    _next_pid = 4000

    def __init__(self):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode = None
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    def exit(self, code: int):
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)


class FakeLauncher:
    """Stands in for the gateway spawn; counts launches."""

    def __init__(self):
        self.processes: list[FakeProcess] = []

    async def __call__(self):
        await asyncio.sleep(0)
        proc = FakeProcess()
        self.processes.append(proc)
        return proc

    @property
    def spawn_count(self) -> int:
        return len(self.processes)


class FakeProbe:
    """Readiness probe returning queued results, then a default."""

    def __init__(self, default: bool = True, results=None, delay: float = 0.0):
        self.default = default
        self.results = list(results or [])
        self.delay = delay
        self.calls: list[float] = []

    async def __call__(self, timeout: float) -> bool:
        self.calls.append(timeout)
        await asyncio.sleep(self.delay)
        if self.results:
            return self.results.pop(0)
        return self.default


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeCli:
    """Records argv lists; answers through `handler(args) -> CommandResult`."""

    def __init__(self, settings: Settings, handler=None):
        self.settings = settings
        self.calls: list[list[str]] = []
        self.handler = handler or self.default_handler

    def default_handler(self, args: list[str]) -> CommandResult:
        if args == ["--version"]:
            return CommandResult(0, "2026.2.4\n")
        if args[:1] == ["onboard"]:
            self.settings.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.settings.config_path.write_text(json.dumps({"gateway": {"bind": "lan"}}))
            return CommandResult(0, '{"ok": true}\n')
        if args == ["channels", "add", "--help"]:
            return CommandResult(0, "Usage: channels add <telegram|discord|slack>\n")
        return CommandResult(0, "ok\n")

    async def run(self, args: list[str], timeout: float = 60.0) -> CommandResult:
        self.calls.append(list(args))
        await asyncio.sleep(0)
        return self.handler(list(args))


async def until(predicate, rounds: int = 500):
    """Yield to the loop until predicate() holds."""
    for _ in range(rounds):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


def gateway_echo(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "method": request.method,
            "path": request.url.path,
            "query": request.url.query.decode(),
            "authorization": request.headers.get("authorization"),
            "forwardedFor": request.headers.get("x-forwarded-for"),
            "body": request.content.decode(errors="replace"),
        },
        headers={"x-gateway": "openclaw"},
    )


@pytest.fixture
def settings(tmp_path):
    data = tmp_path / "data"
    data.mkdir()
    return Settings(
        state_dir=data / ".openclaw",
        workspace_dir=data / "workspace",
        data_root=data,
        cold_start_timeout=1.0,
        warm_check_timeout=0.1,
    )


def write_config(settings: Settings, cfg=None):
    settings.config_path.parent.mkdir(parents=True, exist_ok=True)
    settings.config_path.write_text(json.dumps(cfg or {}))


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def make_client(settings, launcher, probe):
    """Build a TestClient around a fully faked wrapper. Use as a context manager."""

    def _make(cli=None, handler=gateway_echo, transport=None, sleep=None):
        supervisor = GatewaySupervisor(settings, launcher=launcher, probe=probe, sleep=sleep or RecordingSleep())
        app = create_app(
            settings,
            cli=cli or FakeCli(settings),
            supervisor=supervisor,
            proxy_transport=transport or httpx.MockTransport(handler),
        )
        return TestClient(app)

    return _make


def login(client: TestClient, username: str = "admin", password: str = "hunter22"):
    return client.post(
        "/auth/login",
        data={"username": username, "password": password},
        follow_redirects=False,
    )
