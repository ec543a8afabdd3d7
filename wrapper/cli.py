"""
OpenClaw CLI executor.

Onboarding, console commands and config edits all shell out to the wrapped
CLI. Everything goes through ClawCli.run(), which any object with the same
coroutine signature can stand in for (tests use a fake).
"""

import asyncio
from typing import NamedTuple, Protocol

from settings import Settings

TIMEOUT_EXIT_CODE = 124  # GNU timeout convention
SPAWN_ERROR_EXIT_CODE = 127


class CommandResult(NamedTuple):
    code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.code == 0


class CommandExecutor(Protocol):
    async def run(self, args: list[str], timeout: float = 60.0) -> CommandResult: ...


class ClawCli:
    """Runs `node <entry> <args...>` with the wrapper's state/workspace env."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def run(self, args: list[str], timeout: float = 60.0) -> CommandResult:
        argv = self.settings.claw_args(args)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self.settings.child_env(),
            )
        except OSError as e:
            return CommandResult(SPAWN_ERROR_EXIT_CODE, f"\n[spawn error] {e}\n")

        chunks: list[bytes] = []

        async def collect():
            while True:
                chunk = await proc.stdout.read(4096)
                if not chunk:
                    break
                chunks.append(chunk)
            await proc.wait()

        try:
            await asyncio.wait_for(collect(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            output = b"".join(chunks).decode("utf-8", errors="replace")
            output += f"\n[timeout] command killed after {timeout:g}s\n"
            return CommandResult(TIMEOUT_EXIT_CODE, output)

        output = b"".join(chunks).decode("utf-8", errors="replace")
        return CommandResult(proc.returncode if proc.returncode is not None else 0, output)
