"""
Debug console: a fixed allow-list of lifecycle and diagnostic commands.

Never a shell. Each command maps to a wrapper action or one fixed OpenClaw
CLI invocation; the single free-form argument only ever lands in an argv
slot, never in a shell string.
"""

from typing import Optional

from pydantic import BaseModel

from cli import CommandExecutor
from errors import PreconditionFailed, WrapperError
from scrub import Scrubber
from supervisor import GatewaySupervisor

LOG_TAIL_DEFAULT = 200
LOG_TAIL_MIN = 50
LOG_TAIL_MAX = 1000

# Commands that shell out to the OpenClaw CLI.
CLI_COMMANDS = {
    "openclaw.version": ["--version"],
    "openclaw.status": ["status"],
    "openclaw.health": ["health"],
    "openclaw.doctor": ["doctor"],
}

GATEWAY_COMMANDS = {"gateway.restart", "gateway.stop", "gateway.start"}

ALLOWED_COMMANDS = GATEWAY_COMMANDS | set(CLI_COMMANDS) | {"openclaw.logs.tail", "openclaw.config.get"}


class ConsoleRequest(BaseModel):
    cmd: str = ""
    arg: str = ""


class CommandNotAllowed(WrapperError):
    status = 400
    code = "COMMAND_NOT_ALLOWED"
    message = "Command not allowed"
    action = "Pick one of the commands listed in the console."
    title = "Request Error"


def clamp_tail_lines(arg: str) -> int:
    try:
        lines = int(arg) if arg else LOG_TAIL_DEFAULT
    except ValueError:
        lines = LOG_TAIL_DEFAULT
    return max(LOG_TAIL_MIN, min(LOG_TAIL_MAX, lines))


def cli_args_for(cmd: str, arg: str) -> Optional[list[str]]:
    """The fixed argv for a CLI-backed command, or None for wrapper-managed ones."""
    if cmd in CLI_COMMANDS:
        return CLI_COMMANDS[cmd]
    if cmd == "openclaw.logs.tail":
        return ["logs", "--tail", str(clamp_tail_lines(arg))]
    if cmd == "openclaw.config.get":
        if not arg:
            raise PreconditionFailed("Missing config path", code="MISSING_ARGUMENT", action="Enter a config key to read.")
        return ["config", "get", arg]
    return None


async def run_console_command(
    request: ConsoleRequest,
    cli: CommandExecutor,
    supervisor: GatewaySupervisor,
    scrubber: Scrubber,
    timeout: float = 60.0,
) -> tuple[int, dict]:
    """Run one allow-listed command. Returns (http_status, body)."""
    cmd = request.cmd.strip()
    arg = request.arg.strip()
    if cmd not in ALLOWED_COMMANDS:
        raise CommandNotAllowed(details={"cmd": cmd})

    print(f"[console] {cmd}", flush=True)

    if cmd == "gateway.restart":
        await supervisor.restart()
        return 200, {"ok": True, "output": "Gateway restarted (wrapper-managed).\n"}
    if cmd == "gateway.stop":
        await supervisor.stop()
        return 200, {"ok": True, "output": "Gateway stopped (wrapper-managed).\n"}
    if cmd == "gateway.start":
        try:
            await supervisor.ensure_running(manual=True)
        except WrapperError as e:
            return 200, {"ok": False, "output": f"Gateway not started: {e.message}\n"}
        return 200, {"ok": True, "output": "Gateway started.\n"}

    result = await cli.run(cli_args_for(cmd, arg), timeout=timeout)
    return (200 if result.ok else 500), {"ok": result.ok, "output": scrubber.scrub(result.output)}
