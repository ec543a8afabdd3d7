"""
One-time onboarding against the OpenClaw CLI.

Flow: Unconfigured -> (preflight ok) -> Onboarding -> (CLI exit 0 AND config
file exists) -> Configured. Any other outcome leaves the instance unconfigured
and raises a typed error. Configured is terminal until reset() deletes the
config file.

Failure classification is heuristic text matching on CLI output, not a
structured API of the CLI. Treat it as approximate: new CLI versions may word
errors differently. Extra rules can be supplied in onboard_rules.json.
"""

import asyncio
import json
import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from audit import AuditLog
from cli import CommandExecutor, CommandResult
from errors import OnboardInProgress, PreconditionFailed, onboard_error
from scrub import Scrubber
from settings import Settings
from supervisor import GatewaySupervisor

OUTPUT_PREVIEW_CHARS = 3000
CONFIG_STEP_TIMEOUT = 10.0

# authChoice values that authenticate through a locally installed CLI, no secret needed.
SECRETLESS_AUTH_CHOICES = {"claude-cli", "codex-cli"}

# authChoice -> onboard flag carrying the secret
PROVIDER_SECRET_FLAGS = {
    "openai-api-key": "--openai-api-key",
    "apiKey": "--anthropic-api-key",
    "openrouter-api-key": "--openrouter-api-key",
    "ai-gateway-api-key": "--ai-gateway-api-key",
    "moonshot-api-key": "--moonshot-api-key",
    "kimi-code-api-key": "--kimi-code-api-key",
    "gemini-api-key": "--gemini-api-key",
    "zai-api-key": "--zai-api-key",
    "minimax-api": "--minimax-api-key",
    "minimax-api-lightning": "--minimax-api-key",
    "synthetic-api-key": "--synthetic-api-key",
    "opencode-zen": "--opencode-zen-api-key",
}

PROVIDER_KEY_PATTERNS = {
    "openai-api-key": re.compile(r"^sk-"),
    "openrouter-api-key": re.compile(r"^sk-or-v1-"),
    "apiKey": re.compile(r"^sk-ant-"),
}

PROVIDER_KEY_HINTS = {
    "openai-api-key": "OpenAI keys usually start with sk-.",
    "openrouter-api-key": "OpenRouter keys usually start with sk-or-v1-.",
    "apiKey": "Anthropic keys usually start with sk-ant-.",
    "gemini-api-key": "Gemini keys are long API key strings from Google AI Studio.",
}

PROVIDERS_NEEDING_MODEL = {
    "openrouter-api-key",
    "openai-api-key",
    "gemini-api-key",
    "ai-gateway-api-key",
    "apiKey",
}


class OnboardPayload(BaseModel):
    flow: str = "quickstart"
    authChoice: str = ""
    authSecret: str = ""
    model: str = ""
    telegramToken: str = ""
    discordToken: str = ""
    slackBotToken: str = ""
    slackAppToken: str = ""

    @property
    def needs_secret(self) -> bool:
        return self.authChoice.strip() not in SECRETLESS_AUTH_CHOICES


def build_onboard_args(payload: OnboardPayload, settings: Settings) -> list[str]:
    """Map an onboarding request onto `openclaw onboard` arguments.

    Unknown auth choices are passed through without a secret flag rather than
    rejected; the CLI decides what it supports.
    """
    args = [
        "onboard",
        "--non-interactive",
        "--accept-risk",
        "--json",
        "--no-install-daemon",
        "--skip-health",
        "--workspace", str(settings.workspace_dir),
        # The wrapper owns public networking; keep the gateway internal.
        "--gateway-bind", "loopback",
        "--gateway-port", str(settings.internal_port),
        "--gateway-auth", "token",
        "--gateway-token", settings.gateway_token,
        "--flow", payload.flow or "quickstart",
    ]

    auth_choice = payload.authChoice.strip()
    if auth_choice:
        args += ["--auth-choice", auth_choice]
        secret = payload.authSecret.strip()
        flag = PROVIDER_SECRET_FLAGS.get(auth_choice)
        if flag and secret:
            args += [flag, secret]
        if auth_choice == "token" and secret:
            # Anthropic setup-token flow
            args += ["--token-provider", "anthropic", "--token", secret]

    # Model is applied afterwards with `config set`; newer builds reject --model here.
    return args


# ----------------------------------------------------------------------
# Failure classification
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ClassificationRule:
    code: str
    message: str
    action: str
    all_of: tuple[str, ...] = ()
    any_of: tuple[str, ...] = ()

    def matches(self, text: str) -> bool:
        if self.all_of and not all(marker in text for marker in self.all_of):
            return False
        if self.any_of and not any(marker in text for marker in self.any_of):
            return False
        return bool(self.all_of or self.any_of)


@dataclass(frozen=True)
class FailureClassification:
    code: str
    message: str
    action: str


# Evaluated in order; first match wins.
DEFAULT_RULES = (
    ClassificationRule(
        code="PROVIDER_AUTH_FAILED",
        message="Provider authentication failed during onboarding.",
        action="Verify provider selection and API key, then run Preflight again.",
        all_of=("invalid", "api key"),
    ),
    ClassificationRule(
        code="STORAGE_PERMISSION_ERROR",
        message="OpenClaw could not write required files.",
        action="Check OPENCLAW_STATE_DIR/OPENCLAW_WORKSPACE_DIR and volume mount permissions.",
        any_of=("permission denied", "eacces", "readonly"),
    ),
    ClassificationRule(
        code="ONBOARD_TIMEOUT",
        message="Onboarding timed out before completion.",
        action="Retry once; if it repeats, check network/provider connectivity and logs.",
        any_of=("timeout", "timed out"),
    ),
)

FALLBACK_CLASSIFICATION = FailureClassification(
    code="ONBOARD_FAILED",
    message="OpenClaw onboarding did not complete successfully.",
    action="Review setup output log, fix highlighted issues, and retry deployment.",
)


def load_rules(path: Optional[Path]) -> tuple[ClassificationRule, ...]:
    """Custom rules from JSON (checked first), followed by the defaults.

    File format: {"rules": [{"code", "message", "action", "allOf": [...], "anyOf": [...]}]}
    """
    custom = []
    if path and path.exists():
        try:
            data = json.loads(path.read_text())
            for raw in data.get("rules", []):
                rule = ClassificationRule(
                    code=str(raw["code"]),
                    message=str(raw.get("message", FALLBACK_CLASSIFICATION.message)),
                    action=str(raw.get("action", FALLBACK_CLASSIFICATION.action)),
                    all_of=tuple(str(m).lower() for m in raw.get("allOf", [])),
                    any_of=tuple(str(m).lower() for m in raw.get("anyOf", [])),
                )
                if rule.all_of or rule.any_of:
                    custom.append(rule)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            print(f"[onboard] ignoring unreadable rules file {path}: {e}", flush=True)
    return tuple(custom) + DEFAULT_RULES


def classify_failure(output: str, rules: tuple[ClassificationRule, ...] = DEFAULT_RULES) -> FailureClassification:
    text = (output or "").lower()
    for rule in rules:
        if rule.matches(text):
            return FailureClassification(rule.code, rule.message, rule.action)
    return FALLBACK_CLASSIFICATION


# ----------------------------------------------------------------------
# Preflight
# ----------------------------------------------------------------------

@dataclass
class PreflightReport:
    checks: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    warnings: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add(self, name: str, ok: bool, message: str, action: str = "", severity: str = "error"):
        self.checks.append({"name": name, "ok": ok, "message": message, "action": action, "severity": severity})
        if ok:
            return
        target = self.warnings if severity == "warning" else self.errors
        target.append({"name": name, "message": message, "action": action})

    def to_dict(self) -> dict:
        return {"ok": self.ok, "errors": self.errors, "warnings": self.warnings, "checks": self.checks}


def _dir_writable(path: Path) -> bool:
    """Writable if it exists and is writable, or its nearest existing parent is."""
    probe = path
    while not probe.exists():
        if probe.parent == probe:
            return False
        probe = probe.parent
    return probe.is_dir() and os.access(probe, os.W_OK | os.X_OK)


def _is_under(path: Path, root: Path) -> bool:
    path = path.resolve()
    root = root.resolve()
    return path == root or root in path.parents


def preflight(payload: OnboardPayload, settings: Settings) -> PreflightReport:
    """Check onboarding inputs and storage without touching anything."""
    report = PreflightReport()
    auth_choice = payload.authChoice.strip()
    secret = payload.authSecret.strip()

    report.add(
        "providerKey",
        not payload.needs_secret or bool(secret),
        "Provider credential is required for this auth mode.",
        "Paste a valid API key in the Auth Secret field before deploying.",
    )

    pattern = PROVIDER_KEY_PATTERNS.get(auth_choice)
    if payload.needs_secret and pattern is not None:
        report.add(
            "providerKeyFormat",
            bool(pattern.match(secret)),
            "Provider key format looks invalid.",
            PROVIDER_KEY_HINTS.get(auth_choice, "Verify the provider key and try again."),
            severity="warning",
        )

    if auth_choice in PROVIDERS_NEEDING_MODEL:
        report.add(
            "model",
            bool(payload.model.strip()),
            "Model is recommended for this provider.",
            "Set a model value (for example gpt-4o or anthropic/claude-sonnet-4).",
            severity="warning",
        )

    state_ok = _dir_writable(settings.state_dir)
    report.add(
        "stateDir",
        state_ok,
        f"State directory ready: {settings.state_dir}" if state_ok
        else f"Cannot create state directory: {settings.state_dir}",
        "" if state_ok else "Ensure OPENCLAW_STATE_DIR points to a writable volume path.",
    )

    workspace_ok = _dir_writable(settings.workspace_dir)
    report.add(
        "workspaceDir",
        workspace_ok,
        f"Workspace directory ready: {settings.workspace_dir}" if workspace_ok
        else f"Cannot create workspace directory: {settings.workspace_dir}",
        "" if workspace_ok else "Ensure OPENCLAW_WORKSPACE_DIR points to a writable volume path.",
    )

    root = settings.data_root
    if _is_under(settings.state_dir, root) or _is_under(settings.workspace_dir, root):
        report.add(
            "dataMount",
            root.exists(),
            f"Expected persistent volume mount at {root} was not found.",
            f"Attach a volume mounted at {root} and redeploy.",
        )
    else:
        report.add(
            "dataMount",
            False,
            f"State/workspace are not under {root}; persistence may be lost on redeploy.",
            f"Set OPENCLAW_STATE_DIR={root}/.openclaw and OPENCLAW_WORKSPACE_DIR={root}/workspace.",
            severity="warning",
        )

    return report


# ----------------------------------------------------------------------
# Orchestration
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    ok: bool
    exit_code: Optional[int] = None
    output: str = ""
    skipped: bool = False


@dataclass
class OnboardOutcome:
    ok: bool
    output: str
    steps: list[StepResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"ok": self.ok, "output": self.output, "steps": [asdict(s) for s in self.steps]}


class Onboarder:
    def __init__(
        self,
        settings: Settings,
        cli: CommandExecutor,
        supervisor: GatewaySupervisor,
        scrubber: Scrubber,
        audit: AuditLog,
    ):
        self.settings = settings
        self.cli = cli
        self.supervisor = supervisor
        self.scrubber = scrubber
        self.audit = audit
        self.rules = load_rules(settings.rules_path)
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    @property
    def state(self) -> str:
        if self._lock.locked():
            return "onboarding"
        return "configured" if self.settings.is_configured() else "unconfigured"

    async def run(self, payload: OnboardPayload) -> OnboardOutcome:
        if self._lock.locked():
            raise OnboardInProgress()
        async with self._lock:
            return await self._run(payload)

    async def _run(self, payload: OnboardPayload) -> OnboardOutcome:
        if self.settings.is_configured():
            await self.supervisor.ensure_running()
            return OnboardOutcome(
                ok=True,
                output="Already configured.\nUse Reset setup if you want to rerun onboarding.\n",
            )

        blockers = []
        if payload.needs_secret and not payload.authSecret.strip():
            blockers.append("Provider credential is required for this auth mode.")
        if blockers:
            raise PreconditionFailed(details={"blockers": blockers})

        self.settings.state_dir.mkdir(parents=True, exist_ok=True)
        self.settings.workspace_dir.mkdir(parents=True, exist_ok=True)

        print(f"[onboard] running onboarding (authChoice={payload.authChoice or '-'})", flush=True)
        onboard = await self.cli.run(build_onboard_args(payload, self.settings), timeout=self.settings.command_timeout)

        if not (onboard.code == 0 and self.settings.is_configured()):
            classified = classify_failure(onboard.output, self.rules)
            self.audit.record("onboard_failed", code=classified.code, exit_code=onboard.code)
            raise onboard_error(
                classified.code,
                classified.message,
                classified.action,
                details={
                    "commandExitCode": onboard.code,
                    "outputPreview": self.scrubber.scrub(onboard.output or "")[:OUTPUT_PREVIEW_CHARS],
                },
            )

        self.audit.record("onboard_succeeded", auth_choice=payload.authChoice)
        steps = await self._post_onboard_steps(payload)

        extra = "".join(self._describe_step(s) for s in steps)
        self._restart_in_background()
        extra += "\n[gateway] starting in background...\n"

        return OnboardOutcome(ok=True, output=self.scrubber.scrub(f"{onboard.output}{extra}"), steps=steps)

    async def _config_step(self, name: str, args: list[str], timeout: Optional[float] = None) -> StepResult:
        result: CommandResult = await self.cli.run(args, timeout=timeout or self.settings.command_timeout)
        return StepResult(
            name=name, ok=result.code == 0, exit_code=result.code, output=self.scrubber.scrub(result.output or ""),
        )

    async def _post_onboard_steps(self, payload: OnboardPayload) -> list[StepResult]:
        """Optional follow-up configuration. Each step is independent; none undoes onboarding."""
        port = str(self.settings.internal_port)
        steps = [
            await self._config_step("gateway.authMode", ["config", "set", "gateway.authMode", "token"], CONFIG_STEP_TIMEOUT),
            await self._config_step("gateway.bind", ["config", "set", "gateway.bind", "loopback"], CONFIG_STEP_TIMEOUT),
            await self._config_step("gateway.port", ["config", "set", "gateway.port", port], CONFIG_STEP_TIMEOUT),
        ]

        model = payload.model.strip()
        if model:
            steps.append(await self._config_step("model", ["config", "set", "model", model]))

        channels = self._channel_configs(payload)
        if channels:
            help_result = await self.cli.run(["channels", "add", "--help"], timeout=self.settings.command_timeout)
            help_text = help_result.output or ""
            for channel, cfg in channels.items():
                if channel not in help_text:
                    steps.append(StepResult(
                        name=channel, ok=False, skipped=True,
                        output=f"this openclaw build does not list {channel} in `channels add --help`",
                    ))
                    continue
                steps.append(await self._config_step(
                    f"{channel} config", ["config", "set", "--json", f"channels.{channel}", json.dumps(cfg)],
                ))
                steps.append(await self._config_step(f"{channel} verify", ["config", "get", f"channels.{channel}"]))

        for step in steps:
            if not step.ok and not step.skipped:
                print(f"[onboard] step {step.name} failed (exit={step.exit_code})", flush=True)
        return steps

    @staticmethod
    def _channel_configs(payload: OnboardPayload) -> dict[str, dict]:
        channels = {}
        telegram = payload.telegramToken.strip()
        if telegram:
            channels["telegram"] = {
                "enabled": True,
                "dmPolicy": "pairing",
                "botToken": telegram,
                "groupPolicy": "allowlist",
                "streamMode": "partial",
            }
        discord = payload.discordToken.strip()
        if discord:
            channels["discord"] = {
                "enabled": True,
                "token": discord,
                "groupPolicy": "allowlist",
                "dm": {"policy": "pairing"},
            }
        bot, app = payload.slackBotToken.strip(), payload.slackAppToken.strip()
        if bot or app:
            slack = {"enabled": True}
            if bot:
                slack["botToken"] = bot
            if app:
                slack["appToken"] = app
            channels["slack"] = slack
        return channels

    @staticmethod
    def _describe_step(step: StepResult) -> str:
        if step.skipped:
            return f"\n[{step.name}] skipped ({step.output})\n"
        if step.name.startswith("gateway."):
            return ""
        if step.name == "model":
            return f"\n[model] set (exit={step.exit_code})\n"
        return (
            f"\n[{step.name}] exit={step.exit_code} (output {len(step.output)} chars)\n"
            f"{step.output or '(no output)'}"
        )

    def _restart_in_background(self):
        async def restart():
            try:
                await self.supervisor.restart()
            except Exception as e:
                print(f"[onboard] background gateway start failed: {e}", flush=True)

        task = asyncio.create_task(restart())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def reset(self):
        """Delete the config file so onboarding can run again. Credentials and workspace stay."""
        await self.supervisor.stop()
        self.settings.config_path.unlink(missing_ok=True)
        self.audit.record("onboard_reset", config_path=str(self.settings.config_path))
