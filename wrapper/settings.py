"""
Wrapper configuration.

Everything is read from the environment once, at process start. Deprecated
CLAWDBOT_* aliases are still honoured but warn (once per alias).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

_warned_deprecated: set[str] = set()


def env_with_shim(environ: Mapping[str, str], primary: str, deprecated: str) -> Optional[str]:
    """Prefer `primary`, fall back to `deprecated` with a one-time warning."""
    value = (environ.get(primary) or "").strip()
    if value:
        return value

    value = (environ.get(deprecated) or "").strip()
    if not value:
        return None

    if deprecated not in _warned_deprecated:
        print(f"[deprecation] {deprecated} is deprecated. Use {primary} instead.", flush=True)
        _warned_deprecated.add(deprecated)
    return value


def _int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value else default
    except ValueError:
        return default


@dataclass
class Settings:
    state_dir: Path
    workspace_dir: Path
    port: int = 8080
    config_path_override: Optional[Path] = None

    auth_username: str = "admin"
    auth_password: str = ""
    session_secret: str = ""
    gateway_token: str = ""
    setup_password: str = ""
    setup_password_required: bool = False

    # Proxies whose X-Forwarded-For uvicorn believes (comma list or CIDR).
    forwarded_allow_ips: str = "127.0.0.1"

    internal_host: str = "127.0.0.1"
    internal_port: int = 18789
    openclaw_node: str = "node"
    openclaw_entry: str = "/openclaw/dist/entry.js"

    data_root: Path = Path("/data")
    reset_webhook_url: str = ""
    reset_console_mode: bool = False

    temp_bypass_token: str = ""
    temp_bypass_expires_at: str = ""
    temp_bypass_window_ms: int = 900_000
    temp_bypass_max_attempts: int = 10

    onboard_rules_path: Optional[Path] = None
    scrub_rules_path: Optional[Path] = None
    audit_log_path: Optional[Path] = None

    production: bool = False
    cookie_secure: bool = False
    ui_version: str = "dev"

    # Supervisor / proxy tuning
    max_restart_attempts: int = 3
    restart_base_delay: float = 1.0
    cold_start_timeout: float = 45.0
    warm_check_timeout: float = 2.0
    proxy_timeout: float = 30.0
    command_timeout: float = 60.0

    extra_env: dict = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        state_dir = Path(
            env_with_shim(env, "OPENCLAW_STATE_DIR", "CLAWDBOT_STATE_DIR")
            or Path.home() / ".openclaw"
        )
        workspace_dir = Path(
            env_with_shim(env, "OPENCLAW_WORKSPACE_DIR", "CLAWDBOT_WORKSPACE_DIR")
            or state_dir / "workspace"
        )
        config_override = env_with_shim(env, "OPENCLAW_CONFIG_PATH", "CLAWDBOT_CONFIG_PATH")

        # Railway injects PORT=3000 by default; the public port variable wins.
        port = _int(
            env_with_shim(env, "OPENCLAW_PUBLIC_PORT", "CLAWDBOT_PUBLIC_PORT") or env.get("PORT"),
            8080,
        )

        production = env.get("NODE_ENV") == "production" or env.get("WRAPPER_ENV") == "production"

        return cls(
            state_dir=state_dir,
            workspace_dir=workspace_dir,
            port=port,
            config_path_override=Path(config_override) if config_override else None,
            auth_username=(env.get("AUTH_USERNAME") or "").strip() or "admin",
            auth_password=(env.get("AUTH_PASSWORD") or "").strip() or (env.get("SETUP_PASSWORD") or "").strip(),
            session_secret=(env.get("SESSION_SECRET") or "").strip(),
            gateway_token=env_with_shim(env, "OPENCLAW_GATEWAY_TOKEN", "CLAWDBOT_GATEWAY_TOKEN") or "",
            setup_password=(env.get("SETUP_PASSWORD") or "").strip(),
            setup_password_required=env.get("SETUP_PASSWORD_REQUIRED", "").lower() in ("1", "true", "yes"),
            forwarded_allow_ips=(env.get("FORWARDED_ALLOW_IPS") or "").strip() or "127.0.0.1",
            internal_host=env.get("INTERNAL_GATEWAY_HOST", "127.0.0.1"),
            internal_port=_int(env.get("INTERNAL_GATEWAY_PORT"), 18789),
            openclaw_node=(env.get("OPENCLAW_NODE") or "").strip() or "node",
            openclaw_entry=(env.get("OPENCLAW_ENTRY") or "").strip() or "/openclaw/dist/entry.js",
            data_root=Path(env.get("DATA_ROOT", "/data")),
            reset_webhook_url=(env.get("PASSWORD_RESET_WEBHOOK_URL") or "").strip(),
            reset_console_mode=env.get("PASSWORD_RESET_CONSOLE_MODE") == "true",
            temp_bypass_token=(env.get("TEMP_ADMIN_BYPASS_TOKEN") or "").strip(),
            temp_bypass_expires_at=(env.get("TEMP_ADMIN_BYPASS_EXPIRES_AT") or "").strip(),
            temp_bypass_window_ms=_int(env.get("TEMP_ADMIN_BYPASS_RATE_LIMIT_WINDOW_MS"), 900_000),
            temp_bypass_max_attempts=_int(env.get("TEMP_ADMIN_BYPASS_RATE_LIMIT_MAX_ATTEMPTS"), 10),
            onboard_rules_path=Path(env["ONBOARD_RULES_PATH"]) if env.get("ONBOARD_RULES_PATH") else None,
            scrub_rules_path=Path(env["SCRUB_RULES_PATH"]) if env.get("SCRUB_RULES_PATH") else None,
            audit_log_path=Path(env["AUDIT_LOG"]) if env.get("AUDIT_LOG") else None,
            production=production,
            cookie_secure=production or bool(env.get("RAILWAY_ENVIRONMENT")),
            ui_version=env.get("RAILWAY_GIT_COMMIT_SHA") or env.get("RAILWAY_DEPLOYMENT_ID") or "dev",
        )

    @property
    def config_path(self) -> Path:
        return self.config_path_override or self.state_dir / "openclaw.json"

    @property
    def gateway_target(self) -> str:
        return f"http://{self.internal_host}:{self.internal_port}"

    @property
    def rules_path(self) -> Path:
        return self.onboard_rules_path or self.state_dir / "onboard_rules.json"

    @property
    def redaction_rules_path(self) -> Path:
        return self.scrub_rules_path or self.state_dir / "scrub_rules.json"

    @property
    def audit_path(self) -> Path:
        return self.audit_log_path or self.state_dir / "audit.jsonl"

    def is_configured(self) -> bool:
        """The config artifact's existence is what marks the instance as onboarded."""
        try:
            return self.config_path.exists()
        except OSError:
            return False

    def child_env(self) -> dict[str, str]:
        """Environment for anything spawned from the OpenClaw CLI."""
        env = dict(os.environ)
        env.update(self.extra_env)
        env["OPENCLAW_STATE_DIR"] = str(self.state_dir)
        env["OPENCLAW_WORKSPACE_DIR"] = str(self.workspace_dir)
        if self.gateway_token:
            env["OPENCLAW_GATEWAY_TOKEN"] = self.gateway_token
        return env

    def claw_args(self, args: list[str]) -> list[str]:
        """Always run the built-from-source entry directly (avoids PATH mismatches)."""
        return [self.openclaw_node, self.openclaw_entry, *args]
