"""
Regex redaction for CLI output returned to the browser.

Console and onboarding output may echo provider keys or channel tokens, so
everything shown to a client goes through a Scrubber first. The shipped
patterns can be switched off from scrub_rules.json but never removed; the
same file may add site-specific patterns. Best-effort only: secrets inside
config paths or unusual formats can still slip through.
"""

import json
import re
from pathlib import Path
from typing import Any, Optional

REDACTED = "[REDACTED]"

# (id, label, pattern, replacement)
_SHIPPED = (
    ("api-key-sk", "Provider keys (sk-...)", r"sk-[A-Za-z0-9_-]{10,}", REDACTED),
    ("github-token", "GitHub OAuth tokens (gho_...)", r"gho_[A-Za-z0-9_]{10,}", REDACTED),
    ("slack-token", "Slack bot/app tokens (xox?-...)", r"xox[baprs]-[A-Za-z0-9-]{10,}", REDACTED),
    ("telegram-bot-token", "Telegram bot tokens",
     r"(?:\d{5,}:)?AA[A-Za-z0-9_-]{10,}(?::\S{10,})?", REDACTED),
    ("bearer-token", "Authorization bearer values",
     r"(?i)(Bearer\s+)[A-Za-z0-9_\-.]{20,}", r"\1" + REDACTED),
)

BUILTIN_RULES = [
    {"id": rid, "name": label, "pattern": pattern, "replacement": repl, "enabled": True, "builtin": True}
    for rid, label, pattern, repl in _SHIPPED
]

RULE_ID = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
PATTERN_LIMIT = 1000
REPLACEMENT_LIMIT = 500


def rule_problem(rule: Any) -> Optional[str]:
    """Why a user rule can't be used, or None when it is fine."""
    if not isinstance(rule, dict):
        return "not an object"
    rid = rule.get("id")
    if not isinstance(rid, str) or not RULE_ID.match(rid):
        return f"bad id {rid!r}"
    pattern = rule.get("pattern")
    if not isinstance(pattern, str) or not pattern or len(pattern) > PATTERN_LIMIT:
        return f"{rid}: pattern missing or longer than {PATTERN_LIMIT}"
    if len(str(rule.get("replacement", ""))) > REPLACEMENT_LIMIT:
        return f"{rid}: replacement longer than {REPLACEMENT_LIMIT}"
    try:
        re.compile(pattern)
    except re.error as e:
        return f"{rid}: {e}"
    return None


def _read_rules_file(path: Optional[Path]) -> dict:
    if not path or not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        print(f"[scrub] ignoring unreadable rules file {path}: {e}", flush=True)
        return {}
    return data if isinstance(data, dict) else {}


def load_rules(rules_path: Optional[Path] = None) -> list[dict]:
    """Shipped rules with their on/off overrides applied, then valid user rules."""
    data = _read_rules_file(rules_path)
    toggles = {
        o["id"]: bool(o.get("enabled", True))
        for o in data.get("builtin_overrides", [])
        if isinstance(o, dict) and "id" in o
    }

    merged = [{**rule, "enabled": toggles.get(rule["id"], rule["enabled"])} for rule in BUILTIN_RULES]
    for rule in data.get("rules", []):
        problem = rule_problem(rule)
        if problem:
            print(f"[scrub] skipping rule: {problem}", flush=True)
            continue
        merged.append({"enabled": True, **rule, "builtin": False})
    return merged


class Scrubber:
    """Compiles the enabled rules once, on first use."""

    def __init__(self, rules_path: Optional[Path] = None):
        self.rules_path = rules_path
        self._patterns: Optional[list[tuple[re.Pattern, str]]] = None

    @property
    def patterns(self) -> list[tuple[re.Pattern, str]]:
        if self._patterns is None:
            self._patterns = [
                (re.compile(r["pattern"]), r.get("replacement", REDACTED))
                for r in load_rules(self.rules_path)
                if r["enabled"]
            ]
        return self._patterns

    def scrub(self, text: str) -> str:
        if not text:
            return text
        for pattern, replacement in self.patterns:
            text = pattern.sub(replacement, text)
        return text

    def scrub_dict(self, value: Any) -> Any:
        """Redact every string inside nested dicts and lists."""
        if isinstance(value, str):
            return self.scrub(value)
        if isinstance(value, list):
            return [self.scrub_dict(v) for v in value]
        if isinstance(value, dict):
            return {key: self.scrub_dict(v) for key, v in value.items()}
        return value

