"""
JSONL audit trail for security-relevant wrapper events (logins, setup runs,
config saves, imports, gateway restarts).
"""

import json
from collections import deque
from datetime import datetime, timezone
from pathlib import Path


class AuditLog:
    def __init__(self, path: Path):
        self.path = path

    def record(self, event: str, **details):
        line = json.dumps(
            {"timestamp": datetime.now(timezone.utc).isoformat(), "event": event, **details},
            default=str,
        )
        print(f"[audit] {event} {details}", flush=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a") as out:
                out.write(line + "\n")
        except OSError as e:
            print(f"[audit] write to {self.path} failed: {e}", flush=True)

    def tail(self, limit: int = 50) -> list[dict]:
        """Newest entries first; corrupt lines are skipped."""
        try:
            with self.path.open() as src:
                recent = deque((ln for ln in src if ln.strip()), maxlen=limit)
        except FileNotFoundError:
            return []
        entries = []
        for raw in reversed(recent):
            try:
                entries.append(json.loads(raw))
            except ValueError:
                continue
        return entries
