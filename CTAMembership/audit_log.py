from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from CTAMembership.utils import utcnow_iso

log = logging.getLogger("cta-membership")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class AuditLog:
    """Append-only JSONL audit trail (timestamp, level, message, context fields).

    `record()` never raises: a failed write is reported to the console logger only.
    """

    def __init__(self, path: Path | str | None):
        self.path = Path(path) if path else None
        self._warned = False

    def record(self, level: str, message: str, **fields: Any) -> None:
        entry = {"ts": utcnow_iso(), "level": str(level).upper(), "message": message}
        entry.update(fields)
        log.log(_LEVELS.get(entry["level"], logging.INFO), f"{message} {fields}" if fields else message)
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(entry, ensure_ascii=False, default=str)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except Exception as e:
            if not self._warned:
                log.error(f"Failed to write audit log {self.path}: {e}")
                self._warned = True
            else:
                log.debug(f"Audit write failed again: {e}")

    def event(self, name: str, **fields: Any) -> None:
        """Order-store operation trace ({"event": "..."} records)."""
        self.record("DEBUG", name, event=name, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.record("INFO", message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.record("WARN", message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.record("ERROR", message, **fields)

    def critical(self, message: str, **fields: Any) -> None:
        self.record("CRITICAL", message, **fields)


def iter_audit(path: Path | str) -> list[dict]:
    """Read audit records back (best-effort, skips corrupt lines)."""
    out: list[dict] = []
    p = Path(path)
    if not p.exists():
        return out
    with open(p, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(obj, dict):
                out.append(obj)
    return out
