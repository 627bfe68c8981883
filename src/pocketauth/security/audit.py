"""
Grant audit trail.
Created: 2026-10-18

One JSON object per line, appended, never rewritten. Records client
registration and deactivation plus every step of a grant's life: code
issued / exchanged / rejected, tokens issued / refreshed, refresh rejected.
Credentials appear only as short prefixes.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger("pocketauth.audit")

AuditCallback = Callable[[dict], None]


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"  # a grant or client was turned away
    ALERT = "alert"  # a code or refresh token was presented after it was spent


@dataclass
class AuditEvent:
    id: str
    timestamp: str
    severity: AuditSeverity
    actor: str
    action: str
    target: str
    status: str
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        severity: AuditSeverity,
        actor: str,
        action: str,
        target: str,
        status: str,
        **context: Any,
    ) -> AuditEvent:
        return cls(
            id=uuid.uuid4().hex,
            timestamp=datetime.now(tz=UTC).isoformat(),
            severity=severity,
            actor=actor,
            action=action,
            target=target,
            status=status,
            context=context,
        )

    def to_json(self) -> str:
        record = asdict(self)
        record["severity"] = self.severity.value
        return json.dumps(record, default=str)


def default_audit_path() -> Path:
    from pocketauth.config import get_config_dir, get_settings

    configured = get_settings().audit_log_path
    return Path(configured) if configured else get_config_dir() / "audit.jsonl"


class AuditLogger:
    """Appends grant lifecycle events to a JSONL file."""

    def __init__(self, log_path: Path | None = None):
        self.log_path = log_path or default_audit_path()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._listeners: list[AuditCallback] = []

    def on_log(self, callback: AuditCallback) -> None:
        """Call *callback* with each event dict after it is written."""
        self._listeners.append(callback)

    def log(self, event: AuditEvent) -> None:
        line = event.to_json()
        try:
            with self._lock, self.log_path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError as exc:
            # Never fails the caller.
            logger.critical("FAILED TO WRITE AUDIT LOG: %s | Event: %s", exc, line)
            return
        record = json.loads(line)
        for listener in self._listeners:
            try:
                listener(record)
            except Exception:
                logger.exception("Audit listener failed on %s", event.action)

    def log_oauth_event(
        self,
        action: str,
        actor: str,
        target: str,
        status: str = "success",
        severity: AuditSeverity = AuditSeverity.INFO,
        **context: Any,
    ) -> str:
        """Record one grant lifecycle event and return its id."""
        event = AuditEvent.create(severity, actor, action, target, status, **context)
        self.log(event)
        return event.id

    def read_events(self, limit: int = 100) -> list[dict]:
        """Last *limit* events, oldest first."""
        if not self.log_path.exists():
            return []
        with self.log_path.open(encoding="utf-8") as fh:
            lines = [line for line in fh if line.strip()]
        return [json.loads(line) for line in lines[-limit:]]
