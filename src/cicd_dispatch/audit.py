"""
Audit logging for the dispatch engine.

Every non-dry-run dispatch decision and every run outcome is appended as one
JSON line. The file is append-only; nothing in the engine rewrites it.
"""

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import DispatchError

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """Structured audit event."""

    timestamp: float
    actor: str
    action: str
    resource: str
    resource_id: Optional[str] = None
    success: bool = True
    details: Dict[str, Any] = field(default_factory=dict)


class AuditLog:
    """Append-only JSONL audit log."""

    def __init__(self, log_file: Path):
        self.log_file = Path(log_file)
        self._lock = threading.Lock()

    def record(
        self,
        action: str,
        resource: str,
        resource_id: Optional[str] = None,
        actor: str = "",
        success: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """Append an audit event. Raises DispatchError if it cannot be written."""
        event = AuditEvent(
            timestamp=time.time(),
            actor=actor,
            action=action,
            resource=resource,
            resource_id=resource_id,
            success=success,
            details=details or {},
        )
        self._write_event(event)
        return event

    def _write_event(self, event: AuditEvent) -> None:
        event_json = json.dumps(asdict(event), separators=(",", ":"), default=str)
        with self._lock:
            try:
                self.log_file.parent.mkdir(parents=True, exist_ok=True)
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(event_json + "\n")
            except OSError as e:
                logger.error(f"Failed to write audit event: {e}")
                raise DispatchError(f"Cannot write audit log {self.log_file}: {e}") from e

    def search_events(
        self,
        action: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Return matching events, most recent first."""
        if not self.log_file.exists():
            return []

        events = []
        with open(self.log_file, "r", encoding="utf-8") as f:
            for line in f:
                try:
                    event = AuditEvent(**json.loads(line))
                except (json.JSONDecodeError, TypeError):
                    logger.warning(f"Skipping malformed audit line in {self.log_file}")
                    continue
                if action and event.action != action:
                    continue
                if resource and event.resource != resource:
                    continue
                if resource_id and event.resource_id != resource_id:
                    continue
                events.append(event)

        return list(reversed(events))[:limit]
