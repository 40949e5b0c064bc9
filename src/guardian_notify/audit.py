"""Audit event emission.

Storage belongs to an external audit collaborator; this module defines the
event shape, the sink contract and a thread-safe in-memory sink.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

RULE_MATCHED = "rule.matched"
RULE_SUPPRESSED = "rule.suppressed"
RULE_FAILED = "rule.failed"
CASE_TRANSITION = "case.transition"
CASE_ESCALATED = "case.escalated"
ADMIN_NOTIFIED = "case.admin_notified"
MANUAL_OVERRIDE = "manual.override"
CONFIG_CHANGED = "config.changed"


@dataclass
class AuditEvent:
    action: str
    resource_type: str
    resource_id: str
    actor: str = "system"
    school_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "actor": self.actor,
            "school_id": self.school_id,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None:
        ...


class InMemoryAuditSink:
    """Thread-safe sink that keeps every event in arrival order."""

    def __init__(self) -> None:
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)
        logger.debug("audit %s %s/%s", event.action, event.resource_type, event.resource_id)

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def query(
        self,
        action: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> List[AuditEvent]:
        return [
            e
            for e in self.events
            if (action is None or e.action == action)
            and (resource_id is None or e.resource_id == resource_id)
        ]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
