"""Guardian directory.

Resolves who should hear about an event. The production lookup belongs to
the school records store; the in-memory directory serves the runner and
tests.
"""

import threading
from typing import Dict, List, Optional, Protocol

from src.guardian_notify.models import Recipient


class RecipientDirectory(Protocol):
    def get(self, guardian_id: str) -> Optional[Recipient]:
        ...

    def for_school(self, school_id: str) -> List[Recipient]:
        ...

    def for_student(self, school_id: str, student_id: str) -> List[Recipient]:
        ...

    def secondary_contact(self, guardian_id: str) -> Optional[Recipient]:
        ...


class InMemoryDirectory:
    def __init__(self) -> None:
        self._recipients: Dict[str, Recipient] = {}
        self._schools: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    def add(self, school_id: str, recipient: Recipient) -> None:
        with self._lock:
            self._recipients[recipient.guardian_id] = recipient
            members = self._schools.setdefault(school_id, [])
            if recipient.guardian_id not in members:
                members.append(recipient.guardian_id)

    def get(self, guardian_id: str) -> Optional[Recipient]:
        with self._lock:
            return self._recipients.get(guardian_id)

    def for_school(self, school_id: str) -> List[Recipient]:
        """Primary guardians of a school. Secondary contacts are excluded."""
        with self._lock:
            secondary = {
                r.secondary_contact_id for r in self._recipients.values() if r.secondary_contact_id
            }
            return [
                self._recipients[gid]
                for gid in self._schools.get(school_id, [])
                if gid not in secondary
            ]

    def for_student(self, school_id: str, student_id: str) -> List[Recipient]:
        return [r for r in self.for_school(school_id) if r.student_id == student_id]

    def for_class(self, school_id: str, class_id: str) -> List[Recipient]:
        return [r for r in self.for_school(school_id) if r.class_id == class_id]

    def secondary_contact(self, guardian_id: str) -> Optional[Recipient]:
        with self._lock:
            primary = self._recipients.get(guardian_id)
            if primary is None or not primary.secondary_contact_id:
                return None
            return self._recipients.get(primary.secondary_contact_id)
