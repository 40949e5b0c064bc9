"""Acknowledgment tracking.

Records guardian acknowledgments exactly once per (case, recipient) and
keeps per-case progress counters.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from src.guardian_notify.config import DeliveryChannel
from src.guardian_notify.exceptions import ValidationError
from src.guardian_notify.models import Acknowledgment

logger = logging.getLogger(__name__)

AckListener = Callable[[Acknowledgment], None]


@dataclass(frozen=True)
class AckProgress:
    case_id: str
    total_recipients: Optional[int]
    ack_count: int

    @property
    def pending_acks(self) -> Optional[int]:
        if self.total_recipients is None:
            return None
        return self.total_recipients - self.ack_count

    @property
    def complete(self) -> bool:
        return self.total_recipients is not None and self.ack_count >= self.total_recipients


class AcknowledgmentTracker:
    """Idempotent acknowledgment store.

    Cases registered with an expected recipient set only accept
    acknowledgments from those recipients, which keeps ack_count bounded by
    the recipient total. Unregistered keys (routine notifications) are
    recorded for information only.
    """

    def __init__(self) -> None:
        self._acks: Dict[Tuple[str, str], Acknowledgment] = {}
        self._expected: Dict[str, Set[str]] = {}
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._listeners: List[AckListener] = []

    def add_listener(self, listener: AckListener) -> None:
        self._listeners.append(listener)

    def register_case(self, case_id: str, recipient_ids: Iterable[str]) -> None:
        with self._lock:
            expected = self._expected.setdefault(case_id, set())
            expected.update(recipient_ids)
            self._counts[case_id] = sum(
                1 for (cid, rid) in self._acks if cid == case_id and rid in expected
            )

    def record(
        self,
        recipient_id: str,
        case_id: str,
        channel: Optional[DeliveryChannel] = None,
        timestamp: Optional[datetime] = None,
    ) -> Tuple[Acknowledgment, bool]:
        """Record an acknowledgment. Returns (effective record, created).

        The check and the insert happen under one lock, so of two racing
        calls for the same pair exactly one creates the record and the
        other gets the first one back.
        """
        timestamp = timestamp or datetime.now(timezone.utc)
        key = (case_id, recipient_id)
        with self._lock:
            existing = self._acks.get(key)
            if existing is not None:
                return existing, False
            expected = self._expected.get(case_id)
            if expected is not None and recipient_id not in expected:
                raise ValidationError(
                    "Recipient %s is not part of case %s" % (recipient_id, case_id),
                    field="recipient_id",
                )
            ack = Acknowledgment(case_id, recipient_id, channel, timestamp)
            self._acks[key] = ack
            if expected is not None:
                self._counts[case_id] = self._counts.get(case_id, 0) + 1

        logger.info("Acknowledgment recorded: case=%s recipient=%s", case_id, recipient_id)
        for listener in list(self._listeners):
            try:
                listener(ack)
            except Exception:
                logger.exception("Acknowledgment listener failed for case %s", case_id)
        return ack, True

    def is_acknowledged(self, case_id: str, recipient_id: str) -> bool:
        with self._lock:
            return (case_id, recipient_id) in self._acks

    def get(self, case_id: str, recipient_id: str) -> Optional[Acknowledgment]:
        with self._lock:
            return self._acks.get((case_id, recipient_id))

    def acknowledged_recipients(self, case_id: str) -> Set[str]:
        with self._lock:
            return {rid for (cid, rid) in self._acks if cid == case_id}

    def ack_count(self, case_id: str) -> int:
        with self._lock:
            if case_id in self._expected:
                return self._counts.get(case_id, 0)
            return sum(1 for (cid, _) in self._acks if cid == case_id)

    def progress(self, case_id: str) -> AckProgress:
        with self._lock:
            expected = self._expected.get(case_id)
            total = len(expected) if expected is not None else None
        return AckProgress(case_id, total, self.ack_count(case_id))
