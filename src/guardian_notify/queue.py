"""Priority delivery queue with leasing, retry backoff and channel fallback."""

import heapq
import itertools
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from src.guardian_notify.config import (
    AttemptOutcome,
    CANCELLABLE_STATUSES,
    DeliveryChannel,
    FailureReason,
    NotificationStatus,
    QueueConfig,
    RESENDABLE_STATUSES,
    RETRYABLE_REASONS,
    clamp_priority,
)
from src.guardian_notify.exceptions import (
    ConcurrencyConflict,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from src.guardian_notify.gateway import DeliveryResult
from src.guardian_notify.models import DeliveryAttempt, Lease, QueuedNotification

logger = logging.getLogger(__name__)

DISPATCHABLE = frozenset({NotificationStatus.QUEUED, NotificationStatus.FAILED})
WITHDRAWABLE = frozenset(
    {
        NotificationStatus.DRAFT,
        NotificationStatus.PENDING,
        NotificationStatus.QUEUED,
        NotificationStatus.FAILED,
    }
)

Listener = Callable[[QueuedNotification], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryQueue:
    """Shared priority structure served by the dispatch workers.

    Heap entries are (-priority, scheduled_ts, seq, notification_id, version).
    Any change to an item bumps its version, which turns older heap entries
    into tombstones skipped on pop. Items are never deleted; status history
    is append-only.
    """

    def __init__(self, config: Optional[QueueConfig] = None) -> None:
        self.config = config or QueueConfig()
        self._heap: List[Tuple[int, float, int, str, int]] = []
        self._items: Dict[str, QueuedNotification] = {}
        self._by_offline_id: Dict[str, str] = {}
        self._leases: Dict[str, Lease] = {}
        self._seq = itertools.count()
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []

    # ── Listeners ────────────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, items: Iterable[QueuedNotification]) -> None:
        for item in items:
            for listener in list(self._listeners):
                try:
                    listener(item)
                except Exception:
                    logger.exception("Queue listener failed for %s", item.notification_id)

    # ── Enqueue ──────────────────────────────────────────────────────

    def _push(self, item: QueuedNotification) -> None:
        item.version += 1
        heapq.heappush(
            self._heap,
            (
                -item.priority,
                item.scheduled_for.timestamp(),
                next(self._seq),
                item.notification_id,
                item.version,
            ),
        )

    def _validate(self, item: QueuedNotification) -> None:
        if item.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", field="max_attempts")
        if item.attempts_per_channel < 1:
            raise ValidationError(
                "attempts_per_channel must be at least 1", field="attempts_per_channel"
            )
        if not item.recipient_id:
            raise ValidationError("recipient_id is required", field="recipient_id")
        item.priority = clamp_priority(item.priority)

    def enqueue(
        self,
        item: QueuedNotification,
        now: Optional[datetime] = None,
        hold: bool = False,
    ) -> QueuedNotification:
        """Add an item to the queue.

        Items without any channel are stored as terminal ``no_channel``
        records. Held items stay ``pending`` until released.
        """
        now = now or _utcnow()
        with self._lock:
            existing = self._items.get(item.notification_id)
            if existing is not None:
                return existing
            self._validate(item)
            self._store(item, now, hold)
        self._notify([item])
        return item

    def upsert(
        self, item: QueuedNotification, now: Optional[datetime] = None
    ) -> Tuple[QueuedNotification, bool]:
        """Enqueue keyed by offline id. Returns (item, created)."""
        if not item.offline_id:
            raise ValidationError("offline_id is required for upsert", field="offline_id")
        now = now or _utcnow()
        with self._lock:
            existing_id = self._by_offline_id.get(item.offline_id)
            if existing_id is not None:
                return self._items[existing_id], False
            self._validate(item)
            self._store(item, now, hold=False)
        self._notify([item])
        return item, True

    def _store(self, item: QueuedNotification, now: datetime, hold: bool) -> None:
        self._items[item.notification_id] = item
        if item.offline_id:
            self._by_offline_id[item.offline_id] = item.notification_id
        if not item.channels:
            item.set_status(NotificationStatus.NO_CHANNEL, now, "no reachable channel")
            logger.info("Notification %s has no reachable channel", item.notification_id)
            return
        if hold:
            item.set_status(NotificationStatus.PENDING, now, "awaiting approval")
            return
        item.set_status(NotificationStatus.QUEUED, now)
        self._push(item)
        logger.debug(
            "Enqueued %s priority=%d channel=%s",
            item.notification_id,
            item.priority,
            item.current_channel.value,
        )

    def release(self, notification_id: str, now: Optional[datetime] = None) -> QueuedNotification:
        """Move a held item into the dispatch order."""
        now = now or _utcnow()
        with self._lock:
            item = self.get(notification_id)
            if item.status != NotificationStatus.PENDING:
                raise InvalidStateError(
                    "Only pending notifications can be released", state=item.status.value
                )
            if item.scheduled_for < now:
                item.scheduled_for = now
            item.set_status(NotificationStatus.QUEUED, now, "approved")
            self._push(item)
        self._notify([item])
        return item

    # ── Leasing ──────────────────────────────────────────────────────

    def lease(
        self,
        worker_id: str,
        now: Optional[datetime] = None,
        ttl_seconds: Optional[float] = None,
    ) -> Optional[Lease]:
        """Claim the highest-priority item whose scheduled time has come."""
        now = now or _utcnow()
        ttl = self.config.lease_ttl_seconds if ttl_seconds is None else ttl_seconds
        now_ts = now.timestamp()
        with self._lock:
            deferred = []
            chosen = None
            while self._heap:
                entry = heapq.heappop(self._heap)
                item = self._items.get(entry[3])
                if (
                    item is None
                    or item.version != entry[4]
                    or item.is_leased
                    or item.status not in DISPATCHABLE
                ):
                    continue
                if entry[1] > now_ts:
                    deferred.append(entry)
                    continue
                chosen = item
                break
            for entry in deferred:
                heapq.heappush(self._heap, entry)
            if chosen is None:
                return None

            lease = Lease(
                notification_id=chosen.notification_id,
                token=uuid.uuid4().hex,
                worker_id=worker_id,
                channel=chosen.current_channel,
                attempt_number=chosen.attempts + 1,
                expires_at=now + timedelta(seconds=ttl),
            )
            chosen.lease_token = lease.token
            self._leases[chosen.notification_id] = lease
            return lease

    def complete(
        self,
        lease: Lease,
        result: DeliveryResult,
        now: Optional[datetime] = None,
    ) -> QueuedNotification:
        """Record a gateway result for a leased item and decide its next step."""
        now = now or _utcnow()
        with self._lock:
            item = self.get(lease.notification_id)
            if item.lease_token != lease.token:
                raise ConcurrencyConflict(
                    "Lease for %s is no longer held" % lease.notification_id
                )
            item.lease_token = None
            self._leases.pop(item.notification_id, None)

            item.attempts += 1
            item.attempt_log.append(
                DeliveryAttempt(
                    notification_id=item.notification_id,
                    channel=lease.channel,
                    attempt_number=item.attempts,
                    outcome=result.outcome,
                    timestamp=now,
                    reason=result.reason,
                    error=result.error,
                )
            )

            if item.status == NotificationStatus.CANCELLED:
                logger.info(
                    "In-flight dispatch of cancelled %s finished: %s",
                    item.notification_id,
                    result.outcome.value,
                )
                item.version += 1
            elif result.outcome == AttemptOutcome.SUCCESS:
                if result.confirmed:
                    item.delivered_at = now
                    item.set_status(NotificationStatus.DELIVERED, now, lease.channel.value)
                else:
                    item.set_status(NotificationStatus.SENT, now, lease.channel.value)
                item.version += 1
            else:
                item.last_error = result.error or (result.reason.value if result.reason else None)
                logger.warning(
                    "Delivery of %s via %s failed: %s",
                    item.notification_id,
                    lease.channel.value,
                    item.last_error,
                    extra={"notification_id": item.notification_id, "channel": lease.channel.value},
                )
                self._handle_failure(
                    item,
                    lease.channel,
                    result.reason or FailureReason.UNKNOWN,
                    result.outcome == AttemptOutcome.NO_CHANNEL,
                    now,
                )
        self._notify([item])
        return item

    def _backoff(self, item: QueuedNotification, count: int) -> timedelta:
        base = item.backoff_base_seconds or self.config.base_backoff_seconds
        delay = base * (self.config.backoff_multiplier ** max(0, count - 1))
        return timedelta(seconds=min(delay, self.config.max_backoff_seconds))

    def _handle_failure(
        self,
        item: QueuedNotification,
        channel: DeliveryChannel,
        reason: FailureReason,
        unavailable: bool,
        now: datetime,
    ) -> None:
        count = item.channel_attempts.get(channel, 0) + 1
        item.channel_attempts[channel] = count

        if item.attempts >= item.max_attempts:
            item.set_status(NotificationStatus.NO_CHANNEL, now, "attempts exhausted")
            item.version += 1
            return

        retryable = not unavailable and reason in RETRYABLE_REASONS
        if retryable and count < item.attempts_per_channel:
            item.scheduled_for = now + self._backoff(item, count)
            item.set_status(NotificationStatus.FAILED, now, "retry scheduled")
            self._push(item)
            return

        next_channel = item.next_channel
        if next_channel is not None and (unavailable or item.fallback_allowed):
            item.channel_index += 1
            item.scheduled_for = now
            item.set_status(NotificationStatus.QUEUED, now, "fallback to %s" % next_channel.value)
            self._push(item)
            return

        item.set_status(NotificationStatus.NO_CHANNEL, now, "channels exhausted")
        item.version += 1

    def reclaim_expired_leases(self, now: Optional[datetime] = None) -> List[QueuedNotification]:
        """Return items whose lease timed out to the dispatch order.

        The lost call counts as one failed attempt so the attempt budget
        stays bounded.
        """
        now = now or _utcnow()
        reclaimed = []
        with self._lock:
            for notification_id, lease in list(self._leases.items()):
                if lease.expires_at > now:
                    continue
                item = self._items[notification_id]
                item.lease_token = None
                del self._leases[notification_id]
                item.attempts += 1
                item.attempt_log.append(
                    DeliveryAttempt(
                        notification_id=notification_id,
                        channel=lease.channel,
                        attempt_number=item.attempts,
                        outcome=AttemptOutcome.FAILURE,
                        timestamp=now,
                        reason=FailureReason.LEASE_EXPIRED,
                        error="lease expired",
                    )
                )
                item.last_error = "lease expired"
                if item.status not in DISPATCHABLE:
                    item.version += 1
                elif item.attempts >= item.max_attempts:
                    item.set_status(NotificationStatus.NO_CHANNEL, now, "attempts exhausted")
                    item.version += 1
                else:
                    item.scheduled_for = now
                    self._push(item)
                logger.warning(
                    "Lease on %s held by %s expired",
                    notification_id,
                    lease.worker_id,
                    extra={"notification_id": notification_id, "worker_id": lease.worker_id},
                )
                reclaimed.append(item)
        self._notify(reclaimed)
        return reclaimed

    # ── Mutations ────────────────────────────────────────────────────

    def confirm_delivery(self, notification_id: str, now: Optional[datetime] = None) -> QueuedNotification:
        """Promote a sent item to delivered once the provider confirms it."""
        now = now or _utcnow()
        with self._lock:
            item = self.get(notification_id)
            if item.status == NotificationStatus.DELIVERED:
                return item
            if item.status != NotificationStatus.SENT:
                raise InvalidStateError(
                    "Only sent notifications can be confirmed", state=item.status.value
                )
            item.delivered_at = now
            item.set_status(NotificationStatus.DELIVERED, now, "confirmed")
        self._notify([item])
        return item

    def cancel(
        self, notification_id: str, now: Optional[datetime] = None, reason: str = ""
    ) -> QueuedNotification:
        now = now or _utcnow()
        with self._lock:
            item = self.get(notification_id)
            if item.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(
                    "Cannot cancel a %s notification" % item.status.value,
                    state=item.status.value,
                )
            item.set_status(NotificationStatus.CANCELLED, now, reason)
            item.version += 1
        logger.info("Cancelled notification %s", notification_id)
        self._notify([item])
        return item

    def withdraw(
        self, notification_ids: Iterable[str], now: Optional[datetime] = None, reason: str = ""
    ) -> List[QueuedNotification]:
        """Cancel every listed item that has not been sent yet, failed ones included."""
        now = now or _utcnow()
        changed = []
        with self._lock:
            for notification_id in notification_ids:
                item = self._items.get(notification_id)
                if item is None or item.status not in WITHDRAWABLE:
                    continue
                item.set_status(NotificationStatus.CANCELLED, now, reason)
                item.version += 1
                changed.append(item)
        if changed:
            logger.info("Withdrew %d notifications (%s)", len(changed), reason)
        self._notify(changed)
        return changed

    def manual_resend(self, notification_id: str, now: Optional[datetime] = None) -> QueuedNotification:
        """Reset attempt counters and re-enqueue at the current priority."""
        now = now or _utcnow()
        with self._lock:
            item = self.get(notification_id)
            if item.status not in RESENDABLE_STATUSES:
                raise InvalidStateError(
                    "Cannot resend a %s notification" % item.status.value,
                    state=item.status.value,
                )
            if item.is_leased:
                raise ConcurrencyConflict("Notification %s is in flight" % notification_id)
            if not item.channels:
                raise InvalidStateError("Notification has no channels to resend on", state=item.status.value)
            item.attempts = 0
            item.channel_index = 0
            item.channel_attempts = {}
            item.scheduled_for = now
            item.set_status(NotificationStatus.QUEUED, now, "manual resend")
            self._push(item)
        self._notify([item])
        return item

    def expedite(
        self,
        notification_id: str,
        now: Optional[datetime] = None,
        use_alternative_channel: bool = False,
    ) -> bool:
        """Pull a waiting item forward, optionally onto its next channel."""
        now = now or _utcnow()
        with self._lock:
            item = self.get(notification_id)
            if item.status not in DISPATCHABLE or item.is_leased:
                return False
            if use_alternative_channel and item.next_channel is not None:
                item.channel_index += 1
            item.scheduled_for = now
            item.forced_resends += 1
            if item.status == NotificationStatus.FAILED:
                item.set_status(NotificationStatus.QUEUED, now, "forced resend")
            self._push(item)
        self._notify([item])
        return True

    def boost(self, notification_id: str, priority: int) -> QueuedNotification:
        """Raise an item's priority. Priorities never decrease."""
        with self._lock:
            item = self.get(notification_id)
            new_priority = clamp_priority(priority)
            if new_priority > item.priority:
                item.priority = new_priority
                if item.status in DISPATCHABLE and not item.is_leased:
                    self._push(item)
            return item

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, notification_id: str) -> QueuedNotification:
        with self._lock:
            item = self._items.get(notification_id)
        if item is None:
            raise NotFoundError(
                "Notification not found",
                resource_type="notification",
                resource_id=notification_id,
            )
        return item

    def find_by_offline_id(self, offline_id: str) -> Optional[QueuedNotification]:
        with self._lock:
            notification_id = self._by_offline_id.get(offline_id)
            return self._items.get(notification_id) if notification_id else None

    def list(
        self, predicate: Optional[Callable[[QueuedNotification], bool]] = None
    ) -> List[QueuedNotification]:
        with self._lock:
            items = list(self._items.values())
        if predicate is not None:
            items = [i for i in items if predicate(i)]
        return sorted(items, key=lambda i: (i.created_at, i.notification_id))

    def for_case(self, case_id: str) -> List[QueuedNotification]:
        return self.list(lambda i: i.case_id == case_id)

    def next_ready_at(self) -> Optional[datetime]:
        with self._lock:
            live = [
                e[1]
                for e in self._heap
                if e[3] in self._items
                and self._items[e[3]].version == e[4]
                and self._items[e[3]].status in DISPATCHABLE
            ]
        if not live:
            return None
        return datetime.fromtimestamp(min(live), tz=timezone.utc)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(
                1 for i in self._items.values() if i.status in DISPATCHABLE or i.is_leased
            )

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._leases)

    def get_stats(self) -> Dict[str, int]:
        stats: Dict[str, int] = {s.value: 0 for s in NotificationStatus}
        with self._lock:
            for item in self._items.values():
                stats[item.status.value] += 1
            stats["in_flight"] = len(self._leases)
        return stats
