"""Emergency escalation controller.

Owns the emergency case state machine. Broadcasts fan out through the
delivery queue; queue and acknowledgment events move cases forward; a
periodic sweep escalates cases whose recipients stay silent.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from src.guardian_notify import audit
from src.guardian_notify.acknowledgments import AcknowledgmentTracker
from src.guardian_notify.audit import AuditEvent, AuditSink
from src.guardian_notify.config import (
    CASE_TRANSITIONS,
    EMERGENCY_QUEUE_CONFIG,
    EMERGENCY_TYPE_CONFIGS,
    ESCALATION_PRIORITY_BOOST,
    DeliveryChannel,
    EmergencySeverity,
    EmergencyState,
    EmergencyType,
    EscalationAction,
    EscalationLevel,
    NotificationCategory,
    NotificationStatus,
    QueueConfig,
    ResendCondition,
    SEVERITY_PRIORITY,
    channels_for_severity,
    clamp_priority,
    fallback_allowed,
)
from src.guardian_notify.directory import RecipientDirectory
from src.guardian_notify.exceptions import (
    ConcurrencyConflict,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from src.guardian_notify.models import (
    Acknowledgment,
    CaseTransition,
    EmergencyCase,
    QueuedNotification,
    Recipient,
)
from src.guardian_notify.queue import DISPATCHABLE, DeliveryQueue
from src.guardian_notify.school_config import SchoolConfigStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def rotate_channels(
    channels: List[DeliveryChannel],
    last_used: Optional[DeliveryChannel],
    severity: Optional[EmergencySeverity],
) -> List[DeliveryChannel]:
    """Start from the channel after the one last used, wrapping around."""
    if last_used in channels:
        idx = channels.index(last_used)
        channels = channels[idx + 1:] + channels[: idx + 1]
    return channels_for_severity(channels, severity)


class EscalationController:
    """Emergency lifecycle state machine.

    Operations on one case are serialized by a per-case reentrant lock;
    different cases proceed independently. Callers that pass
    ``expected_version`` get a ConcurrencyConflict when the case moved on
    since they read it.
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        acks: AcknowledgmentTracker,
        config_store: SchoolConfigStore,
        directory: RecipientDirectory,
        audit_sink: Optional[AuditSink] = None,
        queue_config: Optional[QueueConfig] = None,
        priority_boost: int = ESCALATION_PRIORITY_BOOST,
    ) -> None:
        self.queue = queue
        self.acks = acks
        self.config_store = config_store
        self.directory = directory
        self.audit_sink = audit_sink
        self.queue_config = queue_config or EMERGENCY_QUEUE_CONFIG
        self.priority_boost = priority_boost
        self._cases: Dict[str, EmergencyCase] = {}
        self._case_locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._busy: set = set()

        queue.add_listener(self.on_delivery_update)
        acks.add_listener(self.on_acknowledged)

    # ── Registry ─────────────────────────────────────────────────────

    def _lock_for(self, case_id: str) -> threading.RLock:
        with self._registry_lock:
            if case_id not in self._cases:
                raise NotFoundError("Emergency case not found", resource_type="case", resource_id=case_id)
            return self._case_locks[case_id]

    def get(self, case_id: str) -> EmergencyCase:
        with self._registry_lock:
            case = self._cases.get(case_id)
        if case is None:
            raise NotFoundError("Emergency case not found", resource_type="case", resource_id=case_id)
        return case

    def list_cases(self, school_id: Optional[str] = None, active_only: bool = False) -> List[EmergencyCase]:
        with self._registry_lock:
            cases = list(self._cases.values())
        return sorted(
            (
                c
                for c in cases
                if (school_id is None or c.school_id == school_id)
                and not (active_only and c.is_terminal)
            ),
            key=lambda c: c.initiated_at,
        )

    # ── Helpers ──────────────────────────────────────────────────────

    def _emit(self, event: str, case: EmergencyCase, actor: str = "system", **details) -> None:
        if self.audit_sink is None:
            return
        self.audit_sink.emit(
            AuditEvent(
                action=event,
                resource_type="emergency_case",
                resource_id=case.case_id,
                actor=actor,
                school_id=case.school_id,
                details=details,
            )
        )

    def _transition(
        self,
        case: EmergencyCase,
        to_state: EmergencyState,
        now: datetime,
        actor: str = "system",
        note: str = "",
    ) -> None:
        if to_state not in CASE_TRANSITIONS[case.state]:
            raise InvalidStateError(
                "Cannot move case from %s to %s" % (case.state.value, to_state.value),
                state=case.state.value,
            )
        from_state = case.state
        case.state = to_state
        case.history.append(CaseTransition(from_state, to_state, now, actor, note))
        case.version += 1
        if to_state == EmergencyState.AWAITING_ACK:
            case.awaiting_since = now
        if case.is_terminal:
            case.closed_at = now
        logger.info(
            "Case %s: %s -> %s (%s)", case.case_id, from_state.value, to_state.value, note or actor
        )
        self._emit(
            audit.CASE_TRANSITION,
            case,
            actor,
            from_state=from_state.value,
            to_state=to_state.value,
            note=note,
        )

    @staticmethod
    def _check_version(case: EmergencyCase, expected_version: Optional[int]) -> None:
        if expected_version is not None and case.version != expected_version:
            raise ConcurrencyConflict(
                "Case %s changed since it was read" % case.case_id,
                expected=expected_version,
                actual=case.version,
            )

    def _body(self, case: EmergencyCase) -> str:
        parts = ["URGENT: %s" % case.title]
        if case.description:
            parts.append(case.description)
        if case.action_required:
            parts.append("Action required: %s" % case.action_required)
        parts.extend(case.safety_instructions)
        return "\n".join(parts)

    def _build_item(
        self,
        case: EmergencyCase,
        recipient_id: str,
        channels: List[DeliveryChannel],
        now: datetime,
        priority: Optional[int] = None,
        on_behalf_of: Optional[str] = None,
        recipient: Optional[Recipient] = None,
    ) -> QueuedNotification:
        return QueuedNotification(
            recipient_id=recipient_id,
            school_id=case.school_id,
            category=NotificationCategory.EMERGENCY_NOTICE,
            channels=channels,
            priority=priority if priority is not None else case.priority,
            body=self._body(case),
            scheduled_for=now,
            created_at=now,
            max_attempts=case.max_attempts,
            attempts_per_channel=self.queue_config.attempts_per_channel,
            backoff_base_seconds=case.retry_interval_seconds,
            severity=case.severity,
            fallback_allowed=fallback_allowed(case.severity, {case.severity: case.forced_resend_rules}),
            case_id=case.case_id,
            on_behalf_of=on_behalf_of,
            student_id=recipient.student_id if recipient else None,
            class_id=recipient.class_id if recipient else None,
            escalation_level=case.current_escalation_level,
        )

    def _items_for(self, case: EmergencyCase, guardian_id: str) -> List[QueuedNotification]:
        return [i for i in self.queue.for_case(case.case_id) if i.guardian_id == guardian_id]

    def _refresh_counts(self, case: EmergencyCase) -> None:
        by_guardian: Dict[str, List[QueuedNotification]] = {}
        for item in self.queue.for_case(case.case_id):
            by_guardian.setdefault(item.guardian_id, []).append(item)
        sent = delivered = failed = 0
        for items in by_guardian.values():
            statuses = {i.status for i in items}
            if NotificationStatus.DELIVERED in statuses:
                delivered += 1
                sent += 1
            elif NotificationStatus.SENT in statuses:
                sent += 1
            elif statuses == {NotificationStatus.NO_CHANNEL}:
                failed += 1
        case.sent_count = sent
        case.delivered_count = delivered
        case.failed_count = failed
        case.ack_count = min(self.acks.ack_count(case.case_id), case.total_recipients)

    def _wave_dispatched(self, case: EmergencyCase) -> bool:
        for notification_id, baseline in case.wave.items():
            item = self.queue.get(notification_id)
            if item.attempts <= baseline and not item.is_terminal:
                return False
        return True

    def _fully_acknowledged(self, case: EmergencyCase) -> bool:
        return case.require_ack and case.total_recipients > 0 and case.ack_count >= case.total_recipients

    def _close(self, case: EmergencyCase, to_state: EmergencyState, now: datetime, actor: str, note: str) -> None:
        self._transition(case, to_state, now, actor, note)
        ids = [i.notification_id for i in self.queue.for_case(case.case_id)]
        self._busy.add(case.case_id)
        try:
            self.queue.withdraw(ids, now, reason="case %s" % to_state.value)
        finally:
            self._busy.discard(case.case_id)

    def _advance(self, case: EmergencyCase, now: datetime) -> None:
        """Move a case forward after delivery or acknowledgment progress."""
        if case.is_terminal or case.case_id in self._busy:
            return
        if self._fully_acknowledged(case) and case.state != EmergencyState.INITIATED:
            self._close(case, EmergencyState.RESOLVED, now, "system", "all recipients acknowledged")
            return
        if case.state == EmergencyState.BROADCASTING and self._wave_dispatched(case):
            if case.require_ack:
                self._transition(case, EmergencyState.AWAITING_ACK, now, note="broadcast dispatched")
            else:
                self._transition(case, EmergencyState.RESOLVED, now, note="broadcast complete")
        elif case.state == EmergencyState.ESCALATING and self._wave_dispatched(case):
            self._transition(case, EmergencyState.AWAITING_ACK, now, note="escalation dispatched")

    # ── Lifecycle ────────────────────────────────────────────────────

    def initiate(
        self,
        school_id: str,
        emergency_type: EmergencyType,
        title: str,
        description: str = "",
        action_required: str = "",
        safety_instructions: Optional[List[str]] = None,
        severity: Optional[EmergencySeverity] = None,
        initiated_by: str = "system",
        now: Optional[datetime] = None,
    ) -> EmergencyCase:
        """Open a new case in the initiated state."""
        now = now or _utcnow()
        if not title or not title.strip():
            raise ValidationError("Emergency title is required", field="title")
        type_config = EMERGENCY_TYPE_CONFIGS.get(emergency_type)
        if type_config is None:
            raise ValidationError("Unknown emergency type", field="emergency_type")
        severity = severity or type_config.default_severity
        settings = self.config_store.snapshot(school_id)

        case = EmergencyCase(
            school_id=school_id,
            emergency_type=emergency_type,
            severity=severity,
            title=title.strip(),
            description=description,
            action_required=action_required,
            safety_instructions=list(safety_instructions or []),
            require_ack=type_config.require_acknowledgment,
            channels=channels_for_severity(list(type_config.channels), severity),
            priority=SEVERITY_PRIORITY[severity],
            max_attempts=type_config.max_retry_attempts,
            retry_interval_seconds=type_config.retry_interval_ms / 1000.0,
            initiated_by=initiated_by,
            initiated_at=now,
            escalation_levels=settings.escalation_levels if type_config.require_acknowledgment else (),
            forced_resend_rules=tuple(settings.forced_resend_rules.get(severity, ())),
        )
        case.max_escalation_level = max((lvl.level for lvl in case.escalation_levels), default=0)
        case.history.append(CaseTransition(None, EmergencyState.INITIATED, now, initiated_by))

        with self._registry_lock:
            self._cases[case.case_id] = case
            self._case_locks[case.case_id] = threading.RLock()

        logger.warning(
            "Emergency %s initiated: %s (%s, %s)",
            case.case_id,
            case.title,
            emergency_type.value,
            severity.value,
        )
        self._emit(
            audit.CASE_TRANSITION,
            case,
            initiated_by,
            from_state=None,
            to_state=EmergencyState.INITIATED.value,
            note="initiated",
        )
        return case

    def broadcast(
        self,
        case_id: str,
        recipients: Optional[List[Recipient]] = None,
        actor: str = "system",
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyCase:
        """Fan the case out to every recipient through the delivery queue."""
        now = now or _utcnow()
        with self._lock_for(case_id):
            case = self.get(case_id)
            self._check_version(case, expected_version)
            if case.state != EmergencyState.INITIATED:
                raise InvalidStateError("Case has already been broadcast", state=case.state.value)
            if recipients is None:
                recipients = self.directory.for_school(case.school_id)
            if not recipients:
                raise ValidationError("Emergency broadcast has no recipients", field="recipients")

            case.recipient_ids = [r.guardian_id for r in recipients]
            case.total_recipients = len(case.recipient_ids)
            self.acks.register_case(case.case_id, case.recipient_ids)

            self._busy.add(case.case_id)
            try:
                for recipient in recipients:
                    item = self._build_item(
                        case,
                        recipient.guardian_id,
                        recipient.reachable(case.channels),
                        now,
                        recipient=recipient,
                    )
                    self.queue.enqueue(item, now)
                    case.wave[item.notification_id] = 0
                    if case.state == EmergencyState.INITIATED:
                        self._transition(case, EmergencyState.BROADCASTING, now, actor, "first delivery enqueued")
            finally:
                self._busy.discard(case.case_id)

            logger.info("Case %s broadcast to %d recipients", case.case_id, case.total_recipients)
            self._refresh_counts(case)
            self._advance(case, now)
            return case

    def on_delivery_update(self, item: QueuedNotification) -> None:
        """Queue listener: refresh counters and advance the owning case."""
        if not item.case_id:
            return
        with self._registry_lock:
            if item.case_id not in self._cases:
                return
        now = item.status_history[-1].at if item.status_history else _utcnow()
        if item.attempt_log and item.attempt_log[-1].timestamp > now:
            now = item.attempt_log[-1].timestamp
        with self._lock_for(item.case_id):
            case = self.get(item.case_id)
            self._refresh_counts(case)
            self._advance(case, now)

    def on_acknowledged(self, ack: Acknowledgment) -> None:
        """Acknowledgment listener: resolve early once everyone answered."""
        with self._registry_lock:
            if ack.case_id not in self._cases:
                return
        with self._lock_for(ack.case_id):
            case = self.get(ack.case_id)
            self._refresh_counts(case)
            self._advance(case, ack.timestamp)

    def acknowledge(
        self,
        case_id: str,
        recipient_id: str,
        channel: Optional[DeliveryChannel] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Acknowledgment, bool]:
        """Record an acknowledgment, crediting secondary contacts to their guardian."""
        case = self.get(case_id)
        guardian_id = case.contact_map.get(recipient_id, recipient_id)
        return self.acks.record(guardian_id, case_id, channel, now or _utcnow())

    # ── Escalation ───────────────────────────────────────────────────

    def check_escalations(self, now: Optional[datetime] = None) -> List[EmergencyCase]:
        """Escalate every awaiting case whose current level timed out.

        Returns the cases that escalated during this sweep.
        """
        now = now or _utcnow()
        escalated = []
        for case in self.list_cases(active_only=True):
            try:
                with self._lock_for(case.case_id):
                    if self._check_case(case, now):
                        escalated.append(case)
            except Exception:
                logger.exception("Escalation check failed for case %s", case.case_id)
        return escalated

    def _check_case(self, case: EmergencyCase, now: datetime) -> bool:
        if case.state != EmergencyState.AWAITING_ACK or not case.require_ack:
            return False
        self._refresh_counts(case)
        if self._fully_acknowledged(case):
            self._advance(case, now)
            return False
        if case.current_escalation_level >= case.max_escalation_level:
            return False
        level = self._level_config(case, case.current_escalation_level + 1)
        if level is None:
            return False
        since = case.awaiting_since or case.initiated_at
        if now - since < timedelta(milliseconds=level.trigger_after_ms):
            return False
        self._escalate(case, level, now, "system")
        return True

    @staticmethod
    def _level_config(case: EmergencyCase, level: int) -> Optional[EscalationLevel]:
        for cfg in case.escalation_levels:
            if cfg.level == level:
                return cfg
        return None

    def _escalate(self, case: EmergencyCase, level: EscalationLevel, now: datetime, actor: str) -> None:
        self._transition(case, EmergencyState.ESCALATING, now, actor, "level %d" % level.level)
        case.current_escalation_level = level.level
        case.last_escalation_at = now
        priority = clamp_priority(case.priority + self.priority_boost * level.level)

        acknowledged = self.acks.acknowledged_recipients(case.case_id)
        unacked = [g for g in case.recipient_ids if g not in acknowledged]
        alternate = EscalationAction.ALTERNATE_CHANNEL in level.actions
        resend = alternate or EscalationAction.RESEND in level.actions

        case.wave = {}
        self._busy.add(case.case_id)
        try:
            for guardian_id in unacked:
                if resend:
                    self._escalate_recipient(case, guardian_id, level, priority, alternate, now)
                if EscalationAction.NOTIFY_NEXT_CONTACT in level.actions:
                    self._notify_next_contact(case, guardian_id, level, priority, now)
        finally:
            self._busy.discard(case.case_id)

        if EscalationAction.NOTIFY_ADMIN in level.actions:
            logger.warning(
                "Case %s level %d: %d recipients unacknowledged, notifying administrators",
                case.case_id,
                level.level,
                len(unacked),
            )
            self._emit(
                audit.ADMIN_NOTIFIED,
                case,
                actor,
                level=level.level,
                unacknowledged=len(unacked),
            )
        self._emit(
            audit.CASE_ESCALATED,
            case,
            actor,
            level=level.level,
            resends=len(case.wave),
            unacknowledged=len(unacked),
        )
        self._refresh_counts(case)
        if not case.wave:
            self._transition(case, EmergencyState.AWAITING_ACK, now, note="nothing to resend")

    def _under_cap(self, case: EmergencyCase, guardian_id: str, level: EscalationLevel) -> bool:
        return case.escalation_resends.get(guardian_id, 0) < level.max_attempts_per_recipient

    def _count_resend(self, case: EmergencyCase, guardian_id: str) -> None:
        case.escalation_resends[guardian_id] = case.escalation_resends.get(guardian_id, 0) + 1

    def _escalate_recipient(
        self,
        case: EmergencyCase,
        guardian_id: str,
        level: EscalationLevel,
        priority: int,
        alternate: bool,
        now: datetime,
    ) -> None:
        if not self._under_cap(case, guardian_id, level):
            logger.info("Case %s: resend cap reached for %s", case.case_id, guardian_id)
            return
        items = [i for i in self._items_for(case, guardian_id) if i.on_behalf_of is None]
        waiting = [i for i in items if i.status in DISPATCHABLE and not i.is_leased]
        if waiting:
            item = waiting[-1]
            case.wave[item.notification_id] = item.attempts
            self.queue.boost(item.notification_id, priority)
            self.queue.expedite(item.notification_id, now, use_alternative_channel=alternate)
            self._count_resend(case, guardian_id)
            return
        item = self._resend_item(case, guardian_id, items, alternate, priority, now)
        if item is not None:
            item.escalation_level = level.level
            self.queue.enqueue(item, now)
            case.wave[item.notification_id] = 0
            self._count_resend(case, guardian_id)

    def _resend_item(
        self,
        case: EmergencyCase,
        guardian_id: str,
        previous: List[QueuedNotification],
        alternate: bool,
        priority: int,
        now: datetime,
    ) -> Optional[QueuedNotification]:
        recipient = self.directory.get(guardian_id)
        if recipient is not None:
            channels = recipient.reachable(case.channels)
        elif previous:
            channels = list(previous[0].channels)
        else:
            channels = []
        if alternate:
            last_used = previous[-1].last_channel_used if previous else None
            channels = rotate_channels(channels, last_used, case.severity)
        if not channels:
            return None
        return self._build_item(case, guardian_id, channels, now, priority=priority, recipient=recipient)

    def _notify_next_contact(
        self,
        case: EmergencyCase,
        guardian_id: str,
        level: EscalationLevel,
        priority: int,
        now: datetime,
    ) -> None:
        contact = self.directory.secondary_contact(guardian_id)
        if contact is None or not self._under_cap(case, guardian_id, level):
            return
        channels = contact.reachable(case.channels)
        if not channels:
            return
        item = self._build_item(
            case,
            contact.guardian_id,
            channels,
            now,
            priority=priority,
            on_behalf_of=guardian_id,
            recipient=contact,
        )
        item.escalation_level = level.level
        case.contact_map[contact.guardian_id] = guardian_id
        self.queue.enqueue(item, now)
        case.wave[item.notification_id] = 0
        self._count_resend(case, guardian_id)

    def manual_escalate(
        self,
        case_id: str,
        actor: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyCase:
        """Escalate to the next level now instead of waiting for the timer."""
        now = now or _utcnow()
        with self._lock_for(case_id):
            case = self.get(case_id)
            self._check_version(case, expected_version)
            if case.state != EmergencyState.AWAITING_ACK:
                raise InvalidStateError("Only cases awaiting acknowledgment can be escalated", state=case.state.value)
            if case.current_escalation_level >= case.max_escalation_level:
                raise InvalidStateError("Case is already at its highest escalation level", state=case.state.value)
            level = self._level_config(case, case.current_escalation_level + 1)
            if level is None:
                raise InvalidStateError("No escalation level configured", state=case.state.value)
            self._emit(audit.MANUAL_OVERRIDE, case, actor, action="escalate", level=level.level)
            self._escalate(case, level, now, actor)
            return case

    def resolve(
        self,
        case_id: str,
        actor: str,
        note: str = "",
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyCase:
        """Resolve a case. A no-op on a case that is already closed."""
        now = now or _utcnow()
        with self._lock_for(case_id):
            case = self.get(case_id)
            if case.is_terminal:
                return case
            self._check_version(case, expected_version)
            case.resolution_note = note or None
            self._emit(audit.MANUAL_OVERRIDE, case, actor, action="resolve", note=note)
            self._close(case, EmergencyState.RESOLVED, now, actor, note or "resolved by %s" % actor)
            return case

    def cancel(
        self,
        case_id: str,
        reason: str,
        actor: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyCase:
        """Cancel a case. A no-op on a case that is already closed."""
        now = now or _utcnow()
        with self._lock_for(case_id):
            case = self.get(case_id)
            if case.is_terminal:
                return case
            if not reason or not reason.strip():
                raise ValidationError("A cancellation reason is required", field="reason")
            self._check_version(case, expected_version)
            case.cancel_reason = reason.strip()
            self._emit(audit.MANUAL_OVERRIDE, case, actor, action="cancel", reason=case.cancel_reason)
            self._close(case, EmergencyState.CANCELLED, now, actor, case.cancel_reason)
            return case

    # ── Forced resends ───────────────────────────────────────────────

    def forced_resend(
        self,
        case_id: str,
        recipient_id: str,
        use_alternative_channel: bool = False,
        actor: str = "system",
        now: Optional[datetime] = None,
    ) -> Optional[QueuedNotification]:
        """Resend the case message to one recipient right away."""
        now = now or _utcnow()
        with self._lock_for(case_id):
            case = self.get(case_id)
            if case.is_terminal or case.state == EmergencyState.INITIATED:
                raise InvalidStateError("Case is not accepting resends", state=case.state.value)
            if recipient_id not in case.recipient_ids:
                raise NotFoundError("Recipient is not part of this case", resource_type="recipient", resource_id=recipient_id)
            self._emit(
                audit.MANUAL_OVERRIDE,
                case,
                actor,
                action="forced_resend",
                recipient_id=recipient_id,
                alternative=use_alternative_channel,
            )
            return self._force(case, recipient_id, use_alternative_channel, now)

    def _force(
        self,
        case: EmergencyCase,
        guardian_id: str,
        alternate: bool,
        now: datetime,
    ) -> Optional[QueuedNotification]:
        items = [i for i in self._items_for(case, guardian_id) if i.on_behalf_of is None]
        waiting = [i for i in items if i.status in DISPATCHABLE and not i.is_leased]
        if waiting:
            item = waiting[-1]
            self.queue.expedite(item.notification_id, now, use_alternative_channel=alternate)
            return item
        item = self._resend_item(case, guardian_id, items, alternate, case.priority, now)
        if item is None:
            logger.info("Case %s: no channel left to resend to %s", case.case_id, guardian_id)
            return None
        item.forced_resends = 1
        self.queue.enqueue(item, now)
        return item

    def apply_forced_resend_rules(self, now: Optional[datetime] = None) -> int:
        """Apply each open case's severity resend rules. Returns resends made."""
        now = now or _utcnow()
        total = 0
        for case in self.list_cases(active_only=True):
            if case.state == EmergencyState.INITIATED:
                continue
            try:
                with self._lock_for(case.case_id):
                    if not case.is_terminal:
                        total += self._apply_rules(case, now)
            except Exception:
                logger.exception("Forced resend sweep failed for case %s", case.case_id)
        return total

    def _apply_rules(self, case: EmergencyCase, now: datetime) -> int:
        acknowledged = self.acks.acknowledged_recipients(case.case_id)
        count = 0
        for rule in case.forced_resend_rules:
            threshold = timedelta(milliseconds=rule.after_ms)
            for guardian_id in case.recipient_ids:
                key = (guardian_id, rule.condition.value)
                if case.forced_resends.get(key, 0) >= rule.max_resends:
                    continue
                items = [i for i in self._items_for(case, guardian_id) if i.on_behalf_of is None]
                if not items:
                    continue
                latest = items[-1]
                if not self._rule_applies(rule.condition, case, latest, guardian_id, acknowledged, threshold, now):
                    continue
                if self._force(case, guardian_id, rule.use_alternative_channel, now) is not None:
                    case.forced_resends[key] = case.forced_resends.get(key, 0) + 1
                    count += 1
        if count:
            logger.info("Case %s: %d forced resends", case.case_id, count)
        return count

    @staticmethod
    def _rule_applies(
        condition: ResendCondition,
        case: EmergencyCase,
        item: QueuedNotification,
        guardian_id: str,
        acknowledged: set,
        threshold: timedelta,
        now: datetime,
    ) -> bool:
        if item.is_leased:
            return False
        last_change = item.status_history[-1].at if item.status_history else item.created_at
        if condition == ResendCondition.UNDELIVERED:
            if item.status == NotificationStatus.SENT:
                return now - last_change >= threshold
            return (
                item.status == NotificationStatus.QUEUED
                and item.scheduled_for > now
                and now - item.created_at >= threshold
            )
        if condition == ResendCondition.FAILED:
            return (
                item.status in (NotificationStatus.FAILED, NotificationStatus.NO_CHANNEL)
                and now - last_change >= threshold
            )
        if condition == ResendCondition.UNACKNOWLEDGED:
            return (
                case.require_ack
                and guardian_id not in acknowledged
                and item.status == NotificationStatus.DELIVERED
                and item.delivered_at is not None
                and now - item.delivered_at >= threshold
            )
        return False

    # ── Reporting ────────────────────────────────────────────────────

    def case_stats(self, case_id: str) -> Dict[str, float]:
        with self._lock_for(case_id):
            case = self.get(case_id)
            self._refresh_counts(case)
            pending = case.total_recipients - case.sent_count - case.failed_count
            return {
                "total": case.total_recipients,
                "pending": max(0, pending),
                "sent": case.sent_count,
                "delivered": case.delivered_count,
                "acknowledged": case.ack_count,
                "failed": case.failed_count,
                "ack_rate": round(case.ack_rate, 4),
            }
