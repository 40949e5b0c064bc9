"""Data models for guardian notification routing."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from src.guardian_notify.config import (
    AttemptOutcome,
    DeliveryChannel,
    Disposition,
    EmergencySeverity,
    EmergencyState,
    EmergencyType,
    FailureReason,
    NotificationCategory,
    NotificationStatus,
    Role,
    RuleOutcome,
    SuppressionReason,
    TERMINAL_CASE_STATES,
    TERMINAL_STATUSES,
)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ── Directory ────────────────────────────────────────────────────────


@dataclass
class Recipient:
    """A guardian reachable for one student."""

    guardian_id: str
    student_id: Optional[str] = None
    class_id: Optional[str] = None
    contacts: Dict[DeliveryChannel, str] = field(default_factory=dict)
    opted_out: Set[NotificationCategory] = field(default_factory=set)
    secondary_contact_id: Optional[str] = None

    def reachable(self, channels: List[DeliveryChannel]) -> List[DeliveryChannel]:
        return [c for c in channels if c in self.contacts]


@dataclass
class TriggerEvent:
    """A fact asserted by an attendance, academic, fee or admin source."""

    event_type: str
    school_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)
    student_id: Optional[str] = None
    class_id: Optional[str] = None
    event_id: str = field(default_factory=_new_id)
    override: Optional["OverrideRequest"] = None


@dataclass
class OverrideRequest:
    """Human request to suppress notifications for one trigger."""

    requested_by: str
    reason: str


# ── Rules ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RuleCondition:
    """Payload predicate. A missing field never matches."""

    field: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class DelayWindow:
    delay_minutes: int = 0
    cancellation_window_minutes: int = 0
    allowed_hours: Optional[Tuple[int, int]] = None
    skip_weekends: bool = False


@dataclass
class NotificationRule:
    """Maps a trigger event type to a category, channels and policy."""

    rule_id: str
    event_type: str
    category: NotificationCategory
    default_channel: DeliveryChannel
    optional_channels: List[DeliveryChannel] = field(default_factory=list)
    requires_approval: bool = False
    enabled_by_default: bool = False
    honors_opt_out: bool = True
    priority: int = 100
    template_id: Optional[str] = None
    conditions: List[RuleCondition] = field(default_factory=list)
    delay: Optional[DelayWindow] = None
    allow_override: bool = True
    school_id: Optional[str] = None
    active: bool = True
    name: str = ""

    @property
    def is_emergency(self) -> bool:
        return self.category == NotificationCategory.EMERGENCY_NOTICE

    def channel_sequence(self) -> List[DeliveryChannel]:
        seq = [self.default_channel]
        for channel in self.optional_channels:
            if channel not in seq:
                seq.append(channel)
        return seq


@dataclass
class RuleEvaluationResult:
    """Exactly one result per (rule, recipient) evaluation."""

    rule_id: str
    outcome: RuleOutcome
    recipient_id: Optional[str] = None
    disposition: Optional[Disposition] = None
    notification: Optional["QueuedNotification"] = None
    reason: Optional[SuppressionReason] = None
    detail: str = ""

    @property
    def matched(self) -> bool:
        return self.outcome == RuleOutcome.MATCHED

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "outcome": self.outcome.value,
            "recipient_id": self.recipient_id,
            "disposition": self.disposition.value if self.disposition else None,
            "notification_id": (
                self.notification.notification_id if self.notification else None
            ),
            "reason": self.reason.value if self.reason else None,
        }


# ── Delivery ─────────────────────────────────────────────────────────


@dataclass
class DeliveryAttempt:
    notification_id: str
    channel: Optional[DeliveryChannel]
    attempt_number: int
    outcome: AttemptOutcome
    timestamp: datetime = field(default_factory=_now)
    reason: Optional[FailureReason] = None
    error: Optional[str] = None

    def to_dict(self, include_error: bool = True) -> dict:
        data = {
            "channel": self.channel.value if self.channel else None,
            "attempt_number": self.attempt_number,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if include_error:
            data["reason"] = self.reason.value if self.reason else None
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class StatusChange:
    status: NotificationStatus
    at: datetime
    note: str = ""


@dataclass
class QueuedNotification:
    """One notification to one recipient, owned by the delivery queue."""

    recipient_id: str
    school_id: str
    category: NotificationCategory
    channels: List[DeliveryChannel]
    priority: int = 100
    body: str = ""
    notification_id: str = field(default_factory=_new_id)
    status: NotificationStatus = NotificationStatus.QUEUED
    scheduled_for: datetime = field(default_factory=_now)
    created_at: datetime = field(default_factory=_now)
    cancellable_until: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 5
    attempts_per_channel: int = 1
    backoff_base_seconds: Optional[float] = None
    channel_index: int = 0
    channel_attempts: Dict[DeliveryChannel, int] = field(default_factory=dict)
    last_error: Optional[str] = None
    severity: Optional[EmergencySeverity] = None
    fallback_allowed: bool = True
    case_id: Optional[str] = None
    on_behalf_of: Optional[str] = None
    rule_id: Optional[str] = None
    student_id: Optional[str] = None
    class_id: Optional[str] = None
    offline_id: Optional[str] = None
    created_by: Optional[str] = None
    escalation_level: int = 0
    forced_resends: int = 0
    delivered_at: Optional[datetime] = None
    status_history: List[StatusChange] = field(default_factory=list)
    attempt_log: List[DeliveryAttempt] = field(default_factory=list)
    lease_token: Optional[str] = None
    version: int = 0

    @property
    def current_channel(self) -> Optional[DeliveryChannel]:
        if 0 <= self.channel_index < len(self.channels):
            return self.channels[self.channel_index]
        return None

    @property
    def next_channel(self) -> Optional[DeliveryChannel]:
        idx = self.channel_index + 1
        return self.channels[idx] if idx < len(self.channels) else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_leased(self) -> bool:
        return self.lease_token is not None

    @property
    def guardian_id(self) -> str:
        """Guardian this item ultimately serves."""
        return self.on_behalf_of or self.recipient_id

    @property
    def last_channel_used(self) -> Optional[DeliveryChannel]:
        for attempt in reversed(self.attempt_log):
            if attempt.channel is not None:
                return attempt.channel
        return None

    def set_status(self, status: NotificationStatus, at: Optional[datetime] = None, note: str = "") -> None:
        """Append a status change. History is never rewritten."""
        self.status = status
        self.status_history.append(StatusChange(status, at or _now(), note))

    def to_dict(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "recipient_id": self.recipient_id,
            "school_id": self.school_id,
            "category": self.category.value,
            "priority": self.priority,
            "channels": [c.value for c in self.channels],
            "current_channel": self.current_channel.value if self.current_channel else None,
            "status": self.status.value,
            "scheduled_for": self.scheduled_for.isoformat(),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "case_id": self.case_id,
            "offline_id": self.offline_id,
        }


@dataclass(frozen=True)
class Lease:
    """Exclusive claim on a queued item for one gateway call."""

    notification_id: str
    token: str
    worker_id: str
    channel: DeliveryChannel
    attempt_number: int
    expires_at: datetime


# ── Emergencies ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class CaseTransition:
    from_state: Optional[EmergencyState]
    to_state: EmergencyState
    at: datetime
    actor: str = "system"
    note: str = ""


@dataclass
class EmergencyCase:
    """Emergency lifecycle record. Retained after reaching a terminal state."""

    school_id: str
    emergency_type: EmergencyType
    severity: EmergencySeverity
    title: str
    description: str = ""
    action_required: str = ""
    safety_instructions: List[str] = field(default_factory=list)
    case_id: str = field(default_factory=_new_id)
    state: EmergencyState = EmergencyState.INITIATED
    require_ack: bool = True
    channels: List[DeliveryChannel] = field(default_factory=list)
    priority: int = 800
    max_attempts: int = 8
    retry_interval_seconds: float = 60.0
    total_recipients: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    ack_count: int = 0
    failed_count: int = 0
    current_escalation_level: int = 0
    max_escalation_level: int = 0
    initiated_by: str = ""
    initiated_at: datetime = field(default_factory=_now)
    awaiting_since: Optional[datetime] = None
    last_escalation_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    resolution_note: Optional[str] = None
    recipient_ids: List[str] = field(default_factory=list)
    contact_map: Dict[str, str] = field(default_factory=dict)
    escalation_levels: Tuple[Any, ...] = ()
    forced_resend_rules: Tuple[Any, ...] = ()
    escalation_resends: Dict[str, int] = field(default_factory=dict)
    forced_resends: Dict[Tuple[str, str], int] = field(default_factory=dict)
    wave: Dict[str, int] = field(default_factory=dict)
    history: List[CaseTransition] = field(default_factory=list)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_CASE_STATES

    @property
    def pending_acks(self) -> int:
        return max(0, self.total_recipients - self.ack_count)

    @property
    def ack_rate(self) -> float:
        if self.total_recipients == 0:
            return 0.0
        return self.ack_count / self.total_recipients

    def to_dict(self) -> dict:
        return {
            "case_id": self.case_id,
            "school_id": self.school_id,
            "emergency_type": self.emergency_type.value,
            "severity": self.severity.value,
            "title": self.title,
            "state": self.state.value,
            "require_ack": self.require_ack,
            "total_recipients": self.total_recipients,
            "sent_count": self.sent_count,
            "delivered_count": self.delivered_count,
            "ack_count": self.ack_count,
            "pending_acks": self.pending_acks,
            "failed_count": self.failed_count,
            "ack_rate": round(self.ack_rate, 4),
            "current_escalation_level": self.current_escalation_level,
            "max_escalation_level": self.max_escalation_level,
            "initiated_at": self.initiated_at.isoformat(),
            "last_escalation_at": _iso(self.last_escalation_at),
            "closed_at": _iso(self.closed_at),
            "cancel_reason": self.cancel_reason,
            "version": self.version,
        }


@dataclass(frozen=True)
class Acknowledgment:
    case_id: str
    recipient_id: str
    channel: Optional[DeliveryChannel]
    timestamp: datetime


# ── Access ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RoleContext:
    """Caller identity and scope as resolved by the auth collaborator."""

    user_id: str
    role: Union[Role, str]
    school_id: Optional[str] = None
    class_ids: frozenset = frozenset()
    student_ids: frozenset = frozenset()


@dataclass(frozen=True)
class NotificationContext:
    """What the visibility gate needs to know about a target."""

    school_id: Optional[str]
    category: NotificationCategory
    status: Optional[NotificationStatus] = None
    class_id: Optional[str] = None
    student_id: Optional[str] = None
    recipient_id: Optional[str] = None

    @classmethod
    def for_notification(cls, item: QueuedNotification) -> "NotificationContext":
        return cls(
            school_id=item.school_id,
            category=item.category,
            status=item.status,
            class_id=item.class_id,
            student_id=item.student_id,
            recipient_id=item.guardian_id,
        )


@dataclass(frozen=True)
class PermissionSet:
    can_view: bool = False
    can_view_details: bool = False
    can_cancel: bool = False
    can_resend: bool = False
    can_modify: bool = False
    can_initiate: bool = False
    can_view_recipient_info: bool = False
    can_view_delivery_logs: bool = False
    can_export: bool = False
    can_configure: bool = False
    can_acknowledge: bool = False

    def to_dict(self) -> dict:
        return {
            "can_view": self.can_view,
            "can_view_details": self.can_view_details,
            "can_cancel": self.can_cancel,
            "can_resend": self.can_resend,
            "can_modify": self.can_modify,
            "can_initiate": self.can_initiate,
            "can_view_recipient_info": self.can_view_recipient_info,
            "can_view_delivery_logs": self.can_view_delivery_logs,
            "can_export": self.can_export,
            "can_configure": self.can_configure,
            "can_acknowledge": self.can_acknowledge,
        }


DENY_ALL = PermissionSet()
