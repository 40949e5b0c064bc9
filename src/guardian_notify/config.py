"""Guardian Notify - Configuration.

Enums, priority constants and the default configuration tables for rule
evaluation, delivery, escalation and forced resends.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class NotificationCategory(Enum):
    """Message categories a rule can produce."""

    ATTENDANCE_NOTICE = "attendance_notice"
    LEARNING_UPDATE = "learning_update"
    FEE_STATUS = "fee_status"
    SCHOOL_ANNOUNCEMENT = "school_announcement"
    EMERGENCY_NOTICE = "emergency_notice"


class DeliveryChannel(Enum):
    """Delivery media, each with its own gateway and failure modes."""

    CHAT = "chat"
    SMS = "sms"
    EMAIL = "email"
    VOICE = "voice"


class NotificationStatus(Enum):
    """Queued notification lifecycle status."""

    DRAFT = "draft"
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    NO_CHANNEL = "no_channel"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {NotificationStatus.DELIVERED, NotificationStatus.CANCELLED, NotificationStatus.NO_CHANNEL}
)
CANCELLABLE_STATUSES = frozenset(
    {NotificationStatus.PENDING, NotificationStatus.QUEUED, NotificationStatus.DRAFT}
)
RESENDABLE_STATUSES = frozenset({NotificationStatus.FAILED, NotificationStatus.NO_CHANNEL})


class AttemptOutcome(Enum):
    """Outcome of a single gateway call."""

    SUCCESS = "success"
    FAILURE = "failure"
    NO_CHANNEL = "no_channel"


class FailureReason(Enum):
    """Internal failure reasons. Never shown to guardians."""

    CHANNEL_UNAVAILABLE = "channel_unavailable"
    RATE_LIMITED = "rate_limited"
    INVALID_NUMBER = "invalid_number"
    NETWORK_ERROR = "network_error"
    PROVIDER_ERROR = "provider_error"
    TIMEOUT = "timeout"
    REJECTED_BY_RECIPIENT = "rejected_by_recipient"
    CONTENT_BLOCKED = "content_blocked"
    LEASE_EXPIRED = "lease_expired"
    UNKNOWN = "unknown"


RETRYABLE_REASONS = frozenset(
    {
        FailureReason.RATE_LIMITED,
        FailureReason.NETWORK_ERROR,
        FailureReason.PROVIDER_ERROR,
        FailureReason.TIMEOUT,
        FailureReason.LEASE_EXPIRED,
    }
)


class EmergencySeverity(Enum):
    ELEVATED = "elevated"
    HIGH = "high"
    CRITICAL = "critical"


class EmergencyType(Enum):
    SCHOOL_CLOSURE = "school_closure"
    SAFETY_INCIDENT = "safety_incident"
    WEATHER_DISRUPTION = "weather_disruption"
    INFRASTRUCTURE_FAILURE = "infrastructure_failure"


class EmergencyState(Enum):
    """Emergency case lifecycle states."""

    INITIATED = "initiated"
    BROADCASTING = "broadcasting"
    AWAITING_ACK = "awaiting_ack"
    ESCALATING = "escalating"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


TERMINAL_CASE_STATES = frozenset({EmergencyState.RESOLVED, EmergencyState.CANCELLED})

# Allowed edges of the emergency state machine.
CASE_TRANSITIONS: Dict[EmergencyState, frozenset] = {
    EmergencyState.INITIATED: frozenset(
        {EmergencyState.BROADCASTING, EmergencyState.RESOLVED, EmergencyState.CANCELLED}
    ),
    EmergencyState.BROADCASTING: frozenset(
        {EmergencyState.AWAITING_ACK, EmergencyState.RESOLVED, EmergencyState.CANCELLED}
    ),
    EmergencyState.AWAITING_ACK: frozenset(
        {EmergencyState.ESCALATING, EmergencyState.RESOLVED, EmergencyState.CANCELLED}
    ),
    EmergencyState.ESCALATING: frozenset(
        {EmergencyState.AWAITING_ACK, EmergencyState.RESOLVED, EmergencyState.CANCELLED}
    ),
    EmergencyState.RESOLVED: frozenset(),
    EmergencyState.CANCELLED: frozenset(),
}


class EscalationAction(Enum):
    RESEND = "resend"
    ALTERNATE_CHANNEL = "alternate_channel"
    NOTIFY_NEXT_CONTACT = "notify_next_contact"
    NOTIFY_ADMIN = "notify_admin"


class ResendCondition(Enum):
    UNDELIVERED = "undelivered"
    UNACKNOWLEDGED = "unacknowledged"
    FAILED = "failed"


class Role(Enum):
    """Roles resolved by the auth collaborator."""

    GUARDIAN = "guardian"
    TEACHER = "teacher"
    SCHOOL_ADMIN = "school_admin"
    PLATFORM_ADMIN = "platform_admin"


class RuleOutcome(Enum):
    MATCHED = "matched"
    SUPPRESSED = "suppressed"
    NO_MATCH = "no_match"


class Disposition(Enum):
    """Where a matched notification goes next."""

    ENQUEUE = "enqueue"
    APPROVAL = "approval"
    ESCALATION = "escalation"


class SuppressionReason(Enum):
    NOT_ENABLED_FOR_SCHOOL = "not enabled for school"
    PARENT_OPTED_OUT = "parent has opted out"
    HUMAN_OVERRIDE = "suppressed by human override"
    TEMPLATE_MISSING = "template not found"
    INVALID_RULE = "invalid rule configuration"
    APPROVAL_UNAVAILABLE = "approval workflow unavailable"


# ── Priorities ───────────────────────────────────────────────────────

MIN_PRIORITY = 0
MAX_PRIORITY = 1000
EMERGENCY_PRIORITY_THRESHOLD = 800

SEVERITY_PRIORITY: Dict[EmergencySeverity, int] = {
    EmergencySeverity.ELEVATED: 400,
    EmergencySeverity.HIGH: 600,
    EmergencySeverity.CRITICAL: 800,
}

CATEGORY_PRIORITY: Dict[NotificationCategory, int] = {
    NotificationCategory.ATTENDANCE_NOTICE: 150,
    NotificationCategory.LEARNING_UPDATE: 100,
    NotificationCategory.FEE_STATUS: 100,
    NotificationCategory.SCHOOL_ANNOUNCEMENT: 200,
    NotificationCategory.EMERGENCY_NOTICE: 800,
}


def clamp_priority(value: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(value)))


# ── Channels ─────────────────────────────────────────────────────────

CATEGORY_CHANNEL_FALLBACK: Dict[NotificationCategory, List[DeliveryChannel]] = {
    NotificationCategory.ATTENDANCE_NOTICE: [DeliveryChannel.SMS, DeliveryChannel.CHAT],
    NotificationCategory.LEARNING_UPDATE: [
        DeliveryChannel.CHAT,
        DeliveryChannel.SMS,
        DeliveryChannel.EMAIL,
    ],
    NotificationCategory.FEE_STATUS: [
        DeliveryChannel.CHAT,
        DeliveryChannel.SMS,
        DeliveryChannel.EMAIL,
    ],
    NotificationCategory.SCHOOL_ANNOUNCEMENT: [
        DeliveryChannel.CHAT,
        DeliveryChannel.SMS,
        DeliveryChannel.EMAIL,
    ],
    NotificationCategory.EMERGENCY_NOTICE: [
        DeliveryChannel.CHAT,
        DeliveryChannel.SMS,
        DeliveryChannel.EMAIL,
        DeliveryChannel.VOICE,
    ],
}


def channels_for_severity(
    channels: List[DeliveryChannel], severity: Optional[EmergencySeverity]
) -> List[DeliveryChannel]:
    """Apply the voice-call policy to a channel sequence.

    Voice is kept only for critical severity, and then only as the final
    fallback.
    """
    ordered = [c for c in channels if c != DeliveryChannel.VOICE]
    if severity == EmergencySeverity.CRITICAL and DeliveryChannel.VOICE in channels:
        ordered.append(DeliveryChannel.VOICE)
    return ordered


# ── Queue ────────────────────────────────────────────────────────────


@dataclass
class QueueConfig:
    """Delivery queue and dispatch configuration."""

    default_max_attempts: int = 5
    attempts_per_channel: int = 1
    base_backoff_seconds: float = 60.0
    max_backoff_seconds: float = 3600.0
    backoff_multiplier: float = 2.0
    lease_ttl_seconds: float = 30.0
    gateway_timeout_seconds: float = 10.0


# Emergency items retry more aggressively than routine traffic.
EMERGENCY_QUEUE_CONFIG = QueueConfig(
    default_max_attempts=8,
    attempts_per_channel=3,
    base_backoff_seconds=30.0,
    max_backoff_seconds=1800.0,
    backoff_multiplier=1.5,
)


# ── Escalation ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class EscalationLevel:
    """One step of the emergency escalation ladder."""

    level: int
    trigger_after_ms: int
    actions: Tuple[EscalationAction, ...] = (EscalationAction.RESEND,)
    max_attempts_per_recipient: int = 3


DEFAULT_ESCALATION_LEVELS: Tuple[EscalationLevel, ...] = (
    EscalationLevel(
        level=1,
        trigger_after_ms=180_000,
        actions=(EscalationAction.RESEND, EscalationAction.ALTERNATE_CHANNEL),
        max_attempts_per_recipient=3,
    ),
    EscalationLevel(
        level=2,
        trigger_after_ms=300_000,
        actions=(EscalationAction.NOTIFY_NEXT_CONTACT, EscalationAction.NOTIFY_ADMIN),
        max_attempts_per_recipient=3,
    ),
    EscalationLevel(
        level=3,
        trigger_after_ms=600_000,
        actions=(EscalationAction.ALTERNATE_CHANNEL, EscalationAction.NOTIFY_ADMIN),
        max_attempts_per_recipient=2,
    ),
)

ESCALATION_PRIORITY_BOOST = 50


@dataclass(frozen=True)
class ForcedResendRule:
    """Severity-scoped resend guarantee, independent of escalation state."""

    condition: ResendCondition
    after_ms: int
    max_resends: int
    use_alternative_channel: bool


FORCED_RESEND_RULES: Dict[EmergencySeverity, Tuple[ForcedResendRule, ...]] = {
    EmergencySeverity.CRITICAL: (
        ForcedResendRule(ResendCondition.UNDELIVERED, 60_000, 5, True),
        ForcedResendRule(ResendCondition.UNACKNOWLEDGED, 180_000, 3, True),
        ForcedResendRule(ResendCondition.FAILED, 30_000, 10, True),
    ),
    EmergencySeverity.HIGH: (
        ForcedResendRule(ResendCondition.UNDELIVERED, 120_000, 3, True),
        ForcedResendRule(ResendCondition.UNACKNOWLEDGED, 300_000, 2, False),
        ForcedResendRule(ResendCondition.FAILED, 60_000, 5, True),
    ),
    EmergencySeverity.ELEVATED: (
        ForcedResendRule(ResendCondition.UNDELIVERED, 180_000, 2, False),
        ForcedResendRule(ResendCondition.FAILED, 120_000, 3, True),
    ),
}


def fallback_allowed(
    severity: Optional[EmergencySeverity],
    rules: Optional[Dict[EmergencySeverity, Tuple[ForcedResendRule, ...]]] = None,
) -> bool:
    """Whether a failed channel may fall through to the next one.

    Routine traffic always falls back. Emergency traffic falls back only
    when the severity's FAILED resend rule names an alternative channel.
    """
    if severity is None:
        return True
    table = FORCED_RESEND_RULES if rules is None else rules
    return any(
        r.condition == ResendCondition.FAILED and r.use_alternative_channel
        for r in table.get(severity, ())
    )


@dataclass(frozen=True)
class EmergencyTypeConfig:
    default_severity: EmergencySeverity
    max_retry_attempts: int
    retry_interval_ms: int
    require_acknowledgment: bool
    channels: Tuple[DeliveryChannel, ...] = field(
        default=(DeliveryChannel.CHAT, DeliveryChannel.SMS, DeliveryChannel.EMAIL)
    )


EMERGENCY_TYPE_CONFIGS: Dict[EmergencyType, EmergencyTypeConfig] = {
    EmergencyType.SCHOOL_CLOSURE: EmergencyTypeConfig(
        default_severity=EmergencySeverity.CRITICAL,
        max_retry_attempts=10,
        retry_interval_ms=60_000,
        require_acknowledgment=True,
        channels=(
            DeliveryChannel.CHAT,
            DeliveryChannel.SMS,
            DeliveryChannel.EMAIL,
            DeliveryChannel.VOICE,
        ),
    ),
    EmergencyType.SAFETY_INCIDENT: EmergencyTypeConfig(
        default_severity=EmergencySeverity.CRITICAL,
        max_retry_attempts=15,
        retry_interval_ms=30_000,
        require_acknowledgment=True,
        channels=(
            DeliveryChannel.CHAT,
            DeliveryChannel.SMS,
            DeliveryChannel.EMAIL,
            DeliveryChannel.VOICE,
        ),
    ),
    EmergencyType.WEATHER_DISRUPTION: EmergencyTypeConfig(
        default_severity=EmergencySeverity.HIGH,
        max_retry_attempts=8,
        retry_interval_ms=120_000,
        require_acknowledgment=False,
    ),
    EmergencyType.INFRASTRUCTURE_FAILURE: EmergencyTypeConfig(
        default_severity=EmergencySeverity.ELEVATED,
        max_retry_attempts=6,
        retry_interval_ms=180_000,
        require_acknowledgment=False,
        channels=(DeliveryChannel.CHAT, DeliveryChannel.SMS),
    ),
}
