"""Rule engine.

Evaluates a trigger event against the school's rules, category flags and
guardian opt-outs. Evaluation is pure: it builds candidate notifications
and suppression records but never enqueues or mutates shared state.
"""

import logging
from datetime import datetime, timedelta, tzinfo
from typing import Any, Dict, List, Optional, Tuple

from src.guardian_notify.config import (
    CATEGORY_PRIORITY,
    DeliveryChannel,
    Disposition,
    EmergencySeverity,
    NotificationCategory,
    QueueConfig,
    RuleOutcome,
    SEVERITY_PRIORITY,
    SuppressionReason,
    channels_for_severity,
)
from src.guardian_notify.exceptions import ValidationError
from src.guardian_notify.models import (
    DelayWindow,
    NotificationRule,
    QueuedNotification,
    Recipient,
    RuleCondition,
    RuleEvaluationResult,
    TriggerEvent,
)
from src.guardian_notify.school_config import SchoolSettings

logger = logging.getLogger(__name__)

OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains", "in", "not_in")

DEFAULT_TEMPLATES: Dict[str, str] = {
    "insight_update": "A new learning update about {student_name} is ready to view.",
    "support_plan": "The support plan for {student_name} has been confirmed by the school.",
    "absence_notice": "{student_name} was marked absent today. Please contact the school if this is unexpected.",
    "fee_update": "There is an update to your fee status: {fee_status}.",
    "announcement": "{title}",
    "emergency": "URGENT: {title}. {action_required}",
    "term_report": "The term report for {student_name} is now available.",
    "practice_summary": "{student_name} completed a practice session.",
}

DEFAULT_RULES: Tuple[NotificationRule, ...] = (
    NotificationRule(
        rule_id="emergency_notice",
        name="Emergency notice",
        event_type="emergency_notice",
        category=NotificationCategory.EMERGENCY_NOTICE,
        default_channel=DeliveryChannel.CHAT,
        optional_channels=[DeliveryChannel.SMS, DeliveryChannel.EMAIL, DeliveryChannel.VOICE],
        enabled_by_default=True,
        honors_opt_out=False,
        allow_override=False,
        priority=0,
        template_id="emergency",
    ),
    NotificationRule(
        rule_id="student_marked_absent",
        name="Absence notice",
        event_type="student_marked_absent",
        category=NotificationCategory.ATTENDANCE_NOTICE,
        default_channel=DeliveryChannel.SMS,
        optional_channels=[DeliveryChannel.CHAT],
        priority=2,
        template_id="absence_notice",
        delay=DelayWindow(
            delay_minutes=30,
            cancellation_window_minutes=25,
            allowed_hours=(8, 18),
            skip_weekends=True,
        ),
    ),
    NotificationRule(
        rule_id="parent_insight_approved",
        name="Learning insight",
        event_type="parent_insight_approved",
        category=NotificationCategory.LEARNING_UPDATE,
        default_channel=DeliveryChannel.CHAT,
        optional_channels=[DeliveryChannel.SMS, DeliveryChannel.EMAIL],
        priority=5,
        template_id="insight_update",
    ),
    NotificationRule(
        rule_id="adaptive_support_plan_acknowledged",
        name="Support plan confirmation",
        event_type="adaptive_support_plan_acknowledged",
        category=NotificationCategory.LEARNING_UPDATE,
        default_channel=DeliveryChannel.CHAT,
        optional_channels=[DeliveryChannel.EMAIL],
        priority=5,
        template_id="support_plan",
    ),
    NotificationRule(
        rule_id="fee_status_updated",
        name="Fee status",
        event_type="fee_status_updated",
        category=NotificationCategory.FEE_STATUS,
        default_channel=DeliveryChannel.CHAT,
        optional_channels=[DeliveryChannel.SMS, DeliveryChannel.EMAIL],
        requires_approval=True,
        priority=4,
        template_id="fee_update",
    ),
    NotificationRule(
        rule_id="general_announcement",
        name="School announcement",
        event_type="general_announcement",
        category=NotificationCategory.SCHOOL_ANNOUNCEMENT,
        default_channel=DeliveryChannel.CHAT,
        optional_channels=[DeliveryChannel.SMS, DeliveryChannel.EMAIL],
        requires_approval=True,
        enabled_by_default=True,
        priority=3,
        template_id="announcement",
    ),
    NotificationRule(
        rule_id="term_report_ready",
        name="Term report",
        event_type="term_report_ready",
        category=NotificationCategory.LEARNING_UPDATE,
        default_channel=DeliveryChannel.CHAT,
        optional_channels=[DeliveryChannel.EMAIL],
        requires_approval=True,
        priority=5,
        template_id="term_report",
    ),
    NotificationRule(
        rule_id="practice_session_completed",
        name="Practice summary",
        event_type="practice_session_completed",
        category=NotificationCategory.LEARNING_UPDATE,
        default_channel=DeliveryChannel.CHAT,
        priority=6,
        template_id="practice_summary",
    ),
)


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render_body(template: str, payload: Dict[str, Any]) -> str:
    return template.format_map(_SafeDict(payload))


def evaluate_condition(condition: RuleCondition, payload: Dict[str, Any]) -> bool:
    """Check one payload predicate. A missing field fails the condition."""
    if condition.operator not in OPERATORS:
        raise ValidationError("Unknown operator: %s" % condition.operator, field="operator")
    if condition.field not in payload:
        return False
    value = payload[condition.field]
    op = condition.operator
    if op == "equals":
        return value == condition.value
    if op == "not_equals":
        return value != condition.value
    if op in ("greater_than", "less_than"):
        try:
            left, right = float(value), float(condition.value)
        except (TypeError, ValueError):
            return False
        return left > right if op == "greater_than" else left < right
    if op == "contains":
        return str(condition.value).lower() in str(value).lower()
    options = condition.value if isinstance(condition.value, (list, tuple, set, frozenset)) else [condition.value]
    if op == "in":
        return value in options
    return value not in options


def is_weekend(timestamp: datetime) -> bool:
    return timestamp.weekday() >= 5


def _local(timestamp: datetime, tz: Optional[tzinfo]) -> datetime:
    if tz is None or timestamp.tzinfo is None:
        return timestamp
    return timestamp.astimezone(tz)


def is_within_allowed_hours(
    window: DelayWindow, timestamp: datetime, tz: Optional[tzinfo] = None
) -> bool:
    """Allowed hours are wall-clock hours in the school's timezone."""
    if not window.allowed_hours:
        return True
    start, end = window.allowed_hours
    return start <= _local(timestamp, tz).hour < end


def calculate_schedule(
    window: DelayWindow, base: datetime, tz: Optional[tzinfo] = None
) -> Tuple[datetime, Optional[datetime]]:
    """Return (scheduled_for, cancellable_until) for a delayed rule.

    Hour and weekend checks use the school's local time; the result is
    returned in the timezone of ``base``.
    """
    scheduled = _local(base + timedelta(minutes=window.delay_minutes), tz)
    if window.allowed_hours:
        start, end = window.allowed_hours
        if scheduled.hour < start:
            scheduled = scheduled.replace(hour=start, minute=0, second=0, microsecond=0)
        elif scheduled.hour >= end:
            scheduled = (scheduled + timedelta(days=1)).replace(
                hour=start, minute=0, second=0, microsecond=0
            )
    if window.skip_weekends:
        while is_weekend(scheduled):
            scheduled += timedelta(days=1)
    if base.tzinfo is not None:
        scheduled = scheduled.astimezone(base.tzinfo)
    cancellable_until = None
    if window.cancellation_window_minutes:
        cancellable_until = base + timedelta(minutes=window.cancellation_window_minutes)
    return scheduled, cancellable_until


class RuleEngine:
    """Turns trigger events into evaluation results.

    Rules are evaluated in ascending priority order (0 first) and every
    rule whose event type matches yields at least one result. A failing
    rule is recorded as suppressed and never stops the others.
    """

    def __init__(self, queue_config: Optional[QueueConfig] = None) -> None:
        self.queue_config = queue_config or QueueConfig()

    def evaluate(
        self,
        event: TriggerEvent,
        settings: SchoolSettings,
        recipients: List[Recipient],
    ) -> List[RuleEvaluationResult]:
        if not event.event_type:
            raise ValidationError("event_type is required", field="event_type")
        if not event.school_id:
            raise ValidationError("school_id is required", field="school_id")

        candidates = [
            r
            for r in settings.rules
            if r.active
            and r.event_type == event.event_type
            and (r.school_id is None or r.school_id == event.school_id)
        ]
        candidates.sort(key=lambda r: r.priority)

        results: List[RuleEvaluationResult] = []
        for rule in candidates:
            try:
                results.extend(self._evaluate_rule(rule, event, settings, recipients))
            except ValidationError as exc:
                reason = (
                    SuppressionReason.TEMPLATE_MISSING
                    if exc.details and exc.details[0].get("field") == "template_id"
                    else SuppressionReason.INVALID_RULE
                )
                logger.warning("Rule %s rejected: %s", rule.rule_id, exc.message)
                results.append(
                    RuleEvaluationResult(
                        rule_id=rule.rule_id,
                        outcome=RuleOutcome.SUPPRESSED,
                        reason=reason,
                        detail=exc.message,
                    )
                )
            except Exception as exc:
                logger.exception("Rule %s failed during evaluation", rule.rule_id)
                results.append(
                    RuleEvaluationResult(
                        rule_id=rule.rule_id,
                        outcome=RuleOutcome.SUPPRESSED,
                        reason=SuppressionReason.INVALID_RULE,
                        detail=str(exc),
                    )
                )
        return results

    def _evaluate_rule(
        self,
        rule: NotificationRule,
        event: TriggerEvent,
        settings: SchoolSettings,
        recipients: List[Recipient],
    ) -> List[RuleEvaluationResult]:
        template = None
        if rule.template_id is not None:
            template = settings.templates.get(rule.template_id)
            if template is None:
                raise ValidationError("Template not found: %s" % rule.template_id, field="template_id")

        for condition in rule.conditions:
            if not evaluate_condition(condition, event.payload):
                return [
                    RuleEvaluationResult(
                        rule_id=rule.rule_id,
                        outcome=RuleOutcome.NO_MATCH,
                        detail="condition on %s not met" % condition.field,
                    )
                ]

        if not settings.is_enabled(rule):
            return [self._suppressed(rule, SuppressionReason.NOT_ENABLED_FOR_SCHOOL)]

        if event.override is not None and rule.allow_override and not rule.is_emergency:
            return [
                self._suppressed(
                    rule,
                    SuppressionReason.HUMAN_OVERRIDE,
                    detail="%s: %s" % (event.override.requested_by, event.override.reason),
                )
            ]

        if not recipients:
            return [
                RuleEvaluationResult(
                    rule_id=rule.rule_id, outcome=RuleOutcome.NO_MATCH, detail="no recipients"
                )
            ]

        severity = self._severity(rule, event)
        channels = channels_for_severity(settings.channels_for(rule), severity)
        body = render_body(template, event.payload) if template else ""
        scheduled_for, cancellable_until = event.timestamp, None
        if rule.delay is not None and not rule.is_emergency:
            scheduled_for, cancellable_until = calculate_schedule(rule.delay, event.timestamp, settings.tz)

        if rule.is_emergency:
            disposition = Disposition.ESCALATION
        elif rule.requires_approval:
            disposition = Disposition.APPROVAL
        else:
            disposition = Disposition.ENQUEUE

        results = []
        for recipient in recipients:
            if rule.honors_opt_out and not rule.is_emergency and rule.category in recipient.opted_out:
                results.append(
                    self._suppressed(
                        rule, SuppressionReason.PARENT_OPTED_OUT, recipient.guardian_id
                    )
                )
                continue
            notification = QueuedNotification(
                recipient_id=recipient.guardian_id,
                school_id=event.school_id,
                category=rule.category,
                channels=recipient.reachable(channels),
                priority=SEVERITY_PRIORITY[severity] if severity else CATEGORY_PRIORITY[rule.category],
                body=body,
                scheduled_for=scheduled_for,
                created_at=event.timestamp,
                cancellable_until=cancellable_until,
                max_attempts=self.queue_config.default_max_attempts,
                attempts_per_channel=self.queue_config.attempts_per_channel,
                severity=severity,
                rule_id=rule.rule_id,
                student_id=recipient.student_id or event.student_id,
                class_id=recipient.class_id or event.class_id,
            )
            results.append(
                RuleEvaluationResult(
                    rule_id=rule.rule_id,
                    outcome=RuleOutcome.MATCHED,
                    recipient_id=recipient.guardian_id,
                    disposition=disposition,
                    notification=notification,
                )
            )
        return results

    @staticmethod
    def _severity(rule: NotificationRule, event: TriggerEvent) -> Optional[EmergencySeverity]:
        if not rule.is_emergency:
            return None
        raw = event.payload.get("severity", EmergencySeverity.CRITICAL.value)
        try:
            return EmergencySeverity(raw)
        except ValueError:
            raise ValidationError("Unknown severity: %s" % raw, field="severity")

    @staticmethod
    def _suppressed(
        rule: NotificationRule,
        reason: SuppressionReason,
        recipient_id: Optional[str] = None,
        detail: str = "",
    ) -> RuleEvaluationResult:
        return RuleEvaluationResult(
            rule_id=rule.rule_id,
            outcome=RuleOutcome.SUPPRESSED,
            recipient_id=recipient_id,
            reason=reason,
            detail=detail or reason.value,
        )
