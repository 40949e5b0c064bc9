"""Notification service.

Wires the rule engine, delivery queue, dispatch workers, acknowledgment
tracker, escalation controller and offline buffer together and exposes the
administrative and configuration operations. Every entry point consults
the visibility gate before reading or changing anything.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from src.guardian_notify import audit
from src.guardian_notify.acknowledgments import AcknowledgmentTracker
from src.guardian_notify.audit import AuditEvent, AuditSink, InMemoryAuditSink
from src.guardian_notify.config import (
    DeliveryChannel,
    Disposition,
    EmergencySeverity,
    EmergencyType,
    EscalationLevel,
    ForcedResendRule,
    NotificationCategory,
    NotificationStatus,
    QueueConfig,
    Role,
    RuleOutcome,
    SuppressionReason,
)
from src.guardian_notify.directory import InMemoryDirectory, RecipientDirectory
from src.guardian_notify.dispatcher import DeliveryDispatcher
from src.guardian_notify.escalation import EscalationController
from src.guardian_notify.exceptions import (
    InvalidStateError,
    PermissionDenied,
    ValidationError,
)
from src.guardian_notify.gateway import ChannelGateway
from src.guardian_notify.models import (
    Acknowledgment,
    EmergencyCase,
    NotificationContext,
    QueuedNotification,
    Recipient,
    RoleContext,
    RuleEvaluationResult,
    TriggerEvent,
)
from src.guardian_notify.offline import (
    OfflineBuffer,
    OfflineRecord,
    ReplayReport,
    notification_from_record,
    notification_payload,
)
from src.guardian_notify.queue import DeliveryQueue
from src.guardian_notify.rules import DEFAULT_RULES, DEFAULT_TEMPLATES, RuleEngine
from src.guardian_notify.scheduler import EscalationScheduler
from src.guardian_notify.school_config import SchoolConfigStore
from src.guardian_notify.visibility import (
    DEFAULT_VISIBILITY_MATRIX,
    VisibilityMatrix,
    project_notification,
    require,
    resolve_role,
)
from src.logging_config import OperationContext

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalWorkflow(Protocol):
    def submit(self, notification: QueuedNotification) -> None:
        ...


class InMemoryApprovalQueue:
    """Holds submitted notification ids until an administrator decides."""

    def __init__(self) -> None:
        self._pending: List[str] = []
        self._lock = threading.Lock()

    def submit(self, notification: QueuedNotification) -> None:
        with self._lock:
            self._pending.append(notification.notification_id)

    def remove(self, notification_id: str) -> None:
        with self._lock:
            if notification_id in self._pending:
                self._pending.remove(notification_id)

    @property
    def pending(self) -> List[str]:
        with self._lock:
            return list(self._pending)


class NotificationService:
    """Facade over the notification routing core."""

    def __init__(
        self,
        gateway: ChannelGateway,
        directory: Optional[RecipientDirectory] = None,
        config_store: Optional[SchoolConfigStore] = None,
        audit_sink: Optional[AuditSink] = None,
        queue_config: Optional[QueueConfig] = None,
        offline_buffer: Optional[OfflineBuffer] = None,
        approvals: Optional[ApprovalWorkflow] = None,
        matrix: VisibilityMatrix = DEFAULT_VISIBILITY_MATRIX,
        worker_count: int = 2,
        queue_poll_interval: float = 0.5,
        escalation_poll_interval: float = 30.0,
        priority_boost: int = 50,
    ) -> None:
        self.queue = DeliveryQueue(queue_config)
        self.acks = AcknowledgmentTracker()
        self.directory = directory if directory is not None else InMemoryDirectory()
        self.config_store = config_store or SchoolConfigStore(DEFAULT_RULES, DEFAULT_TEMPLATES)
        self.audit_sink = audit_sink if audit_sink is not None else InMemoryAuditSink()
        self.approvals = approvals if approvals is not None else InMemoryApprovalQueue()
        self.offline = offline_buffer
        self.matrix = matrix
        self.rule_engine = RuleEngine(self.queue.config)
        self.controller = EscalationController(
            self.queue,
            self.acks,
            self.config_store,
            self.directory,
            audit_sink=self.audit_sink,
            priority_boost=priority_boost,
        )
        self.dispatcher = DeliveryDispatcher(
            self.queue,
            gateway,
            worker_count=worker_count,
            poll_interval=queue_poll_interval,
        )
        self.scheduler = EscalationScheduler(self.controller, self.queue, escalation_poll_interval)

    @classmethod
    def from_settings(cls, gateway: ChannelGateway, settings=None, **kwargs) -> "NotificationService":
        """Build a service from environment-driven settings."""
        if settings is None:
            from src.settings import get_settings

            settings = get_settings()
        queue_config = QueueConfig(
            default_max_attempts=settings.default_max_attempts,
            attempts_per_channel=settings.attempts_per_channel,
            base_backoff_seconds=settings.backoff_base_seconds,
            max_backoff_seconds=settings.backoff_max_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            lease_ttl_seconds=settings.lease_ttl_seconds,
            gateway_timeout_seconds=settings.gateway_timeout_seconds,
        )
        kwargs.setdefault("offline_buffer", OfflineBuffer(settings.offline_db_url))
        return cls(
            gateway,
            queue_config=queue_config,
            worker_count=settings.worker_count,
            queue_poll_interval=settings.queue_poll_interval,
            escalation_poll_interval=settings.escalation_poll_interval,
            priority_boost=settings.escalation_priority_boost,
            **kwargs,
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        self.dispatcher.start()
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.dispatcher.close()

    # ── Helpers ──────────────────────────────────────────────────────

    def _require(self, actor: RoleContext, context: NotificationContext, permission: str) -> None:
        require(actor, context, permission, self.matrix)

    def _emergency_context(self, school_id: Optional[str]) -> NotificationContext:
        return NotificationContext(school_id=school_id, category=NotificationCategory.EMERGENCY_NOTICE)

    def _require_case(self, actor: RoleContext, case_id: str, permission: str) -> EmergencyCase:
        case = self.controller.get(case_id)
        self._require(actor, self._emergency_context(case.school_id), permission)
        return case

    def _audit(
        self,
        event: str,
        resource_type: str,
        resource_id: str,
        actor: str,
        school_id: Optional[str],
        **details,
    ) -> None:
        self.audit_sink.emit(
            AuditEvent(
                action=event,
                resource_type=resource_type,
                resource_id=resource_id,
                actor=actor,
                school_id=school_id,
                details=details,
            )
        )

    def _audit_override(self, actor: RoleContext, item: QueuedNotification, **details) -> None:
        self._audit(
            audit.MANUAL_OVERRIDE,
            "notification",
            item.notification_id,
            actor.user_id,
            item.school_id,
            **details,
        )

    def _audit_config(
        self, actor: RoleContext, school_id: str, resource_type: str, resource_id: str, **details
    ) -> None:
        self._audit(audit.CONFIG_CHANGED, resource_type, resource_id, actor.user_id, school_id, **details)

    def _recipients_for(self, event: TriggerEvent) -> List[Recipient]:
        if event.student_id:
            return self.directory.for_student(event.school_id, event.student_id)
        recipients = self.directory.for_school(event.school_id)
        if event.class_id:
            recipients = [r for r in recipients if r.class_id == event.class_id]
        return recipients

    # ── Triggers ─────────────────────────────────────────────────────

    def handle_trigger(
        self, event: TriggerEvent, now: Optional[datetime] = None
    ) -> List[RuleEvaluationResult]:
        """Evaluate a trigger event and route every matched notification."""
        now = now or _utcnow()
        with OperationContext(school_id=event.school_id, extra={"event_id": event.event_id}):
            settings = self.config_store.snapshot(event.school_id)
            recipients = self._recipients_for(event)
            results = self.rule_engine.evaluate(event, settings, recipients)
            fields = None
            if any(
                r.outcome == RuleOutcome.MATCHED and r.disposition == Disposition.ESCALATION for r in results
            ):
                fields = self._emergency_fields(event)

            emergency: List[Tuple[RuleEvaluationResult, Recipient]] = []
            by_guardian = {r.guardian_id: r for r in recipients}
            for result in results:
                if result.outcome == RuleOutcome.MATCHED:
                    if result.disposition == Disposition.ESCALATION:
                        emergency.append((result, by_guardian[result.recipient_id]))
                    else:
                        self._route(result, now)
                self._audit_result(result, event)

            if emergency:
                self._open_case_from_trigger(event, emergency, fields, now)

            logger.info(
                "Trigger %s (%s): %d results",
                event.event_id,
                event.event_type,
                len(results),
            )
            return results

    def _route(self, result: RuleEvaluationResult, now: datetime) -> None:
        item = result.notification
        if result.disposition == Disposition.APPROVAL:
            try:
                self.approvals.submit(item)
            except Exception as exc:
                logger.exception("Approval workflow rejected %s", item.notification_id)
                result.outcome = RuleOutcome.SUPPRESSED
                result.reason = SuppressionReason.APPROVAL_UNAVAILABLE
                result.detail = str(exc)
                result.notification = None
                return
            self.queue.enqueue(item, now, hold=True)
        else:
            self.queue.enqueue(item, now)

    def _audit_result(self, result: RuleEvaluationResult, event: TriggerEvent) -> None:
        if result.outcome == RuleOutcome.NO_MATCH:
            return
        if result.outcome == RuleOutcome.MATCHED:
            action = audit.RULE_MATCHED
        elif result.reason in (SuppressionReason.INVALID_RULE, SuppressionReason.TEMPLATE_MISSING):
            action = audit.RULE_FAILED
        else:
            action = audit.RULE_SUPPRESSED
        self._audit(
            action,
            "rule",
            result.rule_id,
            "system",
            event.school_id,
            event_id=event.event_id,
            recipient_id=result.recipient_id,
            reason=result.reason.value if result.reason else None,
            disposition=result.disposition.value if result.disposition else None,
        )

    @staticmethod
    def _emergency_fields(event: TriggerEvent) -> Tuple[EmergencyType, Optional[EmergencySeverity]]:
        """Parse the emergency payload before anything from the event is routed."""
        payload = event.payload
        try:
            emergency_type = EmergencyType(payload.get("emergency_type", EmergencyType.SCHOOL_CLOSURE.value))
        except ValueError:
            raise ValidationError(
                "Unknown emergency_type: %s" % payload.get("emergency_type"), field="emergency_type"
            )
        try:
            severity = EmergencySeverity(payload["severity"]) if payload.get("severity") else None
        except ValueError:
            raise ValidationError("Unknown severity: %s" % payload.get("severity"), field="severity")
        return emergency_type, severity

    def _open_case_from_trigger(
        self,
        event: TriggerEvent,
        matched: List[Tuple[RuleEvaluationResult, Recipient]],
        fields: Tuple[EmergencyType, Optional[EmergencySeverity]],
        now: datetime,
    ) -> EmergencyCase:
        payload = event.payload
        emergency_type, severity = fields
        case = self.controller.initiate(
            event.school_id,
            emergency_type,
            payload.get("title") or event.event_type,
            description=payload.get("description", ""),
            action_required=payload.get("action_required", ""),
            safety_instructions=payload.get("safety_instructions"),
            severity=severity,
            initiated_by="trigger:%s" % event.event_id,
            now=now,
        )
        self.controller.broadcast(case.case_id, [r for _, r in matched], now=now)
        for result, _ in matched:
            result.notification = None
            result.detail = "case %s" % case.case_id
        return case

    # ── Emergency operations ─────────────────────────────────────────

    def initiate_emergency(
        self,
        actor: RoleContext,
        emergency_type: EmergencyType,
        title: str,
        description: str = "",
        action_required: str = "",
        safety_instructions: Optional[List[str]] = None,
        severity: Optional[EmergencySeverity] = None,
        school_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyCase:
        school_id = school_id or actor.school_id
        with OperationContext(user_id=actor.user_id, school_id=school_id or ""):
            self._require(actor, self._emergency_context(school_id), "can_initiate")
            return self.controller.initiate(
                school_id,
                emergency_type,
                title,
                description=description,
                action_required=action_required,
                safety_instructions=safety_instructions,
                severity=severity,
                initiated_by=actor.user_id,
                now=now,
            )

    def broadcast(
        self,
        actor: RoleContext,
        case_id: str,
        recipients: Optional[List[Recipient]] = None,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyCase:
        with OperationContext(user_id=actor.user_id, case_id=case_id):
            self._require_case(actor, case_id, "can_initiate")
            return self.controller.broadcast(case_id, recipients, actor.user_id, expected_version, now)

    def manual_escalate(
        self,
        actor: RoleContext,
        case_id: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyCase:
        with OperationContext(user_id=actor.user_id, case_id=case_id):
            self._require_case(actor, case_id, "can_resend")
            return self.controller.manual_escalate(case_id, actor.user_id, expected_version, now)

    def resolve(
        self,
        actor: RoleContext,
        case_id: str,
        note: str = "",
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyCase:
        with OperationContext(user_id=actor.user_id, case_id=case_id):
            self._require_case(actor, case_id, "can_cancel")
            return self.controller.resolve(case_id, actor.user_id, note, expected_version, now)

    def cancel_case(
        self,
        actor: RoleContext,
        case_id: str,
        reason: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyCase:
        with OperationContext(user_id=actor.user_id, case_id=case_id):
            self._require_case(actor, case_id, "can_cancel")
            return self.controller.cancel(case_id, reason, actor.user_id, expected_version, now)

    def forced_resend(
        self,
        actor: RoleContext,
        case_id: str,
        recipient_id: str,
        use_alternative_channel: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[QueuedNotification]:
        with OperationContext(user_id=actor.user_id, case_id=case_id):
            self._require_case(actor, case_id, "can_resend")
            return self.controller.forced_resend(
                case_id, recipient_id, use_alternative_channel, actor.user_id, now
            )

    def acknowledge(
        self,
        actor: RoleContext,
        case_id: str,
        recipient_id: str,
        channel: Optional[DeliveryChannel] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Acknowledgment, bool]:
        """Record an emergency acknowledgment.

        Guardians acknowledge only for themselves. Admins may record one on
        a guardian's behalf, for example after a phone call; that is audited.
        """
        with OperationContext(user_id=actor.user_id, case_id=case_id):
            case = self.controller.get(case_id)
            context = NotificationContext(
                case.school_id, NotificationCategory.EMERGENCY_NOTICE, recipient_id=recipient_id
            )
            self._require(actor, context, "can_acknowledge")
            ack, created = self.controller.acknowledge(case_id, recipient_id, channel, now)
            if created and actor.user_id != recipient_id:
                self._audit(
                    audit.MANUAL_OVERRIDE,
                    "case",
                    case_id,
                    actor.user_id,
                    case.school_id,
                    action="acknowledge",
                    recipient_id=recipient_id,
                )
            return ack, created

    def acknowledge_notification(
        self,
        actor: RoleContext,
        notification_id: str,
        recipient_id: str,
        channel: Optional[DeliveryChannel] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Acknowledgment, bool]:
        """Informational receipt for a routine notification."""
        item = self.queue.get(notification_id)
        if item.case_id:
            return self.acknowledge(actor, item.case_id, recipient_id, channel, now)
        if recipient_id not in (item.recipient_id, item.guardian_id):
            raise ValidationError(
                "%s is not a recipient of %s" % (recipient_id, notification_id), field="recipient_id"
            )
        context = NotificationContext(
            item.school_id, item.category, status=item.status, recipient_id=recipient_id
        )
        self._require(actor, context, "can_acknowledge")
        return self.acks.record(recipient_id, notification_id, channel, now or _utcnow())

    def case_summary(self, actor: RoleContext, case_id: str) -> Dict[str, Any]:
        case = self._require_case(actor, case_id, "can_view")
        summary = case.to_dict()
        summary["stats"] = self.controller.case_stats(case_id)
        return summary

    def list_cases(self, actor: RoleContext, active_only: bool = False) -> List[Dict[str, Any]]:
        school_id = None if resolve_role(actor.role) == Role.PLATFORM_ADMIN else actor.school_id
        cases = self.controller.list_cases(school_id, active_only=active_only)
        visible = []
        for case in cases:
            try:
                self._require(actor, self._emergency_context(case.school_id), "can_view")
            except PermissionDenied:
                continue
            visible.append(case.to_dict())
        return visible

    # ── Queue operations ─────────────────────────────────────────────

    def process_queue_now(self, actor: RoleContext, now: Optional[datetime] = None) -> int:
        """Dispatch everything ready at ``now`` on the calling thread."""
        with OperationContext(user_id=actor.user_id, school_id=actor.school_id or ""):
            self._require(
                actor,
                NotificationContext(actor.school_id, NotificationCategory.SCHOOL_ANNOUNCEMENT),
                "can_view_delivery_logs",
            )
            return self.dispatcher.drain(now)

    def approve(
        self, actor: RoleContext, notification_id: str, now: Optional[datetime] = None
    ) -> QueuedNotification:
        item = self.queue.get(notification_id)
        with OperationContext(user_id=actor.user_id, school_id=item.school_id):
            self._require(actor, NotificationContext.for_notification(item), "can_modify")
            released = self.queue.release(notification_id, now)
            if isinstance(self.approvals, InMemoryApprovalQueue):
                self.approvals.remove(notification_id)
            self._audit_override(actor, item, action="approve")
            return released

    def cancel_notification(
        self,
        actor: RoleContext,
        notification_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> QueuedNotification:
        now = now or _utcnow()
        item = self.queue.get(notification_id)
        with OperationContext(user_id=actor.user_id, school_id=item.school_id):
            self._require(actor, NotificationContext.for_notification(item), "can_cancel")
            if item.cancellable_until is not None and now > item.cancellable_until:
                raise InvalidStateError("Cancellation window has closed", state=item.status.value)
            cancelled = self.queue.cancel(notification_id, now, reason)
            self._audit_override(actor, item, action="cancel", reason=reason)
            return cancelled

    def resend_notification(
        self, actor: RoleContext, notification_id: str, now: Optional[datetime] = None
    ) -> QueuedNotification:
        item = self.queue.get(notification_id)
        with OperationContext(user_id=actor.user_id, school_id=item.school_id):
            context = NotificationContext.for_notification(item)
            self._require(actor, context, "can_view")
            if item.case_id:
                case = self.controller.get(item.case_id)
                if case.is_terminal:
                    raise InvalidStateError("Emergency case is closed", state=case.state.value)
            self._require(actor, context, "can_resend")
            resent = self.queue.manual_resend(notification_id, now)
            self._audit_override(actor, item, action="resend")
            return resent

    def confirm_delivery(
        self, actor: RoleContext, notification_id: str, now: Optional[datetime] = None
    ) -> QueuedNotification:
        """Gateway callback once a provider confirms a sent message.

        Runs as the service account that receives provider receipts.
        """
        item = self.queue.get(notification_id)
        self._require(actor, NotificationContext.for_notification(item), "can_view_delivery_logs")
        return self.queue.confirm_delivery(notification_id, now)

    def list_notifications(
        self,
        actor: RoleContext,
        status: Optional[NotificationStatus] = None,
        case_id: Optional[str] = None,
    ) -> List[dict]:
        items = self.queue.list(
            lambda i: (status is None or i.status == status) and (case_id is None or i.case_id == case_id)
        )
        views = []
        for item in items:
            view = project_notification(item, actor, self.matrix)
            if view is not None:
                views.append(view)
        return views

    def get_notification(self, actor: RoleContext, notification_id: str) -> dict:
        view = project_notification(self.queue.get(notification_id), actor, self.matrix)
        if view is None:
            raise PermissionDenied("Not allowed: can_view", action="can_view")
        return view

    # ── Offline authoring ────────────────────────────────────────────

    def author_offline(
        self,
        actor: RoleContext,
        recipient_id: str,
        category: NotificationCategory,
        channels: List[DeliveryChannel],
        body: str = "",
        student_id: Optional[str] = None,
        class_id: Optional[str] = None,
        offline_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Record a notification locally. Works whether or not sync is possible."""
        if self.offline is None:
            raise InvalidStateError("No offline buffer configured")
        context = NotificationContext(actor.school_id, category, class_id=class_id, student_id=student_id)
        self._require(actor, context, "can_initiate")
        payload = notification_payload(recipient_id, category, channels, body, student_id, class_id)
        return self.offline.append(actor.user_id, actor.school_id, payload, offline_id, now)

    def sync_offline(self, actor: RoleContext, now: Optional[datetime] = None) -> ReplayReport:
        """Replay the offline buffer into the delivery queue.

        Each entry is checked against the syncing user's permissions; an
        entry they may not send is left in the buffer with the denial
        recorded.
        """
        if self.offline is None:
            raise InvalidStateError("No offline buffer configured")
        now = now or _utcnow()
        self._require(
            actor,
            NotificationContext(actor.school_id, NotificationCategory.LEARNING_UPDATE),
            "can_initiate",
        )

        def apply(record: OfflineRecord) -> None:
            item = notification_from_record(record)
            context = NotificationContext(
                record.school_id, item.category, class_id=item.class_id, student_id=item.student_id
            )
            self._require(actor, context, "can_initiate")
            item.max_attempts = self.queue.config.default_max_attempts
            item.attempts_per_channel = self.queue.config.attempts_per_channel
            item.scheduled_for = now
            self.queue.upsert(item, now)

        return self.offline.replay(apply, now)

    # ── Configuration surface ────────────────────────────────────────

    def _require_config(self, actor: RoleContext, school_id: str, category: NotificationCategory) -> None:
        self._require(actor, NotificationContext(school_id, category), "can_configure")

    def set_category_enabled(
        self, actor: RoleContext, school_id: str, category: NotificationCategory, enabled: bool
    ) -> None:
        self._require_config(actor, school_id, category)
        self.config_store.set_category_enabled(school_id, category, enabled)
        self._audit_config(actor, school_id, "school", school_id, category=category.value, enabled=enabled)

    def set_rule_channels(
        self, actor: RoleContext, school_id: str, rule_id: str, channels: List[DeliveryChannel]
    ) -> None:
        rule = next((r for r in self.config_store.snapshot(school_id).rules if r.rule_id == rule_id), None)
        category = rule.category if rule else NotificationCategory.SCHOOL_ANNOUNCEMENT
        self._require_config(actor, school_id, category)
        self.config_store.set_rule_channels(school_id, rule_id, channels)
        self._audit_config(actor, school_id, "rule", rule_id, channels=[c.value for c in channels])

    def set_escalation_levels(
        self, actor: RoleContext, school_id: str, levels: Iterable[EscalationLevel]
    ) -> None:
        levels = list(levels)
        self._require_config(actor, school_id, NotificationCategory.EMERGENCY_NOTICE)
        self.config_store.set_escalation_levels(school_id, levels)
        self._audit_config(actor, school_id, "school", school_id, escalation_levels=len(levels))

    def set_forced_resend_rules(
        self,
        actor: RoleContext,
        school_id: str,
        severity: EmergencySeverity,
        rules: Iterable[ForcedResendRule],
    ) -> None:
        rules = list(rules)
        self._require_config(actor, school_id, NotificationCategory.EMERGENCY_NOTICE)
        self.config_store.set_forced_resend_rules(school_id, severity, rules)
        self._audit_config(
            actor, school_id, "school", school_id, severity=severity.value, forced_resend_rules=len(rules)
        )

    def set_school_timezone(self, actor: RoleContext, school_id: str, name: str) -> None:
        self._require_config(actor, school_id, NotificationCategory.SCHOOL_ANNOUNCEMENT)
        self.config_store.set_timezone(school_id, name)
        self._audit_config(actor, school_id, "school", school_id, timezone=name)
