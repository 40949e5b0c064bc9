"""Tests for the emergency escalation controller."""

from datetime import datetime, timedelta, timezone

import pytest

from src.guardian_notify import audit
from src.guardian_notify.acknowledgments import AcknowledgmentTracker
from src.guardian_notify.audit import InMemoryAuditSink
from src.guardian_notify.config import (
    CASE_TRANSITIONS,
    DeliveryChannel,
    EmergencySeverity,
    EmergencyState,
    EmergencyType,
    EscalationAction,
    EscalationLevel,
    FailureReason,
    ForcedResendRule,
    NotificationStatus,
    ResendCondition,
)
from src.guardian_notify.directory import InMemoryDirectory
from src.guardian_notify.dispatcher import DeliveryDispatcher
from src.guardian_notify.escalation import EscalationController, rotate_channels
from src.guardian_notify.exceptions import (
    ConcurrencyConflict,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from src.guardian_notify.gateway import DeliveryResult, SimulatedGateway
from src.guardian_notify.models import Recipient
from src.guardian_notify.queue import DeliveryQueue
from src.guardian_notify.school_config import SchoolConfigStore

SCHOOL = "sch-1"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

LEVELS = (
    EscalationLevel(1, 300_000, (EscalationAction.RESEND, EscalationAction.ALTERNATE_CHANNEL), 3),
    EscalationLevel(2, 900_000, (EscalationAction.NOTIFY_NEXT_CONTACT, EscalationAction.NOTIFY_ADMIN), 3),
    EscalationLevel(3, 1_800_000, (EscalationAction.ALTERNATE_CHANNEL, EscalationAction.NOTIFY_ADMIN), 2),
)

DEFAULT_CONTACTS = (DeliveryChannel.CHAT, DeliveryChannel.SMS, DeliveryChannel.EMAIL)


def _recipient(guardian_id, channels=DEFAULT_CONTACTS, **kwargs):
    return Recipient(
        guardian_id=guardian_id,
        student_id="s-" + guardian_id,
        class_id="c1",
        contacts={c: "%s:%s" % (c.value, guardian_id) for c in channels},
        **kwargs,
    )


def _minutes(n):
    return T0 + timedelta(minutes=n)


class _ControllerTest:
    """Shared wiring for controller tests."""

    def setup_method(self):
        self.queue = DeliveryQueue()
        self.acks = AcknowledgmentTracker()
        self.store = SchoolConfigStore()
        self.directory = InMemoryDirectory()
        self.audit = InMemoryAuditSink()
        self.gateway = SimulatedGateway()
        self.controller = EscalationController(
            self.queue, self.acks, self.store, self.directory, audit_sink=self.audit
        )
        self.dispatcher = DeliveryDispatcher(self.queue, self.gateway)

    def teardown_method(self):
        self.dispatcher.close()

    def _add(self, *recipients):
        for r in recipients:
            self.directory.add(SCHOOL, r)

    def _open(self, count=3, levels=LEVELS, emergency_type=EmergencyType.SCHOOL_CLOSURE):
        if not self.directory.for_school(SCHOOL):
            self._add(*[_recipient("g%d" % i) for i in range(1, count + 1)])
        if levels is not None:
            self.store.set_escalation_levels(SCHOOL, levels)
        case = self.controller.initiate(
            SCHOOL, emergency_type, "Flooding on campus", initiated_by="admin-1", now=T0
        )
        return self.controller.broadcast(case.case_id, actor="admin-1", now=T0)


# ── Lifecycle Tests ──────────────────────────────────────────────────


class TestCaseLifecycle(_ControllerTest):
    def test_initiate_snapshots_type_settings(self):
        self.store.set_escalation_levels(SCHOOL, LEVELS[:2])
        case = self.controller.initiate(SCHOOL, EmergencyType.SCHOOL_CLOSURE, "Closed", now=T0)
        assert case.state == EmergencyState.INITIATED
        assert case.severity == EmergencySeverity.CRITICAL
        assert case.require_ack
        assert case.priority == 800
        assert case.max_escalation_level == 2
        assert case.channels[-1] == DeliveryChannel.VOICE

        self.store.set_escalation_levels(SCHOOL, LEVELS)
        assert self.controller.get(case.case_id).max_escalation_level == 2

    def test_initiate_requires_title(self):
        with pytest.raises(ValidationError):
            self.controller.initiate(SCHOOL, EmergencyType.SCHOOL_CLOSURE, "   ", now=T0)

    def test_unknown_case_not_found(self):
        with pytest.raises(NotFoundError):
            self.controller.get("missing")

    def test_broadcast_fans_out(self):
        case = self._open()
        assert case.state == EmergencyState.BROADCASTING
        assert case.total_recipients == 3
        items = self.queue.for_case(case.case_id)
        assert len(items) == 3
        assert all(i.priority == 800 for i in items)
        assert all(i.body.startswith("URGENT: Flooding on campus") for i in items)

    def test_broadcast_twice_rejected(self):
        case = self._open()
        with pytest.raises(InvalidStateError):
            self.controller.broadcast(case.case_id, now=T0)

    def test_broadcast_without_recipients_rejected(self):
        case = self.controller.initiate(SCHOOL, EmergencyType.SCHOOL_CLOSURE, "Closed", now=T0)
        with pytest.raises(ValidationError):
            self.controller.broadcast(case.case_id, now=T0)
        assert case.state == EmergencyState.INITIATED

    def test_dispatched_wave_awaits_acknowledgment(self):
        case = self._open()
        self.dispatcher.drain(T0)
        assert case.state == EmergencyState.AWAITING_ACK
        assert case.awaiting_since == T0
        assert case.delivered_count == 3

    def test_case_without_ack_resolves_after_broadcast(self):
        case = self._open(emergency_type=EmergencyType.WEATHER_DISRUPTION)
        assert not case.require_ack
        assert case.max_escalation_level == 0
        self.dispatcher.drain(T0)
        assert case.state == EmergencyState.RESOLVED
        assert case.closed_at == T0

    def test_resolve_is_idempotent(self):
        case = self._open()
        self.dispatcher.drain(T0)
        self.controller.resolve(case.case_id, "admin-1", note="all clear", now=_minutes(2))
        history = len(case.history)
        self.controller.resolve(case.case_id, "admin-1", now=_minutes(3))
        self.controller.cancel(case.case_id, "late", "admin-1", now=_minutes(3))
        assert case.state == EmergencyState.RESOLVED
        assert case.resolution_note == "all clear"
        assert len(case.history) == history

    def test_cancel_requires_reason(self):
        case = self._open()
        with pytest.raises(ValidationError):
            self.controller.cancel(case.case_id, "  ", "admin-1", now=T0)

    def test_version_conflict(self):
        case = self._open()
        self.dispatcher.drain(T0)
        with pytest.raises(ConcurrencyConflict):
            self.controller.resolve(case.case_id, "admin-1", expected_version=case.version - 1, now=T0)
        self.controller.resolve(case.case_id, "admin-1", expected_version=case.version, now=T0)
        assert case.state == EmergencyState.RESOLVED

    def test_history_follows_allowed_edges(self):
        case = self._open()
        self.dispatcher.drain(T0)
        self.controller.check_escalations(_minutes(5))
        self.dispatcher.drain(_minutes(5))
        self.controller.cancel(case.case_id, "drill", "admin-1", now=_minutes(6))
        assert case.history[0].from_state is None
        for transition in case.history[1:]:
            assert transition.to_state in CASE_TRANSITIONS[transition.from_state]
        assert [t.to_state for t in case.history] == [
            EmergencyState.INITIATED,
            EmergencyState.BROADCASTING,
            EmergencyState.AWAITING_ACK,
            EmergencyState.ESCALATING,
            EmergencyState.AWAITING_ACK,
            EmergencyState.CANCELLED,
        ]


# ── Escalation Tests ─────────────────────────────────────────────────


class TestEscalation(_ControllerTest):
    def test_full_escalation_then_resolution(self):
        case = self._open(count=50)
        self.dispatcher.drain(T0)
        assert case.state == EmergencyState.AWAITING_ACK

        assert self.controller.check_escalations(_minutes(4)) == []
        assert self.controller.check_escalations(_minutes(5)) == [case]
        assert case.state == EmergencyState.ESCALATING
        assert case.current_escalation_level == 1

        resends = [i for i in self.queue.for_case(case.case_id) if i.escalation_level == 1]
        assert len(resends) == 50
        assert all(i.current_channel == DeliveryChannel.SMS for i in resends)
        assert all(i.priority == 850 for i in resends)

        self.dispatcher.drain(_minutes(5))
        assert case.state == EmergencyState.AWAITING_ACK

        for i in range(1, 51):
            self.controller.acknowledge(case.case_id, "g%d" % i, DeliveryChannel.SMS, now=_minutes(7))
        assert case.state == EmergencyState.RESOLVED
        assert case.ack_count == 50
        assert case.pending_acks == 0
        assert len(self.audit.query(action=audit.CASE_ESCALATED)) == 1

    def test_highest_level_stays_awaiting(self):
        case = self._open(levels=(EscalationLevel(1, 60_000, (EscalationAction.RESEND,), 3),))
        self.dispatcher.drain(T0)
        self.controller.check_escalations(_minutes(1))
        self.dispatcher.drain(_minutes(1))
        assert case.state == EmergencyState.AWAITING_ACK

        assert self.controller.check_escalations(_minutes(60)) == []
        assert case.state == EmergencyState.AWAITING_ACK
        assert case.current_escalation_level == 1
        with pytest.raises(InvalidStateError):
            self.controller.manual_escalate(case.case_id, "admin-1", now=_minutes(61))

    def test_escalation_pulls_waiting_item_forward(self):
        self._add(_recipient("g1", channels=(DeliveryChannel.CHAT, DeliveryChannel.SMS)))
        self.gateway.fail(DeliveryChannel.CHAT)
        case = self._open()
        self.dispatcher.drain(T0)
        (item,) = self.queue.for_case(case.case_id)
        assert item.status == NotificationStatus.FAILED
        assert case.state == EmergencyState.AWAITING_ACK

        self.controller.check_escalations(_minutes(5))
        assert len(self.queue.for_case(case.case_id)) == 1
        assert item.current_channel == DeliveryChannel.SMS
        assert item.priority == 850
        assert item.status == NotificationStatus.QUEUED

        self.dispatcher.drain(_minutes(5))
        assert item.status == NotificationStatus.DELIVERED
        assert case.state == EmergencyState.AWAITING_ACK

    def test_secondary_contact_and_admin_notice(self):
        self._add(
            _recipient("g1", secondary_contact_id="g1-alt"),
            _recipient("g1-alt"),
        )
        case = self._open(
            levels=(
                EscalationLevel(
                    1,
                    60_000,
                    (EscalationAction.NOTIFY_NEXT_CONTACT, EscalationAction.NOTIFY_ADMIN),
                    3,
                ),
            )
        )
        assert case.recipient_ids == ["g1"]
        self.dispatcher.drain(T0)
        self.controller.check_escalations(_minutes(1))

        extra = [i for i in self.queue.for_case(case.case_id) if i.on_behalf_of == "g1"]
        assert len(extra) == 1
        assert extra[0].recipient_id == "g1-alt"
        assert len(self.audit.query(action=audit.ADMIN_NOTIFIED)) == 1

        self.controller.acknowledge(case.case_id, "g1-alt", now=_minutes(2))
        assert self.acks.is_acknowledged(case.case_id, "g1")
        assert case.state == EmergencyState.RESOLVED

    def test_per_recipient_cap(self):
        case = self._open(
            count=1,
            levels=(
                EscalationLevel(1, 60_000, (EscalationAction.RESEND,), 1),
                EscalationLevel(2, 60_000, (EscalationAction.RESEND,), 1),
            ),
        )
        self.dispatcher.drain(T0)
        self.controller.check_escalations(_minutes(1))
        self.dispatcher.drain(_minutes(1))
        self.controller.check_escalations(_minutes(2))
        assert case.current_escalation_level == 2
        assert case.escalation_resends["g1"] == 1
        assert len(self.queue.for_case(case.case_id)) == 2
        assert case.state == EmergencyState.AWAITING_ACK

    def test_manual_escalate(self):
        case = self._open()
        with pytest.raises(InvalidStateError):
            self.controller.manual_escalate(case.case_id, "admin-1", now=T0)
        self.dispatcher.drain(T0)
        with pytest.raises(ConcurrencyConflict):
            self.controller.manual_escalate(
                case.case_id, "admin-1", expected_version=case.version + 1, now=T0
            )
        self.controller.manual_escalate(case.case_id, "admin-1", now=_minutes(1))
        assert case.state == EmergencyState.ESCALATING
        assert case.current_escalation_level == 1
        overrides = self.audit.query(action=audit.MANUAL_OVERRIDE, resource_id=case.case_id)
        assert overrides[-1].details["action"] == "escalate"

    def test_no_levels_configured(self):
        case = self._open(levels=())
        self.dispatcher.drain(T0)
        assert self.controller.check_escalations(_minutes(120)) == []
        with pytest.raises(InvalidStateError):
            self.controller.manual_escalate(case.case_id, "admin-1", now=_minutes(120))

    def test_case_stats(self):
        case = self._open()
        self.dispatcher.drain(T0)
        self.controller.acknowledge(case.case_id, "g1", now=_minutes(1))
        stats = self.controller.case_stats(case.case_id)
        assert stats["total"] == 3
        assert stats["delivered"] == 3
        assert stats["acknowledged"] == 1
        assert stats["ack_rate"] == pytest.approx(0.3333)


# ── Cancellation Tests ───────────────────────────────────────────────


class TestCancellation(_ControllerTest):
    def test_cancel_while_in_flight(self):
        case = self._open()
        lease = self.queue.lease("w1", T0)
        leased = self.queue.get(lease.notification_id)

        self.controller.cancel(case.case_id, "duplicate alert", "admin-1", now=T0)
        assert case.state == EmergencyState.CANCELLED
        assert case.cancel_reason == "duplicate alert"
        assert all(
            i.status == NotificationStatus.CANCELLED for i in self.queue.for_case(case.case_id)
        )

        self.queue.complete(lease, DeliveryResult.ok(lease.channel), T0)
        assert leased.status == NotificationStatus.CANCELLED
        assert leased.attempts == 1
        assert case.state == EmergencyState.CANCELLED

        with pytest.raises(InvalidStateError):
            self.controller.forced_resend(case.case_id, leased.recipient_id, now=_minutes(1))
        with pytest.raises(InvalidStateError):
            self.queue.manual_resend(leased.notification_id, _minutes(1))

    def test_cancel_withdraws_retries(self):
        self.gateway.fail(DeliveryChannel.CHAT, times=3)
        case = self._open()
        self.dispatcher.drain(T0)
        failed = [
            i for i in self.queue.for_case(case.case_id) if i.status == NotificationStatus.FAILED
        ]
        assert failed
        self.controller.cancel(case.case_id, "drill", "admin-1", now=_minutes(1))
        assert all(i.status == NotificationStatus.CANCELLED for i in failed)


# ── Forced Resend Tests ──────────────────────────────────────────────


class TestForcedResend(_ControllerTest):
    def test_rejected_before_broadcast(self):
        self._add(_recipient("g1"))
        case = self.controller.initiate(SCHOOL, EmergencyType.SCHOOL_CLOSURE, "Closed", now=T0)
        with pytest.raises(InvalidStateError):
            self.controller.forced_resend(case.case_id, "g1", now=T0)

    def test_unknown_recipient(self):
        case = self._open()
        with pytest.raises(NotFoundError):
            self.controller.forced_resend(case.case_id, "nobody", now=T0)

    def test_resend_on_alternative_channel(self):
        case = self._open()
        self.dispatcher.drain(T0)
        item = self.controller.forced_resend(
            case.case_id, "g1", use_alternative_channel=True, actor="admin-1", now=_minutes(1)
        )
        assert item.current_channel == DeliveryChannel.SMS
        assert item.forced_resends == 1
        assert item.status == NotificationStatus.QUEUED

    def test_failed_rule_resends_once(self):
        self.store.set_forced_resend_rules(
            SCHOOL,
            EmergencySeverity.CRITICAL,
            [ForcedResendRule(ResendCondition.FAILED, 30_000, 2, True)],
        )
        self._add(_recipient("g1", channels=(DeliveryChannel.CHAT,)))
        self.gateway.script(DeliveryChannel.CHAT, DeliveryResult.unavailable(DeliveryChannel.CHAT))
        case = self._open()
        self.dispatcher.drain(T0)
        (item,) = self.queue.for_case(case.case_id)
        assert item.status == NotificationStatus.NO_CHANNEL
        assert case.failed_count == 1

        assert self.controller.apply_forced_resend_rules(T0 + timedelta(seconds=10)) == 0
        assert self.controller.apply_forced_resend_rules(T0 + timedelta(seconds=30)) == 1
        assert self.controller.apply_forced_resend_rules(T0 + timedelta(seconds=31)) == 0
        assert case.forced_resends[("g1", "failed")] == 1
        assert len(self.queue.for_case(case.case_id)) == 2

    def test_school_rules_without_alternative_stop_fallback(self):
        self.store.set_forced_resend_rules(
            SCHOOL,
            EmergencySeverity.CRITICAL,
            [ForcedResendRule(ResendCondition.FAILED, 30_000, 10, False)],
        )
        self._add(_recipient("g1"))
        self.gateway.fail(DeliveryChannel.CHAT, reason=FailureReason.INVALID_NUMBER)
        case = self._open(emergency_type=EmergencyType.SAFETY_INCIDENT)
        (item,) = self.queue.for_case(case.case_id)
        assert item.fallback_allowed is False

        self.dispatcher.drain(T0)
        assert item.status == NotificationStatus.NO_CHANNEL
        assert [r.channel for r in self.gateway.get_delivery_log("g1")] == [DeliveryChannel.CHAT]

    def test_default_rules_fall_back(self):
        self._add(_recipient("g1"))
        self.gateway.fail(DeliveryChannel.CHAT, reason=FailureReason.INVALID_NUMBER)
        case = self._open(emergency_type=EmergencyType.SAFETY_INCIDENT)
        self.dispatcher.drain(T0)
        (item,) = self.queue.for_case(case.case_id)
        assert item.status == NotificationStatus.DELIVERED
        assert [r.channel for r in self.gateway.get_delivery_log("g1")] == [
            DeliveryChannel.CHAT,
            DeliveryChannel.SMS,
        ]


class TestRotateChannels:
    def test_starts_after_last_used(self):
        channels = [DeliveryChannel.CHAT, DeliveryChannel.SMS, DeliveryChannel.EMAIL]
        assert rotate_channels(channels, DeliveryChannel.SMS, EmergencySeverity.HIGH) == [
            DeliveryChannel.EMAIL,
            DeliveryChannel.CHAT,
            DeliveryChannel.SMS,
        ]

    def test_voice_kept_last_for_critical(self):
        channels = [DeliveryChannel.CHAT, DeliveryChannel.SMS, DeliveryChannel.VOICE]
        assert rotate_channels(channels, DeliveryChannel.CHAT, EmergencySeverity.CRITICAL) == [
            DeliveryChannel.SMS,
            DeliveryChannel.CHAT,
            DeliveryChannel.VOICE,
        ]

    def test_voice_dropped_below_critical(self):
        channels = [DeliveryChannel.CHAT, DeliveryChannel.VOICE]
        assert rotate_channels(channels, None, EmergencySeverity.HIGH) == [DeliveryChannel.CHAT]
