"""Tests for notification routing configuration and settings."""

import pytest

from src.guardian_notify.config import (
    CASE_TRANSITIONS,
    DEFAULT_ESCALATION_LEVELS,
    EMERGENCY_TYPE_CONFIGS,
    DeliveryChannel,
    EmergencySeverity,
    EmergencyState,
    EmergencyType,
    EscalationAction,
    EscalationLevel,
    ForcedResendRule,
    NotificationCategory,
    ResendCondition,
    channels_for_severity,
    clamp_priority,
    fallback_allowed,
)
from src.guardian_notify.exceptions import ValidationError
from src.guardian_notify.rules import DEFAULT_RULES, DEFAULT_TEMPLATES
from src.guardian_notify.school_config import SchoolConfigStore, validate_escalation_levels
from src.settings import Settings


# ── Enum & Table Tests ───────────────────────────────────────────────


class TestConfigTables:
    def test_categories(self):
        assert len(NotificationCategory) == 5
        assert NotificationCategory.EMERGENCY_NOTICE.value == "emergency_notice"

    def test_terminal_states_have_no_exits(self):
        assert CASE_TRANSITIONS[EmergencyState.RESOLVED] == frozenset()
        assert CASE_TRANSITIONS[EmergencyState.CANCELLED] == frozenset()

    def test_escalating_returns_to_awaiting(self):
        assert EmergencyState.AWAITING_ACK in CASE_TRANSITIONS[EmergencyState.ESCALATING]
        assert EmergencyState.BROADCASTING not in CASE_TRANSITIONS[EmergencyState.AWAITING_ACK]

    def test_default_levels_numbered(self):
        assert [lvl.level for lvl in DEFAULT_ESCALATION_LEVELS] == [1, 2, 3]
        assert EscalationAction.NOTIFY_ADMIN in DEFAULT_ESCALATION_LEVELS[1].actions

    def test_emergency_type_defaults(self):
        closure = EMERGENCY_TYPE_CONFIGS[EmergencyType.SCHOOL_CLOSURE]
        assert closure.default_severity == EmergencySeverity.CRITICAL
        assert closure.require_acknowledgment is True
        weather = EMERGENCY_TYPE_CONFIGS[EmergencyType.WEATHER_DISRUPTION]
        assert weather.require_acknowledgment is False

    def test_clamp_priority(self):
        assert clamp_priority(-5) == 0
        assert clamp_priority(5000) == 1000
        assert clamp_priority(850) == 850


class TestChannelPolicy:
    def test_voice_dropped_below_critical(self):
        channels = [DeliveryChannel.VOICE, DeliveryChannel.CHAT, DeliveryChannel.SMS]
        assert channels_for_severity(channels, EmergencySeverity.HIGH) == [
            DeliveryChannel.CHAT,
            DeliveryChannel.SMS,
        ]

    def test_voice_last_for_critical(self):
        channels = [DeliveryChannel.VOICE, DeliveryChannel.CHAT]
        assert channels_for_severity(channels, EmergencySeverity.CRITICAL) == [
            DeliveryChannel.CHAT,
            DeliveryChannel.VOICE,
        ]

    def test_routine_traffic_always_falls_back(self):
        assert fallback_allowed(None) is True

    def test_emergency_fallback_follows_failed_rule(self):
        rules = {
            EmergencySeverity.HIGH: (ForcedResendRule(ResendCondition.FAILED, 1000, 1, False),),
        }
        assert fallback_allowed(EmergencySeverity.HIGH, rules) is False
        assert fallback_allowed(EmergencySeverity.CRITICAL) is True


# ── School Config Tests ──────────────────────────────────────────────


class TestSchoolConfigStore:
    def setup_method(self):
        self.store = SchoolConfigStore(DEFAULT_RULES, DEFAULT_TEMPLATES)

    def _rule(self, rule_id):
        return next(r for r in DEFAULT_RULES if r.rule_id == rule_id)

    def test_defaults(self):
        settings = self.store.snapshot("sch-1")
        assert settings.is_enabled(self._rule("general_announcement"))
        assert not settings.is_enabled(self._rule("student_marked_absent"))
        assert settings.max_escalation_level == 3

    def test_emergency_always_enabled(self):
        settings = self.store.snapshot("sch-1")
        assert settings.is_enabled(self._rule("emergency_notice"))

    def test_emergency_cannot_be_disabled(self):
        with pytest.raises(ValidationError):
            self.store.set_category_enabled("sch-1", NotificationCategory.EMERGENCY_NOTICE, False)

    def test_flags_are_per_school(self):
        self.store.set_category_enabled("sch-1", NotificationCategory.ATTENDANCE_NOTICE, True)
        rule = self._rule("student_marked_absent")
        assert self.store.snapshot("sch-1").is_enabled(rule)
        assert not self.store.snapshot("sch-2").is_enabled(rule)

    def test_snapshot_is_isolated_from_later_edits(self):
        before = self.store.snapshot("sch-1")
        self.store.set_category_enabled("sch-1", NotificationCategory.ATTENDANCE_NOTICE, True)
        assert not before.is_enabled(self._rule("student_marked_absent"))

    def test_rule_channel_override(self):
        self.store.set_rule_channels("sch-1", "parent_insight_approved", [DeliveryChannel.EMAIL])
        settings = self.store.snapshot("sch-1")
        assert settings.channels_for(self._rule("parent_insight_approved")) == [DeliveryChannel.EMAIL]

    def test_rule_channels_rejects_empty_and_duplicates(self):
        with pytest.raises(ValidationError):
            self.store.set_rule_channels("sch-1", "parent_insight_approved", [])
        with pytest.raises(ValidationError):
            self.store.set_rule_channels(
                "sch-1", "parent_insight_approved", [DeliveryChannel.SMS, DeliveryChannel.SMS]
            )

    def test_escalation_levels_validated(self):
        with pytest.raises(ValidationError):
            validate_escalation_levels([EscalationLevel(level=2, trigger_after_ms=1000)])
        with pytest.raises(ValidationError):
            validate_escalation_levels([EscalationLevel(level=1, trigger_after_ms=0)])
        with pytest.raises(ValidationError):
            validate_escalation_levels([EscalationLevel(level=1, trigger_after_ms=1000, actions=())])

    def test_set_escalation_levels_sorted(self):
        self.store.set_escalation_levels(
            "sch-1",
            [EscalationLevel(level=2, trigger_after_ms=2000), EscalationLevel(level=1, trigger_after_ms=1000)],
        )
        settings = self.store.snapshot("sch-1")
        assert [lvl.level for lvl in settings.escalation_levels] == [1, 2]
        assert settings.level_config(3) is None

    def test_forced_resend_override(self):
        rule = ForcedResendRule(ResendCondition.FAILED, 5000, 1, False)
        self.store.set_forced_resend_rules("sch-1", EmergencySeverity.HIGH, [rule])
        table = self.store.snapshot("sch-1").forced_resend_rules
        assert table[EmergencySeverity.HIGH] == (rule,)
        assert len(table[EmergencySeverity.CRITICAL]) == 3


# ── Settings Tests ───────────────────────────────────────────────────


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("GNOTIFY_WORKER_COUNT", raising=False)
        settings = Settings(_env_file=None)
        assert settings.worker_count == 2
        assert settings.escalation_poll_interval == 30.0
        assert settings.attempts_per_channel == 1

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("GNOTIFY_WORKER_COUNT", "7")
        monkeypatch.setenv("GNOTIFY_LOG_FORMAT", "json")
        settings = Settings(_env_file=None)
        assert settings.worker_count == 7
        assert settings.log_format == "json"
