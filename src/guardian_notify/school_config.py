"""School-scoped configuration store.

Administrators edit category flags, rule channel order, the escalation
ladder, the forced resend table and the local timezone per school.
Readers take an immutable SchoolSettings snapshot once per call and never
see a half-applied edit.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import tzinfo
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.guardian_notify.config import (
    DEFAULT_ESCALATION_LEVELS,
    DeliveryChannel,
    EmergencySeverity,
    EscalationLevel,
    FORCED_RESEND_RULES,
    ForcedResendRule,
    NotificationCategory,
)
from src.guardian_notify.exceptions import ValidationError
from src.guardian_notify.models import NotificationRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchoolSettings:
    """Merged, read-only configuration for one school."""

    school_id: str
    rules: Tuple[NotificationRule, ...] = ()
    category_flags: Dict[NotificationCategory, bool] = field(default_factory=dict)
    rule_channels: Dict[str, Tuple[DeliveryChannel, ...]] = field(default_factory=dict)
    templates: Dict[str, str] = field(default_factory=dict)
    escalation_levels: Tuple[EscalationLevel, ...] = DEFAULT_ESCALATION_LEVELS
    forced_resend_rules: Dict[EmergencySeverity, Tuple[ForcedResendRule, ...]] = field(
        default_factory=lambda: dict(FORCED_RESEND_RULES)
    )
    timezone: str = "UTC"

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)

    def is_enabled(self, rule: NotificationRule) -> bool:
        """Emergency notices are always on; everything else defaults to the rule flag."""
        if rule.is_emergency:
            return True
        return self.category_flags.get(rule.category, rule.enabled_by_default)

    def channels_for(self, rule: NotificationRule) -> List[DeliveryChannel]:
        override = self.rule_channels.get(rule.rule_id)
        if override:
            return list(override)
        return rule.channel_sequence()

    def level_config(self, level: int) -> Optional[EscalationLevel]:
        for cfg in self.escalation_levels:
            if cfg.level == level:
                return cfg
        return None

    @property
    def max_escalation_level(self) -> int:
        return max((lvl.level for lvl in self.escalation_levels), default=0)


def validate_escalation_levels(levels: Iterable[EscalationLevel]) -> Tuple[EscalationLevel, ...]:
    ordered = tuple(sorted(levels, key=lambda lvl: lvl.level))
    expected = 1
    for lvl in ordered:
        if lvl.level != expected:
            raise ValidationError("Escalation levels must be numbered 1..n", field="level")
        if lvl.trigger_after_ms <= 0:
            raise ValidationError("trigger_after_ms must be positive", field="trigger_after_ms")
        if lvl.max_attempts_per_recipient < 1:
            raise ValidationError(
                "max_attempts_per_recipient must be at least 1",
                field="max_attempts_per_recipient",
            )
        if not lvl.actions:
            raise ValidationError("Escalation level needs at least one action", field="actions")
        expected += 1
    return ordered


class SchoolConfigStore:
    """Thread-safe holder of global rules plus per-school overrides."""

    def __init__(
        self,
        rules: Optional[Iterable[NotificationRule]] = None,
        templates: Optional[Dict[str, str]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._global_rules: List[NotificationRule] = list(rules or [])
        self._templates: Dict[str, str] = dict(templates or {})
        self._school_rules: Dict[str, List[NotificationRule]] = {}
        self._category_flags: Dict[str, Dict[NotificationCategory, bool]] = {}
        self._rule_channels: Dict[str, Dict[str, Tuple[DeliveryChannel, ...]]] = {}
        self._escalation_levels: Dict[str, Tuple[EscalationLevel, ...]] = {}
        self._forced_resend: Dict[str, Dict[EmergencySeverity, Tuple[ForcedResendRule, ...]]] = {}
        self._timezones: Dict[str, str] = {}

    def snapshot(self, school_id: str) -> SchoolSettings:
        with self._lock:
            rules = tuple(self._global_rules) + tuple(self._school_rules.get(school_id, []))
            return SchoolSettings(
                school_id=school_id,
                rules=rules,
                category_flags=dict(self._category_flags.get(school_id, {})),
                rule_channels=dict(self._rule_channels.get(school_id, {})),
                templates=dict(self._templates),
                escalation_levels=self._escalation_levels.get(school_id, DEFAULT_ESCALATION_LEVELS),
                forced_resend_rules=dict(self._forced_resend.get(school_id, FORCED_RESEND_RULES)),
                timezone=self._timezones.get(school_id, "UTC"),
            )

    def add_rule(self, rule: NotificationRule, school_id: Optional[str] = None) -> None:
        school_id = school_id or rule.school_id
        with self._lock:
            if school_id is None:
                self._global_rules.append(rule)
            else:
                self._school_rules.setdefault(school_id, []).append(replace(rule, school_id=school_id))
        logger.info("Added rule %s (%s)", rule.rule_id, school_id or "global")

    def set_template(self, template_id: str, body: str) -> None:
        with self._lock:
            self._templates[template_id] = body

    def set_timezone(self, school_id: str, name: str) -> None:
        """Set the IANA timezone that delay windows are evaluated in."""
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError("Unknown timezone: %s" % name, field="timezone")
        with self._lock:
            self._timezones[school_id] = name
        logger.info("School %s: timezone %s", school_id, name)

    def set_category_enabled(self, school_id: str, category: NotificationCategory, enabled: bool) -> None:
        if category == NotificationCategory.EMERGENCY_NOTICE and not enabled:
            raise ValidationError("Emergency notices cannot be disabled", field="category")
        with self._lock:
            self._category_flags.setdefault(school_id, {})[category] = enabled
        logger.info("School %s: %s enabled=%s", school_id, category.value, enabled)

    def set_rule_channels(self, school_id: str, rule_id: str, channels: List[DeliveryChannel]) -> None:
        if not channels:
            raise ValidationError("Channel list cannot be empty", field="channels")
        if len(set(channels)) != len(channels):
            raise ValidationError("Channel list has duplicates", field="channels")
        with self._lock:
            self._rule_channels.setdefault(school_id, {})[rule_id] = tuple(channels)

    def set_escalation_levels(self, school_id: str, levels: Iterable[EscalationLevel]) -> None:
        ordered = validate_escalation_levels(levels)
        with self._lock:
            self._escalation_levels[school_id] = ordered
        logger.info("School %s: %d escalation levels", school_id, len(ordered))

    def set_forced_resend_rules(
        self,
        school_id: str,
        severity: EmergencySeverity,
        rules: Iterable[ForcedResendRule],
    ) -> None:
        rules = tuple(rules)
        for rule in rules:
            if rule.after_ms <= 0 or rule.max_resends < 0:
                raise ValidationError("Invalid forced resend rule", field="forced_resend_rules")
        with self._lock:
            table = dict(self._forced_resend.get(school_id, FORCED_RESEND_RULES))
            table[severity] = rules
            self._forced_resend[school_id] = table
