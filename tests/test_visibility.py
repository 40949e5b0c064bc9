"""Tests for the visibility gate."""

from datetime import datetime, timezone

import pytest

from src.guardian_notify.config import (
    AttemptOutcome,
    DeliveryChannel,
    FailureReason,
    NotificationCategory,
    NotificationStatus,
    Role,
)
from src.guardian_notify.exceptions import PermissionDenied
from src.guardian_notify.models import (
    DENY_ALL,
    DeliveryAttempt,
    NotificationContext,
    PermissionSet,
    QueuedNotification,
    RoleContext,
)
from src.guardian_notify.visibility import (
    DEFAULT_VISIBILITY_MATRIX,
    VisibilityMatrix,
    available_actions,
    evaluate_permissions,
    project_notification,
    require,
    resolve_role,
    status_label,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

ADMIN = RoleContext(user_id="admin-1", role=Role.SCHOOL_ADMIN, school_id="sch-1")
PLATFORM = RoleContext(user_id="ops-1", role=Role.PLATFORM_ADMIN)
TEACHER = RoleContext(
    user_id="teacher-1", role=Role.TEACHER, school_id="sch-1", class_ids=frozenset({"c1"})
)
GUARDIAN = RoleContext(
    user_id="g1", role=Role.GUARDIAN, school_id="sch-1", student_ids=frozenset({"s1"})
)


def _ctx(category=NotificationCategory.LEARNING_UPDATE, status=NotificationStatus.QUEUED, **kwargs):
    kwargs.setdefault("school_id", "sch-1")
    kwargs.setdefault("class_id", "c1")
    kwargs.setdefault("student_id", "s1")
    kwargs.setdefault("recipient_id", "g1")
    return NotificationContext(category=category, status=status, **kwargs)


def _item(status=NotificationStatus.FAILED):
    item = QueuedNotification(
        recipient_id="g1",
        school_id="sch-1",
        category=NotificationCategory.LEARNING_UPDATE,
        channels=[DeliveryChannel.CHAT, DeliveryChannel.SMS],
        body="Homework posted",
        student_id="s1",
        class_id="c1",
        scheduled_for=T0,
        created_at=T0,
    )
    item.status = status
    item.attempts = 1
    item.last_error = "provider 503"
    item.attempt_log.append(
        DeliveryAttempt(
            item.notification_id,
            DeliveryChannel.CHAT,
            1,
            AttemptOutcome.FAILURE,
            T0,
            FailureReason.PROVIDER_ERROR,
            "provider 503",
        )
    )
    return item


# ── Permission Tests ─────────────────────────────────────────────────


class TestEvaluatePermissions:
    def test_deterministic(self):
        first = evaluate_permissions(TEACHER, _ctx())
        second = evaluate_permissions(TEACHER, _ctx())
        assert first == second

    def test_admin_actions_follow_status(self):
        queued = evaluate_permissions(ADMIN, _ctx(status=NotificationStatus.QUEUED))
        assert queued.can_cancel and not queued.can_resend

        failed = evaluate_permissions(ADMIN, _ctx(status=NotificationStatus.FAILED))
        assert failed.can_resend and not failed.can_cancel

        delivered = evaluate_permissions(ADMIN, _ctx(status=NotificationStatus.DELIVERED))
        assert available_actions(delivered) == ["view", "export"]

    def test_teacher_never_acts_on_emergencies(self):
        for status in NotificationStatus:
            perms = evaluate_permissions(
                TEACHER, _ctx(category=NotificationCategory.EMERGENCY_NOTICE, status=status)
            )
            assert not perms.can_cancel
            assert not perms.can_resend
            assert not perms.can_modify
            assert not perms.can_initiate

    def test_teacher_cannot_see_fees(self):
        perms = evaluate_permissions(TEACHER, _ctx(category=NotificationCategory.FEE_STATUS))
        assert not perms.can_view
        assert not perms.can_view_recipient_info

    def test_teacher_limited_to_own_classes(self):
        assert evaluate_permissions(TEACHER, _ctx(class_id="c2")) == DENY_ALL
        assert evaluate_permissions(TEACHER, _ctx(class_id=None)).can_view

    def test_admin_cannot_modify_emergency(self):
        perms = evaluate_permissions(
            ADMIN, _ctx(category=NotificationCategory.EMERGENCY_NOTICE, status=None)
        )
        assert perms.can_initiate
        assert perms.can_cancel
        assert not perms.can_modify

    def test_other_school_denied(self):
        assert evaluate_permissions(ADMIN, _ctx(school_id="sch-2")) == DENY_ALL

    def test_platform_admin_crosses_schools(self):
        assert evaluate_permissions(PLATFORM, _ctx(school_id="sch-2")).can_view

    def test_unknown_role_denied(self):
        actor = RoleContext(user_id="x", role="janitor", school_id="sch-1")
        assert resolve_role("janitor") is None
        assert evaluate_permissions(actor, _ctx()) == DENY_ALL

    def test_role_string_resolved(self):
        actor = RoleContext(user_id="admin-1", role="school_admin", school_id="sch-1")
        assert evaluate_permissions(actor, _ctx()) == evaluate_permissions(ADMIN, _ctx())

    def test_guardian_sees_own_delivered(self):
        perms = evaluate_permissions(GUARDIAN, _ctx(status=NotificationStatus.DELIVERED))
        assert perms.can_view
        assert not perms.can_view_delivery_logs
        assert not perms.can_cancel

    def test_guardian_blind_to_pending_work(self):
        assert evaluate_permissions(GUARDIAN, _ctx(status=NotificationStatus.QUEUED)) == DENY_ALL
        assert evaluate_permissions(GUARDIAN, _ctx(status=NotificationStatus.FAILED)) == DENY_ALL

    def test_guardian_blind_to_other_children(self):
        ctx = _ctx(status=NotificationStatus.DELIVERED, student_id="s9", recipient_id="g9")
        assert evaluate_permissions(GUARDIAN, ctx) == DENY_ALL

    def test_custom_matrix(self):
        matrix = VisibilityMatrix(roles={Role.GUARDIAN: PermissionSet(can_view=True)})
        assert evaluate_permissions(ADMIN, _ctx(), matrix) == DENY_ALL

    def test_require_raises(self):
        with pytest.raises(PermissionDenied) as exc_info:
            require(TEACHER, _ctx(), "can_cancel")
        assert exc_info.value.action == "can_cancel"
        assert require(ADMIN, _ctx(), "can_cancel").can_cancel


# ── Label and Projection Tests ───────────────────────────────────────


class TestStatusLabels:
    def test_labels_per_role(self):
        assert status_label(NotificationStatus.FAILED, Role.TEACHER) == "Delivery Issue"
        assert status_label(NotificationStatus.FAILED, Role.SCHOOL_ADMIN) == "Failed - Retry Available"
        assert status_label(NotificationStatus.DELIVERED, Role.GUARDIAN) == "Received"
        assert status_label(NotificationStatus.QUEUED, "guardian") == ""


class TestProjection:
    def test_admin_sees_delivery_log(self):
        view = project_notification(_item(), ADMIN)
        assert view["attempts"] == 1
        assert view["last_error"] == "provider 503"
        assert view["attempt_log"][0]["reason"] == "provider_error"
        assert view["recipient_id"] == "g1"
        assert "resend" in view["actions"]

    def test_teacher_view_hides_internals(self):
        view = project_notification(_item(), TEACHER)
        assert view["status_label"] == "Delivery Issue"
        assert view["body"] == "Homework posted"
        assert "attempts" not in view
        assert "last_error" not in view
        assert "attempt_log" not in view

    def test_guardian_view(self):
        view = project_notification(_item(NotificationStatus.DELIVERED), GUARDIAN)
        assert view["status_label"] == "Received"
        assert "status" not in view
        assert "recipient_id" not in view
        assert view["actions"] == ["view"]

    def test_invisible_returns_none(self):
        assert project_notification(_item(NotificationStatus.FAILED), GUARDIAN) is None

    def test_default_matrix_covers_all_roles(self):
        assert set(DEFAULT_VISIBILITY_MATRIX.roles) == set(Role)
