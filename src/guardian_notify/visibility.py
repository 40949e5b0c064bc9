"""Visibility gate.

A single pure function decides what a caller may see and do with a
notification. The capability matrix is data, passed in by the caller, so
schools can ship their own without touching call sites. Unknown roles get
nothing.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, List, Optional, Union

from src.guardian_notify.config import NotificationCategory, NotificationStatus, Role
from src.guardian_notify.exceptions import PermissionDenied
from src.guardian_notify.models import (
    DENY_ALL,
    NotificationContext,
    PermissionSet,
    QueuedNotification,
    RoleContext,
)

logger = logging.getLogger(__name__)

ACTION_PERMISSIONS = ("can_cancel", "can_resend", "can_modify")


@dataclass(frozen=True)
class VisibilityMatrix:
    """Role capabilities, narrowed per category and per status."""

    roles: Dict[Role, PermissionSet] = field(default_factory=dict)
    category_restrictions: Dict[NotificationCategory, Dict[Role, FrozenSet[str]]] = field(
        default_factory=dict
    )
    status_actions: Dict[NotificationStatus, FrozenSet[str]] = field(default_factory=dict)
    guardian_statuses: FrozenSet[NotificationStatus] = frozenset(
        {NotificationStatus.SENT, NotificationStatus.DELIVERED}
    )


_ADMIN = PermissionSet(
    can_view=True,
    can_view_details=True,
    can_cancel=True,
    can_resend=True,
    can_modify=True,
    can_initiate=True,
    can_view_recipient_info=True,
    can_view_delivery_logs=True,
    can_export=True,
    can_configure=True,
    can_acknowledge=True,
)

DEFAULT_VISIBILITY_MATRIX = VisibilityMatrix(
    roles={
        Role.GUARDIAN: PermissionSet(can_view=True, can_view_details=True, can_acknowledge=True),
        Role.TEACHER: PermissionSet(
            can_view=True,
            can_view_details=True,
            can_initiate=True,
            can_view_recipient_info=True,
        ),
        Role.SCHOOL_ADMIN: _ADMIN,
        Role.PLATFORM_ADMIN: _ADMIN,
    },
    category_restrictions={
        NotificationCategory.EMERGENCY_NOTICE: {
            Role.TEACHER: frozenset({"can_initiate", "can_cancel", "can_resend", "can_modify"}),
            Role.SCHOOL_ADMIN: frozenset({"can_modify"}),
        },
        NotificationCategory.SCHOOL_ANNOUNCEMENT: {
            Role.TEACHER: frozenset({"can_initiate"}),
        },
        NotificationCategory.FEE_STATUS: {
            Role.TEACHER: frozenset({"can_view", "can_view_details", "can_initiate"}),
        },
    },
    status_actions={
        NotificationStatus.DRAFT: frozenset({"can_cancel", "can_modify"}),
        NotificationStatus.PENDING: frozenset({"can_cancel", "can_modify"}),
        NotificationStatus.QUEUED: frozenset({"can_cancel"}),
        NotificationStatus.FAILED: frozenset({"can_resend"}),
        NotificationStatus.NO_CHANNEL: frozenset({"can_resend"}),
    },
)

_TEACHER_LABELS = {
    NotificationStatus.DRAFT: "Draft",
    NotificationStatus.PENDING: "Pending Review",
    NotificationStatus.QUEUED: "Sending Soon",
    NotificationStatus.SENT: "Sent",
    NotificationStatus.DELIVERED: "Delivered",
    NotificationStatus.FAILED: "Delivery Issue",
    NotificationStatus.NO_CHANNEL: "No Contact Available",
    NotificationStatus.CANCELLED: "Cancelled",
}

_ADMIN_LABELS = {
    NotificationStatus.DRAFT: "Draft",
    NotificationStatus.PENDING: "Pending Approval",
    NotificationStatus.QUEUED: "In Queue",
    NotificationStatus.SENT: "Sent - Awaiting Delivery",
    NotificationStatus.DELIVERED: "Delivered",
    NotificationStatus.FAILED: "Failed - Retry Available",
    NotificationStatus.NO_CHANNEL: "No Channel - Contact Update Needed",
    NotificationStatus.CANCELLED: "Cancelled",
}

_GUARDIAN_LABELS = {
    NotificationStatus.SENT: "Received",
    NotificationStatus.DELIVERED: "Received",
}


def resolve_role(role: Union[Role, str, None]) -> Optional[Role]:
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


def evaluate_permissions(
    actor: RoleContext,
    context: NotificationContext,
    matrix: VisibilityMatrix = DEFAULT_VISIBILITY_MATRIX,
) -> PermissionSet:
    """Compute the caller's permissions on one notification context.

    Deterministic: the same inputs always give the same answer.
    """
    role = resolve_role(actor.role)
    if role is None or role not in matrix.roles:
        return DENY_ALL

    if role != Role.PLATFORM_ADMIN and context.school_id != actor.school_id:
        return DENY_ALL

    if role == Role.TEACHER and context.class_id is not None and context.class_id not in actor.class_ids:
        return DENY_ALL

    if role == Role.GUARDIAN:
        own = context.recipient_id == actor.user_id or (
            context.student_id is not None and context.student_id in actor.student_ids
        )
        if not own:
            return DENY_ALL
        if context.status is not None and context.status not in matrix.guardian_statuses:
            return DENY_ALL

    perms = matrix.roles[role]
    denied = matrix.category_restrictions.get(context.category, {}).get(role, frozenset())
    if denied:
        perms = replace(perms, **{name: False for name in denied})

    if context.status is not None:
        allowed = matrix.status_actions.get(context.status, frozenset())
        perms = replace(
            perms,
            **{name: getattr(perms, name) and name in allowed for name in ACTION_PERMISSIONS},
        )

    if not perms.can_view:
        perms = replace(
            perms,
            can_view_details=False,
            can_view_recipient_info=False,
            can_view_delivery_logs=False,
            can_export=False,
            can_acknowledge=False,
        )
    return perms


def require(
    actor: RoleContext,
    context: NotificationContext,
    permission: str,
    matrix: VisibilityMatrix = DEFAULT_VISIBILITY_MATRIX,
) -> PermissionSet:
    """Return the permission set or raise PermissionDenied."""
    perms = evaluate_permissions(actor, context, matrix)
    if not getattr(perms, permission, False):
        logger.info(
            "Denied %s to %s (%s) on %s",
            permission,
            actor.user_id,
            getattr(actor.role, "value", actor.role),
            context.category.value,
        )
        raise PermissionDenied("Not allowed: %s" % permission, action=permission)
    return perms


def status_label(status: NotificationStatus, role: Union[Role, str]) -> str:
    resolved = resolve_role(role)
    if resolved == Role.TEACHER:
        return _TEACHER_LABELS[status]
    if resolved == Role.GUARDIAN:
        return _GUARDIAN_LABELS.get(status, "")
    return _ADMIN_LABELS[status]


def available_actions(perms: PermissionSet) -> List[str]:
    actions = []
    if perms.can_view_details:
        actions.append("view")
    if perms.can_cancel:
        actions.append("cancel")
    if perms.can_resend:
        actions.append("resend")
    if perms.can_modify:
        actions.append("edit")
    if perms.can_export:
        actions.append("export")
    return actions


def project_notification(
    item: QueuedNotification,
    actor: RoleContext,
    matrix: VisibilityMatrix = DEFAULT_VISIBILITY_MATRIX,
) -> Optional[dict]:
    """Role-specific view of a notification, or None when it is not visible.

    Attempt counts, channels and internal error text only appear for roles
    allowed to read delivery logs.
    """
    perms = evaluate_permissions(actor, NotificationContext.for_notification(item), matrix)
    if not perms.can_view:
        return None
    view = {
        "notification_id": item.notification_id,
        "category": item.category.value,
        "status": item.status.value,
        "status_label": status_label(item.status, actor.role),
        "scheduled_for": item.scheduled_for.isoformat(),
        "actions": available_actions(perms),
    }
    if perms.can_view_details:
        view["body"] = item.body
    if perms.can_view_recipient_info:
        view["recipient_id"] = item.recipient_id
        view["student_id"] = item.student_id
    if perms.can_view_delivery_logs:
        view["attempts"] = item.attempts
        view["max_attempts"] = item.max_attempts
        view["channel"] = item.current_channel.value if item.current_channel else None
        view["last_error"] = item.last_error
        view["attempt_log"] = [a.to_dict() for a in item.attempt_log]
    if resolve_role(actor.role) == Role.GUARDIAN:
        view.pop("status")
    return view
