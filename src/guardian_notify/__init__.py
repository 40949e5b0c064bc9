"""Guardian notification routing core.

Rule evaluation, prioritized multi-channel delivery, emergency
acknowledgment and escalation, role-scoped visibility and offline
authoring for school-to-guardian notifications.
"""

from .config import (
    DeliveryChannel,
    EmergencySeverity,
    EmergencyState,
    EmergencyType,
    EscalationLevel,
    NotificationCategory,
    NotificationStatus,
    QueueConfig,
    Role,
)
from .models import (
    Acknowledgment,
    EmergencyCase,
    NotificationRule,
    PermissionSet,
    QueuedNotification,
    Recipient,
    RoleContext,
    RuleEvaluationResult,
    TriggerEvent,
)
from .rules import RuleEngine
from .queue import DeliveryQueue
from .acknowledgments import AcknowledgmentTracker
from .escalation import EscalationController
from .visibility import VisibilityMatrix, evaluate_permissions
from .offline import OfflineBuffer
from .gateway import DeliveryResult, SimulatedGateway
from .dispatcher import DeliveryDispatcher
from .scheduler import EscalationScheduler
from .service import NotificationService

__all__ = [
    # Config
    "DeliveryChannel",
    "EmergencySeverity",
    "EmergencyState",
    "EmergencyType",
    "EscalationLevel",
    "NotificationCategory",
    "NotificationStatus",
    "QueueConfig",
    "Role",
    # Models
    "Acknowledgment",
    "EmergencyCase",
    "NotificationRule",
    "PermissionSet",
    "QueuedNotification",
    "Recipient",
    "RoleContext",
    "RuleEvaluationResult",
    "TriggerEvent",
    # Components
    "RuleEngine",
    "DeliveryQueue",
    "AcknowledgmentTracker",
    "EscalationController",
    "VisibilityMatrix",
    "evaluate_permissions",
    "OfflineBuffer",
    "DeliveryResult",
    "SimulatedGateway",
    "DeliveryDispatcher",
    "EscalationScheduler",
    # Service
    "NotificationService",
]
