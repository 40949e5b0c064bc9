"""Pytest configuration and shared fixtures."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.guardian_notify.config import DeliveryChannel, Role  # noqa: E402
from src.guardian_notify.directory import InMemoryDirectory  # noqa: E402
from src.guardian_notify.gateway import SimulatedGateway  # noqa: E402
from src.guardian_notify.models import Recipient, RoleContext  # noqa: E402
from src.guardian_notify.offline import OfflineBuffer  # noqa: E402
from src.guardian_notify.service import NotificationService  # noqa: E402

SCHOOL = "sch-1"

# Monday morning, inside school hours.
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

ALL_CHANNELS = {
    DeliveryChannel.CHAT: "chat",
    DeliveryChannel.SMS: "sms",
    DeliveryChannel.EMAIL: "email",
    DeliveryChannel.VOICE: "voice",
}


def make_recipient(guardian_id, student_id=None, class_id="c1", channels=None, **kwargs):
    channels = channels if channels is not None else list(ALL_CHANNELS)
    return Recipient(
        guardian_id=guardian_id,
        student_id=student_id,
        class_id=class_id,
        contacts={c: "%s:%s" % (ALL_CHANNELS[c], guardian_id) for c in channels},
        **kwargs,
    )


@pytest.fixture
def now():
    return T0


@pytest.fixture
def gateway():
    return SimulatedGateway()


@pytest.fixture
def directory():
    d = InMemoryDirectory()
    d.add(SCHOOL, make_recipient("g1", "s1", "c1"))
    d.add(SCHOOL, make_recipient("g2", "s2", "c1"))
    d.add(SCHOOL, make_recipient("g3", "s3", "c2"))
    return d


@pytest.fixture
def service(gateway, directory):
    svc = NotificationService(
        gateway,
        directory=directory,
        offline_buffer=OfflineBuffer("sqlite://"),
    )
    yield svc
    svc.dispatcher.close()


@pytest.fixture
def admin():
    return RoleContext(user_id="admin-1", role=Role.SCHOOL_ADMIN, school_id=SCHOOL)


@pytest.fixture
def teacher():
    return RoleContext(
        user_id="teacher-1",
        role=Role.TEACHER,
        school_id=SCHOOL,
        class_ids=frozenset({"c1"}),
    )


@pytest.fixture
def guardian():
    return RoleContext(
        user_id="g1",
        role=Role.GUARDIAN,
        school_id=SCHOOL,
        student_ids=frozenset({"s1"}),
    )
