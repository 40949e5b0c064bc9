"""Standalone runner for the guardian notification service.

Usage:
    python -m src.guardian_notify
    python -m src.guardian_notify --emergency school_closure --log-format json
    python -m src.guardian_notify --offline-db sqlite:///buffer.db --duration 60
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time

from src.guardian_notify.config import DeliveryChannel, EmergencyType, Role
from src.guardian_notify.directory import InMemoryDirectory
from src.guardian_notify.gateway import SimulatedGateway
from src.guardian_notify.models import Recipient, RoleContext, TriggerEvent
from src.guardian_notify.offline import OfflineBuffer
from src.guardian_notify.service import NotificationService
from src.logging_config import LogFormat, LoggingConfig, LogLevel, configure_logging
from src.settings import get_settings

logger = logging.getLogger("guardian_notify.runner")

_shutdown = False


def _handle_signal(signum, frame):
    global _shutdown
    logger.info("Received %s, shutting down", signal.Signals(signum).name)
    _shutdown = True


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m src.guardian_notify",
        description="Guardian notification service with a simulated gateway",
    )
    parser.add_argument(
        "--school", type=str, default="demo-school",
        help="School id for the demo roster (default: demo-school)",
    )
    parser.add_argument(
        "--guardians", type=int, default=5,
        help="Number of demo guardians to register (default: 5)",
    )
    parser.add_argument(
        "--emergency", type=str, default=None,
        choices=[t.value for t in EmergencyType],
        help="Open and broadcast an emergency case at startup",
    )
    parser.add_argument(
        "--offline-db", type=str, default=None,
        help="SQLAlchemy URL for the offline buffer (default: from settings)",
    )
    parser.add_argument(
        "--log-level", type=str, default=None,
        choices=[level.value for level in LogLevel],
        help="Logging level (default: from settings)",
    )
    parser.add_argument(
        "--log-format", type=str, default=None,
        choices=[fmt.value for fmt in LogFormat],
        help="Log output format (default: from settings)",
    )
    parser.add_argument(
        "--duration", type=float, default=0.0,
        help="Stop after this many seconds (default: run until interrupted)",
    )
    return parser.parse_args(argv)


def build_directory(school_id: str, count: int) -> InMemoryDirectory:
    directory = InMemoryDirectory()
    for i in range(count):
        directory.add(
            school_id,
            Recipient(
                guardian_id="guardian-%d" % i,
                student_id="student-%d" % i,
                class_id="class-%d" % (i % 2),
                contacts={
                    DeliveryChannel.CHAT: "chat:guardian-%d" % i,
                    DeliveryChannel.SMS: "+1555000%04d" % i,
                    DeliveryChannel.EMAIL: "guardian-%d@example.org" % i,
                },
            ),
        )
    return directory


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()

    configure_logging(
        LoggingConfig(
            level=LogLevel(args.log_level or settings.log_level.upper()),
            format=LogFormat(args.log_format or settings.log_format),
            service_name=settings.service_name,
        )
    )

    gateway = SimulatedGateway()
    directory = build_directory(args.school, args.guardians)
    service = NotificationService.from_settings(
        gateway,
        settings,
        directory=directory,
        offline_buffer=OfflineBuffer(args.offline_db or settings.offline_db_url),
    )
    admin = RoleContext(user_id="runner", role=Role.SCHOOL_ADMIN, school_id=args.school)

    logger.info("Guardian notification service: school=%s guardians=%d", args.school, args.guardians)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    service.start()
    try:
        report = service.sync_offline(admin)
        if report.synced:
            logger.info("Replayed %d offline entries", len(report.synced))

        service.handle_trigger(
            TriggerEvent(
                event_type="general_announcement",
                school_id=args.school,
                payload={"title": "Service started", "message": "Notifications are live."},
            )
        )
        for notification_id in service.approvals.pending:
            service.approve(admin, notification_id)
        if args.emergency:
            case = service.initiate_emergency(
                admin,
                EmergencyType(args.emergency),
                "Demo %s" % args.emergency.replace("_", " "),
                description="Started from the command line",
            )
            service.broadcast(admin, case.case_id)

        started = time.monotonic()
        while not _shutdown:
            if args.duration and time.monotonic() - started >= args.duration:
                break
            time.sleep(1)
    finally:
        service.stop()

    logger.info("Queue at shutdown: %s", service.queue.get_stats())
    return 0


if __name__ == "__main__":
    sys.exit(main())
