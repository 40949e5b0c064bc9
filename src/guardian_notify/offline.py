"""Offline reconciliation buffer.

Durable local log of notifications authored while disconnected, stored in
an embedded SQLite database through SQLAlchemy. On reconnect the entries
are replayed one at a time in creation order; synced entries are pruned.
An entry that fails keeps its row with the error recorded and is retried
on the next replay; it never blocks the entries behind it.

Tables:
- offline_entries: one row per locally authored action, keyed by a
  client-generated offline id
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, create_engine, func, select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from src.guardian_notify.config import DeliveryChannel, NotificationCategory
from src.guardian_notify.exceptions import ValidationError
from src.guardian_notify.models import QueuedNotification

logger = logging.getLogger(__name__)

Base = declarative_base()


class OfflineEntry(Base):
    """An action captured while the device was offline."""

    __tablename__ = "offline_entries"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    offline_id = Column(String(64), unique=True, nullable=False, index=True)
    author_id = Column(String(64), nullable=False)
    school_id = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False)
    sync_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    last_attempt_at = Column(DateTime)


@dataclass(frozen=True)
class OfflineRecord:
    seq: int
    offline_id: str
    author_id: str
    school_id: str
    payload: Dict[str, Any]
    created_at: datetime
    sync_attempts: int = 0
    last_error: Optional[str] = None


@dataclass
class ReplayReport:
    synced: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    remaining: int = 0

    @property
    def complete(self) -> bool:
        return not self.failed and self.remaining == 0


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_buffer_engine(url: str):
    """Engine for the local log. In-memory URLs share one connection across threads."""
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def notification_payload(
    recipient_id: str,
    category: NotificationCategory,
    channels: List[DeliveryChannel],
    body: str = "",
    student_id: Optional[str] = None,
    class_id: Optional[str] = None,
    priority: Optional[int] = None,
) -> Dict[str, Any]:
    payload = {
        "recipient_id": recipient_id,
        "category": category.value,
        "channels": [c.value for c in channels],
        "body": body,
        "student_id": student_id,
        "class_id": class_id,
    }
    if priority is not None:
        payload["priority"] = priority
    return payload


def notification_from_record(record: OfflineRecord) -> QueuedNotification:
    """Rebuild the queued notification an offline entry describes."""
    data = record.payload
    try:
        category = NotificationCategory(data["category"])
        channels = [DeliveryChannel(c) for c in data.get("channels", [])]
        recipient_id = data["recipient_id"]
    except (KeyError, ValueError) as exc:
        raise ValidationError("Malformed offline entry %s: %s" % (record.offline_id, exc))
    item = QueuedNotification(
        recipient_id=recipient_id,
        school_id=record.school_id,
        category=category,
        channels=channels,
        body=data.get("body", ""),
        student_id=data.get("student_id"),
        class_id=data.get("class_id"),
        offline_id=record.offline_id,
        created_by=record.author_id,
        created_at=record.created_at,
    )
    if data.get("priority") is not None:
        item.priority = int(data["priority"])
    return item


class OfflineBuffer:
    """Append-only local log with sequential, idempotent replay.

    Appends never wait on a replay in progress; replay takes its own lock
    and commits each entry separately.
    """

    def __init__(self, url: str = "sqlite:///guardian_notify_offline.db", engine=None) -> None:
        self.engine = engine or create_buffer_engine(url)
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._replay_lock = threading.Lock()

    @staticmethod
    def _to_record(row: OfflineEntry) -> OfflineRecord:
        return OfflineRecord(
            seq=row.seq,
            offline_id=row.offline_id,
            author_id=row.author_id,
            school_id=row.school_id,
            payload=dict(row.payload),
            created_at=_utc(row.created_at),
            sync_attempts=row.sync_attempts or 0,
            last_error=row.last_error,
        )

    def append(
        self,
        author_id: str,
        school_id: str,
        payload: Dict[str, Any],
        offline_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Store an action locally and return its offline id.

        Appending an offline id that is already in the log is a no-op.
        """
        offline_id = offline_id or uuid.uuid4().hex
        now = now or datetime.now(timezone.utc)
        with self._session_factory() as session:
            exists = session.execute(
                select(OfflineEntry.seq).where(OfflineEntry.offline_id == offline_id)
            ).first()
            if exists is not None:
                return offline_id
            session.add(
                OfflineEntry(
                    offline_id=offline_id,
                    author_id=author_id,
                    school_id=school_id,
                    payload=payload,
                    created_at=now.astimezone(timezone.utc).replace(tzinfo=None),
                )
            )
            session.commit()
        logger.debug("Buffered offline entry %s", offline_id)
        return offline_id

    def pending(self) -> List[OfflineRecord]:
        with self._session_factory() as session:
            rows = session.execute(select(OfflineEntry).order_by(OfflineEntry.seq)).scalars().all()
            return [self._to_record(r) for r in rows]

    def replay(
        self,
        apply: Callable[[OfflineRecord], Any],
        now: Optional[datetime] = None,
    ) -> ReplayReport:
        """Replay buffered entries in creation order.

        Each entry that applies cleanly is deleted. A failure is recorded on
        its row and the replay moves on, so one malformed entry cannot hold
        back the rest.
        """
        now = now or datetime.now(timezone.utc)
        report = ReplayReport()
        with self._replay_lock:
            for record in self.pending():
                try:
                    apply(record)
                except Exception as exc:
                    logger.exception("Offline entry %s failed to replay", record.offline_id)
                    self._mark_failed(record.seq, str(exc), now)
                    report.failed.append(record.offline_id)
                    report.errors[record.offline_id] = str(exc)
                    continue
                self._delete(record.seq)
                report.synced.append(record.offline_id)
        report.remaining = self.count()
        logger.info(
            "Offline replay: %d synced, %d failed, %d remaining",
            len(report.synced),
            len(report.failed),
            report.remaining,
        )
        return report

    def _delete(self, seq: int) -> None:
        with self._session_factory() as session:
            row = session.get(OfflineEntry, seq)
            if row is not None:
                session.delete(row)
                session.commit()

    def _mark_failed(self, seq: int, error: str, now: datetime) -> None:
        with self._session_factory() as session:
            row = session.get(OfflineEntry, seq)
            if row is None:
                return
            row.sync_attempts = (row.sync_attempts or 0) + 1
            row.last_error = error
            row.last_attempt_at = now.astimezone(timezone.utc).replace(tzinfo=None)
            session.commit()

    def count(self) -> int:
        with self._session_factory() as session:
            return session.execute(select(func.count(OfflineEntry.seq))).scalar_one()

    def get_stats(self) -> Dict[str, Any]:
        records = self.pending()
        failed = [r for r in records if r.sync_attempts > 0]
        return {
            "pending": len(records),
            "failed": len(failed),
            "last_error": failed[-1].last_error if failed else None,
            "oldest": records[0].created_at.isoformat() if records else None,
        }
