"""
sql.py — SQLAlchemy-backed record store and queue.

Tables:
    notifications        one row per NotificationRecord
    notification_queue   one row per pending QueueItem (unique per notification)

Claiming is a single conditional statement, so two workers can never lease
the same row:

    UPDATE notification_queue
       SET lease_owner = :worker, lease_expires_at = :until, lease_token = :token
     WHERE id = (SELECT id FROM notification_queue
                  WHERE next_attempt_at <= :now
                    AND (lease_expires_at IS NULL OR lease_expires_at <= :now)
                  ORDER BY priority DESC, next_attempt_at ASC
                  LIMIT 1
                  FOR UPDATE SKIP LOCKED)             -- PostgreSQL only
       AND (lease_expires_at IS NULL OR lease_expires_at <= :now)
    RETURNING *

Record transitions use optimistic concurrency: the UPDATE is guarded by the
status that was read, and a lost race re-reads and re-validates.

All datetimes are written as UTC; SQLite hands them back naive, so reads
re-attach UTC.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Integer,
    String,
    Text,
    case,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.orm import Mapped, mapped_column, sessionmaker

from backend.app.core.database import Base
from backend.app.core.errors import InvalidTransition, NotFoundError
from backend.app.delivery.models import (
    Category,
    Channel,
    NotificationRecord,
    NotificationStatus,
    QueueItem,
    utcnow,
)
from backend.app.delivery.queue import NotificationQueue, new_lease_token
from backend.app.delivery.store import NotificationStore, apply_changes, apply_transition

logger = logging.getLogger(__name__)

_TRANSITION_RETRIES = 3


def _to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# ORM Models
# ═══════════════════════════════════════════════════════════════════════════

class NotificationRow(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String(128), index=True)
    channel: Mapped[str] = mapped_column(String(16), index=True)
    category: Mapped[str] = mapped_column(String(32))
    template_name: Mapped[str] = mapped_column(String(128))
    to_address: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    variables: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    provider: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True, index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    duplicate_of: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    not_before: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    bounced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # "metadata" is reserved on declarative classes
    extra: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    status_history: Mapped[List[str]] = mapped_column(JSON, default=list)


class QueueRow(Base):
    __tablename__ = "notification_queue"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    notification_id: Mapped[str] = mapped_column(String(40), unique=True)
    channel: Mapped[str] = mapped_column(String(16), index=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    lease_owner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_token: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


# ═══════════════════════════════════════════════════════════════════════════
# Row ↔ Dataclass
# ═══════════════════════════════════════════════════════════════════════════

_RECORD_DATETIMES = (
    "created_at", "updated_at", "not_before", "sent_at", "delivered_at",
    "failed_at", "bounced_at", "opened_at", "clicked_at",
)

_RECORD_PLAIN = (
    "id", "recipient_id", "template_name", "to_address", "priority", "subject",
    "body", "provider", "provider_message_id", "attempt_count", "max_attempts",
    "error", "error_kind", "fingerprint", "duplicate_of",
)


def _row_to_record(row: NotificationRow) -> NotificationRecord:
    kwargs: Dict[str, Any] = {name: getattr(row, name) for name in _RECORD_PLAIN}
    kwargs.update({name: _to_utc(getattr(row, name)) for name in _RECORD_DATETIMES})
    return NotificationRecord(
        channel=Channel(row.channel),
        category=Category(row.category),
        status=NotificationStatus(row.status),
        variables=dict(row.variables or {}),
        metadata=dict(row.extra or {}),
        status_history=[NotificationStatus(s) for s in (row.status_history or [])],
        **kwargs,
    )


def _record_values(record: NotificationRecord) -> Dict[str, Any]:
    values: Dict[str, Any] = {name: getattr(record, name) for name in _RECORD_PLAIN}
    values.update({name: _to_utc(getattr(record, name)) for name in _RECORD_DATETIMES})
    values.update(
        channel=record.channel.value,
        category=record.category.value,
        status=record.status.value,
        variables=dict(record.variables),
        extra=dict(record.metadata),
        status_history=[s.value for s in record.status_history],
    )
    return values


def _row_to_item(row) -> QueueItem:
    return QueueItem(
        id=row.id,
        notification_id=row.notification_id,
        channel=Channel(row.channel),
        priority=row.priority,
        next_attempt_at=_to_utc(row.next_attempt_at),
        lease_owner=row.lease_owner,
        lease_expires_at=_to_utc(row.lease_expires_at),
        lease_token=row.lease_token,
        created_at=_to_utc(row.created_at),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Record Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlNotificationStore(NotificationStore):
    """NotificationStore over the ``notifications`` table."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def create(self, record: NotificationRecord) -> NotificationRecord:
        with self._session_factory.begin() as session:
            session.add(NotificationRow(**_record_values(record)))
        return record.snapshot()

    def get(self, notification_id: str) -> Optional[NotificationRecord]:
        with self._session_factory() as session:
            row = session.get(NotificationRow, notification_id)
            return _row_to_record(row) if row else None

    def _guarded_write(
        self,
        notification_id: str,
        mutate: Callable[[NotificationRecord], None],
    ) -> NotificationRecord:
        for _ in range(_TRANSITION_RETRIES):
            with self._session_factory.begin() as session:
                row = session.get(NotificationRow, notification_id)
                if row is None:
                    raise NotFoundError("Notification", notification_id=notification_id)
                record = _row_to_record(row)
                read_status = row.status
                read_updated = row.updated_at
                session.expunge(row)

                mutate(record)

                result = session.execute(
                    update(NotificationRow)
                    .where(
                        NotificationRow.id == notification_id,
                        NotificationRow.status == read_status,
                        NotificationRow.updated_at == read_updated,
                    )
                    .values(**_record_values(record))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return record
            logger.debug("Concurrent update on %s, retrying", notification_id)

        current = self.require(notification_id)
        raise InvalidTransition(notification_id, current.status.value, "concurrent update")

    def transition(
        self,
        notification_id: str,
        target: NotificationStatus,
        expected: Optional[Iterable[NotificationStatus]] = None,
        **changes,
    ) -> NotificationRecord:
        expected = list(expected) if expected is not None else None
        now = self._clock()
        return self._guarded_write(
            notification_id,
            lambda record: apply_transition(record, target, now, expected, changes),
        )

    def update(self, notification_id: str, **changes) -> NotificationRecord:
        now = self._clock()
        return self._guarded_write(
            notification_id,
            lambda record: apply_changes(record, changes, now),
        )

    def find_by_provider_message_id(self, provider_message_id: str) -> Optional[NotificationRecord]:
        with self._session_factory() as session:
            row = session.execute(
                select(NotificationRow).where(NotificationRow.provider_message_id == provider_message_id)
            ).scalars().first()
            return _row_to_record(row) if row else None

    def status_counts(self, since: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        stmt = select(NotificationRow.channel, NotificationRow.status, func.count())
        if since is not None:
            stmt = stmt.where(NotificationRow.created_at >= since)
        with self._session_factory() as session:
            rows = session.execute(
                stmt.group_by(NotificationRow.channel, NotificationRow.status)
            ).all()
        counts: Dict[str, Dict[str, int]] = {}
        for channel, status, count in rows:
            counts.setdefault(channel, {})[status] = count
        return counts

    def engagement_counts(self, since: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        delivered = func.sum(case((NotificationRow.status == NotificationStatus.DELIVERED.value, 1), else_=0))
        stmt = select(
            NotificationRow.channel,
            delivered,
            func.count(NotificationRow.opened_at),
            func.count(NotificationRow.clicked_at),
        )
        if since is not None:
            stmt = stmt.where(NotificationRow.created_at >= since)
        with self._session_factory() as session:
            rows = session.execute(stmt.group_by(NotificationRow.channel)).all()
        return {
            channel: {"delivered": int(d or 0), "opened": opened, "clicked": clicked}
            for channel, d, opened, clicked in rows
        }


# ═══════════════════════════════════════════════════════════════════════════
# Queue
# ═══════════════════════════════════════════════════════════════════════════

class SqlQueue(NotificationQueue):
    """NotificationQueue over the ``notification_queue`` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def _lease_free(now: datetime):
        return or_(QueueRow.lease_expires_at.is_(None), QueueRow.lease_expires_at <= now)

    def enqueue(self, item: QueueItem) -> QueueItem:
        with self._session_factory.begin() as session:
            session.execute(delete(QueueRow).where(QueueRow.notification_id == item.notification_id))
            session.add(QueueRow(
                id=item.id,
                notification_id=item.notification_id,
                channel=item.channel.value,
                priority=item.priority,
                next_attempt_at=_to_utc(item.next_attempt_at),
                lease_owner=item.lease_owner,
                lease_expires_at=_to_utc(item.lease_expires_at),
                lease_token=item.lease_token,
                created_at=_to_utc(item.created_at),
            ))
        return item

    def claim(self, worker_id: str, now: datetime, lease_seconds: float) -> Optional[QueueItem]:
        now = _to_utc(now)
        candidate = (
            select(QueueRow.id)
            .where(QueueRow.next_attempt_at <= now, self._lease_free(now))
            .order_by(QueueRow.priority.desc(), QueueRow.next_attempt_at.asc(), QueueRow.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(QueueRow)
            .where(QueueRow.id == candidate, self._lease_free(now))
            .values(
                lease_owner=worker_id,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                lease_token=new_lease_token(),
            )
            .returning(*QueueRow.__table__.columns)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory.begin() as session:
            row = session.execute(stmt).first()
        return _row_to_item(row) if row else None

    def _held(self, item_id: str, lease_token: str):
        return (QueueRow.id == item_id, QueueRow.lease_token == lease_token)

    def complete(self, item_id: str, lease_token: str) -> bool:
        with self._session_factory.begin() as session:
            result = session.execute(delete(QueueRow).where(*self._held(item_id, lease_token)))
        return result.rowcount == 1

    def reschedule(self, item_id: str, lease_token: str, next_attempt_at: datetime) -> bool:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(QueueRow)
                .where(*self._held(item_id, lease_token))
                .values(
                    next_attempt_at=_to_utc(next_attempt_at),
                    lease_owner=None,
                    lease_expires_at=None,
                    lease_token=None,
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def extend_lease(self, item_id: str, lease_token: str, until: datetime) -> bool:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(QueueRow)
                .where(*self._held(item_id, lease_token))
                .values(lease_expires_at=_to_utc(until))
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def remove(self, notification_id: str) -> bool:
        with self._session_factory.begin() as session:
            result = session.execute(delete(QueueRow).where(QueueRow.notification_id == notification_id))
        return result.rowcount > 0

    def depth(self, channel: Optional[Channel] = None) -> int:
        stmt = select(func.count()).select_from(QueueRow)
        if channel is not None:
            stmt = stmt.where(QueueRow.channel == channel.value)
        with self._session_factory() as session:
            return session.execute(stmt).scalar_one()

    def get(self, notification_id: str) -> Optional[QueueItem]:
        with self._session_factory() as session:
            row = session.execute(
                select(QueueRow).where(QueueRow.notification_id == notification_id)
            ).scalars().first()
            return _row_to_item(row) if row else None

    def next_due_at(self) -> Optional[datetime]:
        with self._session_factory() as session:
            return _to_utc(session.execute(select(func.min(QueueRow.next_attempt_at))).scalar())


def ping(session_factory: sessionmaker) -> None:
    """Round-trip to the database; raises on failure."""
    with session_factory() as session:
        session.execute(select(1))
