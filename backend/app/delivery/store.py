"""
store.py — Durable notification records.

All status changes go through ``transition`` so the state machine in
``models.ALLOWED_TRANSITIONS`` is enforced in one place:

    transition(id, target, expected=None, **changes)
        • raises InvalidTransition if the edge is not allowed, or if
          ``expected`` is given and the current status is not in it
        • stamps sent_at / delivered_at / bounced_at / failed_at
        • appends to status_history

Implementations:
    InMemoryNotificationStore — this module
    SqlNotificationStore      — backend.app.delivery.sql
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional

from backend.app.core.errors import InvalidTransition, NotFoundError
from backend.app.delivery.models import (
    NotificationRecord,
    NotificationStatus,
    can_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

_STATUS_TIMESTAMPS = {
    NotificationStatus.SENT:      "sent_at",
    NotificationStatus.DELIVERED: "delivered_at",
    NotificationStatus.BOUNCED:   "bounced_at",
    NotificationStatus.FAILED:    "failed_at",
}

# Fields a caller may change without a status transition
MUTABLE_FIELDS = frozenset({
    "subject", "body", "provider", "provider_message_id", "attempt_count",
    "error", "error_kind", "fingerprint", "duplicate_of", "not_before",
    "opened_at", "clicked_at", "metadata",
})


def apply_transition(
    record: NotificationRecord,
    target: NotificationStatus,
    now: datetime,
    expected: Optional[Iterable[NotificationStatus]] = None,
    changes: Optional[Dict] = None,
) -> None:
    """Validate and apply one status change to ``record`` in place."""
    current = record.status
    if expected is not None and current not in set(expected):
        raise InvalidTransition(record.id, current.value, target.value)
    if not can_transition(current, target):
        raise InvalidTransition(record.id, current.value, target.value)

    record.status = target
    record.status_history.append(target)
    record.updated_at = now
    stamp = _STATUS_TIMESTAMPS.get(target)
    if stamp:
        setattr(record, stamp, now)
    apply_changes(record, changes or {}, now)


def apply_changes(record: NotificationRecord, changes: Dict, now: datetime) -> None:
    for name, value in changes.items():
        if name not in MUTABLE_FIELDS:
            raise AttributeError(f"NotificationRecord.{name} cannot be updated")
        setattr(record, name, value)
    record.updated_at = now


class NotificationStore(ABC):
    """Contract shared by the record store backends."""

    @abstractmethod
    def create(self, record: NotificationRecord) -> NotificationRecord:
        ...

    @abstractmethod
    def get(self, notification_id: str) -> Optional[NotificationRecord]:
        ...

    @abstractmethod
    def transition(
        self,
        notification_id: str,
        target: NotificationStatus,
        expected: Optional[Iterable[NotificationStatus]] = None,
        **changes,
    ) -> NotificationRecord:
        ...

    @abstractmethod
    def update(self, notification_id: str, **changes) -> NotificationRecord:
        """Change non-status fields."""

    @abstractmethod
    def find_by_provider_message_id(self, provider_message_id: str) -> Optional[NotificationRecord]:
        ...

    @abstractmethod
    def status_counts(self, since: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        """{channel: {status: count}} over records created at or after ``since``."""

    @abstractmethod
    def engagement_counts(self, since: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        """{channel: {"delivered": n, "opened": n, "clicked": n}} over records created at or after ``since``."""

    def require(self, notification_id: str) -> NotificationRecord:
        record = self.get(notification_id)
        if record is None:
            raise NotFoundError("Notification", notification_id=notification_id)
        return record


class InMemoryNotificationStore(NotificationStore):

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._records: Dict[str, NotificationRecord] = {}
        self._by_provider_id: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def create(self, record: NotificationRecord) -> NotificationRecord:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Notification {record.id} already exists")
            self._records[record.id] = record.snapshot()
        return record.snapshot()

    def get(self, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            record = self._records.get(notification_id)
            return record.snapshot() if record else None

    def _locked(self, notification_id: str) -> NotificationRecord:
        record = self._records.get(notification_id)
        if record is None:
            raise NotFoundError("Notification", notification_id=notification_id)
        return record

    def transition(
        self,
        notification_id: str,
        target: NotificationStatus,
        expected: Optional[Iterable[NotificationStatus]] = None,
        **changes,
    ) -> NotificationRecord:
        with self._lock:
            record = self._locked(notification_id)
            apply_transition(record, target, self._clock(), expected, changes)
            if record.provider_message_id:
                self._by_provider_id[record.provider_message_id] = record.id
            return record.snapshot()

    def update(self, notification_id: str, **changes) -> NotificationRecord:
        with self._lock:
            record = self._locked(notification_id)
            apply_changes(record, changes, self._clock())
            if record.provider_message_id:
                self._by_provider_id[record.provider_message_id] = record.id
            return record.snapshot()

    def find_by_provider_message_id(self, provider_message_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            notification_id = self._by_provider_id.get(provider_message_id)
            if notification_id is None:
                return None
            return self._records[notification_id].snapshot()

    def status_counts(self, since: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        with self._lock:
            for record in self._records.values():
                if since is None or record.created_at >= since:
                    counts[record.channel.value][record.status.value] += 1
        return {channel: dict(statuses) for channel, statuses in counts.items()}

    def engagement_counts(self, since: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = {}
        with self._lock:
            for record in self._records.values():
                if since is not None and record.created_at < since:
                    continue
                row = counts.setdefault(record.channel.value, {"delivered": 0, "opened": 0, "clicked": 0})
                row["delivered"] += record.status == NotificationStatus.DELIVERED
                row["opened"] += record.opened_at is not None
                row["clicked"] += record.clicked_at is not None
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
