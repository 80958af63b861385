"""
queue.py — Durable work queue with leases.

A worker claims one eligible item at a time:

    eligible  = next_attempt_at ≤ now  AND  (no lease OR lease expired)
    order     = priority DESC, next_attempt_at ASC

Claiming stamps a fresh ``lease_token``. Every later operation on the item
(complete, reschedule, extend_lease) must present that token; a stale token
means the lease expired and another worker reclaimed the item, so the
operation returns False and changes nothing.

Implementations:
    InMemoryQueue   — this module (lock-serialised)
    SqlQueue        — backend.app.delivery.sql (conditional UPDATE … RETURNING)
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Optional

from backend.app.delivery.models import Channel, QueueItem

logger = logging.getLogger(__name__)


def new_lease_token() -> str:
    return uuid.uuid4().hex


class NotificationQueue(ABC):
    """Contract shared by the queue backends."""

    @abstractmethod
    def enqueue(self, item: QueueItem) -> QueueItem:
        ...

    @abstractmethod
    def claim(self, worker_id: str, now: datetime, lease_seconds: float) -> Optional[QueueItem]:
        """Atomically lease the best eligible item, or return None."""

    @abstractmethod
    def complete(self, item_id: str, lease_token: str) -> bool:
        ...

    @abstractmethod
    def reschedule(self, item_id: str, lease_token: str, next_attempt_at: datetime) -> bool:
        ...

    @abstractmethod
    def extend_lease(self, item_id: str, lease_token: str, until: datetime) -> bool:
        ...

    @abstractmethod
    def remove(self, notification_id: str) -> bool:
        ...

    @abstractmethod
    def depth(self, channel: Optional[Channel] = None) -> int:
        ...

    @abstractmethod
    def get(self, notification_id: str) -> Optional[QueueItem]:
        ...

    @abstractmethod
    def next_due_at(self) -> Optional[datetime]:
        """Earliest ``next_attempt_at`` among items, leased or not."""


class InMemoryQueue(NotificationQueue):
    """Single-process queue. Claims are serialised by one lock."""

    def __init__(self):
        self._items: Dict[str, QueueItem] = {}
        self._by_notification: Dict[str, str] = {}
        self._lock = threading.Lock()

    def enqueue(self, item: QueueItem) -> QueueItem:
        with self._lock:
            previous = self._by_notification.get(item.notification_id)
            if previous is not None:
                self._items.pop(previous, None)
            self._items[item.id] = replace(item)
            self._by_notification[item.notification_id] = item.id
        logger.debug(
            "Enqueued %s (priority=%d, due=%s)",
            item.notification_id, item.priority, item.next_attempt_at.isoformat(),
        )
        return replace(item)

    def claim(self, worker_id: str, now: datetime, lease_seconds: float) -> Optional[QueueItem]:
        with self._lock:
            eligible = [item for item in self._items.values() if item.is_eligible(now)]
            if not eligible:
                return None
            best = min(eligible, key=lambda i: (-i.priority, i.next_attempt_at, i.created_at))
            best.lease_owner = worker_id
            best.lease_expires_at = now + timedelta(seconds=lease_seconds)
            best.lease_token = new_lease_token()
            return replace(best)

    def _held(self, item_id: str, lease_token: str) -> Optional[QueueItem]:
        item = self._items.get(item_id)
        if item is None or item.lease_token != lease_token:
            return None
        return item

    def complete(self, item_id: str, lease_token: str) -> bool:
        with self._lock:
            item = self._held(item_id, lease_token)
            if item is None:
                return False
            del self._items[item_id]
            if self._by_notification.get(item.notification_id) == item_id:
                del self._by_notification[item.notification_id]
            return True

    def reschedule(self, item_id: str, lease_token: str, next_attempt_at: datetime) -> bool:
        with self._lock:
            item = self._held(item_id, lease_token)
            if item is None:
                return False
            item.next_attempt_at = next_attempt_at
            item.lease_owner = None
            item.lease_expires_at = None
            item.lease_token = None
            return True

    def extend_lease(self, item_id: str, lease_token: str, until: datetime) -> bool:
        with self._lock:
            item = self._held(item_id, lease_token)
            if item is None:
                return False
            item.lease_expires_at = until
            return True

    def remove(self, notification_id: str) -> bool:
        with self._lock:
            item_id = self._by_notification.pop(notification_id, None)
            if item_id is None:
                return False
            self._items.pop(item_id, None)
            return True

    def depth(self, channel: Optional[Channel] = None) -> int:
        with self._lock:
            if channel is None:
                return len(self._items)
            return sum(1 for item in self._items.values() if item.channel == channel)

    def get(self, notification_id: str) -> Optional[QueueItem]:
        with self._lock:
            item_id = self._by_notification.get(notification_id)
            return replace(self._items[item_id]) if item_id else None

    def next_due_at(self) -> Optional[datetime]:
        with self._lock:
            if not self._items:
                return None
            return min(item.next_attempt_at for item in self._items.values())
