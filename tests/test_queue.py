"""
test_queue.py — Leased work queue, in-memory and SQL backends.

Covers:
    • Eligibility (due time, live leases) and ordering (priority, due time)
    • Lease tokens: stale tokens change nothing
    • Expired leases are reclaimed with a fresh token
    • remove / depth / next_due_at
    • Concurrent claims never hand out the same item

Run with:
    pytest tests/test_queue.py -v
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.delivery.models import Channel, QueueItem
from backend.app.delivery.queue import InMemoryQueue

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _make_item(nid: str, priority: int = 5, due: datetime = T0, channel: Channel = Channel.EMAIL) -> QueueItem:
    return QueueItem(notification_id=nid, channel=channel, priority=priority, next_attempt_at=due, created_at=T0)


@pytest.fixture(params=["memory", "sql"])
def queue(request):
    if request.param == "memory":
        return InMemoryQueue()
    from backend.app.delivery.sql import SqlQueue
    return SqlQueue(request.getfixturevalue("session_factory"))


# ═══════════════════════════════════════════════════════════════════════════
# Claiming
# ═══════════════════════════════════════════════════════════════════════════

class TestClaim:

    def test_empty_queue(self, queue):
        assert queue.claim("w1", T0, 30) is None

    def test_claim_sets_lease(self, queue):
        queue.enqueue(_make_item("n1"))
        item = queue.claim("w1", T0, 30)
        assert item.notification_id == "n1"
        assert item.lease_owner == "w1"
        assert item.lease_token
        assert item.lease_expires_at == T0 + timedelta(seconds=30)

    def test_future_item_not_eligible(self, queue):
        queue.enqueue(_make_item("n1", due=T0 + timedelta(minutes=5)))
        assert queue.claim("w1", T0, 30) is None
        assert queue.claim("w1", T0 + timedelta(minutes=5), 30) is not None

    def test_priority_then_due_time(self, queue):
        queue.enqueue(_make_item("low", priority=1, due=T0 - timedelta(minutes=10)))
        queue.enqueue(_make_item("high-late", priority=9, due=T0))
        queue.enqueue(_make_item("high-early", priority=9, due=T0 - timedelta(minutes=1)))
        order = [queue.claim("w", T0, 30).notification_id for _ in range(3)]
        assert order == ["high-early", "high-late", "low"]

    def test_leased_item_not_claimed_twice(self, queue):
        queue.enqueue(_make_item("n1"))
        assert queue.claim("w1", T0, 30) is not None
        assert queue.claim("w2", T0 + timedelta(seconds=10), 30) is None

    def test_expired_lease_reclaimed_with_new_token(self, queue):
        queue.enqueue(_make_item("n1"))
        first = queue.claim("w1", T0, 30)
        second = queue.claim("w2", T0 + timedelta(seconds=31), 30)
        assert second.notification_id == "n1"
        assert second.lease_owner == "w2"
        assert second.lease_token != first.lease_token


# ═══════════════════════════════════════════════════════════════════════════
# Lease-guarded Operations
# ═══════════════════════════════════════════════════════════════════════════

class TestLeaseTokens:

    def test_complete_removes(self, queue):
        queue.enqueue(_make_item("n1"))
        item = queue.claim("w1", T0, 30)
        assert queue.complete(item.id, item.lease_token)
        assert queue.depth() == 0
        assert queue.get("n1") is None

    def test_stale_token_rejected(self, queue):
        queue.enqueue(_make_item("n1"))
        first = queue.claim("w1", T0, 30)
        second = queue.claim("w2", T0 + timedelta(seconds=31), 30)
        assert not queue.complete(first.id, first.lease_token)
        assert not queue.reschedule(first.id, first.lease_token, T0 + timedelta(hours=1))
        assert not queue.extend_lease(first.id, first.lease_token, T0 + timedelta(hours=1))
        assert queue.complete(second.id, second.lease_token)

    def test_reschedule_releases_lease(self, queue):
        queue.enqueue(_make_item("n1"))
        item = queue.claim("w1", T0, 30)
        later = T0 + timedelta(seconds=8)
        assert queue.reschedule(item.id, item.lease_token, later)
        assert queue.claim("w1", T0 + timedelta(seconds=5), 30) is None
        again = queue.claim("w1", later, 30)
        assert again is not None
        assert again.lease_token != item.lease_token

    def test_extend_lease(self, queue):
        queue.enqueue(_make_item("n1"))
        item = queue.claim("w1", T0, 30)
        assert queue.extend_lease(item.id, item.lease_token, T0 + timedelta(seconds=120))
        assert queue.claim("w2", T0 + timedelta(seconds=60), 30) is None


# ═══════════════════════════════════════════════════════════════════════════
# Bookkeeping
# ═══════════════════════════════════════════════════════════════════════════

class TestBookkeeping:

    def test_depth_by_channel(self, queue):
        queue.enqueue(_make_item("e1"))
        queue.enqueue(_make_item("s1", channel=Channel.SMS))
        queue.enqueue(_make_item("s2", channel=Channel.SMS))
        assert queue.depth() == 3
        assert queue.depth(Channel.SMS) == 2
        assert queue.depth(Channel.PUSH) == 0

    def test_one_item_per_notification(self, queue):
        queue.enqueue(_make_item("n1"))
        queue.enqueue(_make_item("n1", priority=9))
        assert queue.depth() == 1
        assert queue.get("n1").priority == 9

    def test_remove(self, queue):
        queue.enqueue(_make_item("n1"))
        assert queue.remove("n1")
        assert not queue.remove("n1")
        assert queue.depth() == 0

    def test_next_due_at(self, queue):
        assert queue.next_due_at() is None
        queue.enqueue(_make_item("n1", due=T0 + timedelta(minutes=3)))
        queue.enqueue(_make_item("n2", due=T0 + timedelta(minutes=1)))
        assert queue.next_due_at() == T0 + timedelta(minutes=1)


class TestConcurrentClaims:

    def test_each_item_claimed_once(self):
        queue = InMemoryQueue()
        for i in range(50):
            queue.enqueue(_make_item(f"n{i}"))

        claimed = []
        lock = threading.Lock()

        def worker(name):
            while True:
                item = queue.claim(name, T0, 30)
                if item is None:
                    return
                with lock:
                    claimed.append(item.notification_id)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(claimed) == sorted(f"n{i}" for i in range(50))
