"""
test_deduplicator.py — Fingerprints and duplicate suppression.

Run with:
    pytest tests/test_deduplicator.py -v
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import redis

from backend.app.delivery.deduplicator import (
    Deduplicator,
    InMemoryFingerprintStore,
    RedisFingerprintStore,
    fingerprint,
)
from backend.app.delivery.models import Channel, NotificationRequest, Recipient

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _make_request(user_id: str = "u1", template: str = "order_shipped", **variables) -> NotificationRequest:
    return NotificationRequest(
        recipient=Recipient(user_id, email=f"{user_id}@example.com"),
        channel=Channel.EMAIL,
        template_name=template,
        variables=variables or {"order_id": "A-1", "name": "Asha"},
        dedup_keys=("order_id",),
    )


class TestFingerprint:

    def test_stable_across_key_order(self):
        assert fingerprint("u1", "t", {"a": 1, "b": 2}) == fingerprint("u1", "t", {"b": 2, "a": 1})

    def test_components_change_hash(self):
        base = fingerprint("u1", "t", {"a": 1})
        assert fingerprint("u2", "t", {"a": 1}) != base
        assert fingerprint("u1", "other", {"a": 1}) != base
        assert fingerprint("u1", "t", {"a": 2}) != base
        assert fingerprint("u1", "t", {"a": 1}, time_bucket=7) != base

    def test_sha256_hex(self):
        assert len(fingerprint("u1", "t", {})) == 64


class TestDeduplicator:

    def test_first_submission_passes(self):
        result = Deduplicator().check(_make_request(), "ntf_1", T0)
        assert not result.is_duplicate
        assert result.original_id is None

    def test_repeat_inside_window_is_duplicate(self):
        dedup = Deduplicator(window_seconds=3600)
        dedup.check(_make_request(), "ntf_1", T0)
        result = dedup.check(_make_request(), "ntf_2", T0 + timedelta(minutes=30))
        assert result.is_duplicate
        assert result.original_id == "ntf_1"

    def test_non_key_variables_ignored(self):
        dedup = Deduplicator()
        dedup.check(_make_request(order_id="A-1", name="Asha"), "ntf_1", T0)
        assert dedup.check(_make_request(order_id="A-1", name="Ravi"), "ntf_2", T0).is_duplicate
        assert not dedup.check(_make_request(order_id="A-2", name="Asha"), "ntf_3", T0).is_duplicate

    def test_window_expiry(self):
        dedup = Deduplicator(window_seconds=60)
        dedup.check(_make_request(), "ntf_1", T0)
        assert not dedup.check(_make_request(), "ntf_2", T0 + timedelta(seconds=61)).is_duplicate

    def test_release_frees_fingerprint(self):
        dedup = Deduplicator()
        first = dedup.check(_make_request(), "ntf_1", T0)
        dedup.release(first.fingerprint, "ntf_1")
        assert not dedup.check(_make_request(), "ntf_2", T0).is_duplicate

    def test_release_by_non_owner_is_ignored(self):
        store = InMemoryFingerprintStore()
        store.set_if_absent("fp", "ntf_1", 60, now=0.0)
        store.release("fp", "ntf_2")
        assert store.set_if_absent("fp", "ntf_3", 60, now=1.0) == "ntf_1"

    def test_time_buckets(self):
        dedup = Deduplicator(window_seconds=7200, bucket_seconds=3600)
        dedup.check(_make_request(), "ntf_1", T0)
        assert not dedup.check(_make_request(), "ntf_2", T0 + timedelta(hours=1)).is_duplicate

    def test_concurrent_identical_submissions(self):
        dedup = Deduplicator()
        results = []
        barrier = threading.Barrier(10)

        def submit(i):
            barrier.wait()
            results.append(dedup.check(_make_request(), f"ntf_{i}", T0))

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(1 for r in results if not r.is_duplicate) == 1


class TestRedisFingerprintStore:

    def _make_store(self):
        client = MagicMock()
        client.register_script.return_value = MagicMock()
        return client, RedisFingerprintStore(client)

    def test_set_nx(self):
        client, store = self._make_store()
        client.set.return_value = True
        assert store.set_if_absent("fp", "ntf_1", 60, now=0.0) is None
        client.set.assert_called_once_with("dedup:fp", "ntf_1", nx=True, ex=60)

    def test_existing_owner_returned(self):
        client, store = self._make_store()
        client.set.return_value = None
        client.get.return_value = "ntf_1"
        assert store.set_if_absent("fp", "ntf_2", 60, now=0.0) == "ntf_1"

    def test_outage_treated_as_new(self):
        client, store = self._make_store()
        client.set.side_effect = redis.ConnectionError("down")
        assert store.set_if_absent("fp", "ntf_1", 60, now=0.0) is None

    def test_expiry_between_set_and_get_claims_again(self):
        client, store = self._make_store()
        client.set.side_effect = [None, True]
        client.get.return_value = None
        assert store.set_if_absent("fp", "ntf_2", 60, now=0.0) is None
        assert client.set.call_count == 2
        client.set.assert_called_with("dedup:fp", "ntf_2", nx=True, ex=60)
