"""
test_store.py — Notification record stores (in-memory and SQL).

Run with:
    pytest tests/test_store.py -v
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.core.errors import InvalidTransition, NotFoundError
from backend.app.delivery.models import Channel, NotificationRecord, NotificationStatus
from backend.app.delivery.store import InMemoryNotificationStore

_S = NotificationStatus


def _make_record(**overrides) -> NotificationRecord:
    kwargs = dict(
        recipient_id="u1",
        channel=Channel.EMAIL,
        template_name="welcome",
        to_address="asha@example.com",
        variables={"name": "Asha"},
        metadata={"campaign": "spring"},
    )
    kwargs.update(overrides)
    return NotificationRecord(**kwargs)


@pytest.fixture(params=["memory", "sql"])
def store(request, clock):
    if request.param == "memory":
        return InMemoryNotificationStore(clock=clock)
    from backend.app.delivery.sql import SqlNotificationStore
    return SqlNotificationStore(request.getfixturevalue("session_factory"), clock=clock)


class TestCreateAndGet:

    def test_round_trip(self, store, clock):
        record = _make_record(created_at=clock(), updated_at=clock())
        store.create(record)
        loaded = store.get(record.id)
        assert loaded.recipient_id == "u1"
        assert loaded.channel == Channel.EMAIL
        assert loaded.variables == {"name": "Asha"}
        assert loaded.metadata == {"campaign": "spring"}
        assert loaded.created_at == clock()
        assert loaded.status_history == [_S.QUEUED]

    def test_missing(self, store):
        assert store.get("ntf_missing") is None
        with pytest.raises(NotFoundError):
            store.require("ntf_missing")

    def test_returned_record_is_detached(self, store):
        record = _make_record()
        store.create(record)
        loaded = store.get(record.id)
        loaded.variables["name"] = "changed"
        assert store.get(record.id).variables == {"name": "Asha"}


class TestTransition:

    def test_valid_path_stamps_and_history(self, store, clock):
        record = _make_record()
        store.create(record)
        store.transition(record.id, _S.SCHEDULED)
        store.transition(record.id, _S.IN_FLIGHT)
        clock.advance(5)
        sent = store.transition(record.id, _S.SENT, provider="p", provider_message_id="m-1", attempt_count=1)
        assert sent.status == _S.SENT
        assert sent.sent_at == clock()
        assert sent.provider == "p"
        assert sent.status_history == [_S.QUEUED, _S.SCHEDULED, _S.IN_FLIGHT, _S.SENT]
        assert store.get(record.id).status_history == sent.status_history

    def test_forbidden_edge(self, store):
        record = _make_record()
        store.create(record)
        with pytest.raises(InvalidTransition):
            store.transition(record.id, _S.SENT)
        assert store.get(record.id).status == _S.QUEUED

    def test_expected_status_guard(self, store):
        record = _make_record()
        store.create(record)
        store.transition(record.id, _S.SCHEDULED)
        with pytest.raises(InvalidTransition):
            store.transition(record.id, _S.FAILED, expected=[_S.IN_FLIGHT])

    def test_terminal_never_moves(self, store):
        record = _make_record()
        store.create(record)
        store.transition(record.id, _S.SUPPRESSED, error_kind="duplicate")
        for target in _S:
            with pytest.raises(InvalidTransition):
                store.transition(record.id, target)

    def test_unknown_field_rejected(self, store):
        record = _make_record()
        store.create(record)
        with pytest.raises(AttributeError):
            store.transition(record.id, _S.SCHEDULED, recipient_id="someone-else")

    def test_missing_record(self, store):
        with pytest.raises(NotFoundError):
            store.transition("ntf_missing", _S.SCHEDULED)


class TestQueries:

    def test_update_and_provider_lookup(self, store):
        record = _make_record()
        store.create(record)
        store.update(record.id, provider_message_id="prov-42")
        assert store.find_by_provider_message_id("prov-42").id == record.id
        assert store.find_by_provider_message_id("prov-43") is None

    def test_status_counts(self, store):
        for channel in (Channel.EMAIL, Channel.EMAIL, Channel.SMS):
            store.create(_make_record(channel=channel))
        failed = _make_record(channel=Channel.SMS)
        store.create(failed)
        store.transition(failed.id, _S.FAILED)
        assert store.status_counts() == {
            "email": {"queued": 2},
            "sms": {"queued": 1, "failed": 1},
        }

    def test_counts_since(self, store, clock):
        old = _make_record(created_at=clock())
        store.create(old)
        clock.advance(3 * 86400)
        store.create(_make_record(created_at=clock(), channel=Channel.SMS))
        assert store.status_counts(since=clock() - timedelta(days=1)) == {"sms": {"queued": 1}}
        assert store.engagement_counts(since=clock() - timedelta(days=1)) == {
            "sms": {"delivered": 0, "opened": 0, "clicked": 0},
        }

    def test_engagement_counts(self, store, clock):
        records = [_make_record(created_at=clock()) for _ in range(3)]
        for record in records:
            store.create(record)
            for status in (_S.SCHEDULED, _S.IN_FLIGHT, _S.SENT, _S.DELIVERED):
                store.transition(record.id, status)
        store.update(records[0].id, opened_at=clock(), clicked_at=clock())
        store.update(records[1].id, opened_at=clock())
        store.create(_make_record(created_at=clock()))
        assert store.engagement_counts() == {"email": {"delivered": 3, "opened": 2, "clicked": 1}}
