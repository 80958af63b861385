"""
test_dispatcher.py — Delivery loop: failover, retries, circuits, leases.

Covers:
    • Same-attempt failover to the next provider
    • No available provider at submit and at dispatch time
    • Exponential backoff, cap and jitter bounds
    • Exhausted retries after the attempts budget
    • Non-retryable errors (recipient- vs provider-specific)
    • 429s and local buckets never count against a circuit
    • Provider calls bounded by a real timeout
    • Busy call slots defer instead of failing the provider
    • Late completion after a lost lease is discarded
    • Worker pool drains the queue

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import logging
import random
import time
from datetime import timedelta

import pytest

from backend.app.core.errors import (
    ErrorKind,
    PermanentProviderError,
    RateLimitError,
    TransientProviderError,
)
from backend.app.delivery.dispatcher import compute_backoff
from backend.app.delivery.engine import NotificationEngine
from backend.app.delivery.models import Channel, CircuitState, NotificationStatus, Recipient
from backend.app.delivery.providers.simulated import SimulatedProvider
from backend.app.delivery.queue import InMemoryQueue
from backend.app.delivery.store import InMemoryNotificationStore

_S = NotificationStatus

ASHA = Recipient("u1", email="asha@example.com", phone="+919876543210")


def _register(registry, name: str, priority: int = 5, channel: Channel = Channel.EMAIL, **kwargs) -> SimulatedProvider:
    provider_kwargs = {k: kwargs.pop(k) for k in ("script", "default_error", "latency_seconds") if k in kwargs}
    provider = SimulatedProvider(name, channel, **provider_kwargs)
    registry.register(provider, priority=priority, **kwargs)
    return provider


def _submit(engine, template: str = "welcome", **kwargs) -> str:
    return engine.submit(ASHA, kwargs.pop("channel", Channel.EMAIL), template, {"name": "Asha", "code": "1"}, **kwargs)


def _trip(registry, name: str, channel: Channel = Channel.EMAIL) -> None:
    for _ in range(registry.breaker.failure_threshold):
        registry.report_outcome(name, channel, success=False)


# ═══════════════════════════════════════════════════════════════════════════
# Backoff
# ═══════════════════════════════════════════════════════════════════════════

class TestBackoff:

    def test_doubles_per_attempt(self):
        assert [compute_backoff(n, 1.0, 300.0, 0.0) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]

    def test_capped(self):
        assert compute_backoff(20, 1.0, 300.0, 0.0) == 300.0
        assert compute_backoff(20, 1.0, 300.0, 0.2, random.Random(1)) == 300.0

    def test_jitter_bounds(self):
        rng = random.Random(42)
        delays = [compute_backoff(3, 1.0, 300.0, 0.2, rng) for _ in range(200)]
        assert all(6.4 <= d <= 9.6 for d in delays)
        assert len(set(delays)) > 1


# ═══════════════════════════════════════════════════════════════════════════
# Happy Path & Failover
# ═══════════════════════════════════════════════════════════════════════════

class TestFailover:

    def test_single_provider_sends(self, engine, registry):
        provider = _register(registry, "primary")
        nid = _submit(engine)
        assert engine.run_until_idle() == 1

        record = engine.get_status(nid)
        assert record.status == _S.SENT
        assert record.provider == "primary"
        assert record.provider_message_id.startswith("sim-")
        assert record.attempt_count == 1
        assert record.status_history == [_S.QUEUED, _S.SCHEDULED, _S.IN_FLIGHT, _S.SENT]
        assert provider.calls[0].subject == "Welcome Asha"
        assert engine.get_queue_depth() == 0

    def test_failover_within_one_attempt(self, engine, registry):
        primary = _register(registry, "primary", priority=9, script=[TransientProviderError("primary", "503")])
        secondary = _register(registry, "secondary", priority=1)
        nid = _submit(engine)
        engine.run_until_idle()

        record = engine.get_status(nid)
        assert record.status == _S.SENT
        assert record.provider == "secondary"
        assert record.attempt_count == 1
        assert primary.call_count == 1
        assert secondary.call_count == 1
        assert registry.state("primary", Channel.EMAIL).consecutive_failures == 1

    def test_open_circuit_skipped(self, engine, registry):
        primary = _register(registry, "primary", priority=9)
        _register(registry, "secondary", priority=1)
        _trip(registry, "primary")
        nid = _submit(engine)
        engine.run_until_idle()
        assert engine.get_status(nid).provider == "secondary"
        assert primary.call_count == 0

    def test_half_open_trial_closes_circuit(self, engine, registry, clock):
        _register(registry, "primary")
        _trip(registry, "primary")
        clock.advance(61)
        nid = _submit(engine)
        engine.run_until_idle()
        assert engine.get_status(nid).status == _S.SENT
        assert registry.state("primary", Channel.EMAIL).circuit_state == CircuitState.CLOSED

    def test_rate_limited_trial_is_released(self, engine, registry, clock):
        _register(registry, "primary", script=[RateLimitError("primary", retry_after=5)])
        _trip(registry, "primary")
        clock.advance(61)
        nid = _submit(engine)
        engine.run_until_idle()

        state = registry.state("primary", Channel.EMAIL)
        assert state.circuit_state == CircuitState.HALF_OPEN
        assert state.trial_started_at is None
        assert [s.provider for s in registry.list_providers(Channel.EMAIL)] == ["primary"]

        clock.advance(5)
        engine.run_until_idle()
        assert engine.get_status(nid).status == _S.SENT
        assert registry.state("primary", Channel.EMAIL).circuit_state == CircuitState.CLOSED

    def test_attempt_token_is_stable_per_attempt(self, engine, registry):
        provider = _register(registry, "primary")
        nid = _submit(engine)
        engine.run_until_idle()
        assert provider.calls[0].attempt_token == f"{nid}:1"


# ═══════════════════════════════════════════════════════════════════════════
# No Available Provider
# ═══════════════════════════════════════════════════════════════════════════

class TestNoAvailableProvider:

    def test_all_circuits_open_at_submit(self, engine, registry):
        _register(registry, "primary", priority=9)
        _register(registry, "secondary", priority=1)
        _trip(registry, "primary")
        _trip(registry, "secondary")

        nid = _submit(engine)
        record = engine.get_status(nid)
        assert record.status == _S.FAILED
        assert record.error_kind == ErrorKind.NO_AVAILABLE_PROVIDER.value
        assert engine.get_queue_depth() == 0

    def test_no_provider_registered(self, engine):
        nid = _submit(engine, channel=Channel.SMS, template="otp")
        assert engine.get_status(nid).error_kind == ErrorKind.NO_AVAILABLE_PROVIDER.value

    def test_circuits_open_between_submit_and_dispatch(self, engine, registry):
        _register(registry, "primary")
        nid = _submit(engine)
        _trip(registry, "primary")
        engine.run_until_idle()

        record = engine.get_status(nid)
        assert record.status == _S.FAILED
        assert record.error_kind == ErrorKind.NO_AVAILABLE_PROVIDER.value
        assert engine.get_queue_depth() == 0


# ═══════════════════════════════════════════════════════════════════════════
# Retries
# ═══════════════════════════════════════════════════════════════════════════

class TestRetries:

    def test_retry_wait_then_exhausted(self, engine, registry, clock):
        provider = _register(registry, "primary", default_error=TransientProviderError("primary", "503"))
        nid = _submit(engine)
        start = clock()

        engine.run_until_idle()
        record = engine.get_status(nid)
        assert record.status == _S.RETRY_WAIT
        assert record.attempt_count == 1
        assert record.error_kind == ErrorKind.TRANSIENT_PROVIDER_ERROR.value
        assert record.not_before == start + timedelta(seconds=2)

        # not due yet
        assert engine.run_until_idle() == 0

        clock.advance(2)
        engine.run_until_idle()
        record = engine.get_status(nid)
        assert record.attempt_count == 2
        assert record.not_before == clock() + timedelta(seconds=4)

        clock.advance(4)
        engine.run_until_idle()
        record = engine.get_status(nid)
        assert record.status == _S.FAILED
        assert record.error_kind == ErrorKind.EXHAUSTED_RETRIES.value
        assert record.attempt_count == 3
        assert provider.call_count == 3
        assert engine.get_queue_depth() == 0

    def test_recovers_on_retry(self, engine, registry, clock):
        _register(registry, "primary", script=[TransientProviderError("primary", "timeout")])
        nid = _submit(engine)
        engine.run_until_idle()
        clock.advance(2)
        engine.run_until_idle()

        record = engine.get_status(nid)
        assert record.status == _S.SENT
        assert record.attempt_count == 2
        assert record.error is None
        assert _S.RETRY_WAIT in record.status_history


# ═══════════════════════════════════════════════════════════════════════════
# Non-retryable Errors
# ═══════════════════════════════════════════════════════════════════════════

class TestNonRetryable:

    def test_recipient_rejection_fails_without_failover(self, engine, registry):
        _register(registry, "primary", priority=9, script=[PermanentProviderError("primary", "address blocked")])
        secondary = _register(registry, "secondary", priority=1)
        nid = _submit(engine)
        engine.run_until_idle()

        record = engine.get_status(nid)
        assert record.status == _S.FAILED
        assert record.error_kind == ErrorKind.PERMANENT_PROVIDER_ERROR.value
        assert record.attempt_count == 1
        assert secondary.call_count == 0
        assert registry.state("primary", Channel.EMAIL).consecutive_failures == 0

    def test_provider_specific_rejection_counts(self, engine, registry):
        _register(
            registry, "primary",
            script=[PermanentProviderError("primary", "bad credentials", provider_specific=True)],
        )
        nid = _submit(engine)
        engine.run_until_idle()
        assert engine.get_status(nid).status == _S.FAILED
        assert registry.state("primary", Channel.EMAIL).consecutive_failures == 1


# ═══════════════════════════════════════════════════════════════════════════
# Rate Limits
# ═══════════════════════════════════════════════════════════════════════════

class TestRateLimits:

    def test_429_fails_over_without_circuit_penalty(self, engine, registry):
        _register(registry, "primary", priority=9, script=[RateLimitError("primary", retry_after=20)])
        _register(registry, "secondary", priority=1)
        nid = _submit(engine)
        engine.run_until_idle()

        assert engine.get_status(nid).provider == "secondary"
        state = registry.state("primary", Channel.EMAIL)
        assert state.consecutive_failures == 0
        assert state.failure_count == 0

    def test_429_only_defers_by_retry_after(self, engine, registry, clock):
        _register(registry, "primary", script=[RateLimitError("primary", retry_after=20)])
        nid = _submit(engine)
        engine.run_until_idle()

        record = engine.get_status(nid)
        assert record.status == _S.RETRY_WAIT
        assert record.attempt_count == 0
        assert record.error_kind == ErrorKind.RATE_LIMITED.value
        assert engine.queue.get(nid).next_attempt_at == clock() + timedelta(seconds=20)

        clock.advance(20)
        engine.run_until_idle()
        assert engine.get_status(nid).status == _S.SENT

    def test_recipient_bucket_defers(self, engine, registry, clock):
        provider = _register(registry, "primary")
        engine.rate_limiter.recipient_limits[Channel.EMAIL] = 1
        first = _submit(engine)
        second = _submit(engine, template="otp")
        engine.run_until_idle()

        sent = [engine.get_status(nid).status for nid in (first, second)]
        assert sorted(s.value for s in sent) == ["retry_wait", "sent"]
        assert provider.call_count == 1
        deferred = first if engine.get_status(first).status == _S.RETRY_WAIT else second
        assert engine.get_status(deferred).attempt_count == 0
        assert engine.get_status(deferred).not_before == clock() + timedelta(seconds=30)

    def test_deferred_attempt_gives_back_recipient_token(self, engine, registry, clock):
        provider = _register(registry, "primary", script=[RateLimitError("primary", retry_after=5)])
        engine.rate_limiter.recipient_limits[Channel.EMAIL] = 1
        nid = _submit(engine)
        engine.run_until_idle()
        assert engine.get_status(nid).status == _S.RETRY_WAIT

        clock.advance(5)
        engine.run_until_idle()
        assert engine.get_status(nid).status == _S.SENT
        assert provider.call_count == 2

    def test_provider_bucket_defers(self, engine, registry):
        provider = _register(registry, "primary", rate_limit_per_second=0.001, rate_limit_burst=1)
        first = _submit(engine)
        second = _submit(engine, template="otp")
        engine.run_until_idle()

        statuses = sorted(engine.get_status(nid).status.value for nid in (first, second))
        assert statuses == ["retry_wait", "sent"]
        assert provider.call_count == 1
        assert registry.state("primary", Channel.EMAIL).failure_count == 0


# ═══════════════════════════════════════════════════════════════════════════
# Timeouts & Leases
# ═══════════════════════════════════════════════════════════════════════════

class _LeaseThief(SimulatedProvider):
    """Takes longer than the lease once; another worker reclaims the item meanwhile."""

    def __init__(self, name, channel, clock, queue):
        super().__init__(name, channel)
        self._clock = clock
        self._queue = queue
        self.stolen = None

    def send(self, message):
        if self.stolen is None:
            self._clock.advance(60)
            self.stolen = self._queue.claim("worker-2", self._clock(), 30)
        return super().send(message)


class TestTimeoutsAndLeases:

    def test_slow_provider_times_out_and_fails_over(self, engine, registry):
        slow = _register(registry, "slow", priority=9, latency_seconds=0.5, timeout_seconds=0.05)
        _register(registry, "fast", priority=1)
        nid = _submit(engine)

        started = time.monotonic()
        engine.run_until_idle()
        assert time.monotonic() - started < 0.45

        record = engine.get_status(nid)
        assert record.status == _S.SENT
        assert record.provider == "fast"
        assert slow.call_count == 1
        assert registry.state("slow", Channel.EMAIL).consecutive_failures == 1

    def test_busy_call_slots_defer_without_blaming_provider(self, clock, registry, renderer):
        engine = NotificationEngine(
            InMemoryNotificationStore(clock=clock),
            InMemoryQueue(),
            registry,
            renderer,
            clock=clock,
            dispatcher_options={"jitter": 0.0, "call_workers": 1},
        )
        _register(registry, "hung", channel=Channel.SMS, latency_seconds=1.0, timeout_seconds=0.1)
        healthy = _register(registry, "healthy", timeout_seconds=0.2)
        try:
            _submit(engine, template="otp", channel=Channel.SMS)
            engine.run_until_idle()
            # the hung call still holds the only call slot
            nid = _submit(engine)
            engine.run_until_idle()
        finally:
            engine.shutdown()

        assert healthy.call_count == 0
        assert registry.state("healthy", Channel.EMAIL).failure_count == 0
        record = engine.get_status(nid)
        assert record.status == _S.RETRY_WAIT
        assert record.attempt_count == 0
        assert record.error == "Provider call slots busy"

    def test_late_completion_after_lost_lease_is_discarded(self, engine, registry, clock, caplog):
        thief = _LeaseThief("primary", Channel.EMAIL, clock, engine.queue)
        registry.register(thief)
        nid = _submit(engine)

        with caplog.at_level(logging.WARNING, logger="backend.app.delivery.dispatcher"):
            engine.run_until_idle()

        assert thief.stolen is not None
        assert "Late completion" in caplog.text
        record = engine.get_status(nid)
        assert record.status == _S.IN_FLIGHT
        assert engine.queue.get(nid).lease_owner == "worker-2"

        # the reclaimed lease expires too; the next claim finishes the job
        clock.advance(31)
        engine.run_until_idle()
        record = engine.get_status(nid)
        assert record.status == _S.SENT
        assert record.status_history.count(_S.IN_FLIGHT) == 2


# ═══════════════════════════════════════════════════════════════════════════
# Worker Pool
# ═══════════════════════════════════════════════════════════════════════════

class TestWorkerPool:

    def test_pool_drains_queue(self, engine, registry):
        _register(registry, "primary")
        ids = [
            engine.submit(Recipient(f"u{i}", email=f"u{i}@example.com"), Channel.EMAIL, "welcome", {"name": str(i)})
            for i in range(10)
        ]
        pool = engine.start_workers(concurrency=3, poll_interval=0.01)
        try:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline and engine.get_queue_depth():
                time.sleep(0.02)
        finally:
            engine.shutdown(timeout=2)

        assert not pool.is_running
        assert all(engine.get_status(nid).status == _S.SENT for nid in ids)
