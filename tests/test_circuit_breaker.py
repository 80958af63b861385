"""
test_circuit_breaker.py — Circuit breaker and provider registry.

Covers:
    • Trip after N consecutive failures, success resets the counter
    • Half-open trial: exactly one caller, success closes, failure doubles cool-down
    • Abandoned trials are granted again after the trial timeout
    • Registry ordering, disabled providers, refresh keeping circuit history
    • Adapters closed when replaced, dropped or at shutdown
    • Concurrent begin_attempt grants one half-open trial

Run with:
    pytest tests/test_circuit_breaker.py -v
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.config import ProviderConfig
from backend.app.delivery.circuit_breaker import CircuitBreaker
from backend.app.delivery.models import Channel, CircuitState, ProviderState
from backend.app.delivery.providers.simulated import SimulatedProvider

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _make_state(**overrides) -> ProviderState:
    kwargs = dict(provider="primary", channel=Channel.EMAIL)
    kwargs.update(overrides)
    return ProviderState(**kwargs)


class _ClosingProvider(SimulatedProvider):
    closed = False

    def close(self):
        self.closed = True


def _trip(breaker: CircuitBreaker, state: ProviderState, now: datetime = T0) -> None:
    for _ in range(breaker.failure_threshold):
        breaker.record_failure(state, now)


# ═══════════════════════════════════════════════════════════════════════════
# Breaker
# ═══════════════════════════════════════════════════════════════════════════

class TestCircuitBreaker:

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)

    def test_trips_after_consecutive_failures(self):
        breaker = CircuitBreaker(failure_threshold=3, cool_down_seconds=60)
        state = _make_state()
        breaker.record_failure(state, T0)
        breaker.record_failure(state, T0)
        assert state.circuit_state == CircuitState.CLOSED
        breaker.record_failure(state, T0)
        assert state.circuit_state == CircuitState.OPEN
        assert state.open_until == T0 + timedelta(seconds=60)

    def test_success_resets_counter(self):
        breaker = CircuitBreaker(failure_threshold=3)
        state = _make_state()
        breaker.record_failure(state, T0)
        breaker.record_failure(state, T0)
        breaker.record_success(state, T0)
        breaker.record_failure(state, T0)
        assert state.circuit_state == CircuitState.CLOSED
        assert state.consecutive_failures == 1

    def test_open_rejects_until_cool_down(self):
        breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=60)
        state = _make_state()
        _trip(breaker, state)
        assert not breaker.is_candidate(state, T0 + timedelta(seconds=30))
        assert not breaker.try_begin(state, T0 + timedelta(seconds=30))
        assert breaker.is_candidate(state, T0 + timedelta(seconds=60))

    def test_single_half_open_trial(self):
        breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=60, trial_timeout_seconds=30)
        state = _make_state()
        _trip(breaker, state)
        later = T0 + timedelta(seconds=61)
        assert breaker.try_begin(state, later)
        assert state.circuit_state == CircuitState.HALF_OPEN
        assert not breaker.try_begin(state, later)
        assert not breaker.is_candidate(state, later)

    def test_trial_success_closes(self):
        breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=60)
        state = _make_state()
        _trip(breaker, state)
        later = T0 + timedelta(seconds=61)
        breaker.try_begin(state, later)
        breaker.record_success(state, later)
        assert state.circuit_state == CircuitState.CLOSED
        assert state.consecutive_failures == 0
        assert state.trip_count == 0

    def test_trial_failure_doubles_cool_down(self):
        breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=60, max_cool_down_seconds=100)
        state = _make_state()
        _trip(breaker, state)
        later = T0 + timedelta(seconds=61)
        breaker.try_begin(state, later)
        breaker.record_failure(state, later)
        assert state.circuit_state == CircuitState.OPEN
        assert state.open_until == later + timedelta(seconds=100)  # 120 capped at 100

    def test_cool_down_schedule(self):
        breaker = CircuitBreaker(cool_down_seconds=300, max_cool_down_seconds=3600)
        assert [breaker.cool_down_for(n) for n in (1, 2, 3, 4, 5)] == [300, 600, 1200, 2400, 3600]

    def test_abandoned_trial_granted_again(self):
        breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=60, trial_timeout_seconds=30)
        state = _make_state()
        _trip(breaker, state)
        first = T0 + timedelta(seconds=61)
        assert breaker.try_begin(state, first)
        assert breaker.try_begin(state, first + timedelta(seconds=31))

    def test_released_trial_granted_again(self):
        breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=60)
        state = _make_state()
        _trip(breaker, state)
        now = T0 + timedelta(seconds=61)
        assert breaker.try_begin(state, now)
        breaker.release_trial(state)
        assert state.circuit_state == CircuitState.HALF_OPEN
        assert breaker.try_begin(state, now)

    def test_late_success_keeps_circuit_open(self):
        breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=60)
        state = _make_state()
        _trip(breaker, state)
        breaker.record_success(state, T0)
        assert state.circuit_state == CircuitState.OPEN

    def test_remaining_cool_down(self):
        breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=60)
        state = _make_state()
        assert breaker.remaining_cool_down(state, T0) is None
        _trip(breaker, state)
        assert breaker.remaining_cool_down(state, T0 + timedelta(seconds=20)) == pytest.approx(40)


# ═══════════════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════════════

class TestProviderRegistry:

    def test_candidates_by_priority(self, registry):
        registry.register(SimulatedProvider("low", Channel.EMAIL), priority=1)
        registry.register(SimulatedProvider("high", Channel.EMAIL), priority=9)
        registry.register(SimulatedProvider("sms", Channel.SMS), priority=5)
        assert [s.provider for s in registry.list_providers(Channel.EMAIL)] == ["high", "low"]

    def test_disabled_provider_excluded(self, registry):
        registry.register(SimulatedProvider("off", Channel.EMAIL), enabled=False)
        assert registry.list_providers(Channel.EMAIL) == []
        assert not registry.begin_attempt("off", Channel.EMAIL)
        assert not registry.has_available(Channel.EMAIL)

    def test_open_circuit_excluded_then_returns(self, registry, clock):
        registry.register(SimulatedProvider("p", Channel.EMAIL))
        for _ in range(3):
            registry.report_outcome("p", Channel.EMAIL, success=False)
        assert not registry.has_available(Channel.EMAIL)
        clock.advance(61)
        assert registry.has_available(Channel.EMAIL)

    def test_rate_limit_from_registration(self, registry):
        registry.register(SimulatedProvider("p", Channel.SMS), rate_limit_per_second=5, rate_limit_burst=10)
        limit = registry.rate_limit("p", Channel.SMS)
        assert (limit.capacity, limit.refill_rate) == (10.0, 5.0)

    def test_refresh_keeps_circuit_history(self, registry):
        registry.register(SimulatedProvider("p", Channel.EMAIL), priority=5)
        for _ in range(3):
            registry.report_outcome("p", Channel.EMAIL, success=False)

        built = []

        def build(config):
            built.append(config.name)
            return SimulatedProvider(config.name, Channel(config.channel))

        registry.refresh(
            [
                ProviderConfig(name="p", channel="email", priority=8),
                ProviderConfig(name="q", channel="email", priority=2),
            ],
            build,
        )
        state = registry.state("p", Channel.EMAIL)
        assert state.priority == 8
        assert state.circuit_state == CircuitState.OPEN
        assert built == ["q"]

    def test_refresh_drops_removed(self, registry):
        gone = _ClosingProvider("gone", Channel.PUSH)
        registry.register(gone)
        registry.refresh([], lambda config: None)
        assert len(registry) == 0
        assert gone.closed

    def test_replaced_adapter_closed(self, registry):
        old = _ClosingProvider("p", Channel.EMAIL)
        registry.register(old)
        registry.register(old, priority=7)
        assert not old.closed
        registry.register(_ClosingProvider("p", Channel.EMAIL))
        assert old.closed

    def test_close_closes_every_adapter(self, registry):
        adapters = [_ClosingProvider("p", Channel.EMAIL), _ClosingProvider("q", Channel.SMS)]
        for adapter in adapters:
            registry.register(adapter)
        registry.close()
        assert all(adapter.closed for adapter in adapters)

    def test_end_trial_frees_half_open_slot(self, registry, clock):
        registry.register(SimulatedProvider("p", Channel.EMAIL))
        for _ in range(3):
            registry.report_outcome("p", Channel.EMAIL, success=False)
        clock.advance(61)
        assert registry.begin_attempt("p", Channel.EMAIL)
        assert not registry.begin_attempt("p", Channel.EMAIL)
        registry.end_trial("p", Channel.EMAIL)
        assert registry.begin_attempt("p", Channel.EMAIL)

    def test_health_snapshot_rows(self, registry):
        registry.register(SimulatedProvider("p", Channel.EMAIL))
        registry.report_outcome("p", Channel.EMAIL, success=True)
        [row] = registry.health_snapshot()
        assert row["provider"] == "p"
        assert row["state"] == "closed"
        assert row["total_successes"] == 1

    def test_concurrent_half_open_grants_one_trial(self, registry, clock):
        registry.register(SimulatedProvider("p", Channel.EMAIL))
        for _ in range(3):
            registry.report_outcome("p", Channel.EMAIL, success=False)
        clock.advance(61)

        grants = []
        barrier = threading.Barrier(8)

        def contend():
            barrier.wait()
            grants.append(registry.begin_attempt("p", Channel.EMAIL))

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert grants.count(True) == 1
