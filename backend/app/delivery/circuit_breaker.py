"""
circuit_breaker.py — Per-provider failure gate.

═══════════════════════════════════════════════════════════════════════════
STATE TRANSITIONS
═══════════════════════════════════════════════════════════════════════════

    CLOSED ──(threshold consecutive failures)──► OPEN
    OPEN ──(cool-down elapsed, trial granted)──► HALF_OPEN
    HALF_OPEN ──(trial succeeds)──► CLOSED   (failure counter reset)
    HALF_OPEN ──(trial fails)──► OPEN        (cool-down doubles)

Cool-down per trip:

    trip 1: base        trip 2: base × 2        trip 3: base × 4 ... ≤ cap

The breaker is stateless itself: it mutates the ProviderState it is handed.
Callers (the ProviderRegistry) serialize access with their own lock so that
only one half-open trial is ever granted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from backend.app.delivery.models import CircuitState, ProviderState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    Decides whether a provider may be called and folds outcomes into its state.

    Parameters
    ----------
    failure_threshold : int
        Consecutive failures that trip a closed circuit.
    cool_down_seconds : float
        Cool-down after the first trip.
    max_cool_down_seconds : float
        Upper bound for the doubling cool-down.
    trial_timeout_seconds : float
        A half-open trial that has not reported back within this time is
        considered abandoned (crashed worker) and the slot is granted again.
    """

    def __init__(
        self,
        failure_threshold: int = 10,
        cool_down_seconds: float = 300.0,
        max_cool_down_seconds: float = 3600.0,
        trial_timeout_seconds: float = 60.0,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.cool_down_seconds = cool_down_seconds
        self.max_cool_down_seconds = max_cool_down_seconds
        self.trial_timeout_seconds = trial_timeout_seconds

    def cool_down_for(self, trip_count: int) -> float:
        """Cool-down after the ``trip_count``-th consecutive trip."""
        exponent = max(trip_count - 1, 0)
        return min(self.cool_down_seconds * (2 ** exponent), self.max_cool_down_seconds)

    # ── Gating ──

    def _trial_free(self, state: ProviderState, now: datetime) -> bool:
        if state.trial_started_at is None:
            return True
        age = (now - state.trial_started_at).total_seconds()
        return age >= self.trial_timeout_seconds

    def is_candidate(self, state: ProviderState, now: datetime) -> bool:
        """True if a call could be routed to this provider right now."""
        if state.circuit_state == CircuitState.CLOSED:
            return True
        if state.circuit_state == CircuitState.OPEN:
            return state.open_until is not None and now >= state.open_until
        return self._trial_free(state, now)

    def try_begin(self, state: ProviderState, now: datetime) -> bool:
        """
        Claim permission for one call.

        Moves OPEN → HALF_OPEN when the cool-down has elapsed and reserves the
        single trial slot for the caller.
        """
        if state.circuit_state == CircuitState.CLOSED:
            return True

        if state.circuit_state == CircuitState.OPEN:
            if state.open_until is None or now < state.open_until:
                return False
            state.circuit_state = CircuitState.HALF_OPEN
            state.trial_started_at = now
            logger.info(
                "Circuit half-open for %s/%s — trial granted",
                state.provider, state.channel.value,
            )
            return True

        # HALF_OPEN
        if not self._trial_free(state, now):
            return False
        if state.trial_started_at is not None:
            logger.warning(
                "Abandoned trial for %s/%s — granting a new one",
                state.provider, state.channel.value,
            )
        state.trial_started_at = now
        return True

    def release_trial(self, state: ProviderState) -> None:
        """Give back a half-open trial that ended without a health outcome."""
        if state.circuit_state == CircuitState.HALF_OPEN:
            state.trial_started_at = None

    # ── Outcomes ──

    def record_success(self, state: ProviderState, now: datetime) -> None:
        state.success_count += 1
        state.last_success_at = now

        if state.circuit_state == CircuitState.HALF_OPEN:
            logger.info(
                "Circuit closed for %s/%s after successful trial",
                state.provider, state.channel.value,
            )
            self._close(state)
        elif state.circuit_state == CircuitState.CLOSED:
            state.consecutive_failures = 0
        # OPEN: a call that started before the trip finished late; the
        # circuit stays open until its own trial succeeds.

    def record_failure(self, state: ProviderState, now: datetime) -> None:
        state.failure_count += 1
        state.last_failure_at = now

        if state.circuit_state == CircuitState.HALF_OPEN:
            state.consecutive_failures += 1
            logger.warning(
                "Trial failed for %s/%s — reopening circuit",
                state.provider, state.channel.value,
            )
            self._trip(state, now)
        elif state.circuit_state == CircuitState.CLOSED:
            state.consecutive_failures += 1
            if state.consecutive_failures >= self.failure_threshold:
                logger.error(
                    "Circuit opened for %s/%s after %d consecutive failures",
                    state.provider, state.channel.value, state.consecutive_failures,
                )
                self._trip(state, now)

    def _trip(self, state: ProviderState, now: datetime) -> None:
        state.trip_count += 1
        cool_down = self.cool_down_for(state.trip_count)
        state.circuit_state = CircuitState.OPEN
        state.open_until = now + timedelta(seconds=cool_down)
        state.trial_started_at = None

    @staticmethod
    def _close(state: ProviderState) -> None:
        state.circuit_state = CircuitState.CLOSED
        state.consecutive_failures = 0
        state.trip_count = 0
        state.open_until = None
        state.trial_started_at = None

    def remaining_cool_down(self, state: ProviderState, now: datetime) -> Optional[float]:
        if state.circuit_state != CircuitState.OPEN or state.open_until is None:
            return None
        return max((state.open_until - now).total_seconds(), 0.0)
