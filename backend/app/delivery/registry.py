"""
registry.py — Configured providers per channel and their live health.

The registry is the single owner of every ProviderState. All reads and
mutations happen under one lock, so concurrent workers can never lose a
failure count or both win the half-open trial. It holds no channel-specific
knowledge: it orders candidates, gates calls and keeps books.

    list_providers(channel)          → candidates, priority desc
    begin_attempt(provider, channel) → atomic gate right before a call
    end_trial(provider, channel)      → give back an unused half-open trial
    report_outcome(provider, channel, success)
    health_snapshot()                → dashboard rows
    refresh(configs)                 → re-read persisted configuration
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from backend.app.core.config import ProviderConfig
from backend.app.delivery.circuit_breaker import CircuitBreaker
from backend.app.delivery.models import Channel, ProviderState, utcnow
from backend.app.delivery.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

ProviderKey = Tuple[str, Channel]


@dataclass
class RateLimit:
    """Provider-published send rate."""
    capacity: float
    refill_rate: float  # tokens per second


@dataclass
class _Entry:
    adapter: ProviderAdapter
    state: ProviderState
    rate_limit: Optional[RateLimit] = None
    timeout_seconds: Optional[float] = None


class ProviderRegistry:
    """
    Ordering and bookkeeping layer over the configured providers.

    Parameters
    ----------
    breaker : CircuitBreaker
        Transition rules applied to each ProviderState.
    clock : callable
        Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable = utcnow,
    ):
        self.breaker = breaker or CircuitBreaker()
        self._clock = clock
        self._entries: Dict[ProviderKey, _Entry] = {}
        self._lock = threading.RLock()

    # ── Registration ──

    def register(
        self,
        adapter: ProviderAdapter,
        *,
        priority: int = 5,
        enabled: bool = True,
        rate_limit_per_second: Optional[float] = None,
        rate_limit_burst: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        key = (adapter.name, adapter.channel)
        rate_limit = None
        if rate_limit_per_second:
            burst = rate_limit_burst or max(int(rate_limit_per_second), 1)
            rate_limit = RateLimit(capacity=float(burst), refill_rate=float(rate_limit_per_second))

        replaced: Optional[ProviderAdapter] = None
        with self._lock:
            existing = self._entries.get(key)
            if existing is None:
                self._entries[key] = _Entry(
                    adapter=adapter,
                    state=ProviderState(
                        provider=adapter.name,
                        channel=adapter.channel,
                        enabled=enabled,
                        priority=priority,
                    ),
                    rate_limit=rate_limit,
                    timeout_seconds=timeout_seconds,
                )
            else:
                # keep circuit history, take the new adapter/config
                if existing.adapter is not adapter:
                    replaced = existing.adapter
                existing.adapter = adapter
                existing.state.priority = priority
                existing.state.enabled = enabled
                existing.rate_limit = rate_limit
                existing.timeout_seconds = timeout_seconds

        if replaced is not None:
            replaced.close()
        if existing is not None:
            return
        logger.info(
            "Registered provider %s for %s (priority=%d, enabled=%s)",
            adapter.name, adapter.channel.value, priority, enabled,
        )

    def refresh(
        self,
        configs: Iterable[ProviderConfig],
        build: Callable[[ProviderConfig], ProviderAdapter],
    ) -> None:
        """
        Re-read persisted provider configuration.

        Enabled flag, priority and limits follow the configuration; circuit
        state and counters of providers that remain are preserved. Providers
        missing from ``configs`` are dropped.
        """
        seen = set()
        for config in configs:
            channel = Channel(config.channel)
            key = (config.name, channel)
            seen.add(key)
            with self._lock:
                entry = self._entries.get(key)
            adapter = entry.adapter if entry is not None else build(config)
            self.register(
                adapter,
                priority=config.priority,
                enabled=config.enabled,
                rate_limit_per_second=config.rate_limit_per_second,
                rate_limit_burst=config.rate_limit_burst,
                timeout_seconds=config.timeout_seconds,
            )

        dropped: List[ProviderAdapter] = []
        with self._lock:
            for key in list(self._entries):
                if key not in seen:
                    logger.info("Provider %s/%s removed from configuration", key[0], key[1].value)
                    dropped.append(self._entries.pop(key).adapter)
        for adapter in dropped:
            adapter.close()

    # ── Lookup ──

    def adapter(self, provider: str, channel: Channel) -> ProviderAdapter:
        with self._lock:
            return self._entries[(provider, channel)].adapter

    def rate_limit(self, provider: str, channel: Channel) -> Optional[RateLimit]:
        with self._lock:
            entry = self._entries.get((provider, channel))
            return entry.rate_limit if entry else None

    def timeout_for(self, provider: str, channel: Channel) -> Optional[float]:
        with self._lock:
            entry = self._entries.get((provider, channel))
            return entry.timeout_seconds if entry else None

    def state(self, provider: str, channel: Channel) -> ProviderState:
        """Detached copy of one provider's state."""
        with self._lock:
            return replace(self._entries[(provider, channel)].state)

    def list_providers(self, channel: Channel) -> List[ProviderState]:
        """
        Candidate providers for ``channel``, highest priority first.

        Disabled providers, open circuits still cooling down and half-open
        circuits whose trial is taken are filtered out. Returned states are
        copies; call ``begin_attempt`` before using one.
        """
        now = self._clock()
        with self._lock:
            candidates = [
                replace(entry.state)
                for (name, ch), entry in self._entries.items()
                if ch == channel
                and entry.state.enabled
                and self.breaker.is_candidate(entry.state, now)
            ]
        candidates.sort(key=lambda s: (-s.priority, s.provider))
        return candidates

    def has_available(self, channel: Channel) -> bool:
        return bool(self.list_providers(channel))

    # ── Gating & outcomes ──

    def begin_attempt(self, provider: str, channel: Channel) -> bool:
        """Atomically take permission to call ``provider`` once."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get((provider, channel))
            if entry is None or not entry.state.enabled:
                return False
            return self.breaker.try_begin(entry.state, now)

    def report_outcome(self, provider: str, channel: Channel, success: bool) -> None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get((provider, channel))
            if entry is None:
                logger.warning("Outcome reported for unknown provider %s/%s", provider, channel.value)
                return
            if success:
                self.breaker.record_success(entry.state, now)
            else:
                self.breaker.record_failure(entry.state, now)

    def end_trial(self, provider: str, channel: Channel) -> None:
        """Release a half-open trial taken by ``begin_attempt`` that produced no outcome."""
        with self._lock:
            entry = self._entries.get((provider, channel))
            if entry is not None:
                self.breaker.release_trial(entry.state)

    def health_snapshot(self) -> List[Dict]:
        """Provider/circuit health rows for dashboards."""
        with self._lock:
            rows = [entry.state.to_dict() for entry in self._entries.values()]
        rows.sort(key=lambda r: (r["channel"], -r["priority"], r["provider"]))
        return rows

    def close(self) -> None:
        """Close every adapter (engine shutdown)."""
        with self._lock:
            adapters = [entry.adapter for entry in self._entries.values()]
        for adapter in adapters:
            adapter.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
