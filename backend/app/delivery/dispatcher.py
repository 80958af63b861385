"""
dispatcher.py — Worker-side delivery loop with retry and failover.

Each call to ``process_one`` handles at most one queue item:

═══════════════════════════════════════════════════════════════════════════
PER-ATTEMPT FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────────────┐
    │ 1. Claim item        │  lease (default 30s), fresh lease token
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐
    │ 2. Candidates        │  registry.list_providers(channel)
    │                      │  none → failed / no_available_provider
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐
    │ 3. Recipient bucket  │  empty → retry_wait after RATE_LIMIT_RETRY_DELAY
    └─────────┬────────────┘  (no attempt counted)
              ▼
    ┌──────────────────────┐
    │ 4. For each provider │  provider bucket → begin_attempt → deliver()
    │    (priority order)  │  bounded by the provider timeout
    └─────────┬────────────┘
              ▼
        success        → sent, item completed, success reported
        non-retryable  → failed at once (reported only if provider-specific)
        retryable      → failure reported, next provider
        429            → next provider, not a circuit failure
              ▼
    ┌──────────────────────┐
    │ 5. All exhausted     │  attempt < max → retry_wait + backoff
    └──────────────────────┘  else          → failed / exhausted_retries

Backoff after attempt n:

    delay = min(RETRY_MAX_DELAY, RETRY_BASE_DELAY × 2ⁿ × U(1 − j, 1 + j))

    base=1s, j=0: attempt 1 → 2s, attempt 2 → 4s, ... capped at 300s

Every queue write carries the lease token. If the lease was lost (the call
outlived it and another worker reclaimed the item) the late result is
discarded and logged; the record is left to the new owner.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from backend.app.core.errors import (
    ErrorKind,
    ExhaustedRetries,
    FailureClass,
    InputError,
    InvalidTransition,
    ProviderError,
    RateLimitError,
    TransientProviderError,
)
from backend.app.core.logging_config import bind_log_context, set_log_context
from backend.app.delivery.models import (
    Channel,
    NotificationRecord,
    NotificationStatus,
    OutboundMessage,
    QueueItem,
    utcnow,
)
from backend.app.delivery.queue import NotificationQueue
from backend.app.delivery.rate_limiter import RateLimiter
from backend.app.delivery.registry import ProviderRegistry
from backend.app.delivery.store import NotificationStore

logger = logging.getLogger(__name__)

_S = NotificationStatus
_DISPATCHABLE = (_S.SCHEDULED, _S.RETRY_WAIT, _S.IN_FLIGHT)

# Extra lease time beyond the provider timeout when renewing
_LEASE_MARGIN_SECONDS = 5.0


class _CallNotStarted(Exception):
    """A provider call waited out its timeout for a free call slot and never ran."""


def compute_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 300.0,
    jitter: float = 0.2,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in seconds before retrying after ``attempt`` (1-based).

    Jitter is applied before the cap, so the cap is a hard ceiling.
    """
    factor = 1.0
    if jitter:
        factor = (rng or random).uniform(1.0 - jitter, 1.0 + jitter)
    return min(max_delay, base_delay * (2 ** attempt) * factor)


class Dispatcher:
    """
    Moves queued notifications to providers.

    Parameters
    ----------
    store, queue, registry, rate_limiter
        Shared collaborators; all are safe for concurrent workers.
    clock : callable
        Returns the current aware UTC datetime.
    provider_timeout : float
        Default bound on one provider call (seconds) when the provider
        configures none.
    count_failover_failures : bool
        When False, failures of providers that were followed by a successful
        failover within the same attempt are not reported to the circuit.
    """

    def __init__(
        self,
        store: NotificationStore,
        queue: NotificationQueue,
        registry: ProviderRegistry,
        rate_limiter: RateLimiter,
        *,
        clock: Callable[[], datetime] = utcnow,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        jitter: float = 0.2,
        rate_limit_retry_delay: float = 30.0,
        lease_seconds: float = 30.0,
        provider_timeout: float = 30.0,
        count_failover_failures: bool = True,
        call_workers: int = 10,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.queue = queue
        self.registry = registry
        self.rate_limiter = rate_limiter
        self._clock = clock
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.rate_limit_retry_delay = rate_limit_retry_delay
        self.lease_seconds = lease_seconds
        self.provider_timeout = provider_timeout
        self.count_failover_failures = count_failover_failures
        self._rng = rng or random.Random()
        self._calls = ThreadPoolExecutor(max_workers=call_workers, thread_name_prefix="provider-call")

    # ── Public ──

    def process_one(self, worker_id: str = "inline") -> bool:
        """
        Claim and handle one due item.

        Returns
        -------
        bool
            False when nothing was due.
        """
        now = self._clock()
        item = self.queue.claim(worker_id, now, self.lease_seconds)
        if item is None:
            return False

        bind_log_context(notification_id=item.notification_id)
        try:
            self._handle(item, now)
        finally:
            bind_log_context(notification_id=None)
        return True

    def run_until_idle(self, worker_id: str = "inline", max_items: Optional[int] = None) -> int:
        """Process due items synchronously until none is left. Returns the count."""
        processed = 0
        while max_items is None or processed < max_items:
            if not self.process_one(worker_id):
                break
            processed += 1
        return processed

    def next_retry_delay(self, attempt: int) -> float:
        return compute_backoff(attempt, self.base_delay, self.max_delay, self.jitter, self._rng)

    def shutdown(self) -> None:
        self._calls.shutdown(wait=False)

    # ── Steps ──

    def _handle(self, item: QueueItem, now: datetime) -> None:
        record = self.store.get(item.notification_id)
        if record is None:
            logger.warning("Queue item %s has no record — dropping", item.id)
            self.queue.complete(item.id, item.lease_token)
            return

        if record.status not in _DISPATCHABLE:
            # cancelled or finished while queued
            logger.info("Skipping %s in status %s", record.id, record.status.value)
            self.queue.complete(item.id, item.lease_token)
            return

        channel = record.channel
        candidates = self.registry.list_providers(channel)
        if not candidates:
            self._fail(
                record, item, ErrorKind.NO_AVAILABLE_PROVIDER,
                f"No available provider for {channel.value}",
            )
            return

        if not self.rate_limiter.acquire_recipient(record.recipient_id, channel):
            logger.info(
                "Recipient %s rate-limited on %s — deferring %.0fs",
                record.recipient_id, channel.value, self.rate_limit_retry_delay,
                extra={"channel": channel.value},
            )
            self._defer(record, item, now, self.rate_limit_retry_delay, "Recipient rate limit reached")
            return

        try:
            record = self.store.transition(record.id, _S.IN_FLIGHT, expected=_DISPATCHABLE)
        except InvalidTransition:
            logger.info("Record %s changed before dispatch — dropping item", record.id)
            self.rate_limiter.refund_recipient(record.recipient_id, channel)
            self.queue.complete(item.id, item.lease_token)
            return

        self._attempt(record, item, [c.provider for c in candidates])

    def _attempt(self, record: NotificationRecord, item: QueueItem, providers: List[str]) -> None:
        channel = record.channel
        attempt = record.attempt_count + 1
        called = False
        retryable_failure: Optional[ProviderError] = None
        retry_after: Optional[float] = None
        saturated = False
        unreported: List[str] = []

        for name in providers:
            limit = self.registry.rate_limit(name, channel)
            if limit is not None and not self.rate_limiter.acquire_provider(
                name, limit.capacity, limit.refill_rate,
            ):
                logger.debug("Provider %s bucket empty — trying next", name)
                continue

            if not self.registry.begin_attempt(name, channel):
                continue

            timeout = self.registry.timeout_for(name, channel) or self.provider_timeout
            if not self._ensure_lease(item, timeout):
                self.registry.end_trial(name, channel)
                self.rate_limiter.refund_recipient(record.recipient_id, channel)
                logger.warning(
                    "Lease on %s lost before calling %s — abandoning", record.id, name,
                    extra={"provider": name},
                )
                return

            called = True
            message = OutboundMessage(
                notification_id=record.id,
                channel=channel,
                to_address=record.to_address or "",
                subject=record.subject,
                body=record.body or "",
                attempt_token=f"{record.id}:{attempt}",
                metadata=record.metadata,
            )

            try:
                result = self._call(name, channel, message, timeout)
            except _CallNotStarted:
                self.registry.end_trial(name, channel)
                saturated = True
                logger.warning(
                    "No free call slot for %s within %.1fs — trying next", name, timeout,
                    extra={"provider": name, "attempt": attempt},
                )
                continue
            except RateLimitError as e:
                self.registry.end_trial(name, channel)
                if e.retry_after is not None:
                    retry_after = max(retry_after or 0.0, e.retry_after)
                logger.info(
                    "Provider %s rate-limited %s — trying next", name, record.id,
                    extra={"provider": name, "attempt": attempt},
                )
                continue
            except (ProviderError, InputError) as e:
                if e.failure_class == FailureClass.NON_RETRYABLE:
                    if e.provider_specific:
                        self.registry.report_outcome(name, channel, success=False)
                    self._report_unreported(unreported, channel)
                    logger.warning(
                        "Provider %s rejected %s permanently: %s", name, record.id, e.message,
                        extra={"provider": name, "attempt": attempt, "error_kind": e.error_kind.value},
                    )
                    self._fail(record, item, e.error_kind, e.message, attempt_count=attempt, provider=name)
                    return

                retryable_failure = e
                if self.count_failover_failures:
                    self.registry.report_outcome(name, channel, success=False)
                else:
                    unreported.append(name)
                logger.warning(
                    "Provider %s failed for %s: %s — trying next", name, record.id, e.message,
                    extra={"provider": name, "attempt": attempt, "error_kind": e.error_kind.value},
                )
                continue

            self.registry.report_outcome(name, channel, success=True)
            self._sent(record, item, result.provider, result.provider_message_id, attempt, result.duration_ms)
            return

        self._report_unreported(unreported, channel)

        if not called or retryable_failure is None:
            # nothing failed for real: buckets, 429s, busy call slots or lost
            # half-open races
            self.rate_limiter.refund_recipient(record.recipient_id, channel)
            if not called and not self.registry.has_available(channel):
                self._fail(
                    record, item, ErrorKind.NO_AVAILABLE_PROVIDER,
                    f"No available provider for {channel.value}",
                )
                return
            delay = retry_after if retry_after is not None else self.rate_limit_retry_delay
            reason = "Provider call slots busy" if saturated else "All providers rate-limited"
            self._defer(record, item, self._clock(), delay, reason)
            return

        if attempt >= record.max_attempts:
            exhausted = ExhaustedRetries(record.id, attempt, retryable_failure.message)
            logger.error(
                "Notification %s exhausted %d attempts", record.id, attempt,
                extra={"attempt": attempt, "error_kind": exhausted.error_kind.value},
            )
            self._fail(record, item, exhausted.error_kind, exhausted.message, attempt_count=attempt)
            return

        delay = self.next_retry_delay(attempt)
        next_at = self._clock() + timedelta(seconds=delay)
        if not self.queue.reschedule(item.id, item.lease_token, next_at):
            logger.warning("Lease on %s lost — discarding retry", record.id)
            return
        self.store.transition(
            record.id, _S.RETRY_WAIT,
            attempt_count=attempt,
            not_before=next_at,
            error=retryable_failure.message,
            error_kind=retryable_failure.error_kind.value,
        )
        logger.info(
            "Retry %d/%d for %s in %.1fs", attempt, record.max_attempts, record.id, delay,
            extra={"attempt": attempt, "channel": channel.value},
        )

    # ── Provider call ──

    def _call(self, name: str, channel: Channel, message: OutboundMessage, timeout: float):
        adapter = self.registry.adapter(name, channel)
        if not timeout:
            return adapter.deliver(message)

        started = threading.Event()

        def run():
            started.set()
            return adapter.deliver(message)

        # the timeout bounds the call itself, not the wait for a call slot
        future = self._calls.submit(run)
        if not started.wait(timeout) and future.cancel():
            raise _CallNotStarted(name)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            raise TransientProviderError(name, f"timeout after {timeout:.1f}s") from None

    def _ensure_lease(self, item: QueueItem, timeout: float) -> bool:
        """Extend the lease to cover the wait for a call slot plus the call."""
        now = self._clock()
        needed = now + timedelta(seconds=2 * timeout + _LEASE_MARGIN_SECONDS)
        if item.lease_expires_at is not None and item.lease_expires_at >= needed:
            return True
        if not self.queue.extend_lease(item.id, item.lease_token, needed):
            return False
        item.lease_expires_at = needed
        return True

    def _report_unreported(self, providers: List[str], channel: Channel) -> None:
        for name in providers:
            self.registry.report_outcome(name, channel, success=False)
        providers.clear()

    # ── Outcomes ──

    def _sent(
        self,
        record: NotificationRecord,
        item: QueueItem,
        provider: str,
        provider_message_id: Optional[str],
        attempt: int,
        duration_ms: float,
    ) -> None:
        if not self.queue.complete(item.id, item.lease_token):
            logger.warning(
                "Late completion for %s via %s discarded — lease lost", record.id, provider,
                extra={"provider": provider},
            )
            return
        self.store.transition(
            record.id, _S.SENT,
            expected=(_S.IN_FLIGHT,),
            provider=provider,
            provider_message_id=provider_message_id,
            attempt_count=attempt,
            error=None,
            error_kind=None,
        )
        logger.info(
            "Sent %s via %s (%.0fms)", record.id, provider, duration_ms,
            extra={
                "provider": provider, "channel": record.channel.value,
                "attempt": attempt, "duration_ms": duration_ms,
            },
        )

    def _fail(
        self,
        record: NotificationRecord,
        item: QueueItem,
        kind: ErrorKind,
        message: str,
        attempt_count: Optional[int] = None,
        provider: Optional[str] = None,
    ) -> None:
        if not self.queue.complete(item.id, item.lease_token):
            logger.warning("Lease on %s lost — discarding failure (%s)", record.id, kind.value)
            return
        changes = {"error": message, "error_kind": kind.value}
        if attempt_count is not None:
            changes["attempt_count"] = attempt_count
        if provider is not None:
            changes["provider"] = provider
        try:
            self.store.transition(record.id, _S.FAILED, **changes)
        except InvalidTransition as e:
            logger.warning("Could not fail %s: %s", record.id, e.message)
            return
        logger.warning(
            "Notification %s failed: %s", record.id, message,
            extra={"error_kind": kind.value, "channel": record.channel.value},
        )

    def _defer(
        self,
        record: NotificationRecord,
        item: QueueItem,
        now: datetime,
        delay: float,
        reason: str,
    ) -> None:
        next_at = now + timedelta(seconds=delay)
        if not self.queue.reschedule(item.id, item.lease_token, next_at):
            logger.warning("Lease on %s lost — discarding deferral", record.id)
            return
        current = self.store.get(record.id)
        if current is not None and current.status != _S.RETRY_WAIT:
            self.store.transition(
                record.id, _S.RETRY_WAIT,
                not_before=next_at,
                error=reason,
                error_kind=ErrorKind.RATE_LIMITED.value,
            )
        else:
            self.store.update(record.id, not_before=next_at)


# ═══════════════════════════════════════════════════════════════════════════
# Worker Pool
# ═══════════════════════════════════════════════════════════════════════════

class WorkerPool:
    """
    N threads polling the queue through one Dispatcher.

    Parameters
    ----------
    dispatcher : Dispatcher
    concurrency : int
    poll_interval : float
        Sleep between polls when nothing is due.
    refresh : callable, optional
        Re-reads provider configuration; called every ``refresh_interval``.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        refresh: Optional[Callable[[], None]] = None,
        refresh_interval: float = 60.0,
    ):
        self.dispatcher = dispatcher
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.refresh = refresh
        self.refresh_interval = refresh_interval
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._refresh_lock = threading.Lock()
        self._last_refresh = time.monotonic()

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._run, args=(f"worker-{i}",), name=f"worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d delivery workers", self.concurrency)

    def stop(self, timeout: float = 10.0) -> None:
        """Signal workers to finish their current item and exit."""
        self._stop.set()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(deadline - time.monotonic(), 0.0))
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning("Workers still running after %.0fs: %s", timeout, ", ".join(alive))
        else:
            logger.info("Delivery workers stopped")
        self._threads = []

    def _maybe_refresh(self) -> None:
        if self.refresh is None:
            return
        with self._refresh_lock:
            if time.monotonic() - self._last_refresh < self.refresh_interval:
                return
            self._last_refresh = time.monotonic()
        try:
            self.refresh()
        except Exception:
            logger.exception("Provider refresh failed")

    def _run(self, worker_id: str) -> None:
        set_log_context(worker_id=worker_id)
        while not self._stop.is_set():
            self._maybe_refresh()
            try:
                worked = self.dispatcher.process_one(worker_id)
            except Exception:
                logger.exception("Worker %s failed while processing an item", worker_id)
                worked = False
            if not worked:
                self._stop.wait(self.poll_interval)
