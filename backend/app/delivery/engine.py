"""
engine.py — Public facade of the delivery engine.

    submit(recipient, channel, template_name, variables, category, ...)
        → notification id

Submission order:

    1. Validate           malformed input raises InputError, nothing stored
    2. Opt-out            recipient opted out → suppressed / opted_out
    3. Deduplicate        repeat inside the window → suppressed, duplicate_of
    4. Render             template_not_found / template_render_error → failed
    5. Provider check     no candidate for the channel → failed /
                          no_available_provider, never enqueued
    6. Schedule           quiet hours / digest → not_before
    7. Persist + enqueue  status scheduled

Everything after a successful submit happens in the dispatcher workers.

Usage:
    engine = NotificationEngine.from_settings()
    nid = engine.submit(Recipient("u1", email="a@b.co"), Channel.EMAIL,
                        "welcome", {"name": "Asha"})
    engine.run_until_idle()
    engine.get_status(nid).status   # NotificationStatus.SENT
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from backend.app.core.config import Settings, get_settings
from backend.app.core.errors import (
    ErrorKind,
    InputError,
    InvalidTransition,
    NotFoundError,
    TemplateNotFound,
    TemplateRenderError,
)
from backend.app.delivery.circuit_breaker import CircuitBreaker
from backend.app.delivery.deduplicator import Deduplicator, InMemoryFingerprintStore, RedisFingerprintStore
from backend.app.delivery.dispatcher import Dispatcher, WorkerPool
from backend.app.delivery.models import (
    CANCELLABLE_STATUSES,
    Category,
    Channel,
    NotificationRecord,
    NotificationRequest,
    NotificationStatus,
    QueueItem,
    Recipient,
    RecipientPreferences,
    utcnow,
)
from backend.app.delivery.preferences import InMemoryPreferenceStore, PreferenceStore
from backend.app.delivery.providers import build_provider
from backend.app.delivery.queue import InMemoryQueue, NotificationQueue
from backend.app.delivery.rate_limiter import InMemoryBucketStore, RateLimiter, RedisBucketStore
from backend.app.delivery.registry import ProviderRegistry
from backend.app.delivery.scheduler import Scheduler
from backend.app.delivery.store import InMemoryNotificationStore, NotificationStore
from backend.app.delivery.templates import JinjaTemplateRenderer, TemplateRenderer

logger = logging.getLogger(__name__)

_S = NotificationStatus

DELIVERY_EVENTS = {"delivered": _S.DELIVERED, "bounced": _S.BOUNCED}
ENGAGEMENT_EVENTS = {"opened": "opened_at", "clicked": "clicked_at"}


def _percent(part: int, whole: int) -> Optional[float]:
    return round(100.0 * part / whole, 2) if whole else None


def _coerce(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InputError(f"Invalid {field} {value!r} (expected one of: {allowed})", field=field) from None


class NotificationEngine:
    """
    Wires the delivery components together.

    Parameters
    ----------
    store, queue, registry, renderer
        Required collaborators.
    rate_limiter, deduplicator, scheduler, preferences
        Optional; in-memory defaults.
    clock : callable
        Returns the current aware UTC datetime; injected in tests.
    max_attempts : int
        Attempts budget stamped on every new record.
    dispatcher_options : dict
        Passed to ``Dispatcher`` (backoff, lease, timeouts).
    """

    def __init__(
        self,
        store: NotificationStore,
        queue: NotificationQueue,
        registry: ProviderRegistry,
        renderer: TemplateRenderer,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        deduplicator: Optional[Deduplicator] = None,
        scheduler: Optional[Scheduler] = None,
        preferences: Optional[PreferenceStore] = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
        dispatcher_options: Optional[Dict[str, Any]] = None,
    ):
        self.store = store
        self.queue = queue
        self.registry = registry
        self.renderer = renderer
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock)
        self.deduplicator = deduplicator or Deduplicator()
        self.scheduler = scheduler or Scheduler()
        self.preferences = preferences or InMemoryPreferenceStore()
        self._clock = clock
        self.max_attempts = max_attempts
        self.dispatcher = Dispatcher(
            store, queue, registry, self.rate_limiter,
            clock=clock, **(dispatcher_options or {}),
        )
        self.workers: Optional[WorkerPool] = None
        self._settings: Optional[Settings] = None

    # ── Construction ──

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        renderer: Optional[TemplateRenderer] = None,
        preferences: Optional[PreferenceStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "NotificationEngine":
        """Build an engine from environment configuration."""
        settings = settings or get_settings()

        breaker = CircuitBreaker(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            cool_down_seconds=settings.CIRCUIT_COOL_DOWN,
            max_cool_down_seconds=settings.CIRCUIT_MAX_COOL_DOWN,
            trial_timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS * 2,
        )
        registry = ProviderRegistry(breaker, clock=clock)

        if settings.STORE_BACKEND == "sql":
            from backend.app.core.database import get_session_factory, init_db
            from backend.app.delivery.sql import SqlNotificationStore, SqlQueue

            init_db()
            session_factory = get_session_factory()
            store: NotificationStore = SqlNotificationStore(session_factory, clock=clock)
            queue: NotificationQueue = SqlQueue(session_factory)
        else:
            store = InMemoryNotificationStore(clock=clock)
            queue = InMemoryQueue()

        if settings.COUNTER_BACKEND == "redis":
            buckets = RedisBucketStore.from_url(settings.REDIS_URL)
            fingerprints = RedisFingerprintStore.from_url(settings.REDIS_URL)
        else:
            buckets = InMemoryBucketStore()
            fingerprints = InMemoryFingerprintStore()

        engine = cls(
            store,
            queue,
            registry,
            renderer or JinjaTemplateRenderer(),
            rate_limiter=RateLimiter(
                buckets,
                clock=clock,
                recipient_limits={ch: settings.recipient_limit(ch.value) for ch in Channel},
                window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            ),
            deduplicator=Deduplicator(fingerprints, window_seconds=settings.DEDUP_WINDOW_SECONDS),
            scheduler=Scheduler(quiet_hours_enabled=settings.QUIET_HOURS_ENABLED),
            preferences=preferences,
            clock=clock,
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            dispatcher_options={
                "base_delay": settings.RETRY_BASE_DELAY,
                "max_delay": settings.RETRY_MAX_DELAY,
                "jitter": settings.RETRY_JITTER,
                "rate_limit_retry_delay": settings.RATE_LIMIT_RETRY_DELAY,
                "lease_seconds": settings.LEASE_SECONDS,
                "provider_timeout": settings.PROVIDER_TIMEOUT_SECONDS,
                "count_failover_failures": settings.CIRCUIT_COUNT_FAILOVER_FAILURES,
                "call_workers": settings.WORKER_CONCURRENCY * 2,
            },
        )
        engine._settings = settings
        engine.refresh_providers()
        logger.info(
            "Delivery engine ready (store=%s, counters=%s, providers=%d, dry_run=%s)",
            settings.STORE_BACKEND, settings.COUNTER_BACKEND, len(registry), settings.DRY_RUN,
        )
        return engine

    def refresh_providers(self) -> None:
        """Re-read provider configuration (enabled flags, priorities, limits)."""
        if self._settings is None:
            return
        dry_run = self._settings.DRY_RUN
        self.registry.refresh(
            self._settings.PROVIDERS,
            lambda config: build_provider(config, dry_run=dry_run),
        )

    # ── Submission ──

    def submit(
        self,
        recipient: Recipient,
        channel: Union[Channel, str],
        template_name: str,
        variables: Optional[Mapping[str, Any]] = None,
        category: Union[Category, str] = Category.TRANSACTIONAL,
        priority: Optional[int] = None,
        dedup_keys: Sequence[str] = (),
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Accept one notification.

        Returns
        -------
        str
            The notification id. Failed, suppressed and scheduled submissions
            all get a record; only malformed input raises.

        Raises
        ------
        InputError
            Missing or malformed recipient address, unknown channel or
            category, empty template name.
        """
        # ── Step 1: Validate ──
        channel = _coerce(Channel, channel, "channel")
        category = _coerce(Category, category, "category")
        if not template_name:
            raise InputError("template_name is required", field="template_name")
        if priority is not None and not isinstance(priority, int):
            raise InputError("priority must be an integer", field="priority")
        to_address = recipient.validate(channel)

        request = NotificationRequest(
            recipient=recipient,
            channel=channel,
            template_name=template_name,
            variables=dict(variables or {}),
            category=category,
            priority=priority,
            dedup_keys=tuple(dedup_keys),
            metadata=dict(metadata or {}),
        )

        now = self._clock()
        record = NotificationRecord(
            recipient_id=recipient.user_id,
            channel=channel,
            category=category,
            template_name=template_name,
            to_address=to_address,
            variables=dict(request.variables),
            priority=request.effective_priority,
            max_attempts=self.max_attempts,
            metadata=dict(request.metadata),
            created_at=now,
            updated_at=now,
        )

        # ── Step 2: Opt-out ──
        prefs = self.preferences.get(recipient.user_id)
        if prefs is not None and not prefs.allows(channel, category):
            return self._finish(
                record, _S.SUPPRESSED, ErrorKind.OPTED_OUT,
                f"Recipient opted out of {category.value} on {channel.value}",
            )

        # ── Step 3: Deduplicate ──
        dedup = self.deduplicator.check(request, record.id, now)
        record.fingerprint = dedup.fingerprint
        if dedup.is_duplicate:
            return self._finish(
                record, _S.SUPPRESSED, ErrorKind.DUPLICATE,
                f"Duplicate of {dedup.original_id}",
                duplicate_of=dedup.original_id,
            )

        try:
            return self._render_and_enqueue(request, record, dedup.fingerprint, prefs, now)
        except Exception:
            # steps 4-7 hold the fingerprint; an unexpected error must not keep it
            self.deduplicator.release(dedup.fingerprint, record.id)
            raise

    def _render_and_enqueue(
        self,
        request: NotificationRequest,
        record: NotificationRecord,
        fingerprint: str,
        prefs: Optional[RecipientPreferences],
        now: datetime,
    ) -> str:
        channel, category = request.channel, request.category

        # ── Step 4: Render ──
        try:
            rendered = self.renderer.render(request.template_name, channel, request.variables)
        except (TemplateNotFound, TemplateRenderError) as e:
            self.deduplicator.release(fingerprint, record.id)
            return self._finish(record, _S.FAILED, e.error_kind, e.message)
        record.subject = rendered.subject
        record.body = rendered.body

        # ── Step 5: Provider availability ──
        if not self.registry.has_available(channel):
            self.deduplicator.release(fingerprint, record.id)
            return self._finish(
                record, _S.FAILED, ErrorKind.NO_AVAILABLE_PROVIDER,
                f"No available provider for {channel.value}",
            )

        # ── Step 6: Schedule ──
        not_before = self.scheduler.compute_not_before(prefs, category, now)

        # ── Step 7: Persist + enqueue ──
        self.store.create(record)
        self.store.transition(record.id, _S.SCHEDULED, not_before=not_before)
        self.queue.enqueue(QueueItem(
            notification_id=record.id,
            channel=channel,
            priority=record.priority,
            next_attempt_at=not_before,
            created_at=now,
        ))

        deferred = (not_before - now).total_seconds()
        logger.info(
            "Accepted %s for %s via %s (priority=%d%s)",
            record.id, record.recipient_id, channel.value, record.priority,
            f", deferred {deferred:.0f}s" if deferred > 0 else "",
            extra={"notification_id": record.id, "channel": channel.value},
        )
        return record.id

    def _finish(
        self,
        record: NotificationRecord,
        status: NotificationStatus,
        kind: ErrorKind,
        message: str,
        **changes,
    ) -> str:
        """Persist a submission that ends without being enqueued."""
        self.store.create(record)
        self.store.transition(record.id, status, error=message, error_kind=kind.value, **changes)
        log = logger.info if status == _S.SUPPRESSED else logger.warning
        log(
            "Notification %s %s: %s", record.id, status.value, message,
            extra={"notification_id": record.id, "error_kind": kind.value},
        )
        return record.id

    # ── Queries ──

    def get_status(self, notification_id: str) -> NotificationRecord:
        return self.store.require(notification_id)

    def get_queue_depth(self, channel: Optional[Union[Channel, str]] = None) -> int:
        if channel is not None:
            channel = _coerce(Channel, channel, "channel")
        return self.queue.depth(channel)

    def provider_health(self) -> List[Dict[str, Any]]:
        return self.registry.health_snapshot()

    def delivery_stats(self, days: Optional[int] = None) -> Dict[str, Any]:
        """
        Delivery and engagement figures, optionally over the last ``days``.

        ``rates`` give delivered / failed / bounced as a percentage of all
        records on the channel; ``engagement`` gives opens and clicks as a
        percentage of delivered records. Rates are None when the base is zero.
        """
        if days is not None and days < 1:
            raise InputError("days must be at least 1", field="days")
        since = self._clock() - timedelta(days=days) if days else None

        by_channel = self.store.status_counts(since)
        totals: Dict[str, int] = {}
        rates: Dict[str, Dict[str, Optional[float]]] = {}
        for channel, statuses in by_channel.items():
            channel_total = sum(statuses.values())
            rates[channel] = {
                f"{status}_rate": _percent(statuses.get(status, 0), channel_total)
                for status in ("delivered", "failed", "bounced")
            }
            for status, count in statuses.items():
                totals[status] = totals.get(status, 0) + count

        engagement = {
            channel: {
                **counts,
                "open_rate": _percent(counts["opened"], counts["delivered"]),
                "click_rate": _percent(counts["clicked"], counts["delivered"]),
            }
            for channel, counts in self.store.engagement_counts(since).items()
        }
        return {
            "days": days,
            "by_channel": by_channel,
            "totals": totals,
            "total": sum(totals.values()),
            "rates": rates,
            "engagement": engagement,
            "queue_depth": self.queue.depth(),
        }

    # ── Mutations ──

    def cancel(self, notification_id: str) -> bool:
        """
        Cancel a notification that has not reached a provider yet.

        Returns False for in-flight or finished records.
        """
        record = self.store.require(notification_id)
        if record.status not in CANCELLABLE_STATUSES:
            return False
        try:
            self.store.transition(
                notification_id, _S.FAILED,
                expected=CANCELLABLE_STATUSES,
                error="Cancelled by caller",
                error_kind=ErrorKind.CANCELLED.value,
            )
        except InvalidTransition:
            return False
        self.queue.remove(notification_id)
        logger.info("Cancelled %s", notification_id, extra={"notification_id": notification_id})
        return True

    def record_event(
        self,
        identifier: str,
        event: str,
        *,
        reason: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> NotificationRecord:
        """
        Apply a provider webhook event.

        ``identifier`` is a notification id or a provider message id.
        ``delivered`` / ``bounced`` move a sent record to its final status;
        ``opened`` / ``clicked`` only stamp engagement time.
        """
        record = self.store.get(identifier) or self.store.find_by_provider_message_id(identifier)
        if record is None:
            raise NotFoundError("Notification", identifier=identifier)

        event = event.lower()
        if event in ENGAGEMENT_EVENTS:
            field = ENGAGEMENT_EVENTS[event]
            if getattr(record, field) is not None:
                return record
            return self.store.update(record.id, **{field: occurred_at or self._clock()})

        target = DELIVERY_EVENTS.get(event)
        if target is None:
            allowed = ", ".join([*DELIVERY_EVENTS, *ENGAGEMENT_EVENTS])
            raise InputError(f"Unknown event {event!r} (expected one of: {allowed})", field="event")

        if record.status == target:
            return record  # provider retried the webhook

        changes: Dict[str, Any] = {}
        if target == _S.BOUNCED:
            changes["error"] = reason or "Bounced"
        updated = self.store.transition(record.id, target, expected=(_S.SENT,), **changes)
        logger.info(
            "Notification %s %s (provider event)", record.id, target.value,
            extra={"notification_id": record.id, "provider": record.provider},
        )
        return updated

    # ── Workers ──

    def run_until_idle(self, max_items: Optional[int] = None) -> int:
        """Drain due items on the calling thread."""
        return self.dispatcher.run_until_idle(max_items=max_items)

    def start_workers(self, concurrency: int = 5, poll_interval: float = 1.0, refresh_interval: float = 60.0) -> WorkerPool:
        if self.workers is None:
            self.workers = WorkerPool(
                self.dispatcher,
                concurrency=concurrency,
                poll_interval=poll_interval,
                refresh=self.refresh_providers if self._settings is not None else None,
                refresh_interval=refresh_interval,
            )
        self.workers.start()
        return self.workers

    def shutdown(self, timeout: float = 10.0) -> None:
        if self.workers is not None:
            self.workers.stop(timeout)
            self.workers = None
        self.dispatcher.shutdown()
        self.registry.close()
