"""
rate_limiter.py — Token buckets for providers and recipients.

Buckets refill lazily from elapsed time, so nothing ticks in the
background:

    tokens = min(capacity, tokens + elapsed × refill_rate)
    allow  = tokens ≥ cost   (then tokens -= cost)
    refund = acquire with a negative cost, clamped to capacity

Keys:
    provider:<name>                 capacity = burst, refill = per-second rate
    recipient:<user_id>:<channel>   capacity = N per window, refill = N / window

A denial is a scheduling delay; it never counts against a circuit.

Counter stores:
    InMemoryBucketStore — single process, lock-serialised
    RedisBucketStore    — shared across worker processes, one Lua script per
                          acquire so read-refill-decrement is atomic
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Optional

from backend.app.delivery.models import Channel, RateBucket, utcnow

logger = logging.getLogger(__name__)


def provider_key(provider: str) -> str:
    return f"provider:{provider}"


def recipient_key(user_id: str, channel: Channel) -> str:
    return f"recipient:{user_id}:{channel.value}"


def _refill(bucket: RateBucket, now: float) -> None:
    elapsed = max(now - bucket.last_refill_at, 0.0)
    bucket.tokens = min(bucket.capacity, bucket.tokens + elapsed * bucket.refill_rate)
    bucket.last_refill_at = now


# ═══════════════════════════════════════════════════════════════════════════
# Stores
# ═══════════════════════════════════════════════════════════════════════════

class BucketStore(ABC):
    """Atomic check-and-decrement over named buckets."""

    @abstractmethod
    def acquire(self, key: str, cost: float, capacity: float, refill_rate: float, now: float) -> bool:
        ...

    def release(self, key: str, cost: float, capacity: float, refill_rate: float, now: float) -> None:
        """Return ``cost`` tokens, never above capacity."""
        self.acquire(key, -cost, capacity, refill_rate, now)

    def peek(self, key: str) -> Optional[RateBucket]:
        return None


class InMemoryBucketStore(BucketStore):
    """Process-local buckets. A new bucket starts full."""

    def __init__(self):
        self._buckets: Dict[str, RateBucket] = {}
        self._lock = threading.Lock()

    def acquire(self, key: str, cost: float, capacity: float, refill_rate: float, now: float) -> bool:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = RateBucket(
                    key=key, capacity=capacity, refill_rate=refill_rate,
                    tokens=capacity, last_refill_at=now,
                )
                self._buckets[key] = bucket
            else:
                # configuration may have changed since the bucket was created
                bucket.capacity = capacity
                bucket.refill_rate = refill_rate
                _refill(bucket, now)

            if bucket.tokens >= cost:
                bucket.tokens = min(bucket.capacity, bucket.tokens - cost)
                return True
            return False

    def peek(self, key: str) -> Optional[RateBucket]:
        with self._lock:
            bucket = self._buckets.get(key)
            return RateBucket(**vars(bucket)) if bucket else None


_ACQUIRE_LUA = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil then
    tokens = capacity
    ts = now
end

local elapsed = math.max(now - ts, 0)
tokens = math.min(capacity, tokens + elapsed * refill_rate)

local allowed = 0
if tokens >= cost then
    tokens = math.min(capacity, tokens - cost)
    allowed = 1
end

redis.call('HSET', key, 'tokens', tokens, 'ts', now)
if refill_rate > 0 then
    redis.call('EXPIRE', key, math.ceil(capacity / refill_rate) + 60)
end
return allowed
"""


class RedisBucketStore(BucketStore):
    """
    Buckets shared through Redis.

    Redis errors fail open: the send is allowed and a warning is logged.
    Buckets are safe to lose, and a counter outage must not stop delivery.
    """

    def __init__(self, client, prefix: str = "ratelimit"):
        self._client = client
        self._prefix = prefix
        self._script = client.register_script(_ACQUIRE_LUA)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisBucketStore":
        import redis
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def acquire(self, key: str, cost: float, capacity: float, refill_rate: float, now: float) -> bool:
        import redis

        try:
            allowed = self._script(
                keys=[f"{self._prefix}:{key}"],
                args=[capacity, refill_rate, now, cost],
            )
        except redis.RedisError as e:
            logger.warning("Rate bucket %s unavailable: %s — allowing", key, e)
            return True
        return bool(int(allowed))


# ═══════════════════════════════════════════════════════════════════════════
# Limiter
# ═══════════════════════════════════════════════════════════════════════════

class RateLimiter:
    """
    Token-bucket limiter over a BucketStore.

    Parameters
    ----------
    store : BucketStore
    clock : callable
        Returns the current aware datetime.
    recipient_limits : dict
        Channel → sends allowed per ``window_seconds``.
    window_seconds : float
    """

    def __init__(
        self,
        store: Optional[BucketStore] = None,
        clock: Callable[[], datetime] = utcnow,
        recipient_limits: Optional[Dict[Channel, int]] = None,
        window_seconds: float = 3600.0,
    ):
        self.store = store or InMemoryBucketStore()
        self._clock = clock
        self.recipient_limits = recipient_limits or {
            Channel.EMAIL: 100,
            Channel.SMS: 20,
            Channel.PUSH: 200,
        }
        self.window_seconds = window_seconds

    def try_acquire(self, key: str, cost: float = 1, *, capacity: float, refill_rate: float) -> bool:
        """Take ``cost`` tokens from bucket ``key`` if available."""
        now = self._clock().timestamp()
        allowed = self.store.acquire(key, cost, capacity, refill_rate, now)
        if not allowed:
            logger.debug("Rate bucket %s exhausted", key)
        return allowed

    def acquire_provider(self, provider: str, capacity: Optional[float], refill_rate: Optional[float]) -> bool:
        """Provider send-rate gate; unlimited when the provider publishes no rate."""
        if not refill_rate:
            return True
        return self.try_acquire(
            provider_key(provider),
            capacity=capacity or max(refill_rate, 1.0),
            refill_rate=refill_rate,
        )

    def acquire_recipient(self, user_id: str, channel: Channel) -> bool:
        """Per-recipient fairness gate for one channel."""
        limit = self.recipient_limits.get(channel)
        if not limit:
            return True
        return self.try_acquire(
            recipient_key(user_id, channel),
            capacity=float(limit),
            refill_rate=limit / self.window_seconds,
        )

    def refund_recipient(self, user_id: str, channel: Channel) -> None:
        """Give back the token of an attempt that ended without a delivery outcome."""
        limit = self.recipient_limits.get(channel)
        if not limit:
            return
        self.store.release(
            recipient_key(user_id, channel),
            1,
            float(limit),
            limit / self.window_seconds,
            self._clock().timestamp(),
        )
