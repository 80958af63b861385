"""
deduplicator.py — Suppress repeated submissions inside a time window.

Fingerprint:

    sha256(canonical JSON of {recipient, template, variables subset[, bucket]})

The caller chooses which variables participate (``dedup_keys``); with none
the fingerprint is recipient + template. An optional time bucket turns the
sliding window into fixed windows.

Recording is set-if-absent with expiry, so two concurrent identical
submissions cannot both pass:

    check(request, notification_id, now) → DedupResult
        first  → is_duplicate=False  (fingerprint now owned by notification_id)
        repeat → is_duplicate=True, original_id=<first notification>
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from backend.app.delivery.models import NotificationRequest

logger = logging.getLogger(__name__)


def fingerprint(
    recipient_id: str,
    template_name: str,
    variables_subset: Mapping[str, Any],
    time_bucket: Optional[int] = None,
) -> str:
    """Stable SHA-256 over the dedup components."""
    payload: Dict[str, Any] = {
        "recipient": recipient_id,
        "template": template_name,
        "variables": dict(variables_subset),
    }
    if time_bucket is not None:
        payload["bucket"] = time_bucket
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class DedupResult:
    fingerprint: str
    is_duplicate: bool = False
    original_id: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════
# Stores
# ═══════════════════════════════════════════════════════════════════════════

class FingerprintStore(ABC):

    @abstractmethod
    def set_if_absent(self, fp: str, notification_id: str, ttl_seconds: int, now: float) -> Optional[str]:
        """Record ``fp`` → ``notification_id``; return the existing owner if already present."""

    @abstractmethod
    def release(self, fp: str, notification_id: str) -> None:
        """Forget ``fp`` if ``notification_id`` still owns it."""


class InMemoryFingerprintStore(FingerprintStore):

    def __init__(self):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def set_if_absent(self, fp: str, notification_id: str, ttl_seconds: int, now: float) -> Optional[str]:
        with self._lock:
            existing = self._entries.get(fp)
            if existing is not None and existing[1] > now:
                return existing[0]
            self._entries[fp] = (notification_id, now + ttl_seconds)
            if len(self._entries) > 10_000:
                self._purge(now)
            return None

    def release(self, fp: str, notification_id: str) -> None:
        with self._lock:
            existing = self._entries.get(fp)
            if existing is not None and existing[0] == notification_id:
                del self._entries[fp]

    def _purge(self, now: float) -> None:
        expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]

    def __len__(self) -> int:
        return len(self._entries)


_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisFingerprintStore(FingerprintStore):
    """
    Fingerprints shared through Redis (``SET NX EX``).

    On Redis errors the submission is treated as new and a warning logged.
    """

    def __init__(self, client, prefix: str = "dedup"):
        self._client = client
        self._prefix = prefix
        self._release = client.register_script(_RELEASE_LUA)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisFingerprintStore":
        import redis
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, fp: str) -> str:
        return f"{self._prefix}:{fp}"

    def set_if_absent(self, fp: str, notification_id: str, ttl_seconds: int, now: float) -> Optional[str]:
        import redis

        key = self._key(fp)
        try:
            for _ in range(2):
                if self._client.set(key, notification_id, nx=True, ex=ttl_seconds):
                    return None
                existing = self._client.get(key)
                if existing is not None:
                    return existing
                # the holder expired between SET and GET; claim it again
        except redis.RedisError as e:
            logger.warning("Dedup store unavailable: %s — treating as new", e)
            return None
        logger.warning("Fingerprint %s kept expiring under contention — treating as new", fp[:12])
        return None

    def release(self, fp: str, notification_id: str) -> None:
        import redis

        try:
            self._release(keys=[self._key(fp)], args=[notification_id])
        except redis.RedisError as e:
            logger.warning("Dedup release failed for %s: %s", fp[:12], e)


# ═══════════════════════════════════════════════════════════════════════════
# Deduplicator
# ═══════════════════════════════════════════════════════════════════════════

class Deduplicator:
    """
    Parameters
    ----------
    store : FingerprintStore
    window_seconds : int
        How long a fingerprint suppresses repeats.
    bucket_seconds : int | None
        When set, fingerprints include ``floor(now / bucket_seconds)``.
    """

    def __init__(
        self,
        store: Optional[FingerprintStore] = None,
        window_seconds: int = 3600,
        bucket_seconds: Optional[int] = None,
    ):
        self.store = store or InMemoryFingerprintStore()
        self.window_seconds = window_seconds
        self.bucket_seconds = bucket_seconds

    def fingerprint_for(self, request: NotificationRequest, now: datetime) -> str:
        bucket = None
        if self.bucket_seconds:
            bucket = int(now.timestamp() // self.bucket_seconds)
        return fingerprint(
            request.recipient.user_id,
            request.template_name,
            request.variables_subset(),
            bucket,
        )

    def check(self, request: NotificationRequest, notification_id: str, now: datetime) -> DedupResult:
        fp = self.fingerprint_for(request, now)
        original = self.store.set_if_absent(fp, notification_id, self.window_seconds, now.timestamp())
        if original is not None and original != notification_id:
            logger.info(
                "Duplicate of %s suppressed (fingerprint %s)", original, fp[:12],
                extra={"notification_id": notification_id},
            )
            return DedupResult(fingerprint=fp, is_duplicate=True, original_id=original)
        return DedupResult(fingerprint=fp)

    def release(self, fp: str, notification_id: str) -> None:
        self.store.release(fp, notification_id)
