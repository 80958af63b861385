"""
models.py — Shared data structures for the notification delivery engine.

Defines:
    • Channel, Category, NotificationStatus, CircuitState — enums
    • Recipient            — identity + per-channel addresses
    • NotificationRequest  — the caller's immutable submission
    • NotificationRecord   — the durable unit of work
    • QueueItem            — lease-able reference to a record
    • ProviderState        — per (provider, channel) health
    • RateBucket           — token-bucket counter
    • QuietHours / RecipientPreferences — scheduling inputs
    • OutboundMessage / DeliveryResult  — provider contract

═══════════════════════════════════════════════════════════════════════════
RECORD STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    queued ──► scheduled ──► in_flight ──► sent ──► delivered
       │           │           │  ▲  │        └───► bounced
       │           │           │  │  └──► retry_wait ──► in_flight
       │           │           ▼  │            │
       ├──► suppressed        failed ◄─────────┘
       └──► failed

    in_flight ──► in_flight   a crashed worker's lease was reclaimed
    scheduled ──► retry_wait  rate-limited before any provider call

Terminal: delivered, bounced, failed, suppressed. A terminal record never
moves again; any edge not listed raises InvalidTransition.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from backend.app.core.errors import InputError


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Channel(str, Enum):
    """Delivery media."""
    EMAIL = "email"
    SMS   = "sms"
    PUSH  = "push"


class Category(str, Enum):
    """Notification categories; drives quiet-hour and digest policy."""
    TRANSACTIONAL = "transactional"
    MARKETING     = "marketing"
    SYSTEM        = "system"
    SECURITY      = "security"
    ALERT         = "alert"


class NotificationStatus(str, Enum):
    """Record lifecycle states."""
    QUEUED     = "queued"
    SCHEDULED  = "scheduled"
    IN_FLIGHT  = "in_flight"
    RETRY_WAIT = "retry_wait"
    SENT       = "sent"
    DELIVERED  = "delivered"
    BOUNCED    = "bounced"
    FAILED     = "failed"
    SUPPRESSED = "suppressed"


class CircuitState(str, Enum):
    CLOSED    = "closed"     # normal operation
    OPEN      = "open"       # rejecting, no attempts routed here
    HALF_OPEN = "half_open"  # one trial attempt allowed


class Frequency(str, Enum):
    """Recipient delivery frequency preference."""
    IMMEDIATE = "immediate"
    HOURLY    = "hourly"
    DAILY     = "daily"
    WEEKLY    = "weekly"


# Categories that never wait for quiet hours or digests
BYPASS_CATEGORIES: FrozenSet[Category] = frozenset({
    Category.TRANSACTIONAL,
    Category.SYSTEM,
    Category.SECURITY,
    Category.ALERT,
})

# Default queue priority when the caller gives none (higher = sooner)
DEFAULT_PRIORITY: Dict[Category, int] = {
    Category.SECURITY:      10,
    Category.ALERT:         9,
    Category.SYSTEM:        8,
    Category.TRANSACTIONAL: 7,
    Category.MARKETING:     3,
}

TERMINAL_STATUSES: FrozenSet[NotificationStatus] = frozenset({
    NotificationStatus.DELIVERED,
    NotificationStatus.BOUNCED,
    NotificationStatus.FAILED,
    NotificationStatus.SUPPRESSED,
})

CANCELLABLE_STATUSES: FrozenSet[NotificationStatus] = frozenset({
    NotificationStatus.QUEUED,
    NotificationStatus.SCHEDULED,
    NotificationStatus.RETRY_WAIT,
})

_S = NotificationStatus
ALLOWED_TRANSITIONS: Dict[NotificationStatus, FrozenSet[NotificationStatus]] = {
    _S.QUEUED:     frozenset({_S.SCHEDULED, _S.FAILED, _S.SUPPRESSED}),
    _S.SCHEDULED:  frozenset({_S.IN_FLIGHT, _S.RETRY_WAIT, _S.FAILED}),
    _S.IN_FLIGHT:  frozenset({_S.IN_FLIGHT, _S.SENT, _S.RETRY_WAIT, _S.FAILED}),
    _S.RETRY_WAIT: frozenset({_S.IN_FLIGHT, _S.FAILED}),
    _S.SENT:       frozenset({_S.DELIVERED, _S.BOUNCED}),
    _S.DELIVERED:  frozenset(),
    _S.BOUNCED:    frozenset(),
    _S.FAILED:     frozenset(),
    _S.SUPPRESSED: frozenset(),
}


def can_transition(current: NotificationStatus, target: NotificationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")


def _generate_id() -> str:
    return f"ntf_{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


# ═══════════════════════════════════════════════════════════════════════════
# Submission
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Recipient:
    """
    A target user and their contact addresses.

    Attributes
    ----------
    user_id : str
        Stable identity; keys the recipient rate bucket and dedup fingerprint.
    email : str | None
    phone : str | None
        E.164 format (+919876543210).
    push_token : str | None
        Device token (FCM / APNs / VAPID).
    """
    user_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None

    def address_for(self, channel: Channel) -> Optional[str]:
        if channel == Channel.EMAIL:
            return self.email
        if channel == Channel.SMS:
            return self.phone
        if channel == Channel.PUSH:
            return self.push_token
        return None

    def validate(self, channel: Channel) -> str:
        """Return the address for ``channel`` or raise InputError."""
        if not self.user_id:
            raise InputError("Recipient user_id is required", field="recipient.user_id")

        address = self.address_for(channel)
        if not address:
            raise InputError(
                f"Recipient has no {channel.value} address",
                field=f"recipient.{channel.value}",
            )
        if channel == Channel.EMAIL and not _EMAIL_RE.match(address):
            raise InputError("Malformed email address", field="recipient.email", value=address)
        if channel == Channel.SMS and not _E164_RE.match(address):
            raise InputError("Phone number must be E.164", field="recipient.phone", value=address)
        return address


@dataclass(frozen=True)
class NotificationRequest:
    """The caller's submission. Immutable once accepted."""
    recipient: Recipient
    channel: Channel
    template_name: str
    variables: Mapping[str, Any] = field(default_factory=dict)
    category: Category = Category.TRANSACTIONAL
    priority: Optional[int] = None
    dedup_keys: Tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def effective_priority(self) -> int:
        if self.priority is not None:
            return self.priority
        return DEFAULT_PRIORITY.get(self.category, 5)

    def variables_subset(self) -> Dict[str, Any]:
        """Variables that take part in the dedup fingerprint."""
        return {k: self.variables.get(k) for k in sorted(self.dedup_keys)}


# ═══════════════════════════════════════════════════════════════════════════
# Durable Record
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class NotificationRecord:
    """
    The durable unit of work derived from a NotificationRequest.

    Status changes go through the store's ``transition`` so the state machine
    is enforced in one place; ``status_history`` keeps every status observed.
    """
    recipient_id: str
    channel: Channel
    category: Category = Category.TRANSACTIONAL
    template_name: str = ""
    to_address: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    id: str = field(default_factory=_generate_id)
    subject: Optional[str] = None
    body: Optional[str] = None
    status: NotificationStatus = NotificationStatus.QUEUED
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    attempt_count: int = 0
    max_attempts: int = 3
    error: Optional[str] = None
    error_kind: Optional[str] = None
    fingerprint: Optional[str] = None
    duplicate_of: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    not_before: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    bounced_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    status_history: List[NotificationStatus] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.status_history:
            self.status_history.append(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "NotificationRecord":
        """Detached copy safe to hand to callers."""
        return replace(
            self,
            variables=dict(self.variables),
            metadata=dict(self.metadata),
            status_history=list(self.status_history),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "channel": self.channel.value,
            "category": self.category.value,
            "template_name": self.template_name,
            "to_address": self.to_address,
            "priority": self.priority,
            "subject": self.subject,
            "body": self.body,
            "status": self.status.value,
            "provider": self.provider,
            "provider_message_id": self.provider_message_id,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "error": self.error,
            "error_kind": self.error_kind,
            "duplicate_of": self.duplicate_of,
            "created_at": _iso(self.created_at),
            "not_before": _iso(self.not_before),
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "failed_at": _iso(self.failed_at),
            "bounced_at": _iso(self.bounced_at),
            "opened_at": _iso(self.opened_at),
            "clicked_at": _iso(self.clicked_at),
            "status_history": [s.value for s in self.status_history],
        }


@dataclass
class QueueItem:
    """Lease-able reference to a NotificationRecord. Owned by the queue."""
    notification_id: str
    channel: Channel
    priority: int = 5
    next_attempt_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    lease_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_leased(self, now: datetime) -> bool:
        return self.lease_expires_at is not None and self.lease_expires_at > now

    def is_eligible(self, now: datetime) -> bool:
        return self.next_attempt_at <= now and not self.is_leased(now)


# ═══════════════════════════════════════════════════════════════════════════
# Shared Mutable State
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ProviderState:
    """Health of one (provider, channel) pair. Mutated by the circuit breaker."""
    provider: str
    channel: Channel
    enabled: bool = True
    priority: int = 5
    consecutive_failures: int = 0
    circuit_state: CircuitState = CircuitState.CLOSED
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    open_until: Optional[datetime] = None
    trip_count: int = 0
    trial_started_at: Optional[datetime] = None
    success_count: int = 0
    failure_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "channel": self.channel.value,
            "enabled": self.enabled,
            "priority": self.priority,
            "state": self.circuit_state.value,
            "failure_count": self.consecutive_failures,
            "total_successes": self.success_count,
            "total_failures": self.failure_count,
            "last_success_at": _iso(self.last_success_at),
            "last_failure_at": _iso(self.last_failure_at),
            "open_until": _iso(self.open_until),
        }


@dataclass
class RateBucket:
    """Token bucket. Ephemeral; safe to lose on restart."""
    key: str
    capacity: float
    refill_rate: float  # tokens per second
    tokens: float = 0.0
    last_refill_at: float = 0.0  # epoch seconds


# ═══════════════════════════════════════════════════════════════════════════
# Scheduling Inputs
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class QuietHours:
    """Local-time window during which non-urgent sends are deferred."""
    start: time
    end: time
    timezone: str = "UTC"


@dataclass
class RecipientPreferences:
    """Per-recipient delivery preferences (from the preference collaborator)."""
    user_id: str = ""
    quiet_hours: Optional[QuietHours] = None
    frequency: Frequency = Frequency.IMMEDIATE
    timezone: str = "UTC"
    opted_out: FrozenSet[Tuple[Channel, Category]] = frozenset()

    def allows(self, channel: Channel, category: Category) -> bool:
        # transactional mail cannot be opted out of
        if category in (Category.TRANSACTIONAL, Category.SECURITY):
            return True
        return (channel, category) not in self.opted_out


# ═══════════════════════════════════════════════════════════════════════════
# Provider Contract
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class OutboundMessage:
    """What a provider adapter receives."""
    notification_id: str
    channel: Channel
    to_address: str
    subject: Optional[str]
    body: str
    attempt_token: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryResult:
    """Successful provider acceptance."""
    provider: str
    provider_message_id: Optional[str] = None
    response: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

