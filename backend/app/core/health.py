"""
Health check aggregation — deep health check for all subsystems.

Checks:
    • Record store connectivity (SQL backend only)
    • Counter store connectivity (Redis backend only)
    • Provider circuits per channel
    • Queue depth
    • Worker pool liveness

The report backs /health (full detail) and /health/ready (503 when unhealthy).

Provider status per channel:

    all circuits closed            → healthy
    some open / half-open          → degraded
    no enabled candidate left      → unhealthy
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.core.config import Settings, settings
from backend.app.delivery.models import Channel

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


def check_store(cfg: Settings) -> ComponentHealth:
    """Round-trip to the record store."""
    comp = ComponentHealth(name="store")
    start = time.monotonic()
    comp.details = {"backend": cfg.STORE_BACKEND}
    try:
        if cfg.STORE_BACKEND == "sql":
            from backend.app.core.database import get_session_factory
            from backend.app.delivery.sql import ping

            ping(get_session_factory())
            comp.details["url"] = cfg.DATABASE_URL.split("@")[-1]
        comp.message = "Store reachable"
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_counters(cfg: Settings) -> ComponentHealth:
    """Redis ping when rate buckets and fingerprints live there."""
    comp = ComponentHealth(name="counters")
    start = time.monotonic()
    comp.details = {"backend": cfg.COUNTER_BACKEND}
    if cfg.COUNTER_BACKEND == "redis":
        try:
            import redis

            redis.Redis.from_url(cfg.REDIS_URL, socket_timeout=2).ping()
            comp.message = "Redis reachable"
        except Exception as e:
            # counters fail open, so delivery continues
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Redis unavailable: {e}"
    else:
        comp.message = "In-process counters"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_providers(engine) -> ComponentHealth:
    """Circuit state per channel."""
    comp = ComponentHealth(name="providers")
    start = time.monotonic()

    rows = engine.provider_health()
    by_channel: Dict[str, Dict[str, int]] = {}
    for row in rows:
        if not row["enabled"]:
            continue
        counts = by_channel.setdefault(row["channel"], {"closed": 0, "open": 0, "half_open": 0})
        counts[row["state"]] += 1

    unavailable = [ch for ch in by_channel if not engine.registry.has_available(Channel(ch))]
    tripped = [ch for ch, c in by_channel.items() if c["open"] or c["half_open"]]

    if unavailable:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = f"No available provider for: {', '.join(sorted(unavailable))}"
    elif tripped:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Circuits tripped on: {', '.join(sorted(tripped))}"
    else:
        comp.message = f"{len(rows)} providers healthy"

    comp.details = {"channels": by_channel}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_queue(engine) -> ComponentHealth:
    comp = ComponentHealth(name="queue")
    start = time.monotonic()
    try:
        depth = engine.get_queue_depth()
        comp.details = {"depth": depth}
        comp.message = f"{depth} pending"
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_workers(engine, cfg: Settings) -> ComponentHealth:
    comp = ComponentHealth(name="workers")
    pool = engine.workers
    if not cfg.START_WORKERS:
        comp.message = "Workers run out of process"
    elif pool is None or not pool.is_running:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Worker pool not running"
    else:
        comp.message = f"{pool.concurrency} workers running"
    return comp


def run_health_check(engine, cfg: Optional[Settings] = None) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    cfg = cfg or settings
    report = HealthReport(
        version=cfg.APP_VERSION,
        environment=cfg.ENVIRONMENT,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components = [
        check_store(cfg),
        check_counters(cfg),
        check_providers(engine),
        check_queue(engine),
        check_workers(engine, cfg),
    ]

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
