"""
Shared fixtures for the delivery engine tests.

    clock          — controllable UTC clock (call it for "now", advance it)
    registry       — empty ProviderRegistry on the fake clock
    engine         — in-memory NotificationEngine with a welcome template
    session_factory — SQLite in-memory sessions with all tables created
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.database import Base, create_engine_for
from backend.app.delivery.circuit_breaker import CircuitBreaker
from backend.app.delivery.engine import NotificationEngine
from backend.app.delivery.queue import InMemoryQueue
from backend.app.delivery.registry import ProviderRegistry
from backend.app.delivery.store import InMemoryNotificationStore
from backend.app.delivery.templates import JinjaTemplateRenderer


class FakeClock:
    """Callable clock; tests move time explicitly."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock) -> ProviderRegistry:
    breaker = CircuitBreaker(failure_threshold=3, cool_down_seconds=60, max_cool_down_seconds=600)
    return ProviderRegistry(breaker, clock=clock)


@pytest.fixture
def renderer() -> JinjaTemplateRenderer:
    r = JinjaTemplateRenderer()
    r.register("welcome", body="Hi {{ name }}, welcome aboard.", subject="Welcome {{ name }}")
    r.register("otp", body="Your code is {{ code }}")
    return r


@pytest.fixture
def engine(clock, registry, renderer) -> NotificationEngine:
    eng = NotificationEngine(
        InMemoryNotificationStore(clock=clock),
        InMemoryQueue(),
        registry,
        renderer,
        clock=clock,
        max_attempts=3,
        dispatcher_options={"jitter": 0.0, "base_delay": 1.0, "max_delay": 300.0, "provider_timeout": 0},
    )
    yield eng
    eng.shutdown()


@pytest.fixture
def session_factory():
    from sqlalchemy.orm import sessionmaker

    # registers the tables on Base.metadata
    from backend.app.delivery import sql  # noqa: F401

    db = create_engine_for("sqlite://")
    Base.metadata.create_all(db)
    yield sessionmaker(db, expire_on_commit=False)
    db.dispose()
