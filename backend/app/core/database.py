"""
Database layer — SQLAlchemy 2.0 engine, sessions and ORM base.

Provides:
    • Lazily created engine and session factory
    • Base model for ORM entities
    • Table creation / disposal for application lifecycle

Workers run in threads, so the engine is synchronous. PostgreSQL
(psycopg) in production, SQLite for development and tests.

Usage:
    from backend.app.core.database import Base, get_session_factory

    class NotificationRow(Base):
        __tablename__ = "notifications"
        id: Mapped[str] = mapped_column(String(40), primary_key=True)

    with get_session_factory().begin() as session:
        session.add(NotificationRow(id="ntf_1"))
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def create_engine_for(url: str, echo: bool = False) -> Engine:
    """Engine with pool options suited to the backend."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty DB
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        echo=echo,
    )


# ── Engine ──
def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_engine_for(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        logger.info("Database engine created: %s", settings.DATABASE_URL.split("@")[-1])
    return _engine


# ── Session Factory ──
def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


# ── Lifecycle ──
def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # import for side effect: registers the tables on Base.metadata
    from backend.app.delivery import sql  # noqa: F401

    Base.metadata.create_all(engine or get_engine())
    logger.info("Database tables initialised")


def close_db() -> None:
    """Dispose engine connections."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")
