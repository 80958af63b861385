"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 3102

Or from the project root:
    python -m uvicorn backend.app.main:app --reload

Workers run inside the API process when START_WORKERS is true; set it to
false to run the API and a separate worker deployment against a shared SQL
store and Redis counters.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Delivery engine ──
from backend.app.delivery.engine import NotificationEngine

# ── API routers ──
from backend.app.api.v1.notifications import router as notification_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(
    engine: Optional[NotificationEngine] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the application.

    Parameters
    ----------
    engine : NotificationEngine, optional
        Pre-built engine (tests); otherwise built from settings at startup.
    settings : Settings, optional
    """
    settings = settings or default_settings

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage startup and shutdown events."""
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        if app.state.engine is None:
            app.state.engine = NotificationEngine.from_settings(settings)
        if settings.START_WORKERS:
            app.state.engine.start_workers(
                concurrency=settings.WORKER_CONCURRENCY,
                poll_interval=settings.WORKER_POLL_INTERVAL,
                refresh_interval=settings.PROVIDER_REFRESH_INTERVAL,
            )
        yield
        logger.info("Shutting down %s", settings.APP_NAME)
        app.state.engine.shutdown()
        if settings.STORE_BACKEND == "sql":
            from backend.app.core.database import close_db
            close_db()

    # ── Create application ──

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Multi-channel notification delivery engine. "
            "Accepts email, SMS and push notifications, renders templates, "
            "suppresses duplicates, honours quiet hours and digest "
            "preferences, and delivers through prioritised providers with "
            "per-provider circuit breakers, token-bucket rate limits, "
            "same-attempt failover and exponential-backoff retries."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.settings = settings

    # ── Middleware stack (outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(notification_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "channels": ["email", "sms", "push"],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    def health_check():
        """Deep health check across all subsystems."""
        return run_health_check(app.state.engine, settings).to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness check: is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    def readiness():
        """Kubernetes readiness check: can we serve traffic?"""
        report = run_health_check(app.state.engine, settings)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
