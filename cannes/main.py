"""Cannes Ranking API - FastAPI Application."""

import logging
from contextlib import asynccontextmanager
from datetime import timezone

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from cannes.middleware.correlation import CorrelationIDFilter

# Configure logging - correlation id ties together the lines of one request
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationIDFilter())

# Suppress noisy loggers - SQLAlchemy is especially chatty
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("asyncio").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cannes.config import get_settings
from cannes.api.v1.router import api_router
from cannes.core.errors import RankingError
from cannes.core.session_store import get_session_store
from cannes.core.tasks import TaskManager
from cannes.db.database import init_db
from cannes.middleware import CorrelationIDMiddleware
from cannes.services.ranking_service import get_ranking_service

logger = logging.getLogger(__name__)
settings = get_settings()

# Rate limiter - 100 requests per minute per IP for general endpoints
limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])

scheduler = AsyncIOScheduler(
    timezone=timezone.utc,
    job_defaults={
        # Run a missed job once when we come back instead of skipping it
        "misfire_grace_time": 60 * 60,
        "coalesce": True,
        # Avoid overlapping runs if a job takes longer than its interval
        "max_instances": 1,
    },
)
task_manager = TaskManager.get_instance()


async def run_outbox_drain():
    """Apply aggregate deltas that were not applied right after their operation."""
    try:
        applied = await get_ranking_service().aggregates.drain_pending()
        if applied:
            logger.info(f"Scheduled drain applied {applied} pending deltas")
    except Exception as e:
        logger.error(f"Scheduled outbox drain failed: {type(e).__name__}: {e}")


async def run_nightly_recompute():
    """Rebuild every aggregate from the rankings to correct any drift."""
    try:
        count = await get_ranking_service().aggregates.recompute_all()
        logger.info(f"Nightly recompute finished for {count} titles")
    except Exception as e:
        logger.error(f"Nightly recompute failed: {type(e).__name__}: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    await init_db()

    # Deltas left behind by a crash or restart
    task_manager.create_task(run_outbox_drain(), name="startup_outbox_drain")

    scheduler.add_job(
        run_outbox_drain,
        CronTrigger(minute=settings.outbox_drain_minutes),
        id="outbox_drain",
        replace_existing=True,
    )
    scheduler.add_job(
        run_nightly_recompute,
        CronTrigger(hour=settings.recompute_hour, minute=0),
        id="nightly_recompute",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started - outbox drain '{settings.outbox_drain_minutes}' min, "
        f"aggregate recompute at {settings.recompute_hour:02d}:00 UTC"
    )

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await task_manager.cancel_all(timeout=10.0)
    scheduler.shutdown()
    service = get_ranking_service()
    await service.notifier.close()
    await service.identity.close()
    await get_session_store().close()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Comparison-based personal rankings and community ratings for movies and TV",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(RankingError)
async def ranking_error_handler(request: Request, exc: RankingError):
    """Ranking errors are recoverable; report them with their HTTP status."""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


# CORS middleware - restricted methods and headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "X-User-ID"],
    expose_headers=["X-Correlation-ID"],
)

# Correlation ID middleware for request tracing
app.add_middleware(CorrelationIDMiddleware)

# Include API routes
app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
