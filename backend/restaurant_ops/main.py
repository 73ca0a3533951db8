"""FastAPI application entry point."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.engine import make_url

from restaurant_ops.api.routes import api_router
from restaurant_ops.core.config import settings
from restaurant_ops.core.feature_flags import is_enabled
from restaurant_ops.core.observability import CorrelationIdMiddleware, RequestLoggingMiddleware
from restaurant_ops.core.rate_limit import limiter
from restaurant_ops.db.base import Base
from restaurant_ops.db.session import SessionLocal, engine
from restaurant_ops.services.mode_expiry_sweep import run_mode_expiry_sweep
from restaurant_ops.services.scheduler_service import scheduler

import restaurant_ops.models  # noqa: F401  register tables on Base.metadata

# Configure logging - use JSON format in production, human-readable in dev
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:
    import json as _json
    import sys

    class JSONFormatter(logging.Formatter):
        def format(self, record):
            return _json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Restaurant Operations API")

    # Create tables if they don't exist (for SQLite dev)
    if settings.database_url.startswith("sqlite"):
        db_path = make_url(settings.database_url).database
        if db_path and db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    scheduler_task = None
    if is_enabled("MODE_EXPIRY_SWEEP"):
        scheduler.add_task(
            "mode_expiry_sweep",
            run_mode_expiry_sweep,
            settings.mode_expiry_sweep_interval_seconds,
        )
        scheduler_task = asyncio.create_task(scheduler.start())
        logger.info("Task scheduler started")

    yield

    if scheduler_task is not None:
        scheduler.stop()
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
        scheduler.remove_task("mode_expiry_sweep")

    logger.info("Shutting down Restaurant Operations API")


app = FastAPI(
    title="Restaurant Operations API",
    description="Operational modes (peak demand, special hours) and daily cost analysis",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Request logging runs inside the correlation ID middleware (Starlette LIFO order)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)

# CORS middleware - added last so it runs first
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Correlation-ID"],
    expose_headers=["X-Correlation-ID"],
    max_age=600,
)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


@app.get("/health/ready")
def readiness_check():
    """Readiness check including database connectivity."""
    checks = {"database": "unknown", "scheduler": "disabled"}

    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"
    finally:
        if db:
            db.close()

    if is_enabled("MODE_EXPIRY_SWEEP"):
        checks["scheduler"] = "healthy"

    return {
        "status": "ready" if checks["database"] == "healthy" else "degraded",
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "tasks": scheduler.get_status(),
    }
