import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import TimeoutError as SQLAlchemyTimeoutError

from panel.api.v1.routes import router as api_router
from panel.core.config import get_settings
from panel.core.database import Base, SessionLocal, engine
from panel.core.errors import BillingError
from panel.core.logging import configure_logging
from panel.middlewares.rate_limit import limiter
from panel.workers.scheduler import LifecycleScheduler

settings = get_settings()

configure_logging()
logger = logging.getLogger(__name__)
_started_at = time.time()


def _ensure_tables() -> None:
    if not settings.auto_create_tables:
        return
    # Optional local fallback for fresh environments.
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as exc:
        logger.warning("DB unavailable on startup, skipping table creation: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _ensure_tables()
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = LifecycleScheduler()
        scheduler.start()
    else:
        logger.info("Scheduler disabled on this instance; serving HTTP only")
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=True)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(SQLAlchemyTimeoutError)
async def sqlalchemy_timeout_handler(request, exc):
    logger.warning("Database pool timeout on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Service is busy. Please retry in a moment."},
    )


@app.exception_handler(BillingError)
async def billing_error_handler(request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/healthz")
def healthz():
    # Liveness: process is up.
    scheduler = getattr(app.state, "scheduler", None)
    running = scheduler is not None and scheduler.running
    return {
        "status": "ok",
        "uptime_seconds": int(max(0, time.time() - _started_at)),
        "service": settings.app_name,
        "scheduler": running,
        "jobs": scheduler.job_status() if running else {},
    }


@app.get("/readyz")
def readyz():
    # Readiness: database is reachable.
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return {
            "status": "ready",
            "uptime_seconds": int(max(0, time.time() - _started_at)),
        }
    except Exception as exc:
        logger.warning("Readiness DB check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "detail": "database_unavailable"},
        )
    finally:
        db.close()
