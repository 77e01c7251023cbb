from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import TimeoutError as SQLAlchemyTimeoutError
from custody.api.v1.routes import router as api_router
from custody.core.config import get_settings, parse_cors_origins
import logging
import time
from custody.core.database import Base, engine, SessionLocal
from custody.core.errors import (
    AlreadyClosed,
    ConcurrentUpdate,
    ConfigurationError,
    CustodyError,
    DuplicateEvent,
    InsufficientFunds,
    PositionNotFound,
    ProviderUnavailable,
    StakingUnavailable,
)
from custody.core.logging import configure_logging
from custody.dependencies import get_reconciler
from custody.jobs.scheduler import CustodyScheduler
from custody.middlewares.rate_limit import limiter


settings = get_settings()

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
_started_at = time.time()
_scheduler: CustodyScheduler | None = None

ERROR_STATUS = {
    InsufficientFunds: 400,
    StakingUnavailable: 400,
    PositionNotFound: 404,
    AlreadyClosed: 409,
    ConcurrentUpdate: 409,
    DuplicateEvent: 409,
    ConfigurationError: 422,
    ProviderUnavailable: 503,
}


@app.exception_handler(CustodyError)
async def custody_error_handler(request, exc: CustodyError):
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(SQLAlchemyTimeoutError)
async def sqlalchemy_timeout_handler(request, exc):
    logger.warning("Database pool timeout on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Service is busy. Please retry in a moment."},
    )


allow_origins = parse_cors_origins(settings.cors_origins or "")
logger.info("CORS allow_origins=%s", allow_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.on_event("startup")
def startup():
    global _scheduler
    if settings.auto_create_tables:
        # Optional local fallback for fresh environments.
        try:
            Base.metadata.create_all(bind=engine)
        except Exception as exc:
            logger.warning("DB unavailable on startup, skipping table creation: %s", exc)

    if settings.reconcile_enabled:
        _scheduler = CustodyScheduler(SessionLocal, get_reconciler(), settings)
        _scheduler.start()


@app.on_event("shutdown")
def shutdown():
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown()
        _scheduler = None


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/healthz")
def healthz():
    # Liveness: process is up.
    return {
        "status": "ok",
        "uptime_seconds": int(max(0, time.time() - _started_at)),
        "service": settings.app_name,
        "scheduler_running": bool(_scheduler and _scheduler.scheduler.running),
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
