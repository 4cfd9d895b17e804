import asyncio
import contextvars
import logging
import time
import traceback
import uuid

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinic_outreach.config import get_settings
from clinic_outreach.exceptions import InvalidInputError, InvalidStateError, NotFoundError

settings = get_settings()
logger = logging.getLogger(__name__)

_is_production = settings.APP_ENV == "production"

# ---------------------------------------------------------------------------
# Request ID context, propagated into every log record
# ---------------------------------------------------------------------------
request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class _RequestIdFilter(logging.Filter):
    """Inject the current request ID into every log record."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get("-")
        return True


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s",
)
# Handler-level so records from every logger get the field before formatting
for _handler in logging.getLogger().handlers:
    _handler.addFilter(_RequestIdFilter())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the offer expiry sweep and tear down the pool on shutdown."""
    from clinic_outreach.jobs import expiry_sweep_loop

    sweep_task = None
    if settings.EXPIRY_SWEEP_INTERVAL_SECONDS > 0:
        sweep_task = asyncio.create_task(expiry_sweep_loop(settings.EXPIRY_SWEEP_INTERVAL_SECONDS))
    else:
        logger.info("expiry_sweep_loop: disabled; run `python -m clinic_outreach.jobs expire` from cron")

    logger.info("Application startup complete")
    yield

    logger.info("Shutting down, cancelling background tasks...")
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            logger.info("expiry_sweep_loop: stopped")

    try:
        from clinic_outreach.database import engine
        await engine.dispose()
        logger.info("Database connection pool disposed")
    except Exception as exc:
        logger.warning("Error disposing database engine: %s", exc)

    logger.info("Shutdown complete")


app = FastAPI(
    title="Clinic Outreach API",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if _is_production else "/docs",
    redoc_url=None if _is_production else "/redoc",
    openapi_url=None if _is_production else "/openapi.json",
)


# ---------------------------------------------------------------------------
# Exception handlers: domain errors map to 4xx, anything else is a logged 500
# ---------------------------------------------------------------------------
@app.exception_handler(NotFoundError)
async def _not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(InvalidStateError)
async def _invalid_state_handler(request: Request, exc: InvalidStateError):
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": exc.message})


@app.exception_handler(InvalidInputError)
async def _invalid_input_handler(request: Request, exc: InvalidInputError):
    return JSONResponse(status_code=400, content={"detail": exc.message})


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception on %s %s: %s\n%s",
        request.method,
        request.url.path,
        exc,
        traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Middleware stack (last added = outermost)
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",")],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "X-Requested-With", "X-Tenant-Id", "X-Actor-Id", "X-Request-ID"],
)


@app.middleware("http")
async def _request_id(request: Request, call_next):
    """Attach an X-Request-ID to every response and to every log record of the request."""
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    token = request_id_ctx.set(rid)
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
    finally:
        request_id_ctx.reset(token)


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from clinic_outreach.routes.waitlist import router as waitlist_router
from clinic_outreach.routes.recall import router as recall_router
from clinic_outreach.routes.integration import router as integration_router

app.include_router(waitlist_router, prefix="/api/waitlist", tags=["Waitlist"])
app.include_router(recall_router, prefix="/api")
app.include_router(integration_router, prefix="/api")


@app.get("/api/health")
async def health_check():
    """Verifies DB connectivity; 503 when the database is unreachable."""
    from clinic_outreach.database import AsyncSessionLocal
    from clinic_outreach.jobs import job_health
    from sqlalchemy import text

    db_ok = False
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            db_ok = True
    except Exception as e:
        logger.warning("health_check: database connection failed: %s", e)

    if not db_ok:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "database": "unavailable"},
        )

    sweep_status = "disabled" if settings.EXPIRY_SWEEP_INTERVAL_SECONDS <= 0 else "unknown"
    last_ok = job_health.get("expiry_sweep")
    if last_ok:
        age = time.time() - last_ok
        stale_after = max(settings.EXPIRY_SWEEP_INTERVAL_SECONDS * 3, 60)
        sweep_status = "ok" if age < stale_after else f"stale ({int(age)}s ago)"

    return {"status": "ok", "database": "ok", "expiry_sweep": sweep_status}
