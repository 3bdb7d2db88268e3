"""
FastAPI application main module.
Marketing dashboard backend: Ortto reports served from a partial cache with background refill.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from app import database
from app.api.v1 import api_router
from app.config import CORS_ORIGINS, LOG_FILE, LOG_LEVEL, SCHEDULER_SETTINGS
from app.integrations.base import UpstreamAPIError
from app.integrations.ortto import OrttoClient
from app.jobs.refill_worker import RefillRegistry
from app.jobs.scheduler import start_scheduler, stop_scheduler
from app.utils import setup_logging, get_logger

# Setup logging before creating the app
setup_logging(
    log_level=LOG_LEVEL,
    log_file=LOG_FILE,
    enable_console=True
)

logger = get_logger(__name__)


async def _prefetch_on_startup(source) -> None:
    try:
        count = await source.prefetch_catalog()
        logger.info("Startup catalog prefetch complete", names=count)
    except UpstreamAPIError as e:
        logger.warning("Startup catalog prefetch failed", error=str(e), status_code=e.status_code)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Application startup initiated")

    scheduler = None
    prefetch_task = None
    try:
        logger.info("Creating database tables")
        database.Base.metadata.create_all(bind=database.engine)
        logger.info("Database tables created successfully")

        # tests may install their own source before startup
        if getattr(app.state, "report_source", None) is None:
            app.state.report_source = OrttoClient()  # type: ignore[attr-defined]
        if getattr(app.state, "refill_registry", None) is None:
            app.state.refill_registry = RefillRegistry()  # type: ignore[attr-defined]
        source = app.state.report_source

        scheduler = start_scheduler(source)
        if SCHEDULER_SETTINGS["prefetch_on_startup"]:
            prefetch_task = asyncio.create_task(_prefetch_on_startup(source), name="catalog_prefetch")
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if prefetch_task is not None and not prefetch_task.done():
            prefetch_task.cancel()
        registry = getattr(app.state, "refill_registry", None)
        if registry is not None:
            await registry.shutdown()
        stop_scheduler(scheduler)
        source = getattr(app.state, "report_source", None)
        if source is not None:
            await source.close()
        logger.info("Application shutdown completed")

app = FastAPI(
    title="Marketing Dashboard API",
    description="""
    Campaign and journey reports from Ortto, served from a per-user partial cache.

    ## Features
    * **Partial cache** - Cached reports are returned immediately, missing ones are filled in the background
    * **Polling** - `GET /api/reports/poll-cached-reports` reports refill progress
    * **Upstream pacing** - Ortto calls are queued, spaced and retried after 429 responses
    * **Rate-limit tracking** - Throttled items are quarantined for five minutes

    ## Authentication
    Use Bearer token authentication:
    ```
    Authorization: Bearer your_api_key_here
    ```
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

SERVICE_NAME = "marketing-dashboard-api"
SERVICE_VERSION = "1.0.0"


def _service_info() -> dict:
    return {"service": SERVICE_NAME, "version": SERVICE_VERSION, "timestamp": time.time()}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error_response(request: Request, status_code: int, message, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, **extra, "request_id": _request_id(request)},
    )


@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """Assign X-Request-ID, time the request and log both ends of it."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()
    route = f"{request.method} {request.url.path}"

    logger.debug(
        "Request started",
        route=route,
        query=request.url.query or None,
        client=request.client.host if request.client else "unknown",
        request_id=request_id,
    )

    response = await call_next(request)
    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(elapsed_ms)
    response.headers["X-Content-Type-Options"] = "nosniff"

    logger.info(
        "Request completed",
        route=route,
        status_code=response.status_code,
        process_time_ms=elapsed_ms,
        request_id=request_id,
    )
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        path=request.url.path,
        request_id=_request_id(request),
    )
    return _error_response(request, 422, "Request validation failed", details=exc.errors())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        request_id=_request_id(request),
    )
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Anything that escaped an endpoint becomes a 500 envelope."""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        request_id=_request_id(request),
        exc_info=True,
    )
    return _error_response(request, 500, "Internal server error")


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Liveness probe; does not touch the database or Ortto."""
    return {"status": "healthy", **_service_info()}


def _database_check() -> str:
    db = database.SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return "healthy"
    except SQLAlchemyError as e:
        return f"unhealthy: {e}"
    finally:
        db.close()


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check():
    """Database reachability, upstream queue counters and running refill workers."""
    source = getattr(app.state, "report_source", None)
    registry = getattr(app.state, "refill_registry", None)
    checks = {
        "database": _database_check(),
        "upstream": source.snapshot() if source is not None else "not initialized",
        "refill_workers": registry.running() if registry is not None else [],
    }
    degraded = checks["database"] != "healthy" or source is None
    return {"status": "degraded" if degraded else "healthy", **_service_info(), "checks": checks}


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "Marketing Dashboard API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api",
    }


app.include_router(api_router, prefix="/api")

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True, reload_dirs=["app"])
