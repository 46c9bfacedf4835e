"""
Background Remover & Flipper - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Storage abstraction (local filesystem + Supabase Storage)
- Pipeline dispatch (inline, background task or Celery) and expiry cleanup
"""

import asyncio
import time
from contextlib import asynccontextmanager
from pathlib import Path

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text

from bgflip.api.dependencies import get_background_remover, get_processor, get_storage
from bgflip.api.v1 import api_v1_router
from bgflip.core.config import settings
from bgflip.core.database import async_session_maker, create_db_and_tables, engine
from bgflip.core.exceptions import BgFlipError, register_exception_handlers
from bgflip.core.logging import get_logger, setup_logging
from bgflip.core.metrics import http_request_duration_seconds, http_requests_total, set_app_info
from bgflip.modules.images.repository import ImageRepository, JobStatusStore
from bgflip.modules.images.service import ImageJobService
from bgflip.pipeline.dispatcher import DispatchMode, PipelineDispatcher
from bgflip.pipeline.runner import ImagePipeline


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


def build_dispatcher() -> PipelineDispatcher:
    mode = settings.PIPELINE_DISPATCH_MODE
    if mode.lower() == DispatchMode.CELERY.value:
        return PipelineDispatcher(mode)

    pipeline = ImagePipeline(
        processor=get_processor(),
        storage=get_storage(),
        status_store=JobStatusStore(async_session_maker),
        config=settings.pipeline_config(),
    )
    return PipelineDispatcher(mode, pipeline, get_background_remover().remove_background)


async def run_cleanup_sweeper(interval_seconds: float):
    """Delete expired jobs every interval_seconds until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            async with async_session_maker() as session:
                service = ImageJobService(
                    repository=ImageRepository(session),
                    storage=get_storage(),
                    processor=get_processor(),
                    background_remover=get_background_remover(),
                    dispatcher=None,
                    config=settings.pipeline_config(),
                )
                await service.cleanup_expired()
        except BgFlipError as e:
            logger.error("cleanup_sweep_failed", error=e.message)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        dispatch_mode=settings.PIPELINE_DISPATCH_MODE
    )

    # Initialize database
    await create_db_and_tables()
    logger.info("database_initialized")

    # Broker connection only matters when jobs go through Celery
    app.state.redis = None
    if settings.PIPELINE_DISPATCH_MODE.lower() == DispatchMode.CELERY.value:
        app.state.redis = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True
        )
        logger.info("redis_connected", url=settings.REDIS_URL)

    app.state.dispatcher = build_dispatcher()

    sweeper = None
    if settings.CLEANUP_INTERVAL_SECONDS > 0 and app.state.dispatcher.mode != DispatchMode.CELERY:
        sweeper = asyncio.create_task(
            run_cleanup_sweeper(settings.CLEANUP_INTERVAL_SECONDS), name="cleanup-sweeper"
        )
        logger.info("cleanup_sweeper_started", interval_seconds=settings.CLEANUP_INTERVAL_SECONDS)

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    startup_time = time.time() - startup_start
    logger.info("application_ready", startup_time_seconds=startup_time)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    if sweeper is not None:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
    await app.state.dispatcher.shutdown(settings.SHUTDOWN_GRACE_SECONDS)
    if app.state.redis is not None:
        await app.state.redis.aclose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Upload an image, get it back with the background removed and flipped
    horizontally.

    ## API Versioning

    All endpoints are versioned under `/api/v1/`

    ## Pipeline Phases

    1. **Resize** - fit within the maximum dimensions
    2. **Background removal** - remove.bg / Clipdrop
    3. **Flip** - horizontal mirror
    4. **Encode** - PNG or WebP
    5. **Persist** - store and publish the processed image

    Poll `GET /api/v1/images/{id}` until the status is `completed` or `failed`.
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Static Files
# =============================================================================

# Serves LocalStorage blobs at the public URLs it hands out
if settings.STORAGE_BACKEND.lower() == "local":
    storage_dir = Path(settings.LOCAL_STORAGE_PATH)
    storage_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/static/storage", StaticFiles(directory=str(storage_dir)), name="storage")


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
        "metrics": "/api/v1/metrics"
    }


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """Readiness check - verifies dependencies are available."""
    checks = {"database": False}

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.warning("readiness_database_unavailable", error=str(e))

    if request.app.state.redis is not None:
        checks["redis"] = False
        try:
            await request.app.state.redis.ping()
            checks["redis"] = True
        except Exception as e:
            logger.warning("readiness_redis_unavailable", error=str(e))

    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "ready": all_ready,
            "checks": checks,
            "dispatch_mode": request.app.state.dispatcher.mode.value
        }
    )


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bgflip.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
