"""
Chunked Image Upscaler - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Local artifact storage
"""

import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from chunked_upscaler.core.config import settings
from chunked_upscaler.core.logging import setup_logging, get_logger
from chunked_upscaler.core.exceptions import register_exception_handlers
from chunked_upscaler.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from chunked_upscaler.api.v1 import api_v1_router
from chunked_upscaler.api.dependencies import get_job_controller, shutdown_job_controller


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON,
    log_file=settings.LOG_FILE
)
logger = get_logger(__name__)


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
        environment=settings.ENVIRONMENT
    )

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    controller = get_job_controller()
    logger.info(
        "pipeline_ready",
        tile_size=settings.TILE_SIZE,
        overlap=settings.TILE_OVERLAP,
        max_workers=controller.max_workers
    )

    startup_time = time.time() - startup_start
    logger.info("application_ready", startup_time_seconds=startup_time)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    shutdown_job_controller()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Tile-based image upscaling service:

    - **Chunked processing**: overlapping 512px tiles, seam blending on stitch
    - **Detail enhancement**: nearest-neighbour enlargement + edge-adaptive filter
    - **Job control**: progress, ETA, cooperative cancellation
    - **Observability**: Structured logging, Prometheus metrics

    ## Job phases

    `idle -> planning -> tiling -> stitching -> finalizing -> completed`,
    with `cancelled` and `failed` reachable from any running phase.
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


@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps job ids out of metric labels
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

# Serve stored artifacts
if os.path.isdir(settings.LOCAL_STORAGE_PATH):
    app.mount("/static/storage", StaticFiles(directory=settings.LOCAL_STORAGE_PATH), name="storage")


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


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "chunked_upscaler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
