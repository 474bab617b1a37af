"""
Garment Studio Pipeline - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Shared httpx client for upstream inference services
"""

import time
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from garment_studio.core.config import settings
from garment_studio.core.logging import setup_logging, get_logger
from garment_studio.core.exceptions import register_exception_handlers
from garment_studio.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from garment_studio.api.v1 import api_v1_router


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    # One connection pool for all upstream services
    app.state.http = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    # Redis is the Celery broker for batch processing
    app.state.redis = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True
    )

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    missing = [
        name for name in ("GEMINI_API_KEY", "FAL_KEY", "REPLICATE_API_TOKEN")
        if not getattr(settings, name)
    ]
    if missing:
        logger.warning("service_credentials_missing", missing=missing)

    logger.info("application_ready")

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await app.state.http.aclose()
    await app.state.redis.aclose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Garment photo editing pipeline over hosted inference services:

    - **Cutout**: Foreground segmentation (BiRefNet)
    - **Edit**: Instruction-driven generative edit with garment guardrails
    - **Harmonize**: Relighting / shadows (best-effort)
    - **Upscale**: Real-ESRGAN 2x (best-effort)
    - **Observability**: Structured logging, Prometheus metrics

    ## API Versioning

    All endpoints are versioned under `/api/v1/`
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

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
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
    """Readiness check - broker reachable and service credentials configured."""
    checks = {
        "redis": False,
        "credentials": bool(settings.GEMINI_API_KEY and settings.FAL_KEY and settings.REPLICATE_API_TOKEN),
    }

    try:
        await request.app.state.redis.ping()
        checks["redis"] = True
    except (RedisError, OSError) as e:
        logger.warning("readiness_redis_unavailable", error=str(e))

    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "ready": all_ready,
            "checks": checks,
        }
    )


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "garment_studio.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
