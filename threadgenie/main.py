"""
Thread Genie Patch Studio - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- In-memory edit sessions with a background reaper
"""

import time
import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from threadgenie.core.config import settings
from threadgenie.core.logging import setup_logging, get_logger
from threadgenie.core.exceptions import register_exception_handlers
from threadgenie.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from threadgenie.api.v1 import api_v1_router
from threadgenie.api.dependencies import build_credential_gate, build_generative_client
from threadgenie.modules.session.registry import SessionRegistry


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


async def reap_sessions(registry: SessionRegistry, interval_seconds: float):
    """Purge expired sessions every interval_seconds until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        registry.purge_expired()


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

    app.state.sessions = SessionRegistry()
    app.state.credentials = build_credential_gate()
    app.state.generative_client = build_generative_client(app.state.credentials)

    logger.info(
        "generative_client_ready",
        client=type(app.state.generative_client).__name__,
        has_credential=app.state.credentials.has_credential()
    )

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    reaper = asyncio.create_task(
        reap_sessions(app.state.sessions, settings.SESSION_REAP_INTERVAL_SECONDS)
    )

    startup_time = time.time() - startup_start
    logger.info("application_ready", startup_time_seconds=startup_time)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    reaper.cancel()
    with suppress(asyncio.CancelledError):
        await reaper
    logger.info("application_shutdown_complete", discarded_sessions=len(app.state.sessions))


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Turn a photo into an embroidered patch through a chain of generative edits.

    - **Embroidery**: Gemini style transfer followed by chroma-key background removal
    - **Edit**: free-text instructions applied to the current image
    - **Upscale**: 4K re-render with the Gemini Pro image model
    - **History**: linear undo and reset back to the uploaded original

    All endpoints are versioned under `/api/v1/`.
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
async def health(request: Request):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "active_sessions": len(request.app.state.sessions)
    }


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "threadgenie.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )
