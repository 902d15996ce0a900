"""
Cutout Orders - Main Application

FastAPI application that receives order-creation events and runs the
background removal fulfillment pipeline:
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Storage abstraction (local + GCS)
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from cutout_orders.core.config import settings
from cutout_orders.core.logging import setup_logging, get_logger
from cutout_orders.core.exceptions import register_exception_handlers
from cutout_orders.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from cutout_orders.core.storage import StorageFactory
from cutout_orders.modules.orders.repository import SQLOrderStore
from cutout_orders.api.dependencies import build_http_client, build_order_store, build_orchestrator
from cutout_orders.api.storage import router as storage_router
from cutout_orders.api.v1 import api_v1_router


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

    app.state.order_store = build_order_store()
    if isinstance(app.state.order_store, SQLOrderStore):
        from cutout_orders.core.database import create_db_and_tables
        await create_db_and_tables()
        logger.info("database_initialized")

    app.state.storage = StorageFactory.get_storage()
    app.state.http_client = build_http_client()
    app.state.orchestrator = build_orchestrator(
        app.state.http_client,
        app.state.order_store,
        app.state.storage
    )

    set_app_info(version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
    logger.info("application_ready")

    yield

    logger.info("application_shutting_down")
    await app.state.http_client.aclose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="Background removal order fulfillment: matting, watermark preview, thumbnail.",
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
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


register_exception_handlers(app)

app.include_router(api_v1_router)
app.include_router(storage_router, tags=["storage"])


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
        "cutout_orders.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
