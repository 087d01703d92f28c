"""
QuantForge data API.
The lifespan owns one DataLayer; routes reach it through dependencies.
"""
import logging
import math
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import Settings, get_settings
from routers import monitoring, robots
from services.data_layer import DataLayer
from utils.exceptions import (
    BackendAuthError,
    BackendError,
    CircuitOpenError,
    NotFoundError,
    QuantForgeError,
    QueryValidationError,
    is_temporarily_unavailable,
)
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = "1"

DataLayerFactory = Callable[[Settings], Awaitable[DataLayer]]


def _status_for(exc: QuantForgeError) -> int:
    if is_temporarily_unavailable(exc):
        return 503
    if isinstance(exc, QueryValidationError):
        return 422
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, BackendAuthError):
        return 403
    if isinstance(exc, BackendError):
        return 502
    return 500


async def quantforge_exception_handler(request: Request, exc: QuantForgeError):
    """Map typed data layer errors to HTTP responses."""
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error(f"❌ [API] {request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"[API] {request.method} {request.url.path} → {status_code}: {exc.message}")

    content = {
        "detail": exc.user_message,
        "error_code": exc.error_code,
        "category": exc.category.value,
        "retryable": exc.retryable or status_code == 503,
        "correlation_id": exc.correlation_id,
    }
    if isinstance(exc, QueryValidationError):
        content["details"] = exc.details

    response = JSONResponse(status_code=status_code, content=content)
    if status_code == 503:
        retry_after = RETRY_AFTER_SECONDS
        if isinstance(exc, CircuitOpenError) and exc.retry_after_ms > 0:
            retry_after = str(math.ceil(exc.retry_after_ms / 1000))
        response.headers["Retry-After"] = retry_after
    return response


async def global_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error": "internal_server_error"},
    )


def create_app(
    settings: Optional[Settings] = None,
    data_layer_factory: Optional[DataLayerFactory] = None,
) -> FastAPI:
    """Build the FastAPI app. The DataLayer is created inside the lifespan, on the serving loop."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_settings = settings or get_settings()
        setup_logging(app_settings.log_level, app_settings.log_file)
        logger.info(f"🚀 [STARTUP] {app_settings.service_name} v{app_settings.service_version}")
        logger.info(f"🔧 [STARTUP] Configuration: {app_settings.get_safe_config()}")

        factory = data_layer_factory or DataLayer.create
        start_time = time.time()
        data_layer = await factory(app_settings)
        app.state.data_layer = data_layer
        logger.info(f"✅ [STARTUP] Data layer initialized in {(time.time() - start_time) * 1000:.2f}ms")

        try:
            yield
        finally:
            logger.info("👋 [SHUTDOWN] Beginning graceful shutdown...")
            app.state.data_layer = None
            await data_layer.shutdown()

    app = FastAPI(
        title="QuantForge Data API",
        description="Cached, pooled access to QuantForge trading robots",
        lifespan=lifespan,
    )
    app.state.data_layer = None

    @app.middleware("http")
    async def response_time_header(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Response-Time"] = f"{(time.perf_counter() - started) * 1000:.2f}ms"
        return response

    app.add_exception_handler(QuantForgeError, quantforge_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(monitoring.router)
    app.include_router(robots.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, log_level="info")
