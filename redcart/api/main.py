"""
Main FastAPI application.

Checkout, M-Pesa payment and receipt API with:
- Error handling mapped from the application error taxonomy
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from redcart import __version__
from redcart.config import get_settings
from redcart.core.errors import AppError
from redcart.database.connection import close_db, init_db
from redcart.monitoring.logging import setup_logging
from redcart.monitoring.metrics import metrics
from redcart.scripts.mpesa_check import missing_keys

from .routes import monitoring_router, order_router, payment_router, receipt_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create missing tables on startup; dispose of the engine on shutdown."""
    missing = missing_keys(settings) if settings.mpesa_enabled else []
    logger.info(
        "application_startup",
        env=settings.app_env,
        mpesa_enabled=settings.mpesa_enabled,
        mpesa_env=settings.mpesa_env,
        smtp_enabled=settings.smtp_enabled,
    )
    if missing:
        # STK push requests will fail with 500 until these are set
        logger.warning("mpesa_configuration_incomplete", missing_keys=missing)

    await init_db()
    try:
        yield
    finally:
        await close_db()
        logger.info("application_shutdown")


app = FastAPI(
    title="RedCart Payments API",
    description=(
        "Checkout and M-Pesa STK push payments with callback and poll-based "
        "reconciliation and idempotent receipt issuance."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


def _route_label(request: Request) -> str:
    """Matched route template, e.g. ``/api/v1/payments/mpesa/callback/{payment_id}``."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request id into the log context and time the request."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
    started = time.perf_counter()
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        elapsed = time.perf_counter() - started
        metrics.record_http_request(request.method, _route_label(request), status_code, elapsed)
        logger.info(
            "request_handled",
            method=request.method,
            status_code=status_code,
            duration_seconds=round(elapsed, 4),
        )
        structlog.contextvars.clear_contextvars()


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Map application errors to ``{"message": ...}`` with their status code."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_error",
        error=exc.message,
        error_code=exc.code,
        status_code=exc.status_code,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    message = ", ".join(str(error.get("msg", "")) for error in exc.errors()) or "Validation failed"
    logger.warning("request_validation_failed", path=request.url.path, error=message)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"message": message},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "Internal server error"},
    )


# Include routers
app.include_router(order_router, prefix=settings.api_prefix)
app.include_router(payment_router, prefix=settings.api_prefix)
app.include_router(receipt_router, prefix=settings.api_prefix)
app.include_router(monitoring_router)
app.include_router(monitoring_router, prefix=settings.api_prefix, include_in_schema=False)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": "RedCart API",
        "version": __version__,
        "environment": settings.app_env,
        "health": "/health",
        "metrics": "/metrics",
        "docsHint": f"All API routes are under {settings.api_prefix}",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "redcart.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
