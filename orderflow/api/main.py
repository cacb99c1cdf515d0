"""
FastAPI application factory.

Wires the cart/checkout/payment/webhook/admin routers with:
- Request ids bound into every log line of the request
- Per-route Prometheus request metrics
- Pipeline errors that escape a route mapped onto the public error shape
- Schema creation and container/engine teardown in the lifespan
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orderflow import __version__
from orderflow.config import get_settings
from orderflow.container import close_container, get_container
from orderflow.core.errors import OrderflowError
from orderflow.database.connection import close_db, init_db
from orderflow.monitoring.logging import setup_logging
from orderflow.monitoring.metrics import metrics

from .dependencies import client_ip, to_http_exception
from .routes import (
    admin_router,
    cart_router,
    checkout_router,
    monitoring_router,
    order_router,
    payment_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create the schema and build the container on startup; release both on shutdown."""
    settings = get_settings()
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise
    container = get_container()
    logger.info("application_ready", gateway=container.gateway.name, redis=container.redis_client is not None)

    yield

    logger.info("application_shutdown")
    try:
        await close_container()
        await close_db()
    except Exception as e:
        logger.error("application_shutdown_error", error=str(e))


def _route_template(request: Request) -> str:
    # Template path keeps metric label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind request id and caller to the log context; record request metrics."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    start_time = time.perf_counter()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        client_ip=client_ip(request),
    )
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("request_failed", error=str(e), duration_seconds=time.perf_counter() - start_time)
        raise
    finally:
        structlog.contextvars.clear_contextvars()

    duration = time.perf_counter() - start_time
    response.headers[REQUEST_ID_HEADER] = request_id
    metrics.record_http_request(request.method, _route_template(request), response.status_code, duration)
    if request.url.path not in ("/health/live", "/metrics"):
        logger.info(
            "request_completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_seconds=round(duration, 4),
        )
    return response


async def orderflow_error_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    """Pipeline errors a route did not translate itself."""
    http_exc = to_http_exception(exc)
    logger.warning("unmapped_pipeline_error", code=exc.code, error=exc.message, path=request.url.path)
    return JSONResponse(
        status_code=http_exc.status_code,
        content={"detail": http_exc.detail},
        headers=http_exc.headers,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": {
                "error": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
            }
        },
    )


def create_app() -> FastAPI:
    """Build the application with middleware and routers."""
    setup_logging()
    settings = get_settings()

    app = FastAPI(
        title="Orderflow",
        description=(
            "E-commerce order and payment pipeline: cart, checkout, gateway payment intents, "
            "signed callback verification, fraud scoring, stock reservation, and batch "
            "retry/reconciliation."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER, settings.admin_api_key_header],
        expose_headers=[REQUEST_ID_HEADER],
    )
    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(OrderflowError, orderflow_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    for router in (
        cart_router,
        checkout_router,
        order_router,
        payment_router,
        webhook_router,
        admin_router,
        monitoring_router,
    ):
        app.include_router(router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "orderflow.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
