from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from studygate.app.api.assignments import router as assignments_router
from studygate.app.api.chat import router as chat_router
from studygate.app.api.metrics import router as metrics_router
from studygate.app.core.config import settings
from studygate.app.core.http_client import init_http_client
from studygate.app.core.logging import get_logger, setup_logging
from studygate.app.db import models  # noqa: F401 - import to register models
from studygate.app.db.async_session import close_async_engine, get_async_engine
from studygate.app.db.init_db import init_database, verify_connection
from studygate.app.exceptions import AuthenticationError, GatewayException, QuotaExceededError
from studygate.app.middleware.metrics import MetricsMiddleware
from studygate.app.middleware.request_id import RequestIdMiddleware
from studygate.app.providers.factory import get_provider, reset_provider
from studygate.app.services.rate_limit import WindowPruner, get_window_store, reset_rate_limiting
from studygate.app.services.request_gate import reset_request_gate


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[dict, None]:
        """Application lifespan context manager.

        Opens the shared HTTP client, creates tables, builds the window
        store and starts pruning; tears everything down in reverse.
        """
        async with init_http_client() as http_client:
            if not await verify_connection():
                logger.error("Database connection failed!")
                raise RuntimeError("Cannot connect to database")

            await init_database()

            store = get_window_store()
            pruner = WindowPruner(
                store,
                retention_seconds=settings.longest_window_seconds,
                interval=settings.rate_limit_prune_interval_seconds,
            )
            if settings.rate_limit_prune_interval_seconds > 0:
                pruner.start()

            provider = get_provider()
            logger.info(
                "Application startup complete",
                extra={
                    "provider": provider.name,
                    "window_store": store.name,
                    "debug_mode": settings.debug,
                },
            )

            try:
                yield {"http_client": http_client}
            finally:
                await pruner.shutdown()
                reset_request_gate()
                reset_provider()
                await reset_rate_limiting()

        await close_async_engine()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="studygate",
        description="Rate-limited streaming proxy for assignment checklists and step chat",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
        max_age=600,
    )
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(assignments_router)
    app.include_router(chat_router)
    app.include_router(metrics_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with database, window store and provider status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        try:
            async with get_async_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["components"]["database"] = {"status": "ok"}
        except (SQLAlchemyError, OSError) as e:
            health_status["status"] = "degraded"
            health_status["components"]["database"] = {
                "status": "error",
                "error": str(e)[:100],  # Truncate for security
            }

        store = get_window_store()
        store_ok = await store.ping()
        health_status["components"]["window_store"] = {
            "status": "ok" if store_ok else "error",
            "backend": store.name,
        }
        if not store_ok:
            # Rate limiting fails open, so the service still answers
            health_status["status"] = "degraded"

        provider = get_provider()
        provider_ok = await provider.health_check(timeout=2.0)
        health_status["components"]["provider"] = {
            "status": "ok" if provider_ok else "error",
            "name": provider.name,
        }
        if not provider_ok:
            health_status["status"] = "degraded"

        return health_status

    @app.exception_handler(QuotaExceededError)
    async def quota_exceeded_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
        """Handle QuotaExceededError and return HTTP 429 response."""
        return JSONResponse(
            status_code=429,
            content={
                "error": exc.error_code,
                "message": exc.message,
                "retry_after": exc.retry_after_seconds,
            },
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        """Handle AuthenticationError and return HTTP 401 response."""
        return JSONResponse(
            status_code=401,
            content={"error": exc.error_code, "message": exc.detail},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(GatewayException)
    async def gateway_error_handler(request: Request, exc: GatewayException) -> JSONResponse:
        """Map the remaining application errors to their status codes."""
        request_id = getattr(request.state, "request_id", "unknown")
        log = logger.warning if exc.status_code >= 500 else logger.info
        log(
            f"{type(exc).__name__}: {exc.message}",
            extra={"request_id": request_id, "status_code": exc.status_code},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error_code, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception type and message.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={"request_id": request_id},
        )

        content = {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
