"""FastAPI application for the Integration Gateway.

This module provides:
- Application factory wired to an explicit Gateway
- Health check endpoint
- Request logging for usage analytics
- Mapping of gateway errors to HTTP responses
"""

import time
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.analytics.usage import RequestLog
from src.api.dependencies import ErrorResponse
from src.config import settings
from src.errors import AuthorizationError, ConflictError, GatewayError, NotFoundError
from src.gateway import Gateway

logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES: dict[type[GatewayError], int] = {
    AuthorizationError: 401,
    NotFoundError: 404,
    ConflictError: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("application_starting")
    yield
    logger.info("application_shutting_down")
    await app.state.gateway.shutdown()


OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Register endpoints and inspect deliveries."},
    {"name": "API Keys", "description": "Issue and revoke keys for programmatic access."},
    {"name": "Integrations", "description": "Template catalog and tenant onboarding."},
    {"name": "Events", "description": "Raise events with an API key."},
    {"name": "Usage", "description": "API usage analytics."},
    {"name": "Health", "description": "Liveness check."},
]


def create_app(
    gateway: Gateway | None = None,
    title: str = "Integration Gateway API",
    version: str = "1.0.0",
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        gateway: Services to serve. Built from environment settings when
            omitted.
        title: API title.
        version: API version.
        cors_origins: Allowed CORS origins.

    Returns:
        Configured FastAPI application.
    """
    gateway = gateway or Gateway.from_settings(settings)

    app = FastAPI(
        title=title,
        version=version,
        lifespan=lifespan,
        debug=gateway.settings.DEBUG,
        openapi_tags=OPENAPI_TAGS,
    )
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_request(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        await gateway.request_logs.record(
            RequestLog(
                endpoint=request.url.path,
                method=request.method,
                status_code=response.status_code,
                response_time=(time.monotonic() - start) * 1000,
                tenant_id=getattr(request.state, "tenant_id", None),
                api_key_id=getattr(request.state, "api_key_id", None),
            )
        )
        return response

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        if isinstance(exc.detail, list):
            content = ErrorResponse(error="Validation failed", details=exc.detail)
        else:
            content = ErrorResponse(error=str(exc.detail))
        return JSONResponse(
            status_code=exc.status_code,
            content=content.model_dump(exclude_none=True),
        )

    @app.exception_handler(GatewayError)
    async def gateway_exception_handler(
        request: Request, exc: GatewayError  # noqa: ARG001
    ) -> JSONResponse:
        status_code = next(
            (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
            500,
        )
        if status_code == 500:
            logger.error("unhandled_gateway_error", error_type=exc.__class__.__name__)
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=exc.message if status_code != 500 else "Internal server error",
            ).model_dump(exclude_none=True),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="Internal server error").model_dump(exclude_none=True),
        )

    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all routes on the application.

    Args:
        app: FastAPI application.
    """
    from src.api.api_keys import router as api_keys_router
    from src.api.events import router as events_router
    from src.api.integrations import router as integrations_router
    from src.api.webhooks import router as webhooks_router

    app.include_router(webhooks_router)
    app.include_router(api_keys_router)
    app.include_router(integrations_router)
    app.include_router(events_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        """Basic liveness check."""
        return {
            "status": "ok",
            "version": app.version,
            "timestamp": datetime.now(UTC).isoformat(),
        }
