"""
FastAPI Entry Point.

Provides:
- Correlation ID middleware
- Structured JSON logging middleware
- Global MailSenseError exception handling
- /health and /version endpoints
- Service container built once in the lifespan
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from mailsense.api import routes_analyze, routes_summarize
from mailsense.common.exceptions import (
    CollaboratorError,
    ConfigurationError,
    MailSenseError,
    ModelCallError,
    NotFoundError,
    ProviderError,
    SchemaValidationError,
    TransactionError,
    UnknownAnalysisKindError,
    ValidationError,
)
from mailsense.config.loader import MailSenseConfig, get_config
from mailsense.context import correlation_id_ctx, tenant_id_ctx
from mailsense.observability import (
    get_trace_context,
    init_observability,
    shutdown_observability,
)
from mailsense.services import Services, build_services

APP_NAME = "MailSense Analysis Service"

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Middleware: Correlation ID
# ---------------------------------------------------------------------------
class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Extract or generate a correlation ID for request tracing.

    Accepts an X-Correlation-ID header or generates a new UUID, and echoes
    it on the response.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID")
        if not correlation_id:
            correlation_id = str(uuid.uuid4())

        token = correlation_id_ctx.set(correlation_id)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
            response.headers["X-Correlation-ID"] = correlation_id
            return response
        finally:
            correlation_id_ctx.reset(token)


# ---------------------------------------------------------------------------
# Middleware: Structured JSON Logging
# ---------------------------------------------------------------------------
class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    One JSON log line per request.

    Never logs message bodies or addresses; the tenant comes from the
    X-Tenant-ID header when the caller sends one.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start_time = time.time()

        correlation_id = correlation_id_ctx.get(None)
        tenant_id = request.headers.get("X-Tenant-ID") or tenant_id_ctx.get(None)
        trace_ctx = get_trace_context()

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                json.dumps(
                    {
                        "event": "request_failed",
                        "method": request.method,
                        "path": request.url.path,
                        "error_type": type(e).__name__,
                        "duration_ms": round(duration_ms, 2),
                        "correlation_id": correlation_id,
                        "tenant_id": tenant_id,
                        "trace_id": trace_ctx.get("trace_id"),
                    }
                )
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        log_entry = {
            "event": "request_completed",
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "correlation_id": correlation_id,
            "tenant_id": tenant_id,
            "trace_id": trace_ctx.get("trace_id"),
        }
        if response.status_code >= 500:
            logger.error(json.dumps(log_entry))
        elif response.status_code >= 400:
            logger.warning(json.dumps(log_entry))
        else:
            logger.info(json.dumps(log_entry))
        return response


# ---------------------------------------------------------------------------
# Exception Handler: MailSenseError -> HTTP Response
# ---------------------------------------------------------------------------
def create_error_response(
    status_code: int,
    error_type: str,
    message: str,
    error_code: Optional[str] = None,
    context: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    """Structured error body carrying the correlation ID."""
    body: dict[str, Any] = {
        "error": {
            "type": error_type,
            "message": message,
            "error_code": error_code,
            "correlation_id": correlation_id_ctx.get(),
        }
    }
    if context:
        body["error"]["context"] = context
    return JSONResponse(status_code=status_code, content=body)


def status_for(exc: MailSenseError) -> int:
    """
    HTTP status for an application error.

    - ValidationError, UnknownAnalysisKindError -> 400
    - NotFoundError -> 404
    - model, schema and collaborator failures -> 502 (503 when retryable)
    - ConfigurationError, TransactionError -> 503
    """
    if isinstance(exc, (ValidationError, UnknownAnalysisKindError)):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (ProviderError, ModelCallError, CollaboratorError)):
        return 503 if getattr(exc, "retryable", False) else 502
    if isinstance(exc, SchemaValidationError):
        return 502
    if isinstance(exc, (ConfigurationError, TransactionError)):
        return 503
    return 500


async def mailsense_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, MailSenseError):
        return await generic_exception_handler(request, exc)

    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc.message)
    details = exc.to_dict()
    return create_error_response(
        status_code=status_code,
        error_type=details["error_type"],
        message=details["message"],
        error_code=details["error_code"],
        context=details["context"],
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unexpected exceptions."""
    logger.exception("Unhandled exception: %s", exc)
    return create_error_response(
        status_code=500,
        error_type="InternalServerError",
        message="An unexpected error occurred. Please contact support.",
        error_code="INTERNAL_ERROR",
    )


# ---------------------------------------------------------------------------
# Lifespan Manager
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    config: MailSenseConfig = app.state.config

    init_observability(service_name=config.core.service_name)
    logger.info(f"Starting {APP_NAME} v{config.core.version} ({config.core.env})")

    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        app.state.services = build_services(config)

    yield

    logger.info(f"Shutting down {APP_NAME}")
    if owns_services:
        await app.state.services.aclose()
        app.state.services = None
    shutdown_observability()


# ---------------------------------------------------------------------------
# Application Factory
# ---------------------------------------------------------------------------
def create_app(
    config: MailSenseConfig | None = None, services: Services | None = None
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or (services.config if services else get_config())
    app = FastAPI(
        title=APP_NAME,
        version=config.core.version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    allowed_origins = (
        [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
        if config.core.env == "dev"
        else []
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_middleware(StructuredLoggingMiddleware)
    # Outermost, so the correlation id is set before anything logs
    app.add_middleware(CorrelationIdMiddleware)

    app.state.config = config
    app.state.services = services

    app.add_exception_handler(MailSenseError, mailsense_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(routes_analyze.router, prefix="/api/v1", tags=["analysis"])
    app.include_router(routes_summarize.router, prefix="/api/v1", tags=["summarize"])

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, Any]:
        current = app.state.services
        return {
            "status": "healthy",
            "version": config.core.version,
            "environment": config.core.env,
            "database": bool(current and current.session_factory is not None),
        }

    @app.get("/version", tags=["system"])
    async def version_info() -> dict[str, Any]:
        return {
            "name": APP_NAME,
            "version": config.core.version,
            "api_version": "v1",
            "environment": config.core.env,
        }

    return app


app = create_app()

# ---------------------------------------------------------------------------
# For running directly with uvicorn
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
