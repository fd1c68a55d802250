"""
PostSnap Backend — FastAPI Application Factory
================================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() registers middleware, exception handlers and routers.
Who:   uvicorn (uvicorn app.main:app); tests build their own via create_app().

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware:  Request ID → Access Log → Rate Limit       │
    │                                                          │
    │  Routes:      POST /create-post     GET /posts           │
    │               GET  /posts/id        PUT  /update-post/id │
    │               DELETE /delete-post/id                     │
    │               GET  /health                               │
    │                                                          │
    │  Exception Handlers:                                     │
    │    Validation→400  NotFound→404  Conflict→409            │
    │    RateLimit→429   Upstream/Persistence/other→500        │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  configure logging, report configuration problems
    Shutdown: close the storage HTTP client, dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app import __version__
from app.config import settings
from app.database import dispose_engine
from app.exceptions import (
    CircuitBreakerOpenError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    PostSnapError,
    RateLimitExceededError,
    UpstreamError,
    ValidationError,
)
from app.middleware.logging import RequestLoggingMiddleware
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.request_id import RequestIDMiddleware, request_id_var
from app.routes import health, posts
from app.services.storage_service import storage_adapter

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure the root logger once at startup.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s on stdout.
    Structured fields travel in `extra` (request_id on access lines,
    event=storage.orphaned_object on orphan warnings) for a JSON formatter
    to pick up.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("PostSnap Backend %s starting up (storage: %s)", __version__, storage_adapter.mode)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Still serve: uploads fall back to placeholder URLs
        logger.warning("Configuration warning: %s", str(e))

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)

    yield

    logger.info("PostSnap Backend shutting down...")
    await storage_adapter.aclose()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def error_body(
    message: str,
    code: str,
    error: Optional[str] = None,
    details: Optional[dict] = None,
) -> dict:
    body = {
        "message": message,
        "error": error,
        "code": code,
        "request_id": request_id_var.get("") or None,
    }
    if details:
        body["details"] = details
    return body


def _respond(
    status_code: int,
    exc: PostSnapError,
    details: Optional[dict] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_body(exc.message, exc.code, exc.detail, details),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception hierarchy to HTTP responses.

    Handler hierarchy:
        ValidationError          → 400
        RequestValidationError   → 400 (malformed form fields)
        NotFoundError            → 404
        ConflictError            → 409
        RateLimitExceededError   → 429 + Retry-After
        CircuitBreakerOpenError  → 500 + Retry-After
        UpstreamError            → 500
        PersistenceError         → 500
        PostSnapError (base)     → 500
        Exception (fallback)     → 500, generic message

    `context` is logged, never returned; only `detail` reaches the client
    as `error`.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("Validation error: %s", exc.message)
        return _respond(400, exc, details=exc.context or None)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        logger.warning("Malformed request fields: %s", fields)
        return JSONResponse(
            status_code=400,
            content=error_body(
                "Invalid request fields.",
                ValidationError.code,
                error="; ".join(fields) or None,
            ),
        )

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _respond(404, exc)

    @app.exception_handler(ConflictError)
    async def handle_conflict(request: Request, exc: ConflictError):
        logger.warning("Conflict: %s | Context: %s", exc.detail, exc.context)
        return _respond(409, exc)

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return _respond(
            429,
            exc,
            details={"retry_after": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("Upload circuit breaker open: %s", exc.message)
        return _respond(
            500,
            exc,
            details={"recovery_time": exc.recovery_time},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(UpstreamError)
    async def handle_upstream_error(request: Request, exc: UpstreamError):
        logger.error("Storage upload failed: %s | Context: %s", exc.detail, exc.context)
        return _respond(500, exc)

    @app.exception_handler(PersistenceError)
    async def handle_persistence_error(request: Request, exc: PersistenceError):
        logger.error("Database error: %s | Context: %s", exc.detail, exc.context)
        return _respond(500, exc)

    @app.exception_handler(PostSnapError)
    async def handle_app_error(request: Request, exc: PostSnapError):
        logger.error("Unhandled application error: %s | Context: %s", exc.message, exc.context)
        return _respond(500, exc)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("Unexpected error: %s", str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=error_body(
                "An unexpected error occurred. Please try again or contact support.",
                "internal_server_error",
                error=type(exc).__name__,
            ),
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="PostSnap API",
        description=(
            "Create, list, update and delete image posts. Images are stored on "
            "ImageKit, or replaced by placeholder URLs when ImageKit is not configured."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Middleware runs in reverse order of addition:
    # RequestID → Logging → RateLimit → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(posts.router)
    app.include_router(health.router)

    return app


app = create_app()
