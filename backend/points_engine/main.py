"""
Points Engine — FastAPI Application Factory
============================================

What:  Creates and configures the FastAPI application instance.
Why:   Centralizes middleware, exception mapping, routes and lifecycle.
How:   create_app(container=None) returns a configured app. The lifespan
       builds the ServiceContainer unless one was passed in (tests do).
Who:   uvicorn (points_engine.main:app) and the test suite.

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │  Middleware:  Request ID → Access Log → GZip → CORS      │
    │                                                          │
    │  Routes:                                                 │
    │   /api/books       listing + recommendations             │
    │   /api/exchange    request lifecycle (moves points)      │
    │   /api/points      balance, history, summary             │
    │   /api/webhooks    payment intake (BONUS credits)        │
    │   /health                                                │
    │                                                          │
    │  app.state.container → ledger, estimator, intake, ...    │
    └──────────────────────────────────────────────────────────┘
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from points_engine import __version__
from points_engine.config import Settings
from points_engine.exceptions import (
    AuthenticationError,
    DatabaseError,
    InsufficientBalanceError,
    NotFoundError,
    PermissionDeniedError,
    PointsEngineError,
    ValidationError,
)
from points_engine.middleware.logging import RequestLoggingMiddleware
from points_engine.middleware.request_id import RequestIDMiddleware, request_id_var
from points_engine.routes import books, exchange, health, ledger, webhooks
from points_engine.services.container import ServiceContainer, build_container

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("points_engine.security")


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the whole process, once, at startup.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Security events go to the "points_engine.security" logger so they can
    be routed or alerted on separately.
    """
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup:
        1. Setup logging
        2. Validate configuration (report, don't exit)
        3. Build the service container (unless one was injected)
    Shutdown:
        Dispose the engine of a container we built.
    """
    owns_container = getattr(app.state, "container", None) is None
    cfg = app.state.settings

    if owns_container:
        setup_logging(cfg.log_level)
    logger.info("=" * 60)
    logger.info("Points Engine %s starting up...", __version__)

    try:
        cfg.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))

    if owns_container:
        app.state.container = build_container(cfg)

    logger.info("Server ready at http://%s:%d", cfg.backend_host, cfg.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("Points Engine shutting down...")
    if owns_container:
        await app.state.container.aclose()
        app.state.container = None
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error(status_code: int, error: str, message: str, details: Optional[dict] = None, headers=None):
    content = {
        "error": error,
        "message": message,
        "request_id": request_id_var.get(""),
    }
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Handler hierarchy:
        ValidationError           → 400 (client can fix the input)
        AuthenticationError       → 400 (webhook signature; security log)
        PermissionDeniedError     → 403
        NotFoundError             → 404
        InsufficientBalanceError  → 409 (with required/available)
        DatabaseError             → 500 (generic message)
        PointsEngineError (base)  → 500
        Exception (fallback)      → 500 (stack trace logged, never returned)

    Payment processors retry on 5xx, which is what we want for transient
    failures on the webhook path.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        details = {"field": exc.field} if exc.field else None
        return _error(400, "validation_error", exc.message, details)

    @app.exception_handler(AuthenticationError)
    async def handle_authentication_error(request: Request, exc: AuthenticationError):
        client_ip = request.client.host if request.client else "unknown"
        security_logger.warning(
            "[%s] Authentication failed on %s from %s: %s",
            request_id_var.get(""), request.url.path, client_ip, exc.message,
        )
        return _error(400, "authentication_failed", "Webhook signature verification failed")

    @app.exception_handler(PermissionDeniedError)
    async def handle_permission_denied(request: Request, exc: PermissionDeniedError):
        return _error(403, "forbidden", exc.message)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error(404, "not_found", exc.message)

    @app.exception_handler(InsufficientBalanceError)
    async def handle_insufficient_balance(request: Request, exc: InsufficientBalanceError):
        return _error(
            409,
            "insufficient_balance",
            exc.message,
            {"required": exc.required, "available": exc.available},
        )

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error(
            "[%s] Database error: %s | Context: %s",
            request_id_var.get(""), exc.message, exc.context,
        )
        return _error(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(PointsEngineError)
    async def handle_engine_error(request: Request, exc: PointsEngineError):
        logger.error(
            "[%s] %s: %s | Context: %s",
            request_id_var.get(""), type(exc).__name__, exc.message, exc.context,
        )
        return _error(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
        return _error(422, "invalid_request", "Request validation failed", {"fields": fields})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        codes = {401: "unauthorized", 404: "not_found", 405: "method_not_allowed"}
        return _error(exc.status_code, codes.get(exc.status_code, "http_error"), str(exc.detail))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error(
            "[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True
        )
        return _error(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        container: Prebuilt services. When given, the lifespan uses it as-is
            and leaves its engine open for the caller to dispose.
        settings: Configuration for a container the lifespan builds itself.
            Ignored when a container is given (its own settings win).
    """
    if container is not None:
        settings = container.settings
    elif settings is None:
        raise ValueError("create_app() needs either a container or settings")

    app = FastAPI(
        title="Points Engine API",
        description=(
            "Points economy for a book exchange: AI-assisted listing valuation, "
            "an append-only points ledger, and idempotent payment intake."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.settings = settings

    # Middleware executes in REVERSE order of addition:
    # RequestID → Logging → GZip → CORS → route
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(books.router)
    app.include_router(exchange.router)
    app.include_router(ledger.router)
    app.include_router(webhooks.router)
    app.include_router(health.router)

    return app


# uvicorn expects `points_engine.main:app` to be importable
app = create_app(settings=Settings())
