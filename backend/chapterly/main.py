"""
Chapterly Backend — FastAPI Application Factory
=================================================

What:  Creates and configures the FastAPI application instance.
Why:   Centralizes middleware, routes, provider gateways and error rendering.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   uvicorn (uvicorn chapterly.main:app --proxy-headers --forwarded-allow-ips <platform proxy>).
When:  Once at server startup.

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware: RateLimit → RequestID → AccessLog → GZip    │
    │              → CORS                                      │
    │                                                          │
    │  Routes:  /health  /api/books  /api/chapters             │
    │           /api/payments  /api/auth  /.well-known         │
    │                                                          │
    │  app.state (built in lifespan):                          │
    │     http_client, stripe_service, google_play_service,    │
    │     identity_service                                     │
    │                                                          │
    │  Exception handlers: ChapterlyError tree → JSON          │
    │     {"error", "code", "request_id"}                      │
    └──────────────────────────────────────────────────────────┘
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from chapterly import __version__
from chapterly.config import settings
from chapterly.database import dispose_engine
from chapterly.exceptions import (
    ChapterlyError,
    IdentityProviderError,
    InsufficientFundsError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    PurchaseRejectedError,
    RateLimitExceededError,
    TransactionNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from chapterly.middleware.logging import RequestLoggingMiddleware
from chapterly.middleware.rate_limit import RateLimitMiddleware
from chapterly.middleware.request_id import RequestIDMiddleware, request_id_var
from chapterly.routes import auth, books, chapters, health, payments
from chapterly.services.google_play_service import GooglePlayService, load_service_account_info
from chapterly.services.identity_service import IdentityService
from chapterly.services.stripe_service import StripeService

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure root logging once, before anything else logs.

    Format: 2025-01-15T12:00:00 [INFO] chapterly.services.ledger_service: ...
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Chatty at INFO: one line per SDK/HTTP call
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Provider Gateways
# ══════════════════════════════════════════════════════════════════════════

def build_gateways(app: FastAPI) -> None:
    """Construct the provider clients once and park them on app.state."""
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.supabase_timeout))
    app.state.http_client = http_client

    app.state.stripe_service = StripeService(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        currency=settings.stripe_currency,
    )
    app.state.google_play_service = GooglePlayService(
        http_client=http_client,
        package_name=settings.google_play_package_name,
        service_account_info=load_service_account_info(settings.google_service_account_json),
    )
    app.state.identity_service = IdentityService(
        http_client=http_client,
        base_url=settings.supabase_url,
        anon_key=settings.supabase_anon_key,
        service_role_key=settings.supabase_service_role_key,
    )


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("Chapterly Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving: /health must answer and the catalog routes still work
        logger.error("Configuration error: %s", str(e))

    build_gateways(app)

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("Chapterly Backend shutting down...")
    await app.state.http_client.aclose()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def error_response(
    status_code: int,
    exc: ChapterlyError,
    message: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    content: Dict[str, Any] = {
        "error": message or exc.message,
        "code": exc.code,
        "request_id": request_id_var.get(""),
    }
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception tree to HTTP responses.

    Starlette picks the handler of the closest class in the MRO, so
    subclasses registered here override their parent's status:
        ValidationError, InsufficientFundsError,
        PurchaseRejectedError (+ subclasses)       → 400
        ProviderError                              → 500
        TransactionNotFoundError,
        IdentityProviderError                      → 400
        UnauthorizedError                          → 401
        NotFoundError                              → 404
        RateLimitExceededError                     → 429
        PersistenceError, ChapterlyError, other    → 500

    Context dicts are logged, never returned.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return error_response(400, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid value for {location}" if location else "Invalid request body"
        logger.warning("[%s] Request validation error: %s", request_id_var.get(""), errors)
        return error_response(400, ValidationError(message=message))

    @app.exception_handler(InsufficientFundsError)
    async def handle_insufficient_funds(request: Request, exc: InsufficientFundsError):
        return error_response(400, exc, extra={"required": exc.required, "current": exc.current})

    @app.exception_handler(PurchaseRejectedError)
    async def handle_purchase_rejected(request: Request, exc: PurchaseRejectedError):
        logger.warning("[%s] Purchase rejected: %s | %s", request_id_var.get(""), exc.message, exc.context)
        return error_response(400, exc)

    @app.exception_handler(ProviderError)
    async def handle_provider_error(request: Request, exc: ProviderError):
        logger.error("[%s] Provider error: %s | %s", request_id_var.get(""), exc.message, exc.context)
        return error_response(500, exc)

    @app.exception_handler(TransactionNotFoundError)
    async def handle_transaction_not_found(request: Request, exc: TransactionNotFoundError):
        logger.warning("[%s] Transaction not found: %s", request_id_var.get(""), exc.context)
        return error_response(400, exc)

    @app.exception_handler(IdentityProviderError)
    async def handle_identity_error(request: Request, exc: IdentityProviderError):
        return error_response(400, exc)

    @app.exception_handler(UnauthorizedError)
    async def handle_unauthorized(request: Request, exc: UnauthorizedError):
        return error_response(401, exc)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return error_response(404, exc)

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return error_response(
            429, exc,
            extra={"retry_after": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(PersistenceError)
    async def handle_persistence_error(request: Request, exc: PersistenceError):
        logger.error("[%s] Persistence error: %s | %s", request_id_var.get(""), exc.message, exc.context)
        return error_response(500, exc)

    @app.exception_handler(ChapterlyError)
    async def handle_chapterly_error(request: Request, exc: ChapterlyError):
        logger.error("[%s] %s: %s | %s", request_id_var.get(""), type(exc).__name__, exc.message, exc.context)
        return error_response(500, exc)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "An unexpected error occurred. Please try again later.",
                "code": "internal_server_error",
                "request_id": request_id_var.get(""),
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="Chapterly API",
        description="Books, chapters, credits and purchases for the Chapterly reader apps.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added runs first: RateLimit → RequestID → Logging → GZip → CORS

    # Expo Go on a phone has no fixed origin, hence "*" by default
    allow_all = settings.cors_origins_list == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        # Browsers reject credentials with a literal "*" origin
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(health.router)
    app.include_router(books.router)
    app.include_router(chapters.router)
    app.include_router(payments.router)
    app.include_router(auth.router)

    # Android App Links verification (assetlinks.json)
    well_known = Path(settings.well_known_dir)
    if well_known.is_dir():
        app.mount("/.well-known", StaticFiles(directory=str(well_known)), name="well-known")
    else:
        logger.info("No %s directory; /.well-known is not served", well_known)

    return app


app = create_app()
