"""
CareXPS MFA REST API - Main Application.

FastAPI-based REST API for second-factor authentication in the
CareXPS Healthcare CRM.

Usage:
    # Development
    uvicorn src.api.main:app --reload --port 8000

    # Production (MFA sessions are per-process: run a single worker)
    uvicorn src.api.main:app --host 0.0.0.0 --port 8000
"""
import os
import time
import uuid
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from .routes import mfa_router, health_router
from ..auth.errors import (
    AlreadyEnrolled,
    CorruptCredential,
    NotEnrolled,
    PersistenceUnavailable,
    ProvisioningFailed,
)
from ..auth.sessions import SessionSweeper

# Configure logging with request context support
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
)

# Custom filter to add request_id to all log records
class RequestIdFilter(logging.Filter):
    """Add request_id to log records."""
    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = '-'
        return True

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format=LOG_FORMAT,
)
# Filter on handlers so records from every logger get request_id
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestIdFilter())
logger = logging.getLogger(__name__)

# API metadata
API_TITLE = "CareXPS MFA API"
API_DESCRIPTION = """
**Second-factor authentication for the CareXPS Healthcare CRM**

- **TOTP enrollment** - RFC 6238 codes from any authenticator app
- **Backup codes** - 10 single-use recovery codes per enrollment
- **MFA sessions** - 15-minute server-side sessions (5 minutes for PHI access)

## Authentication

All `/mfa` endpoints require the primary-login access token:
`Authorization: Bearer <token>`

Protected resources additionally require a live MFA session. Routes
answer `401` with `X-MFA-Required: true` when there is none.

1. Enroll: `POST /mfa/setup`
2. Verify: `POST /mfa/verify`
3. Send the session token as `X-MFA-Session` for extend/logout
"""
API_VERSION = os.getenv("APP_VERSION", "0.1.0")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Runs on startup and shutdown.
    """
    # Startup
    logger.info(f"Starting CareXPS MFA API v{API_VERSION}")

    from .deps import get_mfa_service
    service = get_mfa_service()

    # Initialize database schema
    try:
        service.store.init_schema()
        logger.info("Database schema initialized")
    except PersistenceUnavailable as e:
        logger.warning(f"Database initialization skipped: {e}")

    sweeper = None
    if service.settings.sweep_interval_seconds > 0:
        sweeper = SessionSweeper(service.registry, service.settings.sweep_interval_seconds)
        sweeper.start()

    yield

    # Shutdown
    if sweeper is not None:
        sweeper.stop()
    logger.info("Shutting down CareXPS MFA API")


def _error(status_code: int, error: str, detail: str, code: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": detail, "code": code},
        headers=headers,
    )


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance.
    """
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    allowed_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-MFA-Required", "X-MFA-Remaining-Attempts", "Retry-After"],
    )

    # Request tracking and security headers middleware
    @app.middleware("http")
    async def add_request_tracking_and_security(request: Request, call_next):
        # Generate or extract request ID for tracing
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])

        # Store in request state for access in route handlers
        request.state.request_id = request_id

        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"[{request_id}] Request failed: {e}", exc_info=True)
            raise

        process_time = (time.time() - start_time) * 1000

        # Request tracking headers
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"

        # Log request completion (skip health checks to reduce noise)
        if not request.url.path.startswith("/health"):
            logger.info(
                f"[{request_id}] {request.method} {request.url.path} "
                f"-> {response.status_code} ({process_time:.1f}ms)"
            )

        # Security headers
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # MFA responses carry secrets and session tokens
        response.headers["Cache-Control"] = "no-store"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response

    # Exception handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = " -> ".join(str(l) for l in error["loc"])
            errors.append(f"{loc}: {error['msg']}")

        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation Error", "; ".join(errors), "VALIDATION_ERROR",
        )

    @app.exception_handler(NotEnrolled)
    async def not_enrolled_handler(request: Request, exc: NotEnrolled):
        return _error(status.HTTP_404_NOT_FOUND, "Not Found", "MFA is not set up", "MFA_NOT_ENROLLED")

    @app.exception_handler(AlreadyEnrolled)
    async def already_enrolled_handler(request: Request, exc: AlreadyEnrolled):
        return _error(
            status.HTTP_409_CONFLICT, "Conflict",
            "MFA is already enabled. Disable it first to set up a new authenticator.",
            "MFA_ALREADY_ENABLED",
        )

    @app.exception_handler(CorruptCredential)
    async def corrupt_credential_handler(request: Request, exc: CorruptCredential):
        logger.error(f"Unusable MFA credential for user {exc.user_id}")
        return _error(
            status.HTTP_409_CONFLICT, "Conflict",
            "MFA credential is unusable. Please set up MFA again.",
            "MFA_REENROLL_REQUIRED",
        )

    @app.exception_handler(PersistenceUnavailable)
    async def persistence_unavailable_handler(request: Request, exc: PersistenceUnavailable):
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE, "Service Unavailable",
            "MFA service temporarily unavailable. Please retry.",
            "MFA_STORE_UNAVAILABLE",
            headers={"Retry-After": "5"},
        )

    @app.exception_handler(ProvisioningFailed)
    async def provisioning_failed_handler(request: Request, exc: ProvisioningFailed):
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE, "Service Unavailable", str(exc), "MFA_PROVISIONING_FAILED",
            headers={"Retry-After": "5"},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.error(f"[{request_id}] Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "request_id": request_id,
                "detail": str(exc) if os.getenv("APP_ENV") == "development" else None,
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(mfa_router)

    # Root endpoint
    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
