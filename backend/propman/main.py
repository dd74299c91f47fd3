"""
Property Management Backend — FastAPI
======================================
Main entry point. Serves the tenant-scoped records API, the caller's
own profile and the identity-provider webhook; every data access goes
through the AccessGateway under a bound SecurityContext.
"""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from propman.config import settings
from propman.api.routes import health, records, webhooks
from propman.api.middleware.audit import AuditMiddleware
from propman.core.audit import AuditEventType, audit_log
from propman.core.errors import AccessDenied, ContextSyncFailed, DuplicateIdentity, InvalidContext, MissingContext
from propman.db.session import init_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level)
    ),
)
logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info(
        "Starting Property Management Backend",
        version=settings.app_version,
        storage=settings.storage_backend,
        rls_enabled=settings.rls_enabled,
    )
    if settings.storage_backend == "postgres":
        await init_db()
    audit_log(AuditEventType.SYSTEM_STARTUP, action="startup")
    yield
    audit_log(AuditEventType.SYSTEM_SHUTDOWN, action="shutdown")
    logger.info("Shutting down Property Management Backend")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Multi-tenant property management backend. Every record is scoped "
        "to the caller's organization and, within it, to their role."
    ),
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Audit logging
app.add_middleware(AuditMiddleware)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------
@app.exception_handler(AccessDenied)
async def access_denied_handler(request: Request, exc: AccessDenied):
    # Never reveal whether the record exists in another organization
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": "Not authorized"})


@app.exception_handler(InvalidContext)
async def invalid_context_handler(request: Request, exc: InvalidContext):
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": "Invalid caller"},
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(ContextSyncFailed)
async def context_sync_failed_handler(request: Request, exc: ContextSyncFailed):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage unavailable"},
    )


@app.exception_handler(DuplicateIdentity)
async def duplicate_identity_handler(request: Request, exc: DuplicateIdentity):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": "Identity already exists"},
    )


@app.exception_handler(MissingContext)
async def missing_context_handler(request: Request, exc: MissingContext):
    logger.error("Gateway call without a bound security context", path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
API_PREFIX = "/api/v1"

app.include_router(health.router, tags=["Health"])
app.include_router(webhooks.router, prefix=API_PREFIX, tags=["Webhooks"])
app.include_router(records.router, prefix=API_PREFIX, tags=["Records"])


@app.get("/")
async def root():
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
