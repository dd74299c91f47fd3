"""Liveness and readiness endpoints."""

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from propman.api.dependencies import get_storage
from propman.config import settings

router = APIRouter()
logger = structlog.get_logger()


@router.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "storage": settings.storage_backend,
    }


@router.get("/ready")
async def ready(storage=Depends(get_storage)):
    """
    Ready when storage answers and a fresh request starts with no tenant
    bound. A pooled connection still carrying app.org_id is not ready.
    """
    try:
        session_context = await storage.current_session_context()
    except Exception as exc:
        logger.error("Readiness check failed", storage=settings.storage_backend, error=str(exc))
        return JSONResponse(
            status_code=503,
            content={"ready": False, "storage": settings.storage_backend, "reason": "unavailable"},
        )

    if session_context["org_id"] is not None:
        logger.error("Stale tenant binding on fresh request", org_id=session_context["org_id"])
        return JSONResponse(
            status_code=503,
            content={"ready": False, "storage": settings.storage_backend, "reason": "tenant_bound"},
        )

    return {
        "ready": True,
        "storage": settings.storage_backend,
        "rls_enabled": settings.rls_enabled,
    }
