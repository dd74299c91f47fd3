"""
Records API — tenant-scoped CRUD through the AccessGateway.

Every handler binds the caller's SecurityContext for the duration of
its gateway calls; nothing here touches storage directly.
"""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status

from propman.api.dependencies import get_storage
from propman.api.middleware.auth import get_security_context
from propman.core.context import ContextPropagator
from propman.core.security_context import Permission, SecurityContext
from propman.security.access_policy import PolicyEngine
from propman.security.entities import Action, EntityType, schema_for
from propman.security.gateway import AccessGateway, Query as RecordQuery
from propman.security.predicates import Eq, all_of
from propman.storage.sql import record_fields

router = APIRouter()

RESERVED_PARAMS = {"limit"}


@router.get("/me")
async def me(
    ctx: SecurityContext = Depends(get_security_context),
    storage=Depends(get_storage),
):
    """The caller's own identity in the active organization, plus their permissions."""
    gateway = AccessGateway(storage)
    rows = await ContextPropagator(storage).run_with(
        ctx,
        lambda: gateway.execute(
            EntityType.IDENTITY,
            Action.READ,
            RecordQuery(where=Eq("external_key", ctx.caller_id), limit=1),
        ),
    )
    return {
        "org_id": ctx.org_id,
        "role": ctx.role.value,
        "permissions": [p.value for p in Permission if PolicyEngine.has_permission(ctx, p)],
        "identity": rows[0] if rows else None,
    }


@router.get("/records/{entity_type}")
async def list_records(
    entity_type: str,
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
    ctx: SecurityContext = Depends(get_security_context),
    storage=Depends(get_storage),
):
    """
    List records visible to the caller.

    Any query parameter other than `limit` is an equality filter,
    e.g. `/records/lease?unit_id=u1`.
    """
    params = {name: value for name, value in request.query_params.items() if name not in RESERVED_PARAMS}

    # Unknown entity types fall through to the gateway, which denies them
    schema = schema_for(entity_type)
    if schema is not None:
        unknown = sorted(set(params) - record_fields(schema.entity_type))
        if unknown:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown filter field: {', '.join(unknown)}",
            )

    filters = [Eq(name, value) for name, value in params.items()]
    gateway = AccessGateway(storage)
    rows = await ContextPropagator(storage).run_with(
        ctx,
        lambda: gateway.execute(entity_type, Action.READ, RecordQuery(where=all_of(*filters), limit=limit)),
    )
    return {"items": rows, "count": len(rows)}


@router.post("/records/{entity_type}", status_code=status.HTTP_201_CREATED)
async def create_record(
    entity_type: str,
    payload: Dict[str, Any] = Body(...),
    ctx: SecurityContext = Depends(get_security_context),
    storage=Depends(get_storage),
):
    gateway = AccessGateway(storage)
    return await ContextPropagator(storage).run_with(
        ctx,
        lambda: gateway.execute(entity_type, Action.CREATE, payload),
    )


@router.patch("/records/{entity_type}/{record_id}")
async def update_record(
    entity_type: str,
    record_id: str,
    changes: Dict[str, Any] = Body(...),
    ctx: SecurityContext = Depends(get_security_context),
    storage=Depends(get_storage),
):
    gateway = AccessGateway(storage)
    return await ContextPropagator(storage).run_with(
        ctx,
        lambda: gateway.execute(entity_type, Action.UPDATE, {**changes, "id": record_id}),
    )


@router.delete("/records/{entity_type}/{record_id}")
async def delete_record(
    entity_type: str,
    record_id: str,
    ctx: SecurityContext = Depends(get_security_context),
    storage=Depends(get_storage),
):
    gateway = AccessGateway(storage)
    deleted = await ContextPropagator(storage).run_with(
        ctx,
        lambda: gateway.execute(entity_type, Action.DELETE, {"id": record_id}),
    )
    return {"deleted": deleted["id"] if deleted else record_id}
