"""
Access Gateway — Single Choke Point for Tenant Data
=====================================================
Application code performs every tenant-scoped operation through
AccessGateway.execute(). The gateway:

1. Reads the ambient SecurityContext (MissingContext if none)
2. Asks the PolicyEngine for a decision (AccessDenied if refused,
   before storage is touched)
3. Resolves sub-selections itself, so storage receives a concrete
   predicate
4. Re-checks every returned row in-process against that predicate

Storage-side row filtering (PostgreSQL RLS) is a duplicate of step 4,
never the only guard.
"""

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Union

import structlog

from propman.core.audit import AuditEventType, audit_log, audit_record, audit_security
from propman.core.context import require_current
from propman.core.errors import AccessDenied
from propman.core.security_context import SecurityContext
from propman.security.access_policy import PolicyEngine
from propman.security.entities import Action, EntitySchema, EntityType, schema_for
from propman.security.predicates import ALWAYS, Eq, Predicate, all_of, resolve
from propman.storage.base import Record, Storage

logger = structlog.get_logger()


@dataclass(frozen=True)
class Query:
    """Caller-supplied read filter, ANDed with the policy predicate."""
    where: Predicate = ALWAYS
    limit: Optional[int] = None


_RECORD_EVENTS = {
    Action.CREATE: AuditEventType.RECORD_CREATE,
    Action.UPDATE: AuditEventType.RECORD_UPDATE,
    Action.DELETE: AuditEventType.RECORD_DELETE,
}


class AccessGateway:
    def __init__(self, storage: Storage, engine: type = PolicyEngine):
        self._storage = storage
        self._engine = engine

    async def execute(
        self,
        entity_type: Union[EntityType, str],
        action: Union[Action, str],
        payload_or_query: Union[Query, Mapping[str, Any], None] = None,
    ) -> Union[List[Record], Optional[Record]]:
        """
        Perform one tenant-scoped operation under the bound context.

        Args:
            entity_type: EntityType or its string value
            action: create | read | update | delete
            payload_or_query: Query for reads; record fields for create;
                fields including "id" for update; {"id": ...} for delete

        Returns:
            The storage result: a list of records for reads, the
            affected record for writes.
        """
        ctx = require_current()

        parsed_action = Action.parse(action)
        schema = schema_for(entity_type)
        if parsed_action is None or schema is None:
            # Still consult the engine so the denial reason is consistent
            decision = self._engine.authorize(ctx, entity_type, action)
            self._deny(ctx, entity_type, action, decision.reason)

        if parsed_action is Action.READ:
            query = payload_or_query if isinstance(payload_or_query, Query) else Query()
            return await self._read(ctx, schema, query)

        payload = dict(payload_or_query or {})
        if parsed_action is Action.CREATE:
            return await self._create(ctx, schema, payload)
        return await self._modify(ctx, schema, parsed_action, payload)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read(self, ctx: SecurityContext, schema: EntitySchema, query: Query) -> List[Record]:
        decision = self._engine.authorize(ctx, schema.entity_type, Action.READ)
        if not decision.allowed:
            self._deny(ctx, schema.entity_type, Action.READ, decision.reason)

        # Caller-supplied sub-selections are themselves subject to policy
        async def scoped_fetch(entity_type, predicate):
            sub_schema = schema_for(entity_type)
            if sub_schema is None:
                self._deny(ctx, entity_type, Action.READ, "unknown entity type")
            return await self._read(ctx, sub_schema, Query(where=predicate))

        where = await resolve(query.where, scoped_fetch)
        rows = await self._fetch(schema.entity_type, all_of(decision.predicate, where), limit=query.limit)

        audit_record(
            AuditEventType.RECORD_READ,
            ctx,
            schema.entity_type.value,
            details={"count": len(rows)},
        )
        return rows

    async def _fetch(self, entity_type: EntityType, predicate: Predicate, limit: Optional[int] = None) -> List[Record]:
        """Resolve, query, then drop anything storage should not have returned."""
        entity_type = EntityType(entity_type)
        resolved = await resolve(predicate, self._fetch)
        rows = await self._storage.query(entity_type.value, resolved, limit=limit)

        visible = [row for row in rows if resolved.matches(row)]
        if len(visible) != len(rows):
            logger.warning(
                "Storage returned rows outside the policy predicate",
                entity_type=entity_type.value,
                returned=len(rows),
                visible=len(visible),
            )
            audit_log(
                AuditEventType.RECORD_FILTERED,
                action="post_filter",
                outcome="failure",
                resource_type=entity_type.value,
                details={"returned": len(rows), "visible": len(visible)},
            )
        return visible

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _create(self, ctx: SecurityContext, schema: EntitySchema, payload: dict) -> Optional[Record]:
        payload.setdefault(schema.org_field, ctx.org_id)

        decision = self._engine.authorize(ctx, schema.entity_type, Action.CREATE, target=payload)
        if not decision.allowed:
            self._deny(ctx, schema.entity_type, Action.CREATE, decision.reason)

        await self._check_references(ctx, schema, Action.CREATE, payload)

        result = await self._storage.mutate(schema.entity_type.value, Action.CREATE.value, payload)
        self._audit_write(ctx, schema, Action.CREATE, result)
        return result

    async def _modify(self, ctx: SecurityContext, schema: EntitySchema, action: Action, payload: dict) -> Optional[Record]:
        record_id = payload.get("id")
        if record_id is None:
            self._deny(ctx, schema.entity_type, action, "missing record id")

        read = self._engine.authorize(ctx, schema.entity_type, Action.READ)
        if not read.allowed:
            self._deny(ctx, schema.entity_type, action, read.reason)

        # Invisible and nonexistent targets are indistinguishable
        scope = await resolve(all_of(read.predicate, Eq("id", record_id)), self._fetch)
        existing = await self._fetch(schema.entity_type, scope, limit=1)
        if not existing:
            self._deny(ctx, schema.entity_type, action, "target not visible")

        changes = {key: value for key, value in payload.items() if key != "id"}
        decision = self._engine.authorize(
            ctx,
            schema.entity_type,
            action,
            target=existing[0],
            changes=changes if action is Action.UPDATE else None,
        )
        if not decision.allowed:
            self._deny(ctx, schema.entity_type, action, decision.reason)

        if action is Action.UPDATE:
            await self._check_references(ctx, schema, action, changes)

        result = await self._storage.mutate(
            schema.entity_type.value,
            action.value,
            payload if action is Action.UPDATE else {"id": record_id},
            predicate=scope,
        )
        self._audit_write(ctx, schema, action, result)
        return result

    async def _check_references(
        self,
        ctx: SecurityContext,
        schema: EntitySchema,
        action: Action,
        fields: Mapping[str, Any],
    ) -> None:
        """Every referenced record must live in the caller's organization."""
        for column, ref_type in schema.references.items():
            value = fields.get(column)
            if value is None:
                continue
            ref_schema = schema_for(ref_type)
            rows = await self._fetch(
                ref_type,
                all_of(Eq(ref_schema.org_field, ctx.org_id), Eq("id", value)),
                limit=1,
            )
            if not rows:
                self._deny(ctx, schema.entity_type, action, f"{column} outside organization")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _deny(self, ctx: SecurityContext, entity_type: Any, action: Any, reason: str):
        entity_name = getattr(entity_type, "value", entity_type)
        action_name = getattr(action, "value", action)
        audit_security(
            AuditEventType.ACCESS_DENIED,
            ctx.caller_id,
            "denied",
            org_id=ctx.org_id,
            details={"entity_type": entity_name, "action": action_name, "reason": reason},
        )
        raise AccessDenied(str(entity_name), str(action_name), reason)

    def _audit_write(self, ctx: SecurityContext, schema: EntitySchema, action: Action, result: Optional[Record]):
        audit_record(
            _RECORD_EVENTS[action],
            ctx,
            schema.entity_type.value,
            resource_id=result.get("id") if result else None,
        )
