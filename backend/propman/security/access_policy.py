"""
Policy Engine — Tenant & Role Authorization
=============================================
Pure decision function over (SecurityContext, entity type, action,
target). Reads no ambient state.

Enforcement hierarchy:
1. Known entity type and resolved role (MANDATORY, fail-closed)
2. Tenant isolation (MANDATORY, never bypassed)
3. Staff roles: unrestricted within their organization
4. Residents: own identity, own leases, own work orders, own notifications

Permission Matrix:
┌──────────────────────┬───────┬─────────┬─────────┬─────────────┬──────────┐
│ Permission           │ ADMIN │ MANAGER │ LEASING │ MAINTENANCE │ RESIDENT │
├──────────────────────┼───────┼─────────┼─────────┼─────────────┼──────────┤
│ read                 │   ✓   │    ✓    │    ✓    │      ✓      │    ✓     │
│ write                │   ✓   │    ✓    │    ✓    │      ✓      │          │
│ admin                │   ✓   │         │         │             │          │
└──────────────────────┴───────┴─────────┴─────────┴─────────────┴──────────┘
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from propman.core.security_context import Permission, Role, SecurityContext
from propman.security.entities import (
    IDENTITY_CONTACT_FIELDS,
    IDENTITY_KEY_FIELDS,
    Action,
    EntitySchema,
    EntityType,
    schema_for,
)
from propman.security.predicates import (
    NEVER,
    Eq,
    InSubquery,
    Predicate,
    Subquery,
    all_of,
    any_of,
)


ROLE_PERMISSIONS = {
    Role.OWNER_ADMIN: frozenset({Permission.READ, Permission.WRITE, Permission.ADMIN}),
    Role.MANAGER: frozenset({Permission.READ, Permission.WRITE}),
    Role.LEASING_STAFF: frozenset({Permission.READ, Permission.WRITE}),
    Role.MAINTENANCE_STAFF: frozenset({Permission.READ, Permission.WRITE}),
    Role.RESIDENT: frozenset({Permission.READ}),
}

# Residents may never write these, apart from their own contact fields
RESIDENT_PROTECTED = frozenset({
    EntityType.IDENTITY,
    EntityType.LEASE,
    EntityType.NOTIFICATION,
})


@dataclass(frozen=True)
class Decision:
    allowed: bool
    predicate: Optional[Predicate] = None
    reason: str = ""

    @classmethod
    def allow(cls, predicate: Optional[Predicate] = None) -> "Decision":
        return cls(allowed=True, predicate=predicate)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(allowed=False, predicate=NEVER, reason=reason)


class PolicyEngine:
    """
    Row-level and write authorization for every tenant-scoped entity.

    Reads return a predicate to AND into the query; writes return
    allow/deny against the candidate record.
    """

    @classmethod
    def has_permission(cls, ctx: Optional[SecurityContext], action: Union[Permission, str]) -> bool:
        """True iff the caller's role grants `action`. Unknown roles get nothing."""
        if ctx is None:
            return False
        try:
            permission = Permission(action)
        except ValueError:
            return False
        return permission in ROLE_PERMISSIONS.get(ctx.role, frozenset())

    @classmethod
    def authorize(
        cls,
        ctx: SecurityContext,
        entity_type: Union[EntityType, str],
        action: Union[Action, str],
        target: Optional[Mapping[str, Any]] = None,
        changes: Optional[Mapping[str, Any]] = None,
    ) -> Decision:
        """
        Decide one operation.

        Args:
            ctx: The caller's SecurityContext
            entity_type: EntityType or its string value
            action: create | read | update | delete
            target: Candidate record for create/update/delete
            changes: Fields being written, for update
        """
        schema = schema_for(entity_type)
        if schema is None:
            return Decision.deny("unknown entity type")

        parsed_action = Action.parse(action)
        if parsed_action is None:
            return Decision.deny("unknown action")

        if ctx.role not in ROLE_PERMISSIONS:
            return Decision.deny("unresolved role")

        if parsed_action is Action.READ:
            return Decision.allow(cls.read_predicate(ctx, schema.entity_type))

        if target is None:
            return Decision.deny("write without target")

        # SECURITY: Tenant isolation is ALWAYS mandatory
        if schema.org_of(target) != ctx.org_id:
            return Decision.deny("cross-tenant target")
        if changes and schema.org_field in changes and changes[schema.org_field] != ctx.org_id:
            return Decision.deny("organization reassignment")
        if (
            schema.entity_type is EntityType.IDENTITY
            and changes
            and IDENTITY_KEY_FIELDS & set(changes)
        ):
            return Decision.deny("identity key is managed by the identity provider")

        if ctx.role is Role.RESIDENT:
            return cls._authorize_resident_write(ctx, schema, parsed_action, target, changes)

        return cls._authorize_staff_write(ctx, schema, parsed_action, changes)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @classmethod
    def read_predicate(cls, ctx: SecurityContext, entity_type: EntityType) -> Predicate:
        """Row predicate for reads. Always includes the tenant baseline."""
        schema = schema_for(entity_type)
        baseline = Eq(schema.org_field, ctx.org_id)

        if ctx.role.is_staff:
            return baseline

        if ctx.role is not Role.RESIDENT:
            return NEVER

        restriction = cls._resident_restriction(ctx, schema.entity_type)
        if restriction is None:
            return baseline
        return all_of(baseline, restriction)

    @classmethod
    def _resident_restriction(cls, ctx: SecurityContext, entity_type: EntityType) -> Optional[Predicate]:
        if entity_type is EntityType.IDENTITY:
            return Eq("external_key", ctx.caller_id)

        if entity_type is EntityType.LEASE:
            return cls._own_leases(ctx)

        if entity_type is EntityType.WORK_ORDER:
            return any_of(
                InSubquery("requester_id", cls._caller_identity_ids(ctx)),
                InSubquery("unit_id", cls._occupied_unit_ids(ctx)),
            )

        if entity_type is EntityType.NOTIFICATION:
            return InSubquery("recipient_id", cls._caller_identity_ids(ctx))

        if entity_type in (EntityType.LEDGER_ENTRY, EntityType.LEASE_PARTICIPANT):
            return InSubquery("lease_id", cls._visible_lease_ids(ctx))

        # Organization, property, unit: tenant baseline only
        return None

    @classmethod
    def _caller_identity_ids(cls, ctx: SecurityContext) -> Subquery:
        return Subquery(
            EntityType.IDENTITY,
            "id",
            all_of(Eq("org_id", ctx.org_id), Eq("external_key", ctx.caller_id)),
        )

    @classmethod
    def _own_leases(cls, ctx: SecurityContext) -> Predicate:
        identity_ids = cls._caller_identity_ids(ctx)
        participating = Subquery(
            EntityType.LEASE_PARTICIPANT,
            "lease_id",
            all_of(Eq("org_id", ctx.org_id), InSubquery("identity_id", identity_ids)),
        )
        return any_of(
            InSubquery("primary_resident_id", identity_ids),
            InSubquery("id", participating),
        )

    @classmethod
    def _visible_lease_ids(cls, ctx: SecurityContext) -> Subquery:
        return Subquery(
            EntityType.LEASE,
            "id",
            all_of(Eq("org_id", ctx.org_id), cls._own_leases(ctx)),
        )

    @classmethod
    def _occupied_unit_ids(cls, ctx: SecurityContext) -> Subquery:
        return Subquery(
            EntityType.LEASE,
            "unit_id",
            all_of(Eq("org_id", ctx.org_id), cls._own_leases(ctx)),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @classmethod
    def _authorize_staff_write(
        cls,
        ctx: SecurityContext,
        schema: EntitySchema,
        action: Action,
        changes: Optional[Mapping[str, Any]],
    ) -> Decision:
        required = Permission.WRITE

        if schema.entity_type is EntityType.ORGANIZATION:
            # Organizations are provisioned by the identity bridge only
            if action is Action.CREATE:
                return Decision.deny("organizations are provisioned, not created")
            required = Permission.ADMIN

        if schema.entity_type is EntityType.IDENTITY:
            role_change = action is Action.CREATE or (changes is not None and "role" in changes)
            if role_change or action is Action.DELETE:
                required = Permission.ADMIN

        if not cls.has_permission(ctx, required):
            return Decision.deny(f"role {ctx.role.value} lacks {required.value}")
        return Decision.allow()

    @classmethod
    def _authorize_resident_write(
        cls,
        ctx: SecurityContext,
        schema: EntitySchema,
        action: Action,
        target: Mapping[str, Any],
        changes: Optional[Mapping[str, Any]],
    ) -> Decision:
        if (
            schema.entity_type is EntityType.IDENTITY
            and action is Action.UPDATE
            and target.get("external_key") == ctx.caller_id
            and changes
            and set(changes) <= IDENTITY_CONTACT_FIELDS
        ):
            return Decision.allow()

        if schema.entity_type in RESIDENT_PROTECTED:
            return Decision.deny("residents may only update their own contact fields")

        if not cls.has_permission(ctx, Permission.WRITE):
            return Decision.deny("residents are read-only")
        return Decision.allow()


# Module-level shortcuts
authorize = PolicyEngine.authorize
has_permission = PolicyEngine.has_permission
