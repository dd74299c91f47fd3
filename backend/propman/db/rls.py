"""
PostgreSQL Row-Level Security
==============================
Row-security policies that mirror the PolicyEngine's read predicates,
generated from a declarative table list and installed at startup when
RLS_ENABLED is on.

Session parameters read by the policies:
- app.org_id:     the bound SecurityContext's organization id
- app.user_id:    the bound SecurityContext's caller id
- app.rls_bypass: "on" while the identity directory runs cross-tenant

Two policies per table:
- <table>_isolation:       PERMISSIVE, tenant baseline (or bypass)
- <table>_resident_access: RESTRICTIVE, staff see everything in their
                           organization, everyone else only their own rows

These policies duplicate the in-process enforcement of AccessGateway;
they are never the only guard.

Usage:
    async with engine.begin() as conn:
        await install_row_security(conn)
"""

from typing import Dict, List, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from propman.core.security_context import STAFF_ROLES

logger = structlog.get_logger()

ORG_SETTING = "current_setting('app.org_id', true)"
USER_SETTING = "current_setting('app.user_id', true)"
BYPASS = "coalesce(current_setting('app.rls_bypass', true), 'off') = 'on'"

# table -> column holding the organization id
TENANT_TABLES: Dict[str, str] = {
    "orgs": "id",
    "user_profiles": "org_id",
    "properties": "org_id",
    "units": "org_id",
    "leases": "org_id",
    "lease_participants": "org_id",
    "ledger_entries": "org_id",
    "work_orders": "org_id",
    "notifications": "org_id",
}

# table -> rows a non-staff caller may see; absent means baseline only
RESIDENT_RESTRICTIONS: Dict[str, str] = {
    "user_profiles": f"clerk_user_id = {USER_SETTING}",
    "leases": "id IN (SELECT app_caller_lease_ids())",
    "lease_participants": "lease_id IN (SELECT app_caller_lease_ids())",
    "ledger_entries": "lease_id IN (SELECT app_caller_lease_ids())",
    "work_orders": (
        "requested_by IN (SELECT app_caller_identity_ids()) "
        "OR unit_id IN (SELECT unit_id FROM leases WHERE id IN (SELECT app_caller_lease_ids()))"
    ),
    "notifications": "user_profile_id IN (SELECT app_caller_identity_ids())",
}


def _staff_roles_sql() -> str:
    return ", ".join(f"'{role.value}'" for role in sorted(STAFF_ROLES, key=lambda r: r.value))


def helper_functions() -> List[str]:
    """
    SECURITY DEFINER helpers. They read user_profiles / leases as the
    table owner, so policies can call them without recursing into each
    other's row security.
    """
    return [
        """
        CREATE OR REPLACE FUNCTION set_database_context(org_id_param text, user_id_param text)
        RETURNS void AS $$
        BEGIN
            PERFORM set_config('app.org_id', org_id_param, true);
            PERFORM set_config('app.user_id', user_id_param, true);
        END;
        $$ LANGUAGE plpgsql SECURITY DEFINER
        """,
        f"""
        CREATE OR REPLACE FUNCTION get_database_context()
        RETURNS TABLE(org_id text, user_id text) AS $$
        BEGIN
            RETURN QUERY SELECT {ORG_SETTING}, {USER_SETTING};
        END;
        $$ LANGUAGE plpgsql SECURITY DEFINER
        """,
        f"""
        CREATE OR REPLACE FUNCTION app_caller_identity_ids()
        RETURNS SETOF varchar AS $$
            SELECT id FROM user_profiles
            WHERE org_id = {ORG_SETTING} AND clerk_user_id = {USER_SETTING}
        $$ LANGUAGE sql STABLE SECURITY DEFINER
        """,
        f"""
        CREATE OR REPLACE FUNCTION app_caller_is_staff()
        RETURNS boolean AS $$
            SELECT EXISTS (
                SELECT 1 FROM user_profiles
                WHERE org_id = {ORG_SETTING}
                  AND clerk_user_id = {USER_SETTING}
                  AND role IN ({_staff_roles_sql()})
            )
        $$ LANGUAGE sql STABLE SECURITY DEFINER
        """,
        f"""
        CREATE OR REPLACE FUNCTION app_caller_lease_ids()
        RETURNS SETOF varchar AS $$
            SELECT id FROM leases
            WHERE org_id = {ORG_SETTING}
              AND (
                primary_resident_id IN (SELECT app_caller_identity_ids())
                OR id IN (
                    SELECT lease_id FROM lease_participants
                    WHERE org_id = {ORG_SETTING}
                      AND user_profile_id IN (SELECT app_caller_identity_ids())
                )
              )
        $$ LANGUAGE sql STABLE SECURITY DEFINER
        """,
    ]


def table_policies(table: str, org_column: str, restriction: Optional[str] = None) -> List[str]:
    isolation = f"{BYPASS} OR {org_column} = {ORG_SETTING}"
    statements = [
        f'ALTER TABLE "{table}" ENABLE ROW LEVEL SECURITY',
        f'DROP POLICY IF EXISTS "{table}_isolation" ON "{table}"',
        f'CREATE POLICY "{table}_isolation" ON "{table}" USING ({isolation}) WITH CHECK ({isolation})',
        f'DROP POLICY IF EXISTS "{table}_resident_access" ON "{table}"',
    ]
    if restriction:
        statements.append(
            f'CREATE POLICY "{table}_resident_access" ON "{table}" AS RESTRICTIVE '
            f"USING ({BYPASS} OR app_caller_is_staff() OR ({restriction}))"
        )
    return statements


def row_security_statements() -> List[str]:
    """Every statement needed to (re)install row security, in order."""
    statements = helper_functions()
    for table, org_column in TENANT_TABLES.items():
        statements.extend(table_policies(table, org_column, RESIDENT_RESTRICTIONS.get(table)))
    return statements


async def install_row_security(conn: AsyncConnection) -> None:
    """Install helpers and policies. PostgreSQL only; a no-op elsewhere."""
    if conn.dialect.name != "postgresql":
        logger.info("Row security skipped", dialect=conn.dialect.name)
        return

    for statement in row_security_statements():
        await conn.execute(text(statement))
    logger.info("Row security installed", tables=len(TENANT_TABLES))
