"""
Row-Level Security Tests
=========================
The generated policy text, and the no-op install off PostgreSQL.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from propman.db.models import Base
from propman.db.rls import (
    RESIDENT_RESTRICTIONS,
    TENANT_TABLES,
    install_row_security,
    row_security_statements,
    table_policies,
)


def test_every_model_table_is_covered():
    assert set(TENANT_TABLES) == set(Base.metadata.tables)


def test_every_table_gets_isolation_policy():
    statements = row_security_statements()
    for table, column in TENANT_TABLES.items():
        assert f'ALTER TABLE "{table}" ENABLE ROW LEVEL SECURITY' in statements
        isolation = [s for s in statements if s.startswith(f'CREATE POLICY "{table}_isolation"')]
        assert len(isolation) == 1
        assert f"{column} = current_setting('app.org_id', true)" in isolation[0]
        assert "app.rls_bypass" in isolation[0]


def test_resident_policies_are_restrictive():
    statements = row_security_statements()
    restrictive = [s for s in statements if "AS RESTRICTIVE" in s]
    assert len(restrictive) == len(RESIDENT_RESTRICTIONS)
    for statement in restrictive:
        assert "app_caller_is_staff()" in statement


def test_baseline_only_tables_have_no_resident_policy():
    for table in ("orgs", "properties", "units"):
        statements = table_policies(table, TENANT_TABLES[table], RESIDENT_RESTRICTIONS.get(table))
        assert not any("AS RESTRICTIVE" in s for s in statements)


def test_staff_helper_lists_staff_roles():
    statements = row_security_statements()
    (staff_fn,) = [s for s in statements if "FUNCTION app_caller_is_staff" in s]
    for role in ("'admin'", "'manager'", "'leasing'", "'maintenance'"):
        assert role in staff_fn
    assert "'resident'" not in staff_fn


def test_context_helpers_defined():
    joined = "\n".join(row_security_statements())
    assert "FUNCTION set_database_context" in joined
    assert "FUNCTION get_database_context" in joined


def test_statements_have_no_bind_parameters():
    # A stray ":name" would be taken as a bind parameter by text()
    for statement in row_security_statements():
        assert text(statement).compile().params == {}


async def test_install_is_noop_off_postgres():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await install_row_security(conn)
    await engine.dispose()
