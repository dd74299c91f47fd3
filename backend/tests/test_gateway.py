"""
Access Gateway Tests
=====================
End-to-end through ContextPropagator + PolicyEngine + storage.

Covers the O1/O2 identity scenario, the work-order scenario, write
validation, and in-process enforcement when storage ignores the
predicate it is given.
"""

import pytest

from propman.core.context import ContextPropagator
from propman.core.errors import AccessDenied, MissingContext
from propman.core.security_context import Role
from propman.security.entities import Action, EntityType
from propman.security.gateway import AccessGateway, Query
from propman.security.identity_bridge import IdentityBridge
from propman.security.predicates import ALWAYS, Eq, InSubquery, Subquery
from propman.storage.memory import InMemoryStorage

from conftest import DEFAULT_SETTINGS, ORG_1, ORG_2


async def run(storage, context, entity_type, action, payload=None):
    gateway = AccessGateway(storage)
    return await ContextPropagator(storage).run_with(
        context,
        lambda: gateway.execute(entity_type, action, payload),
    )


def ids(rows):
    return {row["id"] for row in rows}


class LeakyStorage(InMemoryStorage):
    """Returns every row regardless of the predicate, like storage without row security."""

    async def query(self, entity_type, predicate, *, limit=None):
        return await super().query(entity_type, ALWAYS, limit=None)


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

async def test_identity_scenario(storage, admin_a, resident_b, admin_c):
    assert ids(await run(storage, resident_b, "identity", "read")) == {"id-b"}
    assert {"id-a", "id-b"} <= ids(await run(storage, admin_a, "identity", "read"))
    assert ids(await run(storage, admin_c, "identity", "read")) == {"id-c"}


async def test_work_order_scenario(storage, resident_b, resident_d, admin_c):
    assert "wo1" in ids(await run(storage, resident_b, "work_order", "read"))
    assert "wo1" not in ids(await run(storage, resident_d, "work_order", "read"))
    assert "wo1" not in ids(await run(storage, admin_c, "work_order", "read"))


async def test_query_filters_are_anded_with_policy(storage, manager_m):
    rows = await run(storage, manager_m, "work_order", "read", Query(where=Eq("unit_id", "u2")))
    assert ids(rows) == {"wo3"}

    # A filter naming a foreign record still yields only same-org rows
    rows = await run(storage, manager_m, "work_order", "read", Query(where=Eq("id", "wo9")))
    assert rows == []


async def test_query_limit(storage, manager_m):
    rows = await run(storage, manager_m, "work_order", "read", Query(limit=2))
    assert len(rows) == 2


async def test_caller_subquery_is_policy_scoped(storage, resident_b):
    # Work orders on units of leases the caller can see: only l1 qualifies
    where = InSubquery("unit_id", Subquery(EntityType.LEASE, "unit_id", Eq("status", "active")))
    rows = await run(storage, resident_b, "work_order", "read", Query(where=where))
    assert ids(rows) == {"wo1", "wo2"}


# ---------------------------------------------------------------------------
# Fail-closed behaviour
# ---------------------------------------------------------------------------

async def test_execute_without_context_raises(storage):
    with pytest.raises(MissingContext):
        await AccessGateway(storage).execute("property", "read", Query())


async def test_unknown_entity_type_denied(storage, admin_a, audit_records):
    with pytest.raises(AccessDenied):
        await run(storage, admin_a, "invoice", "read")
    assert any("auth.access_denied" in r for r in audit_records())


async def test_denial_message_is_generic(storage, admin_c):
    with pytest.raises(AccessDenied) as excinfo:
        await run(storage, admin_c, "property", "update", {"id": "p1", "name": "Mine"})
    assert str(excinfo.value) == "Not authorized to update property"


async def test_leaky_storage_rows_are_filtered(admin_c, resident_b, audit_records):
    leaky = LeakyStorage()
    await leaky.ensure_organization(ORG_1, "Org One", {})
    await leaky.ensure_organization(ORG_2, "Org Two", {})
    await leaky.mutate("identity", "create", {"id": "id-b", "org_id": ORG_1, "external_key": "user-b", "role": "resident"})
    await leaky.mutate("identity", "create", {"id": "id-x", "org_id": ORG_1, "external_key": "user-x", "role": "resident"})
    await leaky.mutate("identity", "create", {"id": "id-c", "org_id": ORG_2, "external_key": "user-c", "role": "admin"})
    await leaky.mutate("property", "create", {"id": "p1", "org_id": ORG_1, "name": "Maple"})

    assert ids(await run(leaky, admin_c, "identity", "read")) == {"id-c"}
    assert ids(await run(leaky, admin_c, "property", "read")) == set()
    assert ids(await run(leaky, resident_b, "identity", "read")) == {"id-b"}
    assert any("record.filtered" in r for r in audit_records())


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def test_create_stamps_organization(storage, manager_m):
    created = await run(storage, manager_m, "property", "create", {"name": "Birch Hall"})
    assert created["org_id"] == ORG_1
    assert created["id"]


async def test_create_with_foreign_organization_denied(storage, manager_m):
    with pytest.raises(AccessDenied):
        await run(storage, manager_m, "property", "create", {"name": "X", "org_id": ORG_2})
    assert not [r for r in await storage.query("property", Eq("name", "X"))]


async def test_create_with_foreign_reference_denied(storage, manager_m):
    with pytest.raises(AccessDenied):
        await run(storage, manager_m, "unit", "create", {"property_id": "p9", "label": "X"})


async def test_create_with_local_reference_allowed(storage, manager_m):
    unit = await run(storage, manager_m, "unit", "create", {"property_id": "p1", "label": "3C"})
    assert unit["property_id"] == "p1"


async def test_update_visible_record(storage, manager_m):
    updated = await run(storage, manager_m, "work_order", "update", {"id": "wo1", "status": "closed"})
    assert updated["status"] == "closed"


async def test_update_foreign_record_indistinguishable_from_missing(storage, admin_a):
    with pytest.raises(AccessDenied) as foreign:
        await run(storage, admin_a, "work_order", "update", {"id": "wo9", "status": "closed"})
    with pytest.raises(AccessDenied) as missing:
        await run(storage, admin_a, "work_order", "update", {"id": "nope", "status": "closed"})
    assert str(foreign.value) == str(missing.value)

    (wo9,) = await storage.query("work_order", Eq("id", "wo9"))
    assert wo9.get("status") != "closed"


async def test_update_cannot_reassign_organization(storage, admin_a):
    with pytest.raises(AccessDenied):
        await run(storage, admin_a, "property", "update", {"id": "p1", "org_id": ORG_2})


async def test_delete_foreign_record_denied(storage, admin_a):
    with pytest.raises(AccessDenied):
        await run(storage, admin_a, "lease", "delete", {"id": "l9"})
    assert await storage.query("lease", Eq("id", "l9"))


async def test_delete_own_record(storage, manager_m):
    deleted = await run(storage, manager_m, "notification", "delete", {"id": "n2"})
    assert deleted["id"] == "n2"
    assert not await storage.query("notification", Eq("id", "n2"))


async def test_resident_updates_own_contact_fields(storage, resident_b):
    updated = await run(storage, resident_b, "identity", "update", {"id": "id-b", "phone": "555-0100"})
    assert updated["phone"] == "555-0100"


async def test_resident_cannot_touch_other_identity(storage, resident_b):
    with pytest.raises(AccessDenied):
        await run(storage, resident_b, "identity", "update", {"id": "id-d", "phone": "555-0100"})


async def test_resident_cannot_write_work_orders(storage, resident_b):
    with pytest.raises(AccessDenied):
        await run(storage, resident_b, "work_order", "create", {"unit_id": "u1", "title": "Noise"})
    with pytest.raises(AccessDenied):
        await run(storage, resident_b, "work_order", Action.DELETE, {"id": "wo1"})


async def test_update_requires_record_id(storage, manager_m):
    with pytest.raises(AccessDenied):
        await run(storage, manager_m, "property", "update", {"name": "no id"})


async def test_manager_cannot_take_over_admin_identity(storage, manager_m, audit_records):
    with pytest.raises(AccessDenied):
        await run(storage, manager_m, "identity", "update", {"id": "id-m", "external_key": "parked"})
    with pytest.raises(AccessDenied):
        await run(storage, manager_m, "identity", "update", {"id": "id-a", "external_key": "user-m"})

    assert (await storage.find_identity(ORG_1, "user-a")).id == "id-a"
    identity = await IdentityBridge(storage, DEFAULT_SETTINGS).resolve("user-m", ORG_1)
    assert identity.id == "id-m"
    assert identity.role is Role.MANAGER
    assert any("auth.access_denied" in r for r in audit_records())
