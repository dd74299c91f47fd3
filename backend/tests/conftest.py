"""
Shared fixtures: an in-memory store seeded with two organizations.

org-1
  identities: id-a (user-a, admin), id-m (user-m, manager),
              id-b (user-b, resident), id-d (user-d, resident),
              id-e (user-e, resident)
  property p1 with units u1, u2
  lease l1: unit u1, primary resident id-b, participant id-e
  lease l2: unit u2, primary resident id-d
  ledger entries le1 (l1), le2 (l2)
  work orders wo1 (u1, by id-b), wo2 (u1, by id-m), wo3 (u2, by id-d)
  notifications n1 (to id-b), n2 (to id-d)

org-2
  identities: id-c (user-c, admin)
  property p9, unit u9, lease l9 (primary id-c), work order wo9
"""

import logging

import pytest

from propman.core.security_context import Role, SecurityContext
from propman.storage.memory import InMemoryStorage

ORG_1 = "org-1"
ORG_2 = "org-2"

DEFAULT_SETTINGS = {
    "timezone": "America/New_York",
    "currency": "USD",
    "lateFeeAmount": 50,
    "gracePeriodDays": 5,
}

SEED = [
    ("identity", {"id": "id-a", "org_id": ORG_1, "external_key": "user-a", "role": "admin", "email": "a@one.test"}),
    ("identity", {"id": "id-m", "org_id": ORG_1, "external_key": "user-m", "role": "manager", "email": "m@one.test"}),
    ("identity", {"id": "id-b", "org_id": ORG_1, "external_key": "user-b", "role": "resident", "email": "b@one.test"}),
    ("identity", {"id": "id-d", "org_id": ORG_1, "external_key": "user-d", "role": "resident", "email": "d@one.test"}),
    ("identity", {"id": "id-e", "org_id": ORG_1, "external_key": "user-e", "role": "resident", "email": "e@one.test"}),
    ("identity", {"id": "id-c", "org_id": ORG_2, "external_key": "user-c", "role": "admin", "email": "c@two.test"}),
    ("property", {"id": "p1", "org_id": ORG_1, "name": "Maple Court"}),
    ("property", {"id": "p9", "org_id": ORG_2, "name": "Harbor View"}),
    ("unit", {"id": "u1", "org_id": ORG_1, "property_id": "p1", "label": "1A"}),
    ("unit", {"id": "u2", "org_id": ORG_1, "property_id": "p1", "label": "2B"}),
    ("unit", {"id": "u9", "org_id": ORG_2, "property_id": "p9", "label": "9"}),
    ("lease", {"id": "l1", "org_id": ORG_1, "unit_id": "u1", "primary_resident_id": "id-b", "status": "active"}),
    ("lease", {"id": "l2", "org_id": ORG_1, "unit_id": "u2", "primary_resident_id": "id-d", "status": "active"}),
    ("lease", {"id": "l9", "org_id": ORG_2, "unit_id": "u9", "primary_resident_id": "id-c", "status": "active"}),
    ("lease_participant", {"id": "lp1", "org_id": ORG_1, "lease_id": "l1", "identity_id": "id-e"}),
    ("ledger_entry", {"id": "le1", "org_id": ORG_1, "lease_id": "l1", "kind": "charge", "amount": 1200}),
    ("ledger_entry", {"id": "le2", "org_id": ORG_1, "lease_id": "l2", "kind": "charge", "amount": 950}),
    ("work_order", {"id": "wo1", "org_id": ORG_1, "unit_id": "u1", "requester_id": "id-b", "title": "Leaky faucet"}),
    ("work_order", {"id": "wo2", "org_id": ORG_1, "unit_id": "u1", "requester_id": "id-m", "title": "Smoke detector"}),
    ("work_order", {"id": "wo3", "org_id": ORG_1, "unit_id": "u2", "requester_id": "id-d", "title": "Broken blind"}),
    ("work_order", {"id": "wo9", "org_id": ORG_2, "unit_id": "u9", "requester_id": "id-c", "title": "Gutter"}),
    ("notification", {"id": "n1", "org_id": ORG_1, "recipient_id": "id-b", "title": "Rent due"}),
    ("notification", {"id": "n2", "org_id": ORG_1, "recipient_id": "id-d", "title": "Rent due"}),
]


def ctx(org_id: str, caller_id: str, role: Role = Role.UNKNOWN) -> SecurityContext:
    return SecurityContext(org_id=org_id, caller_id=caller_id, role=role)


async def build_storage() -> InMemoryStorage:
    store = InMemoryStorage()
    await store.ensure_organization(ORG_1, "Org One", DEFAULT_SETTINGS)
    await store.ensure_organization(ORG_2, "Org Two", DEFAULT_SETTINGS)
    for entity_type, record in SEED:
        await store.mutate(entity_type, "create", record)
    return store


@pytest.fixture
async def storage():
    return await build_storage()


@pytest.fixture
def admin_a():
    return ctx(ORG_1, "user-a", Role.OWNER_ADMIN)


@pytest.fixture
def manager_m():
    return ctx(ORG_1, "user-m", Role.MANAGER)


@pytest.fixture
def resident_b():
    return ctx(ORG_1, "user-b", Role.RESIDENT)


@pytest.fixture
def resident_d():
    return ctx(ORG_1, "user-d", Role.RESIDENT)


@pytest.fixture
def resident_e():
    return ctx(ORG_1, "user-e", Role.RESIDENT)


@pytest.fixture
def admin_c():
    return ctx(ORG_2, "user-c", Role.OWNER_ADMIN)


@pytest.fixture
def audit_records(caplog):
    """Audit events emitted during the test, as raw JSON strings."""
    caplog.set_level(logging.INFO, logger="audit")

    def _records():
        return [r.getMessage() for r in caplog.records if r.name == "audit"]

    return _records
