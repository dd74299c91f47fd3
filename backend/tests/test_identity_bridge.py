"""
Identity Bridge Tests
======================
Resolve-or-create, organization provisioning and directory sync.
"""

import asyncio

import pytest

from propman.core.errors import DuplicateIdentity, InvalidContext
from propman.core.security_context import Role
from propman.security.identity_bridge import NO_ORGANIZATION, IdentityBridge, ProviderProfile
from propman.security.predicates import Eq
from propman.storage.base import Identity
from propman.storage.memory import InMemoryStorage

from conftest import DEFAULT_SETTINGS, ORG_1, ORG_2


@pytest.fixture
async def bridge(storage):
    return IdentityBridge(storage, DEFAULT_SETTINGS)


async def test_resolve_returns_existing_identity_unchanged(bridge):
    identity = await bridge.resolve("user-a", ORG_1, ProviderProfile(email="changed@one.test"))
    assert identity.id == "id-a"
    assert identity.role is Role.OWNER_ADMIN
    assert identity.email == "a@one.test"


async def test_resolve_creates_resident(bridge, storage):
    profile = ProviderProfile(email="new@one.test", first_name="Nia", last_name="Park", phone="555-0101")
    identity = await bridge.resolve("user-new", ORG_1, profile)

    assert identity.role is Role.RESIDENT
    assert identity.display_name == "Nia Park"
    assert identity.phone == "555-0101"
    assert (await storage.find_identity(ORG_1, "user-new")).id == identity.id


async def test_resolve_is_idempotent(bridge, storage):
    first = await bridge.resolve("user-new", ORG_1)
    second = await bridge.resolve("user-new", ORG_1)
    assert first.id == second.id
    assert len(await storage.find_identities("user-new")) == 1


async def test_concurrent_resolve_creates_one_identity(storage):
    bridge = IdentityBridge(storage, DEFAULT_SETTINGS)
    results = await asyncio.gather(*[bridge.resolve("user-race", ORG_1) for _ in range(10)])
    assert len({identity.id for identity in results}) == 1
    assert len(await storage.find_identities("user-race")) == 1


async def test_same_caller_independent_per_organization(bridge):
    in_one = await bridge.resolve("user-a", ORG_1)
    in_two = await bridge.resolve("user-a", ORG_2)
    assert in_one.id != in_two.id
    assert in_two.role is Role.RESIDENT


async def test_resolve_creates_unseen_organization(bridge, storage):
    await bridge.resolve("user-z", "org-new")
    org = await storage.get_organization("org-new")
    assert org is not None
    assert org.settings == DEFAULT_SETTINGS


@pytest.mark.parametrize("org_id", [None, "", "  "])
async def test_missing_organization_is_a_result(bridge, org_id, audit_records):
    assert await bridge.resolve("user-a", org_id) is NO_ORGANIZATION
    assert any("auth.no_organization" in r for r in audit_records())


async def test_missing_caller_is_invalid(bridge):
    with pytest.raises(InvalidContext):
        await bridge.resolve("", ORG_1)


async def test_duplicate_on_insert_relooks_up_once(storage):
    class RacingDirectory(InMemoryStorage):
        """Another unit of work inserts between our lookup and our insert."""
        lookups = 0

        async def find_identity(self, org_id, external_key):
            self.lookups += 1
            return await super().find_identity(org_id, external_key)

        async def insert_identity(self, identity):
            winner = identity.model_copy(update={"id": "winner"})
            await super().insert_identity(winner)
            raise DuplicateIdentity(identity.org_id, identity.external_key)

    directory = RacingDirectory()
    identity = await IdentityBridge(directory, DEFAULT_SETTINGS).resolve("user-r", ORG_1)
    assert identity.id == "winner"
    assert directory.lookups == 2


async def test_duplicate_without_winner_propagates():
    class BrokenDirectory(InMemoryStorage):
        async def insert_identity(self, identity):
            raise DuplicateIdentity(identity.org_id, identity.external_key)

    with pytest.raises(DuplicateIdentity):
        await IdentityBridge(BrokenDirectory(), DEFAULT_SETTINGS).resolve("user-r", ORG_1)


async def test_context_for_identity(bridge):
    ctx = bridge.context_for(Identity(id="id-b", org_id=ORG_1, external_key="user-b", role=Role.RESIDENT))
    assert (ctx.org_id, ctx.caller_id, ctx.role) == (ORG_1, "user-b", Role.RESIDENT)


# ---------------------------------------------------------------------------
# Provisioning and sync
# ---------------------------------------------------------------------------

async def test_provision_organization_creator(bridge, storage):
    org, creator = await bridge.provision_organization_creator("org-3", "user-founder", "Founders LLC")
    assert org.name == "Founders LLC"
    assert org.settings["currency"] == "USD"
    assert creator.role is Role.OWNER_ADMIN

    again, same = await bridge.provision_organization_creator("org-3", "user-founder", "Founders LLC")
    assert same.id == creator.id
    assert len(await storage.find_identities("user-founder")) == 1


async def test_provision_promotes_existing_identity(bridge):
    _, creator = await bridge.provision_organization_creator(ORG_1, "user-b")
    assert creator.id == "id-b"
    assert creator.role is Role.OWNER_ADMIN


async def test_provision_without_creator(bridge):
    org, creator = await bridge.provision_organization_creator("org-4", None, "Quiet Org")
    assert creator is None
    assert org.id == "org-4"


async def test_add_membership_preserves_role(bridge):
    identity = await bridge.add_membership(ORG_1, "user-m", ProviderProfile(email="m2@one.test"))
    assert identity.role is Role.MANAGER
    assert identity.email == "m2@one.test"


async def test_add_membership_creates_resident(bridge):
    identity = await bridge.add_membership(ORG_2, "user-b", ProviderProfile(email="b@two.test"), org_name="Org Two")
    assert identity.org_id == ORG_2
    assert identity.role is Role.RESIDENT


async def test_remove_membership(bridge, storage):
    assert await bridge.remove_membership(ORG_1, "user-d") == 1
    assert await storage.find_identity(ORG_1, "user-d") is None


async def test_sync_profile_updates_every_organization(bridge, storage):
    await bridge.add_membership(ORG_2, "user-b")
    profile = ProviderProfile(email="b@new.test", first_name="Bea", updated_at=1700000000)
    synced = await bridge.sync_profile("user-b", profile)

    assert len(synced) == 2
    for identity in await storage.find_identities("user-b"):
        assert identity.email == "b@new.test"
        assert identity.display_name == "Bea"
        assert identity.metadata["providerUpdatedAt"] == 1700000000


async def test_sync_profile_keeps_email_when_absent(bridge, storage):
    await bridge.sync_profile("user-b", ProviderProfile(first_name="Bea"))
    assert (await storage.find_identity(ORG_1, "user-b")).email == "b@one.test"


async def test_remove_identity_everywhere(bridge, storage):
    await bridge.add_membership(ORG_2, "user-b")
    assert await bridge.remove_identity("user-b") == 2
    assert await storage.find_identities("user-b") == []


async def test_update_organization_renames_or_creates(bridge, storage):
    assert (await bridge.update_organization(ORG_1, "Renamed")).name == "Renamed"
    created = await bridge.update_organization("org-5", "Late Arrival")
    assert created.name == "Late Arrival"
    assert await storage.get_organization("org-5") is not None


async def test_remove_organization_cascades(bridge, storage):
    assert await bridge.remove_organization(ORG_1) is True
    assert await storage.get_organization(ORG_1) is None
    assert await storage.find_identities("user-a") == []
    assert await storage.query("work_order", Eq("org_id", ORG_1)) == []
    assert await storage.query("work_order", Eq("org_id", ORG_2)) != []


@pytest.mark.parametrize("org_id", [None, "", "  "])
async def test_membership_without_organization_is_invalid(bridge, storage, org_id):
    with pytest.raises(InvalidContext):
        await bridge.add_membership(org_id, "user-z")
    assert await storage.find_identities("user-z") == []
