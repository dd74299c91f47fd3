"""
Entity Registry
================
Tenant-scoped entity types and the fields the policy layer needs
to know about each one: which column carries the organization id,
and which columns reference other tenant-scoped records.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class EntityType(str, Enum):
    ORGANIZATION = "organization"
    IDENTITY = "identity"
    PROPERTY = "property"
    UNIT = "unit"
    LEASE = "lease"
    LEASE_PARTICIPANT = "lease_participant"
    LEDGER_ENTRY = "ledger_entry"
    WORK_ORDER = "work_order"
    NOTIFICATION = "notification"

    @classmethod
    def parse(cls, value: Any) -> Optional["EntityType"]:
        """Return the member for value, or None for anything unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> Optional["Action"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class EntitySchema:
    entity_type: EntityType
    org_field: str = "org_id"
    # column -> entity type it points at; must resolve inside the caller's org
    references: Mapping[str, EntityType] = field(default_factory=dict)

    def org_of(self, record: Mapping[str, Any]) -> Optional[str]:
        return record.get(self.org_field)


IDENTITY_CONTACT_FIELDS = frozenset({"display_name", "email", "phone"})

# Links an identity to its provider login; written only by the identity bridge
IDENTITY_KEY_FIELDS = frozenset({"external_key"})


ENTITY_SCHEMAS = {
    EntityType.ORGANIZATION: EntitySchema(EntityType.ORGANIZATION, org_field="id"),
    EntityType.IDENTITY: EntitySchema(EntityType.IDENTITY),
    EntityType.PROPERTY: EntitySchema(EntityType.PROPERTY),
    EntityType.UNIT: EntitySchema(
        EntityType.UNIT,
        references={"property_id": EntityType.PROPERTY},
    ),
    EntityType.LEASE: EntitySchema(
        EntityType.LEASE,
        references={
            "unit_id": EntityType.UNIT,
            "primary_resident_id": EntityType.IDENTITY,
        },
    ),
    EntityType.LEASE_PARTICIPANT: EntitySchema(
        EntityType.LEASE_PARTICIPANT,
        references={
            "lease_id": EntityType.LEASE,
            "identity_id": EntityType.IDENTITY,
        },
    ),
    EntityType.LEDGER_ENTRY: EntitySchema(
        EntityType.LEDGER_ENTRY,
        references={"lease_id": EntityType.LEASE},
    ),
    EntityType.WORK_ORDER: EntitySchema(
        EntityType.WORK_ORDER,
        references={
            "unit_id": EntityType.UNIT,
            "requester_id": EntityType.IDENTITY,
        },
    ),
    EntityType.NOTIFICATION: EntitySchema(
        EntityType.NOTIFICATION,
        references={"recipient_id": EntityType.IDENTITY},
    ),
}


def schema_for(entity_type: Any) -> Optional[EntitySchema]:
    parsed = EntityType.parse(entity_type)
    return ENTITY_SCHEMAS.get(parsed) if parsed is not None else None
