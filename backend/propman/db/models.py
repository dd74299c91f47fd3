"""
Database Models — SQLAlchemy ORM
==================================
Organizations, member identities and the tenant-scoped property
records. Every tenant-scoped table carries org_id with ON DELETE
CASCADE so removing an organization removes everything it owns.
"""

from datetime import datetime
from sqlalchemy import (
    Column, String, Text, Integer, DateTime, Boolean, Date,
    ForeignKey, Index, JSON, Numeric, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

from propman.security.entities import EntityType

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


def _org_fk():
    return Column(String(64), ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False, index=True)


class OrganizationRecord(Base):
    """Tenant boundary. The id is the identity provider's organization id."""
    __tablename__ = "orgs"

    id = Column(String(64), primary_key=True)
    name = Column(String(256), nullable=False)
    settings = Column(JSONType, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)


class IdentityRecord(Base):
    """A caller's membership profile inside one organization."""
    __tablename__ = "user_profiles"

    id = Column(String(64), primary_key=True)
    org_id = _org_fk()
    external_key = Column("clerk_user_id", String(128), nullable=False)
    display_name = Column("full_name", String(256))
    email = Column(String(320), default="")
    phone = Column(String(64))
    role = Column(String(32), nullable=False, default="resident")
    metadata_json = Column("metadata", JSONType, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("org_id", "clerk_user_id", name="uq_user_profiles_org_clerk"),
    )


class PropertyRecord(Base):
    __tablename__ = "properties"

    id = Column(String(64), primary_key=True)
    org_id = _org_fk()
    name = Column(String(256), nullable=False)
    address = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


class UnitRecord(Base):
    __tablename__ = "units"

    id = Column(String(64), primary_key=True)
    org_id = _org_fk()
    property_id = Column(String(64), ForeignKey("properties.id", ondelete="CASCADE"), nullable=False)
    label = Column(String(64), nullable=False)
    bedrooms = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)


class LeaseRecord(Base):
    __tablename__ = "leases"

    id = Column(String(64), primary_key=True)
    org_id = _org_fk()
    unit_id = Column(String(64), ForeignKey("units.id", ondelete="CASCADE"), nullable=False)
    primary_resident_id = Column(String(64), ForeignKey("user_profiles.id", ondelete="SET NULL"))
    starts_on = Column(Date)
    ends_on = Column(Date)
    monthly_rent = Column(Numeric(12, 2))
    status = Column(String(32), default="active")
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_leases_org_primary_resident", "org_id", "primary_resident_id"),
    )


class LeaseParticipantRecord(Base):
    __tablename__ = "lease_participants"

    id = Column(String(64), primary_key=True)
    org_id = _org_fk()
    lease_id = Column(String(64), ForeignKey("leases.id", ondelete="CASCADE"), nullable=False)
    identity_id = Column("user_profile_id", String(64), ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_lease_participants_lease_user", "lease_id", "user_profile_id"),
    )


class LedgerEntryRecord(Base):
    __tablename__ = "ledger_entries"

    id = Column(String(64), primary_key=True)
    org_id = _org_fk()
    lease_id = Column(String(64), ForeignKey("leases.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(32), nullable=False)  # charge, payment, late_fee, credit
    amount = Column(Numeric(12, 2), nullable=False)
    memo = Column(Text)
    posted_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)


class WorkOrderRecord(Base):
    __tablename__ = "work_orders"

    id = Column(String(64), primary_key=True)
    org_id = _org_fk()
    unit_id = Column(String(64), ForeignKey("units.id", ondelete="CASCADE"))
    requester_id = Column("requested_by", String(64), ForeignKey("user_profiles.id", ondelete="SET NULL"))
    title = Column(String(256), nullable=False)
    description = Column(Text)
    status = Column(String(32), default="open")
    priority = Column(String(16), default="normal")
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_work_orders_org_requested_by", "org_id", "requested_by"),
    )


class NotificationRecord(Base):
    __tablename__ = "notifications"

    id = Column(String(64), primary_key=True)
    org_id = _org_fk()
    recipient_id = Column("user_profile_id", String(64), ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(256), nullable=False)
    body = Column(Text)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_notifications_org_user", "org_id", "user_profile_id"),
    )


MODELS = {
    EntityType.ORGANIZATION: OrganizationRecord,
    EntityType.IDENTITY: IdentityRecord,
    EntityType.PROPERTY: PropertyRecord,
    EntityType.UNIT: UnitRecord,
    EntityType.LEASE: LeaseRecord,
    EntityType.LEASE_PARTICIPANT: LeaseParticipantRecord,
    EntityType.LEDGER_ENTRY: LedgerEntryRecord,
    EntityType.WORK_ORDER: WorkOrderRecord,
    EntityType.NOTIFICATION: NotificationRecord,
}
