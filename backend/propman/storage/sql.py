"""
SQLAlchemy Storage
===================
Storage and DirectoryStore over an AsyncSession.

- Predicates compile to SQL WHERE clauses (they arrive fully resolved
  from the AccessGateway, so only literals appear)
- synchronize() sets app.org_id / app.user_id transaction-locally so
  PostgreSQL row-security policies see the same context
- Directory operations run with app.rls_bypass on, since identity
  sync legitimately spans organizations
- Identity creation is INSERT ... ON CONFLICT DO NOTHING on
  (org_id, clerk_user_id)

The storage never commits; the unit of work that owns the session
does, after the security context has been released.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import and_, delete, false, or_, select, text, true
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from propman.core.errors import DuplicateIdentity
from propman.db.models import MODELS, IdentityRecord, OrganizationRecord
from propman.security.entities import EntityType
from propman.security.predicates import (
    AllOf,
    Always,
    AnyOf,
    Eq,
    In,
    InSubquery,
    Never,
    Predicate,
)
from propman.storage.base import Identity, Organization, Record

logger = structlog.get_logger()

# Record keys that differ from ORM attribute names
_ALIASES = {"metadata": "metadata_json"}
_REVERSE_ALIASES = {attr: key for key, attr in _ALIASES.items()}


def compile_predicate(predicate: Predicate, model: Any):
    """Translate a resolved predicate into a SQLAlchemy clause on `model`."""
    if isinstance(predicate, Always):
        return true()
    if isinstance(predicate, Never):
        return false()
    if isinstance(predicate, Eq):
        return _column(model, predicate.field) == predicate.value
    if isinstance(predicate, In):
        return _column(model, predicate.field).in_(sorted(predicate.values, key=str))
    if isinstance(predicate, AllOf):
        return and_(*[compile_predicate(term, model) for term in predicate.terms])
    if isinstance(predicate, AnyOf):
        return or_(*[compile_predicate(term, model) for term in predicate.terms])
    if isinstance(predicate, InSubquery):
        raise TypeError("InSubquery must be resolved before reaching storage")
    raise TypeError(f"Unsupported predicate: {predicate!r}")


def _column(model: Any, field: str):
    attr = _ALIASES.get(field, field)
    if attr not in model.__mapper__.column_attrs:
        raise ValueError(f"{model.__tablename__} has no field {field!r}")
    return getattr(model, attr)


def record_fields(entity_type: Any) -> frozenset:
    """Record keys stored for `entity_type`, under their record (not ORM) names."""
    model = MODELS[EntityType(entity_type)]
    return frozenset(_REVERSE_ALIASES.get(attr.key, attr.key) for attr in model.__mapper__.column_attrs)


def to_record(obj: Any) -> Record:
    mapper = obj.__mapper__
    return {
        _REVERSE_ALIASES.get(attr.key, attr.key): getattr(obj, attr.key)
        for attr in mapper.column_attrs
    }


def _to_attributes(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {_ALIASES.get(key, key): getattr(value, "value", value) for key, value in payload.items()}


class SqlAlchemyStorage:
    def __init__(self, session: AsyncSession):
        self._session = session

    @property
    def dialect(self) -> str:
        return self._session.bind.dialect.name

    # ------------------------------------------------------------------
    # Session variables
    # ------------------------------------------------------------------

    async def _set_config(self, name: str, value: str) -> None:
        # Skip for non-PostgreSQL databases (SQLite in tests)
        if self.dialect != "postgresql":
            return
        await self._session.execute(
            text("SELECT set_config(:name, :value, true)"),
            {"name": name, "value": value},
        )

    async def _get_config(self, name: str) -> Optional[str]:
        if self.dialect != "postgresql":
            return None
        result = await self._session.execute(
            text("SELECT current_setting(:name, true)"),
            {"name": name},
        )
        return result.scalar()

    async def synchronize(self, org_id: str, caller_id: str) -> None:
        await self._set_config("app.org_id", org_id)
        await self._set_config("app.user_id", caller_id)

    async def release(self) -> None:
        await self._set_config("app.org_id", "")
        await self._set_config("app.user_id", "")

    async def current_session_context(self) -> Dict[str, Optional[str]]:
        return {
            "org_id": await self._get_config("app.org_id") or None,
            "user_id": await self._get_config("app.user_id") or None,
        }

    @asynccontextmanager
    async def _rls_bypass(self):
        previous = await self._get_config("app.rls_bypass")
        await self._set_config("app.rls_bypass", "on")
        try:
            yield
        finally:
            await self._set_config("app.rls_bypass", previous or "off")

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def query(self, entity_type: str, predicate: Predicate, *, limit: Optional[int] = None) -> List[Record]:
        model = MODELS[EntityType(entity_type)]
        stmt = select(model).where(compile_predicate(predicate, model)).order_by(model.created_at, model.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return [to_record(obj) for obj in result.scalars().all()]

    async def mutate(
        self,
        entity_type: str,
        action: str,
        payload: Mapping[str, Any],
        *,
        predicate: Optional[Predicate] = None,
    ) -> Optional[Record]:
        model = MODELS[EntityType(entity_type)]

        if action == "create":
            values = _to_attributes(payload)
            values.setdefault("id", uuid.uuid4().hex)
            if model is IdentityRecord:
                await self._check_identity_key(values)
            obj = model(**values)
            self._session.add(obj)
            await self._session.flush()
            return to_record(obj)

        clause = model.id == payload.get("id")
        if predicate is not None:
            clause = and_(clause, compile_predicate(predicate, model))
        result = await self._session.execute(select(model).where(clause))
        obj = result.scalars().first()
        if obj is None:
            return None

        if action == "update":
            for attr, value in _to_attributes(payload).items():
                if attr != "id":
                    setattr(obj, attr, value)
            await self._session.flush()
            return to_record(obj)

        if action == "delete":
            record = to_record(obj)
            await self._session.delete(obj)
            await self._session.flush()
            return record

        raise ValueError(f"Unsupported action: {action}")

    async def _check_identity_key(self, values: Mapping[str, Any]) -> None:
        org_id, external_key = values.get("org_id"), values.get("external_key")
        result = await self._session.execute(
            select(IdentityRecord.id).where(
                IdentityRecord.org_id == org_id,
                IdentityRecord.external_key == external_key,
            )
        )
        if result.first() is not None:
            raise DuplicateIdentity(org_id, external_key)

    # ------------------------------------------------------------------
    # DirectoryStore
    # ------------------------------------------------------------------

    def _insert(self, model: Any):
        if self.dialect == "postgresql":
            return pg_insert(model)
        if self.dialect == "sqlite":
            return sqlite_insert(model)
        raise NotImplementedError(f"No upsert support for dialect {self.dialect!r}")

    async def get_organization(self, org_id: str) -> Optional[Organization]:
        async with self._rls_bypass():
            obj = await self._session.get(OrganizationRecord, org_id)
        return Organization(**to_record(obj)) if obj else None

    async def ensure_organization(self, org_id: str, name: str, settings: Mapping[str, Any]) -> Organization:
        async with self._rls_bypass():
            stmt = (
                self._insert(OrganizationRecord)
                .values(id=org_id, name=name, settings=dict(settings))
                .on_conflict_do_nothing(index_elements=["id"])
            )
            await self._session.execute(stmt)
            result = await self._session.execute(
                select(OrganizationRecord).where(OrganizationRecord.id == org_id)
            )
            obj = result.scalars().one()
        return Organization(**to_record(obj))

    async def rename_organization(self, org_id: str, name: str) -> Optional[Organization]:
        async with self._rls_bypass():
            obj = await self._session.get(OrganizationRecord, org_id)
            if obj is None:
                return None
            obj.name = name
            await self._session.flush()
        return Organization(**to_record(obj))

    async def delete_organization(self, org_id: str) -> bool:
        async with self._rls_bypass():
            # Explicit child deletes; SQLite does not enforce FK cascades by default
            for entity_type in reversed(list(MODELS)):
                if entity_type is EntityType.ORGANIZATION:
                    continue
                model = MODELS[entity_type]
                await self._session.execute(delete(model).where(model.org_id == org_id))
            result = await self._session.execute(
                delete(OrganizationRecord).where(OrganizationRecord.id == org_id)
            )
        self._session.expunge_all()
        logger.info("Organization data removed", org_id=org_id)
        return result.rowcount > 0

    async def find_identity(self, org_id: str, external_key: str) -> Optional[Identity]:
        async with self._rls_bypass():
            result = await self._session.execute(
                select(IdentityRecord).where(
                    IdentityRecord.org_id == org_id,
                    IdentityRecord.external_key == external_key,
                )
            )
            obj = result.scalars().first()
        return Identity(**to_record(obj)) if obj else None

    async def find_identities(self, external_key: str) -> List[Identity]:
        async with self._rls_bypass():
            result = await self._session.execute(
                select(IdentityRecord)
                .where(IdentityRecord.external_key == external_key)
                .order_by(IdentityRecord.created_at)
            )
            rows = result.scalars().all()
        return [Identity(**to_record(obj)) for obj in rows]

    async def insert_identity(self, identity: Identity) -> Identity:
        columns = IdentityRecord.__mapper__.columns
        values = {
            columns[attr]: value
            for attr, value in _to_attributes(identity.model_dump(exclude={"created_at", "updated_at"})).items()
        }
        stmt = (
            self._insert(IdentityRecord)
            .values(values)
            .on_conflict_do_nothing(index_elements=["org_id", "clerk_user_id"])
            .returning(IdentityRecord.id)
        )
        async with self._rls_bypass():
            result = await self._session.execute(stmt)
            inserted_id = result.scalar()
            if inserted_id is None:
                raise DuplicateIdentity(identity.org_id, identity.external_key)
            obj = await self._session.get(IdentityRecord, inserted_id)
        return Identity(**to_record(obj))

    async def update_identity(self, identity_id: str, changes: Mapping[str, Any]) -> Optional[Identity]:
        async with self._rls_bypass():
            obj = await self._session.get(IdentityRecord, identity_id)
            if obj is None:
                return None
            for attr, value in _to_attributes(changes).items():
                setattr(obj, attr, value)
            await self._session.flush()
        return Identity(**to_record(obj))

    async def delete_identities(self, external_key: str, org_id: Optional[str] = None) -> int:
        stmt = delete(IdentityRecord).where(IdentityRecord.external_key == external_key)
        if org_id is not None:
            stmt = stmt.where(IdentityRecord.org_id == org_id)
        async with self._rls_bypass():
            result = await self._session.execute(stmt)
        self._session.expunge_all()
        return result.rowcount
