"""
In-Memory Storage
==================
Process-local implementation of Storage and DirectoryStore.

Used when STORAGE_BACKEND=memory (local development) and by the test
suite. Predicates are evaluated in-process; the (org_id, external_key)
identity uniqueness is enforced under a lock so create-or-return is
atomic across tasks and threads.
"""

import copy
import threading
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

from propman.core.errors import DuplicateIdentity
from propman.security.entities import EntityType
from propman.security.predicates import ALWAYS, Eq, Predicate, all_of
from propman.storage.base import Identity, Organization, Record

logger = structlog.get_logger()

# (org_id, user_id) per unit of work, mirroring transaction-local app.org_id / app.user_id
_session_vars: ContextVar[Tuple[Optional[str], Optional[str]]] = ContextVar(
    "memory_session_vars",
    default=(None, None),
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStorage:
    """Dict-backed tables keyed by entity type, then record id."""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Record]] = {et.value: {} for et in EntityType}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def synchronize(self, org_id: str, caller_id: str) -> None:
        _session_vars.set((org_id, caller_id))

    async def release(self) -> None:
        _session_vars.set((None, None))

    async def current_session_context(self) -> Dict[str, Optional[str]]:
        org_id, user_id = _session_vars.get()
        return {"org_id": org_id, "user_id": user_id}

    async def query(self, entity_type: str, predicate: Predicate, *, limit: Optional[int] = None) -> List[Record]:
        with self._lock:
            rows = [
                copy.deepcopy(row)
                for row in self._table(entity_type).values()
                if predicate.matches(row)
            ]
        rows.sort(key=lambda row: (str(row.get("created_at") or ""), row["id"]))
        return rows[:limit] if limit is not None else rows

    async def mutate(
        self,
        entity_type: str,
        action: str,
        payload: Mapping[str, Any],
        *,
        predicate: Optional[Predicate] = None,
    ) -> Optional[Record]:
        scope = all_of(predicate or ALWAYS, Eq("id", payload.get("id")))
        with self._lock:
            table = self._table(entity_type)

            if action == "create":
                record = dict(payload)
                record.setdefault("id", uuid.uuid4().hex)
                record.setdefault("created_at", _now())
                if record["id"] in table:
                    raise KeyError(f"{entity_type} {record['id']} already exists")
                self._check_unique(entity_type, record)
                table[record["id"]] = record
                return copy.deepcopy(record)

            current = table.get(payload.get("id"))
            if current is None or not scope.matches(current):
                return None

            if action == "update":
                changes = {key: value for key, value in payload.items() if key != "id"}
                updated = {**current, **changes, "updated_at": _now()}
                self._check_unique(entity_type, updated, exclude=current["id"])
                table[current["id"]] = updated
                return copy.deepcopy(updated)

            if action == "delete":
                del table[current["id"]]
                if entity_type == EntityType.ORGANIZATION.value:
                    self._cascade(current["id"])
                return copy.deepcopy(current)

        raise ValueError(f"Unsupported action: {action}")

    # ------------------------------------------------------------------
    # DirectoryStore
    # ------------------------------------------------------------------

    async def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._lock:
            row = self._table(EntityType.ORGANIZATION).get(org_id)
        return Organization(**row) if row else None

    async def ensure_organization(self, org_id: str, name: str, settings: Mapping[str, Any]) -> Organization:
        with self._lock:
            table = self._table(EntityType.ORGANIZATION)
            if org_id not in table:
                table[org_id] = {
                    "id": org_id,
                    "name": name,
                    "settings": dict(settings),
                    "created_at": _now(),
                }
            return Organization(**table[org_id])

    async def rename_organization(self, org_id: str, name: str) -> Optional[Organization]:
        with self._lock:
            row = self._table(EntityType.ORGANIZATION).get(org_id)
            if row is None:
                return None
            row["name"] = name
            return Organization(**row)

    async def delete_organization(self, org_id: str) -> bool:
        with self._lock:
            removed = self._table(EntityType.ORGANIZATION).pop(org_id, None)
            self._cascade(org_id)
        return removed is not None

    async def find_identity(self, org_id: str, external_key: str) -> Optional[Identity]:
        with self._lock:
            for row in self._table(EntityType.IDENTITY).values():
                if row["org_id"] == org_id and row["external_key"] == external_key:
                    return Identity(**row)
        return None

    async def find_identities(self, external_key: str) -> List[Identity]:
        with self._lock:
            return [
                Identity(**row)
                for row in self._table(EntityType.IDENTITY).values()
                if row["external_key"] == external_key
            ]

    async def insert_identity(self, identity: Identity) -> Identity:
        record = identity.model_dump()
        record["role"] = identity.role.value
        record["created_at"] = record.get("created_at") or _now()
        with self._lock:
            if self._unique_owner(record) is not None:
                raise DuplicateIdentity(identity.org_id, identity.external_key)
            self._table(EntityType.IDENTITY)[record["id"]] = record
            return Identity(**record)

    async def update_identity(self, identity_id: str, changes: Mapping[str, Any]) -> Optional[Identity]:
        with self._lock:
            row = self._table(EntityType.IDENTITY).get(identity_id)
            if row is None:
                return None
            row.update({key: getattr(value, "value", value) for key, value in changes.items()})
            row["updated_at"] = _now()
            return Identity(**row)

    async def delete_identities(self, external_key: str, org_id: Optional[str] = None) -> int:
        with self._lock:
            table = self._table(EntityType.IDENTITY)
            doomed = [
                row["id"]
                for row in table.values()
                if row["external_key"] == external_key and (org_id is None or row["org_id"] == org_id)
            ]
            for identity_id in doomed:
                del table[identity_id]
        return len(doomed)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _table(self, entity_type: Any) -> Dict[str, Record]:
        return self._tables[EntityType(entity_type).value]

    def _unique_owner(self, record: Record, exclude: Optional[str] = None) -> Optional[str]:
        key: Tuple[Any, Any] = (record.get("org_id"), record.get("external_key"))
        for row in self._tables[EntityType.IDENTITY.value].values():
            if row["id"] != exclude and (row["org_id"], row["external_key"]) == key:
                return row["id"]
        return None

    def _check_unique(self, entity_type: str, record: Record, exclude: Optional[str] = None) -> None:
        if EntityType(entity_type) is EntityType.IDENTITY and self._unique_owner(record, exclude):
            raise DuplicateIdentity(record.get("org_id"), record.get("external_key"))

    def _cascade(self, org_id: str) -> None:
        for entity_type, table in self._tables.items():
            if entity_type == EntityType.ORGANIZATION.value:
                continue
            for record_id in [rid for rid, row in table.items() if row.get("org_id") == org_id]:
                del table[record_id]
        logger.info("Organization data removed", org_id=org_id)
