"""
Storage Interfaces
===================
What the access-control core needs from a storage backend.

Storage        — tenant-scoped record operations plus native session
                 variables for storage-side row security.
DirectoryStore — organization / identity bookkeeping used by the
                 identity bridge. Runs outside any caller's row scope.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from pydantic import BaseModel, Field

from propman.core.security_context import Role
from propman.security.predicates import Predicate

Record = Dict[str, Any]


class Organization(BaseModel):
    id: str
    name: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class Identity(BaseModel):
    id: str
    org_id: str
    external_key: str
    display_name: Optional[str] = None
    email: str = ""
    phone: Optional[str] = None
    role: Role = Role.RESIDENT
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Storage(Protocol):
    async def synchronize(self, org_id: str, caller_id: str) -> None:
        """Push (org_id, caller_id) into storage-native session variables."""
        ...

    async def release(self) -> None:
        """Clear whatever synchronize() set."""
        ...

    async def query(
        self,
        entity_type: str,
        predicate: Predicate,
        *,
        limit: Optional[int] = None,
    ) -> List[Record]:
        ...

    async def mutate(
        self,
        entity_type: str,
        action: str,
        payload: Mapping[str, Any],
        *,
        predicate: Optional[Predicate] = None,
    ) -> Optional[Record]:
        """
        create: insert payload, return the stored record.
        update: apply payload (minus "id") to the row with payload["id"]
                that also matches predicate; return it or None.
        delete: remove that row; return it or None.
        """
        ...


class DirectoryStore(Protocol):
    async def get_organization(self, org_id: str) -> Optional[Organization]:
        ...

    async def ensure_organization(self, org_id: str, name: str, settings: Mapping[str, Any]) -> Organization:
        """Create the organization if absent; return the stored one either way."""
        ...

    async def rename_organization(self, org_id: str, name: str) -> Optional[Organization]:
        ...

    async def delete_organization(self, org_id: str) -> bool:
        """Delete the organization and everything it owns."""
        ...

    async def find_identity(self, org_id: str, external_key: str) -> Optional[Identity]:
        ...

    async def find_identities(self, external_key: str) -> List[Identity]:
        ...

    async def insert_identity(self, identity: Identity) -> Identity:
        """Insert-or-do-nothing on (org_id, external_key); raises DuplicateIdentity on conflict."""
        ...

    async def update_identity(self, identity_id: str, changes: Mapping[str, Any]) -> Optional[Identity]:
        ...

    async def delete_identities(self, external_key: str, org_id: Optional[str] = None) -> int:
        ...
