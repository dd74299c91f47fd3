"""
Identity Bridge — Provider Assertions to Local Identities
==========================================================
Translates an identity-provider assertion (external caller id plus
external organization id) into a local Identity, creating it (and the
organization) on first sight, and builds the SecurityContext for it.

Create-if-absent is race-safe: the directory's insert is backed by the
(org_id, external_key) unique constraint and raises DuplicateIdentity
when another unit of work won; the lookup is then retried exactly once.

A caller without an active organization is not an error: resolve()
returns NO_ORGANIZATION and the HTTP layer routes it to a distinct
"organization required" response.
"""

import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import structlog
from pydantic import BaseModel

from propman.config import settings
from propman.core.audit import AuditEventType, audit_log, audit_security
from propman.core.errors import DuplicateIdentity, InvalidContext
from propman.core.security_context import Role, SecurityContext
from propman.storage.base import DirectoryStore, Identity, Organization

logger = structlog.get_logger()


class NoOrganization:
    """Outcome for an authenticated caller with no active organization."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_ORGANIZATION"


NO_ORGANIZATION = NoOrganization()


class ProviderProfile(BaseModel):
    """Profile fields asserted by the identity provider."""
    email: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[Any] = None
    updated_at: Optional[Any] = None

    @property
    def display_name(self) -> Optional[str]:
        full = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return full or None

    def contact_fields(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "display_name": self.display_name,
            "phone": self.phone,
        }


class IdentityBridge:
    """Resolve-or-create of local identities and organizations."""

    def __init__(self, directory: DirectoryStore, default_org_settings: Optional[Mapping[str, Any]] = None):
        self._directory = directory
        self._default_org_settings = dict(
            default_org_settings if default_org_settings is not None else settings.default_org_settings
        )

    # ------------------------------------------------------------------
    # Caller resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        external_caller_id: str,
        external_org_id: Optional[str],
        profile: Optional[ProviderProfile] = None,
    ) -> Union[Identity, NoOrganization]:
        """
        Find the caller's identity in the organization, creating it with
        the resident role when absent.

        Returns:
            The Identity, or NO_ORGANIZATION when external_org_id is empty.
        """
        if not external_caller_id or not str(external_caller_id).strip():
            raise InvalidContext("caller_id must be a non-empty string")

        if not external_org_id or not str(external_org_id).strip():
            audit_security(
                AuditEventType.NO_ORGANIZATION,
                external_caller_id,
                "denied",
                details={"reason": "no active organization"},
            )
            return NO_ORGANIZATION

        existing = await self._directory.find_identity(external_org_id, external_caller_id)
        if existing is not None:
            return existing

        profile = profile or ProviderProfile()
        await self._ensure_organization(external_org_id)

        metadata = {}
        if profile.created_at is not None:
            metadata["providerCreatedAt"] = profile.created_at
        if profile.updated_at is not None:
            metadata["providerUpdatedAt"] = profile.updated_at

        return await self._create_or_fetch(
            Identity(
                id=uuid.uuid4().hex,
                org_id=external_org_id,
                external_key=external_caller_id,
                role=Role.RESIDENT,
                metadata=metadata,
                **profile.contact_fields(),
            )
        )

    @staticmethod
    def context_for(identity: Identity) -> SecurityContext:
        """The SecurityContext for a resolved identity."""
        return SecurityContext(
            org_id=identity.org_id,
            caller_id=identity.external_key,
            role=identity.role,
        )

    # ------------------------------------------------------------------
    # Directory maintenance
    # ------------------------------------------------------------------

    async def provision_organization_creator(
        self,
        external_org_id: str,
        external_caller_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Tuple[Organization, Optional[Identity]]:
        """Create the organization (idempotent) and make its creator owner-admin."""
        organization = await self._ensure_organization(external_org_id, name)
        if not external_caller_id:
            return organization, None

        existing = await self._directory.find_identity(external_org_id, external_caller_id)
        if existing is None:
            existing = await self._create_or_fetch(
                Identity(
                    id=uuid.uuid4().hex,
                    org_id=external_org_id,
                    external_key=external_caller_id,
                    role=Role.OWNER_ADMIN,
                )
            )

        if existing.role is not Role.OWNER_ADMIN:
            existing = await self._directory.update_identity(existing.id, {"role": Role.OWNER_ADMIN})
            self._audit_identity(AuditEventType.IDENTITY_SYNCED, existing, {"role": Role.OWNER_ADMIN.value})

        return organization, existing

    async def add_membership(
        self,
        external_org_id: str,
        external_caller_id: str,
        profile: Optional[ProviderProfile] = None,
        org_name: Optional[str] = None,
    ) -> Identity:
        """Create the member's identity, or refresh its contact fields. The role is preserved."""
        profile = profile or ProviderProfile()
        await self._ensure_organization(external_org_id, org_name)

        existing = await self._directory.find_identity(external_org_id, external_caller_id)
        if existing is not None:
            updated = await self._directory.update_identity(existing.id, profile.contact_fields())
            self._audit_identity(AuditEventType.IDENTITY_SYNCED, updated)
            return updated

        return await self._create_or_fetch(
            Identity(
                id=uuid.uuid4().hex,
                org_id=external_org_id,
                external_key=external_caller_id,
                role=Role.RESIDENT,
                **profile.contact_fields(),
            )
        )

    async def remove_membership(self, external_org_id: str, external_caller_id: str) -> int:
        removed = await self._directory.delete_identities(external_caller_id, org_id=external_org_id)
        audit_log(
            AuditEventType.IDENTITY_REMOVED,
            action="remove_membership",
            caller_id=external_caller_id,
            org_id=external_org_id,
            resource_type="identity",
            details={"removed": removed},
        )
        return removed

    async def sync_profile(self, external_caller_id: str, profile: ProviderProfile) -> List[Identity]:
        """Overwrite contact fields on every local identity of the caller."""
        synced = []
        for identity in await self._directory.find_identities(external_caller_id):
            metadata = dict(identity.metadata)
            if profile.updated_at is not None:
                metadata["providerUpdatedAt"] = profile.updated_at
            changes = {
                "email": profile.email or identity.email,
                "display_name": profile.display_name,
                "phone": profile.phone,
                "metadata": metadata,
            }
            updated = await self._directory.update_identity(identity.id, changes)
            if updated is not None:
                self._audit_identity(AuditEventType.IDENTITY_SYNCED, updated)
                synced.append(updated)
        return synced

    async def remove_identity(self, external_caller_id: str) -> int:
        removed = await self._directory.delete_identities(external_caller_id)
        audit_log(
            AuditEventType.IDENTITY_REMOVED,
            action="remove_identity",
            caller_id=external_caller_id,
            resource_type="identity",
            details={"removed": removed},
        )
        return removed

    async def update_organization(self, external_org_id: str, name: str) -> Organization:
        organization = await self._directory.rename_organization(external_org_id, name)
        if organization is None:
            return await self._ensure_organization(external_org_id, name)
        audit_log(
            AuditEventType.ORGANIZATION_UPDATED,
            action="rename",
            org_id=external_org_id,
            resource=external_org_id,
            resource_type="organization",
            details={"name": name},
        )
        return organization

    async def remove_organization(self, external_org_id: str) -> bool:
        removed = await self._directory.delete_organization(external_org_id)
        audit_log(
            AuditEventType.ORGANIZATION_REMOVED,
            action="delete",
            org_id=external_org_id,
            resource=external_org_id,
            resource_type="organization",
            outcome="success" if removed else "failure",
        )
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ensure_organization(self, org_id: str, name: Optional[str] = None) -> Organization:
        if not org_id or not str(org_id).strip():
            raise InvalidContext("org_id must be a non-empty string")
        existing = await self._directory.get_organization(org_id)
        if existing is not None:
            return existing

        organization = await self._directory.ensure_organization(
            org_id,
            name or org_id,
            self._default_org_settings,
        )
        logger.info("Organization provisioned", org_id=org_id, name=organization.name)
        audit_log(
            AuditEventType.ORGANIZATION_PROVISIONED,
            action="provision",
            org_id=org_id,
            resource=org_id,
            resource_type="organization",
        )
        return organization

    async def _create_or_fetch(self, identity: Identity) -> Identity:
        try:
            created = await self._directory.insert_identity(identity)
        except DuplicateIdentity:
            # Another unit of work created it first
            logger.info(
                "Identity created concurrently, re-reading",
                org_id=identity.org_id,
                external_key=identity.external_key,
            )
            existing = await self._directory.find_identity(identity.org_id, identity.external_key)
            if existing is None:
                raise
            return existing

        self._audit_identity(AuditEventType.IDENTITY_PROVISIONED, created, {"role": created.role.value})
        return created

    @staticmethod
    def _audit_identity(event_type: AuditEventType, identity: Identity, details: Optional[dict] = None) -> None:
        audit_log(
            event_type,
            action=event_type.value.split(".")[-1],
            caller_id=identity.external_key,
            org_id=identity.org_id,
            resource=identity.id,
            resource_type="identity",
            details=details,
        )
