"""
Identity-Provider Events
=========================
Keeps local organizations and identities in sync with the identity
provider's webhook feed (Clerk event payloads delivered through Svix).

Event mapping:
    user.created                    -> identity created (no local effect)
    user.updated                    -> identity updated
    user.deleted                    -> identity removed
    organizationMembership.created  -> membership added
    organizationMembership.deleted  -> membership removed
    organization.created            -> organization created
    organization.updated            -> organization updated
    organization.deleted            -> organization removed

Every handler is idempotent; updates overwrite.
"""

from enum import Enum
from typing import Any, Dict, Mapping, Optional

import structlog
from pydantic import BaseModel, Field

from propman.core.audit import AuditEventType, audit_log
from propman.security.identity_bridge import IdentityBridge, ProviderProfile

logger = structlog.get_logger()


class ProviderEventType(str, Enum):
    IDENTITY_CREATED = "user.created"
    IDENTITY_UPDATED = "user.updated"
    IDENTITY_REMOVED = "user.deleted"
    MEMBERSHIP_ADDED = "organizationMembership.created"
    MEMBERSHIP_REMOVED = "organizationMembership.deleted"
    ORGANIZATION_CREATED = "organization.created"
    ORGANIZATION_UPDATED = "organization.updated"
    ORGANIZATION_REMOVED = "organization.deleted"


# Event fields each type cannot be applied without
REQUIRED_FIELDS = {
    ProviderEventType.IDENTITY_CREATED: ("caller_id",),
    ProviderEventType.IDENTITY_UPDATED: ("caller_id",),
    ProviderEventType.IDENTITY_REMOVED: ("caller_id",),
    ProviderEventType.MEMBERSHIP_ADDED: ("org_id", "caller_id"),
    ProviderEventType.MEMBERSHIP_REMOVED: ("org_id", "caller_id"),
    ProviderEventType.ORGANIZATION_CREATED: ("org_id",),
    ProviderEventType.ORGANIZATION_UPDATED: ("org_id",),
    ProviderEventType.ORGANIZATION_REMOVED: ("org_id",),
}


class ProviderEvent(BaseModel):
    """One webhook delivery, reduced to the fields the handler needs."""
    type: str
    event_id: Optional[str] = None
    caller_id: Optional[str] = None
    org_id: Optional[str] = None
    org_name: Optional[str] = None
    created_by: Optional[str] = None
    profile: ProviderProfile = Field(default_factory=ProviderProfile)

    @property
    def event_type(self) -> Optional[ProviderEventType]:
        try:
            return ProviderEventType(self.type)
        except ValueError:
            return None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], event_id: Optional[str] = None) -> "ProviderEvent":
        event_type = payload.get("type", "")
        data = payload.get("data") or {}

        if event_type.startswith("organizationMembership."):
            organization = data.get("organization") or {}
            member = data.get("public_user_data") or {}
            return cls(
                type=event_type,
                event_id=event_id,
                caller_id=member.get("user_id"),
                org_id=organization.get("id"),
                org_name=organization.get("name"),
                profile=ProviderProfile(
                    email=member.get("email_address") or member.get("identifier") or "",
                    first_name=member.get("first_name"),
                    last_name=member.get("last_name"),
                    phone=member.get("phone_number"),
                ),
            )

        if event_type.startswith("organization."):
            return cls(
                type=event_type,
                event_id=event_id,
                org_id=data.get("id"),
                org_name=data.get("name"),
                created_by=data.get("created_by"),
            )

        return cls(
            type=event_type,
            event_id=event_id,
            caller_id=data.get("id"),
            profile=ProviderProfile(
                email=_first(data.get("email_addresses"), "email_address") or "",
                first_name=data.get("first_name"),
                last_name=data.get("last_name"),
                phone=_first(data.get("phone_numbers"), "phone_number"),
                created_at=data.get("created_at"),
                updated_at=data.get("updated_at"),
            ),
        )


def _first(items: Optional[list], key: str) -> Optional[str]:
    if not items:
        return None
    return items[0].get(key)


class IdentityEventHandler:
    """Applies provider events through the IdentityBridge."""

    def __init__(self, bridge: IdentityBridge):
        self._bridge = bridge

    async def handle(self, event: ProviderEvent) -> Dict[str, Any]:
        """
        Apply one event.

        Returns:
            A small summary for the webhook response: the event type and
            whether it changed local state.
        """
        event_type = event.event_type
        log = logger.bind(event_type=event.type, event_id=event.event_id)

        if event_type is None:
            log.info("Unhandled identity provider event")
            return {"type": event.type, "handled": False}

        missing = [name for name in REQUIRED_FIELDS[event_type] if not (getattr(event, name) or "").strip()]
        if missing:
            log.warning("Identity provider event incomplete", missing=missing)
            audit_log(
                AuditEventType.WEBHOOK_REJECTED,
                action=event.type,
                outcome="failure",
                caller_id=event.caller_id,
                org_id=event.org_id,
                details={"event_id": event.event_id, "missing": missing},
            )
            return {"type": event.type, "handled": False}

        audit_log(
            AuditEventType.WEBHOOK_RECEIVED,
            action=event.type,
            caller_id=event.caller_id,
            org_id=event.org_id,
            details={"event_id": event.event_id},
        )

        if event_type is ProviderEventType.IDENTITY_CREATED:
            # The identity is created once it joins an organization or first signs in
            log.info("Identity created upstream", caller_id=event.caller_id)
            return {"type": event.type, "handled": True, "changed": 0}

        if event_type is ProviderEventType.IDENTITY_UPDATED:
            synced = await self._bridge.sync_profile(event.caller_id, event.profile)
            log.info("Identity profile synced", caller_id=event.caller_id, identities=len(synced))
            return {"type": event.type, "handled": True, "changed": len(synced)}

        if event_type is ProviderEventType.IDENTITY_REMOVED:
            removed = await self._bridge.remove_identity(event.caller_id)
            log.info("Identity removed", caller_id=event.caller_id, identities=removed)
            return {"type": event.type, "handled": True, "changed": removed}

        if event_type is ProviderEventType.MEMBERSHIP_ADDED:
            await self._bridge.add_membership(event.org_id, event.caller_id, event.profile, event.org_name)
            log.info("Membership added", org_id=event.org_id, caller_id=event.caller_id)
            return {"type": event.type, "handled": True, "changed": 1}

        if event_type is ProviderEventType.MEMBERSHIP_REMOVED:
            removed = await self._bridge.remove_membership(event.org_id, event.caller_id)
            log.info("Membership removed", org_id=event.org_id, caller_id=event.caller_id)
            return {"type": event.type, "handled": True, "changed": removed}

        if event_type is ProviderEventType.ORGANIZATION_CREATED:
            await self._bridge.provision_organization_creator(event.org_id, event.created_by, event.org_name)
            log.info("Organization created", org_id=event.org_id, created_by=event.created_by)
            return {"type": event.type, "handled": True, "changed": 1}

        if event_type is ProviderEventType.ORGANIZATION_UPDATED:
            await self._bridge.update_organization(event.org_id, event.org_name or event.org_id)
            log.info("Organization updated", org_id=event.org_id)
            return {"type": event.type, "handled": True, "changed": 1}

        removed = await self._bridge.remove_organization(event.org_id)
        log.info("Organization removed", org_id=event.org_id, removed=removed)
        return {"type": event.type, "handled": True, "changed": int(removed)}
