"""
Access Control Errors
======================
Failure taxonomy shared by the context propagator, policy engine,
access gateway and identity bridge.
"""

from typing import Optional


class AccessControlError(Exception):
    """Base class for tenant-isolation failures."""


class InvalidContext(AccessControlError):
    """Malformed organization/caller pair. Fatal to the unit of work."""


class MissingContext(AccessControlError):
    """A gateway operation ran with no bound security context."""

    def __init__(self, message: str = "No security context bound to this unit of work"):
        super().__init__(message)


class ContextSyncFailed(AccessControlError):
    """Storage could not be told about the context; the operation must not run."""


class AccessDenied(AccessControlError):
    """
    Policy refused the operation.

    The message is deliberately generic: it never says whether the
    target exists in another organization.
    """

    def __init__(self, entity_type: str, action: str, reason: Optional[str] = None):
        self.entity_type = entity_type
        self.action = action
        # Kept for audit logs only, never rendered to callers
        self.reason = reason
        super().__init__(f"Not authorized to {action} {entity_type}")


class DuplicateIdentity(AccessControlError):
    """Create-or-return lost a race on the (org_id, external_key) uniqueness."""

    def __init__(self, org_id: str, external_key: str):
        self.org_id = org_id
        self.external_key = external_key
        super().__init__(f"Identity {external_key!r} already exists in {org_id!r}")
