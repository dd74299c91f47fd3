"""
Security Context — Identity & Access Control
==============================================
Defines:
- Role: the single role enumeration for organization members
- Permission: coarse capabilities granted per role
- SecurityContext: identity bound to one unit of work
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from propman.core.errors import InvalidContext


class Role(str, Enum):
    """Organization member roles. Values are stored as TEXT on identities."""
    OWNER_ADMIN = "admin"
    MANAGER = "manager"
    LEASING_STAFF = "leasing"
    MAINTENANCE_STAFF = "maintenance"
    RESIDENT = "resident"
    UNKNOWN = "unknown"  # not yet resolved from the identity record

    @property
    def is_staff(self) -> bool:
        return self in STAFF_ROLES


STAFF_ROLES = frozenset({
    Role.OWNER_ADMIN,
    Role.MANAGER,
    Role.LEASING_STAFF,
    Role.MAINTENANCE_STAFF,
})


class Permission(str, Enum):
    """Coarse capabilities checked by has_permission()."""
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


class SecurityContext(BaseModel):
    """
    Identity for one unit of work: which organization, which caller,
    and (once resolved) which role.

    Immutable. Bound by the ContextPropagator and read by the
    AccessGateway; the PolicyEngine receives it explicitly.
    """
    model_config = ConfigDict(frozen=True)

    org_id: str
    caller_id: str
    role: Role = Role.UNKNOWN

    @model_validator(mode="before")
    @classmethod
    def _require_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            for name in ("org_id", "caller_id"):
                if data.get(name) is None:
                    raise InvalidContext(f"{name} is required")
        return data

    @field_validator("org_id", "caller_id", mode="before")
    @classmethod
    def _require_identifier(cls, value: Any, info) -> str:
        if not isinstance(value, str) or not value.strip():
            raise InvalidContext(f"{info.field_name} must be a non-empty string")
        return value.strip()

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value: Any) -> Role:
        # Anything unrecognised fails closed
        if isinstance(value, Role):
            return value
        try:
            return Role(value)
        except ValueError:
            return Role.UNKNOWN

    @property
    def is_resolved(self) -> bool:
        return self.role is not Role.UNKNOWN

    def with_role(self, role: Role) -> "SecurityContext":
        return SecurityContext(org_id=self.org_id, caller_id=self.caller_id, role=role)
