"""
Audit Logging
==============
Structured audit trail for:
- Security events (authentication, access denied, context sync)
- Record events (read, create, update, delete through the gateway)
- Directory events (identity and organization provisioning / sync)
- Identity-provider webhook traffic
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional
from enum import Enum
from dataclasses import asdict, dataclass, field

from propman.core.security_context import SecurityContext


class AuditEventType(str, Enum):
    """Categories of auditable events."""
    # Security events
    AUTH_SUCCESS = "auth.success"
    AUTH_FAILURE = "auth.failure"
    ACCESS_DENIED = "auth.access_denied"
    NO_ORGANIZATION = "auth.no_organization"
    CONTEXT_SYNC_FAILED = "auth.context_sync_failed"

    # Record events
    RECORD_READ = "record.read"
    RECORD_CREATE = "record.create"
    RECORD_UPDATE = "record.update"
    RECORD_DELETE = "record.delete"
    RECORD_FILTERED = "record.filtered"

    # Directory events
    IDENTITY_PROVISIONED = "identity.provisioned"
    IDENTITY_SYNCED = "identity.synced"
    IDENTITY_REMOVED = "identity.removed"
    ORGANIZATION_PROVISIONED = "organization.provisioned"
    ORGANIZATION_UPDATED = "organization.updated"
    ORGANIZATION_REMOVED = "organization.removed"

    # Webhook events
    WEBHOOK_RECEIVED = "webhook.received"
    WEBHOOK_REJECTED = "webhook.rejected"

    # System events
    HTTP_REQUEST = "system.http_request"
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_ERROR = "system.error"


@dataclass
class AuditEvent:
    """One line of the audit trail. Serialized as a single JSON object."""
    event_type: AuditEventType
    timestamp: str
    service: str
    action: str
    outcome: str  # "success", "failure", "denied"
    caller_id: Optional[str] = None
    org_id: Optional[str] = None
    request_id: Optional[str] = None
    resource: Optional[str] = None
    resource_type: Optional[str] = None
    details: dict = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


class AuditLogger:
    """
    Writes audit events to the "audit" logger, one JSON object per line.

    Denials and failures go out at WARNING so they survive a raised
    log level; everything else at INFO.
    """

    def __init__(self, service: str = "property-management"):
        self.service = service
        self._logger = logging.getLogger("audit")
        self._logger.setLevel(logging.INFO)
        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)

    def log(self, event_type: AuditEventType, action: str, outcome: str = "success", **fields):
        event = AuditEvent(
            event_type=event_type,
            timestamp=datetime.now(timezone.utc).isoformat(),
            service=self.service,
            action=action,
            outcome=outcome,
            **fields,
        )
        level = logging.WARNING if outcome in ("failure", "denied") else logging.INFO
        self._logger.log(level, event.to_json())

    def log_security_event(
        self,
        event_type: AuditEventType,
        caller_id: Optional[str],
        outcome: str,
        **fields,
    ):
        """Authentication, denial and context events; the action is the event suffix."""
        self.log(event_type, event_type.value.split(".")[-1], outcome, caller_id=caller_id, **fields)

    def log_record_event(
        self,
        event_type: AuditEventType,
        ctx: SecurityContext,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        """Gateway reads and writes, attributed to the caller's context."""
        self.log(
            event_type,
            event_type.value.split(".")[-1],
            caller_id=ctx.caller_id,
            org_id=ctx.org_id,
            resource=resource_id,
            resource_type=resource_type,
            details=details or {},
        )


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def audit_log(event_type: AuditEventType, action: str, **kwargs):
    get_audit_logger().log(event_type, action, **kwargs)


def audit_security(event_type: AuditEventType, caller_id: Optional[str], outcome: str, **kwargs):
    get_audit_logger().log_security_event(event_type, caller_id, outcome, **kwargs)


def audit_record(event_type: AuditEventType, ctx: SecurityContext, resource_type: str, **kwargs):
    get_audit_logger().log_record_event(event_type, ctx, resource_type, **kwargs)
