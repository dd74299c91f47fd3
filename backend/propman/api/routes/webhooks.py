"""
Identity-Provider Webhook — Svix-signed Clerk events.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from svix.webhooks import Webhook, WebhookVerificationError

from propman.api.dependencies import get_identity_bridge
from propman.config import settings
from propman.core.audit import AuditEventType, audit_log
from propman.security.identity_bridge import IdentityBridge
from propman.security.provider_events import IdentityEventHandler, ProviderEvent

logger = structlog.get_logger()

router = APIRouter()

SVIX_HEADERS = ("svix-id", "svix-timestamp", "svix-signature")


def _reject(reason: str, request: Request) -> HTTPException:
    logger.warning("Webhook rejected", reason=reason)
    audit_log(
        AuditEventType.WEBHOOK_REJECTED,
        action="verify",
        outcome="denied",
        ip_address=request.client.host if request.client else None,
        details={"reason": reason},
    )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook")


@router.post("/webhooks/identity-provider")
async def identity_provider_webhook(
    request: Request,
    bridge: IdentityBridge = Depends(get_identity_bridge),
):
    """
    Keep organizations and identities in sync with the identity provider.

    The payload is only parsed after its Svix signature verifies.
    Unknown event types are acknowledged and ignored.
    """
    if not settings.webhook_secret:
        logger.error("WEBHOOK_SECRET is not set")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )

    headers = {name: request.headers.get(name) for name in SVIX_HEADERS}
    if not all(headers.values()):
        raise _reject("missing svix headers", request)

    body = await request.body()
    try:
        payload = Webhook(settings.webhook_secret).verify(body, headers)
    except WebhookVerificationError as e:
        raise _reject(str(e) or "signature mismatch", request)

    event = ProviderEvent.from_payload(payload, event_id=headers["svix-id"])
    return await IdentityEventHandler(bridge).handle(event)
