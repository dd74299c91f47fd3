"""
OIDC Authentication Middleware
===============================
Turns a bearer token into the caller-facing session (external caller id
plus active external organization id), then into a SecurityContext via
the IdentityBridge.

- Missing or invalid token         -> 401
- Authenticated, no organization   -> 403 "Organization required"
- Otherwise                        -> SecurityContext with the stored role

With AUTH_REQUIRED=false a development caller from settings is used.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from jose import jwt, JWTError
from pydantic import BaseModel
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from propman.api.dependencies import get_identity_bridge
from propman.config import settings
from propman.core.audit import AuditEventType, audit_security
from propman.core.security_context import SecurityContext
from propman.security.identity_bridge import NO_ORGANIZATION, IdentityBridge, ProviderProfile

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class CallerSession(BaseModel):
    """What the identity provider asserts about the caller for one request."""
    caller_id: str
    org_id: Optional[str] = None
    profile: ProviderProfile = ProviderProfile()


class OIDCAuth:
    """
    OIDC Authentication Handler.

    Validates JWT tokens from any OIDC-compliant provider (Clerk session
    tokens included) against the issuer's JWKS.
    """

    def __init__(
        self,
        issuer_url: Optional[str] = None,
        client_id: Optional[str] = None,
        audience: Optional[str] = None,
    ):
        self._issuer_url = issuer_url if issuer_url is not None else (settings.oidc_issuer_url or "")
        self._client_id = client_id if client_id is not None else (settings.oidc_client_id or "")
        self._audience = audience if audience is not None else (settings.oidc_audience or self._client_id)

        self._jwks: Optional[dict] = None
        self._jwks_uri: Optional[str] = None

    async def get_jwks(self) -> dict:
        """Fetch and cache JWKS (JSON Web Key Set) for signature verification."""
        if self._jwks is not None:
            return self._jwks

        if not self._issuer_url:
            raise ValueError("OIDC_ISSUER_URL not configured")

        async with httpx.AsyncClient() as client:
            discovery_url = f"{self._issuer_url.rstrip('/')}/.well-known/openid-configuration"
            response = await client.get(discovery_url)
            response.raise_for_status()
            config = response.json()
            self._jwks_uri = config.get("jwks_uri")

            if not self._jwks_uri:
                raise ValueError("JWKS URI not found in OIDC configuration")

            jwks_response = await client.get(self._jwks_uri)
            jwks_response.raise_for_status()
            self._jwks = jwks_response.json()

        return self._jwks

    async def validate_token(self, token: str) -> Dict[str, Any]:
        """
        Validate a JWT token from the OIDC provider.

        Returns:
            The decoded claims

        Raises:
            HTTPException if validation fails
        """
        try:
            jwks = await self.get_jwks()

            return jwt.decode(
                token,
                jwks,
                algorithms=["RS256"],
                audience=self._audience or None,
                issuer=self._issuer_url,
                options={"verify_exp": True, "verify_aud": bool(self._audience)},
            )

        except JWTError as e:
            logger.warning(f"Token validation failed: {e}")
            audit_security(AuditEventType.AUTH_FAILURE, None, "failure", details={"error": str(e)})
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication token",
                headers={"WWW-Authenticate": "Bearer"},
            )

    @staticmethod
    def session_from_claims(claims: Dict[str, Any], org_claim: str = "org_id") -> CallerSession:
        """Map token claims onto a CallerSession."""
        return CallerSession(
            caller_id=claims.get("sub") or "",
            org_id=claims.get(org_claim) or None,
            profile=ProviderProfile(
                email=claims.get("email") or "",
                first_name=claims.get("given_name"),
                last_name=claims.get("family_name"),
                phone=claims.get("phone_number"),
                updated_at=claims.get("updated_at"),
            ),
        )


# Global auth instance
_auth: Optional[OIDCAuth] = None


def get_auth() -> OIDCAuth:
    """Get or create the auth instance."""
    global _auth
    if _auth is None:
        _auth = OIDCAuth()
    return _auth


def _get_dev_session() -> CallerSession:
    """The caller used when auth is disabled (dev mode)."""
    return CallerSession(
        caller_id=settings.dev_caller_id,
        org_id=settings.dev_org_id,
        profile=ProviderProfile(email=settings.dev_caller_email),
    )


async def get_caller_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CallerSession:
    """
    FastAPI dependency — the identity provider's assertion for this request.

    In production (AUTH_REQUIRED=true):
        Validates the bearer JWT and reads the caller and organization claims.

    In development (AUTH_REQUIRED=false):
        Returns the configured development caller.
    """
    if not settings.auth_required:
        logger.debug("Auth disabled, returning development caller")
        return _get_dev_session()

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    claims = await get_auth().validate_token(credentials.credentials)
    return OIDCAuth.session_from_claims(claims, settings.oidc_org_claim)


async def get_security_context(
    request: Request,
    session: CallerSession = Depends(get_caller_session),
    bridge: IdentityBridge = Depends(get_identity_bridge),
) -> SecurityContext:
    """
    FastAPI dependency — the SecurityContext for this request.

    Usage:
        @router.get("/protected")
        async def protected(ctx: SecurityContext = Depends(get_security_context)):
            return {"caller": ctx.caller_id, "org": ctx.org_id}
    """
    identity = await bridge.resolve(session.caller_id, session.org_id, session.profile)
    if identity is NO_ORGANIZATION:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Organization required",
        )

    ctx = bridge.context_for(identity)
    audit_security(AuditEventType.AUTH_SUCCESS, ctx.caller_id, "success", org_id=ctx.org_id)

    # Attach to request for AuditMiddleware
    request.state.user = ctx
    return ctx
