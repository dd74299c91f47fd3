"""
Audit Middleware
=================
One HTTP_REQUEST audit event per request, attributed to the caller's
organization once get_security_context has resolved it.
"""

import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from propman.core.audit import AuditEventType, get_audit_logger
from propman.core.security_context import SecurityContext


def _outcome(status_code: int) -> str:
    if status_code in (401, 403):
        return "denied"
    return "failure" if status_code >= 400 else "success"


class AuditMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = get_audit_logger()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        def elapsed_ms() -> float:
            return round((time.perf_counter() - started) * 1000, 2)

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.log(
                AuditEventType.SYSTEM_ERROR,
                "http_request_error",
                "failure",
                request_id=request_id,
                details={
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "duration_ms": elapsed_ms(),
                },
            )
            raise

        # Set by get_security_context; absent for unauthenticated routes
        ctx: Optional[SecurityContext] = getattr(request.state, "user", None)
        self.logger.log(
            AuditEventType.HTTP_REQUEST,
            "http_request",
            _outcome(response.status_code),
            caller_id=ctx.caller_id if ctx else None,
            org_id=ctx.org_id if ctx else None,
            request_id=request_id,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            details={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "role": ctx.role.value if ctx else None,
                "duration_ms": elapsed_ms(),
            },
        )

        response.headers["X-Request-ID"] = request_id
        return response
