"""
Context Propagation
====================
Binds a SecurityContext as ambient state for one unit of work.

Uses contextvars rather than a module global or threading.local():
- Each asyncio task (and each thread) sees its own binding
- The binding survives await points inside the same task
- Token-based reset restores the outer binding on nested exits

Usage:
    propagator = ContextPropagator(storage)
    result = await propagator.run_with(ctx, lambda: gateway.execute(...))

    async with propagator.bound(ctx):
        ...
"""

from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

import structlog

from propman.core.audit import AuditEventType, audit_security
from propman.core.errors import ContextSyncFailed, InvalidContext, MissingContext
from propman.core.security_context import SecurityContext

logger = structlog.get_logger()

T = TypeVar("T")

# None means no context is bound
_current_context: ContextVar[Optional[SecurityContext]] = ContextVar(
    "security_context",
    default=None,
)


def current() -> Optional[SecurityContext]:
    """The SecurityContext bound to this unit of work, or None."""
    return _current_context.get()


def require_current() -> SecurityContext:
    ctx = _current_context.get()
    if ctx is None:
        raise MissingContext()
    return ctx


class ContextPropagator:
    """
    Establishes and tears down the ambient SecurityContext.

    When a storage collaborator is given, it is synchronized with the
    (org_id, caller_id) pair before the context becomes visible, and
    released (or re-synchronized to the outer context) afterwards.
    """

    def __init__(self, storage=None):
        self._storage = storage

    @asynccontextmanager
    async def bound(self, context: SecurityContext) -> AsyncIterator[SecurityContext]:
        if not isinstance(context, SecurityContext):
            raise InvalidContext("run_with() requires a SecurityContext")

        outer = _current_context.get()
        await self._synchronize(context)

        token = _current_context.set(context)
        logger.debug("Security context bound", org_id=context.org_id, caller_id=context.caller_id)
        failed = False
        try:
            yield context
        except BaseException:
            failed = True
            raise
        finally:
            _current_context.reset(token)
            logger.debug("Security context cleared", org_id=context.org_id, caller_id=context.caller_id)
            await self._restore(context, outer, raise_errors=not failed)

    async def run_with(self, context: SecurityContext, operation: Callable[[], Awaitable[T]]) -> T:
        """Run `operation` with `context` bound; the binding never outlives the call."""
        async with self.bound(context):
            return await operation()

    async def _restore(self, context: SecurityContext, outer: Optional[SecurityContext], raise_errors: bool) -> None:
        """Point storage back at the outer context, or release it. Never masks the operation's own error."""
        if self._storage is None:
            return
        try:
            if outer is not None:
                await self._storage.synchronize(outer.org_id, outer.caller_id)
            else:
                await self._storage.release()
        except Exception as exc:
            logger.error(
                "Storage context teardown failed",
                org_id=context.org_id,
                caller_id=context.caller_id,
                error=str(exc),
            )
            audit_security(
                AuditEventType.CONTEXT_SYNC_FAILED,
                context.caller_id,
                "failure",
                org_id=context.org_id,
                details={"error": str(exc), "phase": "teardown"},
            )
            if raise_errors:
                raise ContextSyncFailed(
                    f"Could not release storage for organization {context.org_id}"
                ) from exc

    async def _synchronize(self, context: SecurityContext) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.synchronize(context.org_id, context.caller_id)
        except Exception as exc:
            logger.error(
                "Storage context sync failed",
                org_id=context.org_id,
                caller_id=context.caller_id,
                error=str(exc),
            )
            audit_security(
                AuditEventType.CONTEXT_SYNC_FAILED,
                context.caller_id,
                "failure",
                org_id=context.org_id,
                details={"error": str(exc)},
            )
            raise ContextSyncFailed(
                f"Could not synchronize storage for organization {context.org_id}"
            ) from exc
