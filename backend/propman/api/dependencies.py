"""
Request-scoped collaborators: the storage backend and the identity bridge.
"""

from typing import AsyncIterator, Optional, Union

from fastapi import Depends

from propman.config import settings
from propman.db.session import async_session
from propman.security.identity_bridge import IdentityBridge
from propman.storage.memory import InMemoryStorage
from propman.storage.sql import SqlAlchemyStorage

# Process-wide store for STORAGE_BACKEND=memory
_memory_storage: Optional[InMemoryStorage] = None


def get_memory_storage() -> InMemoryStorage:
    global _memory_storage
    if _memory_storage is None:
        _memory_storage = InMemoryStorage()
    return _memory_storage


async def get_storage() -> AsyncIterator[Union[InMemoryStorage, SqlAlchemyStorage]]:
    """
    One storage handle per request. For PostgreSQL the whole request is
    one transaction: committed on success, rolled back on any error.
    """
    if settings.storage_backend == "memory":
        yield get_memory_storage()
        return

    async with async_session() as session:
        try:
            yield SqlAlchemyStorage(session)
        except Exception:
            await session.rollback()
            raise
        else:
            await session.commit()


async def get_identity_bridge(storage=Depends(get_storage)) -> IdentityBridge:
    return IdentityBridge(storage)
