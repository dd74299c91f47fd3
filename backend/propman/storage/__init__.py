"""Storage backends for tenant-scoped records and the identity directory."""

from propman.storage.base import DirectoryStore, Identity, Organization, Record, Storage
from propman.storage.memory import InMemoryStorage

__all__ = [
    "DirectoryStore",
    "Identity",
    "InMemoryStorage",
    "Organization",
    "Record",
    "Storage",
]
