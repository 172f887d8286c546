"""
Store layer: table and object-storage primitives used by the backup engine.
"""

from teamvault.store.base import (
    AuthenticationError,
    DataStore,
    ObjectNotFoundError,
    ObjectStorage,
    RateLimitError,
    StoreConnectionError,
    StoreError,
)
from teamvault.store.memory import MemoryStore
from teamvault.store.rest import RestDataStore, RestObjectStorage, connect

__all__ = [
    "DataStore",
    "ObjectStorage",
    "MemoryStore",
    "RestDataStore",
    "RestObjectStorage",
    "connect",
    "StoreError",
    "AuthenticationError",
    "RateLimitError",
    "StoreConnectionError",
    "ObjectNotFoundError",
]
