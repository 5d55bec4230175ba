"""
Storage package for kv-relations.

Provides the Redis client wrapper, key layout helpers and collection primitives.
"""

from .client import RedisStoreClient
from .datatypes import CollectionKind, atomic_swap
from . import keys

__all__ = [
    "RedisStoreClient",
    "CollectionKind",
    "atomic_swap",
    "keys"
]
