"""
kv-relations core package

Relationship indexes, participation collections and audit/repair over Redis.
"""

__version__ = "1.0.0"

from .errors import KVRelationsError, RecordExistsError, OperationModeError, ConfigurationError
from .storage import RedisStoreClient, CollectionKind
from .records import Record, ThroughRecord, ModelType, ModelRegistry
from .relationships import UniqueIndexSpec, MultiIndexSpec, ParticipationSpec

__all__ = [
    "KVRelationsError",
    "RecordExistsError",
    "OperationModeError",
    "ConfigurationError",
    "RedisStoreClient",
    "CollectionKind",
    "Record",
    "ThroughRecord",
    "ModelType",
    "ModelRegistry",
    "UniqueIndexSpec",
    "MultiIndexSpec",
    "ParticipationSpec"
]
