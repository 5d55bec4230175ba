"""
kv-relations - relationship semantics and drift repair for Redis records.

Declares unique indexes, multi indexes and participation collections on
pydantic records stored as Redis hashes, and audits/repairs those derived
structures when they drift from the primary records.
"""

__version__ = "1.0.0"

from core.errors import RecordExistsError, OperationModeError, ConfigurationError
from core.storage import RedisStoreClient, CollectionKind
from core.records import Record, ThroughRecord, ModelType, ModelRegistry
from core.relationships import UniqueIndexSpec, MultiIndexSpec, ParticipationSpec
from core.audit import AuditEngine, AuditReport, RepairEngine, RepairSummary, PeriodicHealthCheck
from core.models.config import StoreConfig

__all__ = [
    "Record",
    "ThroughRecord",
    "ModelType",
    "ModelRegistry",
    "RedisStoreClient",
    "CollectionKind",
    "UniqueIndexSpec",
    "MultiIndexSpec",
    "ParticipationSpec",
    "AuditEngine",
    "AuditReport",
    "RepairEngine",
    "RepairSummary",
    "PeriodicHealthCheck",
    "StoreConfig",
    "RecordExistsError",
    "OperationModeError",
    "ConfigurationError",
    "__version__",
]
