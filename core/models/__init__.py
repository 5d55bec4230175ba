"""
Core data models for kv-relations

Pydantic models for configuration and audit findings.
"""

from .config import RedisConfig, AuditConfig, StoreConfig, GlobalSettings
from .audit import (
    AuditPhase,
    AuditStatus,
    FindingKind,
    StaleReason,
    Finding,
    InstancesAudit,
    IndexAudit,
    ParticipationAudit,
    AuditResult
)

__all__ = [
    # Configuration
    "RedisConfig",
    "AuditConfig",
    "StoreConfig",
    "GlobalSettings",

    # Audit
    "AuditPhase",
    "AuditStatus",
    "FindingKind",
    "StaleReason",
    "Finding",
    "InstancesAudit",
    "IndexAudit",
    "ParticipationAudit",
    "AuditResult"
]
