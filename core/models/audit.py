"""
Audit finding models.

Findings are immutable pydantic models so that audit results can be passed
to the repair engine, serialized for dashboards and compared in tests.
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from ..storage.datatypes import CollectionKind


class AuditPhase(Enum):
    """Phases of one audit run, reported to progress callbacks"""
    COLLECTING_TIMELINE = "collecting_timeline"
    SCANNING_KEYSPACE = "scanning_keyspace"
    COMPARING = "comparing"
    REPORTING = "reporting"


class AuditStatus(Enum):
    """Whether a dimension was audited or has no audit for its shape"""
    AUDITED = "audited"
    NOT_IMPLEMENTED = "not_implemented"


class FindingKind(Enum):
    PHANTOM = "phantom"
    MISSING = "missing"
    STALE = "stale"


class StaleReason(Enum):
    OBJECT_MISSING = "object_missing"
    VALUE_MISMATCH = "value_mismatch"


class Finding(BaseModel):
    """One discrepancy between a derived structure and the live records"""
    model_config = ConfigDict(frozen=True)

    kind: FindingKind
    identifier: str
    structure: str  # timeline, index or collection name
    key: str  # Redis key holding the reference
    field_value: Optional[str] = None
    current_value: Optional[str] = None
    reason: Optional[StaleReason] = None
    scope: Optional[str] = None  # owner id for scoped structures
    collection_kind: Optional[CollectionKind] = None


class InstancesAudit(BaseModel):
    """Timeline vs keyspace comparison"""
    model_config = ConfigDict(frozen=True)

    timeline_key: str
    phantoms: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    count_timeline: int = 0
    count_scan: int = 0
    status: AuditStatus = AuditStatus.AUDITED

    @property
    def finding_count(self) -> int:
        return len(self.phantoms) + len(self.missing)

    @property
    def findings(self) -> List[Finding]:
        return (
            [Finding(kind=FindingKind.PHANTOM, identifier=i, structure="instances",
                     key=self.timeline_key) for i in self.phantoms] +
            [Finding(kind=FindingKind.MISSING, identifier=i, structure="instances",
                     key=self.timeline_key) for i in self.missing]
        )


class IndexAudit(BaseModel):
    """Result for one unique or multi index declaration"""
    model_config = ConfigDict(frozen=True)

    index_name: str
    field: str
    unique: bool
    within: Optional[str] = None  # owner type for scoped indexes
    status: AuditStatus = AuditStatus.AUDITED
    stale: List[Finding] = Field(default_factory=list)
    missing: List[Finding] = Field(default_factory=list)
    orphaned_keys: List[str] = Field(default_factory=list)
    entries_checked: int = 0
    note: Optional[str] = None

    @property
    def finding_count(self) -> int:
        return len(self.stale) + len(self.missing) + len(self.orphaned_keys)

    @property
    def findings(self) -> List[Finding]:
        return list(self.stale) + list(self.missing)


class ParticipationAudit(BaseModel):
    """Result for one participation declaration, across all its collections"""
    model_config = ConfigDict(frozen=True)

    collection: str
    owner: Optional[str] = None  # owner type, None for class-level
    kind: CollectionKind
    status: AuditStatus = AuditStatus.AUDITED
    stale_members: List[Finding] = Field(default_factory=list)
    collections_checked: int = 0
    members_checked: int = 0
    note: Optional[str] = None

    @property
    def finding_count(self) -> int:
        return len(self.stale_members)

    @property
    def findings(self) -> List[Finding]:
        return list(self.stale_members)


class AuditResult(BaseModel):
    """Findings for every dimension of one model type"""
    model_config = ConfigDict(frozen=True)

    model_name: str
    instances: InstancesAudit
    unique_indexes: List[IndexAudit] = Field(default_factory=list)
    multi_indexes: List[IndexAudit] = Field(default_factory=list)
    participations: List[ParticipationAudit] = Field(default_factory=list)

    def _dimensions(self) -> list:
        return [self.instances, *self.unique_indexes, *self.multi_indexes, *self.participations]

    @property
    def healthy(self) -> bool:
        """True when no dimension has any finding"""
        return all(d.finding_count == 0 for d in self._dimensions())

    @property
    def complete(self) -> bool:
        """True when no dimension carries the not-implemented marker"""
        return all(d.status is AuditStatus.AUDITED for d in self._dimensions())

    @property
    def total_findings(self) -> int:
        return sum(d.finding_count for d in self._dimensions())
