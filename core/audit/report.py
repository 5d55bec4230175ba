"""
Audit report: an immutable snapshot of one health check.

Adds timing to an AuditResult and renders it either as a plain dict for
programmatic use or as a short multi-line summary for logs.
"""

from datetime import datetime
from typing import Any, Dict, List

from pydantic import Field

from ..models.audit import AuditResult, AuditStatus, IndexAudit, ParticipationAudit

NOT_IMPLEMENTED_MARKER = "[NOT IMPLEMENTED]"


class AuditReport(AuditResult):
    """AuditResult plus when it ran and how long it took"""

    audited_at: datetime = Field(default_factory=datetime.now)
    duration: float = 0.0

    @classmethod
    def from_result(cls, result: AuditResult, audited_at: datetime, duration: float) -> 'AuditReport':
        return cls(
            model_name=result.model_name,
            instances=result.instances,
            unique_indexes=result.unique_indexes,
            multi_indexes=result.multi_indexes,
            participations=result.participations,
            audited_at=audited_at,
            duration=duration
        )

    def to_dict(self) -> Dict[str, Any]:
        """Structured map keyed by dimension name"""
        instances = self.instances
        return {
            "model": self.model_name,
            "audited_at": self.audited_at.isoformat(),
            "duration": self.duration,
            "healthy": self.healthy,
            "complete": self.complete,
            "total_findings": self.total_findings,
            "instances": {
                "status": instances.status.value,
                "phantoms": list(instances.phantoms),
                "missing": list(instances.missing),
                "count_timeline": instances.count_timeline,
                "count_scan": instances.count_scan
            },
            "unique_indexes": [self._index_dict(audit) for audit in self.unique_indexes],
            "multi_indexes": [self._index_dict(audit) for audit in self.multi_indexes],
            "participations": [self._participation_dict(audit) for audit in self.participations]
        }

    @staticmethod
    def _index_dict(audit: IndexAudit) -> Dict[str, Any]:
        return {
            "index_name": audit.index_name,
            "field": audit.field,
            "within": audit.within,
            "status": audit.status.value,
            "stale": [finding.model_dump(mode="json", exclude_none=True) for finding in audit.stale],
            "missing": [finding.model_dump(mode="json", exclude_none=True) for finding in audit.missing],
            "orphaned_keys": list(audit.orphaned_keys),
            "entries_checked": audit.entries_checked,
            "note": audit.note
        }

    @staticmethod
    def _participation_dict(audit: ParticipationAudit) -> Dict[str, Any]:
        return {
            "collection": audit.collection,
            "owner": audit.owner,
            "kind": audit.kind.value,
            "status": audit.status.value,
            "stale_members": [finding.model_dump(mode="json", exclude_none=True)
                              for finding in audit.stale_members],
            "collections_checked": audit.collections_checked,
            "members_checked": audit.members_checked,
            "note": audit.note
        }

    def render(self) -> str:
        """Human-readable summary, one line per dimension"""
        health = "HEALTHY" if self.healthy else "UNHEALTHY"
        completeness = "COMPLETE" if self.complete else "INCOMPLETE"
        instances = self.instances

        lines: List[str] = [
            f"Audit of {self.model_name} at {self.audited_at.isoformat(timespec='seconds')} "
            f"({self.duration:.3f}s)",
            f"  Status: {health}, {completeness} ({self.total_findings} findings)",
            f"  Instances: {instances.count_timeline} in timeline, {instances.count_scan} in keyspace, "
            f"{len(instances.phantoms)} phantom, {len(instances.missing)} missing"
        ]

        for label, audits in (("Unique index", self.unique_indexes), ("Multi index", self.multi_indexes)):
            for audit in audits:
                scope = f" within {audit.within}" if audit.within else ""
                lines.append(
                    f"  {label} {audit.index_name}{scope}: {len(audit.stale)} stale, "
                    f"{len(audit.missing)} missing, {len(audit.orphaned_keys)} orphaned"
                    f"{self._marker(audit.status)}"
                )

        for audit in self.participations:
            owner = audit.owner or self.model_name
            lines.append(
                f"  Participation {owner}.{audit.collection} ({audit.kind.value}): "
                f"{len(audit.stale_members)} stale of {audit.members_checked} checked"
                f"{self._marker(audit.status)}"
            )

        return "\n".join(lines)

    @staticmethod
    def _marker(status: AuditStatus) -> str:
        return f" {NOT_IMPLEMENTED_MARKER}" if status is AuditStatus.NOT_IMPLEMENTED else ""

    def __str__(self) -> str:
        return self.render()
