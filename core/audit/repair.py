"""
Repair engine: corrective writes driven by audit findings.

Each dimension is repaired independently and re-checks a reference before
acting on it, so a caller-supplied audit that has gone slightly out of date
does not undo newer writes. Partial repairs are not rolled back if a later
step fails.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..models.audit import AuditResult, AuditStatus, Finding, IndexAudit, StaleReason
from ..models.config import AuditConfig
from ..records.model_type import ModelType
from ..records.record import score_from_fields
from ..relationships.multi_index import MultiIndex
from ..relationships.participation import REVERSE_SUFFIX
from ..relationships.unique_index import UniqueIndex
from ..storage.datatypes import CollectionKind
from .engine import AuditEngine, chunked
from .report import AuditReport

logger = logging.getLogger(__name__)


@dataclass
class InstancesRepair:
    """Timeline corrections"""
    phantoms_removed: int = 0
    missing_added: int = 0

    @property
    def actions(self) -> int:
        return self.phantoms_removed + self.missing_added

    def to_dict(self) -> Dict[str, Any]:
        return {"phantoms_removed": self.phantoms_removed, "missing_added": self.missing_added}


@dataclass
class IndexRepair:
    """Index corrections: full rebuilds and incremental patches"""
    rebuilt: List[str] = field(default_factory=list)
    patched: Dict[str, int] = field(default_factory=dict)

    @property
    def actions(self) -> int:
        return len(self.rebuilt) + sum(self.patched.values())

    def to_dict(self) -> Dict[str, Any]:
        return {"rebuilt": list(self.rebuilt), "patched": dict(self.patched)}


@dataclass
class ParticipationRepair:
    """Stale members removed from participation collections"""
    stale_removed: int = 0
    collections_touched: int = 0

    @property
    def actions(self) -> int:
        return self.stale_removed

    def to_dict(self) -> Dict[str, Any]:
        return {"stale_removed": self.stale_removed, "collections_touched": self.collections_touched}


@dataclass
class RepairSummary:
    """Outcome of repair_all, including the post-repair report"""
    model_name: str
    instances: InstancesRepair
    indexes: IndexRepair
    participations: ParticipationRepair
    report: AuditReport
    duration: float = 0.0

    @property
    def total_actions(self) -> int:
        return self.instances.actions + self.indexes.actions + self.participations.actions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "total_actions": self.total_actions,
            "duration": self.duration,
            "instances": self.instances.to_dict(),
            "indexes": self.indexes.to_dict(),
            "participations": self.participations.to_dict(),
            "report": self.report.to_dict()
        }


class RepairEngine:
    """
    Apply corrective writes for audit findings.

    Features:
    - Batched timeline repair with the updated/created/now score cascade
    - Index rebuild (build-then-swap) above a finding threshold, patching below it
    - Participation removal with the primitive matching each collection's kind
    - repair_all that is a no-op when run twice without intervening writes
    """

    def __init__(self, config: Optional[AuditConfig] = None, audit_engine: Optional[AuditEngine] = None):
        self.config = config or AuditConfig()
        self.audit_engine = audit_engine or AuditEngine(self.config)

    def _batch_size(self, batch_size: Optional[int]) -> int:
        batch_size = batch_size if batch_size is not None else self.config.repair_batch_size
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        return batch_size

    async def _result(self, model_type: ModelType, audit_result: Optional[AuditResult]) -> AuditResult:
        if audit_result is None:
            return await self.audit_engine.audit(model_type)
        if audit_result.model_name != model_type.name:
            raise ValueError(
                f"Audit result is for {audit_result.model_name!r}, not {model_type.name!r}"
            )
        return audit_result

    async def rebuild_instances(self, model_type: ModelType, batch_size: Optional[int] = None) -> int:
        """Rebuild the timeline from the keyspace; returns the identifier count"""
        return await model_type.timeline.rebuild(self._batch_size(batch_size))

    async def repair_instances(
        self,
        model_type: ModelType,
        audit_result: Optional[AuditResult] = None,
        batch_size: Optional[int] = None
    ) -> InstancesRepair:
        """
        Remove phantom timeline entries and add missing ones.

        Args:
            model_type: Model type to repair
            audit_result: Previous audit to act on (audits if None)
            batch_size: Commands per pipeline

        Returns:
            Counts of removed and added entries
        """
        batch_size = self._batch_size(batch_size)
        result = await self._result(model_type, audit_result)
        timeline = model_type.timeline
        outcome = InstancesRepair()

        for chunk in chunked(list(result.instances.phantoms), batch_size):
            stored = set(await model_type.stored_identifiers(chunk))
            gone = [identifier for identifier in chunk if identifier not in stored]
            if gone:
                await model_type.redis.zrem(timeline.key, *gone)
                outcome.phantoms_removed += len(gone)

        for chunk in chunked(list(result.instances.missing), batch_size):
            chunk = await model_type.stored_identifiers(chunk)
            rows = await model_type.load_raw_multi(chunk)
            now = time.time()
            entries = {identifier: score_from_fields(row, now) for identifier, row in zip(chunk, rows) if row}
            if entries:
                await model_type.redis.zadd(timeline.key, entries)
                outcome.missing_added += len(entries)

        logger.info(
            f"Repaired {timeline.key}: removed {outcome.phantoms_removed} phantoms, "
            f"added {outcome.missing_added} missing"
        )
        return outcome

    async def repair_indexes(
        self,
        model_type: ModelType,
        audit_result: Optional[AuditResult] = None,
        batch_size: Optional[int] = None,
        rebuild_threshold: Optional[int] = None,
        force_rebuild: bool = False
    ) -> IndexRepair:
        """
        Rebuild or patch indexes with findings.

        An index whose finding count exceeds rebuild_threshold (or any index
        when force_rebuild is set) is rebuilt from live records; smaller
        drift is patched entry by entry. Scoped indexes without a linking
        participation can only be patched.

        Returns:
            Names of rebuilt indexes and per-index patch counts
        """
        batch_size = self._batch_size(batch_size)
        threshold = rebuild_threshold if rebuild_threshold is not None else self.config.rebuild_threshold
        result = await self._result(model_type, audit_result)
        outcome = IndexRepair()

        audits = [(audit, model_type.unique_index(audit.index_name)) for audit in result.unique_indexes]
        audits += [(audit, model_type.multi_index(audit.index_name)) for audit in result.multi_indexes]

        for audit, index in audits:
            if audit.finding_count == 0 and not force_rebuild:
                continue
            if audit.status is AuditStatus.NOT_IMPLEMENTED and audit.finding_count == 0:
                continue

            if force_rebuild or audit.finding_count > threshold:
                if await self._rebuild_index(index, audit, batch_size):
                    outcome.rebuilt.append(index.name)
                    continue

            patched = await self._patch_index(index, audit)
            if patched:
                outcome.patched[index.name] = patched

        logger.info(f"Repaired indexes of {model_type.name}: rebuilt {outcome.rebuilt}, patched {outcome.patched}")
        return outcome

    async def _rebuild_index(self, index, audit: IndexAudit, batch_size: int) -> bool:
        """Rebuild an index; False when it cannot be rebuilt and must be patched"""
        if not index.scoped:
            await index.rebuild(batch_size=batch_size)
            return True
        if index.link is None:
            logger.warning(f"{index.name} has no linking participation; patching instead of rebuilding")
            return False

        scopes = sorted({finding.scope for finding in audit.findings if finding.scope is not None})
        for scope in scopes:
            await index.rebuild(scope=scope, batch_size=batch_size)
        return bool(scopes)

    async def _patch_index(self, index, audit: IndexAudit) -> int:
        if isinstance(index, UniqueIndex):
            return await self._patch_unique(index, audit)
        return await self._patch_multi(index, audit)

    async def _patch_unique(self, index: UniqueIndex, audit: IndexAudit) -> int:
        actions = 0
        for finding in audit.stale:
            if await index.get(finding.field_value, finding.scope) != finding.identifier:
                continue
            await index.remove(finding.field_value, finding.scope)
            actions += 1
            if finding.reason is StaleReason.VALUE_MISMATCH and finding.current_value:
                if await index.get(finding.current_value, finding.scope) is None:
                    await index.set(finding.current_value, finding.identifier, finding.scope)
                    actions += 1

        for finding in audit.missing:
            if await index.get(finding.field_value, finding.scope) is None:
                await index.set(finding.field_value, finding.identifier, finding.scope)
                actions += 1
        return actions

    async def _patch_multi(self, index: MultiIndex, audit: IndexAudit) -> int:
        actions = 0
        redis = index.redis
        for finding in audit.stale:
            if await redis.srem(finding.key, finding.identifier):
                actions += 1
            if finding.reason is StaleReason.VALUE_MISMATCH and finding.current_value:
                await index.add(finding.current_value, finding.identifier, finding.scope)

        for finding in audit.missing:
            if await redis.sadd(finding.key, finding.identifier):
                actions += 1

        for key in audit.orphaned_keys:
            if await redis.type(key) not in ("set", "none"):
                await redis.delete(key)
                actions += 1
        return actions

    async def repair_participations(
        self,
        model_type: ModelType,
        audit_result: Optional[AuditResult] = None,
        batch_size: Optional[int] = None
    ) -> ParticipationRepair:
        """
        Remove stale members from participation collections.

        Uses SREM, LREM 0 or ZREM according to the collection kind recorded
        on each finding. Valid members and the timeline are left untouched.
        """
        batch_size = self._batch_size(batch_size)
        result = await self._result(model_type, audit_result)
        outcome = ParticipationRepair()
        touched = set()

        findings: List[Finding] = [f for audit in result.participations for f in audit.stale_members]
        for chunk in chunked(findings, batch_size):
            stored = set(await model_type.stored_identifiers([finding.identifier for finding in chunk]))
            async with model_type.client.pipeline(transaction=False) as pipe:
                queued = 0
                for finding in chunk:
                    if finding.identifier in stored:
                        continue
                    kind = finding.collection_kind or CollectionKind.SORTED_SET
                    kind.queue_remove(pipe, finding.key, finding.identifier)
                    pipe.srem(model_type.key(finding.identifier, REVERSE_SUFFIX), finding.key)
                    touched.add(finding.key)
                    queued += 1
                if queued:
                    await pipe.execute()
                    outcome.stale_removed += queued

        outcome.collections_touched = len(touched)
        logger.info(
            f"Repaired participations of {model_type.name}: removed {outcome.stale_removed} "
            f"stale members from {outcome.collections_touched} collections"
        )
        return outcome

    async def repair_all(
        self,
        model_type: ModelType,
        audit_result: Optional[AuditResult] = None,
        batch_size: Optional[int] = None,
        rebuild_threshold: Optional[int] = None,
        force_rebuild: bool = False
    ) -> RepairSummary:
        """
        Repair instances, then indexes, then participations.

        Args:
            model_type: Model type to repair
            audit_result: Audit to act on; a fresh one is taken if None
            batch_size: Commands per pipeline
            rebuild_threshold: Finding count above which an index is rebuilt
            force_rebuild: Rebuild every rebuildable index regardless of findings

        Returns:
            Per-dimension counts and the post-repair AuditReport
        """
        start_time = time.perf_counter()
        result = await self._result(model_type, audit_result)

        instances = await self.repair_instances(model_type, result, batch_size)
        indexes = await self.repair_indexes(model_type, result, batch_size,
                                            rebuild_threshold, force_rebuild)
        participations = await self.repair_participations(model_type, result, batch_size)

        report = await self.audit_engine.health_check(model_type)
        summary = RepairSummary(
            model_name=model_type.name,
            instances=instances,
            indexes=indexes,
            participations=participations,
            report=report,
            duration=time.perf_counter() - start_time
        )
        logger.info(
            f"Repair of {model_type.name} finished: {summary.total_actions} actions, "
            f"now {'healthy' if report.healthy else 'unhealthy'}"
        )
        return summary
