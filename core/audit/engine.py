"""
Audit engine: read-only reconciliation of derived structures.

Each run walks collecting_timeline -> scanning_keyspace -> comparing ->
reporting and checks the timeline, every unique and multi index and every
participation declaration independently. Consistency problems become
findings; only bad arguments raise. Redis errors propagate unchanged.
"""

import logging
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..models.audit import (
    AuditPhase, AuditResult, AuditStatus, Finding, FindingKind,
    IndexAudit, InstancesAudit, ParticipationAudit, StaleReason
)
from ..models.config import AuditConfig
from ..records.model_type import ModelType
from ..relationships.multi_index import MultiIndex
from ..relationships.participation import Participation
from ..relationships.unique_index import UniqueIndex
from ..storage.datatypes import CollectionKind
from .report import AuditReport

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[AuditPhase, Dict[str, Any]], None]

_KIND_BY_REDIS_TYPE = {kind.redis_type: kind for kind in CollectionKind}


def chunked(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class AuditEngine:
    """
    Detect drift between live records and their derived structures.

    Features:
    - Timeline vs keyspace comparison (phantoms and missing identifiers)
    - Unique and multi index checks (stale entries and missing entries)
    - Type-aware participation member checks
    - Not-implemented markers for shapes without an audit
    """

    def __init__(self, config: Optional[AuditConfig] = None):
        self.config = config or AuditConfig()

    def _options(self, batch_size: Optional[int], sample_size: Optional[int]) -> Tuple[int, Optional[int]]:
        batch_size = batch_size if batch_size is not None else self.config.batch_size
        sample_size = sample_size if sample_size is not None else self.config.sample_size
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if sample_size is not None and sample_size < 1:
            raise ValueError(f"sample_size must be positive, got {sample_size}")
        return batch_size, sample_size

    async def audit(
        self,
        model_type: ModelType,
        batch_size: Optional[int] = None,
        sample_size: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> AuditResult:
        """
        Audit every dimension of one model type.

        Args:
            model_type: Registered model type to audit
            batch_size: SCAN page size and references checked per round trip
            sample_size: Max members checked per multi-index value set or
                participation collection (None checks all)
            progress_callback: Called with each phase and running counts

        Returns:
            Finding lists per dimension
        """
        batch_size, sample_size = self._options(batch_size, sample_size)
        run = _AuditRun(model_type, batch_size, sample_size, progress_callback)
        return await run.execute()

    async def health_check(
        self,
        model_type: ModelType,
        batch_size: Optional[int] = None,
        sample_size: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> AuditReport:
        """Run an audit and wrap it in a timed AuditReport"""
        audited_at = datetime.now()
        start_time = time.perf_counter()
        result = await self.audit(model_type, batch_size, sample_size, progress_callback)
        report = AuditReport.from_result(result, audited_at, time.perf_counter() - start_time)

        logger.info(
            f"Health check for {model_type.name}: "
            f"{'healthy' if report.healthy else 'unhealthy'}, "
            f"{'complete' if report.complete else 'incomplete'}, "
            f"{report.total_findings} findings in {report.duration:.3f}s"
        )
        return report


class _AuditRun:
    """State for a single audit invocation"""

    def __init__(self, model_type: ModelType, batch_size: int, sample_size: Optional[int],
                 progress_callback: Optional[ProgressCallback]):
        self.model_type = model_type
        self.client = model_type.client
        self.redis = model_type.redis
        self.batch_size = batch_size
        self.sample_size = sample_size
        self.progress_callback = progress_callback
        self.live: Set[str] = set()

    def _phase(self, phase: AuditPhase, **details: Any) -> None:
        logger.debug(f"Audit {self.model_type.name}: {phase.value} {details}")
        if self.progress_callback:
            self.progress_callback(phase, {"model": self.model_type.name, **details})

    async def execute(self) -> AuditResult:
        model_type = self.model_type
        logger.info(f"Auditing {model_type.name} (batch_size={self.batch_size}, sample_size={self.sample_size})")

        self._phase(AuditPhase.COLLECTING_TIMELINE)
        timeline_ids = set(await model_type.timeline.members())

        self._phase(AuditPhase.SCANNING_KEYSPACE, timeline=len(timeline_ids))
        async for identifiers in model_type.scan_identifiers(self.batch_size):
            self.live.update(identifiers)

        self._phase(AuditPhase.COMPARING, timeline=len(timeline_ids), keyspace=len(self.live))
        instances = InstancesAudit(
            timeline_key=model_type.timeline.key,
            phantoms=sorted(timeline_ids - self.live),
            missing=sorted(self.live - timeline_ids),
            count_timeline=len(timeline_ids),
            count_scan=len(self.live)
        )
        unique_indexes = [await self._audit_unique(index) for index in model_type.unique_indexes.values()]
        multi_indexes = [await self._audit_multi(index) for index in model_type.multi_indexes.values()]
        participations = [await self._audit_participation(p) for p in model_type.participations.values()]

        result = AuditResult(
            model_name=model_type.name,
            instances=instances,
            unique_indexes=unique_indexes,
            multi_indexes=multi_indexes,
            participations=participations
        )
        self._phase(AuditPhase.REPORTING, findings=result.total_findings)
        return result

    # Shared checks

    async def _hash_entries(self, key: str) -> Dict[str, str]:
        entries: Dict[str, str] = {}
        cursor = 0
        while True:
            cursor, data = await self.redis.hscan(key, cursor, count=self.batch_size)
            entries.update(data)
            if int(cursor) == 0:
                return entries

    async def _stale_references(self, field: str, refs: Sequence[Tuple[str, str]], structure: str,
                                key: str, scope: Optional[str] = None) -> List[Finding]:
        """Check (field_value, identifier) references against the records"""
        findings: List[Finding] = []
        for chunk in chunked(list(refs), self.batch_size):
            commands = []
            for _, identifier in chunk:
                record_key = self.model_type.dbkey(identifier)
                commands.append(("type", (record_key,)))
                commands.append(("hget", (record_key, field)))
            results = await self.client.execute_pipeline(commands, raise_on_error=False)

            for position, (value, identifier) in enumerate(chunk):
                kind, current = results[2 * position], results[2 * position + 1]
                if kind != "hash":
                    reason, current = StaleReason.OBJECT_MISSING, None
                elif current != value:
                    reason = StaleReason.VALUE_MISMATCH
                else:
                    continue
                logger.debug(f"Stale {structure} entry {value!r} -> {identifier} ({reason.value})")
                findings.append(Finding(
                    kind=FindingKind.STALE, identifier=identifier, structure=structure, key=key,
                    field_value=value, current_value=current, reason=reason, scope=scope
                ))
        return findings

    async def _live_values(self, identifiers: Sequence[str], field: str) -> List[Tuple[str, str]]:
        """(identifier, value) for records holding a non-empty value"""
        pairs: List[Tuple[str, str]] = []
        for chunk in chunked(list(identifiers), self.batch_size):
            values = await self.model_type.field_values(chunk, field)
            pairs.extend((i, v) for i, v in zip(chunk, values) if v not in (None, ""))
        return pairs

    # Unique indexes

    async def _audit_unique(self, index: UniqueIndex) -> IndexAudit:
        if index.scoped:
            return await self._audit_scoped_unique(index)

        key = index.key()
        entries = await self._hash_entries(key)
        stale = await self._stale_references(index.field, list(entries.items()), index.name, key)

        missing = [
            Finding(kind=FindingKind.MISSING, identifier=identifier, structure=index.name,
                    key=key, field_value=value)
            for identifier, value in await self._live_values(sorted(self.live), index.field)
            if value not in entries
        ]

        return IndexAudit(
            index_name=index.name, field=index.field, unique=True,
            stale=stale, missing=missing, entries_checked=len(entries)
        )

    async def _audit_scoped_unique(self, index: UniqueIndex) -> IndexAudit:
        stale: List[Finding] = []
        scope_entries: Dict[str, Dict[str, str]] = {}
        async for scope, key in index.scopes(self.batch_size):
            entries = await self._hash_entries(key)
            scope_entries[scope] = entries
            stale.extend(await self._stale_references(index.field, list(entries.items()),
                                                      index.name, key, scope))
        entries_checked = sum(len(entries) for entries in scope_entries.values())

        if index.link is None:
            return IndexAudit(
                index_name=index.name, field=index.field, unique=True, within=index.spec.within,
                status=AuditStatus.NOT_IMPLEMENTED, stale=stale, entries_checked=entries_checked,
                note=f"missing entries need a participation linking {index.model_type.name} "
                     f"to {index.spec.within}"
            )

        missing: List[Finding] = []
        async for owner_id, collection_key in index.link.collection_keys(self.batch_size):
            kind = await self._collection_kind(collection_key, index.link.kind)
            if kind is None:
                continue
            members = await kind.read(self.redis, collection_key)
            entries = scope_entries.get(owner_id, {})
            for identifier, value in await self._live_values(members, index.field):
                if value not in entries:
                    missing.append(Finding(
                        kind=FindingKind.MISSING, identifier=identifier, structure=index.name,
                        key=index.key(owner_id), field_value=value, scope=owner_id
                    ))

        return IndexAudit(
            index_name=index.name, field=index.field, unique=True, within=index.spec.within,
            stale=stale, missing=missing, entries_checked=entries_checked
        )

    # Multi indexes

    async def _audit_multi(self, index: MultiIndex) -> IndexAudit:
        if index.scoped:
            return IndexAudit(
                index_name=index.name, field=index.field, unique=False, within=index.spec.within,
                status=AuditStatus.NOT_IMPLEMENTED,
                note="instance-scoped multi index audits are not implemented"
            )

        stale: List[Finding] = []
        orphaned: List[str] = []
        entries_checked = 0

        async for value, key in index.value_keys(None, self.batch_size):
            if await self.redis.type(key) != "set":
                orphaned.append(key)
                continue
            members, sampled = await self._set_members(key)
            entries_checked += len(members)
            findings = await self._stale_references(index.field, [(value, m) for m in members],
                                                    index.name, key)
            stale.extend(findings)
            if members and not sampled and len(findings) == len(members):
                orphaned.append(key)

        pairs = await self._live_values(sorted(self.live), index.field)
        missing: List[Finding] = []
        for chunk in chunked(pairs, self.batch_size):
            commands = [("sismember", (index.value_key(value), identifier)) for identifier, value in chunk]
            results = await self.client.execute_pipeline(commands)
            missing.extend(
                Finding(kind=FindingKind.MISSING, identifier=identifier, structure=index.name,
                        key=index.value_key(value), field_value=value)
                for (identifier, value), present in zip(chunk, results)
                if not present
            )

        return IndexAudit(
            index_name=index.name, field=index.field, unique=False,
            stale=stale, missing=missing, orphaned_keys=sorted(orphaned),
            entries_checked=entries_checked
        )

    async def _set_members(self, key: str) -> Tuple[List[str], bool]:
        """Members of a set, sampled when larger than sample_size"""
        if self.sample_size is not None and await self.redis.scard(key) > self.sample_size:
            return list(await self.redis.srandmember(key, self.sample_size)), True
        return sorted(await self.redis.smembers(key)), False

    # Participations

    async def _collection_kind(self, key: str, declared: CollectionKind) -> Optional[CollectionKind]:
        """Kind to read a collection with, None if the key is absent or unusable"""
        redis_type = await self.redis.type(key)
        if redis_type == "none":
            return None
        kind = _KIND_BY_REDIS_TYPE.get(redis_type)
        if kind is None:
            logger.warning(f"{key} is a {redis_type}, not a collection; skipping")
            return None
        if kind is not declared:
            logger.warning(f"{key} is declared {declared.value} but stored as {redis_type}")
        return kind

    async def _audit_participation(self, participation: Participation) -> ParticipationAudit:
        stale: List[Finding] = []
        collections_checked = 0
        members_checked = 0

        async for owner_id, key in participation.collection_keys(self.batch_size):
            kind = await self._collection_kind(key, participation.kind)
            if kind is None:
                continue
            collections_checked += 1

            members = await kind.read(self.redis, key)
            if self.sample_size is not None and len(members) > self.sample_size:
                members = random.sample(members, self.sample_size)
            members_checked += len(members)

            for chunk in chunked(members, self.batch_size):
                stored = set(await self.model_type.stored_identifiers(chunk))
                for member in chunk:
                    if member in stored:
                        continue
                    logger.debug(f"Stale member {member} in {key}")
                    stale.append(Finding(
                        kind=FindingKind.STALE, identifier=member, structure=participation.name,
                        key=key, reason=StaleReason.OBJECT_MISSING, scope=owner_id,
                        collection_kind=kind
                    ))

        status, note = AuditStatus.AUDITED, None
        if participation.through_type is not None:
            status = AuditStatus.NOT_IMPLEMENTED
            note = f"join records in {participation.through_type.name} are not reconciled"

        return ParticipationAudit(
            collection=participation.name,
            owner=participation.spec.owner,
            kind=participation.kind,
            status=status,
            stale_members=stale,
            collections_checked=collections_checked,
            members_checked=members_checked,
            note=note
        )
