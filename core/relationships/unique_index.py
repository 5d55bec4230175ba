"""
Unique indexes: field value -> one identifier.

Global indexes live in one hash at <prefix>:<index>. Scoped indexes keep one
hash per owner instance at <owner>:<owner_id>:<index>, so the same value can
be claimed once in every scope.
"""

import logging
from typing import TYPE_CHECKING, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from ..errors import ConfigurationError, RecordExistsError
from ..records.record import Record
from ..storage import keys
from ..storage.datatypes import atomic_swap
from .declarations import UniqueIndexSpec

if TYPE_CHECKING:
    from ..records.model_type import ModelType
    from .participation import Participation

logger = logging.getLogger(__name__)


class UniqueIndex:
    """
    Accessor bound to one unique index declaration.

    The guard is check-then-write: two concurrent writers can both pass it.
    Serial callers always see RecordExistsError on the second claim.
    """

    def __init__(self, model_type: 'ModelType', spec: UniqueIndexSpec,
                 owner_type: Optional['ModelType'] = None):
        self.model_type = model_type
        self.spec = spec
        self.owner_type = owner_type
        # Owner-scoped participation whose members populate each scope
        self.link: Optional['Participation'] = None

    @property
    def name(self) -> str:
        return self.spec.index_name

    @property
    def field(self) -> str:
        return self.spec.field

    @property
    def scoped(self) -> bool:
        return self.spec.scoped

    @property
    def redis(self):
        return self.model_type.redis

    def key(self, scope: Optional[str] = None) -> str:
        """Hash key for the global index or for one owner instance"""
        if not self.scoped:
            if scope is not None:
                raise ValueError(f"{self.name} is a global index; no scope expected")
            return self.model_type.key(self.name)
        if scope is None:
            raise ValueError(f"{self.name} is scoped to {self.spec.within}; an owner id is required")
        return self.owner_type.key(scope, self.name)

    async def set(self, field_value: str, identifier: str, scope: Optional[str] = None) -> None:
        await self.redis.hset(self.key(scope), field_value, identifier)

    async def get(self, field_value: str, scope: Optional[str] = None) -> Optional[str]:
        return await self.redis.hget(self.key(scope), field_value)

    async def remove(self, field_value: str, scope: Optional[str] = None) -> None:
        await self.redis.hdel(self.key(scope), field_value)

    async def guard(self, field_value: str, identifier: str, scope: Optional[str] = None) -> None:
        """
        Raise if field_value already belongs to a different identifier.

        Raises:
            RecordExistsError: the value maps to another record in this scope
        """
        existing = await self.get(field_value, scope)
        if existing is not None and existing != identifier:
            raise RecordExistsError(self.key(scope), field_value, existing, identifier)

    async def entries(self, scope: Optional[str] = None) -> Dict[str, str]:
        return await self.redis.hgetall(self.key(scope))

    async def find_by(self, field_value: str, scope: Optional[str] = None) -> Optional[Record]:
        """Load the record owning field_value; a dangling entry resolves to None"""
        identifier = await self.get(field_value, scope)
        if identifier is None:
            return None
        return await self.model_type.load(identifier)

    async def find_all_by(self, field_values: Sequence[str], scope: Optional[str] = None) -> List[Record]:
        if not field_values:
            return []
        identifiers = await self.redis.hmget(self.key(scope), list(field_values))
        identifiers = [i for i in identifiers if i is not None]
        records = await self.model_type.load_multi(identifiers)
        return [record for record in records if record is not None]

    async def add(self, record: Record, scope: Optional[str] = None) -> None:
        """Index a record under its current value (explicit for scoped indexes)"""
        value = self.model_type.field_value(record, self.field)
        if value is None:
            return
        identifier = self.model_type.identifier_of(record)
        await self.guard(value, identifier, scope)
        await self.set(value, identifier, scope)

    async def update_in(self, record: Record, old_value: Optional[str], scope: Optional[str] = None) -> None:
        """Move a record's entry from old_value to its current value"""
        identifier = self.model_type.identifier_of(record)
        value = self.model_type.field_value(record, self.field)
        if value is not None:
            await self.guard(value, identifier, scope)
        async with self.model_type.client.pipeline(transaction=False) as pipe:
            self._queue_update(pipe, self.key(scope), old_value, value, identifier)
            await pipe.execute()

    def queue_update(self, pipe, old_value: Optional[str], new_value: Optional[str], identifier: str) -> None:
        """Queue global index maintenance for a save or delete"""
        self._queue_update(pipe, self.key(), old_value, new_value, identifier)

    @staticmethod
    def _queue_update(pipe, key: str, old_value: Optional[str], new_value: Optional[str], identifier: str) -> None:
        old_value, new_value = old_value or None, new_value or None
        if old_value is not None and old_value != new_value:
            pipe.hdel(key, old_value)
        if new_value is not None:
            pipe.hset(key, new_value, identifier)

    async def scopes(self, batch_size: int = 100) -> AsyncIterator[Tuple[Optional[str], str]]:
        """Yield (scope, key) for every existing index hash"""
        if not self.scoped:
            yield None, self.key()
            return
        pattern = keys.scan_pattern(self.owner_type.prefix, self.name, self.owner_type.delimiter)
        seen = set()
        async for key in self.model_type.client.scan_keys(pattern, batch_size):
            scope = keys.extract_identifier(key, self.owner_type.prefix, self.name,
                                            self.owner_type.delimiter)
            if scope is not None and key not in seen:
                seen.add(key)
                yield scope, key

    async def rebuild(self, scope: Optional[str] = None, batch_size: int = 100) -> int:
        """
        Recompute the index from live records and swap it in.

        Global indexes are rebuilt from a keyspace scan. A scoped index is
        rebuilt one scope at a time from the linked participation's members.

        Returns:
            Number of entries written
        """
        if self.scoped:
            if scope is None:
                raise ValueError(f"{self.name} is scoped; rebuild one owner id at a time")
            if self.link is None:
                raise ConfigurationError(
                    f"{self.name} has no participation linking {self.model_type.name} "
                    f"to {self.spec.within}; cannot rebuild"
                )
            members = await self.link.members(scope)
            batches = [members[i:i + batch_size] for i in range(0, len(members), batch_size)]
            return await self._rebuild_from(self.key(scope), _iterate(batches))

        return await self._rebuild_from(self.key(), self.model_type.scan_identifiers(batch_size))

    async def _rebuild_from(self, final_key: str, batches: AsyncIterator[List[str]]) -> int:
        temp_key = keys.rebuild_key(final_key, delimiter=self.model_type.delimiter)
        written: Dict[str, str] = {}

        async for identifiers in batches:
            values = await self.model_type.field_values(identifiers, self.field)
            mapping = {}
            for identifier, value in zip(identifiers, values):
                if value is None or value == "":
                    continue
                owner = written.get(value)
                if owner is not None and owner != identifier:
                    logger.warning(
                        f"Duplicate value {value!r} for {self.name}: "
                        f"keeping {owner}, skipping {identifier}"
                    )
                    continue
                written[value] = identifier
                mapping[value] = identifier
            if mapping:
                await self.redis.hset(temp_key, mapping=mapping)

        await atomic_swap(self.redis, temp_key, final_key)
        logger.info(f"Rebuilt unique index {final_key} with {len(written)} entries")
        return len(written)


async def _iterate(batches: List[List[str]]) -> AsyncIterator[List[str]]:
    for batch in batches:
        if batch:
            yield batch
