"""
Multi indexes: field value -> set of identifiers.

One set per value at <prefix>:<index>:<value> (global) or
<owner>:<owner_id>:<index>:<value> (scoped). No uniqueness guard.
"""

import logging
from collections import defaultdict
from typing import TYPE_CHECKING, AsyncIterator, Dict, List, Optional, Set, Tuple

from ..errors import ConfigurationError
from ..records.record import Record
from ..storage import keys
from ..storage.datatypes import swap_many
from .declarations import MultiIndexSpec

if TYPE_CHECKING:
    from ..records.model_type import ModelType
    from .participation import Participation

logger = logging.getLogger(__name__)


class MultiIndex:
    """Accessor bound to one multi index declaration"""

    def __init__(self, model_type: 'ModelType', spec: MultiIndexSpec,
                 owner_type: Optional['ModelType'] = None):
        self.model_type = model_type
        self.spec = spec
        self.owner_type = owner_type
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

    def base_key(self, scope: Optional[str] = None) -> str:
        if not self.scoped:
            if scope is not None:
                raise ValueError(f"{self.name} is a global index; no scope expected")
            return self.model_type.key(self.name)
        if scope is None:
            raise ValueError(f"{self.name} is scoped to {self.spec.within}; an owner id is required")
        return self.owner_type.key(scope, self.name)

    def value_key(self, field_value: str, scope: Optional[str] = None) -> str:
        return keys.join(self.base_key(scope), field_value, delimiter=self.model_type.delimiter)

    async def add(self, field_value: str, identifier: str, scope: Optional[str] = None) -> None:
        await self.redis.sadd(self.value_key(field_value, scope), identifier)

    async def remove(self, field_value: str, identifier: str, scope: Optional[str] = None) -> None:
        await self.redis.srem(self.value_key(field_value, scope), identifier)

    async def members(self, field_value: str, scope: Optional[str] = None) -> List[str]:
        return sorted(await self.redis.smembers(self.value_key(field_value, scope)))

    async def sample(self, field_value: str, count: int = 1, scope: Optional[str] = None) -> List[str]:
        """Up to count distinct identifiers chosen at random"""
        if count < 1:
            return []
        return await self.redis.srandmember(self.value_key(field_value, scope), count)

    async def find_all_by(self, field_value: str, scope: Optional[str] = None) -> List[Record]:
        """Load every live record indexed under field_value"""
        identifiers = await self.members(field_value, scope)
        records = await self.model_type.load_multi(identifiers)
        return [record for record in records if record is not None]

    async def update_in(self, record: Record, old_value: Optional[str], scope: Optional[str] = None) -> None:
        identifier = self.model_type.identifier_of(record)
        value = self.model_type.field_value(record, self.field)
        async with self.model_type.client.pipeline(transaction=False) as pipe:
            self._queue_update(pipe, old_value, value, identifier, scope)
            await pipe.execute()

    def queue_update(self, pipe, old_value: Optional[str], new_value: Optional[str], identifier: str) -> None:
        self._queue_update(pipe, old_value, new_value, identifier, None)

    def _queue_update(self, pipe, old_value, new_value, identifier, scope) -> None:
        old_value, new_value = old_value or None, new_value or None
        if old_value is not None and old_value != new_value:
            pipe.srem(self.value_key(old_value, scope), identifier)
        if new_value is not None:
            pipe.sadd(self.value_key(new_value, scope), identifier)

    async def value_keys(self, scope: Optional[str] = None,
                         batch_size: int = 100) -> AsyncIterator[Tuple[str, str]]:
        """Yield (field_value, key) for every value set under one base key"""
        base = self.base_key(scope)
        delimiter = self.model_type.delimiter
        seen = set()
        async for key in self.model_type.client.scan_keys(f"{base}{delimiter}*", batch_size):
            value = keys.extract_identifier(key, base, None, delimiter)
            if value is not None and key not in seen:
                seen.add(key)
                yield value, key

    async def rebuild(self, scope: Optional[str] = None, batch_size: int = 100) -> int:
        """
        Recompute every value set under one base key and swap them in.

        Phases: list the current value keys, build replacement sets under a
        temporary namespace, then in one MULTI rename each replacement onto
        its final key and delete value keys that no longer have members.

        Returns:
            Number of identifiers indexed
        """
        existing = [key async for _, key in self.value_keys(scope, batch_size)]

        if self.scoped:
            if scope is None:
                raise ValueError(f"{self.name} is scoped; rebuild one owner id at a time")
            if self.link is None:
                raise ConfigurationError(
                    f"{self.name} has no participation linking {self.model_type.name} "
                    f"to {self.spec.within}; cannot rebuild"
                )
            members = await self.link.members(scope)
            grouped = await self._group([members[i:i + batch_size]
                                         for i in range(0, len(members), batch_size)])
        else:
            grouped = await self._group_scan(batch_size)

        delimiter = self.model_type.delimiter
        temp_base = keys.rebuild_key(self.base_key(scope), delimiter=delimiter)
        renames = []
        for value, identifiers in grouped.items():
            temp_key = keys.join(temp_base, value, delimiter=delimiter)
            await self.redis.sadd(temp_key, *identifiers)
            renames.append((temp_key, self.value_key(value, scope)))

        final_keys = {final for _, final in renames}
        deletes = [key for key in existing if key not in final_keys]
        await swap_many(self.redis, renames, deletes)

        total = sum(len(identifiers) for identifiers in grouped.values())
        logger.info(
            f"Rebuilt multi index {self.base_key(scope)}: {len(grouped)} values, "
            f"{total} identifiers, {len(deletes)} keys dropped"
        )
        return total

    async def _group_scan(self, batch_size: int) -> Dict[str, Set[str]]:
        grouped: Dict[str, Set[str]] = defaultdict(set)
        async for identifiers in self.model_type.scan_identifiers(batch_size):
            await self._add_to_groups(grouped, identifiers)
        return grouped

    async def _group(self, batches: List[List[str]]) -> Dict[str, Set[str]]:
        grouped: Dict[str, Set[str]] = defaultdict(set)
        for identifiers in batches:
            if identifiers:
                await self._add_to_groups(grouped, identifiers)
        return grouped

    async def _add_to_groups(self, grouped: Dict[str, Set[str]], identifiers: List[str]) -> None:
        values = await self.model_type.field_values(identifiers, self.field)
        for identifier, value in zip(identifiers, values):
            if value is not None and value != "":
                grouped[value].add(identifier)
