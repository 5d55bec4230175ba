"""
Participation collections: dependents that belong to an owner's collection.

Collection keys are <owner>:<owner_id>:<collection> for instance-level
declarations and <dependent>:<collection> for class-level ones. Each
dependent keeps a reverse set of the collection keys it was added to at
<dependent>:<id>:participations, used by the reverse navigation helpers.
"""

import logging
import time
from typing import TYPE_CHECKING, AsyncIterator, List, Optional, Tuple, Union

from ..errors import ConfigurationError
from ..records.record import Record
from ..storage import keys
from ..storage.datatypes import CollectionKind
from .declarations import ParticipationSpec

if TYPE_CHECKING:
    from ..records.model_type import ModelType

logger = logging.getLogger(__name__)

REVERSE_SUFFIX = "participations"

Member = Union[Record, str]


class ParticipationCollection:
    """One concrete collection: a (owner id, collection name) pair"""

    def __init__(self, participation: 'Participation', owner_id: Optional[str]):
        self.participation = participation
        self.owner_id = owner_id
        self.key = participation.collection_key(owner_id)

    async def add(self, member: Member, score: Optional[float] = None) -> None:
        await self.participation.add(member, self.owner_id, score)

    async def remove(self, member: Member) -> None:
        await self.participation.remove(member, self.owner_id)

    async def members(self) -> List[str]:
        return await self.participation.members(self.owner_id)

    async def size(self) -> int:
        return await self.participation.size(self.owner_id)

    async def contains(self, member: Member) -> bool:
        return await self.participation.contains(member, self.owner_id)


class Participation:
    """
    Accessor bound to one participation declaration on a dependent type.

    Features:
    - add/remove/members/size per owner collection
    - Reverse helpers on the dependent (count, owner_ids, owners, participates_in)
    - Optional through-model join records keyed <owner_id>:<dependent_id>
    """

    def __init__(self, model_type: 'ModelType', spec: ParticipationSpec,
                 owner_type: Optional['ModelType'] = None,
                 through_type: Optional['ModelType'] = None):
        self.model_type = model_type
        self.spec = spec
        self.owner_type = owner_type
        self.through_type = through_type

    @property
    def name(self) -> str:
        return self.spec.collection

    @property
    def kind(self) -> CollectionKind:
        return self.spec.kind

    @property
    def class_level(self) -> bool:
        return self.spec.class_level

    @property
    def redis(self):
        return self.model_type.redis

    def collection_key(self, owner_id: Optional[str] = None) -> str:
        if self.class_level:
            if owner_id is not None:
                raise ValueError(f"{self.name} is a class-level collection; no owner expected")
            return self.model_type.key(self.name)
        if owner_id is None:
            raise ValueError(f"{self.name} belongs to {self.spec.owner}; an owner id is required")
        return self.owner_type.key(owner_id, self.name)

    def owner_id_from_key(self, key: str) -> Optional[str]:
        if self.class_level:
            return None
        return keys.extract_identifier(key, self.owner_type.prefix, self.name,
                                       self.owner_type.delimiter)

    def reverse_key(self, identifier: str) -> str:
        return self.model_type.key(identifier, REVERSE_SUFFIX)

    def through_identifier(self, owner_id: str, identifier: str) -> str:
        return keys.join(owner_id, identifier, delimiter=self.model_type.delimiter)

    def collection(self, owner_id: Optional[str] = None) -> ParticipationCollection:
        return ParticipationCollection(self, owner_id)

    def _identifier(self, member: Member) -> str:
        if isinstance(member, Record):
            return self.model_type.identifier_of(member)
        return str(member)

    async def _score(self, member: Member, score: Optional[float]) -> Optional[float]:
        if self.kind is not CollectionKind.SORTED_SET:
            return None
        if score is not None:
            return float(score)
        if self.spec.score_field:
            record = member if isinstance(member, Record) else await self.model_type.load(member)
            value = getattr(record, self.spec.score_field, None) if record is not None else None
            if value is not None:
                return float(value)
        return time.time()

    async def add(self, member: Member, owner_id: Optional[str] = None,
                  score: Optional[float] = None) -> None:
        """Add a dependent to the collection and record the reverse link"""
        identifier = self._identifier(member)
        key = self.collection_key(owner_id)
        score = await self._score(member, score)

        async with self.model_type.client.pipeline(transaction=False) as pipe:
            self.kind.queue_add(pipe, key, identifier, score)
            pipe.sadd(self.reverse_key(identifier), key)
            await pipe.execute()

        if self.through_type is not None:
            join_id = self.through_identifier(owner_id, identifier)
            join = self.through_type.record_class(
                **{self.through_type.identifier_field: join_id},
                owner_id=owner_id,
                member_id=identifier
            )
            await self.through_type.save(join)

    async def remove(self, member: Member, owner_id: Optional[str] = None) -> None:
        identifier = self._identifier(member)
        key = self.collection_key(owner_id)

        async with self.model_type.client.pipeline(transaction=False) as pipe:
            self.kind.queue_remove(pipe, key, identifier)
            pipe.srem(self.reverse_key(identifier), key)
            await pipe.execute()

        if self.through_type is not None:
            await self.through_type.delete(self.through_identifier(owner_id, identifier))

    async def members(self, owner_id: Optional[str] = None) -> List[str]:
        return await self.kind.read(self.redis, self.collection_key(owner_id))

    async def size(self, owner_id: Optional[str] = None) -> int:
        return await self.kind.size(self.redis, self.collection_key(owner_id))

    async def contains(self, member: Member, owner_id: Optional[str] = None) -> bool:
        return await self.kind.contains(self.redis, self.collection_key(owner_id),
                                        self._identifier(member))

    # Reverse navigation from the dependent side

    async def owner_ids(self, member: Member) -> List[str]:
        """Owner ids whose collection lists this dependent"""
        if self.class_level:
            raise ConfigurationError(f"{self.name} is class-level and has no owners")
        collection_keys = await self.redis.smembers(self.reverse_key(self._identifier(member)))
        owner_ids = [self.owner_id_from_key(key) for key in collection_keys]
        return sorted(owner_id for owner_id in owner_ids if owner_id is not None)

    async def count(self, member: Member) -> int:
        return len(await self.owner_ids(member))

    async def owners(self, member: Member) -> List[Record]:
        owner_ids = await self.owner_ids(member)
        records = await self.owner_type.load_multi(owner_ids)
        return [record for record in records if record is not None]

    async def participates_in(self, member: Member, owner_id: Optional[str] = None) -> bool:
        return await self.contains(member, owner_id)

    async def remove_everywhere(self, member: Member) -> int:
        """Remove a dependent from every collection of this declaration"""
        identifier = self._identifier(member)
        if self.class_level:
            await self.remove(identifier)
            return 1
        owner_ids = await self.owner_ids(identifier)
        for owner_id in owner_ids:
            await self.remove(identifier, owner_id)
        return len(owner_ids)

    async def collection_keys(self, batch_size: int = 100) -> AsyncIterator[Tuple[Optional[str], str]]:
        """Yield (owner_id, key) for every existing collection of this declaration"""
        if self.class_level:
            yield None, self.collection_key()
            return
        pattern = keys.scan_pattern(self.owner_type.prefix, self.name, self.owner_type.delimiter)
        seen = set()
        async for key in self.model_type.client.scan_keys(pattern, batch_size):
            owner_id = self.owner_id_from_key(key)
            if owner_id is not None and key not in seen:
                seen.add(key)
                yield owner_id, key
