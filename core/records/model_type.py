"""
Model types: the persistence surface for one record class.

A ModelType knows its key prefix, identifier field and relationship
declarations. Saves and deletes call the index, timeline and participation
maintenance functions directly; none of it is a cross-key transaction, so a
crash between writes leaves drift for the audit engine to find.
"""

import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Sequence, Type, Union

from ..errors import ConfigurationError
from ..storage import keys
from ..relationships.declarations import MultiIndexSpec, ParticipationSpec, UniqueIndexSpec
from .record import Record, serialize_value

if TYPE_CHECKING:
    from ..storage.client import RedisStoreClient
    from ..relationships.multi_index import MultiIndex
    from ..relationships.participation import Participation
    from ..relationships.timeline import Timeline
    from ..relationships.unique_index import UniqueIndex

logger = logging.getLogger(__name__)

Declaration = Union[UniqueIndexSpec, MultiIndexSpec, ParticipationSpec]


class ModelType:
    """
    Persistence surface and relationship descriptor list for one record class.

    Features:
    - Compound-aware primary keys (<prefix>:<identifier>:<suffix>)
    - Pipelined multi-record loads
    - Save path with unique guards, index maintenance and timeline registration
    - Accessors for each declared index and participation
    """

    def __init__(
        self,
        name: str,
        record_class: Type[Record],
        identifier_field: str = "identifier",
        relationships: Sequence[Declaration] = (),
        suffix: str = keys.OBJECT_SUFFIX,
        delimiter: Optional[str] = None
    ):
        if delimiter is not None:
            _check_name(name, delimiter)
        if identifier_field not in record_class.model_fields:
            raise ConfigurationError(
                f"{record_class.__name__} has no identifier field {identifier_field!r}"
            )

        self.name = name
        self.record_class = record_class
        self.identifier_field = identifier_field
        self.suffix = suffix
        # Taken from the client on bind unless given here
        self.delimiter = delimiter or keys.DELIMITER
        self._own_delimiter = delimiter is not None
        self.relationships: List[Declaration] = list(relationships)

        self._client: Optional['RedisStoreClient'] = None
        self.timeline: Optional['Timeline'] = None
        self.unique_indexes: Dict[str, 'UniqueIndex'] = {}
        self.multi_indexes: Dict[str, 'MultiIndex'] = {}
        self.participations: Dict[str, 'Participation'] = {}

    def __repr__(self) -> str:
        return f"ModelType({self.name!r}, {self.record_class.__name__})"

    @property
    def prefix(self) -> str:
        return self.name

    @property
    def client(self) -> 'RedisStoreClient':
        if self._client is None:
            raise ConfigurationError(f"Model type {self.name!r} is not registered with a client")
        return self._client

    @property
    def redis(self):
        return self.client.redis

    def bind(self, client: 'RedisStoreClient') -> None:
        if not self._own_delimiter:
            _check_name(self.name, client.key_delimiter)
            self.delimiter = client.key_delimiter
        self._client = client

    # Declarations by kind

    @property
    def unique_index_specs(self) -> List[UniqueIndexSpec]:
        return [r for r in self.relationships if isinstance(r, UniqueIndexSpec)]

    @property
    def multi_index_specs(self) -> List[MultiIndexSpec]:
        return [r for r in self.relationships if isinstance(r, MultiIndexSpec)]

    @property
    def participation_specs(self) -> List[ParticipationSpec]:
        return [r for r in self.relationships if isinstance(r, ParticipationSpec)]

    # Accessors

    def unique_index(self, name: str) -> 'UniqueIndex':
        try:
            return self.unique_indexes[name]
        except KeyError:
            raise ConfigurationError(f"{self.name} has no unique index {name!r}") from None

    def multi_index(self, name: str) -> 'MultiIndex':
        try:
            return self.multi_indexes[name]
        except KeyError:
            raise ConfigurationError(f"{self.name} has no multi index {name!r}") from None

    def participation(self, name: str) -> 'Participation':
        try:
            return self.participations[name]
        except KeyError:
            raise ConfigurationError(f"{self.name} has no participation {name!r}") from None

    # Record boundary

    def identifier_of(self, record: Record) -> str:
        value = getattr(record, self.identifier_field, None)
        if value is None or str(value) == "":
            raise ValueError(f"{self.name} record has no {self.identifier_field}")
        return str(value)

    def field_value(self, record: Record, field: str) -> Optional[str]:
        """Indexed string form of a field, None when unset or empty"""
        return _index_value(serialize_value(getattr(record, field, None)))

    def dbkey(self, identifier: str) -> str:
        return keys.dbkey(self.prefix, identifier, self.suffix, self.delimiter)

    def key(self, *parts: Any) -> str:
        """Key under this type's namespace, e.g. key("instances")"""
        return keys.join(self.prefix, *parts, delimiter=self.delimiter)

    def extract_identifier(self, key: str) -> Optional[str]:
        return keys.extract_identifier(key, self.prefix, self.suffix, self.delimiter)

    async def exists(self, identifier: str) -> bool:
        return bool(await self.redis.exists(self.dbkey(identifier)))

    async def load(self, identifier: str) -> Optional[Record]:
        """Load a record, None if its hash is gone"""
        data = await self.redis.hgetall(self.dbkey(identifier))
        if not data:
            return None
        return self.record_class.from_storage(data)

    async def load_multi(self, identifiers: Sequence[str]) -> List[Optional[Record]]:
        """Load several records in one pipeline, None for each missing one"""
        rows = await self.load_raw_multi(identifiers)
        return [self.record_class.from_storage(row) if row else None for row in rows]

    async def load_raw_multi(self, identifiers: Sequence[str]) -> List[Dict[str, str]]:
        """Raw field maps, empty for missing keys and keys that are not hashes"""
        commands = [("hgetall", (self.dbkey(identifier),)) for identifier in identifiers]
        rows = await self.client.execute_pipeline(commands, raise_on_error=False)
        return [{} if isinstance(row, Exception) else row for row in rows]

    async def field_values(self, identifiers: Sequence[str], field: str) -> List[Optional[str]]:
        """Current stored value of one field for each identifier, None if unreadable"""
        commands = [("hget", (self.dbkey(identifier), field)) for identifier in identifiers]
        values = await self.client.execute_pipeline(commands, raise_on_error=False)
        return [None if isinstance(value, Exception) else value for value in values]

    async def scan_identifiers(self, batch_size: int = 100) -> AsyncIterator[List[str]]:
        """
        Page through identifiers of every stored record with SCAN.

        Yields:
            Lists of identifiers, at most one SCAN page each
        """
        pattern = keys.scan_pattern(self.prefix, self.suffix, self.delimiter)
        async for batch in self.client.scan_batches(pattern, batch_size):
            identifiers = [self.extract_identifier(key) for key in batch]
            identifiers = await self.stored_identifiers([i for i in identifiers if i is not None])
            if identifiers:
                yield identifiers

    async def stored_identifiers(self, identifiers: Sequence[str]) -> List[str]:
        """
        Keep identifiers whose record key holds a hash.

        Index value sets can share the record key shape, e.g. a multi index
        value "object" lives at <prefix>:<index>:object.
        """
        if not identifiers:
            return []
        kinds = await self.client.execute_pipeline(
            [("type", (self.dbkey(identifier),)) for identifier in identifiers]
        )
        return [identifier for identifier, kind in zip(identifiers, kinds) if kind == "hash"]

    async def count(self) -> int:
        """Number of identifiers in the timeline"""
        return await self.timeline.count()

    # Write path

    async def save(self, record: Record) -> bool:
        """
        Persist a record and maintain its class-level indexes and timeline.

        Order: refuse inside a batch, stamp timestamps, check unique guards,
        write fields, then update indexes and the timeline in one pipeline.

        Returns:
            True once the writes are sent

        Raises:
            OperationModeError: a batch is active in this task
            RecordExistsError: a unique field value belongs to another record
        """
        self.client.ensure_not_in_batch(f"{self.name}.save")
        identifier = self.identifier_of(record)
        key = self.dbkey(identifier)

        record.prepare_for_save()
        stored = record.to_storage()

        global_unique = [i for i in self.unique_indexes.values() if not i.scoped]
        global_multi = [i for i in self.multi_indexes.values() if not i.scoped]

        previous = await self._previous_values(record, key, global_unique + global_multi)

        for index in global_unique:
            value = _index_value(stored.get(index.field))
            if value is not None:
                await index.guard(value, identifier)
        owned = await self._owned_values(global_unique, previous, identifier)

        present = {name: value for name, value in stored.items() if value is not None}
        cleared = [name for name, value in stored.items() if value is None]

        async with self.client.pipeline(transaction=False) as pipe:
            pipe.hset(key, mapping=present)
            if cleared:
                pipe.hdel(key, *cleared)
            await pipe.execute()

        async with self.client.pipeline(transaction=False) as pipe:
            for index in global_unique:
                index.queue_update(pipe, owned.get(index.name),
                                   _index_value(stored.get(index.field)), identifier)
            for index in global_multi:
                index.queue_update(pipe, _index_value(previous.get(index.field)),
                                   _index_value(stored.get(index.field)), identifier)
            self.timeline.queue_add(pipe, identifier, record.timestamp_score())
            await pipe.execute()

        record.mark_persisted(present)
        logger.debug(f"Saved {key}")
        return True

    async def _previous_values(self, record: Record, key: str, indexes: List[Any]) -> Dict[str, Optional[str]]:
        """Indexed field values currently stored, from memory when the record was loaded"""
        fields = sorted({index.field for index in indexes})
        if not fields:
            return {}
        if record._persisted:
            return {field: record.persisted_value(field) for field in fields}
        values = await self.redis.hmget(key, fields)
        return dict(zip(fields, values))

    async def _owned_values(self, indexes: List['UniqueIndex'], values: Dict[str, Optional[str]],
                            identifier: str) -> Dict[str, str]:
        """Index name -> value for unique entries that still point at identifier"""
        owned = {}
        for index in indexes:
            value = _index_value(values.get(index.field))
            if value is not None and await index.get(value) == identifier:
                owned[index.name] = value
        return owned

    async def update_fields(self, record: Record, **changes: Any) -> bool:
        """Assign field changes and save, moving index entries off old values"""
        for name, value in changes.items():
            if name not in self.record_class.model_fields:
                raise ValueError(f"{self.name} has no field {name!r}")
            setattr(record, name, value)
        return await self.save(record)

    async def delete(self, identifier: str) -> bool:
        """
        Delete a record's hash, timeline entry and class-level index entries.

        Participation memberships are only removed for declarations with
        remove_on_delete; everything else is left for audit and repair.

        Returns:
            True if the record existed
        """
        self.client.ensure_not_in_batch(f"{self.name}.delete")
        key = self.dbkey(identifier)
        stored = await self.redis.hgetall(key)

        global_unique = [i for i in self.unique_indexes.values() if not i.scoped]
        owned_values = await self._owned_values(global_unique, stored, identifier)

        async with self.client.pipeline(transaction=False) as pipe:
            pipe.delete(key)
            self.timeline.queue_remove(pipe, identifier)
            for index in global_unique:
                if index.name in owned_values:
                    index.queue_update(pipe, owned_values[index.name], None, identifier)
            for index in self.multi_indexes.values():
                if not index.scoped:
                    index.queue_update(pipe, _index_value(stored.get(index.field)), None, identifier)
            await pipe.execute()

        for participation in self.participations.values():
            if participation.spec.remove_on_delete:
                await participation.remove_everywhere(identifier)

        logger.debug(f"Deleted {key} (existed: {bool(stored)})")
        return bool(stored)


def _check_name(name: str, delimiter: str) -> None:
    if delimiter in name:
        raise ConfigurationError(f"Model name {name!r} may not contain {delimiter!r}")


def _index_value(value: Optional[str]) -> Optional[str]:
    """Indexed form of a stored value; empty strings are not indexed"""
    return value if value else None
