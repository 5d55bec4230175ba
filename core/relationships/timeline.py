"""
Identifier timeline: sorted set of every live identifier of a type.

Scores follow the updated -> created -> wall clock cascade so the set can be
enumerated in a meaningful order without scanning the keyspace.
"""

import logging
import time
from typing import TYPE_CHECKING, List, Optional

from ..records.record import score_from_fields
from ..storage import keys
from ..storage.datatypes import atomic_swap

if TYPE_CHECKING:
    from ..records.model_type import ModelType

logger = logging.getLogger(__name__)

TIMELINE_NAME = "instances"


class Timeline:
    """Per-type sorted set of identifiers at <prefix>:instances"""

    def __init__(self, model_type: 'ModelType'):
        self.model_type = model_type

    @property
    def key(self) -> str:
        return self.model_type.key(TIMELINE_NAME)

    @property
    def redis(self):
        return self.model_type.redis

    async def add(self, identifier: str, score: Optional[float] = None) -> None:
        await self.redis.zadd(self.key, {identifier: score if score is not None else time.time()})

    async def remove(self, identifier: str) -> None:
        await self.redis.zrem(self.key, identifier)

    async def members(self) -> List[str]:
        return await self.redis.zrange(self.key, 0, -1)

    async def score(self, identifier: str) -> Optional[float]:
        return await self.redis.zscore(self.key, identifier)

    async def count(self) -> int:
        return await self.redis.zcard(self.key)

    async def contains(self, identifier: str) -> bool:
        return await self.score(identifier) is not None

    def queue_add(self, pipe, identifier: str, score: float) -> None:
        pipe.zadd(self.key, {identifier: score})

    def queue_remove(self, pipe, identifier: str) -> None:
        pipe.zrem(self.key, identifier)

    async def rebuild(self, batch_size: int = 100) -> int:
        """
        Recompute the timeline from the keyspace and swap it in.

        Entries are written to a temporary key and moved onto the timeline
        in one MULTI, so readers never see a partial rebuild.

        Args:
            batch_size: SCAN page size and records loaded per round trip

        Returns:
            Number of identifiers in the rebuilt timeline
        """
        temp_key = keys.rebuild_key(self.key, delimiter=self.model_type.delimiter)
        seen = set()

        async for identifiers in self.model_type.scan_identifiers(batch_size):
            fresh = [i for i in identifiers if i not in seen]
            if not fresh:
                continue
            rows = await self.model_type.load_raw_multi(fresh)
            now = time.time()
            entries = {
                identifier: score_from_fields(row, now)
                for identifier, row in zip(fresh, rows)
                if row
            }
            if entries:
                await self.redis.zadd(temp_key, entries)
                seen.update(entries)

        await atomic_swap(self.redis, temp_key, self.key)
        logger.info(f"Rebuilt {self.key} with {len(seen)} identifiers")
        return len(seen)
