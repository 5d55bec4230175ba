"""
Collection kinds and their type-specific Redis primitives.

Participation collections are stored as sets, lists or sorted sets. Reads,
writes and removals must use the primitive that matches the declared kind.
"""

import logging
import time
from enum import Enum
from typing import Any, List, Optional

logger = logging.getLogger(__name__)


class CollectionKind(Enum):
    """Storage kind of a participation collection"""
    SET = "set"
    LIST = "list"
    SORTED_SET = "sorted_set"

    @property
    def redis_type(self) -> str:
        """Name reported by the TYPE command"""
        return {"set": "set", "list": "list", "sorted_set": "zset"}[self.value]

    async def read(self, redis, key: str) -> List[str]:
        """Current members in native order"""
        if self is CollectionKind.SORTED_SET:
            return await redis.zrange(key, 0, -1)
        if self is CollectionKind.LIST:
            return await redis.lrange(key, 0, -1)
        return sorted(await redis.smembers(key))

    async def size(self, redis, key: str) -> int:
        if self is CollectionKind.SORTED_SET:
            return await redis.zcard(key)
        if self is CollectionKind.LIST:
            return await redis.llen(key)
        return await redis.scard(key)

    async def contains(self, redis, key: str, member: str) -> bool:
        if self is CollectionKind.SORTED_SET:
            return await redis.zscore(key, member) is not None
        if self is CollectionKind.LIST:
            return await redis.lpos(key, member) is not None
        return bool(await redis.sismember(key, member))

    def queue_add(self, pipe, key: str, member: str, score: Optional[float] = None) -> None:
        """Queue an add on a pipeline; lists drop any earlier copy first"""
        if self is CollectionKind.SORTED_SET:
            pipe.zadd(key, {member: score if score is not None else time.time()})
        elif self is CollectionKind.LIST:
            pipe.lrem(key, 0, member)
            pipe.rpush(key, member)
        else:
            pipe.sadd(key, member)

    def queue_remove(self, pipe, key: str, member: str) -> None:
        """Queue the kind-appropriate removal (ZREM, LREM 0 or SREM)"""
        if self is CollectionKind.SORTED_SET:
            pipe.zrem(key, member)
        elif self is CollectionKind.LIST:
            pipe.lrem(key, 0, member)
        else:
            pipe.srem(key, member)


async def atomic_swap(redis, temp_key: str, final_key: str) -> None:
    """
    Replace final_key with temp_key in one MULTI/EXEC.

    If temp_key does not exist (nothing was rebuilt) final_key is deleted,
    leaving an empty structure rather than the stale one.
    """
    temp_exists = await redis.exists(temp_key)
    async with redis.pipeline(transaction=True) as pipe:
        pipe.delete(final_key)
        if temp_exists:
            pipe.rename(temp_key, final_key)
        await pipe.execute()
    logger.debug(f"Swapped {temp_key} -> {final_key} (temp existed: {bool(temp_exists)})")


async def swap_many(redis, renames: List[Any], deletes: List[str]) -> None:
    """Apply several (temp, final) renames and deletes in one MULTI/EXEC"""
    if not renames and not deletes:
        return
    async with redis.pipeline(transaction=True) as pipe:
        for key in deletes:
            pipe.delete(key)
        for temp_key, final_key in renames:
            pipe.rename(temp_key, final_key)
        await pipe.execute()
