"""
Redis store client for kv-relations.

Thin async wrapper over redis.asyncio that provides single-command and
pipelined execution, cursor-based keyspace scans and a batch context in
which record-level saves are refused.
"""

import contextvars
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as aioredis

from ..errors import OperationModeError
from ..models.config import RedisConfig
from . import keys

logger = logging.getLogger(__name__)

# Pipeline of the batch active in the current task, if any
_active_batch: contextvars.ContextVar[Optional[Any]] = contextvars.ContextVar(
    "kvr_active_batch", default=None
)

Command = Tuple[str, Sequence[Any]]


class RedisStoreClient:
    """
    Async Redis client used by records, relationships and the audit engines.

    Features:
    - Lazy connection from a URL, or an injected redis.asyncio client
    - Ordered best-effort pipelines (no cross-key atomicity)
    - SCAN paging with a caller-supplied batch size
    - Batch context that blocks record saves while commands are queued
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        socket_timeout: Optional[float] = 5.0,
        max_connections: int = 16,
        redis: Optional[aioredis.Redis] = None,
        key_delimiter: str = keys.DELIMITER
    ):
        """
        Initialize the store client.

        Args:
            url: Redis server URL
            socket_timeout: Per-command timeout in seconds
            max_connections: Connection pool size
            redis: Pre-built client (responses must be decoded to str)
            key_delimiter: Key segment separator for model types bound to this client
        """
        self.url = url
        self.socket_timeout = socket_timeout
        self.max_connections = max_connections
        self._redis = redis
        self.key_delimiter = key_delimiter

    @classmethod
    def from_config(cls, config: RedisConfig) -> 'RedisStoreClient':
        return cls(
            url=config.url,
            socket_timeout=config.socket_timeout,
            max_connections=config.max_connections,
            key_delimiter=config.key_delimiter
        )

    @property
    def redis(self) -> aioredis.Redis:
        """Get the underlying redis.asyncio client"""
        if self._redis is None:
            self._redis = aioredis.Redis.from_url(
                self.url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                max_connections=self.max_connections
            )
        return self._redis

    async def connect(self) -> bool:
        """
        Verify the server is reachable.

        Returns:
            True if the server answered PING, False otherwise
        """
        try:
            start_time = time.time()
            await self.redis.ping()
            logger.info(f"Connected to Redis at {self.url} in {time.time() - start_time:.3f}s")
            return True
        except aioredis.RedisError as e:
            logger.error(f"Failed to connect to Redis at {self.url}: {e}")
            return False

    async def ping(self) -> bool:
        """PING the server; connection errors propagate"""
        return bool(await self.redis.ping())

    async def close(self) -> None:
        """Close the connection pool"""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Disconnected from Redis")

    async def __aenter__(self) -> 'RedisStoreClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def health_check(self) -> Dict[str, Any]:
        """
        Check Redis server health.

        Returns:
            Health status information
        """
        try:
            start_time = time.time()
            await self.redis.ping()
            elapsed = time.time() - start_time
            db_size = await self.redis.dbsize()

            return {
                "status": "healthy",
                "response_time_ms": elapsed * 1000,
                "keys": db_size,
                "url": self.url
            }

        except aioredis.RedisError as e:
            return {
                "status": "unhealthy",
                "error": str(e),
                "url": self.url
            }

    async def execute(self, command: str, *args: Any) -> Any:
        """Run a single command by redis-py method name (e.g. "hgetall")"""
        return await getattr(self.redis, command)(*args)

    async def execute_pipeline(self, commands: Sequence[Command], raise_on_error: bool = True) -> List[Any]:
        """
        Run commands in order through a non-transactional pipeline.

        Args:
            commands: (method name, args) pairs
            raise_on_error: If False, failed commands yield their ResponseError
                in place of a result instead of raising

        Returns:
            Results in command order
        """
        if not commands:
            return []
        async with self.redis.pipeline(transaction=False) as pipe:
            for name, args in commands:
                getattr(pipe, name)(*args)
            return await pipe.execute(raise_on_error=raise_on_error)

    def pipeline(self, transaction: bool = False):
        """Open a raw redis.asyncio pipeline"""
        return self.redis.pipeline(transaction=transaction)

    @property
    def in_batch(self) -> bool:
        """True while a batch() block is active in the current task"""
        return _active_batch.get() is not None

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[Any]:
        """
        Queue commands and send them together as MULTI/EXEC on exit.

        Record saves raise OperationModeError while the batch is open, since
        their index maintenance cannot be queued alongside other commands.
        Commands are discarded if the block raises.
        """
        if self.in_batch:
            raise OperationModeError("Batches cannot be nested")

        async with self.redis.pipeline(transaction=True) as pipe:
            token = _active_batch.set(pipe)
            try:
                yield pipe
            finally:
                _active_batch.reset(token)
            await pipe.execute()

    def ensure_not_in_batch(self, operation: str) -> None:
        if self.in_batch:
            raise OperationModeError(
                f"Cannot call {operation} inside a batch; "
                f"exit the batch block or write the commands on the batch pipeline"
            )

    async def scan_batches(self, pattern: str, batch_size: int = 100) -> AsyncIterator[List[str]]:
        """
        Page through keys matching pattern with SCAN.

        Args:
            pattern: Glob-style MATCH pattern
            batch_size: COUNT hint per page, bounds memory per call

        Yields:
            Lists of keys (SCAN may repeat keys across pages)
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        cursor = 0
        while True:
            cursor, keys = await self.redis.scan(cursor=cursor, match=pattern, count=batch_size)
            if keys:
                yield list(keys)
            if int(cursor) == 0:
                break

    async def scan_keys(self, pattern: str, batch_size: int = 100) -> AsyncIterator[str]:
        """Iterate over keys matching pattern, one at a time"""
        async for keys in self.scan_batches(pattern, batch_size):
            for key in keys:
                yield key
