from __future__ import annotations

from typing import Any, Awaitable, List, Mapping, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from credlife.logging import get_logger
from credlife.storage.errors import StorageUnavailable


class RedisCache:
    """Thin Redis wrapper for the ephemeral credential tier."""

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds
    SCAN_BATCH_SIZE = 500

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl(ttl_seconds: int) -> int:
        # Redis rejects zero or negative expirations
        return max(1, int(ttl_seconds))

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except RedisError as exc:
            self.logger.warning("redis_operation_failed", operation=operation, error=str(exc))
            raise StorageUnavailable(
                str(exc) or "redis unavailable", backend="redis", operation=operation
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call("set", self.client.set(key, value, ex=self._ttl(ttl_seconds)))

    async def set_many(self, values: Mapping[str, str], ttl_seconds: int) -> None:
        """Write several keys with one expiry inside a MULTI/EXEC block."""

        ttl = self._ttl(ttl_seconds)
        pipe = self.client.pipeline(transaction=True)
        for key, value in values.items():
            pipe.set(key, value, ex=ttl)
        await self._call("set_many", pipe.execute())

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self.client.delete(*keys)))

    async def exists(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("exists", self.client.exists(*keys)))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._call("expire", self.client.expire(key, self._ttl(ttl_seconds))))

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", self.client.ttl(key)))

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", self.client.incr(key)))

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("sadd", self.client.sadd(key, *members)))

    async def smembers(self, key: str) -> Set[str]:
        members = await self._call("smembers", self.client.smembers(key))
        return set(members or ())

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("srem", self.client.srem(key, *members)))

    async def scan_keys(self, pattern: str) -> List[str]:
        keys: List[str] = []
        cursor = 0
        while True:
            cursor, batch = await self._call(
                "scan",
                self.client.scan(cursor=cursor, match=pattern, count=self.SCAN_BATCH_SIZE),
            )
            keys.extend(batch)
            if int(cursor) == 0:
                break
        # SCAN may return a key more than once
        return sorted(set(keys))

    async def close(self) -> None:
        await self.client.aclose()
