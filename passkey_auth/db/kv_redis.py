"""
Redis Implementation

TTL key/value store shared by every worker. Expiry is enforced by Redis;
read-and-delete uses GETDEL, set-if-absent SET NX and set-if-present
SET XX, so each is atomic across processes.
"""

import logging
from typing import Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from ..errors import StorageUnavailable

logger = logging.getLogger(__name__)


def _milliseconds(ttl: float) -> int:
    return max(1, int(ttl * 1000))


class RedisKeyValueStore:
    """
    redis.asyncio backed key/value store

    Arguments:
        client: An asyncio Redis client created with decode_responses=True
    """

    def __init__(self, client: redis_async.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        """
        Create a store from a redis:// URL
        """
        logger.info("Running with Redis key/value store")
        return cls(redis_async.from_url(url, decode_responses=True, socket_timeout=5))

    async def add(self, key: str, value: str, ttl: float) -> bool:
        try:
            return bool(await self._redis.set(key, value, px=_milliseconds(ttl), nx=True))
        except RedisError as err:
            logger.error("Redis SET NX failed for %s: %s", key.split(":", 1)[0], err)
            raise StorageUnavailable() from err

    async def replace(self, key: str, value: str, ttl: float) -> bool:
        try:
            return bool(await self._redis.set(key, value, px=_milliseconds(ttl), xx=True))
        except RedisError as err:
            logger.error("Redis SET XX failed for %s: %s", key.split(":", 1)[0], err)
            raise StorageUnavailable() from err

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._redis.get(key)
        except RedisError as err:
            logger.error("Redis GET failed for %s: %s", key.split(":", 1)[0], err)
            raise StorageUnavailable() from err

    async def pop(self, key: str) -> Optional[str]:
        try:
            return await self._redis.getdel(key)
        except RedisError as err:
            logger.error("Redis GETDEL failed for %s: %s", key.split(":", 1)[0], err)
            raise StorageUnavailable() from err

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._redis.delete(*keys)
        except RedisError as err:
            logger.error("Redis DEL failed: %s", err)
            raise StorageUnavailable() from err

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as err:
            logger.error("Redis PING failed: %s", err)
            raise StorageUnavailable() from err

    async def close(self) -> None:
        await self._redis.aclose()
