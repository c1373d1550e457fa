import logging
from typing import Optional

import redis.asyncio as redis

from query_agent.core.settings import settings

logger = logging.getLogger(__name__)


class CacheClient:
    _client: Optional[redis.Redis] = None

    @classmethod
    def get_client(cls) -> redis.Redis:
        if cls._client is None:
            logger.info(f"Connecting to Redis at {settings.redis.url}")
            cls._client = redis.from_url(settings.redis.url, decode_responses=True)
        return cls._client

    @classmethod
    def set_client(cls, client: Optional[redis.Redis]):
        cls._client = client

    @classmethod
    async def increment(cls, key: str, expire: Optional[int] = None) -> int:
        """Atomic counter increment; the expiry is set when the key is created."""
        client = cls.get_client()
        value = await client.incr(key)
        if value == 1 and expire:
            await client.expire(key, expire)
        return value

    @classmethod
    async def decrement(cls, key: str) -> int:
        client = cls.get_client()
        return await client.decr(key)

    @classmethod
    async def ping(cls) -> bool:
        try:
            return bool(await cls.get_client().ping())
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    @classmethod
    async def close(cls):
        if cls._client:
            await cls._client.aclose()
            cls._client = None
