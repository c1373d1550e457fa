import logging
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as redis

from query_agent.core.cache import CacheClient
from query_agent.core.errors import UsageLimitExceeded
from query_agent.core.settings import settings

logger = logging.getLogger(__name__)

# A little over a month, the key embeds the month anyway
COUNTER_TTL_SECONDS = 32 * 24 * 3600


class DeepResearchUsage:
    """Monthly per-user deep research quota backed by Redis counters."""

    @staticmethod
    def key(user_id: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        return f"usage:deep_research:{user_id}:{now:%Y-%m}"

    @staticmethod
    async def consume(user_id: str, limit: Optional[int] = None) -> int:
        """
        Reserve one deep research run for this month.
        Raises UsageLimitExceeded when the quota is used up. Counter outages
        are logged and let the request through.
        """
        limit = settings.ai.deep_research_monthly_limit if limit is None else limit
        key = DeepResearchUsage.key(user_id)
        try:
            count = await CacheClient.increment(key, expire=COUNTER_TTL_SECONDS)
            if count > limit:
                await CacheClient.decrement(key)
                logger.info(
                    "Deep research limit reached",
                    extra={"fields": {"limit": limit, "usage": count - 1}},
                )
                raise UsageLimitExceeded("Deep Research usage limit exceeded")
        except (redis.RedisError, OSError) as e:
            logger.error(f"Deep research usage counter unavailable: {e}")
            return 0
        return count
