import redis.asyncio as redis
import logging
from typing import Optional, Tuple

from app.core.config import settings

logger = logging.getLogger(__name__)

# Global Redis client, only initialised when admission counters live in Redis
redis_client: Optional[redis.Redis] = None


async def init_redis() -> None:
    """Initialize Redis connection"""
    global redis_client

    try:
        redis_client = redis.from_url(
            settings.REDIS_URL,
            password=settings.REDIS_PASSWORD,
            db=settings.REDIS_DB,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30
        )

        await redis_client.ping()
        logger.info("Redis connection established successfully")

    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        raise


async def get_redis() -> redis.Redis:
    """Get Redis client instance"""
    if redis_client is None:
        raise RuntimeError("Redis client not initialized")
    return redis_client


async def close_redis() -> None:
    """Close Redis connection"""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
        logger.info("Redis connection closed")


class RedisService:
    """Thin Redis wrapper used for shared request counters"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client

    async def get_client(self) -> redis.Redis:
        if not self.client:
            self.client = await get_redis()
        return self.client

    async def incr_window(self, key: str, window_seconds: int) -> Optional[Tuple[int, int]]:
        """Increment a fixed-window counter.

        Returns ``(count, ttl_seconds)`` or ``None`` when Redis is unreachable.
        The expiry is set on the first increment so the window resets on its own.
        """
        try:
            client = await self.get_client()
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.ttl(key)
                count, ttl = await pipe.execute()
            if ttl is None or ttl < 0:
                await client.expire(key, window_seconds)
                ttl = window_seconds
            return int(count), int(ttl)
        except Exception as e:
            logger.error(f"Redis INCR error: {e}")
            return None

    async def ping(self) -> bool:
        try:
            client = await self.get_client()
            return bool(await client.ping())
        except Exception as e:
            logger.error(f"Redis PING error: {e}")
            return False
