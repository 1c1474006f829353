"""Redis service backing the per-day action ledger lists."""

import json
from typing import Optional

import redis.asyncio as redis
import structlog

from src.config import get_settings

logger = structlog.get_logger(__name__)

# Global Redis client
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create the Redis client.

    Returns:
        Redis client or None if connection fails (graceful degradation)
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()

    try:
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await _redis_client.ping()
        logger.info("redis_connected", url=settings.redis_url.split("@")[-1])
        return _redis_client
    except Exception as e:
        logger.warning("redis_connection_failed", error=str(e))
        _redis_client = None
        return None


async def close_redis() -> None:
    """Close the Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("redis_connection_closed")


async def health_check() -> bool:
    """Return True if Redis answers PING."""
    client = await get_redis()
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.warning("redis_health_check_failed", error=str(e))
        return False


class RedisService:
    """Capped JSON lists with TTL, used for short-lived per-user logs."""

    async def append_capped(
        self, key: str, item: dict, max_len: int, ttl_seconds: int
    ) -> bool:
        """Append a JSON item to a list, keeping only the newest max_len items.

        The push, trim and expiry run in one pipeline, so a concurrent writer
        can lose an entry to the cap but never leaves a half-written list.

        Returns:
            True if successful, False if Redis is unavailable or errored
        """
        client = await get_redis()
        if client is None:
            return False

        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.rpush(key, json.dumps(item, default=str))
                pipe.ltrim(key, -max_len, -1)
                pipe.expire(key, ttl_seconds)
                await pipe.execute()
            return True
        except Exception as e:
            logger.warning("redis_append_failed", key=key, error=str(e))
            return False

    async def get_list(self, key: str) -> list[dict]:
        """Read a JSON list, oldest first. Unparseable items are skipped.

        Returns:
            List of decoded items, empty if missing or Redis unavailable
        """
        client = await get_redis()
        if client is None:
            return []

        try:
            raw_items = await client.lrange(key, 0, -1)
        except Exception as e:
            logger.warning("redis_get_list_failed", key=key, error=str(e))
            return []

        items = []
        for raw in raw_items:
            try:
                items.append(json.loads(raw))
            except (TypeError, ValueError):
                logger.warning("redis_list_item_malformed", key=key)
        return items
