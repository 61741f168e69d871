# config/cache.py
import logging
from typing import Optional
from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError
from config.settings import settings

_client: Optional[Redis] = None
logger = logging.getLogger(__name__)


async def get_redis() -> Redis:
    """Shared client for every repository; connects lazily and pings once."""
    global _client
    if _client is None:
        client = from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=False,  # repositories decode fields themselves
            socket_keepalive=True,
            health_check_interval=30,
        )
        # Fail fast on startup if Redis is unreachable.
        await client.ping()
        _client = client
        logger.info("redis.connected")
    return _client


async def redis_healthy() -> bool:
    if _client is None:
        return False
    try:
        return bool(await _client.ping())
    except RedisError:
        return False


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
