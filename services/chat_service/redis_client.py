import logging
import redis.asyncio as redis

from config import REDIS_URL

logger = logging.getLogger(__name__)

_redis_client = None


async def get_redis() -> redis.Redis:
    """
    Return the shared asyncio Redis connection, reconnecting if it was lost.
    """
    global _redis_client
    if _redis_client:
        try:
            await _redis_client.ping()
            return _redis_client
        except redis.ConnectionError:
            logger.warning("Redis connection lost. Reconnecting...")
            _redis_client = None

    logger.info("Connecting to Redis...")
    _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
    await _redis_client.ping()
    logger.info("Redis connection successful")
    return _redis_client


async def close_redis():
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
