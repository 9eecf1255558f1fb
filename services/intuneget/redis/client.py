"""
Redis client for the IntuneGet migration service.

Redis holds short-lived coordination state only: matching-run locks,
matching progress snapshots and the identity cache. All keys live under
KEY_PREFIX; build them with redis_key(). Same lifecycle as db/session.py.
"""

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from intuneget.config import settings
from intuneget.logging_config import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "ig:"

_client: aioredis.Redis | None = None


def redis_key(*parts: object) -> str:
    """Namespaced key, e.g. redis_key("matching", "lock", id) -> ig:matching:lock:<id>."""
    return KEY_PREFIX + ":".join(str(p) for p in parts)


async def init_redis() -> None:
    """Connect and ping. Called from the app lifespan."""
    global _client  # noqa: PLW0603
    pool = settings.redis_pool
    logger.info("Initializing Redis connection", max_connections=pool.max_connections)
    _client = aioredis.from_url(
        str(settings.redis_url),
        decode_responses=True,
        max_connections=pool.max_connections,
        socket_timeout=pool.socket_timeout_seconds,
        socket_connect_timeout=pool.socket_timeout_seconds,
    )
    await _client.ping()
    logger.info("Redis connection established")


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is None:
        return
    logger.info("Closing Redis connection pool")
    await _client.aclose()
    _client = None


def get_redis_client() -> aioredis.Redis:
    """The shared client. Raises RuntimeError before init_redis()."""
    if _client is None:
        raise RuntimeError("Redis client not initialized: call init_redis() first")
    return _client


async def get_redis_health() -> bool:
    """Readiness probe: does Redis answer a PING."""
    if _client is None:
        return False
    try:
        return bool(await _client.ping())
    except (RedisError, OSError) as e:
        logger.error("Redis health check failed", error=str(e))
        return False
